"""
Ordered transcript log for a single meeting.

Holds settled (final) entries in arrival order plus at most one pending
interim entry, and guards passively observed captions against re-emission.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Optional

from .models import EntryKind, TranscriptEntry

logger = logging.getLogger(__name__)

# Number of trailing final entries checked for duplicate captions
DEDUP_WINDOW = 5


class TranscriptStore:
    """
    Append-only transcript of one meeting.

    Final entries are never removed or reordered except by clear(), which
    the meeting lifecycle calls once at the start of every meeting.
    """

    def __init__(
        self,
        dedup_window: int = DEDUP_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize an empty transcript.

        Args:
            dedup_window: How many trailing final entries to compare
                          observed captions against
            clock: Source of epoch-second timestamps for new entries
        """
        self.dedup_window = dedup_window
        self._clock = clock
        self._entries: list[TranscriptEntry] = []
        self._interim: Optional[TranscriptEntry] = None
        self._next_sequence = 1

    def append_final(self, text: str) -> Optional[TranscriptEntry]:
        """
        Append a settled fragment and drop the pending interim entry.

        Returns the new entry, or None when the text is blank.
        """
        text = (text or "").strip()
        if not text:
            return None

        entry = TranscriptEntry(
            sequence=self._next_sequence,
            timestamp=self._clock(),
            text=text,
            kind=EntryKind.FINAL,
        )
        self._next_sequence += 1
        self._entries.append(entry)
        self._interim = None
        logger.debug(f"Final #{entry.sequence}: {text[:50]}")
        return entry

    def set_interim(self, text: str) -> Optional[TranscriptEntry]:
        """Replace the pending interim entry. Blank text clears it."""
        text = (text or "").strip()
        if not text:
            self._interim = None
            return None

        # Shares the sequence number the superseding final entry will take
        self._interim = TranscriptEntry(
            sequence=self._next_sequence,
            timestamp=self._clock(),
            text=text,
            kind=EntryKind.INTERIM,
        )
        return self._interim

    def is_duplicate(self, text: str) -> bool:
        """
        Check a caption against the last few final entries.

        A candidate is a duplicate when a recent entry contains it or is
        contained by it.
        """
        recent = self._entries[-self.dedup_window:] if self.dedup_window > 0 else []
        return any(e.text in text or text in e.text for e in recent)

    def add_observed(self, text: str) -> Optional[TranscriptEntry]:
        """
        Append a passively observed caption unless it repeats recent text.

        Returns the new entry, or None if the caption was blank or a duplicate.
        """
        text = (text or "").strip()
        if not text:
            return None
        if self.is_duplicate(text):
            logger.debug(f"Skipping duplicate caption: {text[:50]}")
            return None
        return self.append_final(text)

    def full_text(self) -> str:
        """Render final entries as timestamped lines, then the interim text."""
        lines = [f"[{_format_clock(e.timestamp)}] {e.text}\n" for e in self._entries]
        if self._interim is not None:
            lines.append(self._interim.text)
        return "".join(lines)

    def clear(self):
        """Reset to an empty transcript."""
        self._entries = []
        self._interim = None
        self._next_sequence = 1

    @property
    def entries(self) -> tuple[TranscriptEntry, ...]:
        """Final entries in arrival order."""
        return tuple(self._entries)

    @property
    def interim(self) -> Optional[TranscriptEntry]:
        return self._interim

    @property
    def is_empty(self) -> bool:
        return not self._entries and self._interim is None

    def __len__(self) -> int:
        return len(self._entries)


def _format_clock(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%H:%M:%S")
