"""
Canonical data models for live meeting transcription.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional
import hashlib
import uuid


class EntryKind(Enum):
    """Whether a recognized fragment is settled or still tentative."""
    FINAL = "final"
    INTERIM = "interim"


class SessionState(Enum):
    """Speech session states."""
    IDLE = "idle"
    LISTENING = "listening"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class MeetingState(Enum):
    """Meeting presence states."""
    IDLE = "idle"
    ACTIVE = "active"
    ENDING = "ending"


class ErrorKind(Enum):
    """Recognition and capture failures surfaced by a speech session."""
    UNSUPPORTED_ENVIRONMENT = "unsupported-environment"
    PERMISSION_DENIED = "permission-denied"
    DEVICE_UNAVAILABLE = "device-unavailable"
    NETWORK_ERROR = "network-error"
    NO_SPEECH = "no-speech"
    UNKNOWN = "unknown"

    @classmethod
    def from_engine_code(cls, code: str) -> "ErrorKind":
        """Map a recognition engine error code to an error kind."""
        return _ENGINE_CODES.get(code, cls.UNKNOWN)

    @property
    def is_fatal(self) -> bool:
        return self in (
            ErrorKind.UNSUPPORTED_ENVIRONMENT,
            ErrorKind.PERMISSION_DENIED,
            ErrorKind.DEVICE_UNAVAILABLE,
        )


_ENGINE_CODES = {
    "no-speech": ErrorKind.NO_SPEECH,
    "audio-capture": ErrorKind.DEVICE_UNAVAILABLE,
    "not-allowed": ErrorKind.PERMISSION_DENIED,
    "network": ErrorKind.NETWORK_ERROR,
}


class SummaryStyle(Enum):
    STANDARD = "standard"
    SHORT = "short"
    DETAILED = "detailed"
    ACTION_ITEMS = "action-items"


@dataclass(frozen=True)
class TranscriptEntry:
    """
    One timestamped unit of transcript text.

    Interim entries are never appended to the transcript log; they are
    replaced wholesale until a Final entry supersedes them.
    """
    sequence: int
    timestamp: float  # epoch seconds
    text: str
    kind: EntryKind

    @property
    def is_final(self) -> bool:
        return self.kind is EntryKind.FINAL


@dataclass(frozen=True)
class Fragment:
    """Payload published on a speech session's fragment channel."""
    kind: EntryKind
    text: str
    merged_transcript: str


@dataclass
class FlushPayload:
    """
    Completed meeting transcript handed downstream when a meeting ends.

    This is also the shape persisted for manual retries.
    """
    transcript: str
    meeting_title: str
    timestamp: str  # ISO-8601

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return asdict(self)

    def compute_id(self) -> str:
        """
        Generate a deterministic ID for storage.
        Based on (meeting_title, timestamp).
        """
        key = f"{self.meeting_title}:{self.timestamp}"
        return str(uuid.UUID(hashlib.sha256(key.encode()).hexdigest()[:32]))

    @classmethod
    def from_dict(cls, data: dict) -> "FlushPayload":
        """Reconstruct from dictionary."""
        return cls(
            transcript=data["transcript"],
            meeting_title=data.get("meeting_title") or "Untitled Meeting",
            timestamp=data["timestamp"],
        )


@dataclass
class ArchivedMeeting:
    """A flushed meeting as kept in the transcript archive."""
    meeting_id: str
    payload: FlushPayload
    status: str = "pending"  # "pending" until a summary has been stored
    summary: Optional[str] = None
    style: Optional[str] = None

    @classmethod
    def from_dict(cls, meeting_id: str, data: dict) -> "ArchivedMeeting":
        return cls(
            meeting_id=meeting_id,
            payload=FlushPayload.from_dict(data),
            status=data.get("status", "pending"),
            summary=data.get("summary"),
            style=data.get("style"),
        )
