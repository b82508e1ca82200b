"""
Meeting lifecycle for live transcription.

Tracks whether the user is in a meeting, runs a speech session while they
are, and hands the finished transcript to the summarizer when they leave.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Set

from .archive import ArchiveError, TranscriptArchive
from .models import ErrorKind, FlushPayload, Fragment, MeetingState, SummaryStyle
from .normalizer import normalize
from .speech_session import SpeechSession, SpeechSessionError
from .summarizer import GeminiSummarizer, SummarizerError
from .transcript_store import TranscriptStore

logger = logging.getLogger(__name__)

POLL_INTERVAL = 5.0  # seconds between presence checks
GRACE_DELAY = 2.0  # seconds to collect trailing fragments before flushing
END_CONFIRM_DELAY = 2.0  # seconds before re-checking presence after an end marker
MIN_CAPTION_LENGTH = 5
MIN_SUMMARY_LENGTH = 50
DEFAULT_TITLE = "Untitled Meeting"


class FlushStatus(Enum):
    SUMMARIZED = "summarized"
    EMPTY = "empty"
    INSUFFICIENT_CONTENT = "insufficient-content"
    FAILED = "failed"
    SKIPPED = "skipped"  # no summarizer configured


@dataclass
class FlushResult:
    """Outcome of handing a meeting transcript downstream."""
    payload: FlushPayload
    status: FlushStatus
    summary: Optional[str] = None
    error: Optional[str] = None
    archive_id: Optional[str] = None


async def summarize_payload(
    payload: FlushPayload,
    summarizer: Optional[GeminiSummarizer],
    style: SummaryStyle = SummaryStyle.STANDARD,
) -> FlushResult:
    """
    Normalize a flushed transcript and summarize it.

    Never raises for summarizer failures; they come back as a FAILED
    result so the transcript can be retried later.
    """
    if not payload.transcript.strip():
        return FlushResult(payload, FlushStatus.EMPTY, error="No transcript data available")

    cleaned = normalize(payload.transcript)
    if len(cleaned) < MIN_SUMMARY_LENGTH:
        logger.warning(f"Transcript too short to summarize ({len(cleaned)} chars after cleanup)")
        return FlushResult(
            payload,
            FlushStatus.INSUFFICIENT_CONTENT,
            error="Insufficient text content for summarization",
        )

    if summarizer is None:
        logger.info("No summarizer configured, skipping summarization")
        return FlushResult(payload, FlushStatus.SKIPPED)

    try:
        summary = await asyncio.to_thread(summarizer.summarize, cleaned, style)
    except SummarizerError as e:
        logger.error(f"Summarization failed: {e}")
        return FlushResult(payload, FlushStatus.FAILED, error=str(e))
    except Exception as e:
        logger.error(f"Unexpected error during summarization: {e}")
        return FlushResult(payload, FlushStatus.FAILED, error=str(e))

    return FlushResult(payload, FlushStatus.SUMMARIZED, summary=summary)


class MeetingLifecycle:
    """
    Presence-driven meeting state machine.

    Presence is polled by run() and can also be reported directly through
    update_presence(). Explicit end-of-call markers are confirmed against
    the presence check after a short delay before they end a meeting.
    """

    def __init__(
        self,
        presence_check: Callable[[], bool],
        session_factory: Callable[..., SpeechSession],
        store: Optional[TranscriptStore] = None,
        summarizer: Optional[GeminiSummarizer] = None,
        archive: Optional[TranscriptArchive] = None,
        title_provider: Optional[Callable[[], str]] = None,
        style: SummaryStyle = SummaryStyle.STANDARD,
        poll_interval: float = POLL_INTERVAL,
        grace_delay: float = GRACE_DELAY,
        end_confirm_delay: float = END_CONFIRM_DELAY,
        on_flush: Optional[Callable[[FlushResult], None]] = None,
        on_fragment: Optional[Callable[[Fragment], None]] = None,
        on_error: Optional[Callable[[ErrorKind], None]] = None,
    ):
        """
        Initialize the lifecycle.

        Args:
            presence_check: Returns True while the user is in a meeting
            session_factory: Builds a SpeechSession; called with the store
                             and the on_fragment/on_error keyword arguments
            store: Transcript to record into (default: a new one)
            summarizer: Summarizer for flushed transcripts; None skips it
            archive: Optional archive that keeps flushed transcripts
            title_provider: Returns the meeting title at meeting start
            style: Summary style for flushed transcripts
            poll_interval: Seconds between presence polls in run()
            grace_delay: Seconds to wait for trailing fragments before flushing
            end_confirm_delay: Seconds before confirming an end-of-call marker
            on_flush: Optional callback with the result of every flush
            on_fragment: Optional callback for each recognized fragment
            on_error: Optional callback for speech session errors
        """
        self.presence_check = presence_check
        self.session_factory = session_factory
        self.store = store or TranscriptStore()
        self.summarizer = summarizer
        self.archive = archive
        self.title_provider = title_provider
        self.style = style
        self.poll_interval = poll_interval
        self.grace_delay = grace_delay
        self.end_confirm_delay = end_confirm_delay
        self.on_flush = on_flush
        self.on_fragment = on_fragment
        self.on_error = on_error

        # State tracking
        self._state = MeetingState.IDLE
        self._running = False
        self.session: Optional[SpeechSession] = None
        self.meeting_title = ""
        self.started_at: Optional[datetime] = None
        self.last_result: Optional[FlushResult] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._confirm_handle: Optional[asyncio.TimerHandle] = None
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._stats = {
            "polls": 0,
            "meetings": 0,
            "flushes": 0,
            "flush_failures": 0,
            "captions_added": 0,
            "duplicates_skipped": 0,
            "errors": 0,
        }

        logger.info(f"MeetingLifecycle initialized: poll_interval={poll_interval}s")

    async def run(self, max_iterations: Optional[int] = None):
        """
        Poll presence until stopped.

        Args:
            max_iterations: Optional limit on number of poll cycles.
                           None = run indefinitely until stopped.
        """
        self._running = True
        logger.info("Starting presence polling")
        iteration = 0

        while self._running:
            try:
                await self.check_presence()
            except Exception as e:
                logger.error(f"Error in presence loop: {e}")
                self._stats["errors"] += 1
            iteration += 1

            if max_iterations and iteration >= max_iterations:
                logger.info(f"Reached max iterations ({max_iterations}), stopping")
                break

            await asyncio.sleep(self.poll_interval)

        self._running = False
        self._log_final_stats()

    def stop(self):
        """Signal the polling loop to stop."""
        logger.info("Stopping meeting lifecycle...")
        self._running = False

    async def shutdown(self):
        """Stop polling, end any meeting in progress and wait for its flush."""
        self.stop()
        self._cancel_confirm()
        if self._state is MeetingState.ACTIVE:
            await self._end_meeting()
        await self.wait_for_flush()

    async def check_presence(self):
        """Single poll: evaluate the presence check and apply the result."""
        self._stats["polls"] += 1
        try:
            present = bool(self.presence_check())
        except Exception as e:
            logger.error(f"Presence check failed: {e}")
            self._stats["errors"] += 1
            return
        await self.update_presence(present)

    async def update_presence(self, present: bool):
        if present and self._state is MeetingState.IDLE:
            await self._start_meeting()
        elif not present and self._state is MeetingState.ACTIVE:
            await self._end_meeting()

    def observe_end_marker(self):
        """
        Report an explicit end-of-call signal (leave button, call-ended screen).

        The meeting only ends if presence is still absent after
        end_confirm_delay.
        """
        if self._state is not MeetingState.ACTIVE or self._confirm_handle is not None:
            return
        logger.info(f"End-of-call marker seen, confirming in {self.end_confirm_delay}s")
        loop = asyncio.get_running_loop()
        self._confirm_handle = loop.call_later(
            self.end_confirm_delay, self._spawn_later, self._confirm_end
        )

    def observe_caption(self, text: str) -> bool:
        """
        Record caption text observed on the meeting page.

        Returns:
            True if the caption was added to the transcript
        """
        if self._state is MeetingState.IDLE:
            return False
        text = (text or "").strip()
        if len(text) <= MIN_CAPTION_LENGTH:
            return False
        if self.store.add_observed(text) is None:
            self._stats["duplicates_skipped"] += 1
            return False
        self._stats["captions_added"] += 1
        return True

    async def wait_for_flush(self):
        """Wait until the lifecycle is back to IDLE."""
        await self._idle.wait()

    async def _start_meeting(self):
        self.store.clear()
        self.meeting_title = self._resolve_title()
        self.started_at = datetime.now(timezone.utc)
        self._state = MeetingState.ACTIVE
        self._idle.clear()
        self._stats["meetings"] += 1
        logger.info(f"Meeting started: {self.meeting_title}")

        self.session = self.session_factory(
            store=self.store,
            on_fragment=self._handle_fragment,
            on_error=self._handle_session_error,
        )
        try:
            await self.session.start()
        except SpeechSessionError as e:
            # Captions can still fill the transcript without the microphone
            logger.error(f"Could not start speech recognition: {e}")
            self._forward_error(e.kind)

    async def _end_meeting(self):
        self._cancel_confirm()
        self._state = MeetingState.ENDING
        logger.info(f"Meeting ended: {self.meeting_title}")
        if self.session is not None:
            self.session.stop()

        if self.store.is_empty:
            logger.info("No transcript captured")
            await self._flush()
        else:
            loop = asyncio.get_running_loop()
            self._flush_handle = loop.call_later(self.grace_delay, self._spawn_later, self._flush)

    async def _confirm_end(self):
        self._confirm_handle = None
        if self._state is not MeetingState.ACTIVE:
            return
        try:
            present = bool(self.presence_check())
        except Exception as e:
            logger.error(f"Presence check failed: {e}")
            self._stats["errors"] += 1
            return
        if present:
            logger.info("End-of-call marker not confirmed, meeting still active")
            return
        await self._end_meeting()

    async def _flush(self):
        self._flush_handle = None
        if self._state is not MeetingState.ENDING:
            return

        try:
            if self.session is not None:
                await self.session.close()
            payload = FlushPayload(
                transcript=self.store.full_text(),
                meeting_title=self.meeting_title,
                timestamp=datetime.now(timezone.utc).isoformat(),
            )
            result = await self._hand_off(payload)
        finally:
            self.session = None
            self._state = MeetingState.IDLE
            self._idle.set()

        self._stats["flushes"] += 1
        if result.status is FlushStatus.FAILED:
            self._stats["flush_failures"] += 1
        logger.info(f"Meeting flushed: {result.status.value}")
        self.last_result = result

        if self.on_flush:
            try:
                self.on_flush(result)
            except Exception as e:
                logger.error(f"Error in on_flush callback: {e}")

    async def _hand_off(self, payload: FlushPayload) -> FlushResult:
        if not payload.transcript.strip():
            return await summarize_payload(payload, self.summarizer, self.style)

        archive_id = None
        if self.archive is not None:
            try:
                archive_id = await asyncio.to_thread(self.archive.save_meeting, payload)
            except ArchiveError as e:
                logger.error(f"Transcript not archived: {e}")

        result = await summarize_payload(payload, self.summarizer, self.style)
        result.archive_id = archive_id

        if archive_id and result.status is FlushStatus.SUMMARIZED:
            await asyncio.to_thread(
                self.archive.mark_summarized, archive_id, result.summary, self.style.value
            )
        return result

    def _handle_fragment(self, fragment: Fragment):
        if self.on_fragment:
            try:
                self.on_fragment(fragment)
            except Exception as e:
                logger.error(f"Error in on_fragment callback: {e}")

    def _handle_session_error(self, kind: ErrorKind):
        if kind.is_fatal:
            logger.error(f"Speech capture unavailable ({kind.value}), stopping speech recognition")
            if self.session is not None:
                self.session.stop()
        elif kind is ErrorKind.NETWORK_ERROR:
            logger.warning("Network error during speech recognition")
        self._forward_error(kind)

    def _forward_error(self, kind: ErrorKind):
        self._stats["errors"] += 1
        if self.on_error:
            try:
                self.on_error(kind)
            except Exception as e:
                logger.error(f"Error in on_error callback: {e}")

    def _resolve_title(self) -> str:
        if self.title_provider:
            try:
                title = self.title_provider()
            except Exception as e:
                logger.warning(f"Could not read meeting title: {e}")
                title = None
            if title and title.strip():
                return title.strip()
        return DEFAULT_TITLE

    def _spawn_later(self, coro_fn: Callable):
        task = asyncio.ensure_future(coro_fn())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_confirm(self):
        if self._confirm_handle is not None:
            self._confirm_handle.cancel()
            self._confirm_handle = None

    def _log_final_stats(self):
        """Log final statistics when polling stops."""
        logger.info(
            f"Meeting lifecycle stopped. Stats: "
            f"polls={self._stats['polls']}, "
            f"meetings={self._stats['meetings']}, "
            f"flushes={self._stats['flushes']}, "
            f"flush_failures={self._stats['flush_failures']}, "
            f"captions_added={self._stats['captions_added']}, "
            f"errors={self._stats['errors']}"
        )

    @property
    def state(self) -> MeetingState:
        return self._state

    @property
    def stats(self) -> dict:
        """Get current lifecycle statistics."""
        return self._stats.copy()

    @property
    def is_running(self) -> bool:
        """Check if the polling loop is currently running."""
        return self._running
