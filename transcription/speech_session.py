"""
Continuous speech recognition session.

Keeps a recognition stream alive for the length of a meeting: restarts it
after it ends on its own, forces a fresh stream when results stop arriving,
and publishes recognized fragments into a TranscriptStore.
"""

import asyncio
import functools
import logging
from enum import Enum
from typing import Callable, Optional

from .models import EntryKind, ErrorKind, Fragment, SessionState
from .recognition import (
    EndedEvent,
    ErrorEvent,
    MicrophoneAccessError,
    RecognitionEngine,
    RecognitionEvent,
    ResultEvent,
)
from .transcript_store import TranscriptStore

logger = logging.getLogger(__name__)

RESTART_DELAY = 1.0  # seconds between a stream ending and the next start
SILENCE_TIMEOUT = 30.0  # seconds without results before forcing a new stream
END_TIMEOUT = 2.0  # seconds close() waits for a stopped stream's end event


class StartResult(Enum):
    STARTED = "started"
    ALREADY_LISTENING = "already-listening"
    CANCELLED = "cancelled"  # stop() was called while the start was pending


class SpeechSession:
    """
    Owns one recognition engine handle and the session state machine.

    Engine events arrive on a queue and are handled one at a time by a
    dispatcher task. Errors after start() never propagate out of the
    session; they are reported through on_error.
    """

    def __init__(
        self,
        engine: RecognitionEngine,
        store: TranscriptStore,
        on_fragment: Optional[Callable[[Fragment], None]] = None,
        on_error: Optional[Callable[[ErrorKind], None]] = None,
        restart_delay: float = RESTART_DELAY,
        silence_timeout: float = SILENCE_TIMEOUT,
        end_timeout: float = END_TIMEOUT,
    ):
        """
        Initialize the session.

        Args:
            engine: Recognition engine to drive
            store: Transcript that receives recognized fragments
            on_fragment: Optional callback for each interim/final fragment
            on_error: Optional callback for surfaced recognition errors
            restart_delay: Seconds to wait before restarting an ended stream
            silence_timeout: Seconds without results before forcing a restart
            end_timeout: Seconds close() waits for trailing engine events
        """
        self.engine = engine
        self.store = store
        self.on_fragment = on_fragment
        self.on_error = on_error
        self.restart_delay = restart_delay
        self.silence_timeout = silence_timeout
        self.end_timeout = end_timeout

        self._state = SessionState.IDLE
        self._events: asyncio.Queue = asyncio.Queue()
        self._dispatch_task: Optional[asyncio.Task] = None
        self._start_lock = asyncio.Lock()
        self._stream_id = 0
        self._stream_live = False
        self._stream_ended = asyncio.Event()
        self._stop_count = 0
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._silence_handle: Optional[asyncio.TimerHandle] = None
        self._stats = {
            "streams_started": 0,
            "restarts": 0,
            "silence_restarts": 0,
            "results": 0,
            "errors": 0,
        }

    async def start(self) -> StartResult:
        """
        Probe the microphone and begin listening.

        Returns:
            STARTED, ALREADY_LISTENING if a stream is live or a restart is
            pending, or CANCELLED if stop() ran during the probe

        Raises:
            SpeechSessionError: If recognition is unsupported or the
                                microphone cannot be opened
        """
        async with self._start_lock:
            if self._state in (SessionState.LISTENING, SessionState.RESTARTING):
                logger.info("Already listening")
                return StartResult.ALREADY_LISTENING
            if not await self._open_stream():
                return StartResult.CANCELLED
            return StartResult.STARTED

    def stop(self):
        """Stop listening and disable auto-restart. Safe from any state."""
        self._cancel_timers()
        if self._restart_task is not None:
            self._restart_task.cancel()
            self._restart_task = None

        self._stop_count += 1
        previous = self._state
        self._state = SessionState.STOPPED
        if self._stream_live:
            self.engine.stop()
        if previous is not SessionState.STOPPED:
            logger.info(f"Speech session stopped (was {previous.value})")

    def restart(self):
        """Stop the current stream; its end event starts the next one."""
        if self._state is SessionState.LISTENING and self._stream_live:
            self._cancel_silence_timer()
            self.engine.stop()

    async def drain(self):
        """Wait until every queued engine event has been handled."""
        await self._events.join()

    async def close(self):
        """Stop, handle any trailing events, and shut down the dispatcher."""
        self.stop()
        if self._dispatch_task is None:
            return
        if self._stream_live:
            try:
                await asyncio.wait_for(self._stream_ended.wait(), timeout=self.end_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Recognition stream did not end within {self.end_timeout}s, closing anyway"
                )
        await self.drain()
        self._dispatch_task.cancel()
        try:
            await self._dispatch_task
        except asyncio.CancelledError:
            pass
        self._dispatch_task = None
        self._log_final_stats()

    async def _open_stream(self) -> bool:
        if not self.engine.is_available():
            raise SpeechSessionError(
                ErrorKind.UNSUPPORTED_ENVIRONMENT,
                "Speech recognition is not supported in this environment",
            )

        stop_count = self._stop_count
        try:
            await self.engine.probe_microphone()
        except MicrophoneAccessError as e:
            raise SpeechSessionError(e.kind, str(e)) from e

        if stop_count != self._stop_count:
            logger.info("Session stopped during microphone probe, not starting")
            return False

        self._ensure_dispatcher()
        self._stream_id += 1
        self._stream_ended.clear()
        self.engine.start(functools.partial(self._enqueue, self._stream_id))
        self._stream_live = True
        self._state = SessionState.LISTENING
        self._stats["streams_started"] += 1
        self._reset_silence_timer()
        logger.info(f"Speech recognition started (stream {self._stream_id})")
        return True

    def _enqueue(self, stream_id: int, event: RecognitionEvent):
        self._events.put_nowait((stream_id, event))

    def _ensure_dispatcher(self):
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.ensure_future(self._dispatch_loop())

    async def _dispatch_loop(self):
        while True:
            stream_id, event = await self._events.get()
            try:
                if stream_id != self._stream_id:
                    logger.debug(f"Dropping {type(event).__name__} from stream {stream_id}")
                elif isinstance(event, ResultEvent):
                    self._handle_result(event)
                elif isinstance(event, ErrorEvent):
                    self._handle_error(event)
                elif isinstance(event, EndedEvent):
                    self._handle_ended()
            except Exception as e:
                logger.error(f"Error handling recognition event: {e}")
            finally:
                self._events.task_done()

    def _handle_result(self, event: ResultEvent):
        self._stats["results"] += 1
        final_parts = []
        interim_parts = []
        for result in event.results[event.result_index:]:
            if result.is_final:
                final_parts.append(result.transcript.strip())
            else:
                interim_parts.append(result.transcript)

        final_text = " ".join(p for p in final_parts if p)
        interim_text = "".join(interim_parts).strip()

        if final_text and self.store.append_final(final_text) is not None:
            self._publish(EntryKind.FINAL, final_text)
        if interim_text:
            self.store.set_interim(interim_text)
            self._publish(EntryKind.INTERIM, interim_text)

        if self._state is SessionState.LISTENING:
            self._reset_silence_timer()

    def _handle_error(self, event: ErrorEvent):
        kind = ErrorKind.from_engine_code(event.code)
        if kind is ErrorKind.NO_SPEECH:
            logger.debug("No speech detected, continuing")
            return

        self._stats["errors"] += 1
        if kind is ErrorKind.UNKNOWN:
            logger.warning(f"Speech recognition error: {event.code} {event.message}".rstrip())
            return

        logger.error(f"Speech recognition error: {kind.value} {event.message}".rstrip())
        self._report_error(kind)

    def _handle_ended(self):
        self._stream_live = False
        self._stream_ended.set()
        self._cancel_silence_timer()
        if self._state is SessionState.LISTENING:
            logger.info(f"Recognition stream ended, restarting in {self.restart_delay}s")
            self._state = SessionState.RESTARTING
            loop = asyncio.get_running_loop()
            self._restart_handle = loop.call_later(self.restart_delay, self._begin_restart)
        else:
            logger.info("Recognition stream ended")

    def _begin_restart(self):
        self._restart_handle = None
        self._restart_task = asyncio.ensure_future(self._restart_stream())

    async def _restart_stream(self):
        try:
            async with self._start_lock:
                if self._state is not SessionState.RESTARTING:
                    return
                self._stats["restarts"] += 1
                await self._open_stream()
        except SpeechSessionError as e:
            logger.error(f"Failed to restart speech recognition: {e}")
            self._state = SessionState.IDLE
            self._report_error(e.kind)
        except Exception as e:
            logger.error(f"Unexpected error restarting speech recognition: {e}")
            self._state = SessionState.IDLE
            self._report_error(ErrorKind.UNKNOWN)
        finally:
            if self._restart_task is asyncio.current_task():
                self._restart_task = None

    def _reset_silence_timer(self):
        self._cancel_silence_timer()
        loop = asyncio.get_running_loop()
        self._silence_handle = loop.call_later(self.silence_timeout, self._on_silence)

    def _on_silence(self):
        self._silence_handle = None
        if self._state is SessionState.LISTENING:
            logger.info(f"No results for {self.silence_timeout}s, restarting recognition stream")
            self._stats["silence_restarts"] += 1
            self.restart()

    def _cancel_silence_timer(self):
        if self._silence_handle is not None:
            self._silence_handle.cancel()
            self._silence_handle = None

    def _cancel_timers(self):
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None
        self._cancel_silence_timer()

    def _publish(self, kind: EntryKind, text: str):
        if not self.on_fragment:
            return
        fragment = Fragment(kind=kind, text=text, merged_transcript=self.store.full_text())
        try:
            self.on_fragment(fragment)
        except Exception as e:
            logger.error(f"Error in on_fragment callback: {e}")

    def _report_error(self, kind: ErrorKind):
        if not self.on_error:
            return
        try:
            self.on_error(kind)
        except Exception as e:
            logger.error(f"Error in on_error callback: {e}")

    def _log_final_stats(self):
        logger.info(
            f"Speech session closed. Stats: "
            f"streams={self._stats['streams_started']}, "
            f"restarts={self._stats['restarts']}, "
            f"silence_restarts={self._stats['silence_restarts']}, "
            f"results={self._stats['results']}, "
            f"errors={self._stats['errors']}"
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_listening(self) -> bool:
        return self._state is SessionState.LISTENING

    @property
    def stats(self) -> dict:
        """Get current session statistics."""
        return self._stats.copy()


class SpeechSessionError(Exception):
    """Exception raised when a speech session cannot start."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind
