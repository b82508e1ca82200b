"""
Speech recognition engines.

An engine runs one continuous recognition stream at a time and reports
what it hears as typed events through an emit callback. Every stream ends
with exactly one EndedEvent, whether it was stopped or died on its own.
"""

import asyncio
import itertools
import json
import logging
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from .models import ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_MODEL_DIR = Path("models") / "vosk-model-small-en-us-0.15"
SAMPLE_RATE = 16000  # Vosk small model expects 16k
BLOCK_MS = 100


@dataclass(frozen=True)
class RecognitionResult:
    """One recognized segment with its alternative transcriptions."""
    alternatives: tuple[str, ...]
    is_final: bool

    @property
    def transcript(self) -> str:
        """The first alternative; the others are ignored."""
        return self.alternatives[0] if self.alternatives else ""


@dataclass(frozen=True)
class ResultEvent:
    """New or updated results, starting at result_index."""
    results: tuple[RecognitionResult, ...]
    result_index: int = 0


@dataclass(frozen=True)
class ErrorEvent:
    code: str  # "no-speech", "audio-capture", "not-allowed", "network", ...
    message: str = ""


@dataclass(frozen=True)
class EndedEvent:
    pass


RecognitionEvent = Union[ResultEvent, ErrorEvent, EndedEvent]
EmitFn = Callable[[RecognitionEvent], None]


class MicrophoneAccessError(Exception):
    """Raised when the microphone probe fails."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind


class RecognitionEngine:
    """
    Interface for continuous speech recognition engines.

    Engines are configured for continuous recognition with interim
    results and a single alternative per result.
    """

    def is_available(self) -> bool:
        """Whether recognition can run in this environment."""
        raise NotImplementedError

    async def probe_microphone(self):
        """
        Open the microphone once and release it immediately.

        Raises:
            MicrophoneAccessError: If access is denied or no device works
        """
        raise NotImplementedError

    def start(self, emit: EmitFn):
        """Begin a new recognition stream reporting through emit."""
        raise NotImplementedError

    def stop(self):
        """Request the current stream to stop. Safe to call repeatedly."""
        raise NotImplementedError


def _load_vosk():
    from vosk import KaldiRecognizer, Model
    return Model, KaldiRecognizer


class VoskRecognitionEngine(RecognitionEngine):
    """
    Offline recognition with Vosk on the default (or configured) microphone.

    Each stream runs capture and recognition in its own daemon thread and
    posts events back to the event loop that started it.
    """

    def __init__(
        self,
        model_path: Union[str, Path] = DEFAULT_MODEL_DIR,
        sample_rate: int = SAMPLE_RATE,
        block_ms: int = BLOCK_MS,
        device: Optional[int] = None,
    ):
        """
        Args:
            model_path: Directory of an unpacked Vosk model
            sample_rate: Capture rate expected by the model
            block_ms: Audio block size; smaller = lower latency, more CPU
            device: sounddevice input device index; None = default mic
        """
        self.model_path = Path(model_path)
        self.sample_rate = sample_rate
        self.block_ms = block_ms
        self.device = device
        self._model = None
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    def is_available(self) -> bool:
        try:
            _load_vosk()
            import sounddevice  # noqa: F401
        except (ImportError, OSError) as e:
            logger.warning(f"Vosk recognition unavailable: {e}")
            return False
        if not self.model_path.is_dir():
            logger.warning(f"Vosk model not found at {self.model_path}")
            return False
        return True

    async def probe_microphone(self):
        await asyncio.to_thread(self._probe)

    def _probe(self):
        import sounddevice as sd

        try:
            sd.check_input_settings(
                device=self.device,
                channels=1,
                dtype="int16",
                samplerate=self.sample_rate,
            )
            stream = sd.RawInputStream(
                samplerate=self.sample_rate,
                device=self.device,
                dtype="int16",
                channels=1,
            )
            stream.start()
            stream.stop()
            stream.close()
        except (sd.PortAudioError, ValueError) as e:
            kind = (
                ErrorKind.PERMISSION_DENIED
                if "permission" in str(e).lower()
                else ErrorKind.DEVICE_UNAVAILABLE
            )
            raise MicrophoneAccessError(kind, f"Failed to access microphone: {e}") from e

    def start(self, emit: EmitFn):
        loop = asyncio.get_running_loop()

        def post(event: RecognitionEvent):
            if not loop.is_closed():
                loop.call_soon_threadsafe(emit, event)

        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run_stream,
            args=(post, self._stop_event),
            daemon=True,
        )
        self._thread.start()

    def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    def _ensure_model(self):
        if self._model is None:
            Model, _ = _load_vosk()
            self._model = Model(str(self.model_path))
        return self._model

    def _run_stream(self, post: EmitFn, stop_event: threading.Event):
        """Capture + recognition loop for one stream. Runs in its own thread."""
        import sounddevice as sd

        audio_queue: queue.Queue[bytes] = queue.Queue()

        def audio_callback(indata, frames, time_info, status):
            # Called by sounddevice from its thread
            if status:
                logger.debug(f"Audio status: {status}")
            audio_queue.put_nowait(bytes(indata))

        try:
            _, KaldiRecognizer = _load_vosk()
            recognizer = KaldiRecognizer(self._ensure_model(), self.sample_rate)
            block_frames = int(self.sample_rate * self.block_ms / 1000)
            last_partial = ""

            with sd.RawInputStream(
                samplerate=self.sample_rate,
                blocksize=block_frames,
                device=self.device,
                dtype="int16",
                channels=1,
                callback=audio_callback,
            ):
                while not stop_event.is_set():
                    try:
                        data = audio_queue.get(timeout=0.1)
                    except queue.Empty:
                        continue
                    if recognizer.AcceptWaveform(data):
                        text = (json.loads(recognizer.Result()).get("text") or "").strip()
                        last_partial = ""
                        if text:
                            post(_single_result(text, is_final=True))
                    else:
                        text = (json.loads(recognizer.PartialResult()).get("partial") or "").strip()
                        if text and text != last_partial:
                            last_partial = text
                            post(_single_result(text, is_final=False))

            text = (json.loads(recognizer.FinalResult()).get("text") or "").strip()
            if text:
                post(_single_result(text, is_final=True))

        except sd.PortAudioError as e:
            logger.error(f"Audio capture failed: {e}")
            post(ErrorEvent(code="audio-capture", message=str(e)))
        except Exception as e:
            logger.error(f"Recognition stream failed: {e}")
            post(ErrorEvent(code="engine-failure", message=str(e)))
        finally:
            post(EndedEvent())


def _single_result(text: str, is_final: bool) -> ResultEvent:
    return ResultEvent(results=(RecognitionResult(alternatives=(text,), is_final=is_final),))


# --- Mock engine for testing without a microphone ---

class MockRecognitionEngine(RecognitionEngine):
    """
    Scripted recognition engine.

    Tests drive it by hand with emit_final(), emit_interim(), emit_error()
    and end(). With utterance_interval set, it also speaks sample sentences
    on its own, which is what the CLI's --mock mode uses.
    """

    SAMPLE_UTTERANCES = [
        "Let's start with a quick update on the release schedule.",
        "The backend migration is done and the dashboards look healthy.",
        "We still need someone to review the onboarding flow before Friday.",
        "Maria will send the updated budget numbers by tomorrow.",
        "I think we should move the launch to the second week of March.",
        "Does anyone have questions before we wrap up?",
    ]

    def __init__(
        self,
        available: bool = True,
        probe_error: Optional[MicrophoneAccessError] = None,
        utterance_interval: Optional[float] = None,
    ):
        self.available = available
        self.probe_error = probe_error
        self.utterance_interval = utterance_interval
        self.start_calls = 0
        self.stop_calls = 0
        self.probe_calls = 0
        self._emit: Optional[EmitFn] = None
        self._script_task: Optional[asyncio.Task] = None

    def is_available(self) -> bool:
        return self.available

    async def probe_microphone(self):
        self.probe_calls += 1
        if self.probe_error is not None:
            raise self.probe_error

    def start(self, emit: EmitFn):
        self.start_calls += 1
        self._emit = emit
        if self.utterance_interval:
            self._script_task = asyncio.ensure_future(self._speak(emit))

    def stop(self):
        self.stop_calls += 1
        self.end()

    @property
    def is_running(self) -> bool:
        return self._emit is not None

    def emit_result(self, *results: RecognitionResult, result_index: int = 0):
        self._require_stream()(ResultEvent(results=tuple(results), result_index=result_index))

    def emit_final(self, text: str):
        self._require_stream()(_single_result(text, is_final=True))

    def emit_interim(self, text: str):
        self._require_stream()(_single_result(text, is_final=False))

    def emit_error(self, code: str, message: str = ""):
        self._require_stream()(ErrorEvent(code=code, message=message))

    def end(self):
        """End the current stream, as if the engine terminated on its own."""
        if self._script_task is not None:
            self._script_task.cancel()
            self._script_task = None
        if self._emit is None:
            return
        emit, self._emit = self._emit, None
        emit(EndedEvent())

    def _require_stream(self) -> EmitFn:
        if self._emit is None:
            raise RuntimeError("No active recognition stream")
        return self._emit

    async def _speak(self, emit: EmitFn):
        for text in itertools.cycle(self.SAMPLE_UTTERANCES):
            await asyncio.sleep(self.utterance_interval / 2)
            words = text.split()
            emit(_single_result(" ".join(words[: len(words) // 2]), is_final=False))
            await asyncio.sleep(self.utterance_interval / 2)
            emit(_single_result(text, is_final=True))
