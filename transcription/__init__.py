# Live meeting transcription
# Speech session -> transcript store -> meeting lifecycle -> summarizer handoff

from .models import FlushPayload, Fragment, MeetingState, SessionState, SummaryStyle, TranscriptEntry
from .transcript_store import TranscriptStore
from .recognition import MockRecognitionEngine, VoskRecognitionEngine
from .speech_session import SpeechSession, SpeechSessionError
from .meeting_lifecycle import FlushResult, MeetingLifecycle
from .normalizer import normalize
from .summarizer import GeminiSummarizer
from .archive import TranscriptArchive

__all__ = [
    "FlushPayload",
    "Fragment",
    "MeetingState",
    "SessionState",
    "SummaryStyle",
    "TranscriptEntry",
    "TranscriptStore",
    "MockRecognitionEngine",
    "VoskRecognitionEngine",
    "SpeechSession",
    "SpeechSessionError",
    "FlushResult",
    "MeetingLifecycle",
    "normalize",
    "GeminiSummarizer",
    "TranscriptArchive",
]
