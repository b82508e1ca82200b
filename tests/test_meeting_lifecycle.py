import asyncio
import functools
from datetime import datetime
from unittest.mock import Mock

import pytest

from transcription.archive import TranscriptArchive
from transcription.meeting_lifecycle import FlushStatus, MeetingLifecycle, summarize_payload
from transcription.models import ErrorKind, FlushPayload, MeetingState, SessionState, SummaryStyle
from transcription.recognition import MockRecognitionEngine
from transcription.speech_session import SpeechSession
from transcription.summarizer import MockSummarizer, SummarizerError
from transcription.transcript_store import TranscriptStore

FIXED_TS = 1_700_000_000.0

SENTENCES = [
    "We reviewed the quarterly numbers and revenue is up eight percent.",
    "Priya will draft the hiring plan for the platform team by Friday.",
    "The launch moves to March so that the security review can finish.",
]


class Presence:
    def __init__(self, value: bool = False):
        self.value = value

    def __call__(self) -> bool:
        return self.value


@pytest.fixture
def engine():
    return MockRecognitionEngine()


@pytest.fixture
def presence():
    return Presence()


@pytest.fixture
def flushes():
    return []


@pytest.fixture
def make_lifecycle(engine, presence, flushes):
    def factory(**kwargs):
        options = dict(
            presence_check=presence,
            session_factory=functools.partial(
                SpeechSession, engine, restart_delay=0.01, silence_timeout=5.0
            ),
            store=TranscriptStore(clock=lambda: FIXED_TS),
            title_provider=lambda: "Weekly sync",
            grace_delay=0.05,
            end_confirm_delay=0.05,
            on_flush=flushes.append,
        )
        options.update(kwargs)
        return MeetingLifecycle(**options)
    return factory


def rendered(texts):
    label = datetime.fromtimestamp(FIXED_TS).strftime("%H:%M:%S")
    return "".join(f"[{label}] {t}\n" for t in texts)


async def speak(lifecycle, engine, texts):
    for text in texts:
        engine.emit_final(text)
    await lifecycle.session.drain()


@pytest.mark.asyncio
async def test_meeting_flow_flushes_transcript_in_order(make_lifecycle, engine, presence, flushes):
    lifecycle = make_lifecycle()

    presence.value = True
    await lifecycle.check_presence()
    assert lifecycle.state is MeetingState.ACTIVE
    assert lifecycle.store.is_empty
    assert lifecycle.session.state is SessionState.LISTENING
    assert lifecycle.meeting_title == "Weekly sync"

    await speak(lifecycle, engine, SENTENCES)

    presence.value = False
    await lifecycle.check_presence()
    assert lifecycle.state is MeetingState.ENDING
    assert flushes == []

    await asyncio.wait_for(lifecycle.wait_for_flush(), timeout=1.0)

    assert lifecycle.state is MeetingState.IDLE
    assert lifecycle.session is None
    assert len(flushes) == 1
    assert flushes[0].payload.transcript == rendered(SENTENCES)
    assert flushes[0].payload.meeting_title == "Weekly sync"
    assert datetime.fromisoformat(flushes[0].payload.timestamp)
    assert flushes[0].status is FlushStatus.SKIPPED


@pytest.mark.asyncio
async def test_trailing_fragments_during_grace_are_flushed(make_lifecycle, engine, presence, flushes):
    lifecycle = make_lifecycle()
    presence.value = True
    await lifecycle.check_presence()
    await speak(lifecycle, engine, SENTENCES[:1])

    presence.value = False
    await lifecycle.update_presence(False)
    assert lifecycle.state is MeetingState.ENDING
    assert lifecycle.observe_caption("one more caption line arriving late")

    await asyncio.wait_for(lifecycle.wait_for_flush(), timeout=1.0)
    assert flushes[0].payload.transcript == rendered(
        [SENTENCES[0], "one more caption line arriving late"]
    )


@pytest.mark.asyncio
async def test_reentrant_end_signals_flush_once(make_lifecycle, engine, presence, flushes):
    lifecycle = make_lifecycle()
    presence.value = True
    await lifecycle.check_presence()
    await speak(lifecycle, engine, SENTENCES[:1])

    presence.value = False
    await lifecycle.check_presence()
    await lifecycle.check_presence()
    lifecycle.observe_end_marker()
    await lifecycle.update_presence(False)

    await asyncio.wait_for(lifecycle.wait_for_flush(), timeout=1.0)
    await asyncio.sleep(0.2)

    assert len(flushes) == 1
    assert lifecycle.state is MeetingState.IDLE


@pytest.mark.asyncio
async def test_empty_meeting_flushes_immediately(make_lifecycle, presence, flushes):
    lifecycle = make_lifecycle()
    presence.value = True
    await lifecycle.check_presence()

    presence.value = False
    await lifecycle.check_presence()

    assert lifecycle.state is MeetingState.IDLE
    assert len(flushes) == 1
    assert flushes[0].status is FlushStatus.EMPTY
    assert flushes[0].error == "No transcript data available"


@pytest.mark.asyncio
async def test_end_marker_ignored_while_still_present(make_lifecycle, presence, flushes):
    lifecycle = make_lifecycle()
    presence.value = True
    await lifecycle.check_presence()

    lifecycle.observe_end_marker()
    await asyncio.sleep(0.15)

    assert lifecycle.state is MeetingState.ACTIVE
    assert flushes == []
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_confirmed_end_marker_ends_meeting(make_lifecycle, engine, presence, flushes):
    lifecycle = make_lifecycle(grace_delay=0.3)
    presence.value = True
    await lifecycle.check_presence()
    await speak(lifecycle, engine, SENTENCES[:2])

    presence.value = False
    lifecycle.observe_end_marker()
    lifecycle.observe_end_marker()
    await asyncio.sleep(0.1)
    assert lifecycle.state is MeetingState.ENDING

    await asyncio.wait_for(lifecycle.wait_for_flush(), timeout=1.0)
    assert len(flushes) == 1
    assert flushes[0].payload.transcript == rendered(SENTENCES[:2])


@pytest.mark.asyncio
async def test_store_is_cleared_between_meetings(make_lifecycle, engine, presence, flushes):
    lifecycle = make_lifecycle()
    presence.value = True
    await lifecycle.check_presence()
    await speak(lifecycle, engine, SENTENCES[:1])
    presence.value = False
    await lifecycle.check_presence()
    await asyncio.wait_for(lifecycle.wait_for_flush(), timeout=1.0)

    presence.value = True
    await lifecycle.check_presence()

    assert lifecycle.state is MeetingState.ACTIVE
    assert lifecycle.store.is_empty
    assert lifecycle.stats["meetings"] == 2
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_flush_summarizes_and_archives(make_lifecycle, engine, presence, flushes):
    summarizer = MockSummarizer()
    archive = TranscriptArchive(location=":memory:")
    lifecycle = make_lifecycle(summarizer=summarizer, archive=archive, style=SummaryStyle.SHORT)

    presence.value = True
    await lifecycle.check_presence()
    await speak(lifecycle, engine, SENTENCES)
    presence.value = False
    await lifecycle.check_presence()
    await asyncio.wait_for(lifecycle.wait_for_flush(), timeout=1.0)

    result = flushes[0]
    assert result.status is FlushStatus.SUMMARIZED
    assert result.summary.startswith("[short summary]")
    cleaned_text, style = summarizer.calls[0]
    assert style is SummaryStyle.SHORT
    assert "[" not in cleaned_text
    assert cleaned_text.splitlines() == SENTENCES

    stored = archive.get_meeting(result.archive_id)
    assert stored.status == "summarized"
    assert stored.summary == result.summary
    assert archive.list_pending() == []
    archive.close()


@pytest.mark.asyncio
async def test_summarizer_failure_still_returns_to_idle(make_lifecycle, engine, presence, flushes):
    summarizer = Mock()
    summarizer.summarize.side_effect = SummarizerError("service unreachable")
    archive = TranscriptArchive(location=":memory:")
    lifecycle = make_lifecycle(summarizer=summarizer, archive=archive)

    presence.value = True
    await lifecycle.check_presence()
    await speak(lifecycle, engine, SENTENCES)
    presence.value = False
    await lifecycle.check_presence()
    await asyncio.wait_for(lifecycle.wait_for_flush(), timeout=1.0)

    assert lifecycle.state is MeetingState.IDLE
    assert flushes[0].status is FlushStatus.FAILED
    assert "unreachable" in flushes[0].error
    assert lifecycle.stats["flush_failures"] == 1

    pending = archive.list_pending()
    assert len(pending) == 1
    assert pending[0].payload.transcript == rendered(SENTENCES)
    archive.close()


@pytest.mark.asyncio
async def test_short_transcript_is_not_summarized(make_lifecycle, engine, presence, flushes):
    summarizer = Mock()
    lifecycle = make_lifecycle(summarizer=summarizer)

    presence.value = True
    await lifecycle.check_presence()
    await speak(lifecycle, engine, ["okay", "sounds good"])
    presence.value = False
    await lifecycle.check_presence()
    await asyncio.wait_for(lifecycle.wait_for_flush(), timeout=1.0)

    assert flushes[0].status is FlushStatus.INSUFFICIENT_CONTENT
    summarizer.summarize.assert_not_called()


@pytest.mark.asyncio
async def test_microphone_loss_stops_session_but_keeps_meeting(make_lifecycle, engine, presence):
    errors = []
    lifecycle = make_lifecycle(on_error=errors.append)
    presence.value = True
    await lifecycle.check_presence()
    session = lifecycle.session

    engine.emit_error("not-allowed")
    await session.drain()

    assert errors == [ErrorKind.PERMISSION_DENIED]
    assert session.state is SessionState.STOPPED
    assert lifecycle.state is MeetingState.ACTIVE
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_session_start_failure_keeps_meeting_active(presence, flushes):
    errors = []
    engine = MockRecognitionEngine(available=False)
    lifecycle = MeetingLifecycle(
        presence_check=presence,
        session_factory=functools.partial(SpeechSession, engine),
        grace_delay=0.01,
        on_flush=flushes.append,
        on_error=errors.append,
    )
    presence.value = True
    await lifecycle.check_presence()

    assert lifecycle.state is MeetingState.ACTIVE
    assert errors == [ErrorKind.UNSUPPORTED_ENVIRONMENT]
    assert lifecycle.observe_caption("caption text still gets recorded")

    await lifecycle.shutdown()
    assert lifecycle.state is MeetingState.IDLE
    assert "caption text still gets recorded" in flushes[0].payload.transcript


@pytest.mark.asyncio
async def test_captions_are_deduplicated(make_lifecycle, presence):
    lifecycle = make_lifecycle()
    assert lifecycle.observe_caption("ignored while idle") is False

    presence.value = True
    await lifecycle.check_presence()

    assert lifecycle.observe_caption("Priya: let's look at the metrics")
    assert lifecycle.observe_caption("let's look at the metrics") is False
    assert lifecycle.observe_caption("short") is False
    assert lifecycle.stats["captions_added"] == 1
    assert lifecycle.stats["duplicates_skipped"] == 1
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_run_polls_until_max_iterations(make_lifecycle, presence, flushes):
    calls = []

    def scripted():
        calls.append(1)
        return len(calls) <= 2

    lifecycle = make_lifecycle(presence_check=scripted, poll_interval=0.01)
    await lifecycle.run(max_iterations=4)
    await asyncio.wait_for(lifecycle.wait_for_flush(), timeout=1.0)

    assert len(calls) == 4
    assert lifecycle.stats["polls"] == 4
    assert lifecycle.stats["meetings"] == 1
    assert len(flushes) == 1
    assert not lifecycle.is_running


@pytest.mark.asyncio
async def test_presence_check_errors_are_counted(make_lifecycle):
    def broken():
        raise RuntimeError("page not ready")

    lifecycle = make_lifecycle(presence_check=broken)
    await lifecycle.check_presence()

    assert lifecycle.state is MeetingState.IDLE
    assert lifecycle.stats["errors"] == 1


@pytest.mark.asyncio
async def test_summarize_payload_for_manual_retry():
    payload = FlushPayload(
        transcript=rendered(SENTENCES),
        meeting_title="Weekly sync",
        timestamp="2024-03-01T10:00:00+00:00",
    )

    result = await summarize_payload(payload, MockSummarizer(), SummaryStyle.DETAILED)

    assert result.status is FlushStatus.SUMMARIZED
    assert result.summary.startswith("[detailed summary]")


@pytest.mark.asyncio
async def test_unexpected_summarizer_error_still_reports_flush(make_lifecycle, engine, presence, flushes):
    summarizer = Mock()
    summarizer.summarize.side_effect = ConnectionError("socket reset")
    lifecycle = make_lifecycle(summarizer=summarizer)

    presence.value = True
    await lifecycle.check_presence()
    await speak(lifecycle, engine, SENTENCES[:1])
    presence.value = False
    await lifecycle.check_presence()
    await asyncio.wait_for(lifecycle.wait_for_flush(), timeout=1.0)

    assert lifecycle.state is MeetingState.IDLE
    assert len(flushes) == 1
    assert flushes[0].status is FlushStatus.FAILED
    assert flushes[0].error == "socket reset"
    assert lifecycle.last_result is flushes[0]
    assert lifecycle.stats["flushes"] == 1
    assert lifecycle.stats["flush_failures"] == 1
