import asyncio

import pytest

from transcription.models import EntryKind, ErrorKind, SessionState
from transcription.recognition import (
    MicrophoneAccessError,
    MockRecognitionEngine,
    RecognitionResult,
)
from transcription.speech_session import SpeechSession, SpeechSessionError, StartResult
from transcription.transcript_store import TranscriptStore


@pytest.fixture
def engine():
    return MockRecognitionEngine()


@pytest.fixture
def fragments():
    return []


@pytest.fixture
def errors():
    return []


@pytest.fixture
def session(engine, fragments, errors):
    return SpeechSession(
        engine,
        TranscriptStore(),
        on_fragment=fragments.append,
        on_error=errors.append,
        restart_delay=0.05,
        silence_timeout=5.0,
    )


@pytest.mark.asyncio
async def test_start_begins_listening(session, engine):
    result = await session.start()

    assert result is StartResult.STARTED
    assert session.state is SessionState.LISTENING
    assert engine.probe_calls == 1
    assert engine.start_calls == 1
    await session.close()


@pytest.mark.asyncio
async def test_start_twice_reports_already_listening(session, engine):
    await session.start()
    assert await session.start() is StartResult.ALREADY_LISTENING
    assert engine.start_calls == 1
    await session.close()


@pytest.mark.asyncio
async def test_start_fails_when_engine_unavailable():
    session = SpeechSession(MockRecognitionEngine(available=False), TranscriptStore())

    with pytest.raises(SpeechSessionError) as exc_info:
        await session.start()

    assert exc_info.value.kind is ErrorKind.UNSUPPORTED_ENVIRONMENT
    assert session.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_start_fails_when_microphone_denied():
    engine = MockRecognitionEngine(
        probe_error=MicrophoneAccessError(ErrorKind.PERMISSION_DENIED, "denied")
    )
    session = SpeechSession(engine, TranscriptStore())

    with pytest.raises(SpeechSessionError) as exc_info:
        await session.start()

    assert exc_info.value.kind is ErrorKind.PERMISSION_DENIED
    assert session.state is SessionState.IDLE
    assert engine.start_calls == 0


@pytest.mark.asyncio
async def test_results_flow_into_store(session, engine, fragments):
    await session.start()

    engine.emit_interim("the deadline")
    await session.drain()
    assert session.store.interim.text == "the deadline"
    assert fragments[-1].kind is EntryKind.INTERIM
    assert fragments[-1].merged_transcript == "the deadline"

    engine.emit_final("the deadline is Friday")
    await session.drain()
    assert session.store.interim is None
    assert [e.text for e in session.store.entries] == ["the deadline is Friday"]
    assert fragments[-1].kind is EntryKind.FINAL
    assert fragments[-1].text == "the deadline is Friday"
    assert fragments[-1].merged_transcript.endswith("the deadline is Friday\n")
    await session.close()


@pytest.mark.asyncio
async def test_mixed_result_appends_final_then_sets_interim(session, engine):
    await session.start()

    engine.emit_result(
        RecognitionResult(alternatives=("already settled",), is_final=True),
        RecognitionResult(alternatives=("finished part", "alternative ignored"), is_final=True),
        RecognitionResult(alternatives=("still talking",), is_final=False),
        result_index=1,
    )
    await session.drain()

    assert [e.text for e in session.store.entries] == ["finished part"]
    assert session.store.interim.text == "still talking"
    await session.close()


@pytest.mark.asyncio
async def test_no_speech_error_is_absorbed(session, engine, errors):
    await session.start()
    engine.emit_error("no-speech")
    engine.emit_error("aborted")
    await session.drain()

    assert errors == []
    assert session.state is SessionState.LISTENING
    await session.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code, kind",
    [
        ("not-allowed", ErrorKind.PERMISSION_DENIED),
        ("audio-capture", ErrorKind.DEVICE_UNAVAILABLE),
        ("network", ErrorKind.NETWORK_ERROR),
    ],
)
async def test_fatal_errors_are_surfaced_without_state_change(session, engine, errors, code, kind):
    await session.start()
    engine.emit_error(code)
    await session.drain()

    assert errors == [kind]
    assert session.state is SessionState.LISTENING
    await session.close()


@pytest.mark.asyncio
async def test_natural_end_restarts_after_delay(session, engine):
    await session.start()

    engine.end()
    await session.drain()
    assert session.state is SessionState.RESTARTING
    assert engine.start_calls == 1

    await asyncio.sleep(0.2)
    assert session.state is SessionState.LISTENING
    assert engine.start_calls == 2
    assert session.stats["restarts"] == 1
    await session.close()


@pytest.mark.asyncio
async def test_stop_prevents_restart_during_delay(session, engine):
    await session.start()
    engine.end()
    await session.drain()
    assert session.state is SessionState.RESTARTING

    session.stop()
    await asyncio.sleep(0.2)

    assert session.state is SessionState.STOPPED
    assert engine.start_calls == 1
    await session.close()


@pytest.mark.asyncio
async def test_stop_does_not_restart_when_stream_ends(session, engine):
    await session.start()
    session.stop()
    await session.drain()
    await asyncio.sleep(0.2)

    assert session.state is SessionState.STOPPED
    assert engine.stop_calls == 1
    assert engine.start_calls == 1
    await session.close()


@pytest.mark.asyncio
async def test_stop_is_idempotent(session, engine):
    session.stop()
    session.stop()
    assert session.state is SessionState.STOPPED

    await session.start()
    session.stop()
    session.stop()
    await session.drain()
    assert session.state is SessionState.STOPPED
    await session.close()


@pytest.mark.asyncio
async def test_silence_forces_restart(engine):
    session = SpeechSession(
        engine,
        TranscriptStore(),
        restart_delay=0.01,
        silence_timeout=0.05,
    )
    await session.start()

    await asyncio.sleep(0.3)

    assert session.stats["silence_restarts"] >= 1
    assert engine.stop_calls >= 1
    assert engine.start_calls >= 2
    assert session.state in (SessionState.LISTENING, SessionState.RESTARTING)
    await session.close()


@pytest.mark.asyncio
async def test_results_postpone_silence_watchdog(engine):
    session = SpeechSession(
        engine,
        TranscriptStore(),
        restart_delay=0.01,
        silence_timeout=0.15,
    )
    await session.start()

    for i in range(4):
        await asyncio.sleep(0.05)
        engine.emit_interim(f"still speaking {i}")
        await session.drain()

    assert session.stats["silence_restarts"] == 0
    assert engine.start_calls == 1
    await session.close()


@pytest.mark.asyncio
async def test_failed_restart_reports_error_and_goes_idle(session, engine, errors):
    await session.start()
    engine.probe_error = MicrophoneAccessError(ErrorKind.DEVICE_UNAVAILABLE, "unplugged")

    engine.end()
    await session.drain()
    await asyncio.sleep(0.2)

    assert session.state is SessionState.IDLE
    assert errors == [ErrorKind.DEVICE_UNAVAILABLE]
    assert engine.start_calls == 1
    await session.close()


@pytest.mark.asyncio
async def test_trailing_results_after_stop_are_kept(session, engine):
    await session.start()
    engine.emit_final("last words before leaving")
    session.stop()
    await session.drain()

    assert [e.text for e in session.store.entries] == ["last words before leaving"]
    await session.close()


@pytest.mark.asyncio
async def test_callback_errors_do_not_break_session(engine):
    def broken(_):
        raise RuntimeError("boom")

    session = SpeechSession(engine, TranscriptStore(), on_fragment=broken, on_error=broken)
    await session.start()
    engine.emit_final("still recorded")
    engine.emit_error("network")
    await session.drain()

    assert len(session.store) == 1
    assert session.state is SessionState.LISTENING
    await session.close()


class GatedProbeEngine(MockRecognitionEngine):
    """Holds the microphone probe open until the test releases it."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def probe_microphone(self):
        self.probe_calls += 1
        await self.gate.wait()


class LaggingEngine(MockRecognitionEngine):
    """Delivers its last final result and end event shortly after stop()."""

    def __init__(self, lag: float = 0.05, trailing: str = "and that wraps up the release notes"):
        super().__init__()
        self.lag = lag
        self.trailing = trailing

    def stop(self):
        self.stop_calls += 1
        asyncio.get_running_loop().call_later(self.lag, self._finish)

    def _finish(self):
        if not self.is_running:
            return
        self.emit_final(self.trailing)
        self.end()


class SilentEngine(MockRecognitionEngine):
    """Never reports the end of a stream."""

    def stop(self):
        self.stop_calls += 1


@pytest.mark.asyncio
async def test_stop_during_probe_cancels_start():
    engine = GatedProbeEngine()
    session = SpeechSession(engine, TranscriptStore())

    pending = asyncio.ensure_future(session.start())
    await asyncio.sleep(0.01)
    assert engine.probe_calls == 1

    session.stop()
    engine.gate.set()

    assert await pending is StartResult.CANCELLED
    assert session.state is SessionState.STOPPED
    assert engine.start_calls == 0
    await session.close()


@pytest.mark.asyncio
async def test_start_while_restarting_reports_already_listening(session, engine):
    await session.start()
    engine.end()
    await session.drain()
    assert session.state is SessionState.RESTARTING

    assert await session.start() is StartResult.ALREADY_LISTENING
    assert engine.start_calls == 1

    await asyncio.sleep(0.2)
    assert session.state is SessionState.LISTENING
    assert engine.start_calls == 2
    await session.close()


@pytest.mark.asyncio
async def test_close_waits_for_trailing_results():
    engine = LaggingEngine()
    store = TranscriptStore()
    session = SpeechSession(engine, store)
    await session.start()

    await session.close()

    assert [entry.text for entry in store.entries] == ["and that wraps up the release notes"]
    assert not engine.is_running


@pytest.mark.asyncio
async def test_close_gives_up_on_stream_that_never_ends():
    engine = SilentEngine()
    session = SpeechSession(engine, TranscriptStore(), end_timeout=0.05)
    await session.start()

    await asyncio.wait_for(session.close(), timeout=1.0)

    assert session.state is SessionState.STOPPED
    assert engine.stop_calls >= 1
