#!/usr/bin/env python3
"""
Main entrypoint for live meeting transcription.

Runs a long-running process that:
1. Watches for meeting presence
2. Transcribes the microphone while a meeting is active
3. Archives and summarizes the transcript when the meeting ends

Usage:
    # Live, recording until Ctrl+C:
    export GEMINI_API_KEY="your-api-key"
    export MEETING_URL="https://meet.google.com/abc-defg-hij"
    python -m transcription.main

    # With mock recognition, summarizer and in-memory archive:
    python -m transcription.main --mock --meeting-duration 20

    # Re-run summarization for the last archived meeting:
    python -m transcription.main --retry-last

Environment Variables:
    GEMINI_API_KEY: API key for summarization
    GEMINI_API_URL: (optional) Custom Gemini API base URL
    GEMINI_MODEL: (optional) Model name, default: gemini-pro
    SUMMARY_STYLE: (optional) standard, short, detailed, action-items
    MEETING_URL: Meeting page URL used for presence detection
    MEETING_URL_FILE: (optional) File re-read on every poll for the current URL
    MEETING_TITLE: (optional) Meeting title override
    QDRANT_HOST: (optional) Qdrant host, default: localhost
    QDRANT_PORT: (optional) Qdrant port, default: 6333
    VOSK_MODEL_PATH: (optional) Vosk model directory
    AUDIO_DEVICE: (optional) sounddevice input device index
    POLL_INTERVAL: (optional) Seconds between presence polls, default: 5.0
    RESTART_DELAY: (optional) Seconds before restarting recognition, default: 1.0
    SILENCE_TIMEOUT: (optional) Seconds of silence before a restart, default: 30.0
    GRACE_DELAY: (optional) Seconds to wait for trailing speech, default: 2.0
"""

import argparse
import asyncio
import functools
import logging
import os
import signal
import sys
from pathlib import Path

from .archive import ArchiveError, TranscriptArchive
from .meeting_lifecycle import FlushResult, FlushStatus, MeetingLifecycle, summarize_payload
from .models import Fragment, EntryKind, SummaryStyle
from .presence import TimedPresence, UrlPresenceCheck
from .recognition import DEFAULT_MODEL_DIR, MockRecognitionEngine, VoskRecognitionEngine
from .speech_session import SpeechSession
from .summarizer import GeminiSummarizer, MockSummarizer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def get_config() -> dict:
    """Load configuration from environment variables."""
    audio_device = os.environ.get("AUDIO_DEVICE")
    return {
        "gemini_api_key": os.environ.get("GEMINI_API_KEY"),
        "gemini_api_url": os.environ.get("GEMINI_API_URL"),
        "gemini_model": os.environ.get("GEMINI_MODEL", GeminiSummarizer.DEFAULT_MODEL),
        "summary_style": os.environ.get("SUMMARY_STYLE", SummaryStyle.STANDARD.value),
        "meeting_url": os.environ.get("MEETING_URL"),
        "meeting_url_file": os.environ.get("MEETING_URL_FILE"),
        "meeting_title": os.environ.get("MEETING_TITLE"),
        "qdrant_host": os.environ.get("QDRANT_HOST", "localhost"),
        "qdrant_port": int(os.environ.get("QDRANT_PORT", "6333")),
        "vosk_model_path": os.environ.get("VOSK_MODEL_PATH", str(DEFAULT_MODEL_DIR)),
        "audio_device": int(audio_device) if audio_device else None,
        "poll_interval": float(os.environ.get("POLL_INTERVAL", "5.0")),
        "restart_delay": float(os.environ.get("RESTART_DELAY", "1.0")),
        "silence_timeout": float(os.environ.get("SILENCE_TIMEOUT", "30.0")),
        "grace_delay": float(os.environ.get("GRACE_DELAY", "2.0")),
    }


def validate_config(config: dict, use_mock: bool) -> bool:
    """Validate required configuration."""
    try:
        SummaryStyle(config["summary_style"])
    except ValueError:
        logger.error(f"Unknown SUMMARY_STYLE: {config['summary_style']}")
        return False
    if not use_mock:
        if not config["gemini_api_key"]:
            logger.error("GEMINI_API_KEY environment variable is required")
            return False
        if not config["meeting_url"] and not config["meeting_url_file"]:
            logger.error("MEETING_URL or MEETING_URL_FILE environment variable is required")
            return False
    return True


def build_url_provider(config: dict):
    """Read the meeting URL from MEETING_URL_FILE on every call, else MEETING_URL."""
    url_file = config["meeting_url_file"]
    if not url_file:
        return lambda: config["meeting_url"]
    return lambda: Path(url_file).read_text(encoding="utf-8").strip()


def print_fragment(fragment: Fragment):
    if fragment.kind is EntryKind.FINAL:
        print(f"[final] {fragment.text}", flush=True)
    else:
        print(f"  ... {fragment.text}", end="\r", flush=True)


def print_result(result: FlushResult):
    logger.info(f"Flush result: {result.status.value}")
    if result.summary:
        print("\n" + "=" * 60)
        print(f"Summary: {result.payload.meeting_title}")
        print("=" * 60)
        print(result.summary, flush=True)
    elif result.error:
        logger.warning(f"No summary: {result.error}")
        if result.archive_id:
            logger.info(f"Transcript archived as {result.archive_id}; retry with --retry-last")


async def run_lifecycle(lifecycle: MeetingLifecycle, max_iterations):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lifecycle.stop)
        except NotImplementedError:
            # Windows event loops don't support signal handlers
            signal.signal(sig, lambda signum, frame: lifecycle.stop())

    await lifecycle.run(max_iterations=max_iterations)
    await lifecycle.shutdown()


async def retry_last(archive: TranscriptArchive, summarizer, style: SummaryStyle) -> bool:
    """Summarize the most recent archived meeting again."""
    meeting = archive.get_last_meeting()
    if meeting is None:
        logger.error("No archived meeting to retry")
        return False

    logger.info(f"Retrying summarization for {meeting.meeting_id} ({meeting.payload.meeting_title})")
    result = await summarize_payload(meeting.payload, summarizer, style)
    result.archive_id = meeting.meeting_id
    if result.status is FlushStatus.SUMMARIZED:
        archive.mark_summarized(meeting.meeting_id, result.summary, style.value)
    print_result(result)
    return result.status is FlushStatus.SUMMARIZED


def main():
    """Main entrypoint."""
    parser = argparse.ArgumentParser(
        description="Live meeting transcription and summarization"
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use mock recognition, summarizer and in-memory archive (no mic, no API calls)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum number of presence polls (for testing)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--style",
        choices=[s.value for s in SummaryStyle],
        default=None,
        help="Summary style (overrides SUMMARY_STYLE)",
    )
    parser.add_argument(
        "--no-archive",
        action="store_true",
        help="Don't keep flushed transcripts in Qdrant",
    )
    parser.add_argument(
        "--retry-last",
        action="store_true",
        help="Summarize the last archived meeting again and exit",
    )
    parser.add_argument(
        "--meeting-duration",
        type=float,
        default=20.0,
        help="Length of the simulated meeting in --mock mode (seconds)",
    )
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Load config
    config = get_config()
    if args.style:
        config["summary_style"] = args.style

    if not validate_config(config, args.mock):
        sys.exit(1)
    style = SummaryStyle(config["summary_style"])

    # Initialize collaborators
    if args.mock:
        logger.info("Using mock recognition engine and summarizer")
        summarizer = MockSummarizer()
    else:
        summarizer = GeminiSummarizer(
            api_key=config["gemini_api_key"],
            base_url=config["gemini_api_url"],
            model=config["gemini_model"],
        )

    archive = None
    if not args.no_archive:
        try:
            if args.mock:
                archive = TranscriptArchive(location=":memory:")
            else:
                archive = TranscriptArchive(
                    host=config["qdrant_host"],
                    port=config["qdrant_port"],
                )
        except ArchiveError as e:
            logger.error(f"Failed to connect to Qdrant: {e}")
            logger.error(
                "Ensure Qdrant is running: docker run -p 6333:6333 qdrant/qdrant"
            )
            sys.exit(1)

    if args.retry_last:
        if archive is None:
            logger.error("--retry-last needs the archive")
            sys.exit(1)
        try:
            ok = asyncio.run(retry_last(archive, summarizer, style))
        finally:
            summarizer.close()
            archive.close()
        sys.exit(0 if ok else 1)

    if args.mock:
        engine = MockRecognitionEngine(utterance_interval=3.0)
        presence_check = TimedPresence(duration=args.meeting_duration)
        title_provider = lambda: config["meeting_title"] or "Mock Meeting"
        poll_interval = min(config["poll_interval"], 1.0)
    else:
        engine = VoskRecognitionEngine(
            model_path=config["vosk_model_path"],
            device=config["audio_device"],
        )
        presence_check = UrlPresenceCheck(build_url_provider(config))
        title_provider = lambda: config["meeting_title"] or presence_check.meeting_title()
        poll_interval = config["poll_interval"]

    lifecycle = MeetingLifecycle(
        presence_check=presence_check,
        session_factory=functools.partial(
            SpeechSession,
            engine,
            restart_delay=config["restart_delay"],
            silence_timeout=config["silence_timeout"],
        ),
        summarizer=summarizer,
        archive=archive,
        title_provider=title_provider,
        style=style,
        poll_interval=poll_interval,
        grace_delay=config["grace_delay"],
        on_flush=print_result,
        on_fragment=print_fragment,
    )
    if args.mock:
        # The simulated meeting happens once; stop polling after its flush
        def on_mock_flush(result: FlushResult):
            print_result(result)
            lifecycle.stop()

        lifecycle.on_flush = on_mock_flush

    logger.info("=" * 60)
    logger.info("Live Meeting Transcription")
    logger.info(f"Summary Style: {style.value}")
    logger.info(f"Poll Interval: {poll_interval}s")
    logger.info(f"Archive: {'off' if archive is None else 'on'}")
    logger.info(f"Mode: {'Mock' if args.mock else 'Live'}")
    logger.info("=" * 60)
    logger.info("Press Ctrl+C to stop")

    try:
        asyncio.run(run_lifecycle(lifecycle, args.max_iterations))
    finally:
        summarizer.close()
        if archive is not None:
            archive.close()
        logger.info("Shutdown complete")


if __name__ == "__main__":
    main()
