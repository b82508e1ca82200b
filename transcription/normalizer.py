"""
Transcript cleanup before summarization.

Strips timestamps, speaker labels and meeting platform artifacts, then
drops lines that are too short or look like noise.
"""

import re

BRACKETED_TIMESTAMP = re.compile(r"\[\d{1,2}:\d{2}:\d{2}(?:\s?[AP]M)?\]", re.IGNORECASE)
BARE_TIMESTAMP = re.compile(r"\d{1,2}:\d{2}:\d{2}(?:\s?[AP]M)?", re.IGNORECASE)
SPEAKER_LABEL = re.compile(r"^[A-Za-z ]+\d*:\s*")
HORIZONTAL_SPACE = re.compile(r"[ \t\f\v\r]+")

PLATFORM_ARTIFACTS = (
    "(joined)",
    "(left)",
    "(recording started)",
    "(recording stopped)",
    "(muted)",
    "(unmuted)",
)
_ARTIFACTS = re.compile("|".join(re.escape(a) for a in PLATFORM_ARTIFACTS), re.IGNORECASE)

NOISE_PATTERNS = (
    re.compile(r"^(um|uh|like|you know|so|well|okay|right|yeah|yes|no)$"),
    re.compile(r"^[a-z]\s*$"),
    re.compile(r"^\d+$"),
    re.compile(r"^[^\w\s]*$"),
    re.compile(r"^(audio|video|connection|quality|issue|problem)$"),
)

MIN_LINE_LENGTH = 10


def is_likely_noise(line: str) -> bool:
    """Check if a line is filler, a bare number, or punctuation only."""
    lowered = line.strip().lower()
    return any(p.match(lowered) for p in NOISE_PATTERNS)


def normalize(raw_transcript) -> str:
    """
    Clean a raw transcript for summarization.

    Never raises. Returns an empty string for non-text or all-noise input,
    which callers should treat as insufficient content.
    """
    if not isinstance(raw_transcript, str) or not raw_transcript:
        return ""

    cleaned = []
    for line in raw_transcript.splitlines():
        line = BRACKETED_TIMESTAMP.sub("", line)
        line = BARE_TIMESTAMP.sub("", line)
        line = SPEAKER_LABEL.sub("", line.strip())
        line = _ARTIFACTS.sub("", line)
        line = HORIZONTAL_SPACE.sub(" ", line).strip()

        # Short lines are mostly noise
        if len(line) <= MIN_LINE_LENGTH or is_likely_noise(line):
            continue
        cleaned.append(line)

    return "\n".join(cleaned)
