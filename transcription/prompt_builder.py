"""
Summary prompt construction.

Light text analysis (statistics, key phrases, action items, participants)
used to give the summarizer context about a cleaned transcript.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass

from .models import SummaryStyle

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
    "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
    "to", "was", "will", "with", "um", "uh", "like", "you", "know",
    "so", "well", "okay", "right", "yeah", "yes", "no",
})

WORDS_PER_MINUTE = 200

ACTION_PATTERNS = (
    re.compile(r"(?:will|should|need to|have to|must|going to|plan to)\s+([^.!?]+)", re.IGNORECASE),
    re.compile(r"(?:action item|todo|task|assignment):\s*([^.!?]+)", re.IGNORECASE),
    re.compile(r"(?:follow up|next step|next steps):\s*([^.!?]+)", re.IGNORECASE),
    re.compile(r"(?:assigned to|responsible for|owner):\s*([^.!?]+)", re.IGNORECASE),
)

SPEAKER_PATTERN = re.compile(r"^([A-Za-z ]+):", re.MULTILINE)
NAME_PATTERNS = (
    re.compile(r"\b(?:[Tt]hanks|[Tt]hank you),?[ \t]+([A-Z][a-z]+)"),
    re.compile(r"\b([A-Z][a-z]+),?[ \t]+(?:can you|could you|would you)"),
    re.compile(r"\b(?:[Hh]i|[Hh]ello),?[ \t]+([A-Z][a-z]+)"),
)

STYLE_INSTRUCTIONS = {
    SummaryStyle.SHORT: (
        "Provide a brief 2-3 sentence summary focusing on the main outcome "
        "and key decisions.\n\n"
    ),
    SummaryStyle.DETAILED: (
        "Provide a comprehensive summary including:\n"
        "1. Executive summary (2-3 sentences)\n"
        "2. Detailed discussion points with context\n"
        "3. Decisions made and rationale\n"
        "4. Action items with owners and deadlines\n"
        "5. Next steps and follow-up items\n\n"
    ),
    SummaryStyle.ACTION_ITEMS: (
        "Focus specifically on extracting and organizing:\n"
        "1. All action items and tasks mentioned\n"
        "2. Who is responsible for each item\n"
        "3. Any deadlines or timeframes mentioned\n"
        "4. Priority levels if indicated\n\n"
    ),
    SummaryStyle.STANDARD: (
        "Provide a clear and concise summary including:\n"
        "1. Executive summary (2-3 sentences)\n"
        "2. Key discussion points (bulleted)\n"
        "3. Action items and responsibilities (if mentioned)\n"
        "4. Important decisions or outcomes\n\n"
    ),
}


@dataclass(frozen=True)
class TextStatistics:
    word_count: int = 0
    sentence_count: int = 0
    paragraph_count: int = 0
    average_words_per_sentence: int = 0
    reading_time_minutes: int = 0


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens without punctuation, stop words or 1-letter words."""
    if not text:
        return []
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    return [w for w in words if len(w) > 1 and w not in STOP_WORDS]


def extract_key_phrases(text: str, max_phrases: int = 10) -> list[str]:
    """Most frequent 2- and 3-word phrases, within sentence boundaries."""
    if not text:
        return []

    counts: Counter = Counter()
    for sentence in re.split(r"[.!?]+", text):
        words = tokenize(sentence)
        for i in range(len(words) - 1):
            counts[" ".join(words[i:i + 2])] += 1
            if i < len(words) - 2:
                counts[" ".join(words[i:i + 3])] += 1

    return [phrase for phrase, _ in counts.most_common(max_phrases)]


def extract_action_items(text: str) -> list[str]:
    """Commitments and assignments, de-duplicated in order of appearance."""
    if not text:
        return []

    items = []
    for pattern in ACTION_PATTERNS:
        for match in pattern.finditer(text):
            item = match.group(1).strip()
            if item and item not in items:
                items.append(item)
    return items


def extract_participants(text: str) -> list[str]:
    """Names from speaker labels and direct address ("thanks, Anna")."""
    if not text:
        return []

    participants = []
    for match in SPEAKER_PATTERN.finditer(text):
        name = match.group(1).strip()
        if 1 < len(name) < 30 and "Speaker" not in name and name not in participants:
            participants.append(name)

    for pattern in NAME_PATTERNS:
        for match in pattern.finditer(text):
            name = match.group(1)
            if len(name) > 1 and name not in participants:
                participants.append(name)
    return participants


def text_statistics(text: str) -> TextStatistics:
    if not text:
        return TextStatistics()

    word_count = len(text.split())
    sentence_count = len([s for s in re.split(r"[.!?]+", text) if s.strip()])
    paragraph_count = len([p for p in re.split(r"\n\s*\n", text) if p.strip()])
    return TextStatistics(
        word_count=word_count,
        sentence_count=sentence_count,
        paragraph_count=paragraph_count,
        average_words_per_sentence=round(word_count / sentence_count) if sentence_count else 0,
        reading_time_minutes=math.ceil(word_count / WORDS_PER_MINUTE),
    )


def build_summary_prompt(text: str, style: SummaryStyle = SummaryStyle.STANDARD) -> str:
    """
    Build the summarization prompt for a cleaned transcript.

    Args:
        text: Normalized transcript text
        style: Summary style; selects the instruction block

    Returns:
        Prompt with meeting context, instructions and the transcript
    """
    stats = text_statistics(text)
    key_phrases = extract_key_phrases(text, 5)
    participants = extract_participants(text)
    action_items = extract_action_items(text)

    prompt = (
        "You are an AI meeting assistant. Analyze and summarize the following "
        "meeting transcript.\n\n"
    )

    if stats.word_count > 0:
        prompt += "Meeting Context:\n"
        prompt += f"- Word count: {stats.word_count}\n"
        prompt += f"- Estimated duration: {stats.reading_time_minutes} minutes of content\n"
        if participants:
            prompt += f"- Participants mentioned: {', '.join(participants)}\n"
        if key_phrases:
            prompt += f"- Key topics: {', '.join(key_phrases)}\n"
        if action_items:
            prompt += f"- Possible action items: {'; '.join(action_items)}\n"
        prompt += "\n"

    prompt += STYLE_INSTRUCTIONS.get(style, STYLE_INSTRUCTIONS[SummaryStyle.STANDARD])
    prompt += f"Meeting Transcript:\n{text}"
    return prompt
