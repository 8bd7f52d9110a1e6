from __future__ import annotations

import re
from collections import Counter

from models import SpeechMetrics

FILLER_WORDS = frozenset(
    {
        "um",
        "uh",
        "hmm",
        "like",
        "actually",
        "basically",
        "literally",
        "so",
    }
)
FILLER_PHRASES = (
    "you know",
    "i mean",
    "kind of",
    "sort of",
    "if you will",
    "to be honest",
)

# A word outside the predefined list becomes a filler only when it is both
# frequent in absolute terms and dense relative to the recording length.
DYNAMIC_MIN_COUNT = 5
DYNAMIC_MIN_RATE_PER_MINUTE = 5.0

# Articles, pronouns, auxiliaries and other glue words that are frequent in
# any speech and say nothing about verbal tics.
COMMON_WORDS = frozenset(
    {
        "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
        "be", "being", "am", "have", "has", "had", "do", "does", "did", "will",
        "would", "could", "should", "may", "might", "must", "shall", "can",
        "this", "that", "these", "those", "i", "you", "he", "she", "it", "we",
        "they", "me", "him", "her", "us", "them", "my", "your", "his", "its",
        "our", "their", "mine", "yours", "i'm", "it's", "that's", "there",
        "here", "what", "which", "who", "when", "where", "why", "how", "all",
        "each", "every", "both", "few", "more", "most", "other", "some",
        "such", "no", "nor", "not", "only", "own", "same", "than", "too",
        "very", "just", "if", "then", "about", "into", "up", "out", "don't",
    }
)

_EDGE_PUNCTUATION = re.compile(r"^[\W_]+|[\W_]+$")


def tokenize(text: str) -> list[str]:
    """Split on whitespace, lower-case, and trim punctuation from both ends.

    Tokens made only of punctuation come back as empty strings so that the
    caller still sees one entry per whitespace-separated word.
    """
    return [_EDGE_PUNCTUATION.sub("", raw.lower()) for raw in text.split()]


def word_frequencies(tokens: list[str]) -> Counter[str]:
    return Counter(
        token for token in tokens if len(token) >= 2 and token not in COMMON_WORDS
    )


def count_phrase(joined: str, phrase: str) -> int:
    """Non-overlapping left-to-right count of a whole-word phrase."""
    pattern = r"(?<!\S)" + re.escape(phrase) + r"(?!\S)"
    return len(re.findall(pattern, joined))


def count_filler_words(tokens: list[str], duration_minutes: float) -> dict[str, int]:
    counts: dict[str, int] = {}

    predefined = Counter(token for token in tokens if token in FILLER_WORDS)
    counts.update(predefined)

    joined = " ".join(tokens)
    # Occurrences of a word already accounted for inside a matched phrase.
    consumed: Counter[str] = Counter()
    for phrase in FILLER_PHRASES:
        phrase_count = count_phrase(joined, phrase)
        if phrase_count:
            counts[phrase] = phrase_count
            for word in phrase.split():
                consumed[word] += phrase_count

    if duration_minutes > 0:
        for word, total in word_frequencies(tokens).items():
            if word in counts or word in FILLER_WORDS:
                continue
            count = total - consumed[word]
            if (
                count >= DYNAMIC_MIN_COUNT
                and count / duration_minutes >= DYNAMIC_MIN_RATE_PER_MINUTE
            ):
                counts[word] = count

    return dict(sorted(counts.items(), key=lambda item: item[1], reverse=True))


def detect(transcript: str, duration_minutes: float) -> SpeechMetrics:
    tokens = tokenize(transcript or "")
    if not tokens:
        return SpeechMetrics(total_words=0, wpm=0.0, filler_counts={})

    total_words = len(tokens)
    wpm = total_words / duration_minutes if duration_minutes > 0 else 0.0
    return SpeechMetrics(
        total_words=total_words,
        wpm=wpm,
        filler_counts=count_filler_words(tokens, duration_minutes),
    )


def build_speech_metrics(transcript: str, duration_seconds: float) -> SpeechMetrics:
    return detect(transcript, duration_seconds / 60 if duration_seconds > 0 else 0.0)
