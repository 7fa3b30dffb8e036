"""
Topic label normalization and per-run canonicalization.
"""
from typing import FrozenSet, Iterable, Optional

DEFAULT_TOPIC = "General"

TOPIC_JACCARD_THRESHOLD = 0.8

# Script and language variants of the same entity
TOPIC_SYNONYMS = {
    "ukraine": "Ukraine",
    "украина": "Ukraine",
    "україна": "Ukraine",
    "russia": "Russia",
    "россия": "Russia",
    "росія": "Russia",
    "cyprus": "Cyprus",
    "кипр": "Cyprus",
}

# Function words ignored when comparing topic token sets
TOPIC_STOPWORDS = frozenset(
    "a an the and or of in on at to for with from by about"
    " в на и о об у з та".split()
)

_TOKEN_STRIP_CHARS = ".,:;!?()[]{}\"'«»"


def normalize_topic(raw: Optional[str]) -> str:
    normalized = (raw or "").strip().lower()
    if not normalized:
        return DEFAULT_TOPIC

    mapped = TOPIC_SYNONYMS.get(normalized)
    if mapped:
        return mapped

    return " ".join(_title_word(word) for word in normalized.split())


def _title_word(word: str) -> str:
    # Each hyphenated part is capitalized; apostrophes are left alone
    return "-".join(part.capitalize() for part in word.split("-"))


def tokenize_topic(topic: str) -> FrozenSet[str]:
    tokens = set()
    for token in topic.lower().split():
        token = token.strip(_TOKEN_STRIP_CHARS)
        if token:
            tokens.add(token)

    significant = tokens - TOPIC_STOPWORDS
    return frozenset(significant or tokens)


def topics_similar(a: str, b: str) -> bool:
    if a == b:
        return True

    a_tokens = tokenize_topic(a)
    b_tokens = tokenize_topic(b)
    if not a_tokens or not b_tokens:
        return False

    union = len(a_tokens | b_tokens)
    if union == 0:
        return False

    jaccard = len(a_tokens & b_tokens) / union
    return jaccard >= TOPIC_JACCARD_THRESHOLD


def canonicalize_topic(topic: str, canonical_topics: Iterable[str]) -> str:
    """
    Map a normalized topic onto the first already-seen canonical topic
    it is similar to, or return it unchanged as a new canonical topic.
    """
    if not topic:
        return ""

    for existing in canonical_topics:
        if topics_similar(topic, existing):
            return existing

    return topic
