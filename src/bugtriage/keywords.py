"""Reduce a chat message to a short keyword query for the issue tracker."""

import re

MAX_KEYWORDS = 8

_MENTION_RE = re.compile(r"<@[A-Z0-9]+>")
_SLACK_LINK_RE = re.compile(r"<https?://[^|>]+(?:\|[^>]+)?>")
_PLAIN_URL_RE = re.compile(r"https?://\S+")
_SPECIAL_RE = re.compile(r"[^\w\s-]")

STOP_WORDS = frozenset({
    "the", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did",
    "will", "would", "could", "should", "may", "might", "must", "shall",
    "can", "need", "dare", "ought", "used",
    "a", "an", "and", "but", "or", "for", "nor",
    "on", "at", "to", "from", "by", "with", "in", "of",
    "it", "its", "this", "that", "these", "those",
    "i", "you", "he", "she", "we", "they",
    "me", "him", "her", "us", "them",
    "my", "your", "his", "our", "their",
    "not", "no", "yes", "just", "only", "also", "very", "too", "so", "as",
    "if", "when", "where", "why", "how", "what", "which", "who", "whom",
    "whose",
})


def extract_keywords(message: str) -> list[str]:
    """Return up to MAX_KEYWORDS salient lowercase terms, in message order.

    Mentions and URLs are removed first, then punctuation (hyphens survive).
    Tokens of two characters or fewer and stop-words are dropped.
    """
    if not message:
        return []
    cleaned = _MENTION_RE.sub("", message)
    cleaned = _SLACK_LINK_RE.sub("", cleaned)
    cleaned = _PLAIN_URL_RE.sub("", cleaned)
    cleaned = _SPECIAL_RE.sub(" ", cleaned).lower()

    words = [
        word for word in cleaned.split()
        if len(word) > 2 and word not in STOP_WORDS
    ]
    return words[:MAX_KEYWORDS]


def build_search_query(message: str) -> str:
    """Space-joined form of extract_keywords, ready for a tracker search."""
    return " ".join(extract_keywords(message))
