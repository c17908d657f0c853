"""
Pattern-based proper noun detection.

Used to guess which characters are present in a turn or a summary when the
model did not annotate them. This is deliberately shallow: capitalized runs,
titles and hyphenated fantasy names, minus function words and calendar names.
"""

import re

_STOPWORDS = {
    "a", "an", "the", "and", "or", "but", "so", "yet", "for", "nor", "if", "then",
    "else", "than", "as", "like", "i", "you", "he", "she", "it", "we", "they",
    "me", "him", "her", "us", "them", "my", "your", "his", "its", "our", "their",
    "this", "that", "these", "those", "here", "there", "where", "when", "what",
    "who", "why", "how", "is", "am", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could", "should",
    "may", "might", "can", "must", "not", "no", "yes", "oh", "ah", "well", "after",
    "before", "while", "once", "now", "later", "soon", "still", "just", "even",
    "suddenly", "meanwhile", "finally", "together", "both", "each", "every",
    "all", "some", "with", "from", "into", "onto", "at", "in", "on", "of", "to",
    "by", "about", "okay", "ok", "user", "assistant", "narrator", "importance",
    "topics", "characters", "tone", "context",
}

_CALENDAR = {
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "january", "february", "march", "april", "june", "july", "august",
    "september", "october", "november", "december",
}

_TITLED = re.compile(
    r"\b(?:Dr|Mr|Mrs|Ms|Miss|Prof|Professor|Sir|Lady|Lord|Duke|Duchess|King|Queen|"
    r"Prince|Princess|Captain|Colonel|General|Admiral)\.?\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b"
)
_CAPITALIZED_RUN = re.compile(r"\b[A-Z][a-z]+(?:['\-][A-Za-z]+)*(?:\s+[A-Z][a-z]+(?:['\-][A-Za-z]+)*)*\b")
_FORMATTING = re.compile(r"(\*\*|__|~~|`|\*|#{1,6}\s*)")


def _clean(text: str) -> str:
    return _FORMATTING.sub("", text or "")


def _is_valid(candidate: str, min_length: int) -> bool:
    if len(candidate) < min_length:
        return False
    lowered = candidate.lower()
    if lowered in _STOPWORDS or lowered in _CALENDAR:
        return False
    return not candidate.isdigit()


def _trim_leading_stopwords(candidate: str) -> str:
    words = candidate.split()
    while words and words[0].lower() in _STOPWORDS:
        words = words[1:]
    return " ".join(words)


def detect_proper_nouns(text: str, min_length: int = 3) -> list[str]:
    """
    Return distinct proper nouns in order of first appearance.

    Shorter nouns contained in a longer detected noun are dropped
    ("Ann" is dropped when "Ann Marie" is present).
    """
    cleaned = _clean(text)
    found: list[str] = []

    for pattern in (_TITLED, _CAPITALIZED_RUN):
        for match in pattern.finditer(cleaned):
            candidate = _trim_leading_stopwords(match.group(0).strip())
            if _is_valid(candidate, min_length) and candidate not in found:
                found.append(candidate)

    result: list[str] = []
    seen_lower: set[str] = set()
    for noun in found:
        lowered = noun.lower()
        if lowered in seen_lower:
            continue
        if any(other != noun and lowered in other.lower().split() for other in found):
            continue
        result.append(noun)
        seen_lower.add(lowered)
    return result
