"""
Time, place and present-entity hints for a summarization unit.

Scans the unit and the few turns before it with plain patterns: time-of-day
words, clock times and weekdays for time; a place noun after a preposition
for location; proper nouns for present entities.
"""

import logging
import re

from .nouns import detect_proper_nouns
from .records import ContextHints
from .turns import get_turn, turn_text

logger = logging.getLogger(__name__)

LOOKBACK_TURNS = 5

TIME_PATTERNS = (
    re.compile(r"\b(morning|afternoon|evening|night|midnight|dawn|dusk|noon)\b", re.IGNORECASE),
    re.compile(r"\b\d{1,2}:\d{2}\s?(?:am|pm)\b", re.IGNORECASE),
    re.compile(r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b", re.IGNORECASE),
)

PLACE_NOUNS = (
    "bookstore", "restaurant", "cafe", "hospital", "library", "museum", "theater",
    "theatre", "cinema", "park", "hotel", "motel", "inn", "pub", "bar", "club",
    "gym", "school", "college", "university", "bank", "church", "temple", "store",
    "shop", "mall", "market", "plaza", "garden", "house", "room", "street", "city",
    "town", "office", "tavern", "castle", "forest", "village", "cave", "palace",
    "harbor", "ship", "camp", "kitchen", "bedroom", "hall", "tower",
)

_PLACE = re.compile(
    r"\b(?:in|at|inside|into|near|outside|to|toward|towards)\s+(?:the|a|an|her|his|their|our)\s+"
    r"((?:[A-Za-z]+\s+)?(?:" + "|".join(PLACE_NOUNS) + r"))\b",
    re.IGNORECASE,
)
_NAMED_PLACE = re.compile(
    r"\b(?:in|at|inside|near)\s+((?:[A-Z][a-z]+\s?){1,3})(?=[\s,.!?]|$)"
)


def find_time_hint(text: str) -> str | None:
    for pattern in TIME_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None


def find_location_hint(text: str) -> str | None:
    match = _PLACE.search(text)
    if match:
        return match.group(1).strip().lower()
    match = _NAMED_PLACE.search(text)
    if match:
        return match.group(1).strip()
    return None


def extract_context_hints(turns: list, indices: list[int], lookback: int = LOOKBACK_TURNS) -> ContextHints:
    """
    Build context hints for the unit covering ``indices``.

    The most recent time/location mention wins; present entities come from
    the unit's own turns only.
    """
    hints = ContextHints()
    if not indices:
        return hints

    first, last = min(indices), max(indices)
    for i in range(max(0, first - lookback), last + 1):
        text = turn_text(get_turn(turns, i))
        if not text:
            continue
        time_hint = find_time_hint(text)
        if time_hint:
            hints.time_hint = time_hint
        location_hint = find_location_hint(text)
        if location_hint:
            hints.location_hint = location_hint

    entities: list[str] = []
    for i in indices:
        for noun in detect_proper_nouns(turn_text(get_turn(turns, i))):
            if noun not in entities and noun != hints.location_hint:
                entities.append(noun)
    hints.present_entities = entities[:8]
    logger.debug("Context hints for %s: %s", indices, hints.describe() or "none")
    return hints
