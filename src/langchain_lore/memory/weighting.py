"""
Dynamic importance weighting.

    score = (base + recency * W_RECENCY * 10) * reinforcement
            + emotional * W_EMOTIONAL * 10
            + plot * W_PLOT * 10
            + relationship * W_RELATIONSHIP * 10
            + relevance * W_CONTEXT * 10

clamped to [1, 15]. Every term is non-negative and the reinforcement factor
is at least 1, so a record's dynamic importance never falls below its base
importance.

Recency decays exponentially with age in days (1.0 within a day, floored at
0.1 from 30 days on). Reinforcement grows logarithmically with the number of
times a memory was referenced again and saturates at 5x.
"""

import math
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .annotations import RegexAnnotationParser, infer_memory_type, infer_tone
from .nouns import detect_proper_nouns
from .records import MemoryRecord, MemoryType
from .turns import turn_text

SECONDS_PER_DAY = 86_400

MIN_SCORE = 1.0
MAX_SCORE = 15.0

W_RECENCY = 0.20
W_EMOTIONAL = 0.25
W_PLOT = 0.15
W_RELATIONSHIP = 0.10
W_CONTEXT = 0.30

RECENCY_FLOOR = 0.1
RECENCY_DECAY_RATE = 0.1
FULL_RECENCY_DAYS = 1.0
FLOOR_RECENCY_DAYS = 30.0

REINFORCEMENT_SLOPE = 0.2
REINFORCEMENT_CAP = 5.0

# Boost applied to a sub-score when the memory type matches it
TYPE_MATCH_MULTIPLIER = 1.5

# Context relevance composition
TOPIC_SHARE = 0.4
CHARACTER_SHARE = 0.3
TONE_BONUS = 0.2
TYPE_BONUS = 0.1

CONTEXT_WINDOW_TURNS = 4


class ReinforcementKind(str, Enum):
    MENTION = "mention"
    DIRECT_REFERENCE = "direct_reference"
    PLOT_CONTINUATION = "plot_continuation"
    EMOTIONAL_CALLBACK = "emotional_callback"


REINFORCEMENT_AMOUNTS: dict[ReinforcementKind, int] = {
    ReinforcementKind.MENTION: 1,
    ReinforcementKind.DIRECT_REFERENCE: 2,
    ReinforcementKind.PLOT_CONTINUATION: 3,
    ReinforcementKind.EMOTIONAL_CALLBACK: 2,
}

_DIRECT_REFERENCE = re.compile(
    r"\b(remember when|remember that|back when|like last time|you said|as we agreed)\b",
    re.IGNORECASE,
)
_PLOT_CONTINUATION = re.compile(
    r"\b(continue|continued|again|resume|return to|back to|the plan|next step)\b",
    re.IGNORECASE,
)


@dataclass
class CurrentContext:
    """What the conversation is about right now."""

    topics: list[str] = field(default_factory=list)
    characters: list[str] = field(default_factory=list)
    tone: Optional[str] = None
    memory_type: Optional[MemoryType] = None

    @classmethod
    def from_turns(cls, turns: list, window: int = CONTEXT_WINDOW_TURNS) -> "CurrentContext":
        recent = [turn_text(t) for t in turns[-window:]] if window > 0 else []
        text = "\n".join(t for t in recent if t)
        if not text.strip():
            return cls()
        parsed = RegexAnnotationParser().parse(text)
        lowered = text.lower()
        memory_type, _ = infer_memory_type(lowered)
        tone = infer_tone(lowered)
        return cls(
            topics=parsed.topics,
            characters=detect_proper_nouns(text),
            tone=None if tone == "neutral" else tone,
            memory_type=None if memory_type is MemoryType.GENERAL else memory_type,
        )


def recency_factor(age_days: float) -> float:
    """1.0 up to a day old, 0.1 from 30 days, exponential decay between."""
    if age_days <= FULL_RECENCY_DAYS:
        return 1.0
    if age_days >= FLOOR_RECENCY_DAYS:
        return RECENCY_FLOOR
    return max(RECENCY_FLOOR, math.exp(-RECENCY_DECAY_RATE * age_days))


def reinforcement_factor(count: int) -> float:
    """Identity at one reference, logarithmic growth, capped at 5x."""
    if count <= 1:
        return 1.0
    return min(REINFORCEMENT_CAP, 1.0 + math.log(count) * REINFORCEMENT_SLOPE)


def context_relevance(record: MemoryRecord, context: Optional[CurrentContext]) -> float:
    """
    How much ``record`` bears on the current context, in [0, 1].

    Topic overlap is the fraction of current topics that appear (as a
    case-insensitive substring, either way round) in any memory topic;
    character overlap is the fraction of current characters the memory names
    exactly (case-insensitive). Tone and type matches add flat bonuses.
    """
    if context is None:
        return 0.0

    score = 0.0
    memory_topics = [t.lower() for t in record.topics]
    if context.topics and memory_topics:
        matched = sum(
            1
            for topic in context.topics
            if any(topic.lower() in mt or mt in topic.lower() for mt in memory_topics)
        )
        score += TOPIC_SHARE * matched / len(context.topics)

    memory_characters = {c.lower() for c in record.characters}
    if context.characters and memory_characters:
        matched = sum(1 for c in context.characters if c.lower() in memory_characters)
        score += CHARACTER_SHARE * matched / len(context.characters)

    if context.tone and record.emotional_tone and context.tone.lower() == record.emotional_tone.lower():
        score += TONE_BONUS
    if context.memory_type is not None and context.memory_type == record.memory_type:
        score += TYPE_BONUS

    return min(1.0, score)


def _sub_factor(sub_score: int, matches_type: bool) -> float:
    factor = max(1, min(10, sub_score)) / 10.0
    if matches_type:
        factor *= TYPE_MATCH_MULTIPLIER
    return min(1.0, factor)


class ImportanceWeighter:
    """Computes and writes ``dynamic_importance`` for records."""

    def __init__(self, clock=time.time):
        self._clock = clock

    def age_days(self, record: MemoryRecord, now: Optional[float] = None) -> float:
        now = self._clock() if now is None else now
        return max(0.0, (now - record.created_at) / SECONDS_PER_DAY)

    def score(
        self,
        record: MemoryRecord,
        context: Optional[CurrentContext] = None,
        now: Optional[float] = None,
    ) -> float:
        base = float(max(1, min(10, record.base_importance)))
        recency = recency_factor(self.age_days(record, now)) * W_RECENCY * 10

        value = (base + recency) * reinforcement_factor(record.reinforcement_count)

        emotional = _sub_factor(record.emotional_impact, record.memory_type is MemoryType.EMOTIONAL)
        plot = _sub_factor(record.plot_significance, record.memory_type is MemoryType.PLOT)
        relationship = _sub_factor(
            record.character_development, record.memory_type is MemoryType.RELATIONSHIP
        )
        value += emotional * W_EMOTIONAL * 10
        value += plot * W_PLOT * 10
        value += relationship * W_RELATIONSHIP * 10
        value += context_relevance(record, context) * W_CONTEXT * 10

        value = round(max(MIN_SCORE, min(MAX_SCORE, value)), 3)
        record.dynamic_importance = value
        return value

    def score_all(
        self,
        records: dict[int, MemoryRecord],
        context: Optional[CurrentContext] = None,
        now: Optional[float] = None,
    ) -> None:
        now = self._clock() if now is None else now
        for record in records.values():
            self.score(record, context, now)


def detect_reinforcements(text: str, records: dict[int, MemoryRecord]) -> dict[int, ReinforcementKind]:
    """
    Find records a new turn refers back to.

    A record is mentioned when the turn names one of its characters or
    topics. The mention is upgraded to a direct reference when the turn uses
    recall phrasing, to a plot continuation for plot memories when the turn
    talks about continuing, and to an emotional callback when the turn
    carries the record's (non-neutral) tone.
    """
    if not text or not text.strip():
        return {}
    lowered = text.lower()
    turn_tone = infer_tone(lowered)
    direct = bool(_DIRECT_REFERENCE.search(text))
    continuing = bool(_PLOT_CONTINUATION.search(text))

    found: dict[int, ReinforcementKind] = {}
    for index, record in records.items():
        names = [c for c in record.characters if c and re.search(rf"\b{re.escape(c.lower())}\b", lowered)]
        topics = [t for t in record.topics if t and t.lower() in lowered]
        if not names and not topics:
            continue
        if direct:
            kind = ReinforcementKind.DIRECT_REFERENCE
        elif continuing and record.memory_type is MemoryType.PLOT:
            kind = ReinforcementKind.PLOT_CONTINUATION
        elif turn_tone != "neutral" and turn_tone == record.emotional_tone:
            kind = ReinforcementKind.EMOTIONAL_CALLBACK
        else:
            kind = ReinforcementKind.MENTION
        found[index] = kind
    return found
