"""
Five-tier memory classification.

- permanent:   importance >= 9, or any core memory
- immediate:   the last ``immediate_window`` raw turns, held in full
- long_term:   importance >= 8
- medium_term: importance >= 6 and age <= 200 turns
- short_term:  age <= 50 turns

Checks run in that order and the first match wins; a record matching none
is unfiled. Records inside the immediate window add no entry of their own,
the raw turn stands for them. Age is ``total_turns - index - 1``. Importance
is the record's dynamic importance when it was scored this cycle, else its
base importance.

A bulk summary chunk contributes one entry (its latest filed record), and entries
repeating the text of a higher tier entry are dropped.

The permanent tier also carries entries synthesized from all record text:
character traits and world facts, deduplicated so the most important
statement of a repeated fact wins.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .annotations import extract_traits
from .records import MemoryRecord, MemoryTier
from .turns import format_turns

logger = logging.getLogger(__name__)


@dataclass
class TierEntry:
    index: int
    text: str
    importance: float
    kind: str = "record"  # record | turn | trait | world_fact
    record: Optional[MemoryRecord] = None


@dataclass
class TierSet:
    immediate: list[TierEntry] = field(default_factory=list)
    short_term: list[TierEntry] = field(default_factory=list)
    medium_term: list[TierEntry] = field(default_factory=list)
    long_term: list[TierEntry] = field(default_factory=list)
    permanent: list[TierEntry] = field(default_factory=list)
    unfiled: list[int] = field(default_factory=list)

    def get(self, tier: MemoryTier) -> list[TierEntry]:
        return getattr(self, tier.value)

    def counts(self) -> dict[str, int]:
        return {tier.value: len(self.get(tier)) for tier in MemoryTier}


def _sort_key(entry: TierEntry) -> tuple[float, int]:
    return (-entry.importance, -entry.index)


class TierClassifier:
    def __init__(
        self,
        immediate_window: int = 10,
        short_term_max_age: int = 50,
        medium_term_max_age: int = 200,
        medium_term_threshold: float = 6,
        long_term_threshold: float = 8,
        permanent_threshold: float = 9,
    ):
        self.immediate_window = immediate_window
        self.short_term_max_age = short_term_max_age
        self.medium_term_max_age = medium_term_max_age
        self.medium_term_threshold = medium_term_threshold
        self.long_term_threshold = long_term_threshold
        self.permanent_threshold = permanent_threshold

    def tier_for(self, record: MemoryRecord, index: int, total_turns: int) -> Optional[MemoryTier]:
        age = total_turns - index - 1
        importance = record.importance
        if record.is_core_memory or importance >= self.permanent_threshold:
            return MemoryTier.PERMANENT
        if age < self.immediate_window:
            return MemoryTier.IMMEDIATE
        if importance >= self.long_term_threshold:
            return MemoryTier.LONG_TERM
        if importance >= self.medium_term_threshold and age <= self.medium_term_max_age:
            return MemoryTier.MEDIUM_TERM
        if age <= self.short_term_max_age:
            return MemoryTier.SHORT_TERM
        return None

    def reclassify(self, records: dict[int, MemoryRecord], turns: list) -> TierSet:
        total = len(turns)
        tiers = TierSet()

        start = max(0, total - self.immediate_window)
        for i in range(start, total):
            tiers.immediate.append(
                TierEntry(index=i, text=format_turns([turns[i]]), importance=0.0, kind="turn")
            )

        bulk_latest: dict[tuple[int, int], tuple[MemoryTier, TierEntry]] = {}
        for index, record in records.items():
            tier = self.tier_for(record, index, total)
            record.tier = tier
            if tier is None:
                tiers.unfiled.append(index)
                continue
            if tier is MemoryTier.IMMEDIATE:
                continue  # the raw turn is already held in full
            entry = TierEntry(index=index, text=record.text, importance=record.importance, record=record)
            if record.bulk_range:
                current = bulk_latest.get(record.bulk_range)
                if current is None or index > current[1].index:
                    bulk_latest[record.bulk_range] = (tier, entry)
                continue
            tiers.get(tier).append(entry)

        for tier, entry in bulk_latest.values():
            tiers.get(tier).append(entry)

        tiers.permanent.extend(self.synthesize(records))

        seen: set[str] = set()
        for tier in (MemoryTier.PERMANENT, MemoryTier.LONG_TERM, MemoryTier.MEDIUM_TERM, MemoryTier.SHORT_TERM):
            entries = sorted(tiers.get(tier), key=_sort_key)
            kept = []
            for entry in entries:
                key = " ".join(entry.text.lower().split()).rstrip(".")
                if key in seen:
                    continue
                seen.add(key)
                kept.append(entry)
            setattr(tiers, tier.value, kept)

        logger.debug("Reclassified %d records: %s", len(records), tiers.counts())
        return tiers

    @staticmethod
    def synthesize(records: dict[int, MemoryRecord]) -> list[TierEntry]:
        """Mine traits and world facts; one entry per distinct fact, most important wins."""
        best: dict[tuple, TierEntry] = {}

        def offer(key: tuple, entry: TierEntry) -> None:
            current = best.get(key)
            if current is None or entry.importance > current.importance:
                best[key] = entry

        for index, record in records.items():
            importance = record.importance
            for trait in extract_traits(record.text):
                key = ("trait", trait["character"].lower(), trait["trait"].lower())
                text = f"{trait['character']} is {trait['trait']}"
                offer(key, TierEntry(index, text, importance, kind="trait", record=record))
            for fact in record.world_facts:
                content = (fact.get("content") or "").strip()
                if not content:
                    continue
                subject = fact.get("subject") or content.split(" is ")[0]
                key = ("world_fact", subject.lower(), content.lower().rstrip("."))
                category = fact.get("category") or "general"
                offer(key, TierEntry(index, f"[{category}] {content}", importance, kind="world_fact", record=record))

        return list(best.values())
