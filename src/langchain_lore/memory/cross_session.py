"""
Character facts carried over from other conversations.

Records stored for other conversations are mined for statements about
characters who also appear in the current conversation: traits ("Ann is
stubborn"), relationships ("Ann trusts Bob") and, for core memories, the
summary itself. Records older than the configured age are ignored.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from .annotations import extract_traits
from .records import MemoryRecord
from .store import MemoryStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400


@dataclass
class CrossSessionFact:
    conversation_id: str
    text: str
    importance: float
    created_at: float
    characters: list[str] = field(default_factory=list)


def facts_from_record(conversation_id: str, record: MemoryRecord, wanted: set[str]) -> list[CrossSessionFact]:
    """Facts in ``record`` about any of the ``wanted`` (lowercased) characters."""
    facts = []

    def add(text: str, names: list[str]) -> None:
        facts.append(CrossSessionFact(
            conversation_id=conversation_id,
            text=text,
            importance=float(record.base_importance),
            created_at=record.created_at,
            characters=names,
        ))

    for trait in extract_traits(record.text):
        if trait["character"].lower() in wanted:
            add(f"{trait['character']} is {trait['trait']}", [trait["character"]])

    for rel in record.relationships:
        names = [n for n in (rel.get("a"), rel.get("b")) if n]
        if any(n.lower() in wanted for n in names):
            add(f"{rel.get('a')} {rel.get('kind')} {rel.get('b')}", names)

    if record.is_core_memory:
        names = [c for c in record.characters if c.lower() in wanted]
        if names:
            add(record.text, names)
    return facts


class CrossSessionCollector:
    """
    Collects facts about present characters from other stored conversations.

    Usage:
        collector = CrossSessionCollector(store, max_age_days=30)
        facts = collector.collect({"Ann", "Bob"})
    """

    def __init__(
        self,
        store: MemoryStore,
        max_age_days: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_age_days = max_age_days
        self._clock = clock

    def collect(self, characters: Iterable[str]) -> list[CrossSessionFact]:
        wanted = {c.lower() for c in characters if c}
        if not wanted:
            return []

        cutoff = self._clock() - self.max_age_days * SECONDS_PER_DAY
        seen: set[str] = set()
        facts: list[CrossSessionFact] = []
        for conversation_id, records in self.store.other_conversations():
            for record in records.values():
                if record.created_at < cutoff:
                    continue
                for fact in facts_from_record(conversation_id, record, wanted):
                    key = fact.text.lower().rstrip(".")
                    if key in seen:
                        continue
                    seen.add(key)
                    facts.append(fact)

        facts.sort(key=lambda f: (-f.importance, -f.created_at))
        if facts:
            logger.debug("Collected %d cross-session facts", len(facts))
        return facts
