"""
Memory record model.

One ``MemoryRecord`` exists per summarized unit (a single turn or a paired
exchange). Records are JSON-serializable; the derived fields
``dynamic_importance`` and ``tier`` are recomputed every injection cycle and
are never written to storage.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .errors import RecordValidationError


class MemoryType(str, Enum):
    GENERAL = "general"
    RELATIONSHIP = "relationship"
    WORLDBUILDING = "worldbuilding"
    EMOTIONAL = "emotional"
    PLOT = "plot"


class MemoryTier(str, Enum):
    IMMEDIATE = "immediate"
    SHORT_TERM = "short_term"
    MEDIUM_TERM = "medium_term"
    LONG_TERM = "long_term"
    PERMANENT = "permanent"


@dataclass
class ContextHints:
    """Where and when a unit took place, and who was there."""

    time_hint: Optional[str] = None
    location_hint: Optional[str] = None
    present_entities: list[str] = field(default_factory=list)
    note: Optional[str] = None  # free-form [Context: ...] annotation

    def to_dict(self) -> dict:
        return {
            "time_hint": self.time_hint,
            "location_hint": self.location_hint,
            "present_entities": list(self.present_entities),
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ContextHints":
        data = data or {}
        return cls(
            time_hint=data.get("time_hint") or data.get("timeContext"),
            location_hint=data.get("location_hint") or data.get("locationContext"),
            present_entities=list(
                data.get("present_entities") or data.get("npcContext") or []
            ),
            note=data.get("note"),
        )

    def describe(self) -> str:
        parts = []
        if self.time_hint:
            parts.append(f"time: {self.time_hint}")
        if self.location_hint:
            parts.append(f"place: {self.location_hint}")
        if self.present_entities:
            parts.append(f"present: {', '.join(self.present_entities)}")
        if self.note:
            parts.append(self.note)
        return ", ".join(parts)


def _clamp_int(value: Any, low: int, high: int, default: int) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


@dataclass
class MemoryRecord:
    text: str
    original_length: int = 0
    created_at: float = field(default_factory=time.time)
    content_hashes: list[str] = field(default_factory=list)
    context: ContextHints = field(default_factory=ContextHints)
    is_core_memory: bool = False
    base_importance: int = 5
    confidence: float = 0.8
    topics: list[str] = field(default_factory=list)
    characters: list[str] = field(default_factory=list)
    emotional_tone: str = "neutral"
    relationships: list[dict] = field(default_factory=list)
    world_facts: list[dict] = field(default_factory=list)
    character_development: int = 1
    plot_significance: int = 1
    emotional_impact: int = 1
    memory_type: MemoryType = MemoryType.GENERAL
    reinforcement_count: int = 1
    is_paired: bool = False
    paired_source_indices: list[int] = field(default_factory=list)
    edited: bool = False
    conversation_id: Optional[str] = None
    is_bulk_summary: bool = False
    bulk_range: Optional[tuple[int, int]] = None
    raw_response: str = ""

    # Derived every injection cycle, never persisted
    dynamic_importance: Optional[float] = None
    tier: Optional[MemoryTier] = None

    @property
    def importance(self) -> float:
        """Dynamic importance when computed this cycle, else the base value."""
        if self.dynamic_importance is not None:
            return self.dynamic_importance
        return float(self.base_importance)

    def source_indices(self, key: int) -> list[int]:
        """Turn indices this record summarizes when filed under ``key``."""
        if self.is_paired and self.paired_source_indices:
            return list(self.paired_source_indices)
        return [key]

    def reinforce(self, amount: int) -> int:
        if amount > 0:
            self.reinforcement_count += amount
        return self.reinforcement_count

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "original_length": self.original_length,
            "created_at": self.created_at,
            "content_hashes": list(self.content_hashes),
            "context": self.context.to_dict(),
            "is_core_memory": self.is_core_memory,
            "base_importance": self.base_importance,
            "confidence": self.confidence,
            "topics": list(self.topics),
            "characters": list(self.characters),
            "emotional_tone": self.emotional_tone,
            "relationships": [dict(r) for r in self.relationships],
            "world_facts": [dict(f) for f in self.world_facts],
            "character_development": self.character_development,
            "plot_significance": self.plot_significance,
            "emotional_impact": self.emotional_impact,
            "memory_type": self.memory_type.value,
            "reinforcement_count": self.reinforcement_count,
            "is_paired": self.is_paired,
            "paired_source_indices": list(self.paired_source_indices),
            "edited": self.edited,
            "conversation_id": self.conversation_id,
            "is_bulk_summary": self.is_bulk_summary,
            "bulk_range": list(self.bulk_range) if self.bulk_range else None,
            "raw_response": self.raw_response,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "MemoryRecord":
        """
        Rebuild a record from its stored form.

        Accepts the single ``content_hash`` (or ``messageHash``) key written by
        older stores. Raises RecordValidationError on a malformed shape.
        """
        if not isinstance(data, dict):
            raise RecordValidationError("record is not a mapping")
        text = data.get("text")
        if not isinstance(text, str):
            raise RecordValidationError("record text missing")

        hashes = data.get("content_hashes")
        if not hashes:
            single = data.get("content_hash") or data.get("messageHash")
            hashes = [single] if single else []
        if not isinstance(hashes, list):
            raise RecordValidationError("content hashes must be a list")

        try:
            memory_type = MemoryType(data.get("memory_type") or "general")
        except ValueError:
            memory_type = MemoryType.GENERAL

        bulk_range = data.get("bulk_range")
        try:
            return cls(
                text=text,
                original_length=int(data.get("original_length") or 0),
                created_at=float(data.get("created_at") or data.get("timestamp") or time.time()),
                content_hashes=[str(h) for h in hashes],
                context=ContextHints.from_dict(data.get("context")),
                is_core_memory=bool(data.get("is_core_memory", False)),
                base_importance=_clamp_int(data.get("base_importance", 5), 1, 10, 5),
                confidence=float(data.get("confidence", 0.8)),
                topics=list(data.get("topics") or []),
                characters=list(data.get("characters") or []),
                emotional_tone=data.get("emotional_tone") or "neutral",
                relationships=list(data.get("relationships") or []),
                world_facts=list(data.get("world_facts") or []),
                character_development=_clamp_int(data.get("character_development", 1), 1, 10, 1),
                plot_significance=_clamp_int(data.get("plot_significance", 1), 1, 10, 1),
                emotional_impact=_clamp_int(data.get("emotional_impact", 1), 1, 10, 1),
                memory_type=memory_type,
                reinforcement_count=max(1, int(data.get("reinforcement_count") or 1)),
                is_paired=bool(data.get("is_paired", False)),
                paired_source_indices=[int(i) for i in data.get("paired_source_indices") or []],
                edited=bool(data.get("edited", False)),
                conversation_id=data.get("conversation_id"),
                is_bulk_summary=bool(data.get("is_bulk_summary", False)),
                bulk_range=tuple(bulk_range) if bulk_range else None,
                raw_response=data.get("raw_response") or "",
            )
        except (TypeError, ValueError) as e:
            raise RecordValidationError(f"malformed record: {e}") from e
