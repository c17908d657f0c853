"""
Injection composer.

Merges memory tiers into one text block under a character budget. Sections
are added in priority order and each is appended whole or skipped; the
result never exceeds the budget.

Tiered mode:
  1. cross-session character facts (at most 20% of the budget)
  2. permanent tier (up to 10 entries)
  3. long-term tier (up to 5 entries, only while under 80% of the budget)
  4. medium-term tier (up to 3 entries, only while under 90% of the budget)
  5. semantic hits with their similarity

Legacy mode concatenates every record outside the running window, oldest
first, followed by semantic hits.
"""

import logging
from typing import Iterable, Optional

from .cross_session import CrossSessionFact
from .records import MemoryRecord
from .tiers import TierEntry, TierSet
from .token_budget import InjectionBudget

logger = logging.getLogger(__name__)

PERMANENT_LIMIT = 10
LONG_TERM_LIMIT = 5
MEDIUM_TERM_LIMIT = 3

SECTION_SEPARATOR = "\n\n"

CROSS_SESSION_HEADER = "[Known from other conversations]:"
PERMANENT_HEADER = "[Permanent memories]:"
LONG_TERM_HEADER = "[Long-term memories]:"
MEDIUM_TERM_HEADER = "[Recent important events]:"
LEGACY_HEADER = "[Previous events (summarized)]:"
SEMANTIC_HEADER = "[Relevant past conversations]:"


def format_entry(entry: TierEntry) -> str:
    marker = "* " if entry.record is not None and entry.record.is_core_memory else "- "
    return marker + entry.text.strip()


def format_hit(hit: dict) -> str:
    metadata = hit.get("metadata") or {}
    speaker = metadata.get("speaker") or "Unknown"
    index = metadata.get("originalIndex", metadata.get("floor", "Unknown"))
    score = float(hit.get("score", 0.0)) * 100
    return f"{speaker} (message {index}, relevance: {score:.1f}%): {hit.get('text', '').strip()}"


def format_legacy_record(record: MemoryRecord) -> str:
    text = record.text.strip()
    described = record.context.describe()
    return f"{text} ({described})" if described else text


def build_section(header: str, lines: Iterable[str], max_chars: Optional[int] = None) -> str:
    """
    Header plus as many lines as fit in ``max_chars`` (all lines when None).

    Returns "" when no line fits.
    """
    section = header
    count = 0
    for line in lines:
        if not line:
            continue
        candidate = f"{section}\n{line}"
        if max_chars is not None and len(candidate) > max_chars:
            continue
        section = candidate
        count += 1
    return section if count else ""


class _Assembly:
    """Sections accumulated under a fixed character budget."""

    def __init__(self, total: int):
        self.total = total
        self.parts: list[str] = []

    @property
    def used(self) -> int:
        return len(self.text())

    def text(self) -> str:
        return SECTION_SEPARATOR.join(self.parts)

    def cost(self, section: str) -> int:
        return len(section) + (len(SECTION_SEPARATOR) if self.parts else 0)

    def remaining(self) -> int:
        return self.total - self.used - (len(SECTION_SEPARATOR) if self.parts else 0)

    def add(self, section: str, name: str) -> bool:
        if not section:
            return False
        if self.used + self.cost(section) > self.total:
            logger.debug("Skipping %s section (%d chars) over budget", name, len(section))
            return False
        self.parts.append(section)
        return True


class InjectionComposer:
    """
    Builds the injection string from classified tiers.

    Usage:
        composer = InjectionComposer()
        text = composer.compose(tiers, InjectionBudget.for_total(4000))
    """

    def __init__(
        self,
        permanent_limit: int = PERMANENT_LIMIT,
        long_term_limit: int = LONG_TERM_LIMIT,
        medium_term_limit: int = MEDIUM_TERM_LIMIT,
    ):
        self.permanent_limit = permanent_limit
        self.long_term_limit = long_term_limit
        self.medium_term_limit = medium_term_limit

    def compose(
        self,
        tiers: TierSet,
        budget: InjectionBudget,
        cross_session: Iterable[CrossSessionFact] = (),
        semantic_hits: Iterable[dict] = (),
    ) -> str:
        if budget.total <= 0:
            return ""
        assembly = _Assembly(budget.total)

        facts = [f"- {fact.text}" for fact in cross_session]
        if facts:
            reserve = min(budget.cross_session_max, assembly.remaining())
            assembly.add(build_section(CROSS_SESSION_HEADER, facts, reserve), "cross-session")

        permanent = [format_entry(e) for e in tiers.permanent[: self.permanent_limit]]
        assembly.add(build_section(PERMANENT_HEADER, permanent), "permanent")

        if assembly.used < budget.long_term_gate:
            long_term = [format_entry(e) for e in tiers.long_term[: self.long_term_limit]]
            assembly.add(build_section(LONG_TERM_HEADER, long_term), "long-term")

        if assembly.used < budget.medium_term_gate:
            medium = [format_entry(e) for e in tiers.medium_term[: self.medium_term_limit]]
            assembly.add(build_section(MEDIUM_TERM_HEADER, medium), "medium-term")

        hits = [format_hit(h) for h in semantic_hits]
        if hits:
            assembly.add(build_section(SEMANTIC_HEADER, hits), "semantic")

        result = assembly.text()
        logger.debug("Composed injection: %d/%d chars, %d sections", len(result), budget.total, len(assembly.parts))
        return result

    def compose_legacy(
        self,
        records: dict[int, MemoryRecord],
        total_turns: int,
        running_memory_size: int,
        budget_total: int,
        semantic_hits: Iterable[dict] = (),
    ) -> str:
        """Every record outside the running window, oldest first, then semantic hits."""
        if budget_total <= 0:
            return ""
        cutoff = total_turns - running_memory_size
        assembly = _Assembly(budget_total)

        excluded = [format_legacy_record(r) for i, r in sorted(records.items()) if i < cutoff]
        if excluded:
            assembly.add(build_section(LEGACY_HEADER, excluded, assembly.remaining()), "summaries")

        hits = [format_hit(h) for h in semantic_hits]
        if hits:
            assembly.add(build_section(SEMANTIC_HEADER, hits), "semantic")
        return assembly.text()
