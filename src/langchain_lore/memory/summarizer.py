"""
Unit summarizer.

Builds the summarization prompt for one unit (a turn or a paired exchange),
runs it through the completion provider under the retry state machine, and
turns the raw response into a ``MemoryRecord``:

    raw → core memory detection → marker stripped → annotations parsed →
    record with one content hash per source turn

Backlog chunks (bulk mode) go through the same path with a longer prompt
and yield one record per unit they cover.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from .annotations import AnnotationParser, Annotations, RegexAnnotationParser
from .config import MemoryConfig
from .context_hints import extract_context_hints
from .core_memory import CORE_MEMORY_INSTRUCTIONS, is_core_memory, strip_marker
from .pairing import SummaryUnit
from .provider import CompletionProvider
from .records import ContextHints, MemoryRecord
from .retry import RetryOutcome, RetryPolicy, RetryStateMachine
from .turns import content_hash, format_turns, get_turn, turn_text

logger = logging.getLogger(__name__)

RECENT_CONTEXT_TURNS = 3
RECENT_CONTEXT_CHARS = 400

SUMMARY_PROMPT = """You are an expert narrative summarizer. Create a concise summary of this roleplay exchange that captures the essential information for future reference.

SUMMARIZATION REQUIREMENTS:
- Maximum {max_length} tokens
- Past tense, factual tone
- Include key details that would be important for understanding future context
- Focus on actions, events, and meaningful dialogue"""

ANNOTATION_INSTRUCTIONS = """ANNOTATIONS:
Start the summary with [Importance: N/10], where 1 is trivial small talk and 10 is a story-defining moment.
You may follow it with [Topics: a, b], [Characters: a, b] and [Tone: word]."""

BULK_SUMMARY_PROMPT = """You are an expert narrative summarizer. Create a concise summary that captures the essential events and information from this sequence of messages.

SUMMARIZATION REQUIREMENTS:
- Maximum {max_length} tokens (bulk summary can be longer)
- Past tense, factual tone
- Cover the main events, character interactions, and plot developments
- Include key details that would be important for understanding future context

MESSAGES TO SUMMARIZE (Messages {first} to {last}):
{messages}

Provide only the summary, no additional commentary:"""


class Summarizer:
    """
    Summarizes units through a completion provider.

    Usage:
        summarizer = Summarizer(config, provider)
        record = await summarizer.summarize_unit(unit, turns)  # None on failure
    """

    def __init__(
        self,
        config: MemoryConfig,
        provider: CompletionProvider,
        parser: Optional[AnnotationParser] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.config = config
        self.provider = provider
        self.parser = parser or RegexAnnotationParser()
        self.policy = RetryPolicy(max_attempts=config.max_attempts, backoff=tuple(config.retry_backoff))
        self._sleep = sleep or asyncio.sleep
        self.last_outcome: Optional[RetryOutcome] = None

    # ── Prompts ──

    def build_prompt(self, unit: SummaryUnit, turns: list, hints: Optional[ContextHints] = None) -> str:
        cfg = self.config
        prompt = SUMMARY_PROMPT.format(max_length=cfg.summary_max_length)

        if cfg.enable_core_memories and len(turns) >= cfg.core_memory_start_count:
            prompt += "\n\n" + CORE_MEMORY_INSTRUCTIONS

        prompt += "\n\n" + ANNOTATION_INSTRUCTIONS

        first = min(unit.source_indices)
        recent = turns[max(0, first - RECENT_CONTEXT_TURNS):first]
        if recent:
            prompt += "\n\nRECENT CONTEXT:\n" + format_turns(recent, max_chars=RECENT_CONTEXT_CHARS)

        if hints is not None:
            if cfg.include_time_location and (hints.time_hint or hints.location_hint):
                prompt += "\n\nCONTEXT:"
                if hints.time_hint:
                    prompt += f"\nTime: {hints.time_hint}"
                if hints.location_hint:
                    prompt += f"\nLocation: {hints.location_hint}"
            if cfg.include_npcs and hints.present_entities:
                prompt += f"\nPresent Characters/NPCs: {', '.join(hints.present_entities)}"

        unit_turns = [get_turn(turns, i) for i in unit.source_indices]
        label = "EXCHANGE TO SUMMARIZE" if unit.is_paired else "MESSAGE TO SUMMARIZE"
        prompt += f"\n\n{label}:\n" + format_turns([t for t in unit_turns if t is not None])

        focus = []
        if cfg.include_events:
            focus.append("- What happened/occurred")
        if cfg.include_dialogue:
            focus.append("- Important dialogue or conversations")
        if focus:
            prompt += "\n\nSUMMARY FOCUS:\n" + "\n".join(focus)

        prompt += "\n\nProvide only the summary, no additional commentary:"
        if cfg.prefill:
            prompt += "\n\n" + cfg.prefill
        return prompt

    def build_bulk_prompt(self, indices: list[int], turns: list) -> str:
        chunk = [get_turn(turns, i) for i in indices]
        return BULK_SUMMARY_PROMPT.format(
            max_length=self.config.summary_max_length * 2,
            first=indices[0],
            last=indices[-1],
            messages=format_turns([t for t in chunk if t is not None]).replace("\n", "\n\n"),
        )

    # ── Completion ──

    async def complete(self, prompt: str, label: str = "") -> Optional[str]:
        """Run one prompt through retries and fallback; None when everything failed."""
        machine = RetryStateMachine(self.policy, self._sleep, label)

        async def primary() -> str:
            return await self.provider.generate(prompt)

        fallback = None
        generate_fallback = getattr(self.provider, "generate_fallback", None)
        if generate_fallback is not None:
            async def fallback() -> str:
                return await generate_fallback(prompt)

        outcome = await machine.run(primary, fallback)
        self.last_outcome = outcome
        return outcome.text

    # ── Records ──

    def build_record(
        self,
        raw: str,
        source_indices: tuple[int, ...],
        turns: list,
        hints: Optional[ContextHints] = None,
    ) -> Optional[MemoryRecord]:
        """Turn a raw response into a record; None when nothing usable is left."""
        core = is_core_memory(raw)
        annotations = self.parser.parse(strip_marker(raw))
        if not annotations.text.strip():
            logger.warning("Summary for %s was empty after cleanup", list(source_indices))
            return None

        texts = [turn_text(get_turn(turns, i)) for i in source_indices]
        paired = len(source_indices) > 1
        return _record_from(
            annotations,
            raw=raw,
            core=core,
            hashes=[content_hash(t) for t in texts],
            original_length=sum(len(t) for t in texts),
            hints=hints or ContextHints(),
            paired_sources=list(source_indices) if paired else [],
        )

    async def summarize_unit(self, unit: SummaryUnit, turns: list) -> Optional[MemoryRecord]:
        for i in unit.source_indices:
            if not turn_text(get_turn(turns, i)).strip():
                logger.debug("Skipping unit %s: source turn %d is empty", unit.source_indices, i)
                return None

        hints = extract_context_hints(turns, list(unit.source_indices))
        prompt = self.build_prompt(unit, turns, hints)
        label = f"unit {'-'.join(str(i) for i in unit.source_indices)}"

        raw = await self.complete(prompt, label)
        if raw is None:
            logger.warning("Summarization failed for %s after all attempts", label)
            return None

        record = self.build_record(raw, unit.source_indices, turns, hints)
        if record is not None:
            logger.debug(
                "Summarized %s (importance=%d, core=%s): %.80s",
                label, record.base_importance, record.is_core_memory, record.text,
            )
        return record

    async def summarize_chunk(self, units: list[SummaryUnit], turns: list) -> dict[int, MemoryRecord]:
        """
        Summarize a backlog chunk with a single call.

        Every unit gets one record, filed under its target index, carrying the
        shared summary and one content hash per source turn. All of them are
        flagged as a bulk summary of the chunk's range.
        """
        units = [
            u for u in units
            if all(turn_text(get_turn(turns, i)).strip() for i in u.source_indices)
        ]
        if not units:
            return {}

        indices = sorted({i for u in units for i in u.source_indices})
        label = f"bulk {indices[0]}-{indices[-1]}"
        raw = await self.complete(self.build_bulk_prompt(indices, turns), label)
        if raw is None:
            logger.warning("Bulk summarization failed for %s", label)
            return {}

        hints = extract_context_hints(turns, indices)
        records = {}
        for unit in units:
            record = self.build_record(raw, unit.source_indices, turns, hints)
            if record is None:
                return {}
            record.is_bulk_summary = True
            record.bulk_range = (indices[0], indices[-1])
            records[unit.target_index] = record
        logger.info("Bulk summarized turns %d-%d into %d records", indices[0], indices[-1], len(records))
        return records


def _record_from(
    annotations: Annotations,
    raw: str,
    core: bool,
    hashes: list[str],
    original_length: int,
    hints: ContextHints,
    paired_sources: list[int],
) -> MemoryRecord:
    return MemoryRecord(
        text=annotations.text,
        original_length=original_length,
        created_at=time.time(),
        content_hashes=hashes,
        context=ContextHints(
            time_hint=hints.time_hint,
            location_hint=hints.location_hint,
            present_entities=list(hints.present_entities),
            note=annotations.context_note or hints.note,
        ),
        is_core_memory=core,
        base_importance=annotations.importance,
        confidence=annotations.confidence,
        topics=list(annotations.topics),
        characters=list(annotations.characters),
        emotional_tone=annotations.tone,
        relationships=[dict(r) for r in annotations.relationships],
        world_facts=[dict(f) for f in annotations.world_facts],
        character_development=annotations.character_development,
        plot_significance=annotations.plot_significance,
        emotional_impact=annotations.emotional_impact,
        memory_type=annotations.memory_type,
        is_paired=bool(paired_sources),
        paired_source_indices=paired_sources,
        raw_response=raw,
    )

