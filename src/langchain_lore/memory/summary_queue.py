"""
Summarization queue.

Serializes summarization work for the attached conversation:

- ``enqueue(index)`` de-duplicates, skips turns that are already covered and
  defers while a blocking step (bulk backlog) runs
- ``process_queue()`` drains strictly FIFO, one unit at a time; a busy flag
  makes re-entrant calls no-ops, the running loop picks up anything enqueued
  meanwhile
- a watchdog clears a busy flag left set with nothing to do

Results are filed in the ``MemoryStore``, persisted, and reported through
optional fire-and-forget hooks.
"""

import inspect
import logging
import time
from collections import deque
from typing import Callable, Optional

from .config import MemoryConfig
from .errors import RecordValidationError, StuckStateError
from .pairing import PairingController, PairingOutcome, SummaryUnit
from .records import MemoryRecord
from .scheduler import AsyncioScheduler
from .store import MemoryStore, validate_record
from .summarizer import Summarizer

logger = logging.getLogger(__name__)


class SummarizationQueue:
    """
    FIFO queue of turn indices awaiting summarization.

    Hooks (all optional, called fire-and-forget, may be sync or async):
        on_summarized(index, record)  a record was filed under ``index``
        on_failed(index)              a unit produced no record
        on_drained(processed)         a drain loop finished
    """

    def __init__(
        self,
        config: MemoryConfig,
        summarizer: Summarizer,
        store: MemoryStore,
        pairing: PairingController,
        scheduler: AsyncioScheduler,
        get_turns: Callable[[], list],
        clock: Callable[[], float] = time.monotonic,
        on_summarized: Optional[Callable] = None,
        on_failed: Optional[Callable] = None,
        on_drained: Optional[Callable] = None,
    ):
        self.config = config
        self.summarizer = summarizer
        self.store = store
        self.pairing = pairing
        self.scheduler = scheduler
        self._get_turns = get_turns
        self._clock = clock
        self.on_summarized = on_summarized
        self.on_failed = on_failed
        self.on_drained = on_drained

        self._queue: deque[int] = deque()
        self._queued: set[int] = set()
        self.busy = False
        self.blocked = False
        self._last_progress = clock()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def pending(self) -> list[int]:
        return list(self._queue)

    def clear(self) -> None:
        self._queue.clear()
        self._queued.clear()

    # ── Producer ──

    def enqueue(self, index: int) -> bool:
        """Queue ``index``; returns True if it was added now."""
        if index in self._queued:
            logger.debug("Turn %d already queued", index)
            return False
        if self.pairing.is_summarized(index, self.store):
            logger.debug("Turn %d already summarized, skipping", index)
            return False

        if self.blocked:
            logger.debug("Queue blocked, retrying turn %d in %.1fs", index, self.config.blocked_retry_delay)

            async def retry() -> None:
                self.enqueue(index)

            self.scheduler.call_later(self.config.blocked_retry_delay, retry, name=f"enqueue-retry-{index}")
            return False

        self._queue.append(index)
        self._queued.add(index)
        self.scheduler.call_later(self.config.enqueue_delay, self.process_queue, name="summary-drain")
        return True

    # ── Consumer ──

    async def process_queue(self) -> int:
        """Drain the queue; returns the number of items taken off it."""
        if self.busy:
            logger.debug("Queue drain already running")
            return 0
        if self.blocked or not self._queue:
            return 0

        self.busy = True
        self._last_progress = self._clock()
        processed = 0
        try:
            while self._queue and not self.blocked:
                index = self._queue.popleft()
                self._queued.discard(index)
                try:
                    await self.process_index(index)
                except Exception as e:
                    logger.warning("Summarization of turn %d failed: %s", index, e)
                    self._notify(self.on_failed, index)
                processed += 1
                self._last_progress = self._clock()
                if self._queue:
                    await self.scheduler.sleep(self.config.inter_item_delay)
        finally:
            self.busy = False

        logger.debug("Queue drained (%d items)", processed)
        self._notify(self.on_drained, processed)
        return processed

    async def process_index(self, index: int) -> Optional[MemoryRecord]:
        """Summarize the unit ``index`` completes and file the record."""
        conversation_id = self.store.conversation_id
        turns = self._get_turns()
        resolution = self.pairing.resolve(index, turns)
        if resolution is PairingOutcome.DEFER:
            logger.debug("Turn %d waits for its pair partner", index)
            return None
        if resolution is PairingOutcome.INVALID:
            logger.debug("Turn %d does not form a valid unit", index)
            return None

        unit: SummaryUnit = resolution
        if self.store.has(unit.target_index) and self._covers(unit):
            return self.store.get(unit.target_index)

        record = await self.summarizer.summarize_unit(unit, turns)
        if record is None:
            self._notify(self.on_failed, unit.target_index)
            return None
        if not self._still_current(conversation_id, unit.target_index, record):
            return None

        self.file(unit, record)
        return record

    def file(self, unit: SummaryUnit, record: MemoryRecord) -> None:
        """Store ``record`` under the unit's target, replacing stale records of its sources."""
        for source in unit.source_indices:
            if source != unit.target_index and self.store.delete(source) is not None:
                logger.info("Replaced record at %d, pair now filed under %d", source, unit.target_index)
        self.store.put(unit.target_index, record)
        self.store.save_for_conversation()
        self._notify(self.on_summarized, unit.target_index, record)

    def _covers(self, unit: SummaryUnit) -> bool:
        record = self.store.get(unit.target_index)
        if record is None:
            return False
        return set(unit.source_indices) <= set(record.source_indices(unit.target_index))

    def _still_current(self, conversation_id: Optional[str], index: int, record: MemoryRecord) -> bool:
        """False when the conversation switched or the source turns changed during the call."""
        if self.store.conversation_id != conversation_id:
            logger.info(
                "Discarding summary for turn %d of %s, conversation is now %s",
                index, conversation_id, self.store.conversation_id,
            )
            return False
        try:
            validate_record(index, record, self._get_turns())
        except RecordValidationError as e:
            logger.info("Discarding summary for turn %d: %s", index, e)
            return False
        return True

    # ── Bulk backlog ──

    def backlog_units(self, indices: list[int]) -> list[SummaryUnit]:
        """One unit per pair (or turn) among ``indices``, each filed once."""
        turns = self._get_turns()
        units: dict[int, SummaryUnit] = {}
        for index in indices:
            unit = self.pairing.unit_for(index, turns)
            if unit is None or unit.target_index in units:
                continue
            units[unit.target_index] = unit
        return sorted(units.values(), key=lambda u: min(u.source_indices))

    async def summarize_backlog(self, indices: list[int]) -> int:
        """
        Summarize a large backlog in chunks, one call per chunk.

        The queue is blocked meanwhile; individual enqueues are retried later.
        Returns the number of records filed.
        """
        units = self.backlog_units(indices)
        if not units:
            return 0
        conversation_id = self.store.conversation_id
        chunk_size = max(1, self.config.bulk_chunk_size)
        filed = 0
        self.blocked = True
        logger.info("Starting bulk summarization of %d turns in %d units", len(indices), len(units))
        try:
            for start in range(0, len(units), chunk_size):
                chunk = units[start:start + chunk_size]
                records = await self.summarizer.summarize_chunk(chunk, self._get_turns())
                if self.store.conversation_id != conversation_id:
                    logger.info("Conversation switched, abandoning bulk summarization of %s", conversation_id)
                    break
                if not records:
                    for unit in chunk:
                        self._notify(self.on_failed, unit.target_index)
                filed_now = 0
                for unit in chunk:
                    record = records.get(unit.target_index)
                    if record is None or self._covers_any(unit):
                        continue
                    if not self._still_current(conversation_id, unit.target_index, record):
                        continue
                    self.store.put(unit.target_index, record)
                    filed_now += 1
                    self._notify(self.on_summarized, unit.target_index, record)
                if filed_now:
                    self.store.save_for_conversation()
                filed += filed_now
                self._last_progress = self._clock()
                if start + chunk_size < len(units):
                    await self.scheduler.sleep(self.config.inter_item_delay)
        finally:
            self.blocked = False

        logger.info("Bulk summarization filed %d records", filed)
        if self._queue:
            self.scheduler.submit(self.process_queue, name="summary-drain")
        return filed

    def _covers_any(self, unit: SummaryUnit) -> bool:
        return any(self.pairing.is_summarized(i, self.store) for i in unit.source_indices)

    # ── Watchdog ──

    def _assert_progress(self) -> None:
        idle = self._clock() - self._last_progress
        if self.busy and not self._queue and idle >= self.config.watchdog_interval:
            raise StuckStateError(f"busy flag set with an empty queue for {idle:.0f}s")

    def check_stuck(self) -> bool:
        """Clear a stuck busy flag; returns True if it had to."""
        try:
            self._assert_progress()
        except StuckStateError as e:
            logger.warning("Summarization queue looked stuck, resetting: %s", e)
            self.busy = False
            self._last_progress = self._clock()
            return True
        return False

    async def watchdog(self) -> None:
        self.check_stuck()

    # ── Hooks ──

    def _notify(self, hook: Optional[Callable], *args) -> None:
        if hook is None:
            return
        try:
            result = hook(*args)
        except Exception as e:
            logger.warning("Memory hook %s failed: %s", getattr(hook, "__name__", hook), e)
            return
        if inspect.isawaitable(result):
            async def wait() -> None:
                await result

            self.scheduler.submit(wait, name="memory-hook")
