"""
Hierarchical memory engine.

``MemoryEngine`` owns every collaborator of the memory pipeline for one
attached conversation:

    new turn → pairing → summarization queue → provider (retry/fallback)
             → core memory detection + annotation parsing → record store

    injection cycle → weighting (current context) → tier classification
                    → composition under the injection budget

Public entry points never raise: failures are logged and degrade to "no
memory" (empty injection, no record, no-op).
"""

import logging
import os
import time
from typing import Callable, Optional

from dotenv import load_dotenv

from .annotations import AnnotationParser
from .composer import InjectionComposer
from .config import MemoryConfig
from .cross_session import CrossSessionCollector
from .pairing import PairingController
from .provider import DEFAULT_MODEL, ChatModelProvider, CompletionProvider, create_chat_model, create_embeddings
from .records import MemoryRecord
from .retriever import PgVectorProvider, SemanticRetriever
from .scheduler import AsyncioScheduler
from .store import JsonFileBackend, MemoryStore, PostgresBackend, open_pg_connection
from .summarizer import Summarizer
from .summary_queue import SummarizationQueue
from .tiers import TierClassifier, TierSet
from .token_budget import InjectionBudget, calculate_injection_budget, estimate_tokens
from .turns import get_turn, turn_text
from .weighting import (
    REINFORCEMENT_AMOUNTS,
    CurrentContext,
    ImportanceWeighter,
    ReinforcementKind,
    detect_reinforcements,
)

logger = logging.getLogger(__name__)


class MemoryEngine:
    """
    Memory engine for one conversation at a time.

    Usage:
        engine = MemoryEngine.from_env()
        await engine.attach("chat-42", messages)
        await engine.on_new_turn(len(messages) - 1)
        block = await engine.compose_injection()
    """

    def __init__(
        self,
        provider: CompletionProvider,
        config: Optional[MemoryConfig] = None,
        store: Optional[MemoryStore] = None,
        retriever: Optional[SemanticRetriever] = None,
        scheduler: Optional[AsyncioScheduler] = None,
        parser: Optional[AnnotationParser] = None,
        model_name: str = "",
        clock: Callable[[], float] = time.time,
        on_summarized: Optional[Callable] = None,
        on_failed: Optional[Callable] = None,
    ):
        self.config = config or MemoryConfig()
        cfg = self.config
        self.model_name = model_name
        self.scheduler = scheduler or AsyncioScheduler()
        self.store = store or MemoryStore()
        self.pairing = PairingController(cfg.enable_pairing, cfg.link_to_non_user)
        self.summarizer = Summarizer(cfg, provider, parser, sleep=self.scheduler.sleep)
        self.queue = SummarizationQueue(
            cfg,
            self.summarizer,
            self.store,
            self.pairing,
            self.scheduler,
            get_turns=lambda: self._turns,
            on_summarized=on_summarized,
            on_failed=on_failed,
        )
        self.classifier = TierClassifier(immediate_window=cfg.immediate_window)
        self.weighter = ImportanceWeighter(clock=clock)
        self.composer = InjectionComposer()
        if retriever is None and cfg.enable_vectorization:
            retriever = SemanticRetriever(
                similarity_threshold=cfg.vector_similarity_threshold,
                limit=cfg.vector_search_limit,
            )
        self.retriever = retriever
        self.cross_session = CrossSessionCollector(self.store, cfg.cross_session_max_age_days, clock)

        self._turns: list = []
        self._reinforced_turns: set[int] = set()
        self._started = False
        self.last_tiers: Optional[TierSet] = None

    @classmethod
    def from_env(cls, model_name: Optional[str] = None, **kwargs) -> "MemoryEngine":
        """
        Build an engine from environment configuration.

        DATABASE_URL enables the PostgreSQL record store (and the pgvector
        provider when vectorization is on); MEMORY_STORE_PATH selects a JSON
        file store instead; otherwise records live in memory only.
        """
        load_dotenv(override=True)
        config = MemoryConfig.from_env()
        model_name = model_name or os.getenv("CLAUDE_MODEL", DEFAULT_MODEL)
        provider = ChatModelProvider(create_chat_model(config.summary_model or model_name))

        pg_conn = None
        backend = None
        db_url = os.getenv("DATABASE_URL")
        if db_url:
            try:
                pg_conn = open_pg_connection(db_url)
                backend = PostgresBackend(pg_conn)
            except Exception as e:
                logger.warning("Failed to initialize PostgreSQL memory store: %s", e)
                pg_conn = None
        store_path = os.getenv("MEMORY_STORE_PATH")
        if backend is None and store_path:
            backend = JsonFileBackend(store_path)

        retriever = None
        if config.enable_vectorization:
            vector_provider = None
            embeddings = create_embeddings(config.embedding_model) if pg_conn is not None else None
            if embeddings is not None:
                try:
                    vector_provider = PgVectorProvider(pg_conn, embeddings)
                except Exception as e:
                    logger.warning("Failed to create vector provider, using local index: %s", e)
            retriever = SemanticRetriever(
                vector_provider,
                similarity_threshold=config.vector_similarity_threshold,
                limit=config.vector_search_limit,
            )

        return cls(
            provider,
            config=config,
            store=MemoryStore(backend),
            retriever=retriever,
            model_name=model_name,
            **kwargs,
        )

    @property
    def conversation_id(self) -> Optional[str]:
        return self.store.conversation_id

    @property
    def turns(self) -> list:
        return self._turns

    @property
    def summarization_on(self) -> bool:
        return self.config.enable_summarization and self.config.auto_summarize

    # ── Lifecycle ──

    async def attach(self, conversation_id: str, turns: list) -> int:
        """
        Switch to ``conversation_id`` with its live turns.

        Loads and validates stored records, prunes old conversations and
        schedules a backlog check. Returns the number of records loaded.
        """
        try:
            if conversation_id != self.store.conversation_id:
                self.queue.clear()
                self._reinforced_turns.clear()
            self._turns = turns
            count = self.store.load_for_conversation(conversation_id, turns)
            self.run_maintenance()
            if self.summarization_on:
                self.scheduler.submit(self.check_for_bulk_summarization, name="memory-backlog")
            return count
        except Exception as e:
            logger.warning("Failed to attach conversation %s: %s", conversation_id, e)
            return 0

    def start(self) -> None:
        """Start the watchdog and maintenance timers (needs a running loop)."""
        if self._started:
            return
        self.scheduler.every(self.config.watchdog_interval, self.queue.watchdog, name="memory-watchdog")
        self.scheduler.every(self.config.maintenance_interval, self._maintenance_tick, name="memory-maintenance")
        self._started = True
        logger.info("Memory engine timers started")

    def stop(self) -> None:
        """Cancel timers and pending work; an in-flight provider call is not interrupted."""
        self.scheduler.cancel_all()
        self._started = False
        logger.info("Memory engine stopped")

    async def _maintenance_tick(self) -> None:
        self.run_maintenance()

    def run_maintenance(self) -> list[str]:
        """Drop the oldest stored conversations beyond the retention count."""
        try:
            dropped = self.store.prune_conversations(
                self.config.retained_conversations, self.store.conversation_id
            )
            if self.retriever is not None:
                for cid in dropped:
                    self.retriever.forget(cid)
            return dropped
        except Exception as e:
            logger.warning("Memory maintenance failed: %s", e)
            return []

    # ── Turns ──

    async def on_new_turn(self, index: int, turns: Optional[list] = None) -> bool:
        """
        Handle a newly arrived turn.

        Detects references back to existing memories (once per turn index),
        schedules vectorizing of turns that left the running window, and
        queues the turn for summarization.
        Returns True if the turn was queued.
        """
        try:
            if turns is not None:
                self._turns = turns
            turn = get_turn(self._turns, index)
            if turn is None:
                return False

            self._detect_reinforcements(index, turn_text(turn))
            if self._should_vectorize():
                self.scheduler.submit(self._vectorize_excluded, name="memory-vectorize")

            if not self.summarization_on:
                return False
            return self.queue.enqueue(index)
        except Exception as e:
            logger.warning("Failed to handle new turn %d: %s", index, e)
            return False

    async def check_for_bulk_summarization(self) -> int:
        """
        Queue every unsummarized turn, or summarize them in bulk when there
        are more than ``bulk_threshold``. Returns the number of bulk records.
        """
        try:
            pending = [
                i for i, turn in enumerate(self._turns)
                if turn_text(turn).strip() and not self.pairing.is_summarized(i, self.store)
            ]
            if not pending:
                return 0
            logger.info("Found %d unsummarized turns of %d", len(pending), len(self._turns))
            if len(pending) > self.config.bulk_threshold:
                return await self.queue.summarize_backlog(pending)
            for index in pending:
                self.queue.enqueue(index)
            return 0
        except Exception as e:
            logger.warning("Backlog summarization failed: %s", e)
            return 0

    def is_summarized(self, index: int) -> bool:
        return self.pairing.is_summarized(index, self.store)

    # ── Records ──

    def get_record(self, index: int) -> Optional[MemoryRecord]:
        return self.store.get(index)

    def edit_record(self, index: int, text: str) -> bool:
        """Replace a record's summary text; its metadata is kept."""
        try:
            record = self.store.get(index)
            if record is None or not text or not text.strip():
                return False
            record.text = text.strip()
            record.edited = True
            self.store.save_for_conversation()
            return True
        except Exception as e:
            logger.warning("Failed to edit record %d: %s", index, e)
            return False

    def delete_record(self, index: int) -> bool:
        try:
            if self.store.delete(index) is None:
                return False
            self.store.save_for_conversation()
            return True
        except Exception as e:
            logger.warning("Failed to delete record %d: %s", index, e)
            return False

    async def regenerate(self, index: int) -> Optional[MemoryRecord]:
        """Delete the record covering ``index`` and summarize its unit again."""
        try:
            unit = self.pairing.unit_for(index, self._turns)
            if unit is None:
                return None
            for source in unit.source_indices:
                self.store.delete(source)
            self.store.save_for_conversation()
            return await self.queue.process_index(max(unit.source_indices))
        except Exception as e:
            logger.warning("Failed to regenerate record for turn %d: %s", index, e)
            return None

    def reinforce(self, index: int, kind: ReinforcementKind | str) -> Optional[float]:
        """Reinforce the record at ``index`` and rescore it; returns the new score."""
        try:
            record = self.store.get(index)
            if record is None:
                return None
            score = self._reinforce(record, ReinforcementKind(kind), CurrentContext.from_turns(self._turns))
            self.store.save_for_conversation()
            return score
        except Exception as e:
            logger.warning("Failed to reinforce record %d: %s", index, e)
            return None

    def _reinforce(self, record: MemoryRecord, kind: ReinforcementKind, context: CurrentContext) -> float:
        record.reinforce(REINFORCEMENT_AMOUNTS[kind])
        return self.weighter.score(record, context)

    def _detect_reinforcements(self, index: int, text: str) -> None:
        if index in self._reinforced_turns:
            return
        self._reinforced_turns.add(index)
        candidates = {
            i: r for i, r in self.store.records().items() if index not in r.source_indices(i)
        }
        found = detect_reinforcements(text, candidates)
        if not found:
            return
        context = CurrentContext.from_turns(self._turns)
        for i, kind in found.items():
            self._reinforce(candidates[i], kind, context)
        logger.debug("Turn %d reinforced %d memories", index, len(found))
        self.store.save_for_conversation()

    # ── Injection ──

    async def compose_injection(self) -> str:
        """The memory block for the next generation request ("" when none)."""
        if not self.config.enable_summarization or not self.store.conversation_id:
            return ""
        try:
            budget = calculate_injection_budget(self.config, self.model_name)
            hits = await self._semantic_hits()
        except Exception as e:
            logger.warning("Failed to prepare memory injection: %s", e)
            return ""

        if self.config.use_tiered_injection:
            try:
                return self._compose_tiered(budget, hits)
            except Exception as e:
                logger.warning("Tiered composition failed, using legacy mode: %s", e)

        try:
            return self.composer.compose_legacy(
                self.store.records(),
                len(self._turns),
                self.config.running_memory_size,
                budget.total,
                hits,
            )
        except Exception as e:
            logger.warning("Legacy composition failed: %s", e)
            return ""

    def classify(self) -> TierSet:
        """Rescore every record against the current context and partition into tiers."""
        records = self.store.records()
        context = CurrentContext.from_turns(self._turns)
        self.weighter.score_all(records, context)
        tiers = self.classifier.reclassify(records, self._turns)
        self.last_tiers = tiers
        return tiers

    def _compose_tiered(self, budget: InjectionBudget, hits: list[dict]) -> str:
        tiers = self.classify()
        facts = []
        if self.config.enable_cross_session:
            characters = set(CurrentContext.from_turns(self._turns).characters)
            for record in self.store.records().values():
                characters.update(record.characters)
            try:
                facts = self.cross_session.collect(characters)
            except Exception as e:
                logger.warning("Cross-session fact lookup failed: %s", e)
        block = self.composer.compose(tiers, budget, facts, hits)
        logger.debug(
            "Composed memory injection: %d of %d chars (~%d tokens)",
            len(block), budget.total, estimate_tokens(block),
        )
        return block

    async def _semantic_hits(self) -> list[dict]:
        if self.retriever is None or not self.config.enable_vectorization or not self._turns:
            return []
        try:
            query = self.retriever.query_text(self._turns)
            return await self.retriever.search(self.store.conversation_id, query)
        except Exception as e:
            logger.warning("Semantic search failed: %s", e)
            return []

    def _should_vectorize(self) -> bool:
        if self.retriever is None or not self.config.enable_vectorization or not self.store.conversation_id:
            return False
        return len(self._turns) > self.config.running_memory_size

    async def _vectorize_excluded(self) -> None:
        cutoff = len(self._turns) - self.config.running_memory_size
        try:
            await self.retriever.vectorize_excluded(self.store.conversation_id, self._turns, cutoff)
        except Exception as e:
            logger.warning("Vectorizing excluded turns failed: %s", e)
