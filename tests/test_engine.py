"""
Tests for MemoryEngine and the chat model provider.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from langchain_lore.memory.config import MemoryConfig
from langchain_lore.memory.engine import MemoryEngine
from langchain_lore.memory.provider import ChatModelProvider, create_chat_model, response_text
from langchain_lore.memory.records import MemoryRecord
from langchain_lore.memory.scheduler import AsyncioScheduler
from langchain_lore.memory.store import InMemoryBackend, JsonFileBackend, MemoryStore
from langchain_lore.memory.turns import content_hash, turn_text


def record_for(turns: list, index: int, text: str = "They talked.", **kwargs) -> MemoryRecord:
    return MemoryRecord(text=text, content_hashes=[content_hash(turn_text(turns[index]))], **kwargs)


def stored_engine(provider, records: dict, scheduler, **config_kwargs):
    """Engine whose backend already holds ``records`` for conversation c1."""
    backend = InMemoryBackend()
    backend.save("c1", {str(i): r.to_dict() for i, r in records.items()})
    config = MemoryConfig(**{"auto_summarize": False, **config_kwargs})
    return MemoryEngine(provider, config, store=MemoryStore(backend), scheduler=scheduler)


# ── Lifecycle Tests ──


@pytest.mark.asyncio
class TestEngineLifecycle:
    async def test_attach_summarizes_and_composes(self, make_turns, scripted_provider, scheduler):
        turns = make_turns(*[f"Ann searched room {i}." for i in range(14)])
        provider = scripted_provider(
            [f"[Importance: 9/10] Ann found clue {i}." for i in range(4)]
            + [f"[Importance: 4/10] Ann left room {i} empty-handed." for i in range(4, 14)]
        )
        config = MemoryConfig(enable_pairing=False, bulk_threshold=100, injection_budget_chars=2000)
        engine = MemoryEngine(provider, config, scheduler=scheduler)

        assert await engine.attach("c1", turns) == 0
        await engine.scheduler.drain()

        assert len(engine.store) == 14
        block = await engine.compose_injection()
        assert block.startswith("[Permanent memories]:")
        assert block.count("Ann found clue") == 4
        # turns 4-13 are still in the immediate window
        assert "empty-handed" not in block
        assert len(block) <= 2000
        assert len(engine.last_tiers.immediate) == 10

    async def test_attach_runs_bulk_backlog(self, make_turns, scripted_provider, scheduler):
        turns = make_turns("a", "b", "c", "d", "e")
        provider = scripted_provider(["[Importance: 5/10] They explored the ruins."])
        config = MemoryConfig(enable_pairing=False, bulk_threshold=2)
        engine = MemoryEngine(provider, config, scheduler=scheduler)

        await engine.attach("c1", turns)
        await engine.scheduler.drain()

        assert len(provider.prompts) == 1
        assert all(engine.get_record(i).is_bulk_summary for i in range(5))

    async def test_paired_bulk_backlog_is_injected_once(self, make_turns, scripted_provider, scheduler):
        turns = make_turns(*[f"turn {i}" for i in range(40)])
        provider = scripted_provider(["[Importance: 8/10] Ann told Bob about the war."])
        config = MemoryConfig(bulk_threshold=5, injection_budget_chars=2000)
        engine = MemoryEngine(provider, config, scheduler=scheduler)

        await engine.attach("c1", turns)
        await engine.scheduler.drain()

        assert len(provider.prompts) == 1
        assert sorted(engine.store.records()) == [0] + list(range(1, 39, 2))
        assert all(engine.is_summarized(i) for i in range(39))
        # 39 waits for its partner
        assert not engine.is_summarized(39)

        block = await engine.compose_injection()
        assert block.count("Ann told Bob about the war.") == 1

    async def test_attach_drops_stale_records(self, make_turns, scripted_provider, scheduler):
        old_turns = make_turns("old text")
        engine = stored_engine(scripted_provider(), {0: record_for(old_turns, 0)}, scheduler)
        assert await engine.attach("c1", make_turns("new text")) == 0
        assert engine.store.backend.load("c1") == {}

    async def test_switching_conversation_clears_queue(self, make_turns, scripted_provider, scheduler):
        engine = MemoryEngine(scripted_provider(), MemoryConfig(auto_summarize=False), scheduler=scheduler)
        await engine.attach("c1", make_turns("a"))
        engine.queue.enqueue(0)
        await engine.attach("c2", make_turns("b"))
        assert len(engine.queue) == 0
        assert engine.conversation_id == "c2"
        await engine.scheduler.drain()

    async def test_attach_failure_returns_zero(self, make_turns, scripted_provider, scheduler):
        store = MemoryStore()
        store.load_for_conversation = MagicMock(side_effect=RuntimeError("disk"))
        engine = MemoryEngine(scripted_provider(), store=store, scheduler=scheduler)
        assert await engine.attach("c1", make_turns("a")) == 0

    async def test_start_and_stop_timers(self, scripted_provider):
        engine = MemoryEngine(scripted_provider(), scheduler=AsyncioScheduler())
        engine.start()
        engine.start()
        assert len(engine.scheduler._periodic) == 2

        engine.stop()
        assert len(engine.scheduler._periodic) == 0

    async def test_maintenance_prunes_old_conversations(self, make_turns, scripted_provider, scheduler):
        backend = InMemoryBackend()
        for cid in ("a", "b", "c"):
            backend.save(cid, {})
        config = MemoryConfig(retained_conversations=1, auto_summarize=False)
        retriever = MagicMock()
        engine = MemoryEngine(
            scripted_provider(), config, store=MemoryStore(backend), retriever=retriever, scheduler=scheduler,
        )

        await engine.attach("a", make_turns("hi"))
        assert backend.conversation_ids() == ["a", "c"]
        retriever.forget.assert_called_once_with("b")


# ── Turn Handling Tests ──


@pytest.mark.asyncio
class TestEngineTurns:
    async def test_new_turn_is_summarized(self, make_turns, scripted_provider, scheduler):
        summarized = []
        turns = make_turns("Ann opens the gate.")
        config = MemoryConfig(enable_pairing=False, auto_summarize=False)
        engine = MemoryEngine(
            scripted_provider(["Ann opened the gate."]), config, scheduler=scheduler,
            on_summarized=lambda i, r: summarized.append(i),
        )
        await engine.attach("c1", turns)
        engine.config.auto_summarize = True

        assert await engine.on_new_turn(0) is True
        await engine.scheduler.drain()
        assert engine.is_summarized(0)
        assert summarized == [0]

    async def test_new_turn_reinforces_earlier_memories(self, make_turns, scripted_provider, scheduler):
        turns = make_turns("Ann opened the gate.", "Remember when Ann opened the gate?")
        engine = stored_engine(
            scripted_provider(), {0: record_for(turns, 0, characters=["Ann"])}, scheduler,
        )
        await engine.attach("c1", turns)

        assert await engine.on_new_turn(0) is False
        assert engine.get_record(0).reinforcement_count == 1

        await engine.on_new_turn(1)
        record = engine.get_record(0)
        assert record.reinforcement_count == 3
        assert record.dynamic_importance is not None
        assert engine.store.backend.load("c1")["0"]["reinforcement_count"] == 3

        # the same turn arriving again does not reinforce twice
        await engine.on_new_turn(1)
        assert engine.get_record(0).reinforcement_count == 3

    async def test_missing_turn(self, make_turns, scripted_provider, scheduler):
        engine = MemoryEngine(scripted_provider(), MemoryConfig(auto_summarize=False), scheduler=scheduler)
        await engine.attach("c1", make_turns("hi"))
        assert await engine.on_new_turn(5) is False

    async def test_new_turn_never_raises(self, make_turns, scripted_provider, scheduler):
        engine = MemoryEngine(scripted_provider(), MemoryConfig(auto_summarize=False), scheduler=scheduler)
        await engine.attach("c1", make_turns("hi"))
        engine.config.auto_summarize = True
        engine.queue.enqueue = MagicMock(side_effect=RuntimeError("boom"))
        assert await engine.on_new_turn(0) is False

    async def test_excluded_turns_feed_semantic_hits(self, make_turns, scripted_provider, scheduler):
        turns = make_turns("Ann hid the silver key under the floor.", "b", "c", "d", "Ann hid the silver key under the floor.")
        config = MemoryConfig(
            auto_summarize=False,
            enable_vectorization=True,
            running_memory_size=2,
            vector_similarity_threshold=0.5,
            injection_budget_chars=2000,
        )
        engine = MemoryEngine(scripted_provider(), config, scheduler=scheduler)
        await engine.attach("c1", turns)

        await engine.on_new_turn(4)
        assert engine.retriever.local_index.size("lore_c1") == 0
        await engine.scheduler.drain()
        assert engine.retriever.local_index.size("lore_c1") == 3

        block = await engine.compose_injection()
        assert block.startswith("[Relevant past conversations]:\nUser (message 0, relevance:")
        assert block.count("(message") == 1


# ── Record Tests ──


@pytest.mark.asyncio
class TestEngineRecords:
    async def test_edit_and_delete(self, make_turns, scripted_provider, scheduler):
        turns = make_turns("Ann waves.")
        engine = stored_engine(scripted_provider(), {0: record_for(turns, 0)}, scheduler)
        await engine.attach("c1", turns)

        assert engine.edit_record(0, "  Ann waved goodbye. ") is True
        assert engine.get_record(0).text == "Ann waved goodbye."
        assert engine.store.backend.load("c1")["0"]["edited"] is True
        assert engine.edit_record(0, "   ") is False
        assert engine.edit_record(7, "text") is False

        assert engine.delete_record(0) is True
        assert engine.delete_record(0) is False
        assert engine.store.backend.load("c1") == {}

    async def test_regenerate_paired_record(self, make_turns, scripted_provider, scheduler):
        turns = make_turns("Ann asks.", "Bob answers.", "Ann nods.")
        paired = MemoryRecord(
            text="old pair",
            content_hashes=[content_hash("Bob answers."), content_hash("Ann nods.")],
            is_paired=True,
            paired_source_indices=[1, 2],
        )
        provider = scripted_provider(["[Importance: 6/10] Bob answered and Ann nodded."])
        engine = stored_engine(provider, {1: paired}, scheduler)
        await engine.attach("c1", turns)

        record = await engine.regenerate(1)

        assert record.text == "Bob answered and Ann nodded."
        assert engine.get_record(1) is record
        assert record.paired_source_indices == [1, 2]
        assert await engine.regenerate(9) is None

    async def test_reinforce(self, make_turns, scripted_provider, scheduler):
        turns = make_turns("Ann waves.")
        engine = stored_engine(scripted_provider(), {0: record_for(turns, 0, base_importance=5)}, scheduler)
        await engine.attach("c1", turns)

        score = engine.reinforce(0, "direct_reference")
        assert score >= 5
        assert engine.get_record(0).reinforcement_count == 3
        assert engine.reinforce(5, "mention") is None
        assert engine.reinforce(0, "bogus") is None


# ── Injection Tests ──


@pytest.mark.asyncio
class TestEngineInjection:
    async def test_disabled_or_detached(self, make_turns, scripted_provider, scheduler):
        engine = MemoryEngine(scripted_provider(), scheduler=scheduler)
        assert await engine.compose_injection() == ""

        engine.config.enable_summarization = False
        await engine.attach("c1", make_turns("hi"))
        assert await engine.compose_injection() == ""

    async def test_falls_back_to_legacy(self, make_turns, scripted_provider, scheduler):
        turns = make_turns("a", "b", "c", "d", "e", "f")
        records = {0: record_for(turns, 0, "Ann arrived."), 1: record_for(turns, 1, "Bob left.")}
        engine = stored_engine(
            scripted_provider(), records, scheduler,
            running_memory_size=2, injection_budget_chars=1000,
        )
        await engine.attach("c1", turns)
        engine.classifier.reclassify = MagicMock(side_effect=RuntimeError("broken"))

        assert await engine.compose_injection() == "[Previous events (summarized)]:\nAnn arrived.\nBob left."

    async def test_legacy_mode_by_config(self, make_turns, scripted_provider, scheduler):
        turns = make_turns("a", "b", "c")
        engine = stored_engine(
            scripted_provider(), {0: record_for(turns, 0, "Ann arrived.")}, scheduler,
            use_tiered_injection=False, running_memory_size=1, injection_budget_chars=1000,
        )
        await engine.attach("c1", turns)
        assert await engine.compose_injection() == "[Previous events (summarized)]:\nAnn arrived."

    async def test_never_raises(self, make_turns, scripted_provider, scheduler):
        turns = make_turns("a", "b")
        engine = stored_engine(scripted_provider(), {0: record_for(turns, 0)}, scheduler, injection_budget_chars=500)
        await engine.attach("c1", turns)
        engine.classifier.reclassify = MagicMock(side_effect=RuntimeError("broken"))
        engine.composer.compose_legacy = MagicMock(side_effect=RuntimeError("also broken"))
        assert await engine.compose_injection() == ""

    async def test_cross_session_facts(self, make_turns, scripted_provider, scheduler):
        backend = InMemoryBackend()
        backend.save("earlier", {"0": MemoryRecord(text="Ann is stubborn.", base_importance=7).to_dict()})
        turns = make_turns("Ann walks in.")
        config = MemoryConfig(auto_summarize=False, enable_cross_session=True, injection_budget_chars=1000)
        engine = MemoryEngine(scripted_provider(), config, store=MemoryStore(backend), scheduler=scheduler)
        await engine.attach("c1", turns)

        block = await engine.compose_injection()
        assert block == "[Known from other conversations]:\n- Ann is stubborn"


# ── Construction Tests ──


class TestFromEnv:
    def test_json_store_and_local_retriever(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("MEMORY_SUMMARY_MODEL", raising=False)
        monkeypatch.delenv("MEMORY_EMBEDDING_MODEL", raising=False)
        monkeypatch.setenv("MEMORY_STORE_PATH", str(tmp_path / "memory.json"))
        monkeypatch.setenv("MEMORY_ENABLE_VECTORIZATION", "true")
        monkeypatch.setenv("MEMORY_IMMEDIATE_WINDOW", "4")

        with patch("langchain_lore.memory.engine.load_dotenv"), \
             patch("langchain_lore.memory.engine.create_chat_model") as mock_create:
            engine = MemoryEngine.from_env("gpt-4o")

        mock_create.assert_called_once_with("gpt-4o")
        assert isinstance(engine.store.backend, JsonFileBackend)
        assert engine.retriever is not None
        assert engine.retriever.provider is None
        assert engine.classifier.immediate_window == 4
        assert engine.model_name == "gpt-4o"

    def test_database_failure_falls_back(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://nowhere/db")
        monkeypatch.setenv("MEMORY_STORE_PATH", str(tmp_path / "memory.json"))
        monkeypatch.setenv("MEMORY_ENABLE_VECTORIZATION", "false")

        with patch("langchain_lore.memory.engine.load_dotenv"), \
             patch("langchain_lore.memory.engine.create_chat_model"), \
             patch("langchain_lore.memory.engine.open_pg_connection", side_effect=RuntimeError("refused")):
            engine = MemoryEngine.from_env("gpt-4o")

        assert isinstance(engine.store.backend, JsonFileBackend)
        assert engine.retriever is None


# ── Provider Tests ──


@pytest.mark.asyncio
class TestChatModelProvider:
    async def test_generate_sends_system_and_prompt(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=AIMessage(content="A summary."))
        provider = ChatModelProvider(llm)

        assert await provider.generate("Summarize this") == "A summary."
        messages = llm.ainvoke.await_args.args[0]
        assert isinstance(messages[0], SystemMessage)
        assert isinstance(messages[1], HumanMessage)
        assert messages[1].content == "Summarize this"

    async def test_fallback_uses_fallback_model_and_bare_prompt(self):
        llm = MagicMock()
        fallback = MagicMock()
        fallback.ainvoke = AsyncMock(return_value=AIMessage(content=[{"type": "text", "text": "From fallback."}]))
        provider = ChatModelProvider(llm, fallback_llm=fallback)

        assert await provider.generate_fallback("Summarize this") == "From fallback."
        fallback.ainvoke.assert_awaited_once_with("Summarize this")


class TestProviderHelpers:
    def test_response_text(self):
        assert response_text(AIMessage(content="plain")) == "plain"
        assert response_text(AIMessage(content=[{"type": "thinking", "thinking": "hm"}, {"type": "text", "text": "ok"}])) == "ok"
        assert response_text("raw") == "raw"

    def test_create_chat_model(self, monkeypatch):
        for name in ("API_KEY", "ANTHROPIC_AUTH_TOKEN", "API_BASE_URL", "ANTHROPIC_BASE_URL"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("MODEL_PROVIDER", "anthropic")

        with patch("langchain.chat_models.init_chat_model") as mock_init:
            create_chat_model("claude-3-haiku")

        mock_init.assert_called_once_with(
            "claude-3-haiku",
            model_provider="anthropic",
            temperature=0.3,
            max_tokens=1000,
            api_key="sk-test",
        )
