"""
Tests for injection assembly: composer, semantic retrieval and
cross-session facts.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from langchain_core.messages import AIMessage, HumanMessage

from langchain_lore.memory.composer import InjectionComposer, build_section, format_hit
from langchain_lore.memory.cross_session import CrossSessionCollector, CrossSessionFact
from langchain_lore.memory.records import ContextHints, MemoryRecord
from langchain_lore.memory.retriever import (
    LocalVectorIndex,
    PgVectorProvider,
    SemanticRetriever,
    decode_metadata,
    encode_turn,
)
from langchain_lore.memory.store import InMemoryBackend, MemoryStore
from langchain_lore.memory.tiers import TierEntry, TierSet
from langchain_lore.memory.token_budget import InjectionBudget
from langchain_lore.memory.weighting import SECONDS_PER_DAY


def entry(index: int, text: str, core: bool = False, importance: float = 9.0) -> TierEntry:
    return TierEntry(
        index=index,
        text=text,
        importance=importance,
        record=MemoryRecord(text=text, is_core_memory=core),
    )


def meta_hit(index: int, text: str, score: float, speaker: str = "Ann") -> dict:
    return {
        "text": f"[META:floor={index},speaker={speaker},type=excluded_message,originalIndex={index}] {text}",
        "score": score,
    }


# ── Composer Tests ──


class TestInjectionComposer:
    def setup_method(self):
        self.composer = InjectionComposer()

    def test_tiered_layout(self):
        tiers = TierSet(
            permanent=[entry(0, "Ann swore an oath.", core=True), entry(5, "The tower fell.")],
            long_term=[entry(20, "Bob found the key.")],
            medium_term=[entry(40, "They rested.")],
        )
        result = self.composer.compose(tiers, InjectionBudget.for_total(1000))
        assert result == (
            "[Permanent memories]:\n* Ann swore an oath.\n- The tower fell.\n\n"
            "[Long-term memories]:\n- Bob found the key.\n\n"
            "[Recent important events]:\n- They rested."
        )

    def test_tier_limits(self):
        tiers = TierSet(
            permanent=[entry(i, f"fact {i}") for i in range(12)],
            long_term=[entry(i, f"long {i}") for i in range(7)],
            medium_term=[entry(i, f"medium {i}") for i in range(4)],
        )
        result = self.composer.compose(tiers, InjectionBudget.for_total(5000))
        assert result.count("- fact") == 10
        assert result.count("- long") == 5
        assert result.count("- medium") == 3

    def test_gates_skip_lower_tiers(self):
        tiers = TierSet(
            permanent=[entry(0, "x" * 60)],
            long_term=[entry(1, "ok")],
            medium_term=[entry(2, "ok")],
        )
        budget = InjectionBudget(total=200, cross_session_max=40, long_term_gate=50, medium_term_gate=60)
        result = self.composer.compose(tiers, budget)
        assert result.startswith("[Permanent memories]:")
        assert "[Long-term memories]" not in result
        assert "[Recent important events]" not in result

    def test_oversized_section_is_skipped_whole(self):
        tiers = TierSet(permanent=[entry(0, "y" * 100)], long_term=[entry(1, "ok")])
        result = self.composer.compose(tiers, InjectionBudget.for_total(60))
        assert result == "[Long-term memories]:\n- ok"

    def test_cross_session_reserve(self):
        facts = [
            CrossSessionFact("old", text, 5.0, 0.0)
            for text in ("Ann is brave", "Bob is loyal", "Cid is sly", "Dee is kind")
        ]
        budget = InjectionBudget.for_total(400)
        result = self.composer.compose(TierSet(permanent=[entry(0, "Ann swore an oath.")]), budget, facts)

        section = result.split("\n\n")[0]
        assert section.startswith("[Known from other conversations]:")
        assert len(section) <= budget.cross_session_max
        assert "Cid is sly" in section
        assert "Dee is kind" not in result
        assert "[Permanent memories]:" in result

    def test_semantic_hits_last(self):
        hits = [{"text": "the map is in the cellar", "score": 0.8234, "metadata": {"speaker": "Ann", "originalIndex": 12}}]
        result = self.composer.compose(TierSet(permanent=[entry(0, "Ann swore an oath.")]), InjectionBudget.for_total(500), semantic_hits=hits)
        assert result.endswith(
            "[Relevant past conversations]:\nAnn (message 12, relevance: 82.3%): the map is in the cellar"
        )

    def test_never_exceeds_budget(self):
        tiers = TierSet(
            permanent=[entry(i, f"permanent memory number {i} " * 3) for i in range(12)],
            long_term=[entry(i, f"long memory {i} " * 4) for i in range(6)],
            medium_term=[entry(i, f"medium memory {i}") for i in range(4)],
        )
        facts = [CrossSessionFact("old", f"Ann is fact {i}", 5.0, 0.0) for i in range(10)]
        hits = [{"text": "hit " * 20, "score": 0.9, "metadata": {"speaker": "Bob", "originalIndex": i}} for i in range(3)]
        for total in (0, 10, 50, 100, 200, 500, 1000, 5000):
            result = self.composer.compose(tiers, InjectionBudget.for_total(total), facts, hits)
            assert len(result) <= total

    def test_empty_tiers(self):
        assert self.composer.compose(TierSet(), InjectionBudget.for_total(1000)) == ""
        assert self.composer.compose(TierSet(permanent=[entry(0, "x")]), InjectionBudget.for_total(0)) == ""

    def test_legacy_mode(self):
        records = {
            0: MemoryRecord(text="Ann arrived.", context=ContextHints(time_hint="dawn")),
            5: MemoryRecord(text="Bob left."),
            60: MemoryRecord(text="Too recent."),
        }
        hits = [{"text": "hello", "score": 0.75, "metadata": {"speaker": "Bob", "originalIndex": 3}}]
        result = self.composer.compose_legacy(records, total_turns=100, running_memory_size=50, budget_total=1000, semantic_hits=hits)
        assert result == (
            "[Previous events (summarized)]:\nAnn arrived. (time: dawn)\nBob left.\n\n"
            "[Relevant past conversations]:\nBob (message 3, relevance: 75.0%): hello"
        )

    def test_legacy_mode_respects_budget(self):
        records = {i: MemoryRecord(text=f"event number {i} happened") for i in range(40)}
        result = self.composer.compose_legacy(records, 200, 50, budget_total=150)
        assert 0 < len(result) <= 150


class TestComposerHelpers:
    def test_build_section_skips_lines_that_do_not_fit(self):
        assert build_section("[H]:", ["aaaa", "b" * 50, "cc"], max_chars=15) == "[H]:\naaaa\ncc"
        assert build_section("[H]:", ["b" * 50], max_chars=15) == ""
        assert build_section("[H]:", []) == ""

    def test_format_hit_defaults(self):
        assert format_hit({"text": "x", "score": 0.5}) == "Unknown (message Unknown, relevance: 50.0%): x"
        assert format_hit({"text": "x", "score": 1, "metadata": {"floor": 4}}).startswith("Unknown (message 4,")


# ── Retriever Tests ──


class TestMetaEncoding:
    def test_encode_turn(self):
        item = encode_turn(12, AIMessage(content="The map is hidden."), "c1")
        assert item["text"] == (
            "[META:floor=12,speaker=Assistant,type=excluded_message,originalIndex=12] The map is hidden."
        )
        assert item["index"] == 12
        assert item["metadata"]["chatId"] == "c1"
        assert item["metadata"]["is_user"] is False

    def test_decode_metadata(self):
        text, metadata = decode_metadata(
            "[META:floor=12,speaker=Ann,type=excluded_message,originalIndex=12] The map is hidden."
        )
        assert text == "The map is hidden."
        assert metadata == {"floor": 12, "speaker": "Ann", "type": "excluded_message", "originalIndex": 12}

    def test_decode_plain_text(self):
        assert decode_metadata("no prefix here") == ("no prefix here", {})
        assert decode_metadata("") == ("", {})


@pytest.mark.asyncio
class TestLocalVectorIndex:
    async def test_query_ranks_by_similarity(self):
        index = LocalVectorIndex()
        await index.insert("c", {"text": "Ann hid the silver key", "index": 0})
        await index.insert("c", {"text": "Bob sang a song", "index": 1})

        results = await index.query("c", "silver key", 2)
        assert results[0]["text"] == "Ann hid the silver key"
        assert results[0]["score"] > results[1]["score"]

    async def test_insert_replaces_same_turn(self):
        index = LocalVectorIndex()
        await index.insert("c", {"text": "old text", "index": 0})
        await index.insert("c", {"text": "new text", "index": 0})
        assert index.size("c") == 1
        assert (await index.query("c", "new text", 1))[0]["text"] == "new text"

    async def test_empty_collection(self):
        index = LocalVectorIndex()
        assert await index.query("missing", "anything", 3) == []
        index.drop("missing")
        assert index.size("missing") == 0


@pytest.mark.asyncio
class TestSemanticRetriever:
    async def test_filters_sorts_and_limits(self):
        provider = MagicMock()
        provider.query = AsyncMock(return_value=[
            meta_hit(3, "third", 0.9),
            meta_hit(1, "first", 0.9, speaker="Bob"),
            meta_hit(2, "weak", 0.5),
            {"text": "unrelated document", "score": 0.99, "metadata": {"type": "note"}},
            meta_hit(4, "fourth", 0.8),
        ])
        retriever = SemanticRetriever(provider, similarity_threshold=0.7, limit=2)

        results = await retriever.search("c1", "where is the map")

        provider.query.assert_awaited_once_with("lore_c1", "where is the map", 2)
        assert [r["metadata"]["originalIndex"] for r in results] == [1, 3]
        assert results[0]["text"] == "first"
        assert results[0]["metadata"]["speaker"] == "Bob"

    async def test_vectorizes_each_turn_once(self, make_turns):
        provider = MagicMock()
        provider.insert = AsyncMock()
        retriever = SemanticRetriever(provider)
        turns = make_turns("a1", "b2", "c3", "d4", "e5")

        assert await retriever.vectorize_excluded("c1", turns, 3) == 3
        assert await retriever.vectorize_excluded("c1", turns, 3) == 0
        assert provider.insert.await_count == 3
        assert retriever.is_vectorized("c1", 0, turns[0])

        turns[0] = HumanMessage(content="edited")
        assert await retriever.vectorize_excluded("c1", turns, 3) == 1

    async def test_insert_failure_is_tolerated(self, make_turns):
        provider = MagicMock()
        provider.insert = AsyncMock(side_effect=RuntimeError("offline"))
        retriever = SemanticRetriever(provider)
        turns = make_turns("Ann hid the key.")

        assert await retriever.vectorize_turn("c1", 0, turns[0]) is True
        assert retriever.local_index.size("lore_c1") == 1

    async def test_query_failure_falls_back_to_local(self, make_turns):
        provider = MagicMock()
        provider.insert = AsyncMock()
        provider.query = AsyncMock(side_effect=RuntimeError("offline"))
        retriever = SemanticRetriever(provider, similarity_threshold=0.5)
        turns = make_turns("Ann hid the silver key under the floor.", "Bob sang loudly.")
        await retriever.vectorize_excluded("c1", turns, 2)

        results = await retriever.search("c1", "Ann hid the silver key under the floor.")

        assert len(results) == 1
        assert results[0]["text"] == "Ann hid the silver key under the floor."
        assert results[0]["metadata"]["originalIndex"] == 0
        assert results[0]["metadata"]["speaker"] == "User"
        assert results[0]["score"] == pytest.approx(1.0)

    async def test_local_only_and_forget(self, make_turns):
        retriever = SemanticRetriever(similarity_threshold=0.5)
        turns = make_turns("The caravan left at dawn.")
        await retriever.vectorize_excluded("c1", turns, 1)
        assert len(await retriever.search("c1", "The caravan left at dawn.")) == 1

        retriever.forget("c1")
        assert retriever.local_index.size("lore_c1") == 0
        assert not retriever.is_vectorized("c1", 0, turns[0])

    async def test_blank_query(self):
        assert await SemanticRetriever().search("c1", "   ") == []


class TestQueryText:
    def test_last_turns_capped(self, make_turns):
        turns = make_turns("one", "two", "three", "four")
        assert SemanticRetriever.query_text(turns) == "two three four"
        assert len(SemanticRetriever.query_text(make_turns("x" * 900))) == 500

    def test_pg_ids_are_deterministic(self):
        item = {"text": "hi", "index": 4, "hash": "abc"}
        assert PgVectorProvider._make_id("c", item) == PgVectorProvider._make_id("c", dict(item))
        assert PgVectorProvider._make_id("c", item) != PgVectorProvider._make_id("d", item)


@pytest.mark.asyncio
class TestPgVectorProvider:
    def _conn(self):
        conn = MagicMock()
        cur = conn.cursor.return_value.__enter__.return_value
        return conn, cur

    async def test_setup_detects_dimensions(self):
        conn, cur = self._conn()
        embeddings = MagicMock()
        embeddings.embed_query.return_value = [0.1, 0.2, 0.3]

        PgVectorProvider(conn, embeddings)

        statements = [c.args[0] for c in cur.execute.call_args_list]
        assert "CREATE EXTENSION IF NOT EXISTS vector" in statements[0]
        assert "vector(3)" in statements[1]

    async def test_insert_and_query(self):
        conn, cur = self._conn()
        embeddings = MagicMock()
        embeddings.embed_query.return_value = [0.1, 0.2]
        provider = PgVectorProvider(conn, embeddings, embedding_dimensions=2)

        await provider.insert("lore_c1", {"text": "[META:floor=1] hi", "index": 1, "hash": "h", "metadata": {"type": "excluded_message"}})
        sql, params = cur.execute.call_args.args
        assert "INSERT INTO memory_vectors" in sql
        assert params[1] == "lore_c1"
        assert params[4] == "[0.1, 0.2]"

        cur.fetchall.return_value = [
            {"chunk": "[META:floor=1] hi", "metadata": '{"type": "excluded_message"}', "score": 0.91},
        ]
        results = await provider.query("lore_c1", "hi", 3)
        assert results == [{"text": "[META:floor=1] hi", "score": 0.91, "metadata": {"type": "excluded_message"}}]

    async def test_missing_embeddings_raise(self):
        conn, cur = self._conn()
        provider = PgVectorProvider(conn)
        assert "vector(1536)" in cur.execute.call_args_list[1].args[0]
        with pytest.raises(RuntimeError):
            await provider.query("lore_c1", "hi", 3)


# ── Cross-Session Tests ──


class TestCrossSessionCollector:
    def setup_method(self):
        self.now = 1_700_000_000.0
        self.backend = InMemoryBackend()

        trait = MemoryRecord(
            text="Ann is brave.",
            base_importance=7,
            created_at=self.now - 3 * SECONDS_PER_DAY,
            relationships=[{"a": "Ann", "b": "Bob", "kind": "trusts"}],
        )
        core = MemoryRecord(
            text="Ann saved Cid from the fire.",
            base_importance=9,
            is_core_memory=True,
            characters=["Ann", "Cid"],
            created_at=self.now - SECONDS_PER_DAY,
        )
        stale = MemoryRecord(text="Ann is cruel.", base_importance=10, created_at=self.now - 40 * SECONDS_PER_DAY)
        unrelated = MemoryRecord(text="Zed is tall.", created_at=self.now)
        self.backend.save("old", {
            "0": trait.to_dict(), "1": core.to_dict(), "2": stale.to_dict(), "3": unrelated.to_dict(),
        })
        repeat = MemoryRecord(text="Ann is brave.", base_importance=3, created_at=self.now)
        self.backend.save("older", {"0": repeat.to_dict()})

        self.store = MemoryStore(self.backend)
        self.store.load_for_conversation("current", [HumanMessage(content="Ann waves.")])

    def test_collects_facts_about_present_characters(self):
        collector = CrossSessionCollector(self.store, max_age_days=30, clock=lambda: self.now)
        facts = collector.collect({"Ann"})
        texts = [f.text for f in facts]

        assert texts[0] == "Ann saved Cid from the fire."
        assert texts.count("Ann is brave") == 1
        assert "Ann trusts Bob" in texts
        assert "Ann is cruel" not in texts
        assert all("Zed" not in t for t in texts)
        assert facts[0].conversation_id == "old"

    def test_skips_current_conversation_and_empty_names(self):
        self.backend.save("current", {"0": MemoryRecord(text="Ann is loud.", created_at=self.now).to_dict()})
        collector = CrossSessionCollector(self.store, clock=lambda: self.now)
        assert "Ann is loud" not in [f.text for f in collector.collect(["Ann"])]
        assert collector.collect([]) == []
