"""
Semantic retrieval of turns that left the running window.

Architecture:
  - Excluded turns → META-prefixed text → inserted into a per-conversation
    collection (remote provider, best effort) and into a local index (always)
  - Query → last few turns as search text → remote query, or the local
    bag-of-words index when the remote call fails → decode META prefix →
    threshold filter → sort by score, then turn index

META prefix format (kept compatible with other vector tooling):
    [META:floor=12,speaker=Ann,type=excluded_message,originalIndex=12] text

Providers:
  - PgVectorProvider: PostgreSQL + pgvector, embeddings from a LangChain
    ``Embeddings`` model
  - LocalVectorIndex: hashed bag-of-words vectors with numpy cosine similarity
"""

import asyncio
import hashlib
import json
import logging
import re
import time
from typing import Optional, Protocol

import numpy as np

from .turns import content_hash, speaker_name, turn_role, turn_text, TurnRole

logger = logging.getLogger(__name__)

EXCLUDED_MESSAGE = "excluded_message"
QUERY_TURNS = 3
MAX_QUERY_CHARS = 500

_META = re.compile(r"^\[META:([^\]]+)\]")
_WORD = re.compile(r"[a-z0-9']+")
_INT_KEYS = ("floor", "originalIndex")


class VectorSearchProvider(Protocol):
    async def insert(self, collection_id: str, item: dict) -> None: ...

    async def query(self, collection_id: str, text: str, top_k: int) -> list[dict]: ...


def encode_turn(index: int, turn, chat_id: str = "") -> dict:
    """Vector item for a turn: META-prefixed text plus structured metadata."""
    text = turn_text(turn)
    speaker = speaker_name(turn)
    return {
        "text": (
            f"[META:floor={index},speaker={speaker},type={EXCLUDED_MESSAGE},"
            f"originalIndex={index}] {text}"
        ),
        "hash": content_hash(text),
        "index": index,
        "metadata": {
            "type": EXCLUDED_MESSAGE,
            "chatId": chat_id,
            "messageIndex": index,
            "originalIndex": index,
            "floor": index,
            "timestamp": time.time(),
            "speaker": speaker,
            "is_user": turn_role(turn) is TurnRole.USER,
        },
    }


def decode_metadata(encoded: str) -> tuple[str, dict]:
    """Split a META-prefixed text into (clean text, metadata)."""
    if not encoded:
        return encoded, {}
    match = _META.match(encoded)
    if not match:
        return encoded, {}
    metadata: dict = {}
    for pair in match.group(1).split(","):
        key, sep, value = pair.partition("=")
        if not sep or not key:
            continue
        if key in _INT_KEYS:
            try:
                metadata[key] = int(value)
            except ValueError:
                continue
        else:
            metadata[key] = value
    return encoded[match.end():].strip(), metadata


def tokenize(text: str) -> list[str]:
    clean, _ = decode_metadata(text)
    return _WORD.findall(clean.lower())


class LocalVectorIndex:
    """
    In-process approximate search.

    Texts are embedded as hashed bag-of-words count vectors; similarity is
    cosine similarity over those vectors.
    """

    def __init__(self, dimensions: int = 1024):
        self.dimensions = dimensions
        self._collections: dict[str, list[tuple[np.ndarray, dict]]] = {}

    def embed(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimensions, dtype=np.float32)
        for word in tokenize(text):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest()[:8], 16) % self.dimensions
            vec[bucket] += 1.0
        return vec

    @staticmethod
    def cosine_similarity_batch(query_vec: np.ndarray, vectors: np.ndarray) -> np.ndarray:
        if len(vectors) == 0:
            return np.array([])
        query_norm = np.linalg.norm(query_vec)
        norms = np.linalg.norm(vectors, axis=1)
        denom = norms * query_norm
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(denom > 0, vectors @ query_vec / denom, 0.0)
        return scores

    async def insert(self, collection_id: str, item: dict) -> None:
        entries = self._collections.setdefault(collection_id, [])
        # replace an earlier vector for the same turn
        index = item.get("index")
        if index is not None:
            entries[:] = [e for e in entries if e[1].get("index") != index]
        entries.append((self.embed(item["text"]), item))

    async def query(self, collection_id: str, text: str, top_k: int) -> list[dict]:
        entries = self._collections.get(collection_id) or []
        if not entries or top_k <= 0:
            return []
        matrix = np.array([vec for vec, _ in entries])
        scores = self.cosine_similarity_batch(self.embed(text), matrix)
        order = np.argsort(-scores)[:top_k]
        return [
            {
                "text": entries[i][1]["text"],
                "score": float(scores[i]),
                "metadata": dict(entries[i][1].get("metadata") or {}),
            }
            for i in order
        ]

    def drop(self, collection_id: str) -> None:
        self._collections.pop(collection_id, None)

    def size(self, collection_id: str) -> int:
        return len(self._collections.get(collection_id) or [])


class PgVectorProvider:
    """
    Vector search in PostgreSQL with the pgvector extension.

    Raises when embeddings are unavailable so the caller can fall back to
    the local index.
    """

    def __init__(self, pg_conn, embedding_model=None, embedding_dimensions: int = 0):
        self._pg_conn = pg_conn
        self._embedding_model = embedding_model
        self._embedding_dimensions = embedding_dimensions
        self._setup_table()

    def _setup_table(self):
        dim = self._embedding_dimensions or self._detect_dimensions()
        with self._pg_conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
            cur.execute(f"""
                CREATE TABLE IF NOT EXISTS memory_vectors (
                    id TEXT PRIMARY KEY,
                    collection_id TEXT NOT NULL,
                    chunk TEXT NOT NULL,
                    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                    embedding vector({dim}),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_memory_vectors_collection
                ON memory_vectors (collection_id)
            """)

    def _detect_dimensions(self) -> int:
        """Detect embedding dimensions by doing a test embed."""
        if self._embedding_model:
            try:
                dim = len(self._embedding_model.embed_query("test"))
                self._embedding_dimensions = dim
                return dim
            except Exception as e:
                logger.warning("Embedding dimension detection failed: %s", e)
        # Default for common models
        return 1536

    def _embed(self, text: str) -> list[float]:
        if not self._embedding_model:
            raise RuntimeError("no embedding model configured")
        return self._embedding_model.embed_query(text)

    @staticmethod
    def _make_id(collection_id: str, item: dict) -> str:
        """Deterministic ID for deduplication."""
        key = f"{collection_id}:{item.get('index')}:{item.get('hash') or item['text'][:200]}"
        return "mem-" + hashlib.sha256(key.encode()).hexdigest()[:16]

    def _insert(self, collection_id: str, item: dict) -> None:
        embedding = self._embed(item["text"])
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO memory_vectors (id, collection_id, chunk, metadata, embedding)
                VALUES (%s, %s, %s, %s::jsonb, %s::vector)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    self._make_id(collection_id, item),
                    collection_id,
                    item["text"],
                    json.dumps(item.get("metadata") or {}),
                    str(embedding),
                ),
            )

    def _query(self, collection_id: str, text: str, top_k: int) -> list[dict]:
        embedding = str(self._embed(text))
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                SELECT chunk, metadata,
                       1 - (embedding <=> %s::vector) AS score
                FROM memory_vectors
                WHERE collection_id = %s AND embedding IS NOT NULL
                ORDER BY embedding <=> %s::vector
                LIMIT %s
                """,
                (embedding, collection_id, embedding, top_k),
            )
            rows = cur.fetchall()
        results = []
        for row in rows:
            if isinstance(row, dict):
                chunk, metadata, score = row["chunk"], row.get("metadata"), row.get("score")
            else:
                chunk, metadata, score = row[0], row[1], row[2]
            if isinstance(metadata, str):
                metadata = json.loads(metadata)
            results.append({"text": chunk, "score": float(score or 0), "metadata": metadata or {}})
        return results

    async def insert(self, collection_id: str, item: dict) -> None:
        await asyncio.to_thread(self._insert, collection_id, item)

    async def query(self, collection_id: str, text: str, top_k: int) -> list[dict]:
        return await asyncio.to_thread(self._query, collection_id, text, top_k)


class SemanticRetriever:
    """
    Vectorizes excluded turns and finds the ones relevant to the current turn.

    Remote calls are best effort: insert failures are logged, query failures
    fall back to the local index.
    """

    def __init__(
        self,
        provider: Optional[VectorSearchProvider] = None,
        local_index: Optional[LocalVectorIndex] = None,
        similarity_threshold: float = 0.7,
        limit: int = 3,
    ):
        self.provider = provider
        self.local_index = local_index or LocalVectorIndex()
        self.similarity_threshold = similarity_threshold
        self.limit = limit
        self._vectorized: dict[tuple[str, int], str] = {}

    @staticmethod
    def collection_id(conversation_id: str) -> str:
        return f"lore_{conversation_id}"

    def is_vectorized(self, conversation_id: str, index: int, turn) -> bool:
        return self._vectorized.get((conversation_id, index)) == content_hash(turn_text(turn))

    async def vectorize_turn(self, conversation_id: str, index: int, turn) -> bool:
        """Store one excluded turn; returns False when it was already stored."""
        if not turn_text(turn).strip() or self.is_vectorized(conversation_id, index, turn):
            return False
        item = encode_turn(index, turn, conversation_id)
        collection = self.collection_id(conversation_id)

        await self.local_index.insert(collection, item)
        if self.provider is not None:
            try:
                await self.provider.insert(collection, item)
            except Exception as e:
                logger.warning("Vector insert failed for turn %d: %s", index, e)

        self._vectorized[(conversation_id, index)] = item["hash"]
        return True

    async def vectorize_excluded(self, conversation_id: str, turns: list, cutoff: int) -> int:
        """Vectorize every turn before ``cutoff``."""
        stored = 0
        for index in range(0, max(0, min(cutoff, len(turns)))):
            if await self.vectorize_turn(conversation_id, index, turns[index]):
                stored += 1
        if stored:
            logger.info("Vectorized %d excluded turns for %s", stored, conversation_id)
        return stored

    @staticmethod
    def query_text(turns: list) -> str:
        recent = " ".join(turn_text(t) for t in turns[-QUERY_TURNS:])
        return recent[:MAX_QUERY_CHARS]

    async def search(self, conversation_id: str, query: str, limit: Optional[int] = None) -> list[dict]:
        """Relevant excluded turns, best first, each with decoded metadata."""
        if not query or not query.strip():
            return []
        limit = limit or self.limit
        collection = self.collection_id(conversation_id)

        raw: list[dict] = []
        if self.provider is not None:
            try:
                raw = await self.provider.query(collection, query, limit)
            except Exception as e:
                logger.warning("Vector query failed, using local index: %s", e)
                raw = await self.local_index.query(collection, query, limit)
        else:
            raw = await self.local_index.query(collection, query, limit)

        results = []
        for item in raw:
            text, decoded = decode_metadata(item.get("text") or "")
            metadata = {**(item.get("metadata") or {}), **decoded}
            if metadata.get("type") != EXCLUDED_MESSAGE:
                continue
            score = float(item.get("score", 1.0))
            if score < self.similarity_threshold:
                continue
            results.append({"text": text, "score": score, "metadata": metadata})

        results.sort(key=lambda r: (-r["score"], r["metadata"].get("originalIndex") or 0))
        return results[:limit]

    def forget(self, conversation_id: str) -> None:
        self.local_index.drop(self.collection_id(conversation_id))
        for key in [k for k in self._vectorized if k[0] == conversation_id]:
            del self._vectorized[key]
