"""
Per-conversation record storage.

``MemoryStore`` holds the records of the currently attached conversation,
keyed by the turn index each record is filed under. Persistence is wholesale
per conversation through a ``RecordBackend``:

  - InMemoryBackend: process-local dict (default, tests)
  - JsonFileBackend: one JSON document on disk
  - PostgresBackend: one JSONB row per conversation

On load every record is checked against the live conversation; a record
whose source turns changed (hash mismatch), disappeared, or whose shape is
broken is dropped and the persisted copy pruned.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterator, Optional, Protocol

from .errors import RecordValidationError
from .records import MemoryRecord
from .turns import content_hash, get_turn, turn_text

logger = logging.getLogger(__name__)

StoredRecords = dict[str, dict]  # str(index) -> record dict


class RecordBackend(Protocol):
    def load(self, conversation_id: str) -> StoredRecords: ...

    def save(self, conversation_id: str, records: StoredRecords) -> None: ...

    def delete(self, conversation_id: str) -> None: ...

    def conversation_ids(self) -> list[str]:
        """Stored conversation ids, least recently saved first."""
        ...


class InMemoryBackend:
    def __init__(self):
        self._data: dict[str, StoredRecords] = {}

    def load(self, conversation_id: str) -> StoredRecords:
        return json.loads(json.dumps(self._data.get(conversation_id, {})))

    def save(self, conversation_id: str, records: StoredRecords) -> None:
        self._data.pop(conversation_id, None)
        self._data[conversation_id] = json.loads(json.dumps(records))

    def delete(self, conversation_id: str) -> None:
        self._data.pop(conversation_id, None)

    def conversation_ids(self) -> list[str]:
        return list(self._data)


class JsonFileBackend:
    """All conversations in a single JSON file, rewritten on every save."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _read(self) -> dict[str, StoredRecords]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read memory file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, StoredRecords]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load(self, conversation_id: str) -> StoredRecords:
        return self._read().get(conversation_id, {})

    def save(self, conversation_id: str, records: StoredRecords) -> None:
        data = self._read()
        data.pop(conversation_id, None)
        data[conversation_id] = records
        self._write(data)

    def delete(self, conversation_id: str) -> None:
        data = self._read()
        if data.pop(conversation_id, None) is not None:
            self._write(data)

    def conversation_ids(self) -> list[str]:
        return list(self._read())


class PostgresBackend:
    """Conversation records as JSONB rows in PostgreSQL."""

    def __init__(self, pg_conn):
        self._pg_conn = pg_conn
        self._setup_table()

    def _setup_table(self):
        with self._pg_conn.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS conversation_memories (
                    conversation_id TEXT PRIMARY KEY,
                    records JSONB NOT NULL DEFAULT '{}'::jsonb,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)

    def load(self, conversation_id: str) -> StoredRecords:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                "SELECT records FROM conversation_memories WHERE conversation_id = %s",
                (conversation_id,),
            )
            row = cur.fetchone()
        if not row:
            return {}
        records = row["records"] if isinstance(row, dict) else row[0]
        if isinstance(records, str):
            records = json.loads(records)
        return records or {}

    def save(self, conversation_id: str, records: StoredRecords) -> None:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO conversation_memories (conversation_id, records, updated_at)
                VALUES (%s, %s::jsonb, now())
                ON CONFLICT (conversation_id) DO UPDATE SET
                    records = EXCLUDED.records,
                    updated_at = now()
                """,
                (conversation_id, json.dumps(records, ensure_ascii=False)),
            )

    def delete(self, conversation_id: str) -> None:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                "DELETE FROM conversation_memories WHERE conversation_id = %s",
                (conversation_id,),
            )

    def conversation_ids(self) -> list[str]:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                "SELECT conversation_id FROM conversation_memories ORDER BY updated_at ASC"
            )
            rows = cur.fetchall()
        return [r["conversation_id"] if isinstance(r, dict) else r[0] for r in rows]


def open_pg_connection(db_url: str):
    """Open an autocommit psycopg connection returning dict rows."""
    from psycopg import Connection
    from psycopg.rows import dict_row

    return Connection.connect(
        db_url,
        autocommit=True,
        prepare_threshold=0,
        row_factory=dict_row,
    )


def validate_record(index: int, record: MemoryRecord, turns: list) -> None:
    """Raise RecordValidationError unless the record still matches the live turns."""
    if not record.text or not record.text.strip():
        raise RecordValidationError("empty summary text", index)
    if not record.content_hashes:
        raise RecordValidationError("no source hash", index)
    if index < 0 or index >= len(turns):
        raise RecordValidationError("target turn no longer exists", index)

    sources = record.source_indices(index)
    if len(sources) != len(record.content_hashes):
        raise RecordValidationError("hash count does not match source turns", index)
    for source, expected in zip(sources, record.content_hashes):
        turn = get_turn(turns, source)
        if turn is None:
            raise RecordValidationError(f"source turn {source} no longer exists", index)
        if content_hash(turn_text(turn)) != expected:
            raise RecordValidationError(f"source turn {source} changed", index)


class MemoryStore:
    """Records of the attached conversation, keyed by filing index."""

    def __init__(self, backend: Optional[RecordBackend] = None):
        self.backend = backend or InMemoryBackend()
        self._records: dict[int, MemoryRecord] = {}
        self._conversation_id: Optional[str] = None

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    def __len__(self) -> int:
        return len(self._records)

    def put(self, index: int, record: MemoryRecord) -> None:
        record.conversation_id = record.conversation_id or self._conversation_id
        self._records[index] = record

    def get(self, index: int) -> Optional[MemoryRecord]:
        return self._records.get(index)

    def has(self, index: int) -> bool:
        return index in self._records

    def delete(self, index: int) -> Optional[MemoryRecord]:
        return self._records.pop(index, None)

    def records(self) -> dict[int, MemoryRecord]:
        """Snapshot of all records ordered by index."""
        return dict(sorted(self._records.items()))

    def load_for_conversation(self, conversation_id: str, turns: list) -> int:
        """
        Load and validate the records of ``conversation_id``.

        Reloading the conversation that is already loaded (and non-empty) is a
        no-op. Returns the number of records held after the call.
        """
        if conversation_id == self._conversation_id and self._records:
            logger.debug("Conversation %s already loaded, skipping", conversation_id)
            return len(self._records)

        self._records = {}
        self._conversation_id = conversation_id
        stored = self.backend.load(conversation_id)

        dropped = 0
        for key, data in stored.items():
            try:
                index = int(key)
                record = MemoryRecord.from_dict(data)
                validate_record(index, record, turns)
            except (ValueError, RecordValidationError) as e:
                dropped += 1
                logger.warning("Dropping stored record %s of %s: %s", key, conversation_id, e)
                continue
            record.conversation_id = record.conversation_id or conversation_id
            self._records[index] = record

        if dropped:
            self.save_for_conversation(conversation_id)

        logger.info(
            "Loaded %d records for conversation %s (%d dropped)",
            len(self._records), conversation_id, dropped,
        )
        return len(self._records)

    def save_for_conversation(self, conversation_id: Optional[str] = None) -> None:
        conversation_id = conversation_id or self._conversation_id
        if not conversation_id:
            return
        payload = {str(i): r.to_dict() for i, r in sorted(self._records.items())}
        self.backend.save(conversation_id, payload)

    def prune_conversations(self, keep: int, active_id: Optional[str] = None) -> list[str]:
        """Drop the oldest conversations beyond ``keep``; the active one always stays."""
        ids = self.backend.conversation_ids()
        if len(ids) <= keep:
            return []
        kept = set(ids[-keep:]) if keep > 0 else set()
        if active_id:
            kept.add(active_id)
        dropped = [cid for cid in ids if cid not in kept]
        for cid in dropped:
            self.backend.delete(cid)
        if dropped:
            logger.info("Pruned %d old conversations from memory storage", len(dropped))
        return dropped

    def other_conversations(self) -> Iterator[tuple[str, dict[int, MemoryRecord]]]:
        """Records of every stored conversation except the attached one."""
        for cid in self.backend.conversation_ids():
            if cid == self._conversation_id:
                continue
            records: dict[int, MemoryRecord] = {}
            for key, data in self.backend.load(cid).items():
                try:
                    record = MemoryRecord.from_dict(data)
                    records[int(key)] = record
                except (ValueError, RecordValidationError):
                    continue
                record.conversation_id = record.conversation_id or cid
            yield cid, records
