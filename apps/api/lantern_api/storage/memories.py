"""Durable character memories and npc/player affinity with SQLite fallback and Postgres support."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any
import json
import logging
import sqlite3

from packages.lantern_core.sim.memory import MemoryRecord, MemoryStore

from .llm_control import database_url, is_postgres_url, resolve_sqlite_path, run_migrations


logger = logging.getLogger("lantern_api.storage.memories")


def _record_from_row(row: Any) -> MemoryRecord:
    raw_tags = row["tags"]
    if isinstance(raw_tags, str):
        try:
            raw_tags = json.loads(raw_tags)
        except ValueError:
            raw_tags = []
    created_at = row["created_at"]
    if not isinstance(created_at, str):
        created_at = created_at.isoformat().replace("+00:00", "Z")
    return MemoryRecord(
        owner_id=str(row["owner_id"]),
        type=str(row["memory_type"]),
        content=str(row["content"]),
        importance=int(row["importance"]),
        tags=tuple(str(t) for t in (raw_tags or [])),
        id=str(row["id"]),
        created_at=created_at,
    )


class SQLiteMemoryStore(MemoryStore):
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        if self._initialized:
            return
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS npc_memories (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  id TEXT NOT NULL UNIQUE,
                  owner_id TEXT NOT NULL,
                  memory_type TEXT NOT NULL,
                  content TEXT NOT NULL,
                  importance INTEGER NOT NULL DEFAULT 3,
                  tags TEXT NOT NULL DEFAULT '[]',
                  created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_npc_memories_owner_seq ON npc_memories(owner_id, seq DESC)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS npc_player_relationships (
                  npc_id TEXT NOT NULL,
                  player_id TEXT NOT NULL,
                  score INTEGER NOT NULL DEFAULT 0,
                  last_rationale TEXT,
                  updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                  PRIMARY KEY (npc_id, player_id)
                )
                """
            )
        self._initialized = True

    def write_memory(self, record: MemoryRecord) -> MemoryRecord:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO npc_memories (id, owner_id, memory_type, content, importance, tags, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.owner_id,
                    record.type,
                    record.content,
                    int(record.importance),
                    json.dumps(list(record.tags)),
                    record.created_at,
                ),
            )
        return record

    def _select(self, where: str, params: tuple[Any, ...], limit: int) -> list[MemoryRecord]:
        self.init_db()
        bounded = max(0, int(limit))
        if bounded == 0:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM npc_memories WHERE {where} ORDER BY seq DESC LIMIT ?",
                (*params, bounded),
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def recent_memories(self, owner_id: str, *, limit: int = 8) -> list[MemoryRecord]:
        return self._select("owner_id = ?", (owner_id,), limit)

    def memories_by_tag(self, owner_id: str, tag: str, *, limit: int = 8) -> list[MemoryRecord]:
        return self._select(
            "owner_id = ? AND EXISTS (SELECT 1 FROM json_each(npc_memories.tags) WHERE json_each.value = ?)",
            (owner_id, tag),
            limit,
        )

    def memories_by_type(self, owner_id: str, memory_type: str, *, limit: int = 8) -> list[MemoryRecord]:
        return self._select("owner_id = ? AND memory_type = ?", (owner_id, memory_type), limit)

    def upsert_relationship_delta(self, npc_id: str, player_id: str, delta: int, rationale: str) -> int:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO npc_player_relationships (npc_id, player_id, score, last_rationale)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(npc_id, player_id) DO UPDATE SET
                  score = npc_player_relationships.score + excluded.score,
                  last_rationale = excluded.last_rationale,
                  updated_at = (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                """,
                (str(npc_id), str(player_id), int(delta), str(rationale or "")[:200]),
            )
            row = conn.execute(
                "SELECT score FROM npc_player_relationships WHERE npc_id = ? AND player_id = ?",
                (str(npc_id), str(player_id)),
            ).fetchone()
        return int(row["score"]) if row else 0

    def relationship_score(self, npc_id: str, player_id: str) -> int:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT score FROM npc_player_relationships WHERE npc_id = ? AND player_id = ?",
                (str(npc_id), str(player_id)),
            ).fetchone()
        return int(row["score"]) if row else 0


class PostgresMemoryStore(MemoryStore):
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._migrated = False

    def _connect(self):
        import psycopg
        from psycopg.rows import dict_row

        return psycopg.connect(self.database_url, row_factory=dict_row)

    def init_db(self) -> None:
        if self._migrated:
            return
        run_migrations(self._connect)
        self._migrated = True

    def write_memory(self, record: MemoryRecord) -> MemoryRecord:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO npc_memories (id, owner_id, memory_type, content, importance, tags, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    (
                        record.id,
                        record.owner_id,
                        record.type,
                        record.content,
                        int(record.importance),
                        json.dumps(list(record.tags)),
                        record.created_at,
                    ),
                )
        return record

    def _select(self, where: str, params: tuple[Any, ...], limit: int) -> list[MemoryRecord]:
        self.init_db()
        bounded = max(0, int(limit))
        if bounded == 0:
            return []
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT * FROM npc_memories WHERE {where} ORDER BY seq DESC LIMIT %s",
                    (*params, bounded),
                )
                rows = cur.fetchall()
        return [_record_from_row(row) for row in rows]

    def recent_memories(self, owner_id: str, *, limit: int = 8) -> list[MemoryRecord]:
        return self._select("owner_id = %s", (owner_id,), limit)

    def memories_by_tag(self, owner_id: str, tag: str, *, limit: int = 8) -> list[MemoryRecord]:
        return self._select("owner_id = %s AND tags @> %s::jsonb", (owner_id, json.dumps([tag])), limit)

    def memories_by_type(self, owner_id: str, memory_type: str, *, limit: int = 8) -> list[MemoryRecord]:
        return self._select("owner_id = %s AND memory_type = %s", (owner_id, memory_type), limit)

    def upsert_relationship_delta(self, npc_id: str, player_id: str, delta: int, rationale: str) -> int:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO npc_player_relationships (npc_id, player_id, score, last_rationale)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (npc_id, player_id) DO UPDATE SET
                      score = npc_player_relationships.score + EXCLUDED.score,
                      last_rationale = EXCLUDED.last_rationale,
                      updated_at = NOW()
                    RETURNING score
                    """,
                    (str(npc_id), str(player_id), int(delta), str(rationale or "")[:200]),
                )
                row = cur.fetchone()
        return int(row["score"]) if row else 0

    def relationship_score(self, npc_id: str, player_id: str) -> int:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT score FROM npc_player_relationships WHERE npc_id = %s AND player_id = %s",
                    (str(npc_id), str(player_id)),
                )
                row = cur.fetchone()
        return int(row["score"]) if row else 0


@lru_cache(maxsize=1)
def _backend() -> SQLiteMemoryStore | PostgresMemoryStore:
    url = database_url()
    if is_postgres_url(url):
        return PostgresMemoryStore(str(url))
    return SQLiteMemoryStore(resolve_sqlite_path(url))


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def init_db() -> None:
    _backend().init_db()


def memory_store() -> MemoryStore:
    return _backend()


def ping() -> None:
    """Raise when the backend cannot be reached."""
    _backend().recent_memories("__healthz__", limit=1)
