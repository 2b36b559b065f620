"""Character memory records and the durable-store interface the engine talks to."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable
import re
import threading
import uuid


MEMORY_TYPES = (
    "dialogue",
    "player_intro",
    "player_commitment",
    "observation_report",
    "task_note",
    "npc_conversation",
)

_TOKEN_RE = re.compile(r"[a-z0-9_]+")
_STOPWORDS = {
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "i", "in", "is",
    "it", "me", "my", "of", "on", "or", "that", "the", "to", "was", "were", "with", "you",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _tokenize(value: str) -> set[str]:
    return {tok for tok in _TOKEN_RE.findall(str(value or "").lower()) if tok not in _STOPWORDS}


def _jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return float(len(a & b)) / float(len(a | b))


@dataclass(frozen=True)
class MemoryRecord:
    owner_id: str
    type: str
    content: str
    importance: int = 3
    tags: tuple[str, ...] = ()
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now_iso)

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def category(self) -> str:
        for tag in self.tags:
            if tag.startswith("category:"):
                return tag[len("category:"):].strip().lower()
        return ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "type": self.type,
            "content": self.content,
            "importance": self.importance,
            "tags": list(self.tags),
            "created_at": self.created_at,
        }


def make_record(
    owner_id: str,
    memory_type: str,
    content: str,
    *,
    importance: int = 3,
    tags: Iterable[str] = (),
) -> MemoryRecord:
    clean_tags = tuple(dict.fromkeys(str(t).strip() for t in tags if str(t or "").strip()))
    return MemoryRecord(
        owner_id=str(owner_id),
        type=memory_type if memory_type in MEMORY_TYPES else "dialogue",
        content=str(content or "").strip()[:600],
        importance=max(1, min(10, int(importance))),
        tags=clean_tags,
    )


def rank_memories(records: list[MemoryRecord], focal_text: str, limit: int = 4) -> list[MemoryRecord]:
    """Order by keyword overlap with ``focal_text``, then importance, then recency."""
    focal = _tokenize(focal_text)
    scored = []
    for idx, record in enumerate(records):
        relevance = _jaccard(focal, _tokenize(record.content))
        # records arrive newest first; earlier index means more recent
        recency = 1.0 / (1 + idx)
        scored.append((3.0 * relevance + 0.2 * record.importance + recency, idx, record))
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [record for _, _, record in scored[: max(0, int(limit))]]


class MemoryStore(ABC):
    """Durable memory and player-relationship storage.

    Reads are expected to see writes made earlier in the same process.
    """

    @abstractmethod
    def write_memory(self, record: MemoryRecord) -> MemoryRecord:
        raise NotImplementedError

    @abstractmethod
    def recent_memories(self, owner_id: str, *, limit: int = 8) -> list[MemoryRecord]:
        raise NotImplementedError

    @abstractmethod
    def memories_by_tag(self, owner_id: str, tag: str, *, limit: int = 8) -> list[MemoryRecord]:
        raise NotImplementedError

    @abstractmethod
    def memories_by_type(self, owner_id: str, memory_type: str, *, limit: int = 8) -> list[MemoryRecord]:
        raise NotImplementedError

    @abstractmethod
    def upsert_relationship_delta(self, npc_id: str, player_id: str, delta: int, rationale: str) -> int:
        """Add ``delta`` to the npc/player affinity and return the new total."""
        raise NotImplementedError

    @abstractmethod
    def relationship_score(self, npc_id: str, player_id: str) -> int:
        raise NotImplementedError

    def has_introduced(self, npc_id: str, player_id: str) -> bool:
        return bool(self.memories_by_tag(npc_id, f"intro:{player_id}", limit=1))


class InMemoryMemoryStore(MemoryStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[MemoryRecord] = []
        self._relationships: dict[tuple[str, str], int] = {}

    def write_memory(self, record: MemoryRecord) -> MemoryRecord:
        with self._lock:
            self._records.append(record)
        return record

    def _newest_first(self, owner_id: str) -> list[MemoryRecord]:
        with self._lock:
            rows = [row for row in self._records if row.owner_id == owner_id]
        rows.reverse()
        return rows

    def recent_memories(self, owner_id: str, *, limit: int = 8) -> list[MemoryRecord]:
        return self._newest_first(owner_id)[: max(0, int(limit))]

    def memories_by_tag(self, owner_id: str, tag: str, *, limit: int = 8) -> list[MemoryRecord]:
        return [row for row in self._newest_first(owner_id) if row.has_tag(tag)][: max(0, int(limit))]

    def memories_by_type(self, owner_id: str, memory_type: str, *, limit: int = 8) -> list[MemoryRecord]:
        return [row for row in self._newest_first(owner_id) if row.type == memory_type][: max(0, int(limit))]

    def upsert_relationship_delta(self, npc_id: str, player_id: str, delta: int, rationale: str) -> int:
        key = (str(npc_id), str(player_id))
        with self._lock:
            self._relationships[key] = self._relationships.get(key, 0) + int(delta)
            return self._relationships[key]

    def relationship_score(self, npc_id: str, player_id: str) -> int:
        with self._lock:
            return self._relationships.get((str(npc_id), str(player_id)), 0)
