"""Symmetric character relations and per-player reputation."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any
import time


RELATION_MIN = -10
RELATION_MAX = 10
REPUTATION_GLOBAL_LIMIT = 100
REPUTATION_ROLE_LIMIT = 60
REPUTATION_HISTORY_LIMIT = 8
DISLIKE_THRESHOLD = -5
GRUDGE_THRESHOLD = -7

# (a, b, score, reason)
SEED_RELATIONS: tuple[tuple[str, str, int, str], ...] = (
    ("npc_guard", "npc_cultist", -6, "suspects forest rituals"),
    ("npc_devotee", "npc_cultist", -7, "open doctrinal feud"),
    ("npc_shop_owner", "npc_businessman", 4, "steady trade partners"),
    ("npc_herbalist", "npc_devotee", 5, "share remedies for the sick"),
    ("npc_blacksmith", "npc_guard", 3, "keeps the watch armed"),
    ("npc_fisherman", "npc_shop_owner", 3, "supplies the morning catch"),
    ("npc_politician", "npc_businessman", -3, "argue over market taxes"),
)


def _clamp_int(value: Any, low: int, high: int) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        number = 0
    return max(low, min(high, number))


def pair_key(a: str, b: str) -> str:
    left, right = sorted((str(a), str(b)))
    return f"{left}|{right}"


@dataclass
class RelationEntry:
    score: int = 0
    reason: str = ""
    updated_at: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def relation_score(relations: dict[str, RelationEntry], a: str, b: str) -> int:
    if a == b:
        return 0
    entry = relations.get(pair_key(a, b))
    return entry.score if entry else 0


def bump_relation(
    relations: dict[str, RelationEntry],
    a: str,
    b: str,
    delta: Any,
    reason: str = "",
    *,
    now: float | None = None,
) -> RelationEntry | None:
    if not a or not b or a == b:
        return None
    key = pair_key(a, b)
    entry = relations.get(key) or RelationEntry()
    entry.score = _clamp_int(entry.score + _clamp_int(delta, -1000, 1000), RELATION_MIN, RELATION_MAX)
    entry.reason = str(reason or entry.reason or "recent interaction")[:140]
    entry.updated_at = float(now if now is not None else time.time())
    relations[key] = entry
    return entry


def relation_label(score: int) -> str:
    if score >= 6:
        return "ally"
    if score >= 3:
        return "friendly"
    if score > -3:
        return "neutral"
    if score > GRUDGE_THRESHOLD:
        return "cold"
    return "grudge"


def relation_hints(relations: dict[str, RelationEntry], character_id: str, limit: int = 3) -> list[dict[str, Any]]:
    """Strongest relations (by magnitude) touching one character."""
    rows: list[dict[str, Any]] = []
    for key, entry in relations.items():
        left, _, right = key.partition("|")
        if character_id not in (left, right):
            continue
        other = right if left == character_id else left
        rows.append({"other_id": other, "score": entry.score, "label": relation_label(entry.score), "reason": entry.reason})
    rows.sort(key=lambda row: (-abs(row["score"]), row["other_id"]))
    return rows[: max(0, int(limit))]


def seed_relations(now: float | None = None) -> dict[str, RelationEntry]:
    relations: dict[str, RelationEntry] = {}
    for a, b, score, reason in SEED_RELATIONS:
        bump_relation(relations, a, b, score, reason, now=now if now is not None else 0.0)
    return relations


def hydrate_relations(raw: Any) -> dict[str, RelationEntry]:
    relations: dict[str, RelationEntry] = {}
    if not isinstance(raw, dict):
        return relations
    for key, item in raw.items():
        left, sep, right = str(key).partition("|")
        if not sep or not left or not right or left == right or not isinstance(item, dict):
            continue
        relations[pair_key(left, right)] = RelationEntry(
            score=_clamp_int(item.get("score"), RELATION_MIN, RELATION_MAX),
            reason=str(item.get("reason") or "")[:140],
            updated_at=float(item.get("updated_at") or 0.0),
        )
    return relations


@dataclass
class Reputation:
    score: int = 0
    by_role: dict[str, int] = field(default_factory=dict)
    recent: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "label": reputation_label(self.score),
            "by_role": dict(self.by_role),
            "recent": list(self.recent),
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "Reputation":
        rep = cls()
        if not isinstance(raw, dict):
            return rep
        rep.score = _clamp_int(raw.get("score"), -REPUTATION_GLOBAL_LIMIT, REPUTATION_GLOBAL_LIMIT)
        by_role = raw.get("by_role")
        if isinstance(by_role, dict):
            for role, value in by_role.items():
                rep.by_role[str(role)] = _clamp_int(value, -REPUTATION_ROLE_LIMIT, REPUTATION_ROLE_LIMIT)
        recent = raw.get("recent")
        if isinstance(recent, list):
            rep.recent = [dict(item) for item in recent if isinstance(item, dict)][-REPUTATION_HISTORY_LIMIT:]
        return rep


def apply_reputation_delta(
    reputation: Reputation,
    delta: Any,
    *,
    role: str | None = None,
    reason: str = "",
    now: float | None = None,
) -> Reputation:
    amount = _clamp_int(delta, -REPUTATION_GLOBAL_LIMIT, REPUTATION_GLOBAL_LIMIT)
    if amount == 0:
        return reputation
    reputation.score = _clamp_int(reputation.score + amount, -REPUTATION_GLOBAL_LIMIT, REPUTATION_GLOBAL_LIMIT)
    if role:
        current = reputation.by_role.get(role, 0)
        reputation.by_role[role] = _clamp_int(current + amount, -REPUTATION_ROLE_LIMIT, REPUTATION_ROLE_LIMIT)
    reputation.recent.append(
        {
            "delta": amount,
            "role": role,
            "reason": str(reason or "")[:120],
            "at": float(now if now is not None else time.time()),
        }
    )
    del reputation.recent[:-REPUTATION_HISTORY_LIMIT]
    return reputation


def reputation_label(score: int) -> str:
    if score <= -60:
        return "notorious"
    if score <= -30:
        return "distrusted"
    if score <= -10:
        return "wary"
    if score < 10:
        return "neutral"
    if score < 30:
        return "liked"
    if score < 60:
        return "respected"
    return "beloved"
