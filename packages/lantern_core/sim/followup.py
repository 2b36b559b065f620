"""Next-day follow-up hints and the continuity hint fed into npc lines."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
import re

from .memory import MemoryRecord


FOLLOWUP_HINT_LIMIT = 140
CONTINUITY_HINT_LIMIT = 360
_RESOLVED_RE = re.compile(r"\b(resolved|kept|fulfilled|made good|forgave|forgiven|apology accepted|promise kept)\b")


def followup_cache_key(day: Any, npc_id: Any, player_id: Any) -> str:
    try:
        day_number = int(day)
    except (TypeError, ValueError):
        return ""
    npc = str(npc_id or "").strip()
    player = str(player_id or "").strip()
    if day_number < 1 or not npc or not player:
        return ""
    return f"{day_number}:{player}:{npc}"


def compact_memory_lines(rows: list[MemoryRecord], max_count: int = 4) -> list[str]:
    lines = [row.content.strip() for row in rows[: max(0, max_count)]]
    return [line for line in lines if line]


def compose_continuity_hint(followup: str = "", memory_lines: list[str] | None = None, max_len: int = CONTINUITY_HINT_LIMIT) -> str:
    parts: list[str] = []
    clean_followup = str(followup or "").strip()
    if clean_followup:
        parts.append(f"next-day follow-up: {clean_followup}")
    clean_lines = [str(line).strip() for line in memory_lines or [] if str(line or "").strip()]
    if clean_lines:
        parts.append(" | ".join(clean_lines))
    if not parts:
        return "none"
    return " | ".join(parts)[: max(1, int(max_len or CONTINUITY_HINT_LIMIT))]


@dataclass(frozen=True)
class FollowupContext:
    recent_player_memories: list[str] = field(default_factory=list)
    prioritized_threads: list[str] = field(default_factory=list)
    unresolved_categories: list[str] = field(default_factory=list)


def build_followup_context(rows: list[MemoryRecord], max_count: int = 4) -> FollowupContext:
    """Unresolved promises and apologies first, then everything else, deduplicated."""
    resolved: set[str] = set()
    for row in rows:
        category = row.category()
        if category in ("promise_resolved", "apology_resolved"):
            resolved.add(category.split("_", 1)[0])

    priority: list[tuple[str, str]] = []
    rest: list[tuple[str, str]] = []
    for row in rows:
        content = row.content.strip()
        if not content:
            continue
        category = row.category()
        unresolved = (
            category in ("promise", "apology")
            and category not in resolved
            and not _RESOLVED_RE.search(content.lower())
        )
        (priority if unresolved else rest).append((content, category))

    recent: list[str] = []
    for content, _ in priority + rest:
        if content in recent:
            continue
        recent.append(content)
        if len(recent) >= max(0, max_count):
            break

    threads: list[str] = []
    for content, _ in priority:
        if content not in threads:
            threads.append(content)
        if len(threads) >= 2:
            break

    categories = list(dict.fromkeys(category for _, category in priority if category))
    return FollowupContext(recent_player_memories=recent, prioritized_threads=threads, unresolved_categories=categories)


async def daily_followup_hint(
    *,
    cache: Any,
    day: int,
    npc: Any,
    player: Any,
    memories_by_tag: Callable[[str, str, int], Awaitable[list[MemoryRecord]]],
    generate_followup: Callable[[dict[str, Any]], Awaitable[str]],
    world_context: dict[str, Any],
    town_log: list[str],
) -> str:
    """Hint for one (day, player, npc) triple, generated once and cached for the day."""
    key = followup_cache_key(day, getattr(npc, "id", None), getattr(player, "player_id", None))
    if not key:
        return ""
    cached = cache.get(key)
    if cached is not None:
        return cached
    rows = await memories_by_tag(npc.id, f"player:{player.player_id}", 6)
    context = build_followup_context(rows, 4)
    hint = await generate_followup(
        {
            "scope": f"day:{day}",
            "subject_id": npc.id,
            "npc": {"id": npc.id, "name": npc.name, "role": npc.role},
            "player_name": getattr(player, "name", None) or "Traveler",
            "world": world_context,
            "recent_player_memories": context.recent_player_memories,
            "prioritized_threads": context.prioritized_threads,
            "town_log": list(town_log or []),
        }
    )
    clean = str(hint or "").strip()[:FOLLOWUP_HINT_LIMIT]
    cache.set(key, clean)
    return clean
