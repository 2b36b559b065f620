"""World snapshot file and the field-wise restore that reads it back."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any
import json
import logging
import os

from .clock import MINUTES_PER_DAY, YESTERDAY_LOG_LIMIT
from .farm import Farm
from .layout import AREA_NAMES, WEATHER_STATES, WORLD_HEIGHT, WORLD_WIDTH, clamp
from .missions import town_mission_from_dict
from .relations import hydrate_relations
from .routine import RoutineState, normalize_nudges
from .social_state import (
    TODAY_LOG_LIMIT,
    RumorHeat,
    factions_from_dict,
    normalize_economy,
    story_arc_from_dict,
    world_events_from_dict,
)
from .world import Directive, NpcTask, is_guest_id

if TYPE_CHECKING:
    from .world import Character, World


logger = logging.getLogger("lantern_core.persistence")

_STATE_FILE_VERSION = 1
_STATE_FILE_NAME = "world.json"
SNAPSHOT_TASK_LIMIT = 6


class WorldStateStore:
    def __init__(self, *, root_dir: str | None = None) -> None:
        self._explicit_root_dir = root_dir

    def _resolve_root_dir(self) -> Path:
        if self._explicit_root_dir:
            return Path(self._explicit_root_dir)
        configured = str(os.environ.get("LANTERN_STATE_DIR") or "").strip()
        if configured:
            return Path(configured)
        db_path = str(os.environ.get("LANTERN_DB_PATH") or "").strip()
        if db_path:
            return Path(f"{db_path}.world_state")
        return Path(".lantern_world_state")

    @property
    def path(self) -> Path:
        return self._resolve_root_dir() / _STATE_FILE_NAME

    def load(self) -> dict[str, Any] | None:
        path = self.path
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("[AUTOSAVE] unreadable snapshot %s: %s", path, exc)
            return None
        if not isinstance(payload, dict):
            return None
        try:
            state_version = int(payload.get("state_version") or 0)
        except (TypeError, ValueError):
            state_version = 0
        if state_version != _STATE_FILE_VERSION:
            logger.warning("[AUTOSAVE] ignoring snapshot with state_version=%s", payload.get("state_version"))
            return None
        return payload

    def save(self, payload: dict[str, Any]) -> None:
        root = self._resolve_root_dir()
        root.mkdir(parents=True, exist_ok=True)
        path = self.path
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        to_write = dict(payload)
        to_write["state_version"] = _STATE_FILE_VERSION
        tmp_path.write_text(json.dumps(to_write, separators=(",", ":"), ensure_ascii=True), encoding="utf-8")
        os.replace(tmp_path, path)

    def clear_all(self) -> None:
        root = self._resolve_root_dir()
        if not root.exists() or not root.is_dir():
            return
        for path in root.glob("*.json"):
            try:
                path.unlink()
            except OSError:
                continue


def _character_snapshot(character: "Character") -> dict[str, Any]:
    return {
        "x": character.x,
        "y": character.y,
        "area": character.area,
        "speed": character.speed,
        "talk_cooldown_until": character.talk_cooldown_until,
        "hold_until": character.hold_until,
        "directive": character.directive.as_dict() if character.directive else None,
        "tasks": [task.as_dict() for task in character.tasks[:SNAPSHOT_TASK_LIMIT]],
        "routine": character.routine.as_dict() if character.routine else None,
    }


def snapshot_world(world: "World") -> dict[str, Any]:
    """Everything needed to bring the town back after a restart.

    Live sessions are not part of the snapshot; registered players come back
    through ``profiles`` and their farms.
    """
    return {
        "day": world.day,
        "minute": world.minute,
        "weather": world.weather,
        "rumor": world.rumor,
        "town_log": list(world.town_log[-TODAY_LOG_LIMIT:]),
        "yesterday_log": list(world.yesterday_log[-YESTERDAY_LOG_LIMIT:]),
        "town_mission": world.town_mission.as_dict(),
        "story_arc": world.story_arc.as_dict() if world.story_arc else None,
        "world_events": [event.as_dict() for event in world.world_events],
        "factions": world.factions.as_dict(),
        "rumor_heat": world.rumor_heat.as_dict(),
        "economy": world.economy.as_dict(),
        "routine_nudges": {role: nudge.as_dict() for role, nudge in world.routine_nudges.items()},
        "relations": {key: entry.as_dict() for key, entry in world.relations.items()},
        "characters": {character_id: _character_snapshot(c) for character_id, c in world.characters.items()},
        "farms": {owner_id: farm.as_dict() for owner_id, farm in world.farms.items() if not is_guest_id(owner_id)},
        "profiles": {
            player_id: dict(profile) for player_id, profile in world.profiles.items() if not is_guest_id(player_id)
        },
        "tick_count": world.tick_count,
    }


def _text_list(raw: Any, limit: int) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(item) for item in raw if isinstance(item, str)][-limit:]


def _restore_character(character: "Character", raw: dict[str, Any]) -> None:
    try:
        character.x = clamp(float(raw.get("x", character.x)), 0.0, float(WORLD_WIDTH))
        character.y = clamp(float(raw.get("y", character.y)), 0.0, float(WORLD_HEIGHT))
        character.speed = clamp(float(raw.get("speed", character.speed)), 1.0, 60.0)
        character.talk_cooldown_until = float(raw.get("talk_cooldown_until") or 0.0)
        character.hold_until = float(raw.get("hold_until") or 0.0)
    except (TypeError, ValueError):
        pass
    if raw.get("area") in AREA_NAMES:
        character.area = raw["area"]
    character.directive = Directive.from_dict(raw.get("directive"))
    tasks = [NpcTask.from_dict(item) for item in raw.get("tasks") or []]
    character.tasks = [task for task in tasks if task is not None][:SNAPSHOT_TASK_LIMIT]
    routine = raw.get("routine")
    if isinstance(routine, dict) and routine.get("area_name") in AREA_NAMES:
        character.routine = RoutineState(
            phase=str(routine.get("phase") or "idle"),
            venue_type=str(routine.get("venue_type") or "idle"),
            area_name=routine["area_name"],
            is_holiday=bool(routine.get("is_holiday")),
        )


def restore_world(world: "World", payload: dict[str, Any]) -> "World":
    """Apply a snapshot onto a freshly seeded world.

    Every field is validated on its own; anything malformed keeps the seed
    value. Characters absent from the seed are ignored.
    """
    try:
        day = int(payload.get("day") or world.day)
        minute = int(payload.get("minute") if payload.get("minute") is not None else world.minute)
    except (TypeError, ValueError):
        day, minute = world.day, world.minute
    world.day = max(1, day)
    world.minute = minute % MINUTES_PER_DAY
    if payload.get("weather") in WEATHER_STATES:
        world.weather = payload["weather"]
    if isinstance(payload.get("rumor"), str) and payload["rumor"].strip():
        world.rumor = payload["rumor"][:180]
    world.town_log = _text_list(payload.get("town_log"), TODAY_LOG_LIMIT)
    world.yesterday_log = _text_list(payload.get("yesterday_log"), YESTERDAY_LOG_LIMIT)

    world.town_mission = town_mission_from_dict(payload.get("town_mission"), world.day)
    world.story_arc = story_arc_from_dict(payload.get("story_arc"), world.day)
    world.world_events = world_events_from_dict(payload.get("world_events"), world.day)
    world.factions = factions_from_dict(payload.get("factions"))
    world.rumor_heat = RumorHeat.from_dict(payload.get("rumor_heat"))
    if isinstance(payload.get("economy"), dict):
        world.economy = normalize_economy(payload["economy"])
    world.routine_nudges = normalize_nudges(payload.get("routine_nudges") or {})
    relations = hydrate_relations(payload.get("relations"))
    if relations:
        world.relations = relations

    characters = payload.get("characters")
    if isinstance(characters, dict):
        for character_id, raw in characters.items():
            character = world.characters.get(character_id)
            if character is None or not isinstance(raw, dict):
                continue
            _restore_character(character, raw)

    farms = payload.get("farms")
    if isinstance(farms, dict):
        world.farms = {
            str(owner): Farm.from_dict(str(owner), raw)
            for owner, raw in farms.items()
            if owner and not is_guest_id(str(owner))
        }
    profiles = payload.get("profiles")
    if isinstance(profiles, dict):
        world.profiles = {
            str(pid): dict(raw)
            for pid, raw in profiles.items()
            if pid and isinstance(raw, dict) and not is_guest_id(str(pid))
        }
    try:
        world.tick_count = max(0, int(payload.get("tick_count") or 0))
    except (TypeError, ValueError):
        world.tick_count = 0
    world.social_revision += 1
    world.derived_cache = None
    return world
