"""Per-tick character movement.

Target priority: player directive, then the active task, then the routine
phase. Routine-driven characters may instead flee a disliked neighbour, and
anyone without a target wanders inside their current area.
"""

from __future__ import annotations

from hashlib import sha256
from typing import TYPE_CHECKING
import logging

from .layout import AREAS, Area, area_at, distance, find_area
from .relations import DISLIKE_THRESHOLD, relation_score
from .routine import resolve_routine
from .world import TASK_STEERING_STATUSES, clamp_to_world

if TYPE_CHECKING:
    from .world import Character, World


logger = logging.getLogger("lantern_core.movement")

WANDER_MARGIN = 16.0
ARRIVAL_DISTANCE = 8.0
FOLLOW_DISTANCE = 40.0
AVOID_RADIUS = 120.0
AVOID_CHANCE = 0.35
FLEE_STEP = 60.0
HOLD_RADIUS = 28.0
HOLD_SECONDS = 3.0
KEEP_DISTANCE_LOW_SLACK = 10.0
KEEP_DISTANCE_HIGH_SLACK = 45.0


def _anchor_point(area: Area, character_id: str) -> tuple[float, float]:
    """Stable spot inside ``area`` for stationary characters."""
    digest = sha256(f"{area.name}:{character_id}".encode("utf-8")).digest()
    span_x = max(1.0, area.w - 2 * WANDER_MARGIN)
    span_y = max(1.0, area.h - 2 * WANDER_MARGIN)
    return (
        area.x + WANDER_MARGIN + (digest[0] / 255.0) * span_x,
        area.y + WANDER_MARGIN + (digest[1] / 255.0) * span_y,
    )


def _patrol_points(area: Area) -> list[tuple[float, float]]:
    left = area.x + WANDER_MARGIN
    right = area.x + area.w - WANDER_MARGIN
    top = area.y + WANDER_MARGIN
    bottom = area.y + area.h - WANDER_MARGIN
    return [(left, top), (right, top), (right, bottom), (left, bottom)]


def wander_point(world: "World", area: Area) -> tuple[float, float]:
    return (
        world.rng.uniform(area.x + WANDER_MARGIN, area.x + area.w - WANDER_MARGIN),
        world.rng.uniform(area.y + WANDER_MARGIN, area.y + area.h - WANDER_MARGIN),
    )


def _keep_wander_target(world: "World", character: "Character", area: Area) -> tuple[float, float]:
    if (
        character.target_x is None
        or character.target_y is None
        or not area.contains(character.target_x, character.target_y)
        or distance(character.x, character.y, character.target_x, character.target_y) <= ARRIVAL_DISTANCE
    ):
        character.target_x, character.target_y = wander_point(world, area)
    return character.target_x, character.target_y


def _patrol_target(character: "Character", area: Area) -> tuple[float, float]:
    points = _patrol_points(area)
    point = points[character.patrol_leg % len(points)]
    if distance(character.x, character.y, point[0], point[1]) <= ARRIVAL_DISTANCE:
        character.patrol_leg = (character.patrol_leg + 1) % len(points)
        point = points[character.patrol_leg]
    return point


def _directive_target(world: "World", character: "Character") -> tuple[float, float] | None:
    directive = character.directive
    if directive is None:
        return None
    mode = directive.mode
    if mode in ("follow_player", "keep_distance"):
        player = world.player_by_id(directive.target_player_id)
        if player is None:
            character.directive = None
            return None
        gap = distance(character.x, character.y, player.x, player.y)
        if mode == "follow_player":
            return None if gap <= FOLLOW_DISTANCE else (player.x, player.y)
        low = directive.preferred_distance - KEEP_DISTANCE_LOW_SLACK
        high = directive.preferred_distance + KEEP_DISTANCE_HIGH_SLACK
        if low <= gap <= high:
            return None
        if gap < 1e-6:
            return (character.x + directive.preferred_distance, character.y)
        # Step along the player->character ray to the preferred distance.
        scale = directive.preferred_distance / gap
        return (player.x + (character.x - player.x) * scale, player.y + (character.y - player.y) * scale)
    if mode == "point" and directive.x is not None and directive.y is not None:
        return (directive.x, directive.y)
    if mode == "area":
        area = find_area(directive.area)
        if area is None:
            character.directive = None
            return None
        return _keep_wander_target(world, character, area)
    return None


def task_target(world: "World", character: "Character") -> tuple[float, float] | None:
    task = character.active_task()
    if task is None or task.status in ("done", "failed"):
        return None
    if task.kind == "talk_to_npc":
        other = world.characters.get(task.target_npc_id or "")
        if other is None:
            return None
        if distance(character.x, character.y, other.x, other.y) <= FOLLOW_DISTANCE:
            return None
        return (other.x, other.y)
    area = find_area(task.area)
    if area is None:
        return None
    if area.contains(character.x, character.y) and task.status == "observing":
        return None
    return _anchor_point(area, character.id)


def _routine_target(world: "World", character: "Character") -> tuple[float, float]:
    routine = resolve_routine(character, world.day, world.minute, world.routine_nudges)
    character.routine = routine
    area = find_area(routine.area_name) or AREAS[0]
    if not area.contains(character.x, character.y):
        return _anchor_point(area, character.id)
    style = character.profile.style if routine.phase == "work" else "wander"
    if routine.venue_type == "home":
        style = "stationary"
    if style == "stationary":
        return _anchor_point(area, character.id)
    if style == "patrol":
        return _patrol_target(character, area)
    return _keep_wander_target(world, character, area)


def _avoidance_target(world: "World", character: "Character") -> tuple[float, float] | None:
    nearest = None
    nearest_gap = AVOID_RADIUS
    for other in world.characters.values():
        if other.id == character.id:
            continue
        if relation_score(world.relations, character.id, other.id) > DISLIKE_THRESHOLD:
            continue
        gap = distance(character.x, character.y, other.x, other.y)
        if gap <= nearest_gap:
            nearest, nearest_gap = other, gap
    if nearest is None or world.rng.random() >= AVOID_CHANCE:
        return None
    if nearest_gap < 1e-6:
        return (character.x + FLEE_STEP, character.y)
    return (
        character.x + (character.x - nearest.x) / nearest_gap * FLEE_STEP,
        character.y + (character.y - nearest.y) / nearest_gap * FLEE_STEP,
    )


def _update_hold(world: "World", character: "Character", now: float) -> bool:
    near = any(
        distance(character.x, character.y, player.x, player.y) <= HOLD_RADIUS
        for player in world.awake_players()
    )
    if near and not character.near_player:
        character.hold_until = now + HOLD_SECONDS
    character.near_player = near
    return now < character.hold_until


def _integrate(character: "Character", target: tuple[float, float] | None, dt: float) -> None:
    if target is None:
        character.vx = character.vy = 0.0
        return
    dx = target[0] - character.x
    dy = target[1] - character.y
    gap = (dx * dx + dy * dy) ** 0.5
    if gap <= ARRIVAL_DISTANCE:
        character.vx = character.vy = 0.0
        return
    character.vx = dx / gap * character.speed
    character.vy = dy / gap * character.speed
    step = min(character.speed * dt, gap)
    character.x, character.y = clamp_to_world(character.x + dx / gap * step, character.y + dy / gap * step)
    character.area = area_at(character.x, character.y).name


def step_character(world: "World", character: "Character", dt: float, now: float) -> None:
    if character.directive is not None and character.directive.expired(world.now):
        character.directive = None
        character.target_x = character.target_y = None
    if _update_hold(world, character, now):
        character.vx = character.vy = 0.0
        return

    character.fleeing = False
    if character.directive is not None:
        _integrate(character, _directive_target(world, character), dt)
        return
    task = character.active_task()
    if task is not None and task.status in TASK_STEERING_STATUSES:
        _integrate(character, task_target(world, character), dt)
        return

    target = _routine_target(world, character)
    flee = _avoidance_target(world, character)
    if flee is not None:
        character.fleeing = True
        target = flee
    _integrate(character, target, dt)


def tick_movement(world: "World", dt: float, now: float) -> None:
    for character in world.characters.values():
        try:
            step_character(world, character, dt, now)
        except Exception:
            logger.exception("[TICK] movement failed for %s", character.id)
