"""Background processing of player-assigned character tasks.

Each character works through its own queue front to back. Movement toward the
task target is handled by the movement scheduler once a task is ``walking`` or
``observing``; this module decides when a task starts, when it is finished,
and what gets remembered.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable
import asyncio
import json
import logging
import time

from .clock import Moment, duration_label, time_label
from .daily_refresh import world_context
from .dialogue import TALK_COOLDOWN_SECONDS, EventSink, area_look, crowd_label, dialogue_event
from .followup import compact_memory_lines
from .layout import distance, find_area
from .memory import MemoryStore, make_record
from .routine import RoutineState
from .social_state import push_town_event

if TYPE_CHECKING:
    from .generator import LineGenerator
    from .world import Character, NpcTask, World


logger = logging.getLogger("lantern_core.tasks")

TALK_TASK_RANGE = 120.0
REPORT_PEOPLE_LIMIT = 6
REPORT_IMPORTANCE = 6

Notify = Callable[[str, str, bool], Awaitable[None]]


def _prune(character: "Character") -> None:
    character.tasks = [task for task in character.tasks if task.status not in ("done", "failed")]


def observe_ready(world: "World", task: "NpcTask") -> bool:
    return task.start_at is None or task.start_at.reached_by(world.now)


def build_observation_report(world: "World", character: "Character", task: "NpcTask", area_name: str) -> dict[str, Any]:
    seen = [
        other
        for other in world.characters.values()
        if other.id != character.id and other.area == area_name
    ][:REPORT_PEOPLE_LIMIT]
    if task.observe_until is not None:
        started = Moment.from_absolute(task.observe_until.to_absolute() - task.duration_minutes)
    else:
        started = world.now
    return {
        "area": area_name,
        "start_day": started.day,
        "start_time": time_label(started.minute),
        "end_day": world.day,
        "end_time": time_label(world.minute),
        "duration_minutes": task.duration_minutes,
        "weather": world.weather,
        "crowd": crowd_label(len(seen)),
        "people_seen": [f"{other.name} ({other.role})" for other in seen],
        "look": area_look(area_name, world.minute, world.weather),
    }


class TaskProcessor:
    """Advances queued tasks. ``in_progress`` is set while a talk task awaits generation."""

    def __init__(
        self,
        world: "World",
        store: MemoryStore,
        generator: "LineGenerator",
        sink: EventSink,
        notify: Notify,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.world = world
        self.store = store
        self.generator = generator
        self.sink = sink
        self.notify = notify
        self.clock = clock
        self.in_progress = False

    async def _write(self, owner_id: str, memory_type: str, content: str, *, importance: int, tags: list[str]) -> None:
        record = make_record(owner_id, memory_type, content, importance=importance, tags=tags)
        await asyncio.to_thread(self.store.write_memory, record)

    async def step(self) -> bool:
        """Process at most one task to completion. Returns True when something finished."""
        if self.in_progress:
            return False
        for character in list(self.world.characters.values()):
            _prune(character)
            task = character.active_task()
            if task is None:
                continue
            try:
                if task.kind == "observe_area":
                    finished = await self._observe(character, task)
                else:
                    finished = await self._talk(character, task)
            except Exception:
                logger.exception("[TASK] %s failed on %s", task.kind, character.id)
                task.status = "failed"
                _prune(character)
                await self.notify(task.requested_by, f"{character.name} could not complete the request right now.", False)
                return True
            if finished:
                return True
        return False

    async def _observe(self, character: "Character", task: "NpcTask") -> bool:
        if task.status == "queued":
            if not observe_ready(self.world, task):
                return False
            task.area = task.area or character.area
            task.status = "walking"
        area = find_area(task.area)
        if area is None:
            task.status = "failed"
            _prune(character)
            await self.notify(task.requested_by, f"{character.name} could not find {task.area}.", False)
            return True
        character.routine = RoutineState(phase="task_observe", venue_type="observe", area_name=area.name)
        if character.area != area.name:
            return False
        if task.observe_until is None:
            task.status = "observing"
            task.observe_until = self.world.now.plus(task.duration_minutes)
            return False
        if not task.observe_until.reached_by(self.world.now):
            return False

        report = build_observation_report(self.world, character, task, area.name)
        await self._write(
            character.id,
            "observation_report",
            json.dumps(report, separators=(",", ":")),
            importance=REPORT_IMPORTANCE,
            tags=["observation", area.name, f"player:{task.requested_by}"],
        )
        task.status = "done"
        _prune(character)
        at_text = f" at {time_label(task.start_at.minute)}" if task.start_at else ""
        span = duration_label(task.duration_minutes)
        push_town_event(self.world, f"{character.name} observed {area.name}{at_text} for {span} and took mental notes.")
        await self.notify(
            task.requested_by,
            f"{character.name} finished observing {area.name}{at_text} for {span}. Ask what they saw.",
            True,
        )
        logger.info("[TASK] %s finished observing %s", character.id, area.name)
        return True

    async def _talk(self, character: "Character", task: "NpcTask") -> bool:
        target = self.world.characters.get(task.target_npc_id or "")
        if target is None:
            task.status = "failed"
            _prune(character)
            await self.notify(task.requested_by, f"{character.name} could not find that person anymore.", False)
            return True
        if distance(character.x, character.y, target.x, target.y) > TALK_TASK_RANGE:
            task.status = "walking"
            character.routine = RoutineState(phase="task_talk", venue_type="talk", area_name=target.area)
            return False
        now = self.clock()
        if character.on_cooldown(now) or target.on_cooldown(now):
            return False

        self.in_progress = True
        try:
            memories = await asyncio.to_thread(self.store.recent_memories, character.id, limit=4)
            context = {
                "scope": f"day:{self.world.day}",
                "subject_id": character.id,
                "speaker": {"id": character.id, "name": character.name, "role": character.role, "traits": list(character.traits)},
                "target": {"id": target.id, "name": target.name, "role": target.role, "traits": list(target.traits)},
                "world": world_context(self.world),
                "memories": compact_memory_lines(memories, 4),
                "topic_hint": f"player-requested topic from {task.requester_name or 'player'}: {task.topic}",
                "minute": self.world.minute,
            }
            payload = await asyncio.to_thread(self.generator.generate_line, context)
        finally:
            self.in_progress = False

        if task not in character.tasks:
            # cleared by a movement command while the line was being generated
            return False
        line = str(payload.get("line") or "")
        await self.sink.broadcast(
            dialogue_event(
                "npc_to_npc",
                speaker_id=character.id,
                speaker_name=character.name,
                target_id=target.id,
                target_name=target.name,
                text=line,
                emotion=payload.get("emotion"),
                x=character.x,
                y=character.y,
                time_label=self.world.time_label(),
            )
        )
        await self._write(
            character.id,
            "npc_conversation",
            payload.get("memory_note") or f"{character.name} discussed {task.topic} with {target.name}.",
            importance=4,
            tags=[character.role, target.role, "player_request", f"player:{task.requested_by}"],
        )
        task.status = "done"
        _prune(character)
        done_at = self.clock()
        character.talk_cooldown_until = done_at + TALK_COOLDOWN_SECONDS
        target.talk_cooldown_until = done_at + TALK_COOLDOWN_SECONDS
        push_town_event(self.world, f"{character.name} talked to {target.name} about {task.topic}.")
        await self.notify(task.requested_by, f'{character.name} spoke to {target.name} about "{task.topic}".', True)
        return True
