"""Once-per-day regeneration of the derived social state.

``run_daily_refresh_pipeline`` clears caches synchronously, then runs every
refresher concurrently. Each step is isolated: a failing step is logged and
still reports through ``on_step_done`` so clients get a fresh snapshot either
way.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable
import asyncio
import logging

from .layout import AREA_NAMES, ROLE_NAMES
from .missions import set_town_mission
from .routine import normalize_nudges
from .social_state import (
    apply_world_events,
    blend_faction_pulse,
    normalize_world_events,
    rumor_hotspots,
    set_economy,
    set_story_arc,
    touch,
)

if TYPE_CHECKING:
    from .generator import LineGenerator
    from .world import World


logger = logging.getLogger("lantern_core.daily_refresh")

Step = Callable[[], Awaitable[Any]]
CONTEXT_LOG_WINDOW = 30


@dataclass(frozen=True)
class StepOutcome:
    name: str
    ok: bool
    error: str | None = None


async def run_daily_refresh_pipeline(
    *,
    clear_caches: Callable[[], None] | None = None,
    should_refresh_story_arc: bool = False,
    refresh_story_arc: Step | None = None,
    refresh_town_mission: Step | None = None,
    refresh_routine_nudges: Step | None = None,
    refresh_economy: Step | None = None,
    refresh_world_events: Step | None = None,
    refresh_faction_pulse: Step | None = None,
    refresh_reactive_missions: Step | None = None,
    on_step_done: Callable[[], Any] | None = None,
) -> list[StepOutcome]:
    if clear_caches is not None:
        clear_caches()

    steps: list[tuple[str, Step]] = []
    if should_refresh_story_arc and refresh_story_arc is not None:
        steps.append(("story_arc", refresh_story_arc))
    for name, step in (
        ("town_mission", refresh_town_mission),
        ("routine_nudges", refresh_routine_nudges),
        ("economy", refresh_economy),
        ("world_events", refresh_world_events),
        ("faction_pulse", refresh_faction_pulse),
        ("reactive_missions", refresh_reactive_missions),
    ):
        if step is not None:
            steps.append((name, step))

    async def run_step(name: str, step: Step) -> StepOutcome:
        try:
            await step()
            outcome = StepOutcome(name=name, ok=True)
        except Exception as exc:
            logger.warning("[REFRESH] step %s failed: %s", name, exc)
            outcome = StepOutcome(name=name, ok=False, error=f"{exc.__class__.__name__}: {exc}")
        if on_step_done is not None:
            try:
                result = on_step_done()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("[REFRESH] on_step_done failed after %s", name)
        return outcome

    return list(await asyncio.gather(*(run_step(name, step) for name, step in steps)))


def world_context(world: "World") -> dict[str, Any]:
    """Compact world summary shared by every generation prompt."""
    arc = world.story_arc
    return {
        "day": world.day,
        "time": world.time_label(),
        "weather": world.weather,
        "rumor": world.rumor,
        "rumor_heat": rumor_hotspots(world.rumor_heat),
        "economy": {"multiplier": world.economy.reward_multiplier, "note": world.economy.note},
        "events": [event.title for event in world.world_events],
        "story_arc": {"title": arc.title, "stage": arc.current_stage(), "completed": arc.completed} if arc else None,
        "town_mission": world.town_mission.title,
    }


def recent_log(world: "World", window: int = CONTEXT_LOG_WINDOW) -> list[str]:
    return (list(world.yesterday_log) + list(world.town_log))[-window:]


class DailyRefresher:
    """Refresh steps bound to one world and generator.

    Generation runs in a worker thread. A generation failure installs the
    deterministic fallback for that model rather than leaving stale state.
    """

    def __init__(self, world: "World", generator: "LineGenerator") -> None:
        self.world = world
        self.generator = generator

    async def _generate(self, fn: Callable[[dict[str, Any]], dict[str, Any]], context: dict[str, Any]) -> dict[str, Any] | None:
        try:
            return await asyncio.to_thread(fn, context)
        except Exception as exc:
            logger.warning("[REFRESH] generation failed (%s): %s", getattr(fn, "__name__", "task"), exc)
            return None

    def _context(self, **extra: Any) -> dict[str, Any]:
        return {
            "scope": f"day:{self.world.day}",
            "day": self.world.day,
            "weather": self.world.weather,
            "world": world_context(self.world),
            "town_log": recent_log(self.world),
            "area_names": list(AREA_NAMES),
            "role_names": list(ROLE_NAMES),
            "rumor_heat": rumor_hotspots(self.world.rumor_heat),
            **extra,
        }

    async def refresh_story_arc(self) -> None:
        draft = await self._generate(self.generator.generate_story_arc, self._context())
        arc = set_story_arc(self.world, draft)
        logger.info("[REFRESH] story arc: %s", arc.title)

    async def refresh_town_mission(self) -> None:
        context = self._context(town_log=list(self.world.yesterday_log))
        draft = await self._generate(self.generator.generate_town_mission, context)
        mission = set_town_mission(self.world, draft)
        logger.info("[REFRESH] town mission: %s", mission.title)

    async def refresh_routine_nudges(self) -> None:
        draft = await self._generate(self.generator.generate_routine_nudges, self._context())
        self.world.routine_nudges = normalize_nudges(draft or {})
        touch(self.world)

    async def refresh_economy(self) -> None:
        draft = await self._generate(self.generator.generate_economy_plan, self._context(crop_types=["turnip", "carrot", "pumpkin"]))
        set_economy(self.world, draft)

    async def refresh_world_events(self) -> None:
        draft = await self._generate(self.generator.generate_world_events, self._context())
        apply_world_events(self.world, normalize_world_events(draft or {}, day=self.world.day))

    async def refresh_faction_pulse(self) -> None:
        member_roles = {character.id: character.role for character in self.world.characters.values()}
        context = self._context(
            factions=self.world.factions.as_dict(),
            role_heat=dict(self.world.rumor_heat.roles),
            member_roles=member_roles,
        )
        draft = await self._generate(self.generator.generate_faction_pulse, context)
        blend_faction_pulse(self.world.factions, draft or {})
        touch(self.world)
