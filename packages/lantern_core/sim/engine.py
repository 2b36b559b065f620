"""The town engine: one world, one tick, and every player-facing handler.

The engine owns the ``World`` and composes the dialogue orchestrator, the
task processor and the daily refresher around it. Transport layers call the
``handle_*`` coroutines and receive pushes through the ``EventSink``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable
import asyncio
import logging
import re
import time

from .clock import advance_clock, skip_overnight
from .commands import apply_command, is_observation_question, parse_command
from .daily_refresh import DailyRefresher, StepOutcome, recent_log, run_daily_refresh_pipeline, world_context
from .dialogue import (
    PLAYER_NEAR_DISTANCE,
    DialogueOrchestrator,
    EventSink,
    dialogue_event,
    moved_off_anchor,
)
from .farm import apply_action, tick_growth
from .generator import LineGenerator
from .layout import AREA_NAMES, ROLE_NAMES, distance
from .memory import MemoryStore
from .missions import (
    MissionEvent,
    MissionProgress,
    MissionSpec,
    apply_event,
    apply_town_event,
    grant_completion,
    mission_view,
    normalize_dynamic_mission,
    quest_signals,
)
from .movement import tick_movement
from .persistence import WorldStateStore, restore_world, snapshot_world
from .relations import Reputation, apply_reputation_delta, relation_label
from .social_state import derived_view
from .tasks import TaskProcessor
from .world import (
    DEFAULT_PLAYER_NAME,
    GUEST_ID_PREFIX,
    PLAYER_GENDERS,
    PLAYER_NAME_LIMIT,
    Character,
    PlayerSession,
    World,
    clamp_to_world,
    is_guest_id,
    locate,
)


logger = logging.getLogger("lantern_core.engine")

TICK_MINUTES = 5
TICK_MOVEMENT_SECONDS = 1.0
SLEEP_SYNC_INTERVAL_TICKS = 5
FARM_ACTION_DISTANCE = 90.0
CHAT_TEXT_LIMIT = 240
MOVE_EPSILON = 0.5
MORNING_SUMMARY_LINES = 5
_QUOTE_LINE_RE = re.compile(r'"|\bsaid|told|replied\b', re.IGNORECASE)


def morning_summary(world: World) -> str:
    logs = list(world.yesterday_log)
    if not logs:
        return "Quiet night in town. No notable incidents were reported before dawn."
    picks = [line for line in logs if not _QUOTE_LINE_RE.search(line)][-MORNING_SUMMARY_LINES:]
    if not picks:
        return "Quiet night in town. People kept to routine with no major incidents."
    return "\n".join(f"{idx}. {line}" for idx, line in enumerate(picks, start=1))


def normalize_player_name(value: Any) -> str:
    name = str(value or "").strip()[:PLAYER_NAME_LIMIT]
    return name or DEFAULT_PLAYER_NAME


def normalize_gender(value: Any) -> str:
    gender = str(value or "").strip().lower()
    return gender if gender in PLAYER_GENDERS else "unspecified"


def _coordinate(value: Any, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if number != number or number in (float("inf"), float("-inf")):
        return fallback
    return number


@dataclass(frozen=True)
class TickReport:
    tick: int
    paused: bool
    day_changed: bool = False
    skipped_night: bool = False
    synced: bool = False


class TownEngine:
    def __init__(
        self,
        world: World,
        store: MemoryStore,
        generator: LineGenerator,
        sink: EventSink | None = None,
        *,
        state_store: WorldStateStore | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.world = world
        self.store = store
        self.generator = generator
        self.sink = sink or EventSink()
        self.state_store = state_store
        self.clock = clock
        self.dialogue = DialogueOrchestrator(world, store, generator, self.sink, clock=clock, sleep=sleep)
        self.tasks = TaskProcessor(world, store, generator, self.sink, self.notify_player, clock=clock)
        self.refresher = DailyRefresher(world, generator)
        self._background: set[asyncio.Task[Any]] = set()
        self._task_job: asyncio.Task[Any] | None = None
        self._autosave_in_progress = False
        self.last_autosave_at: float | None = None
        self.last_autosave_error: str | None = None

    # -- state --------------------------------------------------------------

    @property
    def paused(self) -> bool:
        return self.dialogue.conversation_active or self.tasks.in_progress or self.world.any_dialogue_active()

    def restore(self) -> bool:
        """Rehydrate from the snapshot file. A missing or broken file keeps the fresh world."""
        if self.state_store is None:
            return False
        try:
            payload = self.state_store.load()
        except OSError as exc:
            logger.error("[AUTOSAVE] snapshot load failed: %s", exc)
            return False
        if payload is None:
            return False
        try:
            restore_world(self.world, payload)
        except Exception:
            logger.exception("[AUTOSAVE] snapshot restore failed; keeping seeded world")
            return False
        logger.info("[AUTOSAVE] restored day %s %s", self.world.day, self.world.time_label())
        return True

    def _write_snapshot(self, payload: dict[str, Any]) -> bool:
        if self.state_store is None:
            raise RuntimeError("No world state store configured")
        try:
            self.state_store.save(payload)
        except (OSError, TypeError, ValueError) as exc:
            self.last_autosave_error = f"{exc.__class__.__name__}: {exc}"
            logger.error("[AUTOSAVE] save failed: %s", exc)
            return False
        self.last_autosave_at = self.clock()
        self.last_autosave_error = None
        return True

    def autosave(self) -> bool:
        """Write the snapshot unless a write is already running. Errors are logged and retried next cycle."""
        if self.state_store is None or self._autosave_in_progress:
            return False
        self._autosave_in_progress = True
        try:
            return self._write_snapshot(snapshot_world(self.world))
        finally:
            self._autosave_in_progress = False

    async def autosave_async(self) -> bool:
        """Snapshot on the loop, write on a worker thread."""
        if self.state_store is None or self._autosave_in_progress:
            return False
        self._autosave_in_progress = True
        try:
            payload = snapshot_world(self.world)
            return await asyncio.to_thread(self._write_snapshot, payload)
        finally:
            self._autosave_in_progress = False

    def _spawn(self, coro: Awaitable[Any], label: str) -> asyncio.Task[Any]:
        job = asyncio.ensure_future(coro)
        self._background.add(job)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._background.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error("[TICK] background %s failed: %s", label, exc)

        job.add_done_callback(_done)
        return job

    async def drain(self) -> None:
        """Wait for background conversations, task steps and refreshes to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        if self.dialogue.cancel_token is not None:
            self.dialogue.cancel_token.cancel()
        for job in list(self._background):
            job.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        self._background.clear()

    # -- pushes -------------------------------------------------------------

    def snapshot_for(self, player: PlayerSession | None = None) -> dict[str, Any]:
        world = self.world
        view: dict[str, Any] = {
            "day": world.day,
            "minute": world.minute,
            "time_label": world.time_label(),
            "weather": world.weather,
            "rumor": world.rumor,
            "tick": world.tick_count,
            "paused": self.paused,
            "characters": [character.public_view() for character in world.characters.values()],
            "relations": {
                key: {**entry.as_dict(), "label": relation_label(entry.score)} for key, entry in world.relations.items()
            },
            "town_log": list(world.town_log[-12:]),
            "social": derived_view(world),
            "players_online": len(world.players),
            "you": None,
            "farm": None,
            "missions": None,
            "reputation": None,
            "dialogue": None,
        }
        if player is not None:
            view["you"] = {
                "session_id": player.session_id,
                "player_id": player.player_id,
                "name": player.name,
                "gender": player.gender,
                "x": round(player.x, 1),
                "y": round(player.y, 1),
                "area": player.area,
                "sleeping": player.sleeping,
            }
            farm = world.farms.get(player.player_id)
            view["farm"] = farm.as_dict() if farm else None
            view["missions"] = mission_view(player.missions, world.town_mission)
            view["reputation"] = player.reputation.as_dict()
            view["dialogue"] = player.dialogue.as_dict()
        return view

    async def push_world(self, player: PlayerSession, kind: str = "world_tick") -> None:
        await self.sink.to_session(player.session_id, {"type": kind, "world": self.snapshot_for(player)})

    async def push_world_all(self, kind: str = "world_tick") -> None:
        for player in list(self.world.players.values()):
            await self.push_world(player, kind)

    async def feedback(self, player: PlayerSession, ok: bool, message: str) -> None:
        await self.sink.to_session(player.session_id, {"type": "feedback", "ok": bool(ok), "message": message})

    async def notify_player(self, player_id: str, message: str, ok: bool = True) -> None:
        player = self.world.player_by_id(player_id)
        if player is not None:
            await self.feedback(player, ok, message)

    # -- tick ---------------------------------------------------------------

    async def tick(self) -> TickReport:
        world = self.world
        world.tick_count += 1
        paused = self.paused
        day_changed = False
        skipped = False
        if not paused:
            day_changed = advance_clock(world, TICK_MINUTES).day_changed
            if day_changed:
                await self.morning_reset("new_day")
            tick_movement(world, TICK_MOVEMENT_SECONDS, self.clock())
            tick_growth(world.farms, TICK_MINUTES)
            skip = skip_overnight(world)
            skipped = bool(skip and skip.day_changed)
            if skipped:
                await self.morning_reset("overnight_skip")
            if day_changed or skipped:
                await self.push_world_all()

        awake = world.awake_players()
        synced = bool(awake) or world.tick_count % SLEEP_SYNC_INTERVAL_TICKS == 0
        if synced:
            await self.push_world_all()

        if not paused:
            self._schedule_tasks()
            if not (day_changed or skipped) and awake:
                self._schedule_conversation()
        return TickReport(tick=world.tick_count, paused=paused, day_changed=day_changed, skipped_night=skipped, synced=synced)

    def _schedule_tasks(self) -> None:
        if self._task_job is not None and not self._task_job.done():
            return
        if not any(character.tasks for character in self.world.characters.values()):
            return
        self._task_job = self._spawn(self.tasks.step(), "task step")

    def _schedule_conversation(self) -> None:
        if self.tasks.in_progress:
            return
        job = self.dialogue.maybe_start_conversation()
        if job is not None:
            self._background.add(job)
            job.add_done_callback(self._background.discard)

    # -- morning reset and daily refresh ------------------------------------

    async def morning_reset(self, reason: str = "new_day") -> None:
        summary = morning_summary(self.world)
        self._spawn(self.run_daily_refresh(), "daily refresh")
        reason_line = (
            "You were escorted home at 2:00 AM and woke at 6:00 AM."
            if reason == "overnight_skip"
            else "A new day begins in town."
        )
        for player in list(self.world.players.values()):
            farm = self.world.farm_for(player.player_id)
            player.x, player.y = farm.home_x, farm.home_y
            player.area = locate(player.x, player.y)
            player.sleeping = False
            if player.dialogue.active:
                await self.dialogue.end(player)
            await self.sink.to_session(
                player.session_id,
                {
                    "type": "morning_news",
                    "day": self.world.day,
                    "title": f"Morning Ledger - Day {self.world.day}",
                    "text": f"{reason_line}\n\n{summary}",
                },
            )
        logger.info("[TICK] morning reset day=%s reason=%s", self.world.day, reason)

    async def run_daily_refresh(self) -> list[StepOutcome]:
        arc = self.world.story_arc
        outcomes = await run_daily_refresh_pipeline(
            clear_caches=self.dialogue.clear_caches,
            should_refresh_story_arc=arc is None or arc.completed,
            refresh_story_arc=self.refresher.refresh_story_arc,
            refresh_town_mission=self.refresher.refresh_town_mission,
            refresh_routine_nudges=self.refresher.refresh_routine_nudges,
            refresh_economy=self.refresher.refresh_economy,
            refresh_world_events=self.refresher.refresh_world_events,
            refresh_faction_pulse=self.refresher.refresh_faction_pulse,
            refresh_reactive_missions=self.refresh_reactive_missions,
            on_step_done=self.push_world_all,
        )
        failed = [outcome.name for outcome in outcomes if not outcome.ok]
        logger.info("[REFRESH] day %s refreshed (%s steps, failed=%s)", self.world.day, len(outcomes), failed or "none")
        return outcomes

    async def refresh_reactive_missions(self) -> None:
        stale = [
            player
            for player in list(self.world.players.values())
            if player.missions.chain_complete()
            and (player.missions.dynamic_mission is None or not player.missions.has_progress())
        ]
        if not stale:
            return
        await asyncio.gather(*(self.assign_dynamic_mission(player) for player in stale), return_exceptions=True)

    # -- missions -----------------------------------------------------------

    async def assign_dynamic_mission(self, player: PlayerSession) -> MissionSpec:
        world = self.world
        signals = quest_signals(world)
        context = {
            "scope": f"day:{world.day}",
            "subject_id": player.player_id,
            "player_id": player.player_id,
            "completed_dynamic": player.missions.completed_dynamic,
            "world": world_context(world),
            "town_log": recent_log(world),
            "characters": [
                {"id": c.id, "name": c.name, "role": c.role, "area": c.area} for c in world.characters.values()
            ],
            "area_names": list(AREA_NAMES),
            "role_names": list(ROLE_NAMES),
            "quest_signals": signals.as_dict(),
        }
        draft: dict[str, Any] | None = None
        try:
            draft = await asyncio.to_thread(self.generator.generate_dynamic_mission, context)
        except Exception as exc:
            logger.warning("[REFRESH] dynamic mission generation failed for %s: %s", player.player_id, exc)
        mission = normalize_dynamic_mission(
            draft,
            signals,
            day=world.day,
            reward_multiplier=world.economy.reward_multiplier,
            rng=world.rng,
        )
        player.missions.reset_scoped()
        player.missions.dynamic_mission = mission
        self.remember_profile(player)
        return mission

    async def _apply_mission_event(self, player: PlayerSession, event: MissionEvent) -> bool:
        result = apply_event(player.missions, event)
        if not result.changed:
            return False
        if result.completed is not None:
            reward = grant_completion(self.world, player, result.completed, now=self.clock())
            next_mission = result.next_mission
            if next_mission is None and player.missions.chain_complete():
                next_mission = await self.assign_dynamic_mission(player)
            next_text = f" Next: {next_mission.title}." if next_mission else " All mission steps complete."
            await self.feedback(
                player,
                True,
                f"Mission complete: {result.completed.title}. Reward: +{reward.coins} coins.{next_text}",
            )
            arc = reward.arc
            if arc.changed and arc.stage_advanced and arc.arc is not None:
                if arc.completed:
                    text = f"Story arc resolved: {arc.arc.title}. {arc.arc.branch_outcome}".strip()
                else:
                    text = f"Story arc advanced: {arc.arc.current_stage() or 'Next chapter unlocked.'}"
                await self.feedback(player, True, text)
        self.remember_profile(player)
        await self.push_world(player)
        return True

    async def _apply_town_event(self, player: PlayerSession, event: MissionEvent) -> bool:
        result = apply_town_event(player.missions, self.world.town_mission, event)
        if not result.changed:
            return False
        if result.completed:
            title = result.mission.title if result.mission else "Town request"
            await self.feedback(player, True, f"Gossip mission complete: {title}")
        await self.push_world(player)
        return True

    # -- sessions -----------------------------------------------------------

    def remember_profile(self, player: PlayerSession) -> None:
        self.world.profiles[player.player_id] = player.profile_dict()

    async def connect(
        self,
        session_id: str,
        *,
        player_id: str | None = None,
        name: Any = None,
        gender: Any = None,
    ) -> PlayerSession:
        world = self.world
        stable_id = str(player_id or "").strip()[:64]
        is_guest = not stable_id or is_guest_id(stable_id)
        if not stable_id:
            stable_id = f"{GUEST_ID_PREFIX}{session_id}"
        restored = world.profiles.get(stable_id) or {}
        farm = world.farm_for(stable_id)
        x = _coordinate(restored.get("x"), farm.home_x)
        y = _coordinate(restored.get("y"), farm.home_y)
        x, y = clamp_to_world(x, y)
        player = PlayerSession(
            session_id=session_id,
            player_id=stable_id,
            name=normalize_player_name(name if name else restored.get("name")),
            gender=normalize_gender(gender if gender else restored.get("gender")),
            x=x,
            y=y,
            area=locate(x, y),
            is_guest=is_guest,
            missions=MissionProgress.from_dict(restored.get("missions")),
            reputation=Reputation.from_dict(restored.get("reputation")),
        )
        world.players[session_id] = player
        self.remember_profile(player)
        logger.info("[TICK] %s joined as %s (guest=%s)", stable_id, player.name, is_guest)
        await self.push_world(player, "world_snapshot")
        if player.missions.needs_dynamic():
            self._spawn(self._join_mission(player), "join mission")
        return player

    async def _join_mission(self, player: PlayerSession) -> None:
        await self.assign_dynamic_mission(player)
        if player.session_id in self.world.players:
            await self.push_world(player)

    async def disconnect(self, session_id: str) -> None:
        player = self.world.players.pop(session_id, None)
        if player is None:
            return
        if player.is_guest:
            self.world.profiles.pop(player.player_id, None)
            self.world.farms.pop(player.player_id, None)
        else:
            self.remember_profile(player)
        logger.info("[TICK] %s left", player.player_id)

    # -- player handlers ----------------------------------------------------

    async def handle_move(self, session_id: str, x: Any, y: Any) -> None:
        player = self.world.players.get(session_id)
        if player is None:
            return
        nx, ny = clamp_to_world(_coordinate(x, player.x), _coordinate(y, player.y))
        moved = distance(nx, ny, player.x, player.y) > MOVE_EPSILON
        state = player.dialogue
        if state.active and not state.waiting_for_reply:
            return
        if state.active:
            if not moved or not moved_off_anchor(player, nx, ny):
                return
            player.x, player.y = nx, ny
            player.area = locate(nx, ny)
            await self.dialogue.end(player)
            return
        player.x, player.y = nx, ny
        player.area = locate(nx, ny)
        event = MissionEvent(kind="move", x=nx, y=ny, area=player.area)
        await self._apply_mission_event(player, event)
        await self._apply_town_event(player, event)
        self.remember_profile(player)

    async def handle_sleep(self, session_id: str, sleeping: Any) -> None:
        player = self.world.players.get(session_id)
        if player is None:
            return
        player.sleeping = bool(sleeping)
        if player.sleeping and player.dialogue.active:
            await self.dialogue.end(player)

    async def handle_chat(self, session_id: str, text: Any) -> None:
        player = self.world.players.get(session_id)
        if player is None or player.sleeping:
            return
        clean = str(text or "").strip()[:CHAT_TEXT_LIMIT]
        if not clean:
            return
        state = player.dialogue
        names = [character.name for character in self.world.characters.values()]
        command = parse_command(clean, self.world.now, names)
        if command is not None:
            result = apply_command(
                self.world,
                player,
                command,
                preferred_npc_id=state.npc_id if state.active else None,
                now=self.clock(),
            )
            await self.feedback(player, result.ok, result.message)
            character = self.world.characters.get(result.npc_id or "")
            if character is not None:
                await self.dialogue.say(player, character, result.message, ok=result.ok)
            return
        if not state.active and self.dialogue.conversation_active:
            return
        if state.active and state.waiting_for_reply:
            character = self.world.characters.get(state.npc_id or "")
            if character is None:
                await self.dialogue.end(player)
                return
            await self.dialogue.reply(player, character, clean, observation=is_observation_question(clean))
            return
        if state.active:
            return
        await self.sink.broadcast(
            dialogue_event(
                "player_chat",
                speaker_id=player.session_id,
                speaker_name=player.name,
                target_id=None,
                target_name=None,
                text=clean,
                x=player.x,
                y=player.y,
                time_label=self.world.time_label(),
            )
        )

    async def handle_interact(self, session_id: str, npc_id: Any) -> None:
        world = self.world
        player = world.players.get(session_id)
        if player is None or player.sleeping:
            return
        state = player.dialogue
        if not state.active and world.any_dialogue_active():
            return
        if not state.active and self.dialogue.cancel_token is not None:
            self.dialogue.cancel_token.cancel()
        character: Character | None = world.characters.get(str(npc_id or "").strip())
        if character is None:
            return
        if state.active and state.npc_id and state.npc_id != character.id:
            return
        continuing = state.active and state.npc_id == character.id
        if distance(character.x, character.y, player.x, player.y) > PLAYER_NEAR_DISTANCE:
            return

        event = MissionEvent(kind="talk", npc_id=character.id, role=character.role)
        await self._apply_mission_event(player, event)
        apply_reputation_delta(player.reputation, 1, role=character.role, reason=f"talked with {character.name}", now=self.clock())
        await self._apply_town_event(player, event)

        if not continuing:
            await self.dialogue.start(player, character)
            return
        if not state.chunks and not state.waiting_for_reply:
            await self.dialogue.end(player)
            return
        await self.dialogue.continue_chunk(player, character)

    async def handle_farm_action(self, session_id: str, plot_id: Any, action: Any, crop_type: Any = None) -> None:
        world = self.world
        player = world.players.get(session_id)
        if player is None or player.dialogue.active:
            return
        farm = world.farms.get(player.player_id)
        if farm is None:
            return
        plot = farm.plot(plot_id)
        if plot is None:
            await self.feedback(player, False, "Invalid plot.")
            return
        if distance(plot.x, plot.y, player.x, player.y) > FARM_ACTION_DISTANCE:
            await self.feedback(player, False, "Move closer to your home field.")
            return
        verb = str(action or "")
        result = apply_action(
            farm,
            plot.id,
            verb,
            str(crop_type or "") or None,
            prices=world.economy.prices,
            rng=world.rng,
            now_fn=self.clock,
        )
        await self.sink.to_session(player.session_id, {"type": "farm_feedback", **result.as_dict()})
        changed = False
        if result.ok and verb == "harvest":
            now = self.clock()
            apply_reputation_delta(player.reputation, 1, role="Shop Owner", reason="supplied fresh harvest", now=now)
            apply_reputation_delta(player.reputation, 1, role="Fisherman", reason="helped food supply", now=now)
            event = MissionEvent(kind="harvest")
            changed = await self._apply_mission_event(player, event)
            changed = await self._apply_town_event(player, event) or changed
        self.remember_profile(player)
        if not changed:
            await self.push_world(player)
