"""World aggregate: characters, player sessions, farms and shared town state.

Every subsystem takes the ``World`` explicitly. Nothing here is a module-level
singleton; the engine owns exactly one instance for the process lifetime.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any
import random
import time

from .clock import Moment, time_label
from .farm import Farm
from .layout import AREA_NAMES, NPC_SEEDS, WORLD_HEIGHT, WORLD_WIDTH, area_at, clamp
from .missions import MissionProgress, TownMission, fallback_town_mission
from .relations import RelationEntry, Reputation, seed_relations
from .routine import CharacterProfile, RoutineNudge, RoutineState, build_profile
from .social_state import (
    EconomyPlan,
    FactionState,
    RumorHeat,
    StoryArc,
    WorldEvent,
    default_economy,
    default_factions,
)


INITIAL_DAY = 1
INITIAL_MINUTE = 8 * 60
INITIAL_WEATHER = "clear"
INITIAL_RUMOR = "A hidden lantern was seen near the forest shrine."
TASK_QUEUE_LIMIT = 4
DIRECTIVE_MODES = ("follow_player", "keep_distance", "point", "area", "hold")
TASK_KINDS = ("talk_to_npc", "observe_area")
TASK_STATUSES = ("queued", "walking", "observing", "done", "failed")
TASK_STEERING_STATUSES = ("walking", "observing")
PLAYER_GENDERS = ("male", "female", "non-binary", "unspecified")
PLAYER_NAME_LIMIT = 24
DEFAULT_PLAYER_NAME = "Traveler"
GUEST_ID_PREFIX = "guest_"


@dataclass
class Directive:
    mode: str
    issued_by: str = ""
    target_player_id: str | None = None
    x: float | None = None
    y: float | None = None
    area: str | None = None
    preferred_distance: float = 110.0
    until: Moment | None = None
    label: str = ""

    def expired(self, now: Moment) -> bool:
        return self.until is not None and self.until.reached_by(now)

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["until"] = self.until.as_dict() if self.until else None
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> "Directive | None":
        if not isinstance(raw, dict) or raw.get("mode") not in DIRECTIVE_MODES:
            return None
        try:
            return cls(
                mode=str(raw["mode"]),
                issued_by=str(raw.get("issued_by") or ""),
                target_player_id=raw.get("target_player_id") or None,
                x=float(raw["x"]) if raw.get("x") is not None else None,
                y=float(raw["y"]) if raw.get("y") is not None else None,
                area=raw.get("area") if raw.get("area") in AREA_NAMES else None,
                preferred_distance=float(raw.get("preferred_distance") or 110.0),
                until=Moment.from_dict(raw.get("until")),
                label=str(raw.get("label") or "")[:80],
            )
        except (TypeError, ValueError):
            return None


@dataclass
class NpcTask:
    id: str
    kind: str
    requested_by: str
    requester_name: str = ""
    target_npc_id: str | None = None
    topic: str = ""
    area: str | None = None
    start_at: Moment | None = None
    duration_minutes: int = 60
    status: str = "queued"
    observe_until: Moment | None = None
    created_at: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["start_at"] = self.start_at.as_dict() if self.start_at else None
        out["observe_until"] = self.observe_until.as_dict() if self.observe_until else None
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> "NpcTask | None":
        if not isinstance(raw, dict) or raw.get("kind") not in TASK_KINDS or not raw.get("id"):
            return None
        try:
            return cls(
                id=str(raw["id"]),
                kind=str(raw["kind"]),
                requested_by=str(raw.get("requested_by") or ""),
                requester_name=str(raw.get("requester_name") or ""),
                target_npc_id=raw.get("target_npc_id") or None,
                topic=str(raw.get("topic") or "")[:120],
                area=raw.get("area") if raw.get("area") in AREA_NAMES else None,
                start_at=Moment.from_dict(raw.get("start_at")),
                duration_minutes=int(raw.get("duration_minutes") or 60),
                status=raw.get("status") if raw.get("status") in TASK_STATUSES else "queued",
                observe_until=Moment.from_dict(raw.get("observe_until")),
                created_at=float(raw.get("created_at") or 0.0),
            )
        except (TypeError, ValueError):
            return None


@dataclass
class Character:
    id: str
    name: str
    role: str
    traits: tuple[str, ...]
    x: float
    y: float
    area: str
    profile: CharacterProfile
    speed: float = 22.0
    vx: float = 0.0
    vy: float = 0.0
    routine: RoutineState | None = None
    directive: Directive | None = None
    tasks: list[NpcTask] = field(default_factory=list)
    talk_cooldown_until: float = 0.0
    target_x: float | None = None
    target_y: float | None = None
    hold_until: float = 0.0
    near_player: bool = False
    patrol_leg: int = 0
    fleeing: bool = False

    def on_cooldown(self, now: float) -> bool:
        return now < self.talk_cooldown_until

    def active_task(self) -> NpcTask | None:
        return self.tasks[0] if self.tasks else None

    def public_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "traits": list(self.traits),
            "x": round(self.x, 1),
            "y": round(self.y, 1),
            "area": self.area,
            "routine": self.routine.as_dict() if self.routine else None,
            "directive": self.directive.as_dict() if self.directive else None,
            "task_count": len(self.tasks),
        }


@dataclass
class DialogueState:
    active: bool = False
    npc_id: str | None = None
    turns: int = 0
    chunks: list[str] = field(default_factory=list)
    waiting_for_reply: bool = False
    anchor_x: float | None = None
    anchor_y: float | None = None

    @property
    def phase(self) -> str:
        return "in_dialogue" if self.active else "idle"

    def reset(self) -> None:
        self.active = False
        self.npc_id = None
        self.turns = 0
        self.chunks = []
        self.waiting_for_reply = False
        self.anchor_x = None
        self.anchor_y = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "npc_id": self.npc_id,
            "turns": self.turns,
            "pending_chunks": len(self.chunks),
            "waiting_for_reply": self.waiting_for_reply,
        }


@dataclass
class PlayerSession:
    session_id: str
    player_id: str
    name: str = DEFAULT_PLAYER_NAME
    gender: str = "unspecified"
    x: float = 680.0
    y: float = 220.0
    area: str = "Housing"
    sleeping: bool = False
    is_guest: bool = False
    dialogue: DialogueState = field(default_factory=DialogueState)
    missions: MissionProgress = field(default_factory=MissionProgress)
    reputation: Reputation = field(default_factory=Reputation)

    @property
    def awake(self) -> bool:
        return not self.sleeping

    def profile_dict(self) -> dict[str, Any]:
        return {
            "player_id": self.player_id,
            "name": self.name,
            "gender": self.gender,
            "x": self.x,
            "y": self.y,
            "missions": self.missions.as_dict(),
            "reputation": self.reputation.as_dict(),
        }


@dataclass
class World:
    day: int = INITIAL_DAY
    minute: int = INITIAL_MINUTE
    weather: str = INITIAL_WEATHER
    rumor: str = INITIAL_RUMOR
    town_log: list[str] = field(default_factory=list)
    yesterday_log: list[str] = field(default_factory=list)
    town_mission: TownMission = field(default_factory=fallback_town_mission)
    story_arc: StoryArc | None = None
    economy: EconomyPlan = field(default_factory=default_economy)
    factions: FactionState = field(default_factory=default_factions)
    world_events: list[WorldEvent] = field(default_factory=list)
    rumor_heat: RumorHeat = field(default_factory=RumorHeat)
    routine_nudges: dict[str, RoutineNudge] = field(default_factory=dict)
    characters: dict[str, Character] = field(default_factory=dict)
    players: dict[str, PlayerSession] = field(default_factory=dict)
    farms: dict[str, Farm] = field(default_factory=dict)
    relations: dict[str, RelationEntry] = field(default_factory=dict)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)
    tick_count: int = 0
    social_revision: int = 0
    derived_cache: tuple[Any, dict[str, Any]] | None = field(default=None, repr=False, compare=False)
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    @property
    def now(self) -> Moment:
        return Moment(day=self.day, minute=self.minute)

    def time_label(self) -> str:
        return time_label(self.minute)

    def player_by_id(self, player_id: str | None) -> PlayerSession | None:
        if not player_id:
            return None
        for player in self.players.values():
            if player.player_id == player_id:
                return player
        return None

    def awake_players(self) -> list[PlayerSession]:
        return [player for player in self.players.values() if player.awake]

    def any_dialogue_active(self) -> bool:
        return any(player.dialogue.active for player in self.players.values())

    def farm_for(self, player_id: str) -> Farm:
        farm = self.farms.get(player_id)
        if farm is None:
            farm = Farm(owner_id=player_id)
            self.farms[player_id] = farm
        return farm


def _spawn_character(seed, rng: random.Random) -> Character:
    return Character(
        id=seed.id,
        name=seed.name,
        role=seed.role,
        traits=tuple(seed.traits),
        x=float(seed.x),
        y=float(seed.y),
        area=seed.area,
        profile=build_profile(seed.id, seed.role),
        speed=18.0 + rng.random() * 10.0,
    )


def create_world(rng: random.Random | None = None, now: float | None = None) -> World:
    world = World(rng=rng or random.Random())
    for seed in NPC_SEEDS:
        world.characters[seed.id] = _spawn_character(seed, world.rng)
    world.relations = seed_relations(now=now if now is not None else time.time())
    return world


def is_guest_id(player_id: str) -> bool:
    return str(player_id or "").startswith(GUEST_ID_PREFIX)


def clamp_to_world(x: float, y: float) -> tuple[float, float]:
    return clamp(float(x), 0.0, float(WORLD_WIDTH)), clamp(float(y), 0.0, float(WORLD_HEIGHT))


def locate(x: float, y: float) -> str:
    return area_at(x, y).name
