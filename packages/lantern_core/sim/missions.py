"""Per-player mission engine and the shared town mission.

A player always has at most one active objective: the next step of the fixed
chain, or once the chain is exhausted, a generated dynamic mission. Scoped
counters (harvests, unique npcs/roles/areas) belong to the active objective
only and are cleared every time the player advances.

The town mission is global. Each player keeps a progress record keyed by the
town mission id, so a rotated mission starts from zero on the next event.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any
import random
import time

from .layout import AREA_NAMES, NPC_SEEDS, ROLE_NAMES, clean_for_match, distance
from .relations import apply_reputation_delta
from .social_state import URGENCY_WORDS, ArcProgress, progress_story_arc, rumor_hotspots, touch

if TYPE_CHECKING:
    from .world import PlayerSession, World


OBJECTIVE_TYPES = (
    "reach_point",
    "talk_npc",
    "talk_role",
    "visit_area",
    "harvest_count",
    "talk_unique_npcs",
    "talk_unique_roles",
    "visit_unique_areas",
)
DYNAMIC_OBJECTIVE_TYPES = (
    "talk_npc",
    "talk_role",
    "visit_area",
    "harvest_count",
    "visit_unique_areas",
    "talk_unique_npcs",
)
TOWN_OBJECTIVE_TYPES = ("visit_area", "talk_to_any_npc", "talk_to_role", "harvest_any")
EVENT_KINDS = ("move", "talk", "harvest")
COMPLETION_REPUTATION = 2
QUEST_SIGNAL_LOG_WINDOW = 40


@dataclass(frozen=True)
class MissionSpec:
    id: str
    title: str
    description: str
    objective_type: str
    target_npc_id: str | None = None
    target_role: str | None = None
    target_area: str | None = None
    target_x: float | None = None
    target_y: float | None = None
    radius: float = 0.0
    target_count: int = 1
    reward_coins: int = 0
    urgency: int = 1
    why_now: str = ""

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Any) -> "MissionSpec | None":
        if not isinstance(raw, dict) or raw.get("objective_type") not in OBJECTIVE_TYPES:
            return None
        try:
            return cls(
                id=str(raw.get("id") or "dynamic_restored"),
                title=str(raw.get("title") or "Town Threads")[:60],
                description=str(raw.get("description") or "")[:180],
                objective_type=str(raw["objective_type"]),
                target_npc_id=raw.get("target_npc_id") or None,
                target_role=raw.get("target_role") or None,
                target_area=raw.get("target_area") or None,
                target_x=float(raw["target_x"]) if raw.get("target_x") is not None else None,
                target_y=float(raw["target_y"]) if raw.get("target_y") is not None else None,
                radius=float(raw.get("radius") or 0.0),
                target_count=max(1, int(raw.get("target_count") or 1)),
                reward_coins=max(0, int(raw.get("reward_coins") or 0)),
                urgency=max(1, min(3, int(raw.get("urgency") or 1))),
                why_now=str(raw.get("why_now") or "")[:140],
            )
        except (TypeError, ValueError):
            return None


MISSION_CHAIN: tuple[MissionSpec, ...] = (
    MissionSpec(
        id="shrine_light",
        title="The Forest Shrine",
        description="Follow the rumor to the old shrine deep in the forest.",
        objective_type="reach_point",
        target_x=300.0,
        target_y=920.0,
        radius=60.0,
    ),
    MissionSpec(
        id="herbal_counsel",
        title="Herbal Counsel",
        description="Ask Mira the herbalist what she knows about the lantern.",
        objective_type="talk_npc",
        target_npc_id="npc_herbalist",
    ),
    MissionSpec(
        id="dockside_whispers",
        title="Dockside Whispers",
        description="Walk down to the Dock and listen to the boats come in.",
        objective_type="visit_area",
        target_area="Dock",
    ),
    MissionSpec(
        id="watch_report",
        title="Report to the Watch",
        description="Tell a Town Guard what you found at the shrine.",
        objective_type="talk_role",
        target_role="Town Guard",
    ),
    MissionSpec(
        id="first_harvest",
        title="First Harvest",
        description="Bring in two crops from your farm.",
        objective_type="harvest_count",
        target_count=2,
    ),
    MissionSpec(
        id="new_faces",
        title="New Faces",
        description="Introduce yourself to three different townsfolk.",
        objective_type="talk_unique_npcs",
        target_count=3,
    ),
    MissionSpec(
        id="many_trades",
        title="Many Trades",
        description="Speak with three people who work different trades.",
        objective_type="talk_unique_roles",
        target_count=3,
    ),
    MissionSpec(
        id="know_the_town",
        title="Know the Town",
        description="Visit four different parts of town.",
        objective_type="visit_unique_areas",
        target_count=4,
    ),
)


@dataclass(frozen=True)
class MissionEvent:
    kind: str
    x: float | None = None
    y: float | None = None
    area: str | None = None
    npc_id: str | None = None
    role: str | None = None


@dataclass(frozen=True)
class TownMission:
    id: str
    title: str
    description: str
    objective_type: str
    target_area: str | None = None
    target_role: str | None = None
    target_count: int = 1
    gossip: str = ""

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TownMissionProgress:
    mission_id: str
    count: int = 0
    spoken_npc_ids: list[str] = field(default_factory=list)
    completed: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MissionProgress:
    index: int = 0
    harvest_count: int = 0
    spoken_npc_ids: list[str] = field(default_factory=list)
    spoken_roles: list[str] = field(default_factory=list)
    visited_areas: list[str] = field(default_factory=list)
    dynamic_mission: MissionSpec | None = None
    completed_dynamic: int = 0
    town: TownMissionProgress | None = None

    def chain_complete(self) -> bool:
        return self.index >= len(MISSION_CHAIN)

    def current(self) -> MissionSpec | None:
        if not self.chain_complete():
            return MISSION_CHAIN[self.index]
        return self.dynamic_mission

    def needs_dynamic(self) -> bool:
        return self.chain_complete() and self.dynamic_mission is None

    def has_progress(self) -> bool:
        return bool(self.harvest_count or self.spoken_npc_ids or self.spoken_roles or self.visited_areas)

    def reset_scoped(self) -> None:
        self.harvest_count = 0
        self.spoken_npc_ids = []
        self.spoken_roles = []
        self.visited_areas = []

    def as_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "harvest_count": self.harvest_count,
            "spoken_npc_ids": list(self.spoken_npc_ids),
            "spoken_roles": list(self.spoken_roles),
            "visited_areas": list(self.visited_areas),
            "dynamic_mission": self.dynamic_mission.as_dict() if self.dynamic_mission else None,
            "completed_dynamic": self.completed_dynamic,
            "town": self.town.as_dict() if self.town else None,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "MissionProgress":
        progress = cls()
        if not isinstance(raw, dict):
            return progress
        try:
            progress.index = max(0, min(len(MISSION_CHAIN), int(raw.get("index") or 0)))
            progress.harvest_count = max(0, int(raw.get("harvest_count") or 0))
            progress.completed_dynamic = max(0, int(raw.get("completed_dynamic") or 0))
        except (TypeError, ValueError):
            return cls()
        progress.spoken_npc_ids = [str(v) for v in raw.get("spoken_npc_ids") or [] if v]
        progress.spoken_roles = [str(v) for v in raw.get("spoken_roles") or [] if v]
        progress.visited_areas = [str(v) for v in raw.get("visited_areas") or [] if v in AREA_NAMES]
        progress.dynamic_mission = MissionSpec.from_dict(raw.get("dynamic_mission"))
        town = raw.get("town")
        if isinstance(town, dict) and town.get("mission_id"):
            try:
                count = max(0, int(town.get("count") or 0))
            except (TypeError, ValueError):
                count = 0
            progress.town = TownMissionProgress(
                mission_id=str(town["mission_id"]),
                count=count,
                spoken_npc_ids=[str(v) for v in town.get("spoken_npc_ids") or [] if v],
                completed=bool(town.get("completed")),
            )
        return progress


@dataclass(frozen=True)
class MissionResult:
    changed: bool
    completed: MissionSpec | None = None
    next_mission: MissionSpec | None = None


@dataclass(frozen=True)
class TownMissionResult:
    changed: bool
    completed: bool = False
    mission: TownMission | None = None


def _append_unique(items: list[str], value: str | None) -> bool:
    if not value or value in items:
        return False
    items.append(value)
    return True


def _objective_satisfied(progress: MissionProgress, mission: MissionSpec, event: MissionEvent) -> tuple[bool, bool]:
    """Return (changed, satisfied) after folding ``event`` into scoped counters."""
    kind = mission.objective_type
    if event.kind == "move":
        if kind == "reach_point" and event.x is not None and event.y is not None:
            if mission.target_x is None or mission.target_y is None:
                return False, False
            hit = distance(event.x, event.y, mission.target_x, mission.target_y) <= mission.radius
            return hit, hit
        if kind == "visit_area":
            hit = bool(event.area) and event.area == mission.target_area
            return hit, hit
        if kind == "visit_unique_areas":
            changed = _append_unique(progress.visited_areas, event.area)
            return changed, len(progress.visited_areas) >= mission.target_count
        return False, False
    if event.kind == "talk":
        if kind == "talk_npc":
            hit = bool(event.npc_id) and event.npc_id == mission.target_npc_id
            return hit, hit
        if kind == "talk_role":
            hit = bool(event.role) and event.role == mission.target_role
            return hit, hit
        if kind == "talk_unique_npcs":
            changed = _append_unique(progress.spoken_npc_ids, event.npc_id)
            return changed, len(progress.spoken_npc_ids) >= mission.target_count
        if kind == "talk_unique_roles":
            changed = _append_unique(progress.spoken_roles, event.role)
            return changed, len(progress.spoken_roles) >= mission.target_count
        return False, False
    if event.kind == "harvest" and kind == "harvest_count":
        progress.harvest_count += 1
        return True, progress.harvest_count >= mission.target_count
    return False, False


def apply_event(progress: MissionProgress, event: MissionEvent) -> MissionResult:
    mission = progress.current()
    if mission is None or event.kind not in EVENT_KINDS:
        return MissionResult(changed=False)
    changed, satisfied = _objective_satisfied(progress, mission, event)
    if not satisfied:
        return MissionResult(changed=changed)
    progress.reset_scoped()
    if progress.chain_complete():
        progress.dynamic_mission = None
        progress.completed_dynamic += 1
    else:
        progress.index += 1
    return MissionResult(changed=True, completed=mission, next_mission=progress.current())


def apply_town_event(progress: MissionProgress, mission: TownMission | None, event: MissionEvent) -> TownMissionResult:
    if mission is None:
        return TownMissionResult(changed=False)
    record = progress.town
    if record is None or record.mission_id != mission.id:
        record = TownMissionProgress(mission_id=mission.id)
        progress.town = record
    if record.completed:
        return TownMissionResult(changed=False, mission=mission)

    kind = mission.objective_type
    changed = False
    if kind == "visit_area" and event.kind == "move":
        if event.area and event.area == mission.target_area:
            record.count = max(record.count, mission.target_count)
            changed = True
    elif kind == "talk_to_any_npc" and event.kind == "talk":
        if _append_unique(record.spoken_npc_ids, event.npc_id):
            record.count = len(record.spoken_npc_ids)
            changed = True
    elif kind == "talk_to_role" and event.kind == "talk":
        if event.role and event.role == mission.target_role:
            record.count += 1
            changed = True
    elif kind == "harvest_any" and event.kind == "harvest":
        record.count += 1
        changed = True

    if changed and record.count >= mission.target_count:
        record.completed = True
        return TownMissionResult(changed=True, completed=True, mission=mission)
    return TownMissionResult(changed=changed, mission=mission)


def mission_reward_coins(mission: MissionSpec, reward_multiplier: float) -> int:
    base = 6 + 3 * max(1, int(mission.target_count))
    return max(1, int(round(base * float(reward_multiplier))))


@dataclass(frozen=True)
class CompletionReward:
    coins: int
    arc: ArcProgress


def grant_completion(world: "World", player: "PlayerSession", mission: MissionSpec, *, now: float | None = None) -> CompletionReward:
    """Reputation, coin bonus and story-arc progress for one finished objective."""
    apply_reputation_delta(
        player.reputation,
        COMPLETION_REPUTATION,
        reason=f"completed mission: {mission.title or 'objective'}",
        now=now if now is not None else time.time(),
    )
    coins = mission.reward_coins or mission_reward_coins(mission, world.economy.reward_multiplier)
    coins = max(1, int(coins))
    world.farm_for(player.player_id).coins += coins
    arc = progress_story_arc(world, mission.objective_type)
    return CompletionReward(coins=coins, arc=arc)


@dataclass(frozen=True)
class QuestSignals:
    hot_area: str
    hot_role: str
    urgency: int
    rumor_intensity: int
    rumor_topics: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["rumor_topics"] = list(self.rumor_topics)
        return out


def quest_signals(world: "World") -> QuestSignals:
    logs = (list(world.yesterday_log) + list(world.town_log))[-QUEST_SIGNAL_LOG_WINDOW:]
    hotspots = rumor_hotspots(world.rumor_heat)
    area_counts: dict[str, int] = {}
    role_counts: dict[str, int] = {}
    urgency_hits = 0
    for line in logs:
        text = clean_for_match(line)
        for area in AREA_NAMES:
            if clean_for_match(area) in text:
                area_counts[area] = area_counts.get(area, 0) + 1
        for role in ROLE_NAMES:
            if clean_for_match(role) in text:
                role_counts[role] = role_counts.get(role, 0) + 1
        urgency_hits += sum(1 for word in URGENCY_WORDS if word in text)

    # Ties keep first-seen order, matching a stable sort by count.
    hot_area = max(area_counts, key=area_counts.__getitem__) if area_counts else ""
    hot_role = max(role_counts, key=role_counts.__getitem__) if role_counts else ""
    from_logs = 3 if urgency_hits >= 5 else 2 if urgency_hits >= 2 else 1
    intensity = int(hotspots["intensity"])
    from_rumor = 3 if intensity >= 55 else 2 if intensity >= 28 else 1
    return QuestSignals(
        hot_area=hot_area or str(hotspots["area"] or ""),
        hot_role=hot_role or str(hotspots["role"] or ""),
        urgency=max(from_logs, from_rumor),
        rumor_intensity=intensity,
        rumor_topics=tuple(hotspots["topics"]),
    )


def _bounded_count(value: Any, low: int, high: int, default: int) -> int:
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    if number <= 0:
        return default
    return max(low, min(high, number))


def _find_npc_like(raw: Any) -> str | None:
    needle = clean_for_match(raw)
    if not needle:
        return None
    for seed in NPC_SEEDS:
        if clean_for_match(seed.name) == needle or seed.id == str(raw):
            return seed.id
    for seed in NPC_SEEDS:
        if needle in clean_for_match(seed.name):
            return seed.id
    return None


def _match_role(raw: Any) -> str | None:
    needle = clean_for_match(raw)
    for role in ROLE_NAMES:
        if needle and clean_for_match(role) == needle:
            return role
    return None


def normalize_dynamic_mission(
    draft: Any,
    signals: QuestSignals | None,
    *,
    day: int,
    reward_multiplier: float = 1.0,
    rng: random.Random | None = None,
) -> MissionSpec:
    """Clamp a generated mission draft into a well-formed ``MissionSpec``."""
    picker = rng or random
    raw = draft if isinstance(draft, dict) else {}
    objective_type = str(raw.get("objective_type") or "").strip().lower()
    if objective_type not in DYNAMIC_OBJECTIVE_TYPES:
        objective_type = "talk_unique_npcs"
    try:
        urgency = int(float(raw.get("urgency") or 0))
    except (TypeError, ValueError):
        urgency = 0
    if urgency <= 0:
        urgency = signals.urgency if signals else 1
    base: dict[str, Any] = {
        "id": f"dynamic_{day}_{int(time.time() * 1000)}_{picker.randint(0, 999)}",
        "title": str(raw.get("title") or "Town Threads").strip()[:60] or "Town Threads",
        "description": str(raw.get("description") or "Follow the latest town chatter.")[:180],
        "urgency": max(1, min(3, urgency)),
        "why_now": str(raw.get("why_now") or "")[:140],
    }

    if objective_type == "talk_npc":
        npc_id = _find_npc_like(raw.get("target_npc_name") or raw.get("target_npc_id"))
        if npc_id is None:
            npc_id = picker.choice(NPC_SEEDS).id
        spec = MissionSpec(objective_type="talk_npc", target_npc_id=npc_id, **base)
    elif objective_type == "talk_role":
        role = _match_role(raw.get("target_role")) or _match_role(signals.hot_role if signals else None)
        spec = MissionSpec(objective_type="talk_role", target_role=role or picker.choice(ROLE_NAMES), **base)
    elif objective_type == "visit_area":
        requested = str(raw.get("target_area") or "").strip()
        signal_area = signals.hot_area if signals else ""
        if requested in AREA_NAMES:
            area = requested
        elif signal_area in AREA_NAMES:
            area = signal_area
        else:
            area = picker.choice(AREA_NAMES)
        spec = MissionSpec(objective_type="visit_area", target_area=area, **base)
    elif objective_type == "harvest_count":
        spec = MissionSpec(
            objective_type="harvest_count",
            target_count=_bounded_count(raw.get("target_count"), 1, 5, 2),
            **base,
        )
    elif objective_type == "visit_unique_areas":
        spec = MissionSpec(
            objective_type="visit_unique_areas",
            target_count=_bounded_count(raw.get("target_count"), 2, 5, 3),
            **base,
        )
    else:
        spec = MissionSpec(
            objective_type="talk_unique_npcs",
            target_count=_bounded_count(raw.get("target_count"), 2, 5, 2),
            **base,
        )

    urgency_multiplier = 1.2 if spec.urgency >= 3 else 1.1 if spec.urgency == 2 else 1.0
    reward = max(1, int(round(mission_reward_coins(spec, reward_multiplier) * urgency_multiplier)))
    return MissionSpec(**{**spec.as_dict(), "reward_coins": reward})


def fallback_town_mission(day: int = 1) -> TownMission:
    return TownMission(
        id=f"town_{day}_fallback",
        title="Town Chatter",
        description="Talk with two townsfolk and hear what is on their minds.",
        objective_type="talk_to_any_npc",
        target_count=2,
        gossip="Everyone in the Town Square is trading stories about the shrine lantern.",
    )


def normalize_town_mission(draft: Any, *, day: int, rng: random.Random | None = None) -> TownMission:
    if not isinstance(draft, dict):
        return fallback_town_mission(day)
    picker = rng or random
    objective_type = str(draft.get("objective_type") or "").strip().lower()
    if objective_type not in TOWN_OBJECTIVE_TYPES:
        objective_type = "talk_to_any_npc"
    target_area = None
    target_role = None
    if objective_type == "visit_area":
        requested = str(draft.get("target_area") or "").strip()
        target_area = requested if requested in AREA_NAMES else picker.choice(AREA_NAMES)
    if objective_type == "talk_to_role":
        target_role = _match_role(draft.get("target_role")) or picker.choice(ROLE_NAMES)
    fallback = fallback_town_mission(day)
    return TownMission(
        id=str(draft.get("id") or f"town_{day}_{int(time.time() * 1000)}"),
        title=str(draft.get("title") or fallback.title).strip()[:60] or fallback.title,
        description=str(draft.get("description") or fallback.description)[:180],
        objective_type=objective_type,
        target_area=target_area,
        target_role=target_role,
        target_count=1 if objective_type == "visit_area" else _bounded_count(draft.get("target_count"), 1, 4, 2),
        gossip=str(draft.get("gossip") or "")[:180],
    )


def town_mission_from_dict(raw: Any, day: int) -> TownMission:
    if isinstance(raw, dict) and raw.get("id"):
        return normalize_town_mission(raw, day=day)
    return fallback_town_mission(day)


def _objective_progress(progress: MissionProgress, mission: MissionSpec) -> tuple[int, int]:
    kind = mission.objective_type
    if kind == "harvest_count":
        return progress.harvest_count, mission.target_count
    if kind == "talk_unique_npcs":
        return len(progress.spoken_npc_ids), mission.target_count
    if kind == "talk_unique_roles":
        return len(progress.spoken_roles), mission.target_count
    if kind == "visit_unique_areas":
        return len(progress.visited_areas), mission.target_count
    return 0, 1


def mission_view(progress: MissionProgress, town_mission: TownMission | None) -> dict[str, Any]:
    current = progress.current()
    view: dict[str, Any] = {
        "step": progress.index + 1 if not progress.chain_complete() else None,
        "chain_length": len(MISSION_CHAIN),
        "chain_complete": progress.chain_complete(),
        "completed_dynamic": progress.completed_dynamic,
        "current": None,
        "town": None,
    }
    if current is not None:
        done, target = _objective_progress(progress, current)
        view["current"] = {**current.as_dict(), "progress": done, "target": target, "dynamic": progress.chain_complete()}
    if town_mission is not None:
        record = progress.town if progress.town and progress.town.mission_id == town_mission.id else None
        view["town"] = {
            **town_mission.as_dict(),
            "progress": record.count if record else 0,
            "completed": bool(record and record.completed),
        }
    return view


def set_town_mission(world: "World", draft: Any) -> TownMission:
    """Install a new shared mission; its gossip becomes the rumor of the day."""
    world.town_mission = normalize_town_mission(draft, day=world.day, rng=world.rng)
    if world.town_mission.gossip:
        world.rumor = world.town_mission.gossip
    touch(world)
    return world.town_mission
