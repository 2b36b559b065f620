"""Derived social-economic state: rumor heat, factions, world events, economy, story arc.

Each model has a deterministic fallback and a normalizer that clamps a
generated draft before it touches the world. Mutators bump
``world.social_revision`` so the per-snapshot derived view can be cached.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any
import time

from .farm import CROPS
from .layout import AREA_NAMES, ROLE_NAMES, clamp, clean_for_match
from .relations import pair_key

if TYPE_CHECKING:
    from .world import World


TODAY_LOG_LIMIT = 80
RUMOR_HEAT_CAP = 70
RUMOR_AREA_SPIKE = 8
RUMOR_ROLE_SPIKE = 6
RUMOR_TOPIC_LIMIT = 5
URGENCY_WORDS = ("tense", "restless", "fight", "storm", "shortage", "missing", "fear", "panic")
INFLUENCE_MIN = 20
INFLUENCE_MAX = 80
INFLUENCE_KEEP = 0.65
TENSION_KEEP = 0.6
WORLD_EVENT_LIMIT = 4
WORLD_EVENT_EFFECTS = ("weather_shift", "price_spike", "guard_alert", "none")
DEMAND_TIERS = ("low", "normal", "high")
REWARD_MULTIPLIER_MIN = 0.75
REWARD_MULTIPLIER_MAX = 1.35
RUMOR_TEXT_LIMIT = 180
STAGE_TARGET = 2


def touch(world: "World") -> None:
    world.social_revision += 1


# -- rumor heat -------------------------------------------------------------


@dataclass
class RumorHeat:
    areas: dict[str, int] = field(default_factory=lambda: {name: 0 for name in AREA_NAMES})
    roles: dict[str, int] = field(default_factory=lambda: {name: 0 for name in ROLE_NAMES})
    topics: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Any) -> "RumorHeat":
        heat = cls()
        if not isinstance(raw, dict):
            return heat
        for bucket, known in ((heat.areas, AREA_NAMES), (heat.roles, ROLE_NAMES)):
            source = raw.get("areas" if bucket is heat.areas else "roles")
            if not isinstance(source, dict):
                continue
            for name in known:
                try:
                    bucket[name] = int(clamp(int(source.get(name) or 0), 0, RUMOR_HEAT_CAP))
                except (TypeError, ValueError):
                    continue
        heat.topics = [str(t) for t in raw.get("topics") or [] if t in URGENCY_WORDS][-RUMOR_TOPIC_LIMIT:]
        return heat


def spike_rumor_heat(heat: RumorHeat, text: str) -> None:
    for bucket in (heat.areas, heat.roles):
        for name in bucket:
            bucket[name] = max(0, bucket[name] - 1)
    normalized = clean_for_match(text)
    if not normalized:
        return
    for name in heat.areas:
        if clean_for_match(name) in normalized:
            heat.areas[name] = min(RUMOR_HEAT_CAP, heat.areas[name] + RUMOR_AREA_SPIKE)
    for name in heat.roles:
        if clean_for_match(name) in normalized:
            heat.roles[name] = min(RUMOR_HEAT_CAP, heat.roles[name] + RUMOR_ROLE_SPIKE)
    for word in URGENCY_WORDS:
        if word in normalized:
            heat.topics.append(word)
    del heat.topics[:-RUMOR_TOPIC_LIMIT]


def rumor_hotspots(heat: RumorHeat) -> dict[str, Any]:
    area = max(heat.areas, key=heat.areas.__getitem__) if heat.areas else ""
    role = max(heat.roles, key=heat.roles.__getitem__) if heat.roles else ""
    area_heat = heat.areas.get(area, 0)
    role_heat = heat.roles.get(role, 0)
    return {
        "area": area if area_heat > 0 else "",
        "role": role if role_heat > 0 else "",
        "intensity": max(area_heat, role_heat),
        "topics": list(heat.topics),
    }


def push_town_event(world: "World", text: str) -> None:
    line = str(text or "").strip()
    if not line:
        return
    world.town_log.append(line)
    del world.town_log[:-TODAY_LOG_LIMIT]
    spike_rumor_heat(world.rumor_heat, line)
    touch(world)


# -- factions ---------------------------------------------------------------


@dataclass
class Faction:
    name: str
    members: tuple[str, ...]
    influence: int = 50
    agenda: str = ""

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["members"] = list(self.members)
        return out


@dataclass
class FactionState:
    factions: dict[str, Faction] = field(default_factory=dict)
    tensions: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "factions": [faction.as_dict() for faction in self.factions.values()],
            "tensions": dict(self.tensions),
        }


FACTION_SEEDS: tuple[tuple[str, tuple[str, ...], str], ...] = (
    ("Merchants' Guild", ("npc_businessman", "npc_shop_owner", "npc_fisherman"), "keep the market stalls full"),
    ("Civic Watch", ("npc_politician", "npc_guard", "npc_blacksmith"), "keep order in the square"),
    ("Shrine Circle", ("npc_devotee", "npc_herbalist", "npc_artist"), "tend the shrine and the sick"),
    ("Lantern Circle", ("npc_cultist",), "relight the hidden lantern"),
)


def default_factions() -> FactionState:
    state = FactionState()
    for name, members, agenda in FACTION_SEEDS:
        state.factions[name] = Faction(name=name, members=members, influence=50, agenda=agenda)
    names = list(state.factions)
    for idx, left in enumerate(names):
        for right in names[idx + 1:]:
            tense = "Lantern Circle" in (left, right)
            state.tensions[pair_key(left, right)] = 55 if tense else 30
    return state


def factions_from_dict(raw: Any) -> FactionState:
    state = default_factions()
    if not isinstance(raw, dict):
        return state
    for item in raw.get("factions") or []:
        if not isinstance(item, dict) or item.get("name") not in state.factions:
            continue
        faction = state.factions[item["name"]]
        try:
            faction.influence = int(clamp(int(item.get("influence")), INFLUENCE_MIN, INFLUENCE_MAX))
        except (TypeError, ValueError):
            pass
        faction.agenda = str(item.get("agenda") or faction.agenda)[:120]
    tensions = raw.get("tensions")
    if isinstance(tensions, dict):
        for key, value in tensions.items():
            if key in state.tensions:
                try:
                    state.tensions[key] = int(clamp(int(value), 0, 100))
                except (TypeError, ValueError):
                    continue
    return state


def _number(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def blend_faction_pulse(state: FactionState, draft: Any) -> FactionState:
    """Fold a generated pulse into ``state`` with damping; unknown names are ignored."""
    raw = draft if isinstance(draft, dict) else {}
    for item in raw.get("factions") or []:
        if not isinstance(item, dict):
            continue
        faction = state.factions.get(str(item.get("name") or ""))
        target = _number(item.get("influence"))
        if faction is None:
            continue
        if target is not None:
            target = clamp(target, INFLUENCE_MIN, INFLUENCE_MAX)
            blended = INFLUENCE_KEEP * faction.influence + (1 - INFLUENCE_KEEP) * target
            faction.influence = int(clamp(round(blended), INFLUENCE_MIN, INFLUENCE_MAX))
        if item.get("agenda"):
            faction.agenda = str(item["agenda"])[:120]
    for item in raw.get("tensions") or []:
        if not isinstance(item, dict):
            continue
        left = str(item.get("a") or "")
        right = str(item.get("b") or "")
        key = pair_key(left, right)
        target = _number(item.get("value"))
        if key not in state.tensions or target is None:
            continue
        target = clamp(target, 0, 100)
        blended = TENSION_KEEP * state.tensions[key] + (1 - TENSION_KEEP) * target
        state.tensions[key] = int(clamp(round(blended), 0, 100))
    return state


# -- world events -----------------------------------------------------------


@dataclass(frozen=True)
class WorldEvent:
    id: str
    title: str
    description: str
    area: str | None
    severity: int
    effect: str

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def normalize_world_events(draft: Any, *, day: int) -> list[WorldEvent]:
    if isinstance(draft, dict):
        rows = draft.get("events") or draft.get("active") or []
    elif isinstance(draft, list):
        rows = draft
    else:
        rows = []
    events: list[WorldEvent] = []
    for idx, row in enumerate(rows if isinstance(rows, list) else []):
        if not isinstance(row, dict):
            continue
        title = str(row.get("title") or "").strip()[:60]
        if not title:
            continue
        severity = _number(row.get("severity"))
        effect = str(row.get("effect") or "none").strip().lower()
        area = str(row.get("area") or "").strip()
        events.append(
            WorldEvent(
                id=f"event_{day}_{idx}",
                title=title,
                description=str(row.get("description") or "")[:140],
                area=area if area in AREA_NAMES else None,
                severity=int(clamp(round(severity or 1), 1, 2)),
                effect=effect if effect in WORLD_EVENT_EFFECTS else "none",
            )
        )
        if len(events) >= WORLD_EVENT_LIMIT:
            break
    return events


def world_events_from_dict(raw: Any, day: int) -> list[WorldEvent]:
    events: list[WorldEvent] = []
    for row in raw if isinstance(raw, list) else []:
        if isinstance(row, dict) and row.get("id"):
            normalized = normalize_world_events([row], day=day)
            if normalized:
                events.append(WorldEvent(**{**normalized[0].as_dict(), "id": str(row["id"])}))
    return events[:WORLD_EVENT_LIMIT]


def apply_world_events(world: "World", events: list[WorldEvent]) -> None:
    world.world_events = list(events[:WORLD_EVENT_LIMIT])
    weather_shifted = False
    for event in world.world_events:
        if event.effect == "weather_shift" and not weather_shifted:
            world.weather = "rain" if world.weather == "clear" else "clear"
            weather_shifted = True
        elif event.effect == "guard_alert":
            world.rumor = f"{world.rumor} Guard alert near {event.area or 'town center'}.".strip()[:RUMOR_TEXT_LIMIT]
        push_town_event(world, f"Event: {event.title} ({event.area or 'town'}) - {event.description}")
    apply_event_pressure(world)
    touch(world)


def apply_event_pressure(world: "World") -> None:
    """Recompute the effective reward multiplier from the plan value and active price spikes."""
    boost = 1.0 + sum(0.04 * event.severity for event in world.world_events if event.effect == "price_spike")
    plan = world.economy
    plan.reward_multiplier = round(clamp(plan.base_multiplier * boost, REWARD_MULTIPLIER_MIN, REWARD_MULTIPLIER_MAX), 3)
    if boost > 1.0:
        plan.note = f"Events are affecting supply lines ({len(world.world_events)} active)."


# -- economy ----------------------------------------------------------------


@dataclass
class EconomyPlan:
    prices: dict[str, int] = field(default_factory=lambda: {key: crop.sell_price for key, crop in CROPS.items()})
    demand: dict[str, str] = field(default_factory=lambda: {key: "normal" for key in CROPS})
    reward_multiplier: float = 1.0
    base_multiplier: float = 1.0
    note: str = "Market is steady."

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_economy() -> EconomyPlan:
    return EconomyPlan()


def normalize_economy(draft: Any) -> EconomyPlan:
    plan = default_economy()
    if not isinstance(draft, dict):
        return plan
    prices = draft.get("prices") if isinstance(draft.get("prices"), dict) else {}
    demand = draft.get("demand") if isinstance(draft.get("demand"), dict) else {}
    for key, crop in CROPS.items():
        price = _number(prices.get(key))
        if price is not None:
            low = max(1, int(round(crop.sell_price * 0.5)))
            plan.prices[key] = int(clamp(round(price), low, crop.sell_price * 2))
        tier = str(demand.get(key) or "normal").strip().lower()
        plan.demand[key] = tier if tier in DEMAND_TIERS else "normal"
    multiplier = _number(draft.get("reward_multiplier"))
    if multiplier is not None:
        plan.reward_multiplier = round(clamp(multiplier, REWARD_MULTIPLIER_MIN, REWARD_MULTIPLIER_MAX), 3)
    base = _number(draft.get("base_multiplier"))
    if base is not None:
        plan.base_multiplier = round(clamp(base, REWARD_MULTIPLIER_MIN, REWARD_MULTIPLIER_MAX), 3)
    else:
        plan.base_multiplier = plan.reward_multiplier
    plan.note = str(draft.get("note") or plan.note)[:140]
    return plan


def set_economy(world: "World", draft: Any) -> EconomyPlan:
    world.economy = normalize_economy(draft)
    apply_event_pressure(world)
    touch(world)
    return world.economy


# -- story arc --------------------------------------------------------------


@dataclass
class StoryArc:
    id: str
    title: str
    stages: list[str]
    branches: list[str] = field(default_factory=list)
    stage_index: int = 0
    stage_progress: int = 0
    stage_target: int = STAGE_TARGET
    completed: bool = False
    branch_outcome: str = ""

    def current_stage(self) -> str:
        if 0 <= self.stage_index < len(self.stages):
            return self.stages[self.stage_index]
        return ""

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ArcProgress:
    changed: bool
    stage_advanced: bool = False
    completed: bool = False
    arc: StoryArc | None = None


def fallback_story_arc(day: int = 1) -> StoryArc:
    return StoryArc(
        id=f"arc_{day}_fallback",
        title="The Shrine Lantern",
        stages=[
            "Strange lights flicker near the forest shrine.",
            "Townsfolk argue over who lit the lantern.",
            "The watch and the shrine keepers demand answers.",
        ],
        branches=[
            "The town relights the lantern together and the square celebrates.",
            "The lantern goes dark and its secret stays buried in the forest.",
        ],
    )


def normalize_story_arc(draft: Any, *, day: int) -> StoryArc:
    if not isinstance(draft, dict):
        return fallback_story_arc(day)
    stages = [str(s).strip()[:140] for s in draft.get("stages") or [] if str(s or "").strip()][:5]
    if len(stages) < 3:
        return fallback_story_arc(day)
    branches = [str(b).strip()[:160] for b in draft.get("branches") or [] if str(b or "").strip()][:2]
    if len(branches) < 2:
        branches = fallback_story_arc(day).branches
    return StoryArc(
        id=str(draft.get("id") or f"arc_{day}_{int(time.time() * 1000)}"),
        title=str(draft.get("title") or "Untitled Arc").strip()[:60] or "Untitled Arc",
        stages=stages,
        branches=branches,
    )


def story_arc_from_dict(raw: Any, day: int) -> StoryArc | None:
    if not isinstance(raw, dict):
        return None
    arc = normalize_story_arc(raw, day=day)
    try:
        arc.stage_index = int(clamp(int(raw.get("stage_index") or 0), 0, len(arc.stages)))
        arc.stage_progress = max(0, int(raw.get("stage_progress") or 0))
    except (TypeError, ValueError):
        return arc
    arc.completed = bool(raw.get("completed")) or arc.stage_index >= len(arc.stages)
    arc.branch_outcome = str(raw.get("branch_outcome") or "")[:160]
    return arc


def set_story_arc(world: "World", draft: Any) -> StoryArc:
    world.story_arc = normalize_story_arc(draft, day=world.day)
    touch(world)
    return world.story_arc


def progress_story_arc(world: "World", objective_type: str) -> ArcProgress:
    arc = world.story_arc
    if arc is None or arc.completed:
        return ArcProgress(changed=False, arc=arc)
    arc.stage_progress += 1
    advanced = False
    if arc.stage_progress >= arc.stage_target:
        arc.stage_index += 1
        arc.stage_progress = 0
        advanced = True
    if arc.stage_index >= len(arc.stages):
        arc.completed = True
        social = objective_type.startswith("talk")
        arc.branch_outcome = arc.branches[0 if social else -1] if arc.branches else ""
        push_town_event(world, f"Story arc resolved: {arc.title}.")
    touch(world)
    return ArcProgress(changed=True, stage_advanced=advanced, completed=arc.completed, arc=arc)


# -- derived view -----------------------------------------------------------


def derived_view(world: "World") -> dict[str, Any]:
    """Social-economic view for snapshots, cached until something volatile changes.

    Each call returns a fresh top-level dict; nested values are shared with the
    cache and must be treated as read-only.
    """
    key = (world.day, world.weather, world.rumor, world.town_mission.id, world.social_revision)
    cached = world.derived_cache
    if cached is not None and cached[0] == key:
        return dict(cached[1])
    view = {
        "rumor": world.rumor,
        "rumor_heat": rumor_hotspots(world.rumor_heat),
        "factions": world.factions.as_dict(),
        "world_events": [event.as_dict() for event in world.world_events],
        "economy": world.economy.as_dict(),
        "story_arc": world.story_arc.as_dict() if world.story_arc else None,
        "town_mission": world.town_mission.as_dict(),
        "routine_nudges": {role: nudge.as_dict() for role, nudge in world.routine_nudges.items()},
    }
    world.derived_cache = (key, view)
    return dict(view)
