"""Role templates and the pure routine resolver."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from hashlib import sha256
from typing import TYPE_CHECKING, Any, Mapping

from .layout import AREA_NAMES, ROLE_NAMES, clamp

if TYPE_CHECKING:
    from .world import Character


OUTING_START_MINUTES = 6 * 60
OUTING_END_MINUTES = 23 * 60
NUDGE_SHIFT_LIMIT = 90
NUDGE_VENUE_BONUS = 3


def _hash_int(value: str) -> int:
    return int(sha256(value.encode("utf-8")).hexdigest()[:8], 16)


@dataclass(frozen=True)
class RoleTemplate:
    home_area: str
    work_area: str
    work_start: int
    work_end: int
    style: str
    venues: tuple[tuple[str, int], ...]


ROLE_TEMPLATES: dict[str, RoleTemplate] = {
    "Businessman": RoleTemplate("Housing", "Market Street", 9 * 60, 17 * 60, "wander", (("Town Square", 3), ("Market Street", 2), ("Dock", 1))),
    "Politician": RoleTemplate("Housing", "Town Square", 9 * 60, 16 * 60, "patrol", (("Market Street", 2), ("Town Square", 2), ("Sanctum", 1))),
    "Fisherman": RoleTemplate("Dock", "Dock", 6 * 60, 14 * 60, "stationary", (("Market Street", 2), ("Town Square", 2), ("Dock", 1))),
    "Shop Owner": RoleTemplate("Housing", "Market Street", 8 * 60, 18 * 60, "stationary", (("Town Square", 2), ("Housing", 2))),
    "Artist": RoleTemplate("Housing", "Housing", 10 * 60, 16 * 60, "wander", (("Forest", 2), ("Town Square", 2), ("Dock", 1))),
    "Religious Devotee": RoleTemplate("Sanctum", "Sanctum", 6 * 60, 14 * 60, "stationary", (("Sanctum", 3), ("Town Square", 1), ("Forest", 1))),
    "Cultist": RoleTemplate("Forest", "Forest", 12 * 60, 20 * 60, "wander", (("Forest", 3), ("Dock", 1))),
    "Town Guard": RoleTemplate("Housing", "Town Square", 8 * 60, 20 * 60, "patrol", (("Market Street", 2), ("Dock", 1))),
    "Herbalist": RoleTemplate("Housing", "Forest", 7 * 60, 15 * 60, "wander", (("Market Street", 2), ("Sanctum", 1))),
    "Blacksmith": RoleTemplate("Housing", "Housing", 8 * 60, 17 * 60, "stationary", (("Town Square", 2), ("Market Street", 1))),
}
DEFAULT_TEMPLATE = RoleTemplate("Housing", "Town Square", 9 * 60, 17 * 60, "wander", (("Town Square", 1),))


@dataclass(frozen=True)
class CharacterProfile:
    home_area: str
    work_area: str
    work_start: int
    work_end: int
    style: str
    venues: tuple[tuple[str, int], ...]
    holiday_weekday: int

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["venues"] = [list(item) for item in self.venues]
        return out


@dataclass(frozen=True)
class RoutineState:
    phase: str
    venue_type: str
    area_name: str
    is_holiday: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RoutineNudge:
    role: str
    shift_minutes: int = 0
    venue: str | None = None
    note: str = ""

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_profile(character_id: str, role: str) -> CharacterProfile:
    template = ROLE_TEMPLATES.get(role, DEFAULT_TEMPLATE)
    return CharacterProfile(
        home_area=template.home_area,
        work_area=template.work_area,
        work_start=template.work_start,
        work_end=template.work_end,
        style=template.style,
        venues=template.venues,
        holiday_weekday=_hash_int(f"holiday:{character_id}") % 7,
    )


def normalize_nudges(draft: Any) -> dict[str, RoutineNudge]:
    """Validate a generated nudge list; unknown roles and venues are dropped."""
    rows: list[Any]
    if isinstance(draft, dict):
        rows = draft.get("nudges") if isinstance(draft.get("nudges"), list) else [
            {"role": role, **cfg} for role, cfg in draft.items() if isinstance(cfg, dict)
        ]
    elif isinstance(draft, list):
        rows = draft
    else:
        rows = []
    out: dict[str, RoutineNudge] = {}
    for row in rows:
        if not isinstance(row, dict):
            continue
        role = str(row.get("role") or "").strip()
        if role not in ROLE_NAMES or role in out:
            continue
        try:
            shift = int(clamp(float(row.get("shift_minutes") or 0), -NUDGE_SHIFT_LIMIT, NUDGE_SHIFT_LIMIT))
        except (TypeError, ValueError):
            shift = 0
        venue = str(row.get("venue") or "").strip()
        out[role] = RoutineNudge(
            role=role,
            shift_minutes=shift,
            venue=venue if venue in AREA_NAMES else None,
            note=str(row.get("note") or "")[:120],
        )
    return out


def _pick_venue(character_id: str, day: int, hour: int, venues: tuple[tuple[str, int], ...], bonus_venue: str | None) -> str:
    weighted = [(area, max(0, int(weight))) for area, weight in venues]
    if bonus_venue:
        found = False
        for idx, (area, weight) in enumerate(weighted):
            if area == bonus_venue:
                weighted[idx] = (area, weight + NUDGE_VENUE_BONUS)
                found = True
        if not found:
            weighted.append((bonus_venue, NUDGE_VENUE_BONUS))
    total = sum(weight for _, weight in weighted)
    if total <= 0:
        return weighted[0][0] if weighted else "Town Square"
    roll = _hash_int(f"venue:{character_id}:{day}:{hour}") % total
    for area, weight in weighted:
        if roll < weight:
            return area
        roll -= weight
    return weighted[-1][0]


def resolve_routine(
    character: "Character",
    day: int,
    minute: int,
    nudges: Mapping[str, RoutineNudge] | None = None,
) -> RoutineState:
    profile = character.profile
    nudge = (nudges or {}).get(character.role)
    shift = nudge.shift_minutes if nudge else 0
    holiday = (max(1, int(day)) - 1) % 7 == profile.holiday_weekday
    work_start = int(clamp(profile.work_start + shift, 0, 24 * 60))
    work_end = int(clamp(profile.work_end + shift, 0, 24 * 60))
    outing_open = OUTING_START_MINUTES <= minute < OUTING_END_MINUTES

    if not holiday and work_start <= minute < work_end:
        return RoutineState(phase="work", venue_type="work", area_name=profile.work_area)
    if outing_open and (holiday or minute >= work_end):
        venue = _pick_venue(character.id, day, minute // 60, profile.venues, nudge.venue if nudge else None)
        return RoutineState(
            phase="holiday_outing" if holiday else "after_work",
            venue_type="venue",
            area_name=venue,
            is_holiday=holiday,
        )
    return RoutineState(
        phase="holiday_rest" if holiday else "rest",
        venue_type="home",
        area_name=profile.home_area,
        is_holiday=holiday,
    )
