"""Static town layout: bounds, named areas and the seeded population."""

from __future__ import annotations

from dataclasses import dataclass
import math
import re


WORLD_WIDTH = 1600
WORLD_HEIGHT = 1200
WEATHER_STATES = ("clear", "rain")


@dataclass(frozen=True)
class Area:
    name: str
    x: int
    y: int
    w: int
    h: int

    def contains(self, x: float, y: float) -> bool:
        return self.x <= x <= self.x + self.w and self.y <= y <= self.y + self.h

    def center(self) -> tuple[float, float]:
        return (self.x + self.w / 2, self.y + self.h / 2)


AREAS: tuple[Area, ...] = (
    Area("Town Square", 560, 460, 480, 280),
    Area("Market Street", 220, 240, 280, 420),
    Area("Dock", 1180, 760, 340, 300),
    Area("Sanctum", 1060, 160, 280, 220),
    Area("Forest", 120, 760, 360, 320),
    Area("Housing", 520, 120, 420, 240),
)
AREA_NAMES: tuple[str, ...] = tuple(area.name for area in AREAS)


@dataclass(frozen=True)
class CharacterSeed:
    id: str
    name: str
    role: str
    x: float
    y: float
    area: str
    traits: tuple[str, ...]


NPC_SEEDS: tuple[CharacterSeed, ...] = (
    CharacterSeed("npc_businessman", "Alden", "Businessman", 320, 350, "Market Street", ("greedy", "charming", "calculating")),
    CharacterSeed("npc_politician", "Maris", "Politician", 700, 510, "Town Square", ("persuasive", "ambitious", "guarded")),
    CharacterSeed("npc_fisherman", "Bram", "Fisherman", 1310, 910, "Dock", ("patient", "superstitious", "blunt")),
    CharacterSeed("npc_shop_owner", "Tessa", "Shop Owner", 370, 500, "Market Street", ("friendly", "observant", "thrifty")),
    CharacterSeed("npc_artist", "Ivo", "Artist", 650, 240, "Housing", ("dreamy", "curious", "dramatic")),
    CharacterSeed("npc_devotee", "Sister Elen", "Religious Devotee", 1170, 240, "Sanctum", ("devout", "kind", "strict")),
    CharacterSeed("npc_cultist", "Crow", "Cultist", 260, 980, "Forest", ("secretive", "zealous", "intense")),
    CharacterSeed("npc_guard", "Rook", "Town Guard", 840, 560, "Town Square", ("vigilant", "loyal", "stern")),
    CharacterSeed("npc_herbalist", "Mira", "Herbalist", 210, 860, "Forest", ("gentle", "wise", "curious")),
    CharacterSeed("npc_blacksmith", "Doran", "Blacksmith", 560, 300, "Housing", ("stoic", "hardworking", "proud")),
)
ROLE_NAMES: tuple[str, ...] = tuple(dict.fromkeys(seed.role for seed in NPC_SEEDS))

_MATCH_STRIP_RE = re.compile(r"[^a-z0-9\s]")
_MATCH_SPACE_RE = re.compile(r"\s+")


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def distance(ax: float, ay: float, bx: float, by: float) -> float:
    return math.hypot(ax - bx, ay - by)


def clean_for_match(value: object) -> str:
    text = _MATCH_STRIP_RE.sub("", str(value or "").strip().lower())
    return _MATCH_SPACE_RE.sub(" ", text).strip()


def area_at(x: float, y: float) -> Area:
    for area in AREAS:
        if area.contains(x, y):
            return area
    return AREAS[0]


def find_area(name: str | None) -> Area | None:
    for area in AREAS:
        if area.name == name:
            return area
    return None


def find_area_like(raw: str | None) -> Area | None:
    needle = clean_for_match(raw)
    if not needle:
        return None
    for area in AREAS:
        if clean_for_match(area.name) == needle:
            return area
    for area in AREAS:
        hay = clean_for_match(area.name)
        if needle in hay or hay in needle:
            return area
    return None


def area_mention(text: str | None) -> str | None:
    normalized = clean_for_match(text)
    if not normalized:
        return None
    for area in AREAS:
        if clean_for_match(area.name) in normalized:
            return area.name
    return None
