"""Town clock: minute-of-day arithmetic with days that start at dawn.

The world keeps ``day`` and ``minute`` (0..1439). A new day begins when the
clock passes 06:00, not midnight, so 01:00 still belongs to the previous day.
``Moment`` places a (day, minute) pair on a single dawn-anchored timeline so
directive and task deadlines compare correctly across midnight.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .world import World


MINUTES_PER_DAY = 24 * 60
DAY_BOUNDARY_MINUTES = 6 * 60
OVERNIGHT_SKIP_START_MINUTES = 2 * 60
OVERNIGHT_SKIP_END_MINUTES = 6 * 60
YESTERDAY_LOG_LIMIT = 24


@dataclass(frozen=True)
class Moment:
    day: int
    minute: int

    def to_absolute(self) -> int:
        day = max(1, int(self.day))
        since_dawn = (int(self.minute) - DAY_BOUNDARY_MINUTES) % MINUTES_PER_DAY
        return (day - 1) * MINUTES_PER_DAY + since_dawn

    @classmethod
    def from_absolute(cls, absolute: int) -> "Moment":
        total = max(0, int(absolute))
        day = total // MINUTES_PER_DAY + 1
        minute = (total % MINUTES_PER_DAY + DAY_BOUNDARY_MINUTES) % MINUTES_PER_DAY
        return cls(day=day, minute=minute)

    def plus(self, minutes: int) -> "Moment":
        return Moment.from_absolute(self.to_absolute() + max(0, int(minutes)))

    def reached_by(self, now: "Moment") -> bool:
        return now.to_absolute() >= self.to_absolute()

    def as_dict(self) -> dict[str, int]:
        return {"day": int(self.day), "minute": int(self.minute)}

    @classmethod
    def from_dict(cls, raw: Any) -> "Moment | None":
        if not isinstance(raw, dict):
            return None
        try:
            return cls(day=max(1, int(raw["day"])), minute=int(raw["minute"]) % MINUTES_PER_DAY)
        except Exception:
            return None


@dataclass(frozen=True)
class ClockAdvance:
    minutes: int
    day_changes: int

    @property
    def day_changed(self) -> bool:
        return self.day_changes > 0


def day_crossings(minute: int, delta: int) -> int:
    """Number of dawn boundaries passed when moving ``delta`` minutes forward."""
    start = int(minute) - DAY_BOUNDARY_MINUTES
    return (start + int(delta)) // MINUTES_PER_DAY - start // MINUTES_PER_DAY


def advance_clock(world: "World", delta_minutes: int) -> ClockAdvance:
    delta = max(0, int(delta_minutes))
    crossings = day_crossings(world.minute, delta)
    world.minute = (world.minute + delta) % MINUTES_PER_DAY
    if crossings > 0:
        world.day += crossings
        # Only the most recent day's log survives a multi-day jump.
        world.yesterday_log = list(world.town_log[-YESTERDAY_LOG_LIMIT:])
        world.town_log = []
    return ClockAdvance(minutes=delta, day_changes=crossings)


def in_overnight_window(minute: int) -> bool:
    return OVERNIGHT_SKIP_START_MINUTES <= int(minute) < OVERNIGHT_SKIP_END_MINUTES


def skip_overnight(world: "World") -> ClockAdvance | None:
    if not in_overnight_window(world.minute):
        return None
    return advance_clock(world, OVERNIGHT_SKIP_END_MINUTES - world.minute)


def time_label(minutes: int) -> str:
    total = int(minutes) % MINUTES_PER_DAY
    h24 = total // 60
    mins = total % 60
    suffix = "PM" if h24 >= 12 else "AM"
    h12 = 12 if h24 % 12 == 0 else h24 % 12
    return f"{h12}:{mins:02d} {suffix}"


def duration_label(duration_minutes: int) -> str:
    mins = max(1, int(round(duration_minutes or 0)))
    if mins % 60 == 0:
        hours = mins // 60
        return f"{hours} hour{'' if hours == 1 else 's'}"
    return f"{mins} minute{'' if mins == 1 else 's'}"
