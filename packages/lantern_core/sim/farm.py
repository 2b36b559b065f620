"""Per-player farm plots: growth integration and sow/water/harvest actions."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Mapping
import random
import time

from .layout import clamp


HOME_ANCHOR = (680.0, 220.0)
FARM_ORIGIN = (600.0, 250.0)
FARM_COLS = 3
FARM_ROWS = 3
FARM_GAP = 42
SOW_MOISTURE = 35.0
WATER_BOOST = 55.0
MOISTURE_DECAY_PER_MINUTE = 0.2
DRY_GROWTH_FACTOR = 0.3

PLOT_STATES = ("empty", "seeded", "growing", "ready")
FARM_ACTIONS = ("sow", "water", "harvest")


@dataclass(frozen=True)
class CropSpec:
    key: str
    label: str
    grow_minutes: int
    seed_cost: int
    min_yield: int
    max_yield: int
    sell_price: int


CROPS: dict[str, CropSpec] = {
    "turnip": CropSpec("turnip", "Turnip", 180, 6, 1, 2, 8),
    "carrot": CropSpec("carrot", "Carrot", 240, 8, 1, 3, 10),
    "pumpkin": CropSpec("pumpkin", "Pumpkin", 360, 12, 1, 2, 18),
}


@dataclass
class Plot:
    id: int
    x: float
    y: float
    state: str = "empty"
    crop_type: str | None = None
    growth: float = 0.0
    moisture: float = 0.0
    watered_at: float | None = None

    def reset(self) -> None:
        self.state = "empty"
        self.crop_type = None
        self.growth = 0.0
        self.moisture = 0.0
        self.watered_at = None


def _starting_inventory() -> dict[str, int]:
    inventory = {"turnip_seed": 6, "carrot_seed": 5, "pumpkin_seed": 3}
    for crop in CROPS:
        inventory[crop] = 0
    return inventory


def _starting_plots() -> list[Plot]:
    plots: list[Plot] = []
    for row in range(FARM_ROWS):
        for col in range(FARM_COLS):
            plots.append(
                Plot(
                    id=row * FARM_COLS + col + 1,
                    x=FARM_ORIGIN[0] + col * FARM_GAP,
                    y=FARM_ORIGIN[1] + row * FARM_GAP,
                )
            )
    return plots


@dataclass
class Farm:
    owner_id: str
    home_x: float = HOME_ANCHOR[0]
    home_y: float = HOME_ANCHOR[1]
    plots: list[Plot] = field(default_factory=_starting_plots)
    inventory: dict[str, int] = field(default_factory=_starting_inventory)
    coins: int = 40

    def plot(self, plot_id: Any) -> Plot | None:
        try:
            numeric = int(plot_id)
        except (TypeError, ValueError):
            return None
        for plot in self.plots:
            if plot.id == numeric:
                return plot
        return None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, owner_id: str, raw: Any) -> "Farm":
        farm = cls(owner_id=owner_id)
        if not isinstance(raw, dict):
            return farm
        try:
            farm.home_x = float(raw.get("home_x", farm.home_x))
            farm.home_y = float(raw.get("home_y", farm.home_y))
        except (TypeError, ValueError):
            pass
        try:
            farm.coins = max(0, int(raw.get("coins", farm.coins)))
        except (TypeError, ValueError):
            pass
        inventory = raw.get("inventory")
        if isinstance(inventory, dict):
            for key in farm.inventory:
                try:
                    farm.inventory[key] = max(0, int(inventory.get(key, farm.inventory[key])))
                except (TypeError, ValueError):
                    continue
        by_id = {}
        for item in raw.get("plots") or []:
            if isinstance(item, dict) and item.get("id") is not None:
                by_id[str(item.get("id"))] = item
        for plot in farm.plots:
            item = by_id.get(str(plot.id))
            if not item:
                continue
            state = str(item.get("state") or "empty")
            crop_type = item.get("crop_type")
            if state not in PLOT_STATES or (state != "empty" and crop_type not in CROPS):
                continue
            plot.state = state
            plot.crop_type = crop_type if state != "empty" else None
            try:
                plot.growth = clamp(float(item.get("growth") or 0.0), 0.0, float(CROPS[crop_type].grow_minutes) if crop_type in CROPS else 0.0)
                plot.moisture = clamp(float(item.get("moisture") or 0.0), 0.0, 100.0)
            except (TypeError, ValueError):
                plot.reset()
                continue
            watered_at = item.get("watered_at")
            plot.watered_at = float(watered_at) if isinstance(watered_at, (int, float)) else None
        return farm


@dataclass(frozen=True)
class FarmResult:
    ok: bool
    message: str
    action: str = ""
    plot_id: int | None = None
    yield_count: int = 0
    coins_earned: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def tick_growth(farms: Mapping[str, Farm] | list[Farm], delta_minutes: float) -> None:
    delta = max(0.0, float(delta_minutes))
    items = farms.values() if isinstance(farms, Mapping) else farms
    for farm in items:
        for plot in farm.plots:
            if plot.state not in ("seeded", "growing") or plot.crop_type not in CROPS:
                continue
            crop = CROPS[plot.crop_type]
            plot.moisture = clamp(plot.moisture - delta * MOISTURE_DECAY_PER_MINUTE, 0.0, 100.0)
            factor = DRY_GROWTH_FACTOR + (plot.moisture / 100.0) * (1.0 - DRY_GROWTH_FACTOR)
            plot.growth = clamp(plot.growth + delta * factor, 0.0, float(crop.grow_minutes))
            plot.state = "ready" if plot.growth >= crop.grow_minutes else "growing"


def apply_action(
    farm: Farm | None,
    plot_id: Any,
    action: str,
    crop_type: str | None = None,
    *,
    prices: Mapping[str, int] | None = None,
    rng: random.Random | None = None,
    now_fn: Callable[[], float] = time.time,
) -> FarmResult:
    """Apply one farm verb. Never raises; failures carry a player-facing reason."""
    if farm is None:
        return FarmResult(ok=False, message="Farm not found.", action=action)
    plot = farm.plot(plot_id)
    if plot is None:
        return FarmResult(ok=False, message="Select a valid plot first.", action=action)
    if action not in FARM_ACTIONS:
        return FarmResult(ok=False, message="Unsupported farm action.", action=action, plot_id=plot.id)

    if action == "sow":
        crop = CROPS.get(str(crop_type or ""))
        if crop is None:
            return FarmResult(ok=False, message="Unknown crop type.", action=action, plot_id=plot.id)
        if plot.state != "empty":
            return FarmResult(ok=False, message="That plot is already in use.", action=action, plot_id=plot.id)
        seed_key = f"{crop.key}_seed"
        if farm.inventory.get(seed_key, 0) > 0:
            farm.inventory[seed_key] -= 1
        elif farm.coins >= crop.seed_cost:
            farm.coins -= crop.seed_cost
        else:
            return FarmResult(
                ok=False,
                message=f"Need {crop.seed_cost} coins or spare {crop.label} seed.",
                action=action,
                plot_id=plot.id,
            )
        plot.state = "seeded"
        plot.crop_type = crop.key
        plot.growth = 0.0
        plot.moisture = SOW_MOISTURE
        plot.watered_at = now_fn()
        return FarmResult(ok=True, message=f"{crop.label} seeds sown in plot {plot.id}.", action=action, plot_id=plot.id)

    if action == "water":
        if plot.state == "empty":
            return FarmResult(ok=False, message="This plot has no crop yet.", action=action, plot_id=plot.id)
        if plot.state == "ready":
            return FarmResult(ok=False, message="Crop is ready. Harvest it.", action=action, plot_id=plot.id)
        plot.moisture = clamp(plot.moisture + WATER_BOOST, 0.0, 100.0)
        plot.state = "growing"
        plot.watered_at = now_fn()
        return FarmResult(ok=True, message=f"Watered plot {plot.id}.", action=action, plot_id=plot.id)

    if plot.state != "ready" or plot.crop_type not in CROPS:
        return FarmResult(ok=False, message="Nothing ready to harvest.", action=action, plot_id=plot.id)
    crop = CROPS[plot.crop_type]
    picker = rng or random
    count = picker.randint(crop.min_yield, crop.max_yield)
    price = int((prices or {}).get(crop.key) or crop.sell_price)
    farm.inventory[crop.key] = farm.inventory.get(crop.key, 0) + count
    earned = count * price
    farm.coins += earned
    plot.reset()
    return FarmResult(
        ok=True,
        message=f"Harvested {count} {crop.label}{'s' if count > 1 else ''}.",
        action=action,
        plot_id=plot.id,
        yield_count=count,
        coins_earned=earned,
    )
