"""Simulation core for the lantern town."""

from .engine import TickReport, TownEngine, morning_summary
from .generator import LineGenerator
from .memory import InMemoryMemoryStore, MemoryRecord, MemoryStore
from .persistence import WorldStateStore, restore_world, snapshot_world
from .world import World, create_world

__all__ = [
    "TownEngine",
    "TickReport",
    "morning_summary",
    "LineGenerator",
    "MemoryStore",
    "MemoryRecord",
    "InMemoryMemoryStore",
    "WorldStateStore",
    "snapshot_world",
    "restore_world",
    "World",
    "create_world",
]
