"""Background tick and autosave loops for the single town engine."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional
import asyncio
import logging
import os
import uuid

from packages.lantern_core.sim.engine import TickReport, TownEngine
from packages.lantern_core.sim.generator import LineGenerator
from packages.lantern_core.sim.persistence import WorldStateStore
from packages.lantern_core.sim.world import create_world

from ..storage.llm_control import get_policy as get_llm_policy
from ..storage.llm_control import insert_call_log
from ..storage.memories import memory_store
from .push import ConnectionManager


logger = logging.getLogger("lantern_api.runtime")


class RuntimeBusyError(RuntimeError):
    """A manual tick was requested while the background loop owns the clock."""


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _float_env(name: str, default: float, *, low: float, high: float) -> float:
    raw = str(os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("[RUNTIME] ignoring invalid %s=%r", name, raw)
        return default
    return max(low, min(high, value))


class TownRuntime:
    def __init__(self, engine: TownEngine, *, tick_seconds: float, autosave_seconds: float) -> None:
        self.engine = engine
        self.tick_seconds = tick_seconds
        self.autosave_seconds = autosave_seconds
        self._tick_task: asyncio.Task[Any] | None = None
        self._autosave_task: asyncio.Task[Any] | None = None
        self._last_loop_started_at: str | None = None
        self._last_loop_finished_at: str | None = None
        self._last_error: str | None = None
        self._last_report: TickReport | None = None
        self._instance_id = f"runtime-{uuid.uuid4().hex[:12]}"

    @property
    def running(self) -> bool:
        return bool(self._tick_task and not self._tick_task.done())

    def start(self) -> bool:
        if self.running:
            return False
        self._tick_task = asyncio.ensure_future(self._tick_loop())
        self._autosave_task = asyncio.ensure_future(self._autosave_loop())
        logger.info(
            "[RUNTIME] Town runtime started (tick=%.2fs autosave=%.0fs)",
            self.tick_seconds,
            self.autosave_seconds,
        )
        return True

    async def stop(self) -> bool:
        tasks = [t for t in (self._tick_task, self._autosave_task) if t is not None]
        if not tasks:
            return False
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tick_task = None
        self._autosave_task = None
        logger.info("[RUNTIME] Town runtime stopped")
        return True

    def status(self) -> dict[str, object]:
        report = self._last_report
        return {
            "running": self.running,
            "instance_id": self._instance_id,
            "tick_seconds": self.tick_seconds,
            "autosave_seconds": self.autosave_seconds,
            "tick": self.engine.world.tick_count,
            "paused": self.engine.paused,
            "last_loop_started_at": self._last_loop_started_at,
            "last_loop_finished_at": self._last_loop_finished_at,
            "last_error": self._last_error,
            "last_report": asdict(report) if report else None,
            "last_autosave_at": self.engine.last_autosave_at,
            "last_autosave_error": self.engine.last_autosave_error,
        }

    async def tick_once(self) -> TickReport:
        if self.running:
            raise RuntimeBusyError("Town runtime is running; stop it before ticking manually")
        report = await self.engine.tick()
        self._last_report = report
        return report

    async def _tick_loop(self) -> None:
        while True:
            self._last_loop_started_at = _utc_now_iso()
            try:
                self._last_report = await self.engine.tick()
                self._last_error = None
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._last_error = f"{exc.__class__.__name__}: {exc}"
                logger.exception("[RUNTIME] Tick loop error: %s", exc)
            self._last_loop_finished_at = _utc_now_iso()
            await asyncio.sleep(self.tick_seconds)

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_seconds)
            try:
                await self.engine.autosave_async()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("[AUTOSAVE] autosave cycle failed: %s", exc)


_MANAGER = ConnectionManager()
_RUNTIME: Optional[TownRuntime] = None


def connection_manager() -> ConnectionManager:
    return _MANAGER


def build_engine() -> TownEngine:
    generator = LineGenerator(policy_lookup=get_llm_policy, log_sink=insert_call_log)
    engine = TownEngine(create_world(), memory_store(), generator, _MANAGER, state_store=WorldStateStore())
    engine.restore()
    return engine


def configure_runtime(engine: Optional[TownEngine] = None) -> TownRuntime:
    global _RUNTIME
    _RUNTIME = TownRuntime(
        engine or build_engine(),
        tick_seconds=_float_env("LANTERN_TICK_SECONDS", 1.0, low=0.05, high=60.0),
        autosave_seconds=_float_env("LANTERN_AUTOSAVE_SECONDS", 15.0, low=1.0, high=3600.0),
    )
    return _RUNTIME


def get_runtime() -> TownRuntime:
    if _RUNTIME is None:
        return configure_runtime()
    return _RUNTIME


def get_engine() -> TownEngine:
    return get_runtime().engine


def start_town_runtime() -> bool:
    return get_runtime().start()


async def stop_town_runtime() -> bool:
    if _RUNTIME is None:
        return False
    return await _RUNTIME.stop()


def town_runtime_status() -> dict[str, object]:
    return get_runtime().status()


async def shutdown_runtime() -> None:
    """Stop the loops, settle background work and write a final snapshot."""
    global _RUNTIME
    runtime = _RUNTIME
    if runtime is None:
        return
    await runtime.stop()
    await runtime.engine.shutdown()
    runtime.engine.autosave()
    _RUNTIME = None
