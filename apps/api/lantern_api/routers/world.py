"""REST view of the town and runtime control."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, HTTPException

from packages.lantern_core.sim.engine import morning_summary

from ..services.runtime import (
    get_engine,
    get_runtime,
    start_town_runtime,
    stop_town_runtime,
    town_runtime_status,
)


router = APIRouter(prefix="/api/v1/world", tags=["world"])


@router.get("")
def get_world() -> dict:
    return get_engine().snapshot_for(None)


@router.get("/players/{player_id}")
def get_player_view(player_id: str) -> dict:
    engine = get_engine()
    player = engine.world.player_by_id(player_id)
    if player is None:
        raise HTTPException(status_code=404, detail=f"Player not online: {player_id}")
    return engine.snapshot_for(player)


@router.get("/morning")
def get_morning_summary() -> dict:
    world = get_engine().world
    return {"day": world.day, "title": f"Morning Ledger - Day {world.day}", "text": morning_summary(world)}


@router.post("/tick")
async def post_tick() -> dict:
    report = await get_runtime().tick_once()
    engine = get_engine()
    return {"ok": True, "report": asdict(report), "day": engine.world.day, "time_label": engine.world.time_label()}


@router.post("/autosave")
async def post_autosave() -> dict:
    engine = get_engine()
    saved = await engine.autosave_async()
    return {"ok": saved, "last_autosave_at": engine.last_autosave_at, "error": engine.last_autosave_error}


@router.get("/runtime/status")
def get_runtime_status() -> dict:
    return town_runtime_status()


@router.post("/runtime/start")
async def post_runtime_start() -> dict:
    started = start_town_runtime()
    return {"ok": True, "started": started, "status": town_runtime_status()}


@router.post("/runtime/stop")
async def post_runtime_stop() -> dict:
    stopped = await stop_town_runtime()
    return {"ok": True, "stopped": stopped, "status": town_runtime_status()}
