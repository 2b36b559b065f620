"""FastAPI entrypoint for Lantern Town."""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routers.llm import router as llm_router
from .routers.play import router as play_router
from .routers.world import router as world_router
from .services.runtime import (
    RuntimeBusyError,
    configure_runtime,
    connection_manager,
    get_engine,
    shutdown_runtime,
    start_town_runtime,
)
from .storage.llm_control import init_db as init_llm_db
from .storage.memories import init_db as init_memories_db
from .storage.memories import ping as ping_memories

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("lantern_api")


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}

app = FastAPI(title="Lantern Town API", version="0.1.0")

_cors_origins = [o.strip() for o in os.environ.get("LANTERN_CORS_ORIGINS", "*").split(",")]
_cors_allow_credentials = "*" not in _cors_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(world_router)
app.include_router(play_router)
app.include_router(llm_router)


@app.exception_handler(RuntimeBusyError)
async def _runtime_busy_handler(request: Request, exc: RuntimeBusyError):
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc)},
        headers={"Retry-After": "2"},
    )


@app.on_event("startup")
async def startup() -> None:
    logger.info("[STARTUP] Lantern Town API starting up at %s", datetime.now(timezone.utc).isoformat())
    try:
        logger.info("[STARTUP] Initializing memories database...")
        init_memories_db()
        logger.info("[STARTUP] Memories database initialized successfully")
    except Exception as e:
        logger.error("[STARTUP] Failed to initialize memories database: %s", e)
        raise

    try:
        logger.info("[STARTUP] Initializing llm control database...")
        init_llm_db()
        logger.info("[STARTUP] LLM control database initialized successfully")
    except Exception as e:
        logger.error("[STARTUP] Failed to initialize llm control database: %s", e)
        raise

    runtime = configure_runtime()
    world = runtime.engine.world
    logger.info("[STARTUP] Town ready on day %s at %s", world.day, world.time_label())

    if _truthy_env("LANTERN_AUTOSTART_RUNTIME", default=False):
        start_town_runtime()
        logger.info("[STARTUP] Background town runtime autostart is enabled")

    logger.info("[STARTUP] Lantern Town API startup complete")


@app.on_event("shutdown")
async def shutdown() -> None:
    await shutdown_runtime()


@app.get("/healthz")
def healthz():
    logger.debug("[HEALTH] Health check requested")
    try:
        ping_memories()
    except Exception as exc:
        logger.warning("[HEALTH] DB ping failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "error", "detail": str(exc)})
    engine = get_engine()
    return {
        "status": "ok",
        "day": engine.world.day,
        "time_label": engine.world.time_label(),
        "connections": connection_manager().connection_count,
    }
