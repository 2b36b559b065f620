"""WebSocket command surface: one socket per player session."""

from __future__ import annotations

from typing import Any, Literal, Optional
import json
import logging
import os
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from packages.lantern_core.sim.engine import TownEngine

from ..middleware.rate_limit import InMemoryRateLimiter
from ..services.runtime import connection_manager, get_engine


logger = logging.getLogger("lantern_api.play")
router = APIRouter(tags=["play"])

COMMAND_WINDOW_SECONDS = 10


def _command_limit() -> int:
    try:
        return max(1, int(os.environ.get("LANTERN_COMMAND_RATE_LIMIT", "30")))
    except ValueError:
        return 30


_limiter = InMemoryRateLimiter(max_requests=_command_limit(), window_seconds=COMMAND_WINDOW_SECONDS)


def reset_rate_limiter_for_tests(max_requests: Optional[int] = None) -> None:
    global _limiter
    _limiter = InMemoryRateLimiter(
        max_requests=max_requests if max_requests is not None else _command_limit(),
        window_seconds=COMMAND_WINDOW_SECONDS,
    )


class MoveCommand(BaseModel):
    type: Literal["move"]
    x: float
    y: float


class SleepCommand(BaseModel):
    type: Literal["sleep"]
    sleeping: bool


class ChatCommand(BaseModel):
    type: Literal["chat"]
    text: str = Field(min_length=1, max_length=1000)


class InteractCommand(BaseModel):
    type: Literal["interact"]
    npc_id: str = Field(min_length=1, max_length=64)


class FarmCommand(BaseModel):
    type: Literal["farm"]
    plot_id: int = Field(ge=0, le=64)
    action: str = Field(min_length=1, max_length=16)
    crop_type: Optional[str] = Field(default=None, max_length=32)


_COMMAND_MODELS: dict[str, type[BaseModel]] = {
    "move": MoveCommand,
    "sleep": SleepCommand,
    "chat": ChatCommand,
    "interact": InteractCommand,
    "farm": FarmCommand,
}


def parse_client_message(raw: str) -> BaseModel:
    """Decode one client frame into a command model. Raises ``ValueError`` with a player-facing message."""
    try:
        payload = json.loads(raw)
    except ValueError:
        raise ValueError("Invalid message: expected JSON.") from None
    if not isinstance(payload, dict):
        raise ValueError("Invalid message: expected an object.")
    model = _COMMAND_MODELS.get(str(payload.get("type") or ""))
    if model is None:
        raise ValueError(f"Unknown command type: {payload.get('type')!r}")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or "payload"
        raise ValueError(f"Invalid {payload['type']} command: {field} {first.get('msg', 'is invalid')}.") from None


async def dispatch_command(engine: TownEngine, session_id: str, command: BaseModel) -> None:
    if isinstance(command, MoveCommand):
        await engine.handle_move(session_id, command.x, command.y)
    elif isinstance(command, SleepCommand):
        await engine.handle_sleep(session_id, command.sleeping)
    elif isinstance(command, ChatCommand):
        await engine.handle_chat(session_id, command.text)
    elif isinstance(command, InteractCommand):
        await engine.handle_interact(session_id, command.npc_id)
    elif isinstance(command, FarmCommand):
        await engine.handle_farm_action(session_id, command.plot_id, command.action, command.crop_type)


async def _send_feedback(websocket: WebSocket, message: str) -> None:
    await websocket.send_json({"type": "feedback", "ok": False, "message": message})


@router.websocket("/ws/play")
async def play_socket(websocket: WebSocket) -> None:
    params = websocket.query_params
    engine = get_engine()
    manager = connection_manager()
    await websocket.accept()
    session_id = uuid.uuid4().hex[:12]
    manager.register(session_id, websocket)
    player: Any = None
    try:
        player = await engine.connect(
            session_id,
            player_id=params.get("player_id"),
            name=params.get("name"),
            gender=params.get("gender"),
        )
        while True:
            raw = await websocket.receive_text()
            try:
                command = parse_client_message(raw)
            except ValueError as exc:
                await _send_feedback(websocket, str(exc))
                continue
            if not _limiter.check(player.player_id):
                await _send_feedback(websocket, "Slow down: too many commands.")
                continue
            try:
                await dispatch_command(engine, session_id, command)
            except Exception as exc:
                logger.exception("[PUSH] command %s from %s failed: %s", command.type, player.player_id, exc)
                await _send_feedback(websocket, "Something went wrong handling that command.")
    except WebSocketDisconnect:
        pass
    finally:
        manager.unregister(session_id)
        await engine.disconnect(session_id)
        if player is not None and player.is_guest:
            _limiter.forget(player.player_id)
