"""WebSocket connection registry that carries engine pushes to players."""

from __future__ import annotations

from typing import Any
import asyncio
import logging

from fastapi import WebSocket

from packages.lantern_core.sim.dialogue import EventSink


logger = logging.getLogger("lantern_api.push")


class ConnectionManager(EventSink):
    def __init__(self) -> None:
        self._connections: dict[str, WebSocket] = {}
        self._send_locks: dict[str, asyncio.Lock] = {}

    def register(self, session_id: str, websocket: WebSocket) -> None:
        self._connections[session_id] = websocket
        self._send_locks[session_id] = asyncio.Lock()
        logger.info("[PUSH] connected %s (%s open)", session_id, len(self._connections))

    def unregister(self, session_id: str) -> None:
        self._connections.pop(session_id, None)
        self._send_locks.pop(session_id, None)
        logger.info("[PUSH] disconnected %s (%s open)", session_id, len(self._connections))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def to_session(self, session_id: str, payload: dict[str, Any]) -> None:
        websocket = self._connections.get(session_id)
        lock = self._send_locks.get(session_id)
        if websocket is None or lock is None:
            return
        try:
            async with lock:
                await websocket.send_json(payload)
        except Exception as exc:
            # A dead socket is cleaned up by its receive loop.
            logger.warning("[PUSH] send to %s failed: %s", session_id, exc)

    async def broadcast(self, payload: dict[str, Any]) -> None:
        for session_id in list(self._connections):
            await self.to_session(session_id, payload)
