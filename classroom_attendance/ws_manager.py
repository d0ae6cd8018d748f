from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import WebSocket

from .logger import setup_logger


class ConnectionManager:
    """Tracks status-socket clients and fans events out to them.

    Every message has the shape ``{"type": ..., "payload": ...}``. A client
    whose send fails is dropped.
    """

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.add(websocket)
        self.logger.info("Status client connected (%d open)", len(self._clients))

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(websocket)
        self.logger.info("Status client disconnected (%d open)", len(self._clients))

    def count(self) -> int:
        return len(self._clients)

    async def publish(self, event_type: str, payload: Optional[dict[str, Any]] = None, stamp: bool = False) -> None:
        body = dict(payload or {})
        if stamp:
            body["timestamp"] = datetime.now(timezone.utc).isoformat()
        message = {"type": event_type, "payload": body}

        async with self._lock:
            targets = list(self._clients)
        stale: list[WebSocket] = []
        for ws in targets:
            try:
                await ws.send_json(message)
            except Exception:
                stale.append(ws)
        for ws in stale:
            await self.disconnect(ws)
