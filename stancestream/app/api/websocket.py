"""
WebSocket endpoint and connection manager.

Clients connect to ``/ws/debate`` to receive live debate events. By
default a connection receives every event; sending
``{"type": "subscribe", "debate_id": ...}`` narrows it to the listed
debates (events without a debate id, such as ``metrics_updated``, are
always delivered). The manager is the application's push channel: the
scheduler calls ``broadcast`` and never waits on slow clients for longer
than the send timeout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Dict, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger("debate_websocket")


class ConnectionInfo:
    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.subscriptions: Set[str] = set()
        self.send_lock = asyncio.Lock()


class ConnectionManager:
    """Manage active WebSocket connections."""

    def __init__(self) -> None:
        self.active_connections: Dict[WebSocket, ConnectionInfo] = {}

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections[websocket] = ConnectionInfo(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.pop(websocket, None)

    def subscribe(self, websocket: WebSocket, debate_id: str, replace: bool = False) -> None:
        info = self.active_connections.get(websocket)
        if not info:
            return
        if replace:
            info.subscriptions = {debate_id}
        else:
            info.subscriptions.add(debate_id)

    async def broadcast(self, event: Dict[str, Any]) -> None:
        """Send a JSON-serialisable event to every interested connection."""
        debate_id = event.get("debate_id")
        try:
            send_timeout = float(os.getenv("WS_SEND_TIMEOUT_SEC", "1.5") or 1.5)
        except ValueError:
            send_timeout = 1.5
        send_timeout = max(0.25, send_timeout)

        targets = [
            (connection, info)
            for connection, info in list(self.active_connections.items())
            if not debate_id or not info.subscriptions or debate_id in info.subscriptions
        ]
        if not targets:
            return

        async def _send_one(connection: WebSocket, info: ConnectionInfo) -> bool:
            try:
                async with info.send_lock:
                    await asyncio.wait_for(connection.send_json(event), timeout=send_timeout)
                return True
            except Exception:
                logger.debug("Dropping websocket after failed send", exc_info=True)
                return False

        results = await asyncio.gather(*[_send_one(connection, info) for connection, info in targets])
        for (connection, _), ok in zip(targets, results):
            if not ok:
                self.disconnect(connection)


router = APIRouter()
manager = ConnectionManager()


@router.websocket("/ws/debate")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Stream live debate events to the connected client."""
    await manager.connect(websocket)
    await websocket.send_json({"type": "welcome", "message": "Connected to debate stream"})
    try:
        while True:
            raw = await websocket.receive_text()
            if not raw:
                continue
            try:
                data = json.loads(raw)
            except ValueError:
                continue
            if not isinstance(data, dict):
                continue
            if data.get("type") == "subscribe":
                debate_id = str(data.get("debate_id") or "").strip()
                if debate_id:
                    manager.subscribe(websocket, debate_id, replace=bool(data.get("replace")))
            elif data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        manager.disconnect(websocket)
