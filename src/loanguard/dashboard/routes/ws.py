"""WebSocket hub for real-time JSON pushes to dashboard clients."""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

log = structlog.get_logger(__name__)

router = APIRouter()


class DashboardHub:
    """Tracks WebSocket connections per user and pushes JSON messages to them."""

    def __init__(self) -> None:
        self.connections: dict[str, list[WebSocket]] = {}

    @property
    def connected_users(self) -> list[str]:
        return [user_id for user_id, sockets in self.connections.items() if sockets]

    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.connections.values())

    async def connect(self, ws: WebSocket, user_id: str) -> None:
        """Accept a WebSocket connection and register it under ``user_id``."""
        await ws.accept()
        self.connections.setdefault(user_id, []).append(ws)
        log.info("dashboard_ws_connected", user_id=user_id, total=self.connection_count())

    def disconnect(self, ws: WebSocket, user_id: str) -> None:
        """Remove a WebSocket connection."""
        sockets = self.connections.get(user_id, [])
        if ws in sockets:
            sockets.remove(ws)
        if not sockets:
            self.connections.pop(user_id, None)
        log.info("dashboard_ws_disconnected", user_id=user_id, total=self.connection_count())

    async def send_to_user(self, user_id: str, message: dict[str, Any]) -> int:
        """Send a JSON message to every socket of one user, dropping broken ones.

        Returns the number of sockets that received the message.
        """
        payload = json.dumps(message)
        delivered = 0
        for ws in list(self.connections.get(user_id, [])):
            try:
                await ws.send_text(payload)
                delivered += 1
            except Exception:
                self.disconnect(ws, user_id)
                log.warning("dashboard_ws_send_error", user_id=user_id)
        return delivered

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send a JSON message to every connected client."""
        for user_id in self.connected_users:
            await self.send_to_user(user_id, message)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint: initial price_update on connect, pushes afterwards."""
    ws_hub: DashboardHub = websocket.app.state.hub
    user_id = websocket.query_params.get("user_id") or websocket.app.state.default_user_id
    if not user_id:
        await websocket.close(code=1008)
        return
    await ws_hub.connect(websocket, user_id)

    aggregator = getattr(websocket.app.state, "aggregator", None)
    if aggregator is not None:
        try:
            await websocket.send_text(json.dumps(await aggregator.build_price_update(user_id)))
        except Exception:
            log.warning("dashboard_ws_initial_update_failed", user_id=user_id, exc_info=True)

    try:
        while True:
            # Consume messages to keep connection alive
            await websocket.receive_text()
    except WebSocketDisconnect:
        ws_hub.disconnect(websocket, user_id)
