"""WebSocket endpoints for real-time updates."""

import asyncio
import logging
from typing import List, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from convert_engine.core.events import EventKind, EventPayload

logger = logging.getLogger(__name__)
router = APIRouter()


class ConnectionManager:
    """Manage WebSocket connections."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self._pending: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket):
        # Registered before the handshake; broadcast skips it until it is connected
        self.active_connections.append(websocket)
        try:
            await websocket.accept()
        except Exception:
            self.disconnect(websocket)
            raise
        logger.info("Client connected. Total: %d", len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info("Client disconnected. Total: %d", len(self.active_connections))

    async def broadcast(self, message: dict):
        """Send message to all connected clients."""
        disconnected = []
        for connection in list(self.active_connections):
            if connection.application_state != WebSocketState.CONNECTED:
                continue
            try:
                await connection.send_json(message)
            except Exception:
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)

    def event_listener(self, kind: EventKind, payload: EventPayload) -> None:
        """Event bus hook: relay every job event to connected clients."""
        if not self.active_connections:
            return

        message = {"type": kind.value, "payload": payload.to_dict()}
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Cannot broadcast %s: no running event loop", kind.value)
            return

        task = loop.create_task(self.broadcast(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    manager: ConnectionManager = websocket.app.state.connections
    await manager.connect(websocket)

    try:
        while True:
            # Keep connection alive; clients may send pings
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
