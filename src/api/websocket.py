"""
WebSocket Connection Manager
=============================
Manages WebSocket connections and per-feature broadcasting for the task
planner UI.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

from api.types import WebSocketMessage
from planner_types import MessageType, Task, task_to_wire

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and message broadcasting."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self.feature_clients: Dict[str, List[WebSocket]] = {}  # feature_id -> [websockets]
        self.client_ids: Dict[WebSocket, str] = {}

    async def connect(self, websocket: WebSocket):
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total active: {len(self.active_connections)}")
        await self.send_to(websocket, {
            "type": MessageType.CONNECTION_ESTABLISHED.value,
            "payload": {"message": "Connected to task planner"},
        })

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        self.client_ids.pop(websocket, None)
        self._unregister(websocket)
        logger.info(f"WebSocket disconnected. Total active: {len(self.active_connections)}")

    def _unregister(self, websocket: WebSocket):
        for feature_id in list(self.feature_clients.keys()):
            if websocket in self.feature_clients[feature_id]:
                self.feature_clients[feature_id].remove(websocket)
                if not self.feature_clients[feature_id]:
                    del self.feature_clients[feature_id]

    def register_client(self, websocket: WebSocket, feature_id: str, client_id: Optional[str] = None):
        """Attach a connection to one feature; a re-registration moves it."""
        self._unregister(websocket)
        self.feature_clients.setdefault(feature_id, []).append(websocket)
        if client_id:
            self.client_ids[websocket] = client_id
        logger.info(
            f"Client {client_id or 'anonymous'} registered for feature {feature_id}. "
            f"Total clients: {len(self.feature_clients[feature_id])}"
        )

    async def send_to(self, websocket: WebSocket, message: dict):
        """Send a message to one connection."""
        if "timestamp" not in message:
            message["timestamp"] = datetime.now().isoformat()
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.error(f"Error sending message: {e}")

    async def broadcast(self, message: dict):
        """Broadcast a message to all clients registered for its feature."""
        WebSocketMessage.model_validate(message)
        feature_id = message.get("featureId")
        if not feature_id:
            logger.warning(f"Cannot broadcast {message.get('type')} without featureId")
            return

        # Inject timestamp if missing
        if "timestamp" not in message:
            message["timestamp"] = datetime.now().isoformat()

        for connection in list(self.feature_clients.get(feature_id, [])):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.error(f"Error broadcasting to feature {feature_id}: {e}")

    # =========================================================================
    # NOTIFIER INTERFACE
    # =========================================================================

    async def notify_tasks_updated(self, feature_id: str, tasks: List[Task]):
        await self.broadcast({
            "type": MessageType.TASKS_UPDATED.value,
            "featureId": feature_id,
            "payload": {
                "tasks": [task_to_wire(t) for t in tasks],
                "updatedAt": datetime.now().isoformat(),
            },
        })

    async def notify_status_changed(self, feature_id: str, status: str, task_id: Optional[str] = None,
                                    details: Optional[Dict[str, Any]] = None):
        payload: Dict[str, Any] = {"status": status}
        if task_id:
            payload["taskId"] = task_id
        if details:
            payload.update(details)
        await self.broadcast({
            "type": MessageType.STATUS_CHANGED.value,
            "featureId": feature_id,
            "payload": payload,
        })

    async def send_question(self, feature_id: str, payload: Dict[str, Any]):
        await self.broadcast({
            "type": MessageType.SHOW_QUESTION.value,
            "featureId": feature_id,
            "payload": payload,
        })

    async def send_error(self, feature_id: str, code: str, message: str):
        await self.broadcast({
            "type": MessageType.ERROR.value,
            "featureId": feature_id,
            "payload": {"code": code, "message": message},
        })

    async def request_screenshot(self, feature_id: str, reason: Optional[str] = None):
        """Ask the feature's UI clients for a screenshot of the current page."""
        await self.broadcast({
            "type": MessageType.REQUEST_SCREENSHOT.value,
            "featureId": feature_id,
            "payload": {"reason": reason} if reason else {},
        })
