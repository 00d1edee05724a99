"""
WebSocket handler for bulk-delete progress.

Provides the /ws/progress endpoint. Connected clients receive the current
progress snapshot on connect and a ``delete_progress`` message for every
throttled update while a bulk delete runs.
"""

import json
import asyncio
import logging
from typing import Set, Dict, Any, Optional
from starlette.websockets import WebSocket
from starlette.endpoints import WebSocketEndpoint

from .models import ProgressMessage, ProgressSnapshot


logger = logging.getLogger(__name__)


def progress_payload(snapshot: ProgressSnapshot) -> Dict[str, Any]:
    return {
        "current": snapshot.current,
        "total": snapshot.total,
        "done": snapshot.done,
        "percentage": snapshot.percentage,
    }


class ProgressBroadcaster:
    """Manages WebSocket connections and broadcasts progress to clients."""

    def __init__(self, ping_interval: float = 30):
        self.connections: Set[WebSocket] = set()
        self.latest: ProgressSnapshot = ProgressSnapshot()
        self._ping_interval = ping_interval
        self._ping_tasks: Dict[WebSocket, asyncio.Task] = {}
        self._send_tasks: Set[asyncio.Task] = set()

        # Statistics
        self.stats = {
            "active_connections": 0,
            "total_connections": 0,
            "messages_sent": 0,
            "broadcast_errors": 0,
            "pings_sent": 0,
        }

    async def connect(self, websocket: WebSocket):
        """Add a new WebSocket connection."""
        await websocket.accept()
        self.connections.add(websocket)
        self.stats["active_connections"] = len(self.connections)
        self.stats["total_connections"] += 1

        logger.info(f"WebSocket connected. Active connections: {len(self.connections)}")

        ping_task = asyncio.create_task(self._ping_loop(websocket))
        self._ping_tasks[websocket] = ping_task

        await self.send_snapshot(websocket)

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        self.connections.discard(websocket)
        self.stats["active_connections"] = len(self.connections)

        if websocket in self._ping_tasks:
            ping_task = self._ping_tasks.pop(websocket)
            ping_task.cancel()

        logger.info(f"WebSocket disconnected. Active connections: {len(self.connections)}")

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        """Progress listener; schedules a broadcast of the snapshot.

        Called synchronously from the tracker, so the send happens in a task.
        """
        self.latest = snapshot
        if not self.connections:
            return
        try:
            task = asyncio.get_running_loop().create_task(self.broadcast_progress(snapshot))
        except RuntimeError:
            logger.debug("No running event loop; progress update not broadcast")
            return
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def broadcast_progress(self, snapshot: ProgressSnapshot):
        message = ProgressMessage(data=progress_payload(snapshot))
        await self.broadcast(message.model_dump())
        logger.debug(f"Broadcast delete progress {snapshot.current}/{snapshot.total}")

    async def broadcast(self, message: Dict[str, Any]):
        """Broadcast a message to all connected clients."""
        if not self.connections:
            return

        message_json = json.dumps(message)
        disconnected = set()

        for connection in self.connections.copy():
            try:
                await connection.send_text(message_json)
                self.stats["messages_sent"] += 1
            except Exception as e:
                logger.warning(f"Failed to send message to client: {e}")
                disconnected.add(connection)
                self.stats["broadcast_errors"] += 1

        for connection in disconnected:
            self.disconnect(connection)

    async def send_snapshot(self, websocket: WebSocket):
        """Send the latest progress to one client."""
        message = ProgressMessage(data=progress_payload(self.latest))
        try:
            await websocket.send_text(json.dumps(message.model_dump()))
        except Exception as e:
            logger.error(f"Failed to send progress snapshot to client: {e}")

    async def _ping_loop(self, websocket: WebSocket):
        """Send periodic ping messages to keep connection alive."""
        try:
            while websocket in self.connections:
                await asyncio.sleep(self._ping_interval)

                if websocket not in self.connections:
                    break

                try:
                    ping_message = {"type": "ping", "timestamp": asyncio.get_running_loop().time()}
                    await websocket.send_text(json.dumps(ping_message))
                    self.stats["pings_sent"] += 1
                except Exception as e:
                    logger.warning(f"Failed to send ping: {e}")
                    break

        except asyncio.CancelledError:
            logger.debug("Ping loop cancelled for WebSocket connection")

    async def close(self):
        """Cancel ping loops and pending sends."""
        for task in list(self._ping_tasks.values()) + list(self._send_tasks):
            task.cancel()
        self._ping_tasks.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get broadcaster statistics."""
        return self.stats.copy()


class ProgressStreamEndpoint(WebSocketEndpoint):
    """WebSocket endpoint streaming bulk-delete progress to the frontend."""

    encoding = "text"

    @property
    def broadcaster(self) -> Optional[ProgressBroadcaster]:
        return self.scope["app"].state.broadcaster

    async def on_connect(self, websocket: WebSocket):
        await self.broadcaster.connect(websocket)

    async def on_disconnect(self, websocket: WebSocket, close_code: int):
        self.broadcaster.disconnect(websocket)

    async def on_receive(self, websocket: WebSocket, data: str):
        """Handle incoming messages from client."""
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.error(f"Invalid JSON received: {data}")
            return

        message_type = message.get("type") if isinstance(message, dict) else None
        if message_type == "ping":
            await websocket.send_text(json.dumps({"type": "pong", "timestamp": asyncio.get_running_loop().time()}))
        elif message_type == "pong":
            logger.debug("Received pong from client")
        elif message_type == "get_progress":
            await self.broadcaster.send_snapshot(websocket)
        else:
            logger.warning(f"Unknown message type: {message_type}")
