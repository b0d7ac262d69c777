"""
WebSocket connection manager for real-time event delivery.

Manages active WebSocket connections per user and named rooms
(``conversation:<id>``, ``user:<id>``), and provides methods to push
events to a user, a room, or everyone.
"""

import asyncio
import json
import logging
from typing import Dict, Iterable, List, Optional, Set
from datetime import timedelta
from fastapi import WebSocket

from courtside.utils.constants import SERVER_HEARTBEAT_TIMEOUT_SECONDS
from courtside.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Timeout for WebSocket connections (30 seconds of inactivity)
WEBSOCKET_TIMEOUT_SECONDS = SERVER_HEARTBEAT_TIMEOUT_SECONDS


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def make_event(event: str, payload: Optional[dict] = None) -> dict:
    """Build a server push frame."""
    return {"event": event, "payload": payload or {}}


class WebSocketManager:
    """Manages WebSocket connections and room membership for realtime events."""

    def __init__(self):
        """Initialize the WebSocket manager."""
        # Dictionary mapping user_id to set of active WebSocket connections
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        # Dictionary mapping room name to its member connections
        self.rooms: Dict[str, Set[WebSocket]] = {}
        # Dictionary mapping WebSocket to last activity timestamp
        self.connection_timestamps: Dict[WebSocket, object] = {}
        # Reverse index: WebSocket -> user_id
        self._connection_users: Dict[WebSocket, str] = {}
        # Lock for safe access to the connection maps
        self._lock = asyncio.Lock()

    async def connect(self, user_id: str, websocket: WebSocket) -> bool:
        """
        Register a WebSocket connection for a user and join its personal room.

        Args:
            user_id: ID of the user
            websocket: WebSocket connection object

        Returns:
            True if this is the user's first live connection
        """
        async with self._lock:
            first = user_id not in self.active_connections
            if first:
                self.active_connections[user_id] = set()
            self.active_connections[user_id].add(websocket)
            self.connection_timestamps[websocket] = utcnow()
            self._connection_users[websocket] = user_id
            self.rooms.setdefault(user_room(user_id), set()).add(websocket)
            logger.info(f"WebSocket connected for user {user_id} (total connections: {len(self.active_connections[user_id])})")
            return first

    async def disconnect(self, user_id: str, websocket: WebSocket) -> bool:
        """
        Remove a WebSocket connection for a user and drop it from every room.

        Args:
            user_id: ID of the user
            websocket: WebSocket connection object

        Returns:
            True if the user has no live connections left
        """
        async with self._lock:
            if user_id in self.active_connections:
                self.active_connections[user_id].discard(websocket)
                # Clean up empty sets
                if not self.active_connections[user_id]:
                    del self.active_connections[user_id]
            self._remove_from_rooms(websocket)
            self.connection_timestamps.pop(websocket, None)
            self._connection_users.pop(websocket, None)
            logger.info(f"WebSocket disconnected for user {user_id}")
            return user_id not in self.active_connections

    async def join_room(self, websocket: WebSocket, room: str) -> None:
        async with self._lock:
            self.rooms.setdefault(room, set()).add(websocket)

    async def leave_room(self, websocket: WebSocket, room: str) -> None:
        async with self._lock:
            members = self.rooms.get(room)
            if members is not None:
                members.discard(websocket)
                if not members:
                    del self.rooms[room]

    async def join_user_to_room(self, user_id: str, room: str) -> None:
        """Add every live connection of a user to a room (e.g. a conversation they were added to)."""
        async with self._lock:
            for websocket in self.active_connections.get(user_id, set()):
                self.rooms.setdefault(room, set()).add(websocket)

    async def send_to_user(self, user_id: str, message: dict, exclude: Optional[WebSocket] = None) -> bool:
        """
        Send a message to all active WebSocket connections for a user.

        Args:
            user_id: ID of the user
            message: Message dict to send (will be serialized to JSON)
            exclude: Connection to skip (the sender's own socket)

        Returns:
            True if message was sent to at least one connection, False otherwise
        """
        async with self._lock:
            if user_id not in self.active_connections:
                return False
            connections = self.active_connections[user_id].copy()

        connections.discard(exclude)
        return await self._send_all(connections, message) > 0

    async def send_to_room(self, room: str, message: dict, exclude: Optional[WebSocket] = None) -> int:
        """
        Send a message to every connection in a room.

        Returns:
            Number of connections the message reached
        """
        async with self._lock:
            connections = set(self.rooms.get(room, set()))

        connections.discard(exclude)
        return await self._send_all(connections, message)

    async def send_to_users(self, user_ids: Iterable[str], message: dict) -> int:
        """Send a message to several users; returns how many of them were reached."""
        reached = 0
        for user_id in set(user_ids):
            if await self.send_to_user(user_id, message):
                reached += 1
        return reached

    async def broadcast(self, message: dict, exclude_user: Optional[str] = None) -> int:
        """Send a message to every live connection, optionally skipping one user."""
        async with self._lock:
            connections = {
                ws
                for user_id, conn_set in self.active_connections.items()
                if user_id != exclude_user
                for ws in conn_set
            }
        return await self._send_all(connections, message)

    async def get_connection_count(self, user_id: str) -> int:
        """
        Get the number of active connections for a user.

        Args:
            user_id: ID of the user

        Returns:
            Number of active connections
        """
        async with self._lock:
            if user_id not in self.active_connections:
                return 0
            return len(self.active_connections[user_id])

    async def get_connected_user_ids(self) -> List[str]:
        async with self._lock:
            return sorted(self.active_connections.keys())

    async def is_in_room(self, websocket: WebSocket, room: str) -> bool:
        async with self._lock:
            return websocket in self.rooms.get(room, set())

    async def update_activity(self, websocket: WebSocket):
        """
        Update the last activity timestamp for a WebSocket connection.
        Called when receiving ping or other messages from client.

        Args:
            websocket: WebSocket connection object
        """
        async with self._lock:
            if websocket in self.connection_timestamps:
                self.connection_timestamps[websocket] = utcnow()

    async def cleanup_stale_connections(self) -> List[str]:
        """
        Clean up stale WebSocket connections that haven't had activity
        within the timeout period.

        This should be called periodically (e.g., every minute) to clean up
        connections that have timed out.

        Returns:
            User ids whose last connection was removed
        """
        timeout_threshold = utcnow() - timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS)

        async with self._lock:
            stale_connections = [
                (websocket, self._connection_users.get(websocket))
                for websocket, last_activity in self.connection_timestamps.items()
                if last_activity < timeout_threshold
            ]

        gone = []
        for websocket, user_id in stale_connections:
            if user_id is None:
                continue
            try:
                await websocket.close(code=1000, reason="Connection timeout")
            except Exception as e:
                logger.debug(f"Error closing stale connection for user {user_id}: {e}")
            if await self.disconnect(user_id, websocket):
                gone.append(user_id)
            logger.info(f"Cleaned up stale WebSocket connection for user {user_id}")
        return gone

    async def _send_all(self, connections: Set[WebSocket], message: dict) -> int:
        # Send outside the lock to avoid blocking registration
        message_json = json.dumps(message)
        sent = 0
        dead = []
        for websocket in connections:
            try:
                await websocket.send_text(message_json)
                sent += 1
            except Exception as e:
                logger.warning(f"Error sending WebSocket message to user {self._connection_users.get(websocket)}: {e}")
                dead.append(websocket)

        for websocket in dead:
            user_id = self._connection_users.get(websocket)
            if user_id is not None:
                await self.disconnect(user_id, websocket)
        return sent

    def _remove_from_rooms(self, websocket: WebSocket) -> None:
        for room in list(self.rooms.keys()):
            members = self.rooms[room]
            members.discard(websocket)
            if not members:
                del self.rooms[room]


# Global WebSocket manager instance
_websocket_manager: Optional[WebSocketManager] = None


def get_websocket_manager() -> WebSocketManager:
    """
    Get the global WebSocket manager instance.

    Returns:
        WebSocketManager instance
    """
    global _websocket_manager
    if _websocket_manager is None:
        _websocket_manager = WebSocketManager()
    return _websocket_manager
