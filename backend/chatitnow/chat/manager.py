"""WebSocket connection registry for the chat server.

This module tracks the physical side of the system: one entry per live
WebSocket, each bound to the session token supplied at handshake time.
Logical state (rooms, partners, buffered messages) lives in the session
store and survives the churn handled here.

Key features:
    - Registry-assigned connection ids (a reconnect always gets a new one)
    - Last-activity tracking for idle eviction
    - Room (channel) membership for partner-scoped relays
    - Concurrent broadcast with asyncio.gather()
    - Automatic dead connection cleanup

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

from fastapi import WebSocket
from pydantic import BaseModel

logger = logging.getLogger(__name__)

Outbound = Union[BaseModel, Dict[str, Any]]


@dataclass
class Connection:
    """One live WebSocket.

    Attributes:
        connection_id: Registry-assigned identifier.
        websocket: The underlying socket.
        session_token: Token the client supplied at handshake.
        last_active_at: Unix time of the last inbound frame.
        channels: Rooms this connection currently belongs to.
    """
    connection_id: str
    websocket: WebSocket
    session_token: str
    last_active_at: float = field(default_factory=time.time)
    channels: Set[str] = field(default_factory=set)


def _to_payload(message: Outbound) -> Dict[str, Any]:
    if isinstance(message, BaseModel):
        return message.model_dump(mode="json")
    return message


class ConnectionManager:
    """Manages live WebSocket connections and their channel membership.

    Never outlives the physical channel: an entry is created on connect and
    removed on disconnect, independent of the Session it carries.
    """

    def __init__(self) -> None:
        """Initialize empty connection manager."""
        # connection_id -> Connection
        self.connections: Dict[str, Connection] = {}

        # channel (room id) -> set of connection ids
        self.channels: Dict[str, Set[str]] = {}

    async def connect(self, websocket: WebSocket, session_token: str) -> str:
        """Accept a WebSocket and register it under a fresh connection id.

        Args:
            websocket: The WebSocket connection to accept.
            session_token: Client-supplied session token (already validated).

        Returns:
            The registry-assigned connection id.
        """
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self.connections[connection_id] = Connection(
            connection_id=connection_id,
            websocket=websocket,
            session_token=session_token,
        )
        logger.info(f"[Registry] Connection {connection_id} accepted ({len(self.connections)} online)")
        return connection_id

    def disconnect(self, connection_id: str) -> Optional[str]:
        """Forget a connection and drop it from every channel.

        Safe to call twice; the second call returns None.

        Returns:
            The session token the connection carried, or None if unknown.
        """
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return None
        for channel in list(connection.channels):
            self._discard_member(channel, connection_id)
        logger.info(f"[Registry] Connection {connection_id} removed ({len(self.connections)} online)")
        return connection.session_token

    def get(self, connection_id: Optional[str]) -> Optional[Connection]:
        if connection_id is None:
            return None
        return self.connections.get(connection_id)

    def is_connected(self, connection_id: Optional[str]) -> bool:
        return connection_id is not None and connection_id in self.connections

    def touch(self, connection_id: str, now: Optional[float] = None) -> None:
        """Refresh last activity; called for every inbound frame."""
        connection = self.connections.get(connection_id)
        if connection is not None:
            connection.last_active_at = time.time() if now is None else now

    def idle_connections(self, idle_timeout: float, now: Optional[float] = None) -> List[str]:
        """Connection ids with no inbound activity for longer than ``idle_timeout``."""
        now = time.time() if now is None else now
        return [
            conn.connection_id for conn in self.connections.values()
            if now - conn.last_active_at > idle_timeout
        ]

    async def close(self, connection_id: str, code: int = 1000) -> None:
        """Close a socket from the server side; registry cleanup is separate."""
        connection = self.connections.get(connection_id)
        if connection is None:
            return
        try:
            await connection.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"Failed to close connection {connection_id}: {e}")

    # =========================================================================
    # Channels
    # =========================================================================

    def join(self, connection_id: str, channel: str) -> None:
        connection = self.connections.get(connection_id)
        if connection is None:
            return
        connection.channels.add(channel)
        self.channels.setdefault(channel, set()).add(connection_id)

    def leave(self, connection_id: str, channel: str) -> None:
        connection = self.connections.get(connection_id)
        if connection is not None:
            connection.channels.discard(channel)
        self._discard_member(channel, connection_id)

    def close_channel(self, channel: str) -> None:
        """Remove every member from a channel."""
        for connection_id in list(self.channels.get(channel, ())):
            self.leave(connection_id, channel)
        self.channels.pop(channel, None)

    def channel_members(self, channel: str) -> Set[str]:
        return set(self.channels.get(channel, ()))

    def _discard_member(self, channel: str, connection_id: str) -> None:
        members = self.channels.get(channel)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.channels[channel]

    # =========================================================================
    # Sending
    # =========================================================================

    async def send(self, connection_id: Optional[str], message: Outbound) -> bool:
        """Send one frame to a connection.

        Returns:
            True if delivered to the socket, False if the connection is gone
            or the send failed.
        """
        connection = self.get(connection_id)
        if connection is None:
            return False
        return await self._safe_send(connection.websocket, _to_payload(message))

    async def broadcast_except(
        self, message: Outbound, channel: str, exclude_connection_id: Optional[str]
    ) -> None:
        """Broadcast a frame to a channel, skipping one connection.

        Used for partner relays (typing, reactions) where the sender must not
        see its own event.
        """
        targets = [
            self.connections[cid] for cid in self.channels.get(channel, ())
            if cid != exclude_connection_id and cid in self.connections
        ]
        if not targets:
            return

        payload = _to_payload(message)
        results = await asyncio.gather(
            *[self._safe_send(conn.websocket, payload) for conn in targets],
            return_exceptions=True
        )

        # Failed sockets leave the channel; their disconnect handler finishes cleanup
        for conn, success in zip(targets, results):
            if success is not True:
                self.leave(conn.connection_id, channel)
                logger.debug(f"Removed dead connection {conn.connection_id} from channel {channel}")

    async def _safe_send(self, websocket: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Args:
            websocket: The WebSocket to send to.
            message: JSON-serializable message to send.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def __len__(self) -> int:
        return len(self.connections)
