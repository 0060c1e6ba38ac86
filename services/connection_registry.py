"""
Live Connection Registry.

This module provides the `ConnectionRegistry`, the single source of truth for
which users are currently reachable in real time and through which socket. It
owns every `ClientConnection` for its lifetime and enforces that a user has at
most one live connection at any instant.

Key Components:
- `ClientConnection`: Wraps one Starlette `WebSocket` with the state the core
  needs: the bound user id, the liveness state used by the heartbeat, and
  whether the transport is still writable.
- `ConnectionRegistry`: Maps user id to connection. `register` evicts an older
  connection for the same user (last writer wins), `remove` only removes the
  entry when the caller's connection is the one stored, and `broadcast` fans an
  envelope out on a best-effort basis.
- `ConnectionListener`: The callbacks (`user_connected`, `user_disconnected`)
  the registry fires on membership changes; the presence tracker implements it.

Architectural Design:
- In-Memory State: The registry is volatile and rebuilt from nothing on restart.
  It is built once per process by the composition root and handed to whoever
  needs it; it is never a module-level global.
- Single Event Loop: All mutations happen on the event loop between suspension
  points, so the dictionary needs no locking. `register` installs the new
  connection before awaiting anything, so a close handler of the evicted
  connection can never observe (and remove) a half-replaced entry.
- Best-Effort Delivery: A failed send to one peer is logged and does not stop
  delivery to the rest.
"""

import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from core.protocol import HEARTBEAT_PROBE, CloseCode, encode

logger = logging.getLogger(__name__)


class LivenessState(Enum):
    """Heartbeat state of a connection"""

    ALIVE = "alive"
    PENDING = "pending"
    DEAD = "dead"


class ClientConnection:
    """One live WebSocket session"""

    def __init__(self, websocket):
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex[:12]
        self.user_id: Optional[int] = None
        self.liveness = LivenessState.ALIVE
        self.closed = False
        self.close_code: Optional[int] = None

    def __repr__(self) -> str:
        return f"ClientConnection(id={self.connection_id}, user_id={self.user_id})"

    @property
    def is_writable(self) -> bool:
        if self.closed:
            return False
        return getattr(self.websocket, "application_state", None) == WebSocketState.CONNECTED

    async def send(self, envelope: BaseModel) -> None:
        await self.websocket.send_text(encode(envelope))

    async def send_heartbeat_probe(self) -> None:
        await self.websocket.send_text(HEARTBEAT_PROBE)

    def acknowledge_heartbeat(self) -> None:
        self.liveness = LivenessState.ALIVE

    async def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        """Close the transport once; later calls are no-ops"""
        if self.closed:
            return
        self.closed = True
        self.close_code = int(code)
        if getattr(self.websocket, "application_state", None) != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.close(code=int(code), reason=reason)
        except RuntimeError as e:
            # Transport already torn down by the peer
            logger.debug(f"Close on finished transport {self.connection_id}: {e}")


class ConnectionListener:
    """Receives registry membership changes"""

    async def user_connected(self, user_id: int, replaced: bool) -> None:
        pass

    async def user_disconnected(self, user_id: int) -> None:
        pass


class ConnectionRegistry:
    """Registry of live connections, at most one per user"""

    def __init__(self):
        # Maps user_id to its single live connection
        self.connections: Dict[int, ClientConnection] = {}

        # Every open socket, authenticated or not; visited by the heartbeat
        self.open_sockets: Set[ClientConnection] = set()

        self._listeners: List[ConnectionListener] = []

    def add_listener(self, listener: ConnectionListener) -> None:
        self._listeners.append(listener)

    def track(self, connection: ClientConnection) -> None:
        self.open_sockets.add(connection)

    def open_connections(self) -> List[ClientConnection]:
        return [conn for conn in self.open_sockets if not conn.closed]

    async def register(self, user_id: int, connection: ClientConnection) -> None:
        """
        Bind a connection to a user, evicting any older connection for them.

        Args:
            user_id: Authenticated user id
            connection: The connection that completed the auth handshake
        """
        previous = self.connections.get(user_id)
        connection.user_id = user_id
        self.connections[user_id] = connection
        self.open_sockets.add(connection)

        if previous is connection:
            logger.debug(f"User {user_id} re-authenticated on {connection.connection_id}")
            return

        replaced = previous is not None
        if replaced:
            logger.info(
                f"Replacing connection for user {user_id}",
                extra={
                    "user_id": user_id,
                    "old_connection": previous.connection_id,
                    "new_connection": connection.connection_id,
                },
            )
            await previous.close(CloseCode.NORMAL, "Replaced by a newer session")
            self.open_sockets.discard(previous)

        logger.info(
            f"User {user_id} connected",
            extra={
                "user_id": user_id,
                "connection_id": connection.connection_id,
                "active_users": len(self.connections),
            },
        )
        await self._notify("user_connected", user_id, replaced)

    def lookup(self, user_id: int) -> Optional[ClientConnection]:
        return self.connections.get(user_id)

    async def remove(self, user_id: int, connection: ClientConnection) -> bool:
        """
        Remove the entry for a user only if `connection` is the one stored.

        Returns:
            bool: True if the entry was removed
        """
        if self.connections.get(user_id) is not connection:
            logger.debug(
                f"Ignoring stale removal for user {user_id}",
                extra={"user_id": user_id, "connection_id": connection.connection_id},
            )
            return False

        del self.connections[user_id]
        logger.info(
            f"User {user_id} disconnected",
            extra={
                "user_id": user_id,
                "connection_id": connection.connection_id,
                "active_users": len(self.connections),
            },
        )
        await self._notify("user_disconnected", user_id)
        return True

    async def discard(self, connection: ClientConnection) -> bool:
        """Forget a socket that has closed, unbinding its user if still current"""
        self.open_sockets.discard(connection)
        if connection.user_id is None:
            return False
        return await self.remove(connection.user_id, connection)

    async def broadcast(
        self, predicate: Callable[[ClientConnection], bool], envelope: BaseModel
    ) -> int:
        """
        Send an envelope to every writable connection matching the predicate.

        Returns:
            Number of connections the envelope was delivered to
        """
        delivered = 0
        for connection in list(self.connections.values()):
            if not predicate(connection) or not connection.is_writable:
                continue
            try:
                await connection.send(envelope)
                delivered += 1
            except Exception as e:
                logger.warning(
                    f"Broadcast to user {connection.user_id} failed: {e}",
                    extra={"user_id": connection.user_id, "error_type": type(e).__name__},
                )
        return delivered

    def online_user_ids(self) -> List[int]:
        return sorted(self.connections.keys())

    def get_connection_stats(self) -> Dict[str, Any]:
        open_sockets = self.open_connections()
        return {
            "authenticated_connections": len(self.connections),
            "open_sockets": len(open_sockets),
            "unauthenticated_sockets": sum(1 for c in open_sockets if c.user_id is None),
            "pending_heartbeats": sum(
                1 for c in open_sockets if c.liveness is LivenessState.PENDING
            ),
            "online_user_ids": self.online_user_ids(),
        }

    async def close_all(self, code: int = CloseCode.GOING_AWAY) -> int:
        """Close every open socket (used on shutdown); registry entries are dropped"""
        sockets: Iterable[ClientConnection] = list(self.open_sockets)
        closed = 0
        for connection in sockets:
            try:
                await connection.close(code, "Server shutting down")
                closed += 1
            except Exception as e:
                logger.error(f"Error closing connection {connection.connection_id}: {e}")
        self.connections.clear()
        self.open_sockets.clear()
        logger.info(f"Closed {closed} connections")
        return closed

    async def _notify(self, event: str, *args) -> None:
        for listener in self._listeners:
            try:
                await getattr(listener, event)(*args)
            except Exception as e:
                logger.error(
                    f"Connection listener {type(listener).__name__}.{event} failed: {e}",
                    exc_info=True,
                )
