"""
Presence Tracker.

Keeps the persisted `online` / `last_seen` columns in step with registry
membership and tells every other connected user about each change.

For a single transition the database write always completes before the
`userStatus` broadcast goes out, so a peer that reacts to the event by
re-fetching the user sees the new state. Replacing a live connection for a user
who is already online is not a state change: it is persisted (refreshing
`last_seen`) but not broadcast.

Every write is checked against the registry once it lands. A reconnect that
races an offline write, or a close that races an online write, leaves the
stored flag matching the registry and suppresses the stale broadcast.
"""

import logging

from core.protocol import user_status
from services.chat_store import ChatStore
from services.connection_registry import ConnectionListener, ConnectionRegistry

logger = logging.getLogger(__name__)


class PresenceTracker(ConnectionListener):
    """Derives online/offline transitions from registry membership"""

    def __init__(self, store: ChatStore, registry: ConnectionRegistry):
        self.store = store
        self.registry = registry

    async def user_connected(self, user_id: int, replaced: bool) -> None:
        if not await self._persist(user_id, True):
            return
        if replaced:
            logger.debug(f"User {user_id} reconnected; presence unchanged")
            return
        await self._announce(user_id, True)

    async def user_disconnected(self, user_id: int) -> None:
        if await self._persist(user_id, False):
            await self._announce(user_id, False)

    async def _persist(self, user_id: int, online: bool) -> bool:
        """
        Write a transition, then check it against registry membership. If the
        user connected or disconnected while the write was in flight, the
        current state is written instead and the transition is not announced;
        the later transition announces itself.

        Returns:
            bool: True if the transition still holds
        """
        holds = True
        while True:
            await self.store.set_online(user_id, online)
            current = self.registry.lookup(user_id) is not None
            if current == online:
                return holds
            logger.debug(
                f"User {user_id} presence moved on during write; storing {current}",
                extra={"user_id": user_id, "online": current},
            )
            holds = False
            online = current

    async def _announce(self, user_id: int, online: bool) -> int:
        delivered = await self.registry.broadcast(
            lambda connection: connection.user_id != user_id,
            user_status(user_id, online),
        )
        logger.info(
            f"Broadcast user {user_id} {'online' if online else 'offline'} "
            f"to {delivered} peers",
            extra={"user_id": user_id, "online": online, "delivered": delivered},
        )
        return delivered
