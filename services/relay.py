"""
Message and Typing Relay.

Push delivery of events to specific live connections. The relay never queues
or retries: when the target user is not connected, or its transport is no
longer writable, the event is dropped and the counterpart catches up on its
next fetch.
"""

import logging
from pydantic import BaseModel

from core.models import Message
from core.protocol import NewMessageEvent, typing_notice
from services.connection_registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class MessageRelay:
    """Delivers new messages and typing signals in real time"""

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def notify_new_message(self, message: Message) -> int:
        """
        Push a persisted message to its receiver and echo it to its sender.

        The two deliveries are independent; either may be skipped.

        Returns:
            Number of connections that received the event
        """
        event = NewMessageEvent.for_message(message)
        delivered = 0
        for user_id in (message.receiver_id, message.sender_id):
            if await self._deliver(user_id, event):
                delivered += 1

        logger.info(
            f"Relayed message {message.id} to {delivered} connections",
            extra={
                "message_id": message.id,
                "sender_id": message.sender_id,
                "receiver_id": message.receiver_id,
                "delivered": delivered,
            },
        )
        return delivered

    async def relay_typing(self, sender_id: int, receiver_id: int) -> bool:
        """Forward an ephemeral typing signal; returns whether it was delivered"""
        return await self._deliver(receiver_id, typing_notice(sender_id))

    async def _deliver(self, user_id: int, envelope: BaseModel) -> bool:
        connection = self.registry.lookup(user_id)
        if connection is None or not connection.is_writable:
            logger.debug(
                f"User {user_id} not reachable, dropping {envelope.type}",
                extra={"user_id": user_id, "event_type": envelope.type},
            )
            return False

        try:
            await connection.send(envelope)
        except Exception as e:
            logger.warning(
                f"Failed to deliver {envelope.type} to user {user_id}: {e}",
                extra={"user_id": user_id, "error_type": type(e).__name__},
            )
            return False
        return True
