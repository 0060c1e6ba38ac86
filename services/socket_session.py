"""
Per-connection socket session.

One `SocketSession` task runs per accepted WebSocket. It reads frames in
arrival order, decodes each one exactly once into a protocol envelope, and
dispatches it to the registry or the relay. Errors caused by a frame are
reported back to this connection as an `error` envelope; the connection stays
open. When the transport closes, for whatever reason, the session hands its
connection to the hub for release. The release runs in a hub-owned task and
fires the offline transition if this connection was still the user's current
one; cancelling the session task does not interrupt it.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from starlette.websockets import WebSocketDisconnect

from core.exceptions import ChatAPIException, UserNotFoundError
from core.logging_config import set_correlation_id
from core.protocol import (
    HEARTBEAT_ACK,
    AuthEnvelope,
    AuthPayload,
    CloseCode,
    TypingRequest,
    TypingRequestPayload,
    decode_client_frame,
    error_event,
)
from services.connection_registry import ClientConnection

if TYPE_CHECKING:
    from services.chat_hub import ChatHub

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Failed to process message"


class SocketSession:
    """Reads and dispatches frames for one connection"""

    def __init__(self, hub: "ChatHub", connection: ClientConnection):
        self.hub = hub
        self.connection = connection

    async def run(self) -> None:
        """Serve the connection until it closes"""
        websocket = self.connection.websocket
        set_correlation_id(f"ws-{self.connection.connection_id}")
        self.hub.registry.track(self.connection)

        close_code = CloseCode.NORMAL
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    close_code = message.get("code", CloseCode.NORMAL)
                    break

                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"]
                await self.handle_frame(raw)
        except WebSocketDisconnect as exc:
            close_code = exc.code
        except RuntimeError as exc:
            # receive() after the server side already closed the socket
            logger.debug(f"Socket {self.connection.connection_id} ended: {exc}")
        finally:
            intentional = close_code == CloseCode.NORMAL
            logger.info(
                f"Socket {self.connection.connection_id} closed "
                f"({'intentional' if intentional else 'abnormal'}, code={close_code})",
                extra={
                    "user_id": self.connection.user_id,
                    "close_code": close_code,
                    "intentional": intentional,
                },
            )
            self.connection.closed = True
            await asyncio.shield(self.hub.release_connection(self.connection))

    async def handle_frame(self, raw) -> None:
        try:
            frame = decode_client_frame(raw)
        except ChatAPIException as exc:
            logger.info(
                f"Rejected frame on {self.connection.connection_id}: {exc.message}"
            )
            await self.send_error(exc.message)
            return

        try:
            await self.dispatch(frame)
        except ChatAPIException as exc:
            await self.send_error(exc.message)
        except Exception as exc:
            logger.error(
                f"Error handling {type(frame).__name__} on "
                f"{self.connection.connection_id}: {exc}",
                exc_info=True,
            )
            await self.send_error(GENERIC_FAILURE)

    async def dispatch(self, frame) -> None:
        if frame is HEARTBEAT_ACK:
            self.connection.acknowledge_heartbeat()
        elif isinstance(frame, AuthEnvelope):
            await self.authenticate(frame.payload)
        elif isinstance(frame, TypingRequest):
            await self.typing(frame.payload)
        else:
            raise TypeError(f"Unhandled client frame: {frame!r}")

    async def authenticate(self, payload: AuthPayload) -> None:
        self.hub.auth_service.verify_socket_identity(payload.user_id, payload.token)

        if await self.hub.store.get_user(payload.user_id) is None:
            raise UserNotFoundError(payload.user_id)

        bound = self.connection.user_id
        if bound is not None and bound != payload.user_id:
            # Re-binding this socket to another identity releases the old one
            await self.hub.registry.remove(bound, self.connection)

        await self.hub.registry.register(payload.user_id, self.connection)

    async def typing(self, payload: TypingRequestPayload) -> None:
        if self.connection.user_id is None:
            await self.send_error("Authenticate before sending typing events")
            return
        await self.hub.relay.relay_typing(self.connection.user_id, payload.receiver_id)

    async def send_error(self, message: str) -> None:
        if not self.connection.is_writable:
            return
        try:
            await self.connection.send(error_event(message))
        except Exception as exc:
            logger.debug(f"Could not report error to {self.connection.connection_id}: {exc}")
