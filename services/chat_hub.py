"""
Composition root for one chat process.

`ChatHub` builds and owns the persistence service, the connection registry,
the presence tracker, the relay, the liveness monitor and the auxiliary
services, and wires them together. The FastAPI lifespan creates exactly one hub
and stores it on `app.state.hub`; request handlers reach the real-time core
only through it.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional, Set

from sqlalchemy.ext.asyncio import AsyncEngine

from core.auth import AuthService, GoogleIdentityVerifier, JWTManager
from core.config import Settings
from core.database import build_engine, build_session_factory, create_db_and_tables
from core.protocol import CloseCode
from services.chat_store import ChatStore
from services.connection_registry import ClientConnection, ConnectionRegistry
from services.email_service import EmailService
from services.liveness import LivenessMonitor
from services.media_storage import MediaStorage
from services.presence import PresenceTracker
from services.relay import MessageRelay

logger = logging.getLogger(__name__)


class ChatHub:
    """Owns and wires every service of the chat backend"""

    def __init__(self, settings: Settings, engine: Optional[AsyncEngine] = None):
        self.settings = settings
        self.engine = engine or build_engine(settings.database_url)

        self.store = ChatStore(
            build_session_factory(self.engine),
            edit_window=timedelta(minutes=settings.message_edit_window_minutes),
        )
        self.registry = ConnectionRegistry()
        self.presence = PresenceTracker(self.store, self.registry)
        self.registry.add_listener(self.presence)
        self.relay = MessageRelay(self.registry)
        self.liveness = LivenessMonitor(self.registry, settings.heartbeat_interval)

        self.email_service = EmailService(settings)
        self.media_storage = MediaStorage(
            settings.uploads_dir, settings.max_upload_mb * 1024 * 1024
        )
        self.auth_service = AuthService(
            store=self.store,
            email_service=self.email_service,
            jwt_manager=JWTManager(
                secret_key=settings.jwt_secret_key,
                access_token_expire=timedelta(
                    minutes=settings.access_token_expire_minutes
                ),
            ),
            google_verifier=GoogleIdentityVerifier(settings.google_client_id),
            verification_ttl=timedelta(minutes=settings.verification_token_ttl_minutes),
            require_socket_token=settings.require_socket_token,
        )
        self._releases: Set[asyncio.Task] = set()

    async def startup(self, start_liveness: bool = True) -> None:
        await create_db_and_tables(self.engine)

        # Registry starts empty, so nobody can be online yet
        await self.store.reset_online_flags()

        self.media_storage.ensure_directory()
        if start_liveness:
            self.liveness.start()
        logger.info("Chat hub started")

    def release_connection(self, connection: ClientConnection) -> asyncio.Task:
        """
        Discard a closed connection in a task owned by the hub. The offline
        transition runs to completion even when the socket's own task is
        cancelled while waiting for it.
        """
        task = asyncio.create_task(self.registry.discard(connection))
        self._releases.add(task)
        task.add_done_callback(self._releases.discard)
        return task

    async def drain_releases(self) -> None:
        """Wait for every pending connection release"""
        while self._releases:
            pending = list(self._releases)
            self._releases.difference_update(pending)
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Connection release failed: {result}")

    async def shutdown(self) -> None:
        await self.liveness.stop()
        await self.registry.close_all(CloseCode.GOING_AWAY)
        await self.drain_releases()
        await self.store.reset_online_flags()
        await self.engine.dispose()
        logger.info("Chat hub stopped")
