"""
Liveness Monitor.

Detects and reaps half-open connections, for example a client that crashed
without sending a close frame.

Each connection moves through `ALIVE ⇄ PENDING → DEAD`. Every interval the
monitor visits all open sockets: one still `PENDING` from the previous round
never answered its probe, so it becomes `DEAD`, is closed with the heartbeat
timeout code and is discarded from the registry (firing the offline
transition). Any other connection becomes `PENDING` and receives a new probe.
A heartbeat acknowledgment at any time resets the connection to `ALIVE`.
Worst-case detection latency is therefore about two intervals.
"""

import asyncio
import logging
from typing import List, Optional

from core.protocol import CloseCode
from services.connection_registry import (
    ClientConnection,
    ConnectionRegistry,
    LivenessState,
)

logger = logging.getLogger(__name__)


class LivenessMonitor:
    """Periodic two-strike heartbeat over every open socket"""

    def __init__(self, registry: ConnectionRegistry, interval: float = 30.0):
        self.registry = registry
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="liveness-monitor")
        logger.info(f"Liveness monitor started (interval={self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Liveness monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Heartbeat sweep failed: {e}", exc_info=True)

    async def sweep(self) -> List[ClientConnection]:
        """
        Run one heartbeat round.

        Returns:
            Connections evicted in this round
        """
        evicted = []
        for connection in self.registry.open_connections():
            if connection.liveness is LivenessState.PENDING:
                connection.liveness = LivenessState.DEAD
                await self._evict(connection)
                evicted.append(connection)
                continue

            connection.liveness = LivenessState.PENDING
            try:
                await connection.send_heartbeat_probe()
            except Exception as e:
                # Left PENDING; reaped next round unless an ack arrives
                logger.debug(f"Heartbeat probe to {connection.connection_id} failed: {e}")

        if evicted:
            logger.info(
                f"Evicted {len(evicted)} unresponsive connections",
                extra={"evicted_users": [c.user_id for c in evicted]},
            )
        return evicted

    async def _evict(self, connection: ClientConnection) -> None:
        logger.warning(
            f"Connection {connection.connection_id} missed its heartbeat, terminating",
            extra={"user_id": connection.user_id, "connection_id": connection.connection_id},
        )
        try:
            await connection.close(CloseCode.HEARTBEAT_TIMEOUT, "Heartbeat timeout")
        except Exception as e:
            logger.debug(f"Error closing dead connection {connection.connection_id}: {e}")
        await self.registry.discard(connection)
