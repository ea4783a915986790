"""Composition root of the realtime layer.

The Coordinator owns the connection registry, room manager, presence
broadcaster, and event router, and binds them to the transport lifecycle:

    connect  -> Connected
    auth     -> Authenticated
    close / idle timeout / logout -> Disconnected (terminal)

One Coordinator is created per application and lives on app.state.
"""

import asyncio
import logging
import time
from typing import Any, Optional

from .handlers import EventRouter, IdentityVerifier, RoomAuthorizer
from .messages import MessageType
from .presence import LeaveReason, PresenceAction, PresenceBroadcaster, PresenceEvent
from .registry import Connection, ConnectionRegistry, ConnectionState
from .rooms import RoomManager, RoomMetadataLoader
from .serial import SerialTaskQueue
from .transport import Transport

logger = logging.getLogger(__name__)


class Coordinator:
    """
    Realtime room and presence coordinator.

    Args:
        transport: Outbound transport
        verifier: Token verifier used by the auth event
        room_authorizer: Optional async (identity, room_id) -> bool checked on join
        metadata_loader: Optional async room metadata lookup for new rooms
        grace_period: Seconds an emptied room survives
        strict_rejoin: Redundant joins are errors rather than no-ops
        idle_timeout: Seconds without activity before a connection is dropped
        sweep_interval: Seconds between idle sweeps once started
        call_timeout: Timeout for external calls
        retry_backoff: Backoff before retrying a timed-out external call
    """

    def __init__(
        self,
        transport: Transport,
        verifier: IdentityVerifier,
        room_authorizer: Optional[RoomAuthorizer] = None,
        metadata_loader: Optional[RoomMetadataLoader] = None,
        grace_period: float = 0.0,
        strict_rejoin: bool = True,
        idle_timeout: float = 90.0,
        sweep_interval: float = 30.0,
        call_timeout: float = 5.0,
        retry_backoff: float = 0.2,
    ) -> None:
        self.transport = transport
        self.queue = SerialTaskQueue()
        self.registry = ConnectionRegistry()
        self.rooms = RoomManager(
            self.registry,
            queue=self.queue,
            grace_period=grace_period,
            strict_rejoin=strict_rejoin,
            metadata_loader=metadata_loader,
            lookup_timeout=call_timeout,
            retry_backoff=retry_backoff,
        )
        self.broadcaster = PresenceBroadcaster(self.rooms, transport)
        self.router = EventRouter(
            self.registry,
            self.rooms,
            self.broadcaster,
            transport,
            verifier,
            room_authorizer=room_authorizer,
            call_timeout=call_timeout,
            retry_backoff=retry_backoff,
            on_logout=self.logout,
        )
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._sweeper: Optional[asyncio.Task] = None
        self._cascades: set[asyncio.Task] = set()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @property
    def is_running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def start(self) -> None:
        """Start the idle-connection sweeper."""
        if self.is_running:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info(f"Coordinator started (idle_timeout={self.idle_timeout}s)")

    async def stop(self) -> None:
        """Stop the sweeper and disconnect every live connection."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        for connection_id in self.registry.connection_ids():
            await self.disconnect(connection_id, LeaveReason.DISCONNECTED)
            await self.transport.close(connection_id, code=1001, reason="Server shutting down")

        # Cascades whose callers were cancelled still run to completion
        if self._cascades:
            await asyncio.gather(*self._cascades, return_exceptions=True)

        await self.queue.close()
        self.rooms.close()
        logger.info("Coordinator stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_idle()
            except Exception as e:
                logger.error(f"Idle sweep failed: {e}")

    # ========================================================================
    # Transport lifecycle
    # ========================================================================

    def state_of(self, connection_id: str) -> ConnectionState:
        """Current lifecycle state of a connection id."""
        connection = self.registry.lookup(connection_id)
        if connection is not None:
            return connection.state
        if self.registry.is_retired(connection_id):
            return ConnectionState.DISCONNECTED
        return ConnectionState.CONNECTING

    async def connect(self, connection_id: str) -> Connection:
        """
        Register a connection whose transport handshake completed.

        Raises:
            DuplicateConnectionError: If the id is live or was used before
        """
        connection = self.registry.register(connection_id)

        logger.info(
            f"WebSocket connected: connection={connection_id}, "
            f"total_connections={self.registry.total_connections}"
        )

        await self.transport.send(
            connection_id,
            MessageType.CONNECTED.value,
            {
                "connection_id": connection_id,
                "connected_at": connection.connected_at.isoformat(),
            },
        )
        return connection

    async def message(self, connection_id: str, event_name: str, payload: Any) -> None:
        """Route an inbound event. Events for disconnected connections are dropped."""
        if self.state_of(connection_id) is ConnectionState.DISCONNECTED:
            logger.debug(f"Dropping {event_name} for disconnected connection {connection_id}")
            return
        await self.router.handle(connection_id, event_name, payload)

    async def disconnect(
        self,
        connection_id: str,
        reason: LeaveReason = LeaveReason.DISCONNECTED,
    ) -> set[str]:
        """
        Tear down a connection and clean up its memberships.

        Queued room work owned by the connection is dropped first. Then the
        connection is unregistered and evicted from each room it had joined,
        and remaining members get a presence 'left' event. Idempotent.

        The eviction cascade runs in its own shielded task: cancelling the
        caller (a closing transport handler) does not stop it.

        Returns:
            The rooms the connection was removed from
        """
        self.queue.cancel_owner(connection_id)

        connection = self.registry.lookup(connection_id)
        rooms = self.registry.unregister(connection_id)
        if connection is None:
            return set()

        cascade = asyncio.create_task(self._evict_everywhere(connection, rooms, reason))
        self._cascades.add(cascade)
        cascade.add_done_callback(self._cascades.discard)
        await asyncio.shield(cascade)
        return rooms

    async def _evict_everywhere(
        self,
        connection: Connection,
        rooms: set[str],
        reason: LeaveReason,
    ) -> None:
        connection_id = connection.connection_id
        for room_id in sorted(rooms):
            result = await self.rooms.evict(room_id, connection_id)
            if not result.removed:
                continue
            await self.broadcaster.deliver(
                room_id,
                result.remaining,
                PresenceEvent(
                    action=PresenceAction.LEFT,
                    room_id=room_id,
                    connection_id=connection_id,
                    user_id=connection.user_id,
                    user_name=connection.identity.display_name if connection.identity else None,
                    member_count=len(result.remaining),
                    reason=reason,
                ),
            )

        logger.info(
            f"WebSocket disconnected: connection={connection_id}, reason={reason.value}, "
            f"rooms={len(rooms)}, total_connections={self.registry.total_connections}"
        )

    async def logout(self, connection_id: str) -> None:
        """Explicit logout: disconnect and close the transport."""
        await self.transport.send(
            connection_id,
            MessageType.DISCONNECTED.value,
            {"reason": LeaveReason.LOGOUT.value},
        )
        await self.disconnect(connection_id, LeaveReason.LOGOUT)
        await self.transport.close(connection_id, code=1000, reason="Logged out")

    async def sweep_idle(self, now: Optional[float] = None) -> list[str]:
        """
        Disconnect connections idle for longer than idle_timeout.

        Args:
            now: Monotonic timestamp to measure against (defaults to now)

        Returns:
            Ids of the connections that were dropped
        """
        cutoff = (now if now is not None else time.monotonic()) - self.idle_timeout
        stale = self.registry.idle_connections(cutoff)
        for connection_id in stale:
            logger.info(f"Connection timeout: {connection_id}")
            await self.disconnect(connection_id, LeaveReason.TIMEOUT)
            await self.transport.close(connection_id, code=4008, reason="Idle timeout")
        return stale

    def stats(self) -> dict[str, Any]:
        return {
            "connections": self.registry.total_connections,
            "authenticated": self.registry.authenticated_connections,
            "rooms": self.rooms.total_rooms,
            "busy_rooms": self.queue.active_keys,
        }
