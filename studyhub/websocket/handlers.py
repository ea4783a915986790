"""Inbound event routing for realtime connections.

EventRouter.handle is the single entry point for client frames. For every
event it looks up the connection, checks authentication, validates the
payload, and only then dispatches to the handler. Any RealtimeError raised
along the way becomes an error frame sent to the originating connection;
nothing is mutated before validation and authorization pass.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import (
    ConnectionClosedError,
    ForbiddenError,
    InvalidPayloadError,
    RealtimeError,
    UnauthenticatedError,
    UnknownConnectionError,
)
from .messages import MessageType
from .presence import LeaveReason, PresenceAction, PresenceBroadcaster, PresenceEvent
from .registry import Connection, ConnectionRegistry
from .room_auth import ROOM_ID_PATTERN
from .rooms import RoomManager
from .timeouts import call_with_timeout
from .transport import Transport

if TYPE_CHECKING:
    from ..services.auth_service import Identity

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4000

RoomAuthorizer = Callable[["Identity", str], Awaitable[bool]]


class IdentityVerifier(Protocol):
    async def verify(self, token: str) -> "Identity":
        ...


# ============================================================================
# Payload schemas
# ============================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class AuthPayload(_Payload):
    token: str = Field(min_length=1, max_length=8192)


class RoomPayload(_Payload):
    room_id: str = Field(pattern=ROOM_ID_PATTERN.pattern)


class RoomMessagePayload(RoomPayload):
    text: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)


class PresencePingPayload(_Payload):
    room_id: Optional[str] = Field(default=None, pattern=ROOM_ID_PATTERN.pattern)
    status: Optional[Literal["active", "idle", "away"]] = None


class LogoutPayload(_Payload):
    pass


class KeepalivePayload(_Payload):
    pass


@dataclass(frozen=True)
class _EventSpec:
    model: type[BaseModel]
    requires_auth: bool
    handler: Callable[[Connection, Any], Awaitable[None]]


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "data"
        parts.append(f"{location}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class EventRouter:
    """
    Routes inbound realtime events to their handlers.

    Args:
        registry: Connection registry
        rooms: Room manager
        broadcaster: Presence broadcaster
        transport: Outbound transport for replies to the sender
        verifier: Resolves auth tokens to identities
        room_authorizer: Optional async (identity, room_id) -> bool checked before joins
        call_timeout: Timeout for verifier and room_authorizer calls
        retry_backoff: Delay before retrying a timed-out call
        on_logout: Coroutine run for an explicit logout (the coordinator's disconnect)
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomManager,
        broadcaster: PresenceBroadcaster,
        transport: Transport,
        verifier: IdentityVerifier,
        room_authorizer: Optional[RoomAuthorizer] = None,
        call_timeout: float = 5.0,
        retry_backoff: float = 0.2,
        on_logout: Optional[Callable[[str], Awaitable[Any]]] = None,
    ) -> None:
        self._registry = registry
        self._rooms = rooms
        self._broadcaster = broadcaster
        self._transport = transport
        self._verifier = verifier
        self._room_authorizer = room_authorizer
        self._call_timeout = call_timeout
        self._retry_backoff = retry_backoff
        self.on_logout = on_logout

        self._events: dict[str, _EventSpec] = {
            MessageType.AUTH.value: _EventSpec(AuthPayload, False, self._handle_auth),
            MessageType.JOIN_ROOM.value: _EventSpec(RoomPayload, True, self._handle_join_room),
            MessageType.LEAVE_ROOM.value: _EventSpec(RoomPayload, True, self._handle_leave_room),
            MessageType.ROOM_MESSAGE.value: _EventSpec(RoomMessagePayload, True, self._handle_room_message),
            MessageType.PRESENCE_PING.value: _EventSpec(PresencePingPayload, False, self._handle_presence_ping),
            MessageType.LOGOUT.value: _EventSpec(LogoutPayload, True, self._handle_logout),
            MessageType.PING.value: _EventSpec(KeepalivePayload, False, self._handle_ping),
            MessageType.PONG.value: _EventSpec(KeepalivePayload, False, self._handle_pong),
        }

    @property
    def event_names(self) -> list[str]:
        return list(self._events)

    async def handle(
        self,
        connection_id: str,
        event_name: str,
        payload: Any,
    ) -> None:
        """
        Handle one inbound event, replying with an error frame on failure.

        Never raises RealtimeError; those are reported to the sender only.
        """
        try:
            await self.dispatch(connection_id, event_name, payload)
        except RealtimeError as exc:
            await self._reject(connection_id, event_name, exc)

    async def dispatch(
        self,
        connection_id: str,
        event_name: str,
        payload: Any,
    ) -> None:
        """Like handle, but lets RealtimeError propagate."""
        connection = self._registry.lookup(connection_id)
        if connection is None:
            raise UnknownConnectionError(f"Unknown connection: {connection_id}")
        connection.touch()

        spec = self._events.get(event_name)
        if spec is None:
            raise InvalidPayloadError(f"Unsupported event: {event_name}")

        if spec.requires_auth and not connection.is_authenticated:
            raise UnauthenticatedError(f"Authentication required for {event_name}")

        try:
            data = spec.model.model_validate(payload if payload is not None else {})
        except ValidationError as e:
            raise InvalidPayloadError(_describe(e))

        logger.debug(f"Routing message: connection={connection_id}, type={event_name}")
        await spec.handler(connection, data)

    async def _reject(self, connection_id: str, event_name: str, exc: RealtimeError) -> None:
        if isinstance(exc, ConnectionClosedError):
            logger.debug(f"Dropped {event_name} for closed connection {connection_id}")
            return

        logger.info(f"Rejected {event_name} from {connection_id}: {exc.code} - {exc.message}")
        await self._transport.send(
            connection_id,
            MessageType.ERROR.value,
            {**exc.to_payload(), "event": event_name},
        )

    def _describe_member(self, connection_id: str) -> dict[str, Any]:
        connection = self._registry.lookup(connection_id)
        identity = connection.identity if connection else None
        return {
            "connection_id": connection_id,
            "user_id": identity.user_id if identity else None,
            "user_name": identity.display_name if identity else None,
        }

    def _presence_event(
        self,
        connection: Connection,
        action: PresenceAction,
        room_id: str,
        member_count: int,
        **extra: Any,
    ) -> PresenceEvent:
        identity = connection.identity
        return PresenceEvent(
            action=action,
            room_id=room_id,
            connection_id=connection.connection_id,
            user_id=identity.user_id if identity else None,
            user_name=identity.display_name if identity else None,
            member_count=member_count,
            **extra,
        )

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _handle_auth(self, connection: Connection, data: AuthPayload) -> None:
        verifier = self._verifier
        identity = await call_with_timeout(
            lambda: verifier.verify(data.token),
            timeout=self._call_timeout,
            backoff=self._retry_backoff,
            operation="Token verification",
        )

        if connection.user_id is not None and connection.user_id != identity.user_id:
            raise UnauthenticatedError("Token belongs to a different user")

        # Raises if the connection closed while verification was in flight
        self._registry.bind_identity(connection.connection_id, identity)
        logger.info(f"Connection {connection.connection_id} authenticated as user {identity.user_id}")

        await self._transport.send(
            connection.connection_id,
            MessageType.AUTHENTICATED.value,
            {
                "connection_id": connection.connection_id,
                "user_id": identity.user_id,
                "user_name": identity.display_name,
            },
        )

    async def _handle_join_room(self, connection: Connection, data: RoomPayload) -> None:
        room_id = data.room_id

        if self._room_authorizer is not None:
            authorizer = self._room_authorizer
            identity = connection.identity
            is_authorized = await call_with_timeout(
                lambda: authorizer(identity, room_id),
                timeout=self._call_timeout,
                backoff=self._retry_backoff,
                operation="Room access check",
            )
            if not is_authorized:
                logger.warning(f"Room access denied: user={connection.user_id}, room={room_id}")
                raise ForbiddenError(f"Access denied to room: {room_id}")

        result = await self._rooms.join(room_id, connection.connection_id)

        # Confirm to the joining connection
        await self._transport.send(
            connection.connection_id,
            MessageType.ROOM_JOINED.value,
            {
                "room_id": room_id,
                "user_count": len(result.members),
                "created": result.created,
                "joined": result.joined,
                "members": [self._describe_member(cid) for cid in sorted(result.members)],
            },
        )

        if not result.joined:
            return

        logger.info(f"User {connection.user_id} joined room {room_id} (room_size={len(result.members)})")

        # Everyone in the join-time snapshot, joiner included
        await self._broadcaster.deliver(
            room_id,
            result.members,
            self._presence_event(connection, PresenceAction.JOINED, room_id, len(result.members)),
        )

    async def _handle_leave_room(self, connection: Connection, data: RoomPayload) -> None:
        room_id = data.room_id
        result = await self._rooms.leave(room_id, connection.connection_id)

        logger.info(f"User {connection.user_id} left room {room_id} (room_size={len(result.remaining)})")

        await self._transport.send(
            connection.connection_id,
            MessageType.ROOM_LEFT.value,
            {"room_id": room_id},
        )
        await self._broadcaster.deliver(
            room_id,
            result.remaining,
            self._presence_event(
                connection,
                PresenceAction.LEFT,
                room_id,
                len(result.remaining),
                reason=LeaveReason.LEFT,
            ),
        )

    async def _handle_room_message(self, connection: Connection, data: RoomMessagePayload) -> None:
        identity = connection.identity
        message = {
            "room_id": data.room_id,
            "connection_id": connection.connection_id,
            "user_id": identity.user_id if identity else None,
            "user_name": identity.display_name if identity else None,
            "text": data.text,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        # Membership is checked inside the same serialized step as the snapshot
        await self._broadcaster.broadcast(
            data.room_id,
            (MessageType.ROOM_MESSAGE.value, message),
            require_member=connection.connection_id,
        )

    async def _handle_presence_ping(self, connection: Connection, data: PresencePingPayload) -> None:
        if data.room_id is not None:
            if not connection.is_authenticated:
                raise UnauthenticatedError("Authentication required for room presence")
            if data.status is not None:
                members = await self._rooms.snapshot(
                    data.room_id, require_member=connection.connection_id
                )
                await self._broadcaster.deliver(
                    data.room_id,
                    members,
                    self._presence_event(
                        connection,
                        PresenceAction.STATUS,
                        data.room_id,
                        len(members),
                        status=data.status,
                    ),
                )
            else:
                await self._rooms.snapshot(data.room_id, require_member=connection.connection_id)

        await self._transport.send(
            connection.connection_id,
            MessageType.PONG.value,
            {"timestamp": datetime.now(timezone.utc).isoformat()},
        )

    async def _handle_logout(self, connection: Connection, data: LogoutPayload) -> None:
        logger.info(f"Logout requested by user {connection.user_id} on {connection.connection_id}")
        if self.on_logout is not None:
            await self.on_logout(connection.connection_id)

    async def _handle_ping(self, connection: Connection, data: KeepalivePayload) -> None:
        await self._transport.send(
            connection.connection_id,
            MessageType.PONG.value,
            {"timestamp": datetime.now(timezone.utc).isoformat()},
        )

    async def _handle_pong(self, connection: Connection, data: KeepalivePayload) -> None:
        # Reply to a server ping; dispatch already refreshed last_activity
        pass
