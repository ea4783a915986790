"""Room membership for session rooms and study sessions.

Every mutation of a room's member set, and every member snapshot taken for
a broadcast, runs through a per-room SerialTaskQueue. Work on different
rooms proceeds concurrently.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from .errors import (
    AlreadyMemberError,
    NotMemberError,
    RoomNotFoundError,
    UnknownConnectionError,
)
from .registry import ConnectionRegistry
from .serial import SerialTaskQueue
from .timeouts import call_with_timeout

logger = logging.getLogger(__name__)

# (room_id) -> metadata for a newly created room, or None
RoomMetadataLoader = Callable[[str], Awaitable[Optional[dict[str, Any]]]]


def get_session_room(session_room_id: UUID | str) -> str:
    """
    Get the room ID for a session room.

    Returns:
        str: Room ID in format 'session-room:{id}'
    """
    return f"session-room:{session_room_id}"


def get_study_session_room(study_session_id: UUID | str) -> str:
    """
    Get the room ID for a study session.

    Returns:
        str: Room ID in format 'study-session:{id}'
    """
    return f"study-session:{study_session_id}"


def get_user_room(user_id: UUID | str) -> str:
    """Get the private room ID for a user."""
    return f"user:{user_id}"


@dataclass
class Room:
    """A room and its current members."""

    room_id: str
    members: set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)
    expiry: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


@dataclass(frozen=True)
class JoinResult:
    """Outcome of a join, with the member snapshot taken at join time."""

    room_id: str
    members: frozenset[str]
    created: bool
    joined: bool = True


@dataclass(frozen=True)
class LeaveResult:
    """Outcome of a leave or eviction."""

    room_id: str
    remaining: frozenset[str]
    removed: bool = True
    room_closed: bool = False


class RoomManager:
    """
    Tracks which connections are in which rooms.

    Args:
        registry: Connection registry, kept in sync with membership
        queue: Per-room serializer (a private one is created if omitted)
        grace_period: Seconds an emptied room is kept before deletion; 0 deletes at once
        strict_rejoin: Raise AlreadyMemberError on redundant joins instead of a no-op
        metadata_loader: Optional async lookup run when a room is created
        lookup_timeout: Timeout for metadata_loader
        retry_backoff: Delay before retrying a timed-out metadata lookup
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        queue: Optional[SerialTaskQueue] = None,
        grace_period: float = 0.0,
        strict_rejoin: bool = True,
        metadata_loader: Optional[RoomMetadataLoader] = None,
        lookup_timeout: float = 5.0,
        retry_backoff: float = 0.2,
    ) -> None:
        self._registry = registry
        self._queue = queue or SerialTaskQueue()
        self._rooms: dict[str, Room] = {}
        self.grace_period = grace_period
        self.strict_rejoin = strict_rejoin
        self._metadata_loader = metadata_loader
        self._lookup_timeout = lookup_timeout
        self._retry_backoff = retry_backoff

    @property
    def queue(self) -> SerialTaskQueue:
        return self._queue

    @property
    def total_rooms(self) -> int:
        """Get total number of rooms, including rooms in their grace period."""
        return len(self._rooms)

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def get_room_count(self, room_id: str) -> int:
        """Get number of connections in a room (0 if it does not exist)."""
        room = self._rooms.get(room_id)
        return len(room.members) if room else 0

    def members_of(self, room_id: str) -> set[str]:
        """
        Get the member connection ids of a room.

        Raises:
            RoomNotFoundError: If the room never existed or was deleted
        """
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFoundError(f"Room not found: {room_id}")
        return set(room.members)

    def rooms_of(self, connection_id: str) -> set[str]:
        """Get the rooms a connection has joined (empty if unknown)."""
        connection = self._registry.lookup(connection_id)
        return set(connection.rooms) if connection else set()

    def is_member(self, room_id: str, connection_id: str) -> bool:
        room = self._rooms.get(room_id)
        return room is not None and connection_id in room.members

    async def join(self, room_id: str, connection_id: str) -> JoinResult:
        """
        Add a connection to a room, creating the room if needed.

        Raises:
            UnknownConnectionError: If the connection is not registered
            AlreadyMemberError: On a redundant join with strict_rejoin on
            OperationTimeoutError: If the metadata lookup for a new room timed out
        """
        return await self._queue.submit(
            room_id,
            lambda: self._join(room_id, connection_id),
            owner=connection_id,
        )

    async def leave(self, room_id: str, connection_id: str) -> LeaveResult:
        """
        Remove a connection from a room.

        Raises:
            RoomNotFoundError: If the room does not exist
            NotMemberError: If the connection is not a member
        """
        return await self._queue.submit(
            room_id,
            lambda: self._leave(room_id, connection_id, strict=True),
            owner=connection_id,
        )

    async def evict(self, room_id: str, connection_id: str) -> LeaveResult:
        """Remove a connection from a room without raising (disconnect cascade)."""
        return await self._queue.submit(
            room_id,
            lambda: self._leave(room_id, connection_id, strict=False),
        )

    async def snapshot(
        self,
        room_id: str,
        require_member: Optional[str] = None,
    ) -> frozenset[str]:
        """
        Take a member snapshot ordered with joins and leaves on the room.

        Args:
            room_id: The room identifier
            require_member: If given, fail unless this connection is a member

        Raises:
            RoomNotFoundError: If the room does not exist
            NotMemberError: If require_member is not in the room
        """
        return await self._queue.submit(
            room_id,
            lambda: self._snapshot(room_id, require_member),
            owner=require_member,
        )

    async def _join(self, room_id: str, connection_id: str) -> JoinResult:
        if self._registry.lookup(connection_id) is None:
            raise UnknownConnectionError(f"Unknown connection: {connection_id}")

        room = self._rooms.get(room_id)
        created = False

        if room is None:
            metadata = await self._load_metadata(room_id)
            # The connection may have closed while the lookup was in flight
            if self._registry.lookup(connection_id) is None:
                raise UnknownConnectionError(f"Unknown connection: {connection_id}")
            room = Room(room_id=room_id, metadata=metadata or {})
            self._rooms[room_id] = room
            created = True
            logger.info(f"Room created: {room_id}")
        elif connection_id in room.members:
            if self.strict_rejoin:
                raise AlreadyMemberError(f"Already a member of room: {room_id}")
            return JoinResult(
                room_id=room_id,
                members=frozenset(room.members),
                created=False,
                joined=False,
            )

        self._cancel_expiry(room)
        room.members.add(connection_id)
        self._registry.attach_room(connection_id, room_id)

        logger.debug(f"Connection {connection_id} joined room {room_id} (room_size={len(room.members)})")
        return JoinResult(room_id=room_id, members=frozenset(room.members), created=created)

    async def _leave(self, room_id: str, connection_id: str, strict: bool) -> LeaveResult:
        room = self._rooms.get(room_id)
        if room is None:
            if strict:
                raise RoomNotFoundError(f"Room not found: {room_id}")
            self._registry.detach_room(connection_id, room_id)
            return LeaveResult(room_id=room_id, remaining=frozenset(), removed=False)

        if connection_id not in room.members:
            if strict:
                raise NotMemberError(f"Not a member of room: {room_id}")
            return LeaveResult(
                room_id=room_id,
                remaining=frozenset(room.members),
                removed=False,
            )

        room.members.discard(connection_id)
        self._registry.detach_room(connection_id, room_id)

        closed = False
        if not room.members:
            closed = self._release(room)

        logger.debug(f"Connection {connection_id} left room {room_id} (room_size={len(room.members)})")
        return LeaveResult(
            room_id=room_id,
            remaining=frozenset(room.members),
            room_closed=closed,
        )

    async def _snapshot(self, room_id: str, require_member: Optional[str]) -> frozenset[str]:
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFoundError(f"Room not found: {room_id}")
        if require_member is not None and require_member not in room.members:
            raise NotMemberError(f"Not a member of room: {room_id}")
        return frozenset(room.members)

    async def _load_metadata(self, room_id: str) -> Optional[dict[str, Any]]:
        if self._metadata_loader is None:
            return None
        loader = self._metadata_loader
        return await call_with_timeout(
            lambda: loader(room_id),
            timeout=self._lookup_timeout,
            backoff=self._retry_backoff,
            operation=f"Room metadata lookup for {room_id}",
        )

    def _release(self, room: Room) -> bool:
        """Delete an empty room now, or schedule deletion. Returns True if deleted now."""
        if self.grace_period <= 0:
            del self._rooms[room.room_id]
            logger.info(f"Room closed: {room.room_id}")
            return True

        loop = asyncio.get_running_loop()
        room.expiry = loop.call_later(self.grace_period, self._expire, room)
        return False

    def _expire(self, room: Room) -> None:
        room.expiry = None
        # Revived or already replaced
        if room.members or self._rooms.get(room.room_id) is not room:
            return
        del self._rooms[room.room_id]
        logger.info(f"Room closed after grace period: {room.room_id}")

    def _cancel_expiry(self, room: Room) -> None:
        if room.expiry is not None:
            room.expiry.cancel()
            room.expiry = None

    def close(self) -> None:
        """Cancel pending room expiries and forget all rooms."""
        for room in self._rooms.values():
            self._cancel_expiry(room)
        self._rooms.clear()
