"""Presence fan-out for rooms.

Broadcasts are best-effort: a member that cannot be reached is reported
in the BroadcastResult and logged, and delivery to everyone else goes on.
Recipients are always a snapshot of the member set, so joins that land
after the snapshot never see the event.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from .messages import MessageType
from .rooms import RoomManager
from .transport import Transport

logger = logging.getLogger(__name__)


class PresenceAction(str, Enum):
    """Kind of presence transition."""

    JOINED = "joined"
    LEFT = "left"
    STATUS = "status"


class LeaveReason(str, Enum):
    """Why a connection left a room."""

    LEFT = "left"
    DISCONNECTED = "disconnected"
    TIMEOUT = "timeout"
    LOGOUT = "logout"


@dataclass
class PresenceEvent:
    """A membership or status change, delivered once and then discarded."""

    action: PresenceAction
    room_id: str
    connection_id: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    member_count: int = 0
    reason: Optional[LeaveReason] = None
    status: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "room_id": self.room_id,
            "action": self.action.value,
            "connection_id": self.connection_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "user_count": self.member_count,
            "timestamp": self.timestamp,
        }
        if self.reason is not None:
            payload["reason"] = self.reason.value
        if self.status is not None:
            payload["status"] = self.status
        return payload


@dataclass
class BroadcastResult:
    """Result of a broadcast operation."""

    room_id: str
    message_type: str
    recipients: int = 0
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


class PresenceBroadcaster:
    """Fans events out to the members of a room."""

    def __init__(self, rooms: RoomManager, transport: Transport) -> None:
        self._rooms = rooms
        self._transport = transport

    async def broadcast(
        self,
        room_id: str,
        event: PresenceEvent | tuple[str, dict[str, Any]],
        exclude: Optional[str] = None,
        require_member: Optional[str] = None,
    ) -> BroadcastResult:
        """
        Deliver an event to every current member of a room.

        The member set is snapshotted through the room's serialized queue,
        so the snapshot is ordered with joins and leaves on that room.

        Args:
            room_id: Target room
            event: A PresenceEvent, or an (event name, payload) pair
            exclude: Optional connection id to skip
            require_member: Fail with NotMemberError unless this connection is in the room

        Raises:
            RoomNotFoundError: If the room does not exist
            NotMemberError: If require_member is not a member
        """
        members = await self._rooms.snapshot(room_id, require_member=require_member)
        return await self.deliver(room_id, members, event, exclude=exclude)

    async def deliver(
        self,
        room_id: str,
        recipients: Iterable[str],
        event: PresenceEvent | tuple[str, dict[str, Any]],
        exclude: Optional[str] = None,
    ) -> BroadcastResult:
        """Deliver an event to an explicit recipient snapshot."""
        if isinstance(event, PresenceEvent):
            name, payload = MessageType.USER_PRESENCE.value, event.to_payload()
        else:
            name, payload = event

        targets = [cid for cid in recipients if cid != exclude]
        result = BroadcastResult(room_id=room_id, message_type=name, recipients=len(targets))
        if not targets:
            return result

        # Send to all connections concurrently
        outcomes = await asyncio.gather(
            *(self._transport.send(cid, name, payload) for cid in targets),
            return_exceptions=True,
        )
        for cid, outcome in zip(targets, outcomes):
            if outcome is True:
                result.delivered.append(cid)
            else:
                result.failed.append(cid)

        if result.failed:
            logger.info(
                f"Broadcast {name} to room {room_id}: "
                f"{len(result.failed)}/{len(targets)} unreachable"
            )
        logger.debug(
            f"Broadcast {name} to room {room_id}: "
            f"{len(result.delivered)}/{len(targets)} successful"
        )
        return result
