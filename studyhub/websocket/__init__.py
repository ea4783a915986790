"""WebSocket module for real-time session rooms and study sessions."""

from .coordinator import Coordinator
from .errors import (
    AlreadyMemberError,
    AuthError,
    ConnectionClosedError,
    DuplicateConnectionError,
    ForbiddenError,
    InvalidPayloadError,
    NotMemberError,
    OperationTimeoutError,
    RealtimeError,
    RoomNotFoundError,
    UnauthenticatedError,
    UnknownConnectionError,
)
from .handlers import EventRouter
from .messages import MessageType, build_message, error_message
from .presence import (
    BroadcastResult,
    LeaveReason,
    PresenceAction,
    PresenceBroadcaster,
    PresenceEvent,
)
from .registry import Connection, ConnectionRegistry, ConnectionState
from .room_auth import check_room_access, is_valid_room_id
from .rooms import (
    JoinResult,
    LeaveResult,
    Room,
    RoomManager,
    get_session_room,
    get_study_session_room,
    get_user_room,
)
from .serial import SerialTaskQueue
from .transport import Transport, WebSocketTransport

__all__ = [
    # Coordinator
    "Coordinator",
    # Registry
    "Connection",
    "ConnectionRegistry",
    "ConnectionState",
    # Rooms
    "JoinResult",
    "LeaveResult",
    "Room",
    "RoomManager",
    "SerialTaskQueue",
    "get_session_room",
    "get_study_session_room",
    "get_user_room",
    # Routing and presence
    "EventRouter",
    "BroadcastResult",
    "LeaveReason",
    "PresenceAction",
    "PresenceBroadcaster",
    "PresenceEvent",
    # Transport
    "MessageType",
    "Transport",
    "WebSocketTransport",
    "build_message",
    "error_message",
    # Room authorization
    "check_room_access",
    "is_valid_room_id",
    # Errors
    "RealtimeError",
    "AlreadyMemberError",
    "AuthError",
    "ConnectionClosedError",
    "DuplicateConnectionError",
    "ForbiddenError",
    "InvalidPayloadError",
    "NotMemberError",
    "OperationTimeoutError",
    "RoomNotFoundError",
    "UnauthenticatedError",
    "UnknownConnectionError",
]
