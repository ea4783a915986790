"""Wire message types for the realtime protocol.

Every frame is a JSON object: {"type": <MessageType>, "data": {...}}.
"""

from enum import Enum
from typing import Any


class MessageType(str, Enum):
    """WebSocket message types."""

    # Connection events
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"

    # Authentication
    AUTH = "auth"
    AUTHENTICATED = "authenticated"
    LOGOUT = "logout"

    # Room events
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    ROOM_JOINED = "room_joined"
    ROOM_LEFT = "room_left"
    ROOM_MESSAGE = "room_message"

    # Presence events (ephemeral)
    USER_PRESENCE = "user_presence"
    PRESENCE_PING = "presence_ping"

    # Ping/pong for keepalive
    PING = "ping"
    PONG = "pong"


def build_message(message_type: MessageType | str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build a wire frame."""
    event = message_type.value if isinstance(message_type, MessageType) else message_type
    return {"type": event, "data": data or {}}


def error_message(code: str, message: str) -> dict[str, Any]:
    """Build an error frame."""
    return build_message(MessageType.ERROR, {"error": code, "message": message})
