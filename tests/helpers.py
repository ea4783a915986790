"""Helpers shared by the realtime tests."""

from typing import Any, Optional
from unittest.mock import AsyncMock

from studyhub.services.auth_service import create_access_token
from studyhub.websocket import Coordinator, ConnectionRegistry, WebSocketTransport


def make_token(user_id: str, name: Optional[str] = None) -> str:
    """Create a signed access token for a user."""
    claims = {"sub": user_id, "email": f"{user_id}@example.com"}
    if name:
        claims["name"] = name
    return create_access_token(data=claims)


def frames(ws: AsyncMock, message_type: Optional[str] = None) -> list[dict[str, Any]]:
    """Frames sent to a mock websocket, optionally filtered by type."""
    sent = [call.args[0] for call in ws.send_json.call_args_list]
    if message_type is None:
        return sent
    return [frame for frame in sent if frame["type"] == message_type]


def register_socket(
    registry: ConnectionRegistry,
    transport: WebSocketTransport,
    connection_id: str,
) -> AsyncMock:
    """Register a connection backed by a mock websocket."""
    ws = AsyncMock()
    transport.attach(connection_id, ws)
    registry.register(connection_id)
    return ws


async def open_connection(
    coordinator: Coordinator,
    connection_id: str,
    user_id: Optional[str] = None,
    name: Optional[str] = None,
) -> AsyncMock:
    """Connect (and optionally authenticate) a mock websocket."""
    ws = AsyncMock()
    coordinator.transport.attach(connection_id, ws)
    await coordinator.connect(connection_id)
    if user_id is not None:
        await coordinator.message(connection_id, "auth", {"token": make_token(user_id, name)})
    return ws
