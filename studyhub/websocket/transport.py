"""Outbound side of the transport boundary.

The coordinator never touches sockets directly. It addresses connections
by id through a Transport, so tests and alternative transports can stand in
for FastAPI WebSockets.
"""

import logging
from typing import Any, Optional, Protocol

from fastapi import WebSocket

from .messages import build_message

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """What the coordinator needs from the realtime transport."""

    async def send(self, connection_id: str, event: str, payload: dict[str, Any]) -> bool:
        """Deliver one frame. Returns False if the connection is unreachable."""
        ...

    async def close(self, connection_id: str, code: int = 1000, reason: str = "") -> None:
        """Close the underlying connection, if still open."""
        ...


class WebSocketTransport:
    """Transport backed by FastAPI WebSocket objects."""

    def __init__(self) -> None:
        self._sockets: dict[str, WebSocket] = {}

    @property
    def total_sockets(self) -> int:
        return len(self._sockets)

    def attach(self, connection_id: str, websocket: WebSocket) -> None:
        self._sockets[connection_id] = websocket

    def detach(self, connection_id: str) -> Optional[WebSocket]:
        return self._sockets.pop(connection_id, None)

    def get_socket(self, connection_id: str) -> Optional[WebSocket]:
        return self._sockets.get(connection_id)

    async def send(self, connection_id: str, event: str, payload: dict[str, Any]) -> bool:
        """
        Send a message to a specific connection.

        Returns:
            bool: True if sent successfully, False otherwise
        """
        websocket = self._sockets.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(build_message(event, payload))
            return True
        except Exception as e:
            logger.debug(f"Send to {connection_id} failed: {e}")
            return False

    async def close(self, connection_id: str, code: int = 1000, reason: str = "") -> None:
        websocket = self._sockets.get(connection_id)
        if websocket is None:
            return
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as e:
            # Already closed by the peer
            logger.debug(f"Close of {connection_id} failed: {e}")
