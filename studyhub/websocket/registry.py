"""Registry of live realtime connections.

The registry is the only owner of Connection objects. Room membership on
a connection is changed exclusively through attach_room/detach_room, which
the room manager calls from inside its serialized per-room path.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional

from .errors import DuplicateConnectionError, UnknownConnectionError

if TYPE_CHECKING:
    from ..services.auth_service import Identity

logger = logging.getLogger(__name__)

# Retired ids remembered so a closed connection id is never registered again
RETIRED_ID_CAPACITY = 10000


class ConnectionState(str, Enum):
    """Lifecycle of a single connection."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


@dataclass
class Connection:
    """A live connection and the identity bound to it."""

    connection_id: str
    identity: Optional["Identity"] = None
    state: ConnectionState = ConnectionState.CONNECTING
    rooms: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: float = field(default_factory=time.monotonic)

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None

    def touch(self) -> None:
        self.last_activity = time.monotonic()


class ConnectionRegistry:
    """
    Tracks live connections by transport-assigned id.

    All methods are synchronous: each one is a single critical section on
    the event loop, which serializes operations per connection id.
    """

    def __init__(self, retired_capacity: int = RETIRED_ID_CAPACITY) -> None:
        self._connections: dict[str, Connection] = {}
        # Map of user_id -> connection ids (a user may have several tabs open)
        self._user_connections: dict[str, set[str]] = {}
        self._retired: OrderedDict[str, None] = OrderedDict()
        self._retired_capacity = retired_capacity

    @property
    def total_connections(self) -> int:
        """Get total number of live connections."""
        return len(self._connections)

    @property
    def authenticated_connections(self) -> int:
        return sum(1 for c in self._connections.values() if c.is_authenticated)

    def user_connection_count(self, user_id: str) -> int:
        """Get number of live connections for a user."""
        return len(self._user_connections.get(user_id, ()))

    def connections_for_user(self, user_id: str) -> set[str]:
        return set(self._user_connections.get(user_id, ()))

    def register(
        self,
        connection_id: str,
        identity: Optional["Identity"] = None,
    ) -> Connection:
        """
        Register a new connection.

        Raises:
            DuplicateConnectionError: If the id is live or was retired
        """
        if connection_id in self._connections or connection_id in self._retired:
            raise DuplicateConnectionError(f"Connection {connection_id} already registered")

        connection = Connection(connection_id=connection_id, state=ConnectionState.CONNECTED)
        self._connections[connection_id] = connection
        if identity is not None:
            self._bind(connection, identity)

        logger.debug(f"Registered connection {connection_id}")
        return connection

    def bind_identity(self, connection_id: str, identity: "Identity") -> Connection:
        """
        Bind an authenticated identity to a connection.

        Raises:
            UnknownConnectionError: If the connection is not registered
        """
        connection = self._require(connection_id)
        previous = connection.user_id
        if previous is not None and previous != identity.user_id:
            self._forget_user(connection)
        self._bind(connection, identity)
        return connection

    def unregister(self, connection_id: str) -> set[str]:
        """
        Remove a connection.

        Idempotent: unregistering an unknown or already removed id returns
        an empty set.

        Returns:
            The rooms the connection was a member of
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return set()

        self._forget_user(connection)
        connection.state = ConnectionState.DISCONNECTED
        self._retire(connection_id)

        rooms = set(connection.rooms)
        logger.debug(f"Unregistered connection {connection_id} (rooms={len(rooms)})")
        return rooms

    def lookup(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def is_retired(self, connection_id: str) -> bool:
        return connection_id in self._retired

    def touch(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.touch()

    def attach_room(self, connection_id: str, room_id: str) -> None:
        """Record a joined room on the connection (room manager only)."""
        self._require(connection_id).rooms.add(room_id)

    def detach_room(self, connection_id: str, room_id: str) -> None:
        """Forget a joined room (room manager only). Unknown ids are ignored."""
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.rooms.discard(room_id)

    def idle_connections(self, cutoff: float) -> list[str]:
        """Ids of connections with no activity since `cutoff` (monotonic)."""
        return [
            cid for cid, conn in self._connections.items()
            if conn.last_activity < cutoff
        ]

    def connection_ids(self) -> list[str]:
        return list(self._connections)

    def _require(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise UnknownConnectionError(f"Unknown connection: {connection_id}")
        return connection

    def _bind(self, connection: Connection, identity: "Identity") -> None:
        connection.identity = identity
        connection.state = ConnectionState.AUTHENTICATED
        self._user_connections.setdefault(identity.user_id, set()).add(
            connection.connection_id
        )

    def _forget_user(self, connection: Connection) -> None:
        user_id = connection.user_id
        if user_id is None or user_id not in self._user_connections:
            return
        self._user_connections[user_id].discard(connection.connection_id)
        if not self._user_connections[user_id]:
            del self._user_connections[user_id]

    def _retire(self, connection_id: str) -> None:
        self._retired[connection_id] = None
        while len(self._retired) > self._retired_capacity:
            self._retired.popitem(last=False)
