"""Room authorization for WebSocket connections.

Validates that users may join the rooms they ask for, before the room
manager is touched.
"""

import logging
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..services.auth_service import Identity

logger = logging.getLogger(__name__)

ROOM_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]{1,128}$")

# Room kinds any authenticated user may join
SHARED_ROOM_TYPES = frozenset({"session-room", "study-session"})


def is_valid_room_id(room_id: str) -> bool:
    """Check the room id alphabet and length."""
    return bool(room_id) and ROOM_ID_PATTERN.fullmatch(room_id) is not None


async def check_room_access(identity: "Identity", room_id: str) -> bool:
    """
    Check if a user has access to a specific room.

    Room ID formats:
    - session-room:{id} - Session room (any authenticated user)
    - study-session:{id} - Study session room (any authenticated user)
    - user:{id} - User-specific room (only for own user)

    Args:
        identity: The authenticated user
        room_id: The room identifier

    Returns:
        bool: True if user has access, False otherwise
    """
    if not is_valid_room_id(room_id) or ":" not in room_id:
        logger.warning(f"[Room Auth] DENIED - invalid room format: {room_id}")
        return False

    room_type, resource_id = room_id.split(":", 1)
    if not resource_id:
        logger.warning(f"[Room Auth] DENIED - missing resource id: {room_id}")
        return False

    if room_type == "user":
        return resource_id == identity.user_id

    if room_type in SHARED_ROOM_TYPES:
        return True

    logger.warning(f"[Room Auth] DENIED - unknown room type: {room_type}")
    return False
