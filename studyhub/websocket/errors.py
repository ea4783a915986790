"""Errors raised by the realtime coordination layer.

Every error carries a wire code. The event router turns any RealtimeError
into an error frame sent back to the originating connection only.
"""

from typing import Any


class RealtimeError(Exception):
    """Base class for recoverable realtime errors."""

    code = "REALTIME_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_payload(self) -> dict[str, Any]:
        """Payload of the error frame sent to the client."""
        return {"error": self.code, "message": self.message}


class DuplicateConnectionError(RealtimeError):
    code = "DUPLICATE_CONNECTION"


class UnknownConnectionError(RealtimeError):
    code = "UNKNOWN_CONNECTION"


class AlreadyMemberError(RealtimeError):
    code = "ALREADY_MEMBER"


class NotMemberError(RealtimeError):
    code = "NOT_MEMBER"


class RoomNotFoundError(RealtimeError):
    code = "ROOM_NOT_FOUND"


class UnauthenticatedError(RealtimeError):
    code = "UNAUTHENTICATED"


class InvalidPayloadError(RealtimeError):
    code = "INVALID_PAYLOAD"


class OperationTimeoutError(RealtimeError):
    code = "TIMEOUT"


class AuthError(RealtimeError):
    """Token could not be verified."""

    code = "AUTH_FAILED"


class ForbiddenError(RealtimeError):
    """Authenticated, but not allowed into the room."""

    code = "UNAUTHORIZED"


class ConnectionClosedError(RealtimeError):
    """Queued work dropped because its connection went away."""

    code = "CONNECTION_CLOSED"


__all__ = [
    "RealtimeError",
    "DuplicateConnectionError",
    "UnknownConnectionError",
    "AlreadyMemberError",
    "NotMemberError",
    "RoomNotFoundError",
    "UnauthenticatedError",
    "InvalidPayloadError",
    "OperationTimeoutError",
    "AuthError",
    "ForbiddenError",
    "ConnectionClosedError",
]
