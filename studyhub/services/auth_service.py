"""JWT token handling and identity verification for realtime connections.

Tokens are issued by the planner's HTTP API. The realtime layer only reads
them: `sub` is the user id, `email` and `name` are optional display claims.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from ..config import settings
from ..websocket.errors import AuthError


class Identity(BaseModel):
    """Authenticated user bound to a connection."""

    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class TokenData(BaseModel):
    """Claims the realtime layer reads from an access token."""

    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


def create_access_token(
    data: dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Sign a token carrying `data` plus an `exp` claim.

    Used by tests and tooling to mint tokens the verifier accepts. The
    lifetime defaults to JWT_EXPIRATION_MINUTES.
    """
    lifetime = expires_delta or timedelta(minutes=settings.jwt_expiration_minutes)
    claims = {**data, "exp": datetime.now(timezone.utc) + lifetime}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[TokenData]:
    """
    Read the claims of a signed, unexpired token.

    Returns:
        TokenData, or None if the signature, expiry, subject, or claim types are bad
    """
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    subject = claims.get("sub")
    if subject is None:
        return None

    try:
        return TokenData(user_id=str(subject), email=claims.get("email"), name=claims.get("name"))
    except ValidationError:
        # Signed, but display claims are not strings
        return None


class JWTIdentityVerifier:
    """
    Verifies bearer tokens presented by realtime clients.

    The router awaits `verify` under a timeout, so alternative verifiers
    (remote introspection, session lookups) can be swapped in as long as
    they expose the same coroutine.
    """

    async def verify(self, token: str) -> Identity:
        """
        Resolve a token to an identity.

        Raises:
            AuthError: If the token is malformed, expired, or has no subject
        """
        token_data = decode_access_token(token)
        if token_data is None or token_data.user_id is None:
            raise AuthError("Invalid or expired token")
        return Identity(
            user_id=token_data.user_id,
            email=token_data.email,
            display_name=token_data.name,
        )
