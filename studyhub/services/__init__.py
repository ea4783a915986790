"""Services used by the HTTP and realtime layers."""

from .auth_service import (
    Identity,
    JWTIdentityVerifier,
    TokenData,
    create_access_token,
    decode_access_token,
)

__all__ = [
    "Identity",
    "JWTIdentityVerifier",
    "TokenData",
    "create_access_token",
    "decode_access_token",
]
