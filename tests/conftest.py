"""Shared pytest fixtures for backend tests."""

import os
import sys
from typing import Generator
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Settings require a JWT secret; set it before importing the app
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-realtime-tests")

from studyhub.main import create_app
from studyhub.services.auth_service import JWTIdentityVerifier
from studyhub.websocket import (
    ConnectionRegistry,
    Coordinator,
    PresenceBroadcaster,
    RoomManager,
    WebSocketTransport,
)


@pytest.fixture
def registry() -> ConnectionRegistry:
    """Create an empty connection registry."""
    return ConnectionRegistry()


@pytest.fixture
def rooms(registry: ConnectionRegistry) -> RoomManager:
    """Create a room manager that deletes empty rooms immediately."""
    return RoomManager(registry)


@pytest.fixture
def transport() -> WebSocketTransport:
    """Create a transport with no sockets attached."""
    return WebSocketTransport()


@pytest.fixture
def broadcaster(rooms: RoomManager, transport: WebSocketTransport) -> PresenceBroadcaster:
    return PresenceBroadcaster(rooms, transport)


@pytest.fixture
def coordinator(transport: WebSocketTransport) -> Coordinator:
    """Create a coordinator with JWT verification and no room authorizer."""
    return Coordinator(transport, JWTIdentityVerifier())


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """Create a test client with the database check patched out."""
    with patch("studyhub.main.verify_database_connection", new=AsyncMock()), \
            patch("studyhub.main.dispose_engine", new=AsyncMock()):
        with TestClient(create_app()) as test_client:
            yield test_client
