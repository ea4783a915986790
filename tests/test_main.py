"""Tests for the HTTP surface and the /ws endpoint."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI, Request, WebSocketDisconnect
from fastapi.testclient import TestClient

from helpers import frames, make_token
from studyhub.config import Settings
from studyhub.main import _serve_connection, create_app
from studyhub.middleware import BodySizeLimitMiddleware
from studyhub.services.auth_service import create_access_token


class TestHttp:
    """Tests for plain HTTP routes and middleware."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["message"] == "API is running"

    def test_security_headers(self, client):
        response = client.get("/")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
        assert response.headers["Referrer-Policy"] == "no-referrer"
        assert "Strict-Transport-Security" in response.headers

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["coordinator"]["running"] is True
        assert body["websocket"]["connections"] == 0
        assert body["database"] in ("connected", "unavailable")

    def test_unknown_route(self, client):
        response = client.get("/nope")

        assert response.status_code == 404
        assert response.json() == {"detail": "Not Found - /nope"}

    def test_body_too_large(self):
        app = create_app(Settings(jwt_secret="test-secret", max_body_bytes=10))
        client = TestClient(app)

        response = client.post("/", content=b"x" * 100)

        assert response.status_code == 413

    def test_chunked_body_too_large(self):
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return {"size": len(await request.body())}

        client = TestClient(BodySizeLimitMiddleware(app, max_bytes=10))

        # A generator body is sent chunked, without Content-Length
        response = client.post("/echo", content=iter([b"x" * 8, b"x" * 8]))
        assert response.status_code == 413

        response = client.post("/echo", content=iter([b"x" * 4, b"x" * 4]))
        assert response.status_code == 200
        assert response.json() == {"size": 8}

    def test_invalid_content_length(self):
        app = FastAPI()
        client = TestClient(BodySizeLimitMiddleware(app, max_bytes=10))

        response = client.post("/echo", content=b"x", headers={"Content-Length": "abc"})

        assert response.status_code == 400

    def test_startup_fails_without_database(self):
        failing = AsyncMock(side_effect=RuntimeError("Could not connect to database"))
        with patch("studyhub.main.verify_database_connection", new=failing):
            with pytest.raises(RuntimeError):
                with TestClient(create_app()):
                    pass


class TestWebSocketEndpoint:
    """End-to-end tests over the /ws endpoint."""

    def test_query_token_auth(self, client):
        with client.websocket_connect(f"/ws?token={make_token('u1', 'Ada')}") as ws:
            connected = ws.receive_json()
            assert connected["type"] == "connected"

            authenticated = ws.receive_json()
            assert authenticated["type"] == "authenticated"
            assert authenticated["data"]["user_id"] == "u1"
            assert authenticated["data"]["connection_id"] == connected["data"]["connection_id"]

    def test_auth_event(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "auth", "data": {"token": make_token("u1")}})

            assert ws.receive_json()["type"] == "authenticated"

    def test_bad_query_token(self, client):
        with client.websocket_connect("/ws?token=garbage") as ws:
            ws.receive_json()
            error = ws.receive_json()

            assert error["type"] == "error"
            assert error["data"]["error"] == "AUTH_FAILED"

    def test_invalid_json(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("{not json")

            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["data"]["error"] == "INVALID_JSON"

    def test_frame_without_type(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"data": {}})

            assert ws.receive_json()["data"]["error"] == "INVALID_PAYLOAD"

    def test_join_requires_auth(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "join_room", "data": {"room_id": "study-session:1"}})

            error = ws.receive_json()
            assert error["data"]["error"] == "UNAUTHENTICATED"
            assert error["data"]["event"] == "join_room"

    def test_two_clients_share_a_room(self, client):
        room = {"room_id": "study-session:1"}

        with client.websocket_connect(f"/ws?token={make_token('u1', 'Ada')}") as ws1:
            ws1.receive_json()
            ws1.receive_json()
            ws1.send_json({"type": "join_room", "data": room})
            assert ws1.receive_json()["type"] == "room_joined"
            assert ws1.receive_json()["data"]["action"] == "joined"

            with client.websocket_connect(f"/ws?token={make_token('u2', 'Bob')}") as ws2:
                ws2.receive_json()
                ws2.receive_json()
                ws2.send_json({"type": "join_room", "data": room})

                joined = ws2.receive_json()
                assert joined["type"] == "room_joined"
                assert joined["data"]["user_count"] == 2
                assert ws2.receive_json()["type"] == "user_presence"

                presence = ws1.receive_json()
                assert presence["type"] == "user_presence"
                assert presence["data"]["user_id"] == "u2"

                ws2.send_json({"type": "room_message", "data": {**room, "text": "hello"}})
                assert ws2.receive_json()["data"]["text"] == "hello"
                message = ws1.receive_json()
                assert message["type"] == "room_message"
                assert message["data"]["user_name"] == "Bob"

            left = ws1.receive_json()
            assert left["type"] == "user_presence"
            assert left["data"]["action"] == "left"
            assert left["data"]["reason"] == "disconnected"
            assert left["data"]["user_id"] == "u2"

    def test_logout(self, client):
        with client.websocket_connect(f"/ws?token={make_token('u1')}") as ws:
            ws.receive_json()
            ws.receive_json()
            ws.send_json({"type": "logout", "data": {}})

            frame = ws.receive_json()
            assert frame["type"] == "disconnected"
            assert frame["data"] == {"reason": "logout"}

        assert client.get("/health").json()["websocket"]["connections"] == 0


def receive_sequence(*steps):
    """Build a receive_text side effect: "hang" blocks, "close" disconnects."""
    remaining = list(steps)

    async def receive_text():
        step = remaining.pop(0) if remaining else "close"
        if step == "hang":
            await asyncio.sleep(1)
        if step == "close":
            raise WebSocketDisconnect(code=1000)
        return step

    return receive_text


class TestServeConnection:
    """Tests for the per-socket receive loop."""

    @pytest.fixture
    def config(self):
        return Settings(jwt_secret="test-secret", ws_receive_timeout=0.01, ws_ping_timeout=0.5)

    @pytest.mark.asyncio
    async def test_token_with_non_string_claims(self, coordinator, config):
        ws = AsyncMock()
        ws.receive_text.side_effect = receive_sequence("close")
        token = create_access_token({"sub": "u1", "email": 123})

        await _serve_connection(ws, token, coordinator, config)

        errors = frames(ws, "error")
        assert errors[0]["data"]["error"] == "AUTH_FAILED"
        assert coordinator.registry.total_connections == 0
        assert coordinator.transport.total_sockets == 0

    @pytest.mark.asyncio
    async def test_disconnect_during_ping_is_not_a_timeout(self, coordinator, config):
        ws = AsyncMock()
        ws.receive_text.side_effect = receive_sequence("hang", "close")

        await _serve_connection(ws, None, coordinator, config)

        assert len(frames(ws, "ping")) == 1
        assert all(call.kwargs.get("code") != 4008 for call in ws.close.call_args_list)
        assert coordinator.registry.total_connections == 0
        assert coordinator.transport.total_sockets == 0

    @pytest.mark.asyncio
    async def test_frame_after_ping_keeps_connection(self, coordinator, config):
        ws = AsyncMock()
        ws.receive_text.side_effect = receive_sequence("hang", '{"type": "pong"}', "close")

        await _serve_connection(ws, None, coordinator, config)

        assert frames(ws, "error") == []
        ws.close.assert_not_called()

    @pytest.mark.asyncio
    async def test_silent_peer_times_out(self, coordinator):
        config = Settings(jwt_secret="test-secret", ws_receive_timeout=0.01, ws_ping_timeout=0.01)
        ws = AsyncMock()
        ws.receive_text.side_effect = receive_sequence("hang", "hang")

        await _serve_connection(ws, None, coordinator, config)

        ws.close.assert_awaited_once_with(code=4008, reason="Idle timeout")
        assert coordinator.registry.total_connections == 0
        assert coordinator.transport.total_sockets == 0
