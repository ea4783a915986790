"""Unit tests for presence fan-out."""

import asyncio

import pytest

from helpers import frames, register_socket
from studyhub.websocket.errors import NotMemberError, RoomNotFoundError
from studyhub.websocket.presence import (
    BroadcastResult,
    LeaveReason,
    PresenceAction,
    PresenceEvent,
)


class TestPresenceEvent:
    """Tests for the PresenceEvent value object."""

    def test_payload_for_join(self):
        event = PresenceEvent(
            action=PresenceAction.JOINED,
            room_id="R",
            connection_id="c1",
            user_id="u1",
            user_name="Ada",
            member_count=2,
        )

        payload = event.to_payload()

        assert payload["action"] == "joined"
        assert payload["room_id"] == "R"
        assert payload["user_id"] == "u1"
        assert payload["user_count"] == 2
        assert "reason" not in payload

    def test_payload_for_leave_includes_reason(self):
        event = PresenceEvent(
            action=PresenceAction.LEFT,
            room_id="R",
            connection_id="c1",
            reason=LeaveReason.DISCONNECTED,
        )

        assert event.to_payload()["reason"] == "disconnected"


class TestBroadcastResult:
    def test_success_flag(self):
        assert BroadcastResult(room_id="R", message_type="x").success is True
        assert BroadcastResult(room_id="R", message_type="x", failed=["c1"]).success is False


class TestPresenceBroadcaster:
    """Tests for broadcast operations."""

    @pytest.mark.asyncio
    async def test_broadcast_to_room(self, registry, rooms, transport, broadcaster):
        sockets = {cid: register_socket(registry, transport, cid) for cid in ("A", "B", "C")}
        for cid in sockets:
            await rooms.join("R", cid)

        result = await broadcaster.broadcast("R", ("room_message", {"text": "hi"}))

        assert result.recipients == 3
        assert sorted(result.delivered) == ["A", "B", "C"]
        assert result.success
        for ws in sockets.values():
            ws.send_json.assert_called_once_with({"type": "room_message", "data": {"text": "hi"}})

    @pytest.mark.asyncio
    async def test_broadcast_presence_event(self, registry, rooms, transport, broadcaster):
        ws = register_socket(registry, transport, "A")
        await rooms.join("R", "A")

        await broadcaster.broadcast(
            "R",
            PresenceEvent(action=PresenceAction.STATUS, room_id="R", connection_id="A", status="idle"),
        )

        sent = frames(ws, "user_presence")
        assert len(sent) == 1
        assert sent[0]["data"]["status"] == "idle"

    @pytest.mark.asyncio
    async def test_broadcast_with_exclude(self, registry, rooms, transport, broadcaster):
        ws_a = register_socket(registry, transport, "A")
        ws_b = register_socket(registry, transport, "B")
        await rooms.join("R", "A")
        await rooms.join("R", "B")

        result = await broadcaster.broadcast("R", ("room_message", {}), exclude="A")

        assert result.recipients == 1
        ws_a.send_json.assert_not_called()
        ws_b.send_json.assert_called_once()

    @pytest.mark.asyncio
    async def test_broadcast_tolerates_unreachable_member(self, registry, rooms, transport, broadcaster):
        register_socket(registry, transport, "A")
        ws_b = register_socket(registry, transport, "B")
        ws_c = register_socket(registry, transport, "C")
        ws_b.send_json.side_effect = Exception("Connection closed")
        for cid in ("A", "B", "C"):
            await rooms.join("R", cid)

        result = await broadcaster.broadcast("R", ("room_message", {}))

        assert result.failed == ["B"]
        assert sorted(result.delivered) == ["A", "C"]
        assert result.success is False
        ws_c.send_json.assert_called_once()

    @pytest.mark.asyncio
    async def test_broadcast_to_detached_socket(self, registry, rooms, transport, broadcaster):
        register_socket(registry, transport, "A")
        await rooms.join("R", "A")
        transport.detach("A")

        result = await broadcaster.broadcast("R", ("room_message", {}))

        assert result.failed == ["A"]

    @pytest.mark.asyncio
    async def test_broadcast_to_missing_room(self, broadcaster):
        with pytest.raises(RoomNotFoundError):
            await broadcaster.broadcast("nowhere", ("room_message", {}))

    @pytest.mark.asyncio
    async def test_broadcast_require_member(self, registry, rooms, transport, broadcaster):
        ws_a = register_socket(registry, transport, "A")
        register_socket(registry, transport, "B")
        await rooms.join("R", "A")

        with pytest.raises(NotMemberError):
            await broadcaster.broadcast("R", ("room_message", {}), require_member="B")
        ws_a.send_json.assert_not_called()

    @pytest.mark.asyncio
    async def test_broadcast_snapshot_excludes_racing_join(self, registry, rooms, transport, broadcaster):
        """A join submitted after the broadcast never sees that broadcast."""
        sockets = {cid: register_socket(registry, transport, cid) for cid in ("A", "B", "C")}
        for cid in sockets:
            await rooms.join("R", cid)
        ws_d = register_socket(registry, transport, "D")

        broadcast_task = asyncio.create_task(
            broadcaster.broadcast("R", ("room_message", {"text": "snapshot"}))
        )
        join_task = asyncio.create_task(rooms.join("R", "D"))
        result, joined = await asyncio.gather(broadcast_task, join_task)

        assert sorted(result.delivered) == ["A", "B", "C"]
        assert frames(ws_d, "room_message") == []
        assert "D" in joined.members
        assert rooms.members_of("R") == {"A", "B", "C", "D"}

    @pytest.mark.asyncio
    async def test_deliver_to_explicit_snapshot(self, registry, rooms, transport, broadcaster):
        ws_a = register_socket(registry, transport, "A")
        ws_b = register_socket(registry, transport, "B")

        result = await broadcaster.deliver("R", frozenset({"A", "B"}), ("custom", {"n": 1}))

        assert result.recipients == 2
        ws_a.send_json.assert_called_once_with({"type": "custom", "data": {"n": 1}})
        ws_b.send_json.assert_called_once()

    @pytest.mark.asyncio
    async def test_deliver_to_nobody(self, broadcaster):
        result = await broadcaster.deliver("R", [], ("custom", {}))
        assert result.recipients == 0
        assert result.delivered == []
