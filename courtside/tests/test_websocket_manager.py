"""
Unit tests for WebSocket manager.
Tests connection management, rooms, message sending, and timeout handling.
"""

import pytest
import pytest_asyncio
import asyncio
import json
from unittest.mock import AsyncMock
from datetime import timedelta
from courtside.services.websocket_manager import (
    WebSocketManager,
    conversation_room,
    get_websocket_manager,
    make_event,
    user_room,
    WEBSOCKET_TIMEOUT_SECONDS,
)
from courtside.utils.datetime_utils import utcnow


@pytest_asyncio.fixture
async def ws_manager():
    """Create a fresh WebSocket manager for each test."""
    return WebSocketManager()


def make_socket(fail=False):
    ws = AsyncMock()
    ws.send_text = AsyncMock(side_effect=Exception("Connection error") if fail else None)
    ws.close = AsyncMock()
    return ws


@pytest.fixture
def mock_websocket():
    """Create a mock WebSocket connection."""
    return make_socket()


def sent_frames(ws):
    return [json.loads(call.args[0]) for call in ws.send_text.call_args_list]


@pytest.mark.asyncio
async def test_connect_reports_first_connection(ws_manager):
    """Test connect returns True only for the user's first live connection."""
    ws1, ws2 = make_socket(), make_socket()

    assert await ws_manager.connect("u1", ws1) is True
    assert await ws_manager.connect("u1", ws2) is False

    assert await ws_manager.get_connection_count("u1") == 2
    assert ws1 in ws_manager.connection_timestamps
    assert await ws_manager.is_in_room(ws1, user_room("u1"))


@pytest.mark.asyncio
async def test_disconnect_reports_last_connection(ws_manager):
    """Test disconnect returns True only when the user's last connection goes."""
    ws1, ws2 = make_socket(), make_socket()
    await ws_manager.connect("u1", ws1)
    await ws_manager.connect("u1", ws2)

    assert await ws_manager.disconnect("u1", ws1) is False
    assert await ws_manager.disconnect("u1", ws2) is True

    assert await ws_manager.get_connection_count("u1") == 0
    assert ws2 not in ws_manager.connection_timestamps
    assert ws_manager.rooms == {}


@pytest.mark.asyncio
async def test_send_to_user(ws_manager, mock_websocket):
    """Test sending a message to a user."""
    message = make_event("notification:new", {"notification": {"id": "n1"}})

    await ws_manager.connect("u1", mock_websocket)
    result = await ws_manager.send_to_user("u1", message)

    assert result is True
    assert sent_frames(mock_websocket) == [{"event": "notification:new", "payload": {"notification": {"id": "n1"}}}]


@pytest.mark.asyncio
async def test_send_to_user_no_connection(ws_manager):
    """Test sending to a user with no active connections."""
    assert await ws_manager.send_to_user("u1", make_event("x")) is False


@pytest.mark.asyncio
async def test_send_to_user_connection_error(ws_manager):
    """Test a failing connection is dropped after the send."""
    ws = make_socket(fail=True)

    await ws_manager.connect("u1", ws)
    result = await ws_manager.send_to_user("u1", make_event("x"))

    assert result is False
    assert await ws_manager.get_connection_count("u1") == 0


@pytest.mark.asyncio
async def test_send_to_user_partial_failure(ws_manager):
    """Test sending when one connection fails but another succeeds."""
    ws1, ws2 = make_socket(), make_socket(fail=True)
    await ws_manager.connect("u1", ws1)
    await ws_manager.connect("u1", ws2)

    assert await ws_manager.send_to_user("u1", make_event("x")) is True
    ws1.send_text.assert_called_once()
    assert await ws_manager.get_connection_count("u1") == 1


class TestRooms:
    @pytest.mark.asyncio
    async def test_send_to_room_excludes_sender(self, ws_manager):
        sender, other, outsider = make_socket(), make_socket(), make_socket()
        await ws_manager.connect("u1", sender)
        await ws_manager.connect("u2", other)
        await ws_manager.connect("u3", outsider)
        room = conversation_room("c1")
        await ws_manager.join_room(sender, room)
        await ws_manager.join_room(other, room)

        reached = await ws_manager.send_to_room(room, make_event("typing:user_started"), exclude=sender)

        assert reached == 1
        other.send_text.assert_called_once()
        sender.send_text.assert_not_called()
        outsider.send_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_leave_room(self, ws_manager, mock_websocket):
        room = conversation_room("c1")
        await ws_manager.connect("u1", mock_websocket)
        await ws_manager.join_room(mock_websocket, room)

        await ws_manager.leave_room(mock_websocket, room)

        assert not await ws_manager.is_in_room(mock_websocket, room)
        assert await ws_manager.send_to_room(room, make_event("x")) == 0

    @pytest.mark.asyncio
    async def test_join_user_to_room_adds_every_connection(self, ws_manager):
        ws1, ws2 = make_socket(), make_socket()
        await ws_manager.connect("u1", ws1)
        await ws_manager.connect("u1", ws2)

        await ws_manager.join_user_to_room("u1", conversation_room("c1"))

        assert await ws_manager.send_to_room(conversation_room("c1"), make_event("x")) == 2

    @pytest.mark.asyncio
    async def test_disconnect_leaves_rooms(self, ws_manager, mock_websocket):
        await ws_manager.connect("u1", mock_websocket)
        await ws_manager.join_room(mock_websocket, conversation_room("c1"))

        await ws_manager.disconnect("u1", mock_websocket)

        assert conversation_room("c1") not in ws_manager.rooms


@pytest.mark.asyncio
async def test_broadcast_excludes_user(ws_manager):
    ws1, ws2 = make_socket(), make_socket()
    await ws_manager.connect("u1", ws1)
    await ws_manager.connect("u2", ws2)

    reached = await ws_manager.broadcast(make_event("presence:user_status_changed"), exclude_user="u1")

    assert reached == 1
    ws1.send_text.assert_not_called()


@pytest.mark.asyncio
async def test_send_to_users_counts_reached(ws_manager, mock_websocket):
    await ws_manager.connect("u1", mock_websocket)

    assert await ws_manager.send_to_users(["u1", "u2", "u1"], make_event("x")) == 1
    mock_websocket.send_text.assert_called_once()


@pytest.mark.asyncio
async def test_update_activity(ws_manager, mock_websocket):
    """Test updating connection activity timestamp."""
    await ws_manager.connect("u1", mock_websocket)
    initial_time = ws_manager.connection_timestamps[mock_websocket]

    await asyncio.sleep(0.01)

    await ws_manager.update_activity(mock_websocket)
    assert ws_manager.connection_timestamps[mock_websocket] > initial_time


@pytest.mark.asyncio
async def test_update_activity_not_connected(ws_manager, mock_websocket):
    """Test updating activity for a connection that doesn't exist."""
    await ws_manager.update_activity(mock_websocket)

    assert mock_websocket not in ws_manager.connection_timestamps


@pytest.mark.asyncio
async def test_cleanup_stale_connections(ws_manager):
    """Test stale connections are closed and their users reported."""
    stale, fresh = make_socket(), make_socket()
    await ws_manager.connect("u1", stale)
    await ws_manager.connect("u2", fresh)

    # Manually set old timestamp
    ws_manager.connection_timestamps[stale] = utcnow() - timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS + 10)

    gone = await ws_manager.cleanup_stale_connections()

    assert gone == ["u1"]
    stale.close.assert_called_once()
    assert await ws_manager.get_connection_count("u1") == 0
    assert await ws_manager.get_connection_count("u2") == 1


@pytest.mark.asyncio
async def test_cleanup_stale_keeps_user_with_live_connection(ws_manager):
    """Test a user with another live connection is not reported as gone."""
    stale, fresh = make_socket(), make_socket()
    await ws_manager.connect("u1", stale)
    await ws_manager.connect("u1", fresh)
    ws_manager.connection_timestamps[stale] = utcnow() - timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS + 10)

    assert await ws_manager.cleanup_stale_connections() == []
    assert await ws_manager.get_connection_count("u1") == 1


@pytest.mark.asyncio
async def test_get_connected_user_ids(ws_manager):
    await ws_manager.connect("u2", make_socket())
    await ws_manager.connect("u1", make_socket())

    assert await ws_manager.get_connected_user_ids() == ["u1", "u2"]


@pytest.mark.asyncio
async def test_get_websocket_manager_singleton():
    """Test that get_websocket_manager returns a singleton."""
    assert get_websocket_manager() is get_websocket_manager()
