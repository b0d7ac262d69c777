"""
Unit tests for the socket event router.
Tests acknowledgement envelopes, error mapping, and that broadcasts go out
only after the request's session has committed.
"""

import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from courtside.services import message_service
from courtside.services.event_router import EventRouter, HANDLERS
from courtside.services.presence_service import PresenceRegistry
from courtside.services.websocket_manager import WebSocketManager, make_event


def frames(ws, event=None):
    sent = [json.loads(call.args[0]) for call in ws.send_text.call_args_list]
    return [f for f in sent if event is None or f["event"] == event]


def request(event, payload=None, req_id="r1"):
    return json.dumps({"event": event, "reqId": req_id, "payload": payload or {}})


@pytest.fixture
def manager():
    return WebSocketManager()


@pytest.fixture
def router(manager, session_factory):
    return EventRouter(manager=manager, presence=PresenceRegistry(), session_factory=session_factory)


@pytest_asyncio.fixture
async def sockets(manager):
    ws1, ws2 = AsyncMock(), AsyncMock()
    await manager.connect("u1", ws1)
    await manager.connect("u2", ws2)
    return ws1, ws2


@pytest_asyncio.fixture
async def conversation_id(router, sockets):
    """A direct conversation between u1 and u2 that both sockets have joined."""
    ws1, ws2 = sockets
    created = await router.handle_frame("u1", ws1, request("conversation:create", {"participantIds": ["u2"]}))
    conversation_id = created["data"]["conversation"]["id"]
    await router.handle_frame("u1", ws1, request("conversation:join", {"conversationId": conversation_id}))
    await router.handle_frame("u2", ws2, request("conversation:join", {"conversationId": conversation_id}))
    ws1.send_text.reset_mock()
    ws2.send_text.reset_mock()
    return conversation_id


class TestEnvelope:
    @pytest.mark.asyncio
    async def test_success_ack(self, router, sockets):
        ws1, _ = sockets

        ack = await router.handle_frame("u1", ws1, request("presence:update", {"status": "away"}, req_id="abc"))

        assert ack["event"] == "ack"
        assert ack["reqId"] == "abc"
        assert ack["success"] is True
        assert ack["data"]["presence"]["status"] == "away"
        assert frames(ws1, "ack") == [ack]

    @pytest.mark.asyncio
    async def test_unknown_event(self, router, sockets):
        ws1, _ = sockets

        ack = await router.handle_frame("u1", ws1, request("chess:move"))

        assert ack["success"] is False
        assert ack["error"] == "Unknown event: chess:move"

    @pytest.mark.asyncio
    async def test_signal_without_req_id_gets_no_ack(self, router, sockets):
        ws1, _ = sockets

        result = await router.handle_frame(
            "u1", ws1, json.dumps({"event": "presence:update", "payload": {"status": "busy"}})
        )

        assert result is None
        assert frames(ws1, "ack") == []

    @pytest.mark.asyncio
    async def test_malformed_frames_dropped(self, router, sockets):
        ws1, _ = sockets

        assert await router.handle_frame("u1", ws1, "{not json") is None
        assert await router.handle_frame("u1", ws1, json.dumps({"reqId": "r1"})) is None
        ws1.send_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_validation_error_message(self, router, sockets, conversation_id):
        ws1, _ = sockets

        empty = await router.handle_frame(
            "u1", ws1, request("message:send", {"conversationId": conversation_id, "content": "  "})
        )
        missing = await router.handle_frame("u1", ws1, request("message:send", {"content": "hi"}))

        assert empty["error"] == "content is required for text messages"
        assert missing["error"].startswith("conversationId")

    @pytest.mark.asyncio
    async def test_permission_error_message(self, router, manager, conversation_id):
        outsider = AsyncMock()
        await manager.connect("u9", outsider)

        ack = await router.handle_frame(
            "u9", outsider, request("message:send", {"conversationId": conversation_id, "content": "hi"})
        )

        assert ack == {"event": "ack", "reqId": "r1", "success": False, "error": "Access denied to conversation"}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_generic(self, manager, session_factory, sockets):
        ws1, _ = sockets

        async def explode(ctx, payload):
            raise RuntimeError("database on fire")

        router = EventRouter(manager, PresenceRegistry(), session_factory, handlers={"boom": explode})
        ack = await router.handle_frame("u1", ws1, request("boom"))

        assert ack["error"] == "Failed to process boom"


class TestAfterCommit:
    @pytest.mark.asyncio
    async def test_failed_request_broadcasts_nothing(self, manager, session_factory, sockets):
        """Test queued broadcasts are dropped when the handler fails."""
        ws1, _ = sockets
        announce = AsyncMock()

        async def handler(ctx, payload):
            ctx.after_commit(announce)
            raise ValueError("nope")

        router = EventRouter(manager, PresenceRegistry(), session_factory, handlers={"x": handler})
        ack = await router.handle_frame("u1", ws1, request("x"))

        assert ack["error"] == "nope"
        announce.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_persists_then_broadcasts(self, router, sockets, conversation_id, session_factory):
        ws1, ws2 = sockets

        ack = await router.handle_frame(
            "u1", ws1, request("message:send", {"conversationId": conversation_id, "content": "court 3 at 6"})
        )

        message = ack["data"]["message"]
        pushed = frames(ws2, "message:new")
        assert [f["payload"]["message"]["id"] for f in pushed] == [message["id"]]
        assert frames(ws2, "conversation:updated")[0]["payload"]["lastMessagePreview"] == "court 3 at 6"

        # Committed: visible from a separate session
        async with session_factory() as session:
            history = await message_service.list_messages(session, conversation_id, "u2")
        assert [m["id"] for m in history["messages"]] == [message["id"]]

    @pytest.mark.asyncio
    async def test_create_conversation_announces_to_other_participant(self, router, sockets):
        ws1, ws2 = sockets

        ack = await router.handle_frame("u1", ws1, request("conversation:create", {"participantIds": ["u2"]}))

        new = frames(ws2, "conversation:new")
        assert new[0]["payload"]["conversation"]["id"] == ack["data"]["conversation"]["id"]
        assert frames(ws1, "conversation:new") == []


class TestRelays:
    @pytest.mark.asyncio
    async def test_typing_relay_excludes_sender(self, router, sockets, conversation_id):
        ws1, ws2 = sockets

        await router.handle_frame(
            "u1",
            ws1,
            json.dumps({"event": "typing:start", "payload": {"conversationId": conversation_id}}),
            claims={"user_id": "u1", "username": "kerri"},
        )

        started = frames(ws2, "typing:user_started")
        assert started[0]["payload"]["userId"] == "u1"
        assert started[0]["payload"]["username"] == "kerri"
        assert frames(ws1, "typing:user_started") == []

    @pytest.mark.asyncio
    async def test_typing_outside_conversation_is_refused(self, router, manager, conversation_id, sockets):
        _, ws2 = sockets
        outsider = AsyncMock()
        await manager.connect("u9", outsider)

        ack = await router.handle_frame("u9", outsider, request("typing:start", {"conversationId": conversation_id}))

        assert ack["success"] is False
        assert frames(ws2, "typing:user_started") == []

    @pytest.mark.asyncio
    async def test_presence_update_broadcasts_and_syncs(self, router, manager, sockets):
        ws1, ws2 = sockets
        other_device = AsyncMock()
        await manager.connect("u1", other_device)

        await router.handle_frame("u1", ws1, request("presence:update", {"status": "busy"}))

        assert frames(ws2, "presence:update")[0]["payload"]["presence"]["status"] == "busy"
        assert frames(other_device, "presence:status_sync")[0]["payload"] == {"status": "busy"}
        assert frames(ws1, "presence:update") == []

    @pytest.mark.asyncio
    async def test_invalid_presence_status(self, router, sockets):
        ws1, _ = sockets

        ack = await router.handle_frame("u1", ws1, request("presence:update", {"status": "invisible"}))

        assert ack["success"] is False

    @pytest.mark.asyncio
    async def test_read_receipt_reaches_room(self, router, sockets, conversation_id):
        ws1, ws2 = sockets
        sent = await router.handle_frame(
            "u1", ws1, request("message:send", {"conversationId": conversation_id, "content": "hi"})
        )
        message_id = sent["data"]["message"]["id"]

        ack = await router.handle_frame("u2", ws2, request("message:read", {"messageId": message_id}))

        read_by = frames(ws1, "message:read_by")
        assert read_by[0]["payload"]["userId"] == "u2"
        assert read_by[0]["payload"]["readAt"] == ack["data"]["readAt"]

    @pytest.mark.asyncio
    async def test_notification_count_after_message(self, router, sockets, conversation_id):
        ws1, ws2 = sockets
        await router.handle_frame(
            "u1", ws1, request("message:send", {"conversationId": conversation_id, "content": "hi"})
        )

        ack = await router.handle_frame("u2", ws2, request("notification:get_unread_count"))

        assert ack["data"] == {"count": 1}


def test_every_client_request_has_a_handler():
    expected = {
        "conversation:join", "conversation:leave", "conversation:create", "conversation:archive",
        "conversation:list", "conversation:get_participants",
        "message:send", "message:edit", "message:delete", "message:react", "message:unreact",
        "message:read", "message:search", "message:list",
        "typing:start", "typing:stop", "presence:update", "presence:get_online_users",
        "notification:unread", "notification:read", "notification:read_all", "notification:get_unread_count",
    }
    assert expected <= set(HANDLERS)


def test_make_event_defaults_payload():
    assert make_event("system:shutdown") == {"event": "system:shutdown", "payload": {}}
