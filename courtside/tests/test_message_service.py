"""
Unit tests for message service.
Tests sending, history paging, sender-only edits and deletes, reactions,
read receipts and search.
"""

import pytest
import pytest_asyncio
from sqlalchemy.dialects import postgresql

from courtside.database.models import Message
from courtside.models.schemas import (
    ConversationSettings,
    ConversationType,
    CreateConversationRequest,
    Location,
    MessageType,
    SendMessageRequest,
)
from courtside.services import conversation_service, message_service, notification_service
from courtside.utils.constants import DELETED_MESSAGE_PLACEHOLDER


@pytest_asyncio.fixture
async def conversation(db_session):
    return await conversation_service.create_conversation(
        db_session,
        "u1",
        CreateConversationRequest(type=ConversationType.GROUP, participant_ids=["u2", "u3"], name="Crew"),
    )


async def send(session, conversation_id, sender_id="u1", content="hello", **extra):
    message, _ = await message_service.send_message(
        session, sender_id, SendMessageRequest(conversation_id=conversation_id, content=content, **extra)
    )
    return message


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_send_updates_last_message_cache(self, db_session, conversation):
        message, updated = await message_service.send_message(
            db_session, "u1", SendMessageRequest(conversation_id=conversation["id"], content="x" * 150)
        )

        assert message["senderId"] == "u1"
        assert message["isDeleted"] is False
        assert updated["lastMessageId"] == message["id"]
        assert updated["lastMessagePreview"] == "x" * 100

    @pytest.mark.asyncio
    async def test_outsider_cannot_send(self, db_session, conversation):
        with pytest.raises(PermissionError):
            await send(db_session, conversation["id"], sender_id="u9")

    @pytest.mark.asyncio
    async def test_send_notifies_other_participants(self, db_session, conversation):
        await send(db_session, conversation["id"], content="warmups at 9")

        assert await notification_service.get_unread_count(db_session, "u1") == 0
        result = await notification_service.get_user_notifications(db_session, "u2")
        assert result["notifications"][0]["title"] == "New message in Crew"
        assert result["notifications"][0]["message"] == "warmups at 9"
        assert result["notifications"][0]["metadata"]["conversationId"] == conversation["id"]

    @pytest.mark.asyncio
    async def test_muted_conversation_sends_no_notifications(self, db_session):
        muted = await conversation_service.create_conversation(
            db_session,
            "u1",
            CreateConversationRequest(
                participant_ids=["u2"], settings=ConversationSettings(mute_notifications=True)
            ),
        )

        await send(db_session, muted["id"])

        assert await notification_service.get_unread_count(db_session, "u2") == 0

    @pytest.mark.asyncio
    async def test_location_sharing_disabled(self, db_session):
        conversation = await conversation_service.create_conversation(
            db_session,
            "u1",
            CreateConversationRequest(
                participant_ids=["u2"], settings=ConversationSettings(allow_location_sharing=False)
            ),
        )

        with pytest.raises(ValueError, match="Location sharing"):
            await send(
                db_session,
                conversation["id"],
                content="",
                message_type=MessageType.LOCATION,
                location=Location(latitude=1.0, longitude=2.0),
            )


class TestListMessages:
    @pytest.mark.asyncio
    async def test_first_page_is_most_recent_oldest_first(self, db_session, conversation):
        for i in range(5):
            await send(db_session, conversation["id"], content=f"m{i}")

        page1 = await message_service.list_messages(db_session, conversation["id"], "u2", page=1, limit=2)
        page3 = await message_service.list_messages(db_session, conversation["id"], "u2", page=3, limit=2)

        assert [m["content"] for m in page1["messages"]] == ["m3", "m4"]
        assert [m["content"] for m in page3["messages"]] == ["m0"]
        assert page1["total"] == 5
        assert page1["totalPages"] == 3

    @pytest.mark.asyncio
    async def test_limit_bounds(self, db_session, conversation):
        with pytest.raises(ValueError):
            await message_service.list_messages(db_session, conversation["id"], "u1", limit=101)
        with pytest.raises(ValueError):
            await message_service.list_messages(db_session, conversation["id"], "u1", page=0)

    @pytest.mark.asyncio
    async def test_outsider_cannot_read_history(self, db_session, conversation):
        with pytest.raises(PermissionError):
            await message_service.list_messages(db_session, conversation["id"], "u9")


class TestEditAndDelete:
    @pytest.mark.asyncio
    async def test_sender_can_edit(self, db_session, conversation):
        message = await send(db_session, conversation["id"])

        edited = await message_service.edit_message(db_session, message["id"], "u1", "hello all")

        assert edited["content"] == "hello all"
        assert edited["isEdited"] is True
        assert edited["editedAt"] is not None

    @pytest.mark.asyncio
    async def test_only_sender_can_edit(self, db_session, conversation):
        message = await send(db_session, conversation["id"])

        with pytest.raises(PermissionError):
            await message_service.edit_message(db_session, message["id"], "u2", "hijacked")

    @pytest.mark.asyncio
    async def test_delete_is_soft_and_idempotent(self, db_session, conversation):
        message = await send(db_session, conversation["id"])

        deleted = await message_service.delete_message(db_session, message["id"], "u1")
        again = await message_service.delete_message(db_session, message["id"], "u1")

        assert deleted["id"] == message["id"]
        assert deleted["senderId"] == "u1"
        assert deleted["createdAt"] == message["createdAt"]
        assert deleted["content"] == DELETED_MESSAGE_PLACEHOLDER
        assert again["deletedAt"] == deleted["deletedAt"]

        conversations = await conversation_service.list_user_conversations(db_session, "u1")
        assert conversations[0]["lastMessagePreview"] == DELETED_MESSAGE_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_cannot_edit_deleted(self, db_session, conversation):
        message = await send(db_session, conversation["id"])
        await message_service.delete_message(db_session, message["id"], "u1")

        with pytest.raises(ValueError, match="deleted"):
            await message_service.edit_message(db_session, message["id"], "u1", "back again")

    @pytest.mark.asyncio
    async def test_only_sender_can_delete(self, db_session, conversation):
        message = await send(db_session, conversation["id"])

        with pytest.raises(PermissionError):
            await message_service.delete_message(db_session, message["id"], "u2")


class TestReactionsAndReceipts:
    @pytest.mark.asyncio
    async def test_one_reaction_per_user(self, db_session, conversation):
        message = await send(db_session, conversation["id"])

        await message_service.add_reaction(db_session, message["id"], "u2", "👍")
        updated = await message_service.add_reaction(db_session, message["id"], "u2", "🔥")

        assert [(r["userId"], r["emoji"]) for r in updated["reactions"]] == [("u2", "🔥")]

        removed = await message_service.remove_reaction(db_session, message["id"], "u2")
        assert removed["reactions"] == []

    @pytest.mark.asyncio
    async def test_cannot_react_to_deleted(self, db_session, conversation):
        message = await send(db_session, conversation["id"])
        await message_service.delete_message(db_session, message["id"], "u1")

        with pytest.raises(ValueError):
            await message_service.add_reaction(db_session, message["id"], "u2", "👍")

    @pytest.mark.asyncio
    async def test_repeat_read_keeps_one_receipt(self, db_session, conversation):
        message = await send(db_session, conversation["id"])

        first = await message_service.mark_as_read(db_session, message["id"], "u2")
        await message_service.mark_as_read(db_session, message["id"], "u2")
        await message_service.mark_as_read(db_session, message["id"], "u3")

        assert first["conversationId"] == conversation["id"]
        history = await message_service.list_messages(db_session, conversation["id"], "u1")
        assert sorted(r["userId"] for r in history["messages"][0]["readBy"]) == ["u2", "u3"]

    @pytest.mark.asyncio
    async def test_reactions_from_separate_sessions_are_both_kept(self, session_factory):
        """Test a session holding an older copy of the row doesn't overwrite another user's reaction."""
        async with session_factory() as setup:
            created = await conversation_service.create_conversation(
                setup,
                "u1",
                CreateConversationRequest(type=ConversationType.GROUP, participant_ids=["u2", "u3"], name="Crew"),
            )
            message = await send(setup, created["id"])
            await setup.commit()

        async with session_factory() as first, session_factory() as second:
            # second reads the row before first writes to it
            assert (await second.get(Message, message["id"])).reactions in (None, [])

            await message_service.add_reaction(first, message["id"], "u2", "👍")
            await first.commit()

            updated = await message_service.add_reaction(second, message["id"], "u3", "🔥")
            await second.commit()

        assert sorted((r["userId"], r["emoji"]) for r in updated["reactions"]) == [("u2", "👍"), ("u3", "🔥")]

    @pytest.mark.asyncio
    async def test_mutations_lock_the_message_row(self, db_session, conversation, monkeypatch):
        message = await send(db_session, conversation["id"])
        statements = []
        original_execute = db_session.execute

        async def recording_execute(statement, *args, **kwargs):
            statements.append(statement)
            return await original_execute(statement, *args, **kwargs)

        monkeypatch.setattr(db_session, "execute", recording_execute)
        await message_service.add_reaction(db_session, message["id"], "u2", "👍")
        await message_service.mark_as_read(db_session, message["id"], "u2")

        compiled = [str(s.compile(dialect=postgresql.dialect())) for s in statements]
        locked = [sql for sql in compiled if "FROM messages" in sql and "FOR UPDATE" in sql]
        assert len(locked) == 2

    @pytest.mark.asyncio
    async def test_unknown_message(self, db_session):
        with pytest.raises(ValueError, match="not found"):
            await message_service.mark_as_read(db_session, "missing", "u1")


class TestSearch:
    @pytest.mark.asyncio
    async def test_search_is_case_insensitive_and_skips_deleted(self, db_session, conversation):
        await send(db_session, conversation["id"], content="Court 3 at noon")
        deleted = await send(db_session, conversation["id"], content="court 5 instead")
        await message_service.delete_message(db_session, deleted["id"], "u1")

        results = await message_service.search_messages(db_session, "u2", "COURT")

        assert [m["content"] for m in results] == ["Court 3 at noon"]

    @pytest.mark.asyncio
    async def test_search_limited_to_own_conversations(self, db_session, conversation):
        await send(db_session, conversation["id"], content="court 3")

        assert await message_service.search_messages(db_session, "u9", "court") == []
        with pytest.raises(PermissionError):
            await message_service.search_messages(db_session, "u9", "court", conversation_id=conversation["id"])

    @pytest.mark.asyncio
    async def test_blank_query(self, db_session):
        with pytest.raises(ValueError):
            await message_service.search_messages(db_session, "u1", "  ")
