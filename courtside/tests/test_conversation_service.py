"""
Unit tests for conversation service.
Tests creation rules, membership checks, listing and archiving.
"""

import pytest
import pytest_asyncio

from courtside.models.schemas import CreateConversationRequest, ConversationType, SendMessageRequest
from courtside.services import conversation_service, message_service


def direct_with(user_id):
    return CreateConversationRequest(type=ConversationType.DIRECT, participant_ids=[user_id])


def group_with(*user_ids, name="Sunday doubles"):
    return CreateConversationRequest(type=ConversationType.GROUP, participant_ids=list(user_ids), name=name)


@pytest_asyncio.fixture
async def group(db_session):
    return await conversation_service.create_conversation(db_session, "u1", group_with("u2", "u3"))


class TestCreateConversation:
    @pytest.mark.asyncio
    async def test_creator_is_admin(self, db_session, group):
        roles = {p["userId"]: p["role"] for p in group["participants"]}

        assert roles == {"u1": "admin", "u2": "member", "u3": "member"}
        assert group["isGroup"] is True
        assert group["name"] == "Sunday doubles"
        assert group["settings"]["allowFileSharing"] is True

    @pytest.mark.asyncio
    async def test_direct_needs_exactly_two(self, db_session):
        with pytest.raises(ValueError, match="exactly 2"):
            await conversation_service.create_conversation(
                db_session, "u1", CreateConversationRequest(type=ConversationType.DIRECT, participant_ids=["u2", "u3"])
            )

    @pytest.mark.asyncio
    async def test_cannot_create_alone(self, db_session):
        """Test listing only yourself does not make a conversation."""
        with pytest.raises(ValueError):
            await conversation_service.create_conversation(db_session, "u1", direct_with("u1"))

    @pytest.mark.asyncio
    async def test_direct_pair_is_reused(self, db_session):
        first = await conversation_service.create_conversation(db_session, "u1", direct_with("u2"))
        second = await conversation_service.create_conversation(db_session, "u2", direct_with("u1"))

        assert first["id"] == second["id"]
        assert first["isGroup"] is False


class TestMembership:
    @pytest.mark.asyncio
    async def test_require_participant(self, db_session, group):
        conversation = await conversation_service.require_participant(db_session, group["id"], "u2")
        assert conversation.id == group["id"]

    @pytest.mark.asyncio
    async def test_outsider_is_denied(self, db_session, group):
        with pytest.raises(PermissionError):
            await conversation_service.require_participant(db_session, group["id"], "u9")

    @pytest.mark.asyncio
    async def test_missing_conversation(self, db_session):
        with pytest.raises(ValueError, match="not found"):
            await conversation_service.require_participant(db_session, "nope", "u1")

    @pytest.mark.asyncio
    async def test_leave_deactivates_membership(self, db_session, group):
        """Test leaving keeps the participant row but removes access."""
        result = await conversation_service.leave_conversation(db_session, group["id"], "u3")

        member = next(p for p in result["participants"] if p["userId"] == "u3")
        assert member["isActive"] is False
        assert member["leftAt"] is not None
        with pytest.raises(PermissionError):
            await conversation_service.require_participant(db_session, group["id"], "u3")

    @pytest.mark.asyncio
    async def test_cannot_leave_direct(self, db_session):
        direct = await conversation_service.create_conversation(db_session, "u1", direct_with("u2"))

        with pytest.raises(ValueError, match="direct"):
            await conversation_service.leave_conversation(db_session, direct["id"], "u1")

    @pytest.mark.asyncio
    async def test_get_participants(self, db_session, group):
        participants = await conversation_service.get_participants(db_session, group["id"], "u1")
        assert sorted(p["userId"] for p in participants) == ["u1", "u2", "u3"]


class TestListing:
    @pytest.mark.asyncio
    async def test_most_recent_activity_first(self, db_session, group):
        direct = await conversation_service.create_conversation(db_session, "u1", direct_with("u2"))
        await message_service.send_message(
            db_session, "u2", SendMessageRequest(conversation_id=group["id"], content="court 3?")
        )
        await message_service.send_message(
            db_session, "u2", SendMessageRequest(conversation_id=direct["id"], content="you there?")
        )

        conversations = await conversation_service.list_user_conversations(db_session, "u1")

        assert [c["id"] for c in conversations] == [direct["id"], group["id"]]
        assert conversations[0]["lastMessagePreview"] == "you there?"
        assert conversations[0]["unreadCount"] == 1

    @pytest.mark.asyncio
    async def test_unread_excludes_own_and_read_messages(self, db_session, group):
        mine, _ = await message_service.send_message(
            db_session, "u1", SendMessageRequest(conversation_id=group["id"], content="mine")
        )
        theirs, _ = await message_service.send_message(
            db_session, "u2", SendMessageRequest(conversation_id=group["id"], content="theirs")
        )
        await message_service.send_message(
            db_session, "u3", SendMessageRequest(conversation_id=group["id"], content="also theirs")
        )
        await message_service.mark_as_read(db_session, theirs["id"], "u1")

        conversations = await conversation_service.list_user_conversations(db_session, "u1")

        assert conversations[0]["unreadCount"] == 1

    @pytest.mark.asyncio
    async def test_archived_filter(self, db_session, group):
        archived = await conversation_service.archive_conversation(db_session, group["id"], "u1")
        again = await conversation_service.archive_conversation(db_session, group["id"], "u1")

        assert archived["isArchived"] is True
        assert again["archivedAt"] == archived["archivedAt"]
        assert await conversation_service.list_user_conversations(db_session, "u1", include_archived=False) == []
        assert len(await conversation_service.list_user_conversations(db_session, "u1")) == 1

    @pytest.mark.asyncio
    async def test_left_conversation_not_listed(self, db_session, group):
        await conversation_service.leave_conversation(db_session, group["id"], "u2")

        assert await conversation_service.list_user_conversations(db_session, "u2") == []
