"""
Conversation service: creation, membership checks, listing and archiving.

Functions raise ValueError for missing or invalid data and PermissionError
when the user is not an active participant.
"""

import logging
from typing import Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_

from courtside.database.models import Conversation, ConversationParticipant, Message
from courtside.models.schemas import (
    ConversationSettings,
    ConversationType,
    CreateConversationRequest,
    ParticipantRole,
)
from courtside.utils.datetime_utils import ensure_utc, isoformat, utcnow

logger = logging.getLogger(__name__)


def participant_to_dict(participant: ConversationParticipant) -> Dict:
    return {
        "userId": participant.user_id,
        "role": participant.role,
        "joinedAt": isoformat(participant.joined_at),
        "leftAt": isoformat(participant.left_at),
        "isActive": participant.is_active,
    }


def conversation_to_dict(conversation: Conversation, unread_count: int = 0) -> Dict:
    """Serialize a Conversation row (participants loaded) to its camelCase wire form."""
    return {
        "id": conversation.id,
        "type": conversation.type,
        "name": conversation.name,
        "description": conversation.description,
        "participants": [participant_to_dict(p) for p in conversation.participants],
        "isGroup": conversation.is_group,
        "relatedEntityType": conversation.related_entity_type,
        "relatedEntityId": conversation.related_entity_id,
        "lastMessageId": conversation.last_message_id,
        "lastMessageAt": isoformat(conversation.last_message_at),
        "lastMessagePreview": conversation.last_message_preview,
        "settings": ConversationSettings.model_validate(conversation.settings or {}).to_wire(),
        "isActive": conversation.is_active,
        "isArchived": conversation.is_archived,
        "archivedAt": isoformat(conversation.archived_at),
        "createdAt": isoformat(conversation.created_at),
        "updatedAt": isoformat(conversation.updated_at),
        "unreadCount": unread_count,
    }


def active_participant_ids(conversation: Conversation) -> List[str]:
    return [p.user_id for p in conversation.participants if p.is_active]


async def get_conversation(session: AsyncSession, conversation_id: str) -> Optional[Conversation]:
    result = await session.execute(select(Conversation).where(Conversation.id == conversation_id))
    return result.scalar_one_or_none()


async def require_participant(
    session: AsyncSession, conversation_id: str, user_id: str
) -> Conversation:
    """
    Load a conversation the user actively participates in.

    Raises:
        ValueError: If the conversation does not exist
        PermissionError: If the user is not an active participant
    """
    if not conversation_id:
        raise ValueError("conversationId is required")
    conversation = await get_conversation(session, conversation_id)
    if conversation is None or not conversation.is_active:
        raise ValueError("Conversation not found")
    if user_id not in active_participant_ids(conversation):
        raise PermissionError("Access denied to conversation")
    return conversation


async def _find_direct_conversation(
    session: AsyncSession, user_a: str, user_b: str
) -> Optional[Conversation]:
    result = await session.execute(
        select(Conversation)
        .join(ConversationParticipant)
        .where(
            and_(
                Conversation.type == ConversationType.DIRECT.value,
                Conversation.is_active == True,  # noqa: E712
                ConversationParticipant.user_id == user_a,
            )
        )
    )
    for conversation in result.scalars().unique().all():
        members = {p.user_id for p in conversation.participants}
        if members == {user_a, user_b}:
            return conversation
    return None


async def create_conversation(
    session: AsyncSession, creator_id: str, request: CreateConversationRequest
) -> Dict:
    """
    Create a conversation with the creator as admin.

    A direct conversation has exactly two distinct participants (the creator
    and one other user); asking for an existing pair returns that conversation.

    Returns:
        Conversation dict

    Raises:
        ValueError: If the participant set is invalid for the conversation type
    """
    participant_ids = list(dict.fromkeys([creator_id] + list(request.participant_ids)))
    if len(participant_ids) < 2:
        raise ValueError("A conversation needs at least one other participant")

    if request.type == ConversationType.DIRECT:
        if len(participant_ids) != 2:
            raise ValueError("Direct conversations must have exactly 2 participants")
        existing = await _find_direct_conversation(session, participant_ids[0], participant_ids[1])
        if existing is not None:
            return conversation_to_dict(existing)

    settings = request.settings or ConversationSettings()
    now = utcnow()
    conversation = Conversation(
        type=request.type.value,
        name=request.name,
        description=request.description,
        is_group=request.type != ConversationType.DIRECT,
        related_entity_type=request.related_entity_type,
        related_entity_id=request.related_entity_id,
        created_by=creator_id,
        settings=settings.to_wire(),
        created_at=now,
        updated_at=now,
        participants=[
            ConversationParticipant(
                user_id=user_id,
                role=(ParticipantRole.ADMIN if user_id == creator_id else ParticipantRole.MEMBER).value,
                joined_at=now,
                is_active=True,
            )
            for user_id in participant_ids
        ],
    )
    session.add(conversation)
    await session.flush()
    logger.info(f"Created {conversation.type} conversation {conversation.id} with {len(participant_ids)} participants")
    return conversation_to_dict(conversation)


async def _unread_counts(session: AsyncSession, conversation_ids: List[str], user_id: str) -> Dict[str, int]:
    if not conversation_ids:
        return {}
    result = await session.execute(
        select(Message.conversation_id, Message.read_by).where(
            and_(
                Message.conversation_id.in_(conversation_ids),
                Message.sender_id != user_id,
                Message.is_deleted == False,  # noqa: E712
            )
        )
    )
    counts = {conversation_id: 0 for conversation_id in conversation_ids}
    for conversation_id, read_by in result.all():
        if not any(r.get("userId") == user_id for r in (read_by or [])):
            counts[conversation_id] += 1
    return counts


async def list_user_conversations(
    session: AsyncSession, user_id: str, include_archived: bool = True
) -> List[Dict]:
    """
    Conversations the user actively participates in, most recent activity first.

    Returns:
        List of conversation dicts with per-user unread counts
    """
    query = (
        select(Conversation)
        .join(ConversationParticipant)
        .where(
            and_(
                ConversationParticipant.user_id == user_id,
                ConversationParticipant.is_active == True,  # noqa: E712
                Conversation.is_active == True,  # noqa: E712
            )
        )
    )
    if not include_archived:
        query = query.where(Conversation.is_archived == False)  # noqa: E712
    result = await session.execute(query)
    conversations = list(result.scalars().unique().all())
    conversations.sort(
        key=lambda c: (c.last_message_at is not None, ensure_utc(c.last_message_at or c.created_at)),
        reverse=True,
    )
    counts = await _unread_counts(session, [c.id for c in conversations], user_id)
    return [conversation_to_dict(c, counts.get(c.id, 0)) for c in conversations]


async def get_participants(session: AsyncSession, conversation_id: str, user_id: str) -> List[Dict]:
    conversation = await require_participant(session, conversation_id, user_id)
    return [participant_to_dict(p) for p in conversation.participants]


async def archive_conversation(session: AsyncSession, conversation_id: str, user_id: str) -> Dict:
    """Archive a conversation. Archiving twice keeps the first archivedAt."""
    conversation = await require_participant(session, conversation_id, user_id)
    if not conversation.is_archived:
        now = utcnow()
        conversation.is_archived = True
        conversation.archived_at = now
        conversation.updated_at = now
        await session.flush()
    return conversation_to_dict(conversation)


async def leave_conversation(session: AsyncSession, conversation_id: str, user_id: str) -> Dict:
    """
    Leave a conversation: the membership row is deactivated, never removed,
    so history stays attributed.
    """
    conversation = await require_participant(session, conversation_id, user_id)
    if conversation.type == ConversationType.DIRECT.value:
        raise ValueError("Cannot leave a direct conversation")
    participant = next(p for p in conversation.participants if p.user_id == user_id)
    participant.is_active = False
    participant.left_at = utcnow()
    await session.flush()
    return conversation_to_dict(conversation)
