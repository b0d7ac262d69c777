"""
Message service: send, list, edit, delete, react, read and search.

Only active participants may read or write a conversation; only the sender may
edit or delete a message. Deletion is soft: the row keeps its id, sender and
timestamps while its content becomes the placeholder.
"""

import math
import logging
from typing import Dict, List, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_

from courtside.database.models import Conversation, ConversationParticipant, Message
from courtside.models.schemas import MessageType, SendMessageRequest
from courtside.services import conversation_service, notification_service
from courtside.utils.constants import DELETED_MESSAGE_PLACEHOLDER, MESSAGE_PREVIEW_LENGTH
from courtside.utils.datetime_utils import isoformat, utcnow

logger = logging.getLogger(__name__)


def message_to_dict(message: Message) -> Dict:
    """Serialize a Message row to its camelCase wire form."""
    return {
        "id": message.id,
        "conversationId": message.conversation_id,
        "senderId": message.sender_id,
        "content": message.content,
        "messageType": message.message_type,
        "attachments": message.attachments or [],
        "location": message.location,
        "matchInvite": message.match_invite,
        "isEdited": message.is_edited,
        "editedAt": isoformat(message.edited_at),
        "isDeleted": message.is_deleted,
        "deletedAt": isoformat(message.deleted_at),
        "readBy": message.read_by or [],
        "reactions": message.reactions or [],
        "createdAt": isoformat(message.created_at),
        "updatedAt": isoformat(message.updated_at),
    }


def _preview(message: Message) -> str:
    if message.is_deleted:
        return DELETED_MESSAGE_PLACEHOLDER
    if message.content:
        return message.content[:MESSAGE_PREVIEW_LENGTH]
    # Non-text messages without a caption
    return f"[{message.message_type}]"


async def _get_message_for_update(session: AsyncSession, message_id: str) -> Message:
    if not message_id:
        raise ValueError("messageId is required")
    # Reactions and receipts are read-modify-write on JSON columns
    result = await session.execute(
        select(Message)
        .where(Message.id == message_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    message = result.scalar_one_or_none()
    if message is None:
        raise ValueError("Message not found")
    return message


async def _get_accessible_message(session: AsyncSession, message_id: str, user_id: str) -> Tuple[Message, Conversation]:
    """Load a message for modification, row-locked until the transaction ends."""
    message = await _get_message_for_update(session, message_id)
    conversation = await conversation_service.require_participant(
        session, message.conversation_id, user_id
    )
    return message, conversation


async def send_message(session: AsyncSession, sender_id: str, request: SendMessageRequest) -> Tuple[Dict, Dict]:
    """
    Store a new message and refresh the conversation's last-message cache.

    Other active participants get a ``message`` notification unless the
    conversation is muted or the message is a system message.

    Returns:
        (message dict, conversation dict)

    Raises:
        ValueError: If the conversation does not exist or sharing is disabled
        PermissionError: If the sender is not an active participant
    """
    conversation = await conversation_service.require_participant(
        session, request.conversation_id, sender_id
    )
    settings = conversation.settings or {}
    if request.message_type in (MessageType.IMAGE, MessageType.FILE) and not settings.get("allowFileSharing", True):
        raise ValueError("File sharing is disabled in this conversation")
    if request.message_type == MessageType.LOCATION and not settings.get("allowLocationSharing", True):
        raise ValueError("Location sharing is disabled in this conversation")

    now = utcnow()
    message = Message(
        conversation_id=conversation.id,
        sender_id=sender_id,
        content=request.content,
        message_type=request.message_type.value,
        attachments=[a.to_wire() for a in request.attachments],
        location=request.location.to_wire() if request.location else None,
        match_invite=request.match_invite.to_wire() if request.match_invite else None,
        read_by=[],
        reactions=[],
        created_at=now,
        updated_at=now,
    )
    session.add(message)
    await session.flush()

    conversation.last_message_id = message.id
    conversation.last_message_at = message.created_at
    conversation.last_message_preview = _preview(message)
    conversation.updated_at = now
    await session.flush()

    if not settings.get("muteNotifications", False) and request.message_type != MessageType.SYSTEM:
        recipients = [
            user_id
            for user_id in conversation_service.active_participant_ids(conversation)
            if user_id != sender_id
        ]
        try:
            await notification_service.notify_participants_about_message(
                session,
                recipient_ids=recipients,
                conversation_id=conversation.id,
                conversation_name=conversation.name,
                message_id=message.id,
                sender_id=sender_id,
                preview=_preview(message),
            )
        except Exception as e:
            # Message delivery must not depend on notification creation
            logger.warning(f"Failed to create message notifications for {message.id}: {e}")

    return message_to_dict(message), conversation_service.conversation_to_dict(conversation)


async def list_messages(
    session: AsyncSession,
    conversation_id: str,
    user_id: str,
    page: int = 1,
    limit: int = 50,
) -> Dict:
    """
    One page of history. Page 1 holds the most recent messages; each page is
    returned oldest first.
    """
    if page < 1:
        raise ValueError("page must be at least 1")
    if limit < 1 or limit > 100:
        raise ValueError("limit must be between 1 and 100")
    await conversation_service.require_participant(session, conversation_id, user_id)

    total_result = await session.execute(
        select(func.count()).select_from(Message).where(Message.conversation_id == conversation_id)
    )
    total = total_result.scalar_one() or 0

    result = await session.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    messages = list(reversed(result.scalars().all()))
    return {
        "messages": [message_to_dict(m) for m in messages],
        "total": total,
        "page": page,
        "totalPages": math.ceil(total / limit) if total else 0,
    }


async def edit_message(session: AsyncSession, message_id: str, user_id: str, content: str) -> Dict:
    """
    Replace a message's content.

    Raises:
        ValueError: If the message is missing, deleted or the content is empty
        PermissionError: If the user is not the sender
    """
    if not content or not content.strip():
        raise ValueError("content is required")
    message, _ = await _get_accessible_message(session, message_id, user_id)
    if message.sender_id != user_id:
        raise PermissionError("Only the sender can edit a message")
    if message.is_deleted:
        raise ValueError("Cannot edit a deleted message")
    if message.message_type == MessageType.SYSTEM.value:
        raise ValueError("System messages cannot be edited")

    now = utcnow()
    message.content = content
    message.is_edited = True
    message.edited_at = now
    message.updated_at = now
    await session.flush()
    return message_to_dict(message)


async def delete_message(session: AsyncSession, message_id: str, user_id: str) -> Dict:
    """
    Soft-delete a message. Deleting twice is a no-op.

    Raises:
        PermissionError: If the user is not the sender
    """
    message, conversation = await _get_accessible_message(session, message_id, user_id)
    if message.sender_id != user_id:
        raise PermissionError("Only the sender can delete a message")
    if message.is_deleted:
        return message_to_dict(message)

    now = utcnow()
    message.is_deleted = True
    message.deleted_at = now
    message.content = DELETED_MESSAGE_PLACEHOLDER
    message.updated_at = now
    if conversation.last_message_id == message.id:
        conversation.last_message_preview = DELETED_MESSAGE_PLACEHOLDER
        conversation.updated_at = now
    await session.flush()
    return message_to_dict(message)


async def add_reaction(session: AsyncSession, message_id: str, user_id: str, emoji: str) -> Dict:
    """Set the user's reaction on a message, replacing any earlier one."""
    if not emoji:
        raise ValueError("emoji is required")
    message, _ = await _get_accessible_message(session, message_id, user_id)
    if message.is_deleted:
        raise ValueError("Cannot react to a deleted message")

    reactions = [r for r in (message.reactions or []) if r.get("userId") != user_id]
    reactions.append({"userId": user_id, "emoji": emoji, "createdAt": utcnow().isoformat()})
    # Reassign so the JSON column is flagged dirty
    message.reactions = reactions
    await session.flush()
    return message_to_dict(message)


async def remove_reaction(session: AsyncSession, message_id: str, user_id: str) -> Dict:
    message, _ = await _get_accessible_message(session, message_id, user_id)
    message.reactions = [r for r in (message.reactions or []) if r.get("userId") != user_id]
    await session.flush()
    return message_to_dict(message)


async def mark_as_read(session: AsyncSession, message_id: str, user_id: str) -> Dict:
    """
    Record that the user read a message. A repeat read replaces the earlier
    receipt; there is never more than one per user.

    Returns:
        Dict with messageId, conversationId, userId and readAt
    """
    message, _ = await _get_accessible_message(session, message_id, user_id)
    read_at = utcnow().isoformat()
    read_by = [r for r in (message.read_by or []) if r.get("userId") != user_id]
    read_by.append({"userId": user_id, "readAt": read_at})
    message.read_by = read_by
    await session.flush()
    return {
        "messageId": message.id,
        "conversationId": message.conversation_id,
        "userId": user_id,
        "readAt": read_at,
    }


async def search_messages(
    session: AsyncSession,
    user_id: str,
    query: str,
    conversation_id: Optional[str] = None,
    limit: int = 50,
) -> List[Dict]:
    """Case-insensitive content search over the user's conversations, newest first."""
    if not query or not query.strip():
        raise ValueError("query is required")

    if conversation_id:
        await conversation_service.require_participant(session, conversation_id, user_id)
        conversation_ids = [conversation_id]
    else:
        result = await session.execute(
            select(ConversationParticipant.conversation_id).where(
                and_(
                    ConversationParticipant.user_id == user_id,
                    ConversationParticipant.is_active == True,  # noqa: E712
                )
            )
        )
        conversation_ids = list(result.scalars().all())
        if not conversation_ids:
            return []

    result = await session.execute(
        select(Message)
        .where(
            and_(
                Message.conversation_id.in_(conversation_ids),
                Message.is_deleted == False,  # noqa: E712
                Message.content.ilike(f"%{query.strip()}%"),
            )
        )
        .order_by(Message.created_at.desc())
        .limit(limit)
    )
    return [message_to_dict(m) for m in result.scalars().all()]
