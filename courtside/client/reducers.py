"""
Update functions for messages and conversations.

Every change to a message or conversation, local or pushed by the server, goes
through one of these functions. Each returns a new model and is idempotent:
applying the same event twice yields the same result as applying it once.
Updates never touch ``conversation_id`` or ``sender_id``.
"""

from datetime import datetime
from typing import Optional, Tuple

from courtside.models.schemas import Conversation, Message, ReadReceipt, Reaction
from courtside.utils.constants import DELETED_MESSAGE_PLACEHOLDER, MESSAGE_PREVIEW_LENGTH
from courtside.utils.datetime_utils import ensure_utc


def sort_key(message: Message) -> Tuple[datetime, str]:
    """Render order: server-assigned creation time, then id for ties."""
    return (ensure_utc(message.created_at), message.id)


def merge_message(existing: Optional[Message], incoming: Message) -> Message:
    """
    Upsert a server snapshot of a message into the local copy.

    The snapshot wins for content and reactions; read receipts are merged per
    user with the snapshot taking precedence; a local tombstone is never undone.
    """
    if existing is None:
        return incoming

    read_by = {receipt.user_id: receipt for receipt in existing.read_by}
    for receipt in incoming.read_by:
        read_by[receipt.user_id] = receipt

    update = {
        "content": incoming.content,
        "message_type": incoming.message_type,
        "attachments": incoming.attachments,
        "location": incoming.location,
        "match_invite": incoming.match_invite,
        "is_edited": incoming.is_edited or existing.is_edited,
        "edited_at": incoming.edited_at or existing.edited_at,
        "is_deleted": incoming.is_deleted,
        "deleted_at": incoming.deleted_at,
        "read_by": list(read_by.values()),
        "reactions": incoming.reactions,
        "created_at": incoming.created_at,
        "updated_at": incoming.updated_at or existing.updated_at,
    }
    if existing.is_deleted:
        update.update(
            content=DELETED_MESSAGE_PLACEHOLDER,
            is_deleted=True,
            deleted_at=existing.deleted_at or incoming.deleted_at,
        )
    return existing.model_copy(update=update)


def apply_edit(message: Message, content: str, edited_at: datetime) -> Message:
    """Apply a confirmed edit. Deleted messages stay tombstoned."""
    if message.is_deleted:
        return message
    return message.model_copy(
        update={"content": content, "is_edited": True, "edited_at": edited_at, "updated_at": edited_at}
    )


def apply_delete(message: Message, deleted_at: datetime) -> Message:
    """
    Tombstone a message: content becomes the placeholder while id, sender and
    timestamps are kept. Attachments and reactions stay on the record.
    """
    if message.is_deleted:
        return message
    return message.model_copy(
        update={
            "content": DELETED_MESSAGE_PLACEHOLDER,
            "is_deleted": True,
            "deleted_at": deleted_at,
        }
    )


def apply_read(message: Message, user_id: str, read_at: datetime) -> Message:
    """Record a read receipt; a later read by the same user replaces the earlier one."""
    current = next((r for r in message.read_by if r.user_id == user_id), None)
    if current is not None and current.read_at == read_at:
        return message
    read_by = [r for r in message.read_by if r.user_id != user_id]
    read_by.append(ReadReceipt(user_id=user_id, read_at=read_at))
    return message.model_copy(update={"read_by": read_by})


def apply_reaction(message: Message, user_id: str, emoji: str, created_at: datetime) -> Message:
    """Set a user's reaction. A user holds at most one; a new emoji replaces the old."""
    current = next((r for r in message.reactions if r.user_id == user_id), None)
    if current is not None and current.emoji == emoji:
        return message
    reactions = [r for r in message.reactions if r.user_id != user_id]
    reactions.append(Reaction(user_id=user_id, emoji=emoji, created_at=created_at))
    return message.model_copy(update={"reactions": reactions})


def remove_reaction(message: Message, user_id: str) -> Message:
    """Drop a user's reaction, if any."""
    if not any(r.user_id == user_id for r in message.reactions):
        return message
    reactions = [r for r in message.reactions if r.user_id != user_id]
    return message.model_copy(update={"reactions": reactions})


def preview_for(message: Message) -> str:
    if message.is_deleted:
        return DELETED_MESSAGE_PLACEHOLDER
    return message.content[:MESSAGE_PREVIEW_LENGTH]


def apply_last_message(conversation: Conversation, message: Message) -> Conversation:
    """Refresh the denormalized last-message cache if this message is the newest."""
    last_at = ensure_utc(conversation.last_message_at)
    created_at = ensure_utc(message.created_at)
    if last_at is not None and created_at < last_at:
        return conversation
    if conversation.last_message_id == message.id and conversation.last_message_preview == preview_for(message):
        return conversation
    return conversation.model_copy(
        update={
            "last_message_id": message.id,
            "last_message_at": message.created_at,
            "last_message_preview": preview_for(message),
        }
    )


def merge_conversation(existing: Optional[Conversation], fields: dict) -> Conversation:
    """
    Merge a (possibly partial) conversation payload by id.

    Unknown ids produce a new record from whatever fields were sent.
    """
    incoming = Conversation.model_validate(fields)
    if existing is None:
        return incoming
    provided = {
        name: getattr(incoming, name)
        for name in incoming.model_fields_set
        if name not in ("id", "unread_count")
    }
    return existing.model_copy(update=provided)
