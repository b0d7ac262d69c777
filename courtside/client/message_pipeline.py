"""
Message pipeline: send/edit/delete/react/read operations and inbound message events.

Every operation is a request/acknowledgement round trip. Edits and deletes are
applied locally only after the server confirms them; reactions and read
receipts are applied optimistically and rolled back if the server refuses.
Inbound push events are folded into the ConversationStore by message id, so a
duplicated event is a no-op.
"""

import logging
from typing import List, Optional

from courtside.client import reducers
from courtside.client.connection_manager import ConnectionManager
from courtside.client.conversation_store import ConversationStore
from courtside.client.errors import MessagingError, NotConnected
from courtside.models import events
from courtside.models.schemas import (
    Attachment,
    Location,
    MatchInvite,
    Message,
    MessageType,
    Reaction,
    SendMessageRequest,
)
from courtside.utils.datetime_utils import parse_datetime, utcnow

logger = logging.getLogger(__name__)


def _restore_reaction(message: Message, user_id: str, reaction: Optional[Reaction]) -> Message:
    """Put a user's reaction back to what it was before an optimistic change."""
    if reaction is None:
        return reducers.remove_reaction(message, user_id)
    return reducers.apply_reaction(message, user_id, reaction.emoji, reaction.created_at)


class MessagePipeline:
    """Outbound message operations plus the inbound message event handlers."""

    def __init__(self, connection: ConnectionManager, store: ConversationStore):
        self.connection = connection
        self.store = store

        connection.on(events.MESSAGE_NEW, self._on_message_new)
        connection.on(events.MESSAGE_UPDATED, self._on_message_edited)
        connection.on(events.MESSAGE_EDITED, self._on_message_edited)
        connection.on(events.MESSAGE_DELETED, self._on_message_deleted)
        connection.on(events.MESSAGE_READ_BY, self._on_message_read_by)
        connection.on(events.MESSAGE_REACTION_ADDED, self._on_reaction_added)
        connection.on(events.MESSAGE_REACTION_REMOVED, self._on_reaction_removed)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(
        self,
        conversation_id: str,
        content: str = "",
        message_type: MessageType = MessageType.TEXT,
        attachments: Optional[List[Attachment]] = None,
        location: Optional[Location] = None,
        match_invite: Optional[MatchInvite] = None,
    ) -> Optional[Message]:
        """
        Send a message.

        Nothing is added locally before the server accepts it. When the ack
        carries the stored message it is upserted right away; the later
        ``message:new`` push for the same id then merges into it.

        Raises:
            pydantic.ValidationError: If type-specific fields don't match message_type
            NotConnected: If the connection is down
            AcknowledgementError: If the server rejected the message
            RequestTimeout: If no ack arrived in time
        """
        request = SendMessageRequest(
            conversation_id=conversation_id,
            content=content,
            message_type=message_type,
            attachments=attachments or [],
            location=location,
            match_invite=match_invite,
        )
        data = await self.connection.request(events.MESSAGE_SEND, request.to_wire())
        if data.get("message"):
            return self.store.upsert_message(Message.model_validate(data["message"]))
        return None

    async def edit(self, message_id: str, content: str) -> Optional[Message]:
        """Edit a message's content. Local state changes only after the ack."""
        if not content or not content.strip():
            raise ValueError("content is required")
        data = await self.connection.request(
            events.MESSAGE_EDIT, {"messageId": message_id, "content": content}
        )
        if data.get("message"):
            return self.store.upsert_message(Message.model_validate(data["message"]))
        edited_at = parse_datetime(data.get("editedAt")) or utcnow()
        return self.store.update_message(
            message_id, lambda m: reducers.apply_edit(m, content, edited_at)
        )

    async def delete(self, message_id: str) -> Optional[Message]:
        """Soft-delete a message; tombstoned locally once the server confirms."""
        data = await self.connection.request(events.MESSAGE_DELETE, {"messageId": message_id})
        deleted_at = parse_datetime(data.get("deletedAt")) or utcnow()
        return self.store.update_message(
            message_id, lambda m: reducers.apply_delete(m, deleted_at)
        )

    async def react(self, message_id: str, emoji: str) -> Optional[Message]:
        """Set the current user's reaction, replacing any earlier one."""
        if not emoji:
            raise ValueError("emoji is required")
        self._require_connection(events.MESSAGE_REACT)
        user_id = self.store.current_user_id
        previous = self._reaction_of(message_id, user_id)
        if user_id:
            self.store.update_message(
                message_id, lambda m: reducers.apply_reaction(m, user_id, emoji, utcnow())
            )
        try:
            await self.connection.request(
                events.MESSAGE_REACT, {"messageId": message_id, "emoji": emoji}
            )
        except MessagingError:
            if user_id:
                self.store.update_message(
                    message_id, lambda m: _restore_reaction(m, user_id, previous)
                )
            raise
        return self.store.get_message(message_id)

    async def unreact(self, message_id: str) -> Optional[Message]:
        """Remove the current user's reaction."""
        self._require_connection(events.MESSAGE_UNREACT)
        user_id = self.store.current_user_id
        previous = self._reaction_of(message_id, user_id)
        if user_id:
            self.store.update_message(message_id, lambda m: reducers.remove_reaction(m, user_id))
        try:
            await self.connection.request(events.MESSAGE_UNREACT, {"messageId": message_id})
        except MessagingError:
            if user_id:
                self.store.update_message(
                    message_id, lambda m: _restore_reaction(m, user_id, previous)
                )
            raise
        return self.store.get_message(message_id)

    async def mark_read(self, message_id: str) -> bool:
        """
        Mark a message read by the current user.

        Best effort: failures are logged and reported as False, never raised,
        so a failed receipt cannot block rendering.
        """
        user_id = self.store.current_user_id
        message = self.store.get_message(message_id)
        previous = None
        if message is not None and user_id:
            previous = next((r for r in message.read_by if r.user_id == user_id), None)
            read_at = utcnow()
            self.store.update_message(
                message_id, lambda m: reducers.apply_read(m, user_id, read_at)
            )
        try:
            data = await self.connection.request(events.MESSAGE_READ, {"messageId": message_id})
        except MessagingError as e:
            logger.warning(f"Failed to mark message {message_id} as read: {e}")
            if message is not None and user_id:
                self.store.update_message(
                    message_id, lambda m: self._restore_receipt(m, user_id, previous)
                )
            return False

        confirmed_at = parse_datetime(data.get("readAt"))
        if confirmed_at is not None and user_id:
            self.store.update_message(
                message_id, lambda m: reducers.apply_read(m, user_id, confirmed_at)
            )
        return True

    async def mark_conversation_read(self, conversation_id: str) -> int:
        """Mark every unread message from others in a conversation; returns how many succeeded."""
        user_id = self.store.current_user_id
        unread = [
            m.id
            for m in self.store.get_messages(conversation_id)
            if not m.is_deleted
            and m.sender_id != user_id
            and not any(r.user_id == user_id for r in m.read_by)
        ]
        marked = 0
        for message_id in unread:
            if await self.mark_read(message_id):
                marked += 1
        return marked

    async def search(self, query: str, conversation_id: Optional[str] = None) -> List[Message]:
        """Full-text search over the user's conversations. Results are not merged into the store."""
        if not query or not query.strip():
            return []
        payload = {"query": query}
        if conversation_id:
            payload["conversationId"] = conversation_id
        data = await self.connection.request(events.MESSAGE_SEARCH, payload)
        return [Message.model_validate(m) for m in data.get("messages", [])]

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _on_message_new(self, payload: dict) -> None:
        if payload.get("conversation"):
            self.store.upsert_conversation(payload["conversation"])
        message = payload.get("message", payload)
        self.store.upsert_message(Message.model_validate(message))

    def _on_message_edited(self, payload: dict) -> None:
        if payload.get("message"):
            self.store.upsert_message(Message.model_validate(payload["message"]))
            return
        message_id = payload.get("messageId")
        content = payload.get("content")
        if not message_id or content is None:
            logger.warning(f"Dropping malformed edit event: {payload}")
            return
        edited_at = parse_datetime(payload.get("editedAt")) or utcnow()
        self._update(message_id, lambda m: reducers.apply_edit(m, content, edited_at))

    def _on_message_deleted(self, payload: dict) -> None:
        deleted_at = parse_datetime(payload.get("deletedAt")) or utcnow()
        self._update(payload.get("messageId"), lambda m: reducers.apply_delete(m, deleted_at))

    def _on_message_read_by(self, payload: dict) -> None:
        user_id = payload.get("userId")
        read_at = parse_datetime(payload.get("readAt")) or utcnow()
        if not user_id:
            logger.warning(f"Dropping read receipt without userId: {payload}")
            return
        self._update(payload.get("messageId"), lambda m: reducers.apply_read(m, user_id, read_at))

    def _on_reaction_added(self, payload: dict) -> None:
        user_id = payload.get("userId")
        emoji = payload.get("emoji")
        if not user_id or not emoji:
            logger.warning(f"Dropping malformed reaction event: {payload}")
            return
        created_at = parse_datetime(payload.get("createdAt")) or utcnow()
        self._update(
            payload.get("messageId"),
            lambda m: reducers.apply_reaction(m, user_id, emoji, created_at),
        )

    def _on_reaction_removed(self, payload: dict) -> None:
        user_id = payload.get("userId")
        if not user_id:
            logger.warning(f"Dropping malformed reaction removal: {payload}")
            return
        self._update(payload.get("messageId"), lambda m: reducers.remove_reaction(m, user_id))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _update(self, message_id: Optional[str], update) -> None:
        if not message_id:
            logger.warning("Dropping message event without messageId")
            return
        if self.store.update_message(message_id, update) is None:
            # Not loaded locally; the next history fetch brings its current state
            logger.debug(f"Event for unknown message {message_id} ignored")

    def _require_connection(self, event: str) -> None:
        if not self.connection.is_connected:
            raise NotConnected(event)

    def _reaction_of(self, message_id: str, user_id: Optional[str]) -> Optional[Reaction]:
        message = self.store.get_message(message_id)
        if message is None or not user_id:
            return None
        return next((r for r in message.reactions if r.user_id == user_id), None)

    @staticmethod
    def _restore_receipt(message: Message, user_id: str, receipt) -> Message:
        read_by = [r for r in message.read_by if r.user_id != user_id]
        if receipt is not None:
            read_by.append(receipt)
        return message.model_copy(update={"read_by": read_by})
