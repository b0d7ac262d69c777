"""
Conversation store: the client's single source of truth for conversations and
their message logs.

All writes, whether from local actions or server push events, go through
``upsert_message`` / ``update_message`` / ``upsert_conversation``. Each applies a
reducer synchronously, so no await can interleave between reading and writing
a conversation's state.
"""

import bisect
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from courtside.client.api_client import MessagingApi
from courtside.client.connection_manager import ConnectionManager, ConnectionState
from courtside.client import reducers
from courtside.models import events
from courtside.models.schemas import (
    Conversation,
    ConversationType,
    CreateConversationRequest,
    Message,
    Participant,
)
from courtside.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str], None]

_EPOCH = datetime(1970, 1, 1)


class ConversationStore:
    """Conversations the current user participates in, each with an ordered message log."""

    def __init__(
        self,
        connection: ConnectionManager,
        api: Optional[MessagingApi] = None,
        history_page_size: int = 50,
    ):
        self.connection = connection
        self.api = api
        self.history_page_size = history_page_size
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._message_index: Dict[str, str] = {}  # message id -> conversation id
        self._joined: Set[str] = set()
        self._history_loaded: Set[str] = set()
        self._listeners: List[ChangeListener] = []
        self._was_connected = False

        connection.on(events.CONVERSATION_NEW, self._on_conversation_new)
        connection.on(events.CONVERSATION_UPDATED, self._on_conversation_updated)
        connection.subscribe(self._on_connection_state)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def current_user_id(self) -> Optional[str]:
        return self.connection.user_id

    @property
    def joined_conversation_ids(self) -> Set[str]:
        return set(self._joined)

    def list_conversations(self, include_archived: bool = True) -> List[Conversation]:
        """Conversations ordered by last activity, most recent first; never-active ones last."""
        conversations = [
            conv.model_copy(update={"unread_count": self.unread_count(conv.id)})
            for conv in self._conversations.values()
            if include_archived or not conv.is_archived
        ]
        conversations.sort(key=self._activity_key, reverse=True)
        return conversations

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def get_messages(self, conversation_id: str) -> List[Message]:
        """Messages of a conversation in server order (createdAt, then id)."""
        return list(self._messages.get(conversation_id, []))

    def get_message(self, message_id: str) -> Optional[Message]:
        conversation_id = self._message_index.get(message_id)
        if conversation_id is None:
            return None
        for message in self._messages.get(conversation_id, []):
            if message.id == message_id:
                return message
        return None

    def unread_count(self, conversation_id: str) -> int:
        """Messages from other users that the current user has not read."""
        user_id = self.current_user_id
        if user_id is None:
            return 0
        return sum(
            1
            for m in self._messages.get(conversation_id, [])
            if not m.is_deleted
            and m.sender_id != user_id
            and not any(r.user_id == user_id for r in m.read_by)
        )

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Be told the id of every conversation whose state changed."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def reset(self) -> None:
        """Drop every conversation, message and joined room (session end)."""
        conversation_ids = sorted(set(self._conversations) | set(self._messages))
        self._conversations.clear()
        self._messages.clear()
        self._message_index.clear()
        self._joined.clear()
        self._history_loaded.clear()
        self._was_connected = False
        for conversation_id in conversation_ids:
            self._notify(conversation_id)

    # ------------------------------------------------------------------
    # Writes (single update path)
    # ------------------------------------------------------------------

    def upsert_conversation(self, fields: dict) -> Conversation:
        """Merge a full or partial conversation payload by id; unknown ids are added."""
        fields = dict(fields)
        if "id" not in fields and "conversationId" in fields:
            fields["id"] = fields.pop("conversationId")
        existing = self._conversations.get(fields["id"])
        conversation = reducers.merge_conversation(existing, fields)
        self._conversations[conversation.id] = conversation
        self._notify(conversation.id)
        return conversation

    def upsert_message(self, message: Message) -> Message:
        """Insert or merge a message by id, keeping the log sorted by server order."""
        log = self._messages.setdefault(message.conversation_id, [])
        known_conversation = self._message_index.get(message.id)
        if known_conversation is not None and known_conversation != message.conversation_id:
            logger.warning(
                f"Ignoring message {message.id}: it belongs to {known_conversation}, "
                f"not {message.conversation_id}"
            )
            return self.get_message(message.id)

        position = self._position(log, message.id)
        if position is None:
            merged = message
            bisect.insort(log, merged, key=reducers.sort_key)
            self._message_index[merged.id] = merged.conversation_id
        else:
            merged = reducers.merge_message(log[position], message)
            if merged is not log[position]:
                del log[position]
                bisect.insort(log, merged, key=reducers.sort_key)

        self._touch_conversation(merged)
        self._notify(merged.conversation_id)
        return merged

    def update_message(self, message_id: str, update: Callable[[Message], Message]) -> Optional[Message]:
        """
        Apply a reducer to a known message.

        Returns:
            The updated message, or None if the id is unknown locally
        """
        conversation_id = self._message_index.get(message_id)
        if conversation_id is None:
            return None
        log = self._messages[conversation_id]
        position = self._position(log, message_id)
        if position is None:
            return None
        current = log[position]
        updated = update(current)
        if updated is current:
            return current
        log[position] = updated
        self._touch_conversation(updated)
        self._notify(conversation_id)
        return updated

    # ------------------------------------------------------------------
    # Server operations
    # ------------------------------------------------------------------

    async def refresh(self) -> List[Conversation]:
        """Fetch the conversation list and merge it in."""
        data = await self.connection.request(events.CONVERSATION_LIST, {})
        for fields in data.get("conversations", []):
            self.upsert_conversation(fields)
        return self.list_conversations()

    async def join(self, conversation_id: str, refresh: bool = False) -> None:
        """
        Join a conversation room and load its history once.

        Safe to call repeatedly: history is fetched on the first join only,
        unless ``refresh`` is set (used after reconnecting).
        """
        await self.connection.request(events.CONVERSATION_JOIN, {"conversationId": conversation_id})
        self._joined.add(conversation_id)
        if refresh or conversation_id not in self._history_loaded:
            await self.load_history(conversation_id)

    async def leave(self, conversation_id: str) -> None:
        """Leave the room. Cached messages are kept."""
        await self.connection.request(events.CONVERSATION_LEAVE, {"conversationId": conversation_id})
        self._joined.discard(conversation_id)

    async def archive(self, conversation_id: str) -> Conversation:
        await self.connection.request(events.CONVERSATION_ARCHIVE, {"conversationId": conversation_id})
        return self.upsert_conversation(
            {"id": conversation_id, "isArchived": True, "archivedAt": utcnow().isoformat()}
        )

    async def create(
        self,
        type: ConversationType,
        participant_ids: List[str],
        name: Optional[str] = None,
        **extra,
    ) -> Conversation:
        """Create a conversation; validation errors surface before anything is sent."""
        request = CreateConversationRequest(
            type=type, participant_ids=participant_ids, name=name, **extra
        )
        data = await self.connection.request(events.CONVERSATION_CREATE, request.to_wire())
        return self.upsert_conversation(data["conversation"])

    async def get_participants(self, conversation_id: str) -> List[Participant]:
        data = await self.connection.request(
            events.CONVERSATION_GET_PARTICIPANTS, {"conversationId": conversation_id}
        )
        return [Participant.model_validate(p) for p in data.get("participants", [])]

    async def load_history(self, conversation_id: str) -> List[Message]:
        """Fetch the most recent page of history over the socket and merge it."""
        data = await self.connection.request(
            events.MESSAGE_LIST,
            {"conversationId": conversation_id, "page": 1, "limit": self.history_page_size},
        )
        for payload in data.get("messages", []):
            self.upsert_message(Message.model_validate(payload))
        self._history_loaded.add(conversation_id)
        return self.get_messages(conversation_id)

    async def load_older(self, conversation_id: str, page: int) -> List[Message]:
        """Fetch an older history page through the REST API."""
        if self.api is None:
            raise RuntimeError("No REST client configured for paginated history")
        result = await self.api.get_messages(conversation_id, page=page, limit=self.history_page_size)
        for message in result.messages:
            self.upsert_message(message)
        return self.get_messages(conversation_id)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def _on_conversation_new(self, payload: dict) -> None:
        self.upsert_conversation(payload.get("conversation", payload))

    def _on_conversation_updated(self, payload: dict) -> None:
        fields = payload.get("conversation", payload)
        if not (fields.get("id") or fields.get("conversationId")):
            logger.warning(f"conversation:updated without an id: {payload}")
            return
        self.upsert_conversation(fields)

    async def _on_connection_state(self, state: ConnectionState) -> None:
        if state != ConnectionState.CONNECTED:
            return
        if not self._was_connected:
            self._was_connected = True
            return
        await self.rejoin()

    async def rejoin(self) -> None:
        """
        Re-join every room joined before a drop and re-fetch its recent history.

        Events missed while disconnected are not replayed by the server, so the
        latest page is merged back in.
        """
        rooms = sorted(self._joined)
        logger.info(f"Reconnected; rejoining {len(rooms)} conversation(s)")
        try:
            await self.refresh()
        except Exception as e:
            logger.warning(f"Failed to refresh conversations after reconnect: {e}")
        for conversation_id in rooms:
            try:
                await self.join(conversation_id, refresh=True)
            except Exception as e:
                logger.warning(f"Failed to rejoin conversation {conversation_id}: {e}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _position(log: List[Message], message_id: str) -> Optional[int]:
        for index, message in enumerate(log):
            if message.id == message_id:
                return index
        return None

    @staticmethod
    def _activity_key(conversation: Conversation):
        last = ensure_utc(conversation.last_message_at or conversation.created_at)
        return (last is not None, last or ensure_utc(_EPOCH))

    def _touch_conversation(self, message: Message) -> None:
        conversation = self._conversations.get(message.conversation_id)
        if conversation is None:
            conversation = Conversation(id=message.conversation_id)
        updated = reducers.apply_last_message(conversation, message)
        self._conversations[updated.id] = updated

    def _notify(self, conversation_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(conversation_id)
            except Exception as e:
                logger.error(f"Error in conversation store listener: {e}", exc_info=True)
