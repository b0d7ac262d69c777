"""
Event router: dispatches client socket frames to handlers and answers with
acknowledgement envelopes.

Each request runs in its own database session. Broadcasts that depend on the
request are queued with ``ctx.after_commit`` and sent only once the session
has committed, so clients never see data that was rolled back.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import WebSocket
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from courtside.database import db
from courtside.models import events
from courtside.models.schemas import (
    CreateConversationRequest,
    EditMessageRequest,
    PresenceStatus,
    SendMessageRequest,
)
from courtside.services import conversation_service, message_service, notification_service
from courtside.services.presence_service import PresenceRegistry, get_presence_registry
from courtside.services.websocket_manager import (
    WebSocketManager,
    conversation_room,
    get_websocket_manager,
    make_event,
    user_room,
)
from courtside.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


class EventContext:
    """Everything a handler needs about the request it is serving."""

    def __init__(
        self,
        user_id: str,
        websocket: WebSocket,
        session: AsyncSession,
        manager: WebSocketManager,
        presence: PresenceRegistry,
        claims: Optional[dict] = None,
    ):
        self.user_id = user_id
        self.websocket = websocket
        self.session = session
        self.manager = manager
        self.presence = presence
        self.claims = claims or {}
        self._after_commit: List[Callable[[], Awaitable[Any]]] = []

    def after_commit(self, callback: Callable[[], Awaitable[Any]]) -> None:
        self._after_commit.append(callback)

    async def run_after_commit(self) -> None:
        for callback in self._after_commit:
            try:
                await callback()
            except Exception as e:
                logger.warning(f"Post-commit broadcast failed for user {self.user_id}: {e}")


Handler = Callable[[EventContext, dict], Awaitable[Optional[dict]]]

HANDLERS: Dict[str, Handler] = {}


def handles(event: str):
    """Register a handler for a client event."""
    def decorator(func: Handler) -> Handler:
        HANDLERS[event] = func
        return func
    return decorator


def ack(req_id: str, data: Optional[dict] = None, error: Optional[str] = None) -> dict:
    if error is not None:
        return {"event": events.ACK, "reqId": req_id, "success": False, "error": error}
    return {"event": events.ACK, "reqId": req_id, "success": True, "data": data or {}}


def _validation_message(e: ValidationError) -> str:
    errors = e.errors()
    if not errors:
        return "Invalid payload"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "__root__")
    message = first.get("msg", "Invalid payload").removeprefix("Value error, ")
    return f"{location}: {message}" if location else message


class EventRouter:
    """Turns one raw client frame into a handler call plus an optional ack."""

    def __init__(
        self,
        manager: Optional[WebSocketManager] = None,
        presence: Optional[PresenceRegistry] = None,
        session_factory=None,
        handlers: Optional[Dict[str, Handler]] = None,
    ):
        self.manager = manager or get_websocket_manager()
        self.presence = presence or get_presence_registry()
        self._session_factory = session_factory
        self.handlers = handlers if handlers is not None else HANDLERS

    def _new_session(self) -> AsyncSession:
        factory = self._session_factory or db.AsyncSessionLocal
        return factory()

    async def handle_frame(
        self, user_id: str, websocket: WebSocket, raw: str, claims: Optional[dict] = None
    ) -> Optional[dict]:
        """
        Process one text frame.

        Returns:
            The ack frame that was sent, or None for fire-and-forget signals
            and unparseable frames
        """
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning(f"Dropping malformed frame from user {user_id}: {raw[:200]}")
            return None
        if not isinstance(frame, dict) or not frame.get("event"):
            logger.warning(f"Dropping frame without event from user {user_id}")
            return None

        event = frame["event"]
        req_id = frame.get("reqId")
        payload = frame.get("payload") or {}
        if not isinstance(payload, dict):
            payload = {}

        response = await self.dispatch(user_id, websocket, event, payload, claims)
        if req_id is None:
            return None

        frame_out = ack(req_id, data=response.get("data"), error=response.get("error"))
        try:
            await websocket.send_text(json.dumps(frame_out))
        except Exception as e:
            logger.warning(f"Failed to send ack for {event} to user {user_id}: {e}")
        return frame_out

    async def dispatch(
        self,
        user_id: str,
        websocket: WebSocket,
        event: str,
        payload: dict,
        claims: Optional[dict] = None,
    ) -> dict:
        """
        Run the handler for an event inside its own session.

        Returns:
            ``{"data": {...}}`` on success or ``{"error": "..."}`` on failure
        """
        handler = self.handlers.get(event)
        if handler is None:
            logger.warning(f"Unknown event {event} from user {user_id}")
            return {"error": f"Unknown event: {event}"}

        async with self._new_session() as session:
            ctx = EventContext(user_id, websocket, session, self.manager, self.presence, claims)
            try:
                data = await handler(ctx, payload)
                await session.commit()
            except ValidationError as e:
                await session.rollback()
                return {"error": _validation_message(e)}
            except (ValueError, PermissionError) as e:
                await session.rollback()
                return {"error": str(e)}
            except Exception as e:
                await session.rollback()
                logger.error(f"Error handling {event} for user {user_id}: {e}", exc_info=True)
                return {"error": f"Failed to process {event}"}

        await ctx.run_after_commit()
        return {"data": data or {}}


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@handles(events.CONVERSATION_JOIN)
async def join_conversation(ctx: EventContext, payload: dict) -> dict:
    conversation_id = payload.get("conversationId")
    await conversation_service.require_participant(ctx.session, conversation_id, ctx.user_id)
    room = conversation_room(conversation_id)
    await ctx.manager.join_room(ctx.websocket, room)

    async def announce():
        await ctx.manager.send_to_room(
            room,
            make_event(events.CONVERSATION_USER_JOINED, {"conversationId": conversation_id, "userId": ctx.user_id}),
            exclude=ctx.websocket,
        )

    ctx.after_commit(announce)
    return {"conversationId": conversation_id}


@handles(events.CONVERSATION_LEAVE)
async def leave_conversation(ctx: EventContext, payload: dict) -> dict:
    conversation_id = payload.get("conversationId")
    if not conversation_id:
        raise ValueError("conversationId is required")
    room = conversation_room(conversation_id)
    await ctx.manager.leave_room(ctx.websocket, room)

    async def announce():
        await ctx.manager.send_to_room(
            room,
            make_event(events.CONVERSATION_USER_LEFT, {"conversationId": conversation_id, "userId": ctx.user_id}),
        )

    ctx.after_commit(announce)
    return {"conversationId": conversation_id}


@handles(events.CONVERSATION_CREATE)
async def create_conversation(ctx: EventContext, payload: dict) -> dict:
    request = CreateConversationRequest.model_validate(payload)
    conversation = await conversation_service.create_conversation(ctx.session, ctx.user_id, request)

    async def announce():
        room = conversation_room(conversation["id"])
        for participant in conversation["participants"]:
            await ctx.manager.join_user_to_room(participant["userId"], room)
            await ctx.manager.send_to_user(
                participant["userId"],
                make_event(events.CONVERSATION_NEW, {"conversation": conversation}),
                exclude=ctx.websocket,
            )

    ctx.after_commit(announce)
    return {"conversation": conversation}


@handles(events.CONVERSATION_ARCHIVE)
async def archive_conversation(ctx: EventContext, payload: dict) -> dict:
    conversation = await conversation_service.archive_conversation(
        ctx.session, payload.get("conversationId"), ctx.user_id
    )

    async def announce():
        await ctx.manager.send_to_user(
            ctx.user_id,
            make_event(events.CONVERSATION_UPDATED, {"conversation": conversation}),
            exclude=ctx.websocket,
        )

    ctx.after_commit(announce)
    return {"conversation": conversation}


@handles(events.CONVERSATION_LIST)
async def list_conversations(ctx: EventContext, payload: dict) -> dict:
    conversations = await conversation_service.list_user_conversations(
        ctx.session, ctx.user_id, include_archived=payload.get("includeArchived", True)
    )
    return {"conversations": conversations}


@handles(events.CONVERSATION_GET_PARTICIPANTS)
async def get_participants(ctx: EventContext, payload: dict) -> dict:
    participants = await conversation_service.get_participants(
        ctx.session, payload.get("conversationId"), ctx.user_id
    )
    return {"participants": participants}


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@handles(events.MESSAGE_SEND)
async def send_message(ctx: EventContext, payload: dict) -> dict:
    request = SendMessageRequest.model_validate(payload)
    message, conversation = await message_service.send_message(ctx.session, ctx.user_id, request)

    async def announce():
        await ctx.manager.send_to_room(
            conversation_room(conversation["id"]),
            make_event(events.MESSAGE_NEW, {"message": message, "conversation": conversation}),
        )
        summary = {
            "conversationId": conversation["id"],
            "lastMessageId": message["id"],
            "lastMessageAt": conversation["lastMessageAt"],
            "lastMessagePreview": conversation["lastMessagePreview"],
        }
        for participant in conversation["participants"]:
            if participant["isActive"]:
                await ctx.manager.send_to_room(
                    user_room(participant["userId"]),
                    make_event(events.CONVERSATION_UPDATED, summary),
                )

    ctx.after_commit(announce)
    return {"message": message}


@handles(events.MESSAGE_EDIT)
async def edit_message(ctx: EventContext, payload: dict) -> dict:
    request = EditMessageRequest.model_validate(payload)
    message = await message_service.edit_message(ctx.session, request.message_id, ctx.user_id, request.content)

    async def announce():
        await ctx.manager.send_to_room(
            conversation_room(message["conversationId"]),
            make_event(events.MESSAGE_EDITED, {"message": message}),
        )

    ctx.after_commit(announce)
    return {"message": message}


@handles(events.MESSAGE_DELETE)
async def delete_message(ctx: EventContext, payload: dict) -> dict:
    message = await message_service.delete_message(ctx.session, payload.get("messageId"), ctx.user_id)
    event_payload = {
        "messageId": message["id"],
        "conversationId": message["conversationId"],
        "deletedAt": message["deletedAt"],
    }

    async def announce():
        await ctx.manager.send_to_room(
            conversation_room(message["conversationId"]),
            make_event(events.MESSAGE_DELETED, event_payload),
        )

    ctx.after_commit(announce)
    return event_payload


@handles(events.MESSAGE_REACT)
async def react_to_message(ctx: EventContext, payload: dict) -> dict:
    emoji = payload.get("emoji")
    message = await message_service.add_reaction(ctx.session, payload.get("messageId"), ctx.user_id, emoji)
    reaction = next(r for r in message["reactions"] if r["userId"] == ctx.user_id)

    async def announce():
        await ctx.manager.send_to_room(
            conversation_room(message["conversationId"]),
            make_event(
                events.MESSAGE_REACTION_ADDED,
                {
                    "messageId": message["id"],
                    "conversationId": message["conversationId"],
                    "userId": ctx.user_id,
                    "emoji": reaction["emoji"],
                    "createdAt": reaction["createdAt"],
                },
            ),
        )

    ctx.after_commit(announce)
    return {"message": message}


@handles(events.MESSAGE_UNREACT)
async def unreact_to_message(ctx: EventContext, payload: dict) -> dict:
    message = await message_service.remove_reaction(ctx.session, payload.get("messageId"), ctx.user_id)

    async def announce():
        await ctx.manager.send_to_room(
            conversation_room(message["conversationId"]),
            make_event(
                events.MESSAGE_REACTION_REMOVED,
                {"messageId": message["id"], "conversationId": message["conversationId"], "userId": ctx.user_id},
            ),
        )

    ctx.after_commit(announce)
    return {"message": message}


@handles(events.MESSAGE_READ)
async def read_message(ctx: EventContext, payload: dict) -> dict:
    receipt = await message_service.mark_as_read(ctx.session, payload.get("messageId"), ctx.user_id)

    async def announce():
        await ctx.manager.send_to_room(
            conversation_room(receipt["conversationId"]),
            make_event(events.MESSAGE_READ_BY, receipt),
        )

    ctx.after_commit(announce)
    return receipt


@handles(events.MESSAGE_SEARCH)
async def search_messages(ctx: EventContext, payload: dict) -> dict:
    messages = await message_service.search_messages(
        ctx.session, ctx.user_id, payload.get("query", ""), conversation_id=payload.get("conversationId")
    )
    return {"messages": messages}


@handles(events.MESSAGE_LIST)
async def list_messages(ctx: EventContext, payload: dict) -> dict:
    return await message_service.list_messages(
        ctx.session,
        payload.get("conversationId"),
        ctx.user_id,
        page=int(payload.get("page", 1)),
        limit=int(payload.get("limit", 50)),
    )


# ---------------------------------------------------------------------------
# Typing and presence
# ---------------------------------------------------------------------------


async def _relay_typing(ctx: EventContext, payload: dict, event: str) -> dict:
    conversation_id = payload.get("conversationId")
    await conversation_service.require_participant(ctx.session, conversation_id, ctx.user_id)

    async def announce():
        await ctx.manager.send_to_room(
            conversation_room(conversation_id),
            make_event(
                event,
                {
                    "conversationId": conversation_id,
                    "userId": ctx.user_id,
                    "username": ctx.claims.get("username"),
                    "timestamp": utcnow().isoformat(),
                },
            ),
            exclude=ctx.websocket,
        )

    ctx.after_commit(announce)
    return {}


@handles(events.TYPING_START)
async def typing_start(ctx: EventContext, payload: dict) -> dict:
    return await _relay_typing(ctx, payload, events.TYPING_USER_STARTED)


@handles(events.TYPING_STOP)
async def typing_stop(ctx: EventContext, payload: dict) -> dict:
    return await _relay_typing(ctx, payload, events.TYPING_USER_STOPPED)


@handles(events.PRESENCE_UPDATE)
async def update_presence(ctx: EventContext, payload: dict) -> dict:
    status = PresenceStatus(payload.get("status"))
    presence = await ctx.presence.set_status(ctx.user_id, status)

    async def announce():
        await ctx.manager.broadcast(
            make_event(events.PRESENCE_UPDATE, {"userId": ctx.user_id, "presence": presence}),
            exclude_user=ctx.user_id,
        )
        # The user's other devices
        await ctx.manager.send_to_user(
            ctx.user_id,
            make_event(events.PRESENCE_STATUS_SYNC, {"status": status.value}),
            exclude=ctx.websocket,
        )

    ctx.after_commit(announce)
    return {"presence": presence}


@handles(events.PRESENCE_GET_ONLINE_USERS)
async def get_online_users(ctx: EventContext, payload: dict) -> dict:
    return {"users": await ctx.presence.get_online_users()}


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@handles(events.NOTIFICATION_UNREAD)
async def unread_notifications(ctx: EventContext, payload: dict) -> dict:
    result = await notification_service.get_user_notifications(
        ctx.session, ctx.user_id, is_read=False, limit=int(payload.get("limit", 50))
    )
    return {"notifications": result["notifications"], "count": result["unreadCount"]}


@handles(events.NOTIFICATION_READ)
async def read_notification(ctx: EventContext, payload: dict) -> dict:
    notification_id = payload.get("notificationId")
    if not notification_id:
        raise ValueError("notificationId is required")
    notification = await notification_service.mark_as_read(ctx.session, notification_id, ctx.user_id)
    return {"notification": notification}


@handles(events.NOTIFICATION_READ_ALL)
async def read_all_notifications(ctx: EventContext, payload: dict) -> dict:
    return {"count": await notification_service.mark_all_as_read(ctx.session, ctx.user_id)}


@handles(events.NOTIFICATION_GET_UNREAD_COUNT)
async def notification_unread_count(ctx: EventContext, payload: dict) -> dict:
    return {"count": await notification_service.get_unread_count(ctx.session, ctx.user_id)}


# Global event router instance
_event_router: Optional[EventRouter] = None


def get_event_router() -> EventRouter:
    global _event_router
    if _event_router is None:
        _event_router = EventRouter()
    return _event_router
