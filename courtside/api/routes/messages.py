"""Conversation and message REST route handlers."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from courtside.database.db import get_db_session
from courtside.services import conversation_service, message_service
from courtside.api.auth_dependencies import require_user
from courtside.models import events
from courtside.models.schemas import MessageListResponse
from courtside.services.websocket_manager import conversation_room, get_websocket_manager, make_event

logger = logging.getLogger(__name__)
router = APIRouter()


async def _announce_read(receipt: dict) -> None:
    manager = get_websocket_manager()
    await manager.send_to_room(
        conversation_room(receipt["conversationId"]),
        make_event(events.MESSAGE_READ_BY, receipt),
    )


@router.get("/api/conversations")
async def get_conversations(
    include_archived: bool = True,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """List the user's conversations, most recent activity first."""
    try:
        conversations = await conversation_service.list_user_conversations(
            session, user["id"], include_archived=include_archived
        )
        return {"conversations": conversations}
    except Exception as e:
        logger.error(f"Error fetching conversations: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching conversations: {str(e)}")


@router.get("/api/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def get_conversation_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get one page of a conversation's history; page 1 is the most recent."""
    try:
        return await message_service.list_messages(
            session, conversation_id, user["id"], page=page, limit=limit
        )
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error fetching messages: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching messages: {str(e)}")


@router.post("/api/conversations/{conversation_id}/leave")
async def leave_conversation(
    conversation_id: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Leave a group conversation. History stays; the membership is deactivated."""
    try:
        conversation = await conversation_service.leave_conversation(session, conversation_id, user["id"])
        return {"success": True, "conversation": conversation}
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error leaving conversation: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error leaving conversation: {str(e)}")


@router.post("/api/messages/{message_id}/read")
async def mark_message_as_read(
    message_id: str,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Mark a message as read by the current user."""
    try:
        receipt = await message_service.mark_as_read(session, message_id, user["id"])
        background_tasks.add_task(_announce_read, receipt)
        return {"success": True, **receipt}
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error marking message as read: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error marking message as read: {str(e)}")
