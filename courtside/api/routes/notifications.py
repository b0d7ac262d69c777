"""Notification REST route handlers."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from courtside.database.db import get_db_session
from courtside.services import notification_service
from courtside.api.auth_dependencies import require_user
from courtside.api.routes import limiter
from courtside.models.schemas import (
    Notification,
    NotificationCategory,
    NotificationListResponse,
    NotificationPreferences,
    NotificationType,
    UnreadCountResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/notifications", response_model=NotificationListResponse)
async def get_notifications(
    type: Optional[NotificationType] = None,
    category: Optional[NotificationCategory] = None,
    is_read: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get user notifications with filters and pagination."""
    try:
        return await notification_service.get_user_notifications(
            session,
            user["id"],
            type=type.value if type else None,
            category=category.value if category else None,
            is_read=is_read,
            page=page,
            limit=limit,
        )
    except Exception as e:
        logger.error(f"Error fetching notifications: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching notifications: {str(e)}")


@router.get("/api/notifications/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    """Get unread notification count for user."""
    try:
        count = await notification_service.get_unread_count(session, user["id"])
        return {"count": count}
    except Exception as e:
        logger.error(f"Error fetching unread count: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching unread count: {str(e)}")


@router.get("/api/notifications/preferences", response_model=NotificationPreferences)
async def get_notification_preferences(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    """Get the user's notification preferences (defaults when never saved)."""
    try:
        return await notification_service.get_preferences(session, user["id"])
    except Exception as e:
        logger.error(f"Error fetching notification preferences: {str(e)}")
        raise HTTPException(
            status_code=500, detail=f"Error fetching notification preferences: {str(e)}"
        )


@router.put("/api/notifications/preferences", response_model=NotificationPreferences)
@limiter.limit("30/minute")
async def update_notification_preferences(
    request: Request,
    preferences: NotificationPreferences,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Replace the user's notification preferences."""
    try:
        return await notification_service.update_preferences(session, user["id"], preferences)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating notification preferences: {str(e)}")
        raise HTTPException(
            status_code=500, detail=f"Error updating notification preferences: {str(e)}"
        )


@router.post("/api/notifications/read-all")
async def mark_all_notifications_as_read(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    """Mark all user notifications as read."""
    try:
        count = await notification_service.mark_all_as_read(session, user["id"])
        return {"success": True, "count": count}
    except Exception as e:
        logger.error(f"Error marking all notifications as read: {str(e)}")
        raise HTTPException(
            status_code=500, detail=f"Error marking all notifications as read: {str(e)}"
        )


@router.post("/api/notifications/{notification_id}/read", response_model=Notification)
async def mark_notification_as_read(
    notification_id: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Mark a single notification as read."""
    try:
        return await notification_service.mark_as_read(session, notification_id, user["id"])
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error marking notification as read: {str(e)}")
        raise HTTPException(
            status_code=500, detail=f"Error marking notification as read: {str(e)}"
        )


@router.delete("/api/notifications/{notification_id}")
async def delete_notification(
    notification_id: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Delete a single notification."""
    try:
        await notification_service.delete_notification(session, notification_id, user["id"])
        return {"success": True}
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error deleting notification: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error deleting notification: {str(e)}")


@router.delete("/api/notifications")
async def clear_notifications(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    """Delete every notification of the user."""
    try:
        count = await notification_service.clear_all(session, user["id"])
        return {"success": True, "count": count}
    except Exception as e:
        logger.error(f"Error clearing notifications: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error clearing notifications: {str(e)}")
