"""
Notification service for managing user notifications.

Handles creation, retrieval, status updates and per-user preferences for
in-app notifications. New notifications are pushed to the recipient's live
connections as ``notification:new``.
"""

import math
from typing import List, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, func, and_, or_
from courtside.database.models import Notification, NotificationPreference
from courtside.models import events
from courtside.models.schemas import (
    ChannelFlags,
    NotificationCategory,
    NotificationPreferences,
    NotificationType,
)
from courtside.utils.datetime_utils import isoformat, utcnow
import logging

logger = logging.getLogger(__name__)


def notification_to_dict(notification: Notification) -> Dict:
    """Serialize a Notification row to its camelCase wire form."""
    return {
        "id": notification.id,
        "userId": notification.user_id,
        "type": notification.type,
        "category": notification.category,
        "title": notification.title,
        "message": notification.message,
        "actionText": notification.action_text,
        "actionUrl": notification.action_url,
        "relatedEntityType": notification.related_entity_type,
        "relatedEntityId": notification.related_entity_id,
        "metadata": notification.data,
        "isRead": notification.is_read,
        "readAt": isoformat(notification.read_at),
        "channels": notification.channels or ChannelFlags().to_wire(),
        "deliveryStatus": notification.delivery_status or {},
        "expiresAt": isoformat(notification.expires_at),
        "createdAt": isoformat(notification.created_at),
    }


def _not_expired():
    return or_(Notification.expires_at.is_(None), Notification.expires_at > utcnow())


async def _broadcast(user_id: str, notification_dict: Dict) -> None:
    # Non-blocking: delivery errors never fail notification creation
    try:
        from courtside.services.websocket_manager import get_websocket_manager, make_event
        manager = get_websocket_manager()
        await manager.send_to_user(
            user_id, make_event(events.NOTIFICATION_NEW, {"notification": notification_dict})
        )
    except Exception as e:
        logger.warning(f"Failed to broadcast notification via WebSocket for user {user_id}: {e}")


def _build(prefs: NotificationPreferences, notif_data: Dict) -> Optional[Notification]:
    """Validate one notification request and apply the recipient's preferences."""
    if not notif_data.get("user_id"):
        raise ValueError("user_id is required")
    if not notif_data.get("type"):
        raise ValueError("type is required")
    if not notif_data.get("title"):
        raise ValueError("title is required")
    if not notif_data.get("message"):
        raise ValueError("message is required")

    notification_type = NotificationType(notif_data["type"])
    category = NotificationCategory(notif_data.get("category") or NotificationCategory.INFO)
    channels = prefs.channels_for(notification_type)

    if not prefs.global_enabled or not channels.in_app:
        logger.debug(
            f"Skipping {notification_type.value} notification for user {notif_data['user_id']}: disabled by preferences"
        )
        return None

    now = utcnow()
    return Notification(
        user_id=notif_data["user_id"],
        type=notification_type.value,
        category=category.value,
        title=notif_data["title"],
        message=notif_data["message"],
        action_text=notif_data.get("action_text"),
        action_url=notif_data.get("action_url"),
        related_entity_type=notif_data.get("related_entity_type"),
        related_entity_id=notif_data.get("related_entity_id"),
        data=notif_data.get("data"),
        is_read=False,
        channels=channels.to_wire(),
        delivery_status={"inApp": {"delivered": True, "deliveredAt": now.isoformat()}},
        expires_at=notif_data.get("expires_at"),
        created_at=now,
    )


async def create_notification(
    session: AsyncSession,
    user_id: str,
    type: str,
    title: str,
    message: str,
    category: str = NotificationCategory.INFO.value,
    data: Optional[Dict] = None,
    action_url: Optional[str] = None,
    action_text: Optional[str] = None,
    related_entity_type: Optional[str] = None,
    related_entity_id: Optional[str] = None,
) -> Optional[Dict]:
    """
    Create a single notification for a user.

    Args:
        session: Database session
        user_id: ID of the user to notify
        type: Notification type (NotificationType enum value)
        title: Notification title
        message: Notification message text
        category: Severity category (NotificationCategory enum value)
        data: Optional JSON metadata
        action_url: Optional URL for navigation when notification is clicked
        action_text: Optional label for the action

    Returns:
        Dict containing the created notification, or None if the user's
        preferences suppress this type

    Raises:
        ValueError: If required fields are missing or invalid
    """
    created = await create_notifications_bulk(
        session,
        [
            {
                "user_id": user_id,
                "type": type,
                "title": title,
                "message": message,
                "category": category,
                "data": data,
                "action_url": action_url,
                "action_text": action_text,
                "related_entity_type": related_entity_type,
                "related_entity_id": related_entity_id,
            }
        ],
    )
    return created[0] if created else None


async def create_notifications_bulk(
    session: AsyncSession,
    notifications_list: List[Dict]
) -> List[Dict]:
    """
    Create multiple notifications, skipping those the recipients' preferences disable.

    Args:
        session: Database session
        notifications_list: List of notification dicts, each containing:
            - user_id (str, required)
            - type (str, required)
            - title (str, required)
            - message (str, required)
            - category, data, action_url, action_text,
              related_entity_type, related_entity_id (optional)

    Returns:
        List of created notification dicts

    Raises:
        ValueError: If any notification data is invalid
    """
    if not notifications_list:
        return []

    prefs_cache: Dict[str, NotificationPreferences] = {}
    notification_objects = []
    for notif_data in notifications_list:
        user_id = notif_data.get("user_id")
        if user_id and user_id not in prefs_cache:
            prefs_cache[user_id] = await load_preferences(session, user_id)
        notification = _build(prefs_cache.get(user_id) or NotificationPreferences(), notif_data)
        if notification is not None:
            notification_objects.append(notification)

    if not notification_objects:
        return []

    session.add_all(notification_objects)
    await session.flush()

    notification_dicts = [notification_to_dict(n) for n in notification_objects]
    for notif_dict in notification_dicts:
        await _broadcast(notif_dict["userId"], notif_dict)
    return notification_dicts


async def get_user_notifications(
    session: AsyncSession,
    user_id: str,
    type: Optional[str] = None,
    category: Optional[str] = None,
    is_read: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict:
    """
    Fetch user notifications with filters and pagination.

    Returns:
        Dict containing:
            - notifications: List of notification dicts (ordered by created_at DESC)
            - totalCount: Number of notifications matching the filters
            - unreadCount: Unread notifications overall
            - page / totalPages
    """
    if page < 1:
        raise ValueError("page must be at least 1")
    if limit < 1:
        raise ValueError("limit must be at least 1")

    query = select(Notification).where(Notification.user_id == user_id, _not_expired())
    if type:
        query = query.where(Notification.type == NotificationType(type).value)
    if category:
        query = query.where(Notification.category == NotificationCategory(category).value)
    if is_read is not None:
        query = query.where(Notification.is_read == is_read)

    count_query = select(func.count()).select_from(query.subquery())
    total_result = await session.execute(count_query)
    total_count = total_result.scalar_one() or 0

    query = (
        query.order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    result = await session.execute(query)
    notifications = result.scalars().all()

    return {
        "notifications": [notification_to_dict(n) for n in notifications],
        "totalCount": total_count,
        "unreadCount": await get_unread_count(session, user_id),
        "page": page,
        "totalPages": math.ceil(total_count / limit) if total_count else 0,
    }


async def get_unread_count(session: AsyncSession, user_id: str) -> int:
    """
    Get count of unread notifications for a user.

    Args:
        session: Database session
        user_id: ID of the user

    Returns:
        Integer count of unread notifications
    """
    result = await session.execute(
        select(func.count())
        .select_from(Notification)
        .where(
            and_(
                Notification.user_id == user_id,
                Notification.is_read == False,  # noqa: E712
                _not_expired(),
            )
        )
    )
    return result.scalar_one() or 0


async def _get_owned(session: AsyncSession, notification_id: str, user_id: str) -> Notification:
    result = await session.execute(
        select(Notification).where(
            and_(
                Notification.id == notification_id,
                Notification.user_id == user_id
            )
        )
    )
    notification = result.scalar_one_or_none()
    if not notification:
        raise ValueError("Notification not found or access denied")
    return notification


async def mark_as_read(
    session: AsyncSession,
    notification_id: str,
    user_id: str
) -> Dict:
    """
    Mark a single notification as read.

    Args:
        session: Database session
        notification_id: ID of the notification
        user_id: ID of the user (ensures the user owns the notification)

    Returns:
        Updated notification dict

    Raises:
        ValueError: If notification not found or doesn't belong to user
    """
    notification = await _get_owned(session, notification_id, user_id)

    # Update if not already read
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        await session.flush()

    return notification_to_dict(notification)


async def mark_all_as_read(session: AsyncSession, user_id: str) -> int:
    """
    Mark all user notifications as read.

    Returns:
        Count of notifications marked as read
    """
    result = await session.execute(
        update(Notification)
        .where(
            and_(
                Notification.user_id == user_id,
                Notification.is_read == False  # noqa: E712
            )
        )
        .values(
            is_read=True,
            read_at=utcnow()
        )
        .returning(Notification.id)
    )

    marked_ids = result.scalars().all()
    await session.flush()
    return len(marked_ids)


async def delete_notification(session: AsyncSession, notification_id: str, user_id: str) -> None:
    """
    Delete one notification.

    Raises:
        ValueError: If notification not found or doesn't belong to user
    """
    notification = await _get_owned(session, notification_id, user_id)
    await session.delete(notification)
    await session.flush()


async def clear_all(session: AsyncSession, user_id: str) -> int:
    """Delete every notification of a user; returns how many were removed."""
    result = await session.execute(
        delete(Notification).where(Notification.user_id == user_id).returning(Notification.id)
    )
    count = len(result.scalars().all())
    await session.flush()
    return count


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


async def _get_preference_row(session: AsyncSession, user_id: str) -> Optional[NotificationPreference]:
    result = await session.execute(
        select(NotificationPreference).where(NotificationPreference.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def load_preferences(session: AsyncSession, user_id: str) -> NotificationPreferences:
    """A user's preferences, or the defaults when none are stored."""
    row = await _get_preference_row(session, user_id)
    if row is None:
        return NotificationPreferences(user_id=user_id)
    return NotificationPreferences(
        user_id=row.user_id,
        global_enabled=row.global_enabled,
        quiet_hours_enabled=row.quiet_hours_enabled,
        quiet_hours_start=row.quiet_hours_start,
        quiet_hours_end=row.quiet_hours_end,
        preferences=row.preferences or {},
    )


async def get_preferences(session: AsyncSession, user_id: str) -> Dict:
    prefs = await load_preferences(session, user_id)
    return prefs.to_wire()


async def update_preferences(
    session: AsyncSession, user_id: str, prefs: NotificationPreferences
) -> Dict:
    """
    Replace a user's preferences.

    Returns:
        The stored preferences as a wire dict
    """
    row = await _get_preference_row(session, user_id)
    if row is None:
        row = NotificationPreference(user_id=user_id)
        session.add(row)

    row.global_enabled = prefs.global_enabled
    row.quiet_hours_enabled = prefs.quiet_hours_enabled
    row.quiet_hours_start = prefs.quiet_hours_start
    row.quiet_hours_end = prefs.quiet_hours_end
    row.preferences = {
        notification_type.value: flags.to_wire()
        for notification_type, flags in prefs.preferences.items()
    }
    await session.flush()

    stored = prefs.model_copy(update={"user_id": user_id})
    return stored.to_wire()


#
# Business logic helpers for specific notification types
#

async def notify_participants_about_message(
    session: AsyncSession,
    recipient_ids: List[str],
    conversation_id: str,
    conversation_name: Optional[str],
    message_id: str,
    sender_id: str,
    preview: str,
) -> List[Dict]:
    """
    Notify conversation participants about a new message.

    Args:
        session: Database session
        recipient_ids: Users to notify (sender already excluded)
        conversation_id: Conversation the message was posted in
        conversation_name: Display name for group conversations
        message_id: ID of the new message
        sender_id: Author of the message
        preview: Truncated message content

    Returns:
        List of created notification dicts
    """
    title = f"New message in {conversation_name}" if conversation_name else "New message"
    notifications = [
        {
            "user_id": user_id,
            "type": NotificationType.MESSAGE.value,
            "category": NotificationCategory.INFO.value,
            "title": title,
            "message": preview,
            "action_url": f"/messages/{conversation_id}",
            "action_text": "Open conversation",
            "related_entity_type": "conversation",
            "related_entity_id": conversation_id,
            "data": {"conversationId": conversation_id, "messageId": message_id, "senderId": sender_id},
        }
        for user_id in recipient_ids
        if user_id != sender_id
    ]
    return await create_notifications_bulk(session, notifications)
