"""
Notification feed: the bell/inbox stream, independent of conversations.

Holds the loaded notifications in memory, keeps its own unread counter and
decides whether a newly pushed notification should raise a local alert.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time
from typing import Callable, Dict, List, Optional

import pytz

from courtside.client.api_client import MessagingApi
from courtside.client.connection_manager import ConnectionManager
from courtside.models import events
from courtside.models.schemas import (
    Notification,
    NotificationCategory,
    NotificationPreferences,
    NotificationType,
)
from courtside.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AlertSettings:
    """Local alert switches (sound / visual) layered over the server-side preferences."""

    enabled_types: Dict[NotificationType, bool] = field(default_factory=dict)
    sound: bool = True
    visual: bool = True
    do_not_disturb: bool = False
    timezone: str = "UTC"

    def type_enabled(self, notification_type: NotificationType) -> bool:
        # System notifications cannot be switched off
        if notification_type == NotificationType.SYSTEM:
            return True
        return self.enabled_types.get(notification_type, True)


@dataclass
class Alert:
    notification: Notification
    sound: bool
    visual: bool


AlertHandler = Callable[[Alert], None]


def _parse_clock(value: str) -> dt_time:
    hours, minutes = value.split(":")
    return dt_time(int(hours), int(minutes))


def in_quiet_hours(preferences: NotificationPreferences, now: datetime, timezone: str = "UTC") -> bool:
    """
    Whether ``now`` falls inside the quiet-hours window.

    Windows may wrap past midnight (22:00-08:00). The start is inclusive and
    the end exclusive.
    """
    if not preferences.quiet_hours_enabled:
        return False
    local = ensure_utc(now).astimezone(pytz.timezone(timezone)).time().replace(second=0, microsecond=0)
    start = _parse_clock(preferences.quiet_hours_start)
    end = _parse_clock(preferences.quiet_hours_end)
    if start == end:
        return False
    if start < end:
        return start <= local < end
    return local >= start or local < end


class NotificationFeed:
    """In-memory notification inbox with an independent unread counter."""

    def __init__(
        self,
        connection: ConnectionManager,
        api: Optional[MessagingApi] = None,
        settings: Optional[AlertSettings] = None,
        on_alert: Optional[AlertHandler] = None,
    ):
        self.connection = connection
        self.api = api
        self.settings = settings or AlertSettings()
        self.preferences = NotificationPreferences()
        self.on_alert = on_alert
        self.unread_count = 0
        self._notifications: List[Notification] = []
        self._listeners: List[Callable[[], None]] = []

        connection.on(events.NOTIFICATION_NEW, self._on_notification_new)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self, page: int = 1, limit: int = 20) -> List[Notification]:
        """
        Load the base list from the server. Filtering afterwards is local.

        Raises:
            LoadError: If the request fails
        """
        response = await self._require_api().list_notifications(page=page, limit=limit)
        self._notifications = sorted(
            response.notifications, key=lambda n: ensure_utc(n.created_at) or utcnow(), reverse=True
        )
        self.unread_count = response.unread_count
        self._notify()
        return list(self._notifications)

    async def load_preferences(self) -> NotificationPreferences:
        self.preferences = await self._require_api().get_preferences()
        return self.preferences

    async def update_preferences(self, preferences: NotificationPreferences) -> NotificationPreferences:
        self.preferences = await self._require_api().update_preferences(preferences)
        return self.preferences

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(
        self,
        type: Optional[NotificationType] = None,
        category: Optional[NotificationCategory] = None,
        is_read: Optional[bool] = None,
    ) -> List[Notification]:
        """Filter the loaded notifications, newest first. No server round trip."""
        return [
            n
            for n in self._notifications
            if (type is None or n.type == type)
            and (category is None or n.category == category)
            and (is_read is None or n.is_read == is_read)
        ]

    def get(self, notification_id: str) -> Optional[Notification]:
        return next((n for n in self._notifications if n.id == notification_id), None)

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def reset(self) -> None:
        """Forget the inbox and server preferences (session end)."""
        self._notifications = []
        self.unread_count = 0
        self.preferences = NotificationPreferences()
        self._notify()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def mark_read(self, notification_id: str) -> Optional[Notification]:
        current = self.get(notification_id)
        if current is not None and current.is_read:
            return current
        updated = await self._require_api().mark_notification_read(notification_id)
        if current is not None:
            self._replace(updated)
            self.unread_count = max(0, self.unread_count - 1)
            self._notify()
        return updated

    async def mark_all_read(self) -> int:
        count = await self._require_api().mark_all_notifications_read()
        read_at = utcnow()
        self._notifications = [
            n if n.is_read else n.model_copy(update={"is_read": True, "read_at": read_at})
            for n in self._notifications
        ]
        self.unread_count = 0
        self._notify()
        return count

    async def delete(self, notification_id: str) -> None:
        await self._require_api().delete_notification(notification_id)
        current = self.get(notification_id)
        if current is None:
            return
        self._notifications = [n for n in self._notifications if n.id != notification_id]
        if not current.is_read:
            self.unread_count = max(0, self.unread_count - 1)
        self._notify()

    async def clear_all(self) -> int:
        count = await self._require_api().clear_notifications()
        self._notifications = []
        self.unread_count = 0
        self._notify()
        return count

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def should_alert(self, notification: Notification, now: Optional[datetime] = None) -> bool:
        """
        Gate for local sound/visual alerts.

        Never alerts for a type switched off locally or in the server-side
        preferences, while do-not-disturb is on, or during quiet hours.
        """
        if self.settings.do_not_disturb:
            return False
        if not self.settings.type_enabled(notification.type):
            return False
        if not self.preferences.global_enabled:
            return False
        if not self.preferences.channels_for(notification.type).in_app:
            return False
        if in_quiet_hours(self.preferences, now or utcnow(), self.settings.timezone):
            return False
        return self.settings.sound or self.settings.visual

    def _on_notification_new(self, payload: dict) -> None:
        notification = Notification.model_validate(payload.get("notification", payload))
        if self.get(notification.id) is not None:
            return
        self._notifications.insert(0, notification)
        if not notification.is_read:
            self.unread_count += 1
        self._notify()

        if self.on_alert is not None and self.should_alert(notification):
            try:
                self.on_alert(
                    Alert(
                        notification=notification,
                        sound=self.settings.sound,
                        visual=self.settings.visual,
                    )
                )
            except Exception as e:
                logger.error(f"Error in notification alert handler: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_api(self) -> MessagingApi:
        if self.api is None:
            raise RuntimeError("NotificationFeed needs a MessagingApi for server operations")
        return self.api

    def _replace(self, notification: Notification) -> None:
        self._notifications = [
            notification if n.id == notification.id else n for n in self._notifications
        ]

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Error in notification feed listener: {e}", exc_info=True)
