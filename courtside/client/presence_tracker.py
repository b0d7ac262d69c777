"""
Presence tracker.

Latest known status per user, overwritten wholesale on every update. A status
stays until a presence event replaces it; the server announces users going
offline, including those dropped by its stale sweep.
Presence is eventually consistent: nothing here confirms that other users have
seen our own change.
"""

import logging
from typing import Callable, Dict, List, Optional

from courtside.client.connection_manager import ConnectionManager
from courtside.models import events
from courtside.models.schemas import PresenceStatus, UserPresence
from courtside.utils.datetime_utils import parse_datetime, utcnow

logger = logging.getLogger(__name__)

PresenceListener = Callable[[UserPresence], None]


class PresenceTracker:
    def __init__(self, connection: ConnectionManager):
        self.connection = connection
        self.own_status = PresenceStatus.ONLINE
        self._presence: Dict[str, UserPresence] = {}
        self._listeners: List[PresenceListener] = []

        connection.on(events.PRESENCE_UPDATE, self._on_presence_update)
        connection.on(events.PRESENCE_USER_STATUS_CHANGED, self._on_status_changed)
        connection.on(events.PRESENCE_STATUS_SYNC, self._on_status_sync)

    async def set_status(self, status: PresenceStatus) -> bool:
        """
        Broadcast our own status.

        Returns:
            True if the update was sent, False if not connected
        """
        status = PresenceStatus(status)
        self.own_status = status
        return await self.connection.emit(events.PRESENCE_UPDATE, {"status": status.value})

    def get_presence(self, user_id: str) -> Optional[UserPresence]:
        return self._presence.get(user_id)

    def is_online(self, user_id: str) -> bool:
        """Connected users count as online whether available, away or busy."""
        presence = self._presence.get(user_id)
        return presence is not None and presence.status != PresenceStatus.OFFLINE

    def online_user_ids(self) -> List[str]:
        return sorted(
            user_id
            for user_id, presence in self._presence.items()
            if presence.status != PresenceStatus.OFFLINE
        )

    async def get_online_users(self) -> List[UserPresence]:
        """Ask the server who is online and merge the answer."""
        data = await self.connection.request(events.PRESENCE_GET_ONLINE_USERS, {})
        users = []
        for entry in data.get("users", []):
            presence = UserPresence.model_validate(entry)
            self._set(presence)
            users.append(presence)
        return users

    def reset(self) -> None:
        """Forget every known status (session end)."""
        self._presence.clear()
        self.own_status = PresenceStatus.ONLINE

    def subscribe(self, listener: PresenceListener) -> Callable[[], None]:
        """Receive every presence change as it is applied."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _on_presence_update(self, payload: dict) -> None:
        user_id = payload.get("userId")
        if not user_id:
            logger.warning(f"Dropping presence update without userId: {payload}")
            return
        presence = payload.get("presence", payload)
        if isinstance(presence, str):
            presence = {"status": presence}
        try:
            status = PresenceStatus(presence.get("status", PresenceStatus.ONLINE))
        except ValueError:
            logger.warning(f"Unknown presence status in {payload}")
            return
        self._set(
            UserPresence(
                user_id=user_id,
                status=status,
                last_seen=parse_datetime(presence.get("lastSeen")) or utcnow(),
            )
        )

    def _on_status_changed(self, payload: dict) -> None:
        user_id = payload.get("userId")
        if not user_id:
            return
        online = bool(payload.get("isOnline"))
        self._set(
            UserPresence(
                user_id=user_id,
                status=PresenceStatus.ONLINE if online else PresenceStatus.OFFLINE,
                last_seen=parse_datetime(payload.get("timestamp")) or utcnow(),
            )
        )

    def _on_status_sync(self, payload: dict) -> None:
        # Our own status changed from another device
        try:
            self.own_status = PresenceStatus(payload.get("status"))
        except ValueError:
            logger.warning(f"Unknown presence status in sync: {payload}")

    def _set(self, presence: UserPresence) -> None:
        self._presence[presence.user_id] = presence
        for listener in list(self._listeners):
            try:
                listener(presence)
            except Exception as e:
                logger.error(f"Error in presence listener: {e}", exc_info=True)
