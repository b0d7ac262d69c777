"""
Presence registry: latest status per user, kept in memory.

A user is online while at least one connection is registered. Connections
that stop sending anything are swept by the background worker, which marks
their users offline and announces it.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from courtside.models import events
from courtside.models.schemas import PresenceStatus
from courtside.utils.constants import (
    PRESENCE_STALE_AFTER_SECONDS,
    PRESENCE_SWEEP_INTERVAL_SECONDS,
)
from courtside.utils.datetime_utils import isoformat, utcnow

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Latest presence per user; overwritten wholesale, no history."""

    def __init__(self):
        self._status: Dict[str, PresenceStatus] = {}
        self._last_seen: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def set_status(self, user_id: str, status: PresenceStatus) -> Dict:
        async with self._lock:
            self._status[user_id] = PresenceStatus(status)
            self._last_seen[user_id] = utcnow()
            return self._snapshot(user_id)

    async def touch(self, user_id: str) -> None:
        """Record activity without changing the status."""
        async with self._lock:
            if user_id in self._status:
                self._last_seen[user_id] = utcnow()

    async def get(self, user_id: str) -> Dict:
        async with self._lock:
            return self._snapshot(user_id)

    async def get_online_users(self) -> List[Dict]:
        async with self._lock:
            return [
                self._snapshot(user_id)
                for user_id in sorted(self._status)
                if self._status[user_id] != PresenceStatus.OFFLINE
            ]

    async def sweep_stale(self, now: Optional[datetime] = None) -> List[str]:
        """
        Mark users offline whose last activity is older than the stale threshold.

        Returns:
            User ids that went offline
        """
        cutoff = (now or utcnow()) - timedelta(seconds=PRESENCE_STALE_AFTER_SECONDS)
        async with self._lock:
            stale = [
                user_id
                for user_id, status in self._status.items()
                if status != PresenceStatus.OFFLINE and self._last_seen.get(user_id, cutoff) < cutoff
            ]
            for user_id in stale:
                self._status[user_id] = PresenceStatus.OFFLINE
        return stale

    def _snapshot(self, user_id: str) -> Dict:
        return {
            "userId": user_id,
            "status": self._status.get(user_id, PresenceStatus.OFFLINE).value,
            "lastSeen": isoformat(self._last_seen.get(user_id)),
        }


class PresenceSweeper:
    """Background worker that expires stale presence and stale connections."""

    def __init__(self, registry: PresenceRegistry, manager, interval: float = PRESENCE_SWEEP_INTERVAL_SECONDS):
        self.registry = registry
        self.manager = manager
        self.interval = interval
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        """Start the background sweep worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Presence sweep worker started")

    def stop(self) -> None:
        """Stop the background sweep worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Presence sweep worker stopped")

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Error in presence sweep worker: {e}", exc_info=True)

            # Wait for poll interval or until stop is signalled
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass

    async def sweep_once(self) -> List[str]:
        """Close dead connections, expire idle statuses and announce users that went offline."""
        from courtside.services.websocket_manager import make_event

        offline = set(await self.manager.cleanup_stale_connections())
        for user_id in offline:
            await self.registry.set_status(user_id, PresenceStatus.OFFLINE)
        offline.update(await self.registry.sweep_stale())

        for user_id in sorted(offline):
            await self.manager.broadcast(
                make_event(
                    events.PRESENCE_USER_STATUS_CHANGED,
                    {"userId": user_id, "isOnline": False, "timestamp": utcnow().isoformat()},
                ),
                exclude_user=user_id,
            )
        if offline:
            logger.info(f"Marked {len(offline)} user(s) offline")
        return sorted(offline)


# Global presence registry instance
_presence_registry: Optional[PresenceRegistry] = None


def get_presence_registry() -> PresenceRegistry:
    global _presence_registry
    if _presence_registry is None:
        _presence_registry = PresenceRegistry()
    return _presence_registry
