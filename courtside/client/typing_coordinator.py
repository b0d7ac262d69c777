"""
Typing coordinator.

Local side: keystrokes are coalesced into one ``typing:start`` per burst and a
trailing ``typing:stop`` after a quiet period, with a hard cap that forces the
stop even while the user keeps typing.

Remote side: indicators live in an EphemeralCache keyed by
(conversation id, user id) and expire on their own if no renewal arrives.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from courtside.client.connection_manager import ConnectionManager, ConnectionState
from courtside.client.ephemeral import EphemeralCache
from courtside.models import events
from courtside.models.schemas import TypingUser
from courtside.utils import constants
from courtside.utils.datetime_utils import parse_datetime, utcnow

logger = logging.getLogger(__name__)

TypingListener = Callable[[str], None]


class _Burst:
    """Timers for one conversation's local typing burst."""

    def __init__(self):
        self.quiet_timer: Optional[asyncio.TimerHandle] = None
        self.cap_timer: Optional[asyncio.TimerHandle] = None

    def cancel(self) -> None:
        for timer in (self.quiet_timer, self.cap_timer):
            if timer is not None:
                timer.cancel()
        self.quiet_timer = None
        self.cap_timer = None


class TypingCoordinator:
    """Debounced typing signals out, self-expiring typing indicators in."""

    def __init__(
        self,
        connection: ConnectionManager,
        quiet_period: float = constants.TYPING_QUIET_PERIOD,
        hard_cap: float = constants.TYPING_HARD_CAP,
        indicator_ttl: float = constants.TYPING_INDICATOR_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connection = connection
        self.quiet_period = quiet_period
        self.hard_cap = hard_cap
        self._clock = clock
        self._bursts: Dict[str, _Burst] = {}
        self._remote: EphemeralCache[Tuple[str, str], TypingUser] = EphemeralCache(
            indicator_ttl, clock=clock
        )
        self._sweep_timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[TypingListener] = []

        connection.on(events.TYPING_USER_STARTED, self._on_user_started)
        connection.on(events.TYPING_USER_STOPPED, self._on_user_stopped)
        connection.subscribe(self._on_connection_state)

    # ------------------------------------------------------------------
    # Local typing
    # ------------------------------------------------------------------

    def is_typing(self, conversation_id: str) -> bool:
        """Whether a local burst is in progress for the conversation."""
        return conversation_id in self._bursts

    async def start_typing(self, conversation_id: str) -> None:
        """
        Report a keystroke.

        The first keystroke of a burst sends ``typing:start``; later ones only
        push back the trailing stop.
        """
        loop = asyncio.get_running_loop()
        burst = self._bursts.get(conversation_id)
        if burst is None:
            burst = _Burst()
            self._bursts[conversation_id] = burst
            burst.cap_timer = loop.call_later(self.hard_cap, self._expire, conversation_id)
            await self.connection.emit(events.TYPING_START, {"conversationId": conversation_id})

        # Burst may have been closed while the start was being written
        if self._bursts.get(conversation_id) is not burst:
            return
        if burst.quiet_timer is not None:
            burst.quiet_timer.cancel()
        burst.quiet_timer = loop.call_later(self.quiet_period, self._expire, conversation_id)

    async def stop_typing(self, conversation_id: str) -> None:
        """End the burst now (e.g. the message was sent). No-op if not typing."""
        burst = self._bursts.pop(conversation_id, None)
        if burst is None:
            return
        burst.cancel()
        await self.connection.emit(events.TYPING_STOP, {"conversationId": conversation_id})

    def _expire(self, conversation_id: str) -> None:
        task = asyncio.ensure_future(self.stop_typing(conversation_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Remote typing
    # ------------------------------------------------------------------

    def get_typing_users(self, conversation_id: str) -> List[TypingUser]:
        """Users currently typing in a conversation, excluding expired indicators."""
        return [
            user
            for (conv_id, _), user in self._remote.items()
            if conv_id == conversation_id
        ]

    def subscribe(self, listener: TypingListener) -> Callable[[], None]:
        """Be told the conversation id whenever its typing set changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _on_user_started(self, payload: dict) -> None:
        conversation_id = payload.get("conversationId")
        user_id = payload.get("userId")
        if not conversation_id or not user_id:
            logger.warning(f"Dropping malformed typing event: {payload}")
            return
        if user_id == self.connection.user_id:
            return
        self._remote.put(
            (conversation_id, user_id),
            TypingUser(
                user_id=user_id,
                username=payload.get("username"),
                timestamp=parse_datetime(payload.get("timestamp")) or utcnow(),
            ),
        )
        self._schedule_sweep()
        self._notify(conversation_id)

    def _on_user_stopped(self, payload: dict) -> None:
        conversation_id = payload.get("conversationId")
        user_id = payload.get("userId")
        if not conversation_id or not user_id:
            return
        if self._remote.pop((conversation_id, user_id)) is not None:
            self._notify(conversation_id)

    def _schedule_sweep(self) -> None:
        deadline = self._remote.next_deadline()
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()
            self._sweep_timer = None
        if deadline is None:
            return
        delay = max(0.0, deadline - self._clock())
        self._sweep_timer = asyncio.get_running_loop().call_later(delay, self.sweep)

    def sweep(self) -> List[Tuple[str, str]]:
        """Drop expired indicators and announce the conversations they left."""
        self._sweep_timer = None
        expired = self._remote.sweep()
        for conversation_id in sorted({conv_id for conv_id, _ in expired}):
            self._notify(conversation_id)
        if len(self._remote.items()):
            self._schedule_sweep()
        return expired

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state == ConnectionState.CONNECTED:
            return
        self.reset()

    def reset(self) -> None:
        """Forget all local bursts and remote indicators without sending anything."""
        for burst in self._bursts.values():
            burst.cancel()
        self._bursts.clear()
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()
            self._sweep_timer = None
        conversations = {conv_id for (conv_id, _), _ in self._remote.items()}
        self._remote.clear()
        for conversation_id in sorted(conversations):
            self._notify(conversation_id)

    def _notify(self, conversation_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(conversation_id)
            except Exception as e:
                logger.error(f"Error in typing listener: {e}", exc_info=True)
