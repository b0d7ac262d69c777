"""
Connection manager for the realtime messaging client.

Owns the single authenticated WebSocket of a session: the handshake, automatic
reconnection with capped backoff, request/acknowledgement correlation and the
dispatch of server push events to registered handlers.

Transport failures never propagate through call stacks; they are exposed as
``state`` / ``last_error`` and announced to state subscribers. Individual
requests fail with NotConnected, AcknowledgementError or RequestTimeout.
"""

import asyncio
import enum
import inspect
import json
import logging
import random
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urlencode

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed

from courtside.client.config import ClientConfig
from courtside.client.errors import (
    AcknowledgementError,
    NotConnected,
    ReconnectFailed,
    RequestTimeout,
)
from courtside.models import events
from courtside.utils.constants import POLICY_VIOLATION_CLOSE_CODE

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Any]
StateListener = Callable[["ConnectionState"], Any]
Connector = Callable[[str], Awaitable[Any]]


class ConnectionState(str, enum.Enum):
    """Connection lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


async def open_websocket(url: str):
    """Default connector: open a client WebSocket."""
    return await websocket_connect(url)


class ConnectionManager:
    """One persistent, authenticated connection per messaging session."""

    def __init__(self, config: Optional[ClientConfig] = None, connector: Optional[Connector] = None):
        """
        Initialize the connection manager.

        Args:
            config: Client configuration (defaults to ClientConfig())
            connector: Coroutine function ``url -> websocket``; injectable for tests
        """
        self.config = config or ClientConfig()
        self._connector = connector or open_websocket
        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self.user_id: Optional[str] = None
        self._token: Optional[str] = None
        self._ws = None
        # req_id -> (event name, future awaiting the ack frame)
        self._pending: Dict[str, Tuple[str, asyncio.Future]] = {}
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._state_listeners: List[StateListener] = []
        self._listener_tasks: Set[asyncio.Task] = set()
        self._supervisor: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None

    @property
    def is_connected(self) -> bool:
        """True only while a handshake-complete connection is open."""
        return self.state == ConnectionState.CONNECTED and self._ws is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, token: str) -> "ConnectionManager":
        """
        Open the connection for a credential and wait for the first outcome.

        Calling again with the same token while a connection is live (or being
        retried) is a no-op. After a terminal failure, calling connect() starts
        a fresh retry budget.

        Args:
            token: Bearer token used for the handshake

        Returns:
            This manager, connected

        Raises:
            ValueError: If token is empty
            ReconnectFailed: If every attempt failed or the token was rejected
        """
        if not token:
            raise ValueError("token is required")

        if self._supervisor is not None and not self._supervisor.done():
            if token == self._token:
                await self._ready
                return self
            # Credential changed: tear down the old session first
            await self.disconnect()

        self._token = token
        self.last_error = None
        self._ready = asyncio.get_running_loop().create_future()
        self._supervisor = asyncio.create_task(self._supervise())
        await self._ready
        return self

    async def disconnect(self) -> None:
        """Tear down the connection (credential loss or session end). No reconnect follows."""
        supervisor = self._supervisor
        self._supervisor = None
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()
            try:
                await supervisor
            except asyncio.CancelledError:
                pass

        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing websocket during disconnect: {e}")

        self._fail_pending()
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(ReconnectFailed("Disconnected before connecting"))
        self._token = None
        self.user_id = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from messaging server")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> None:
        """Register a handler for a server push event. Handlers run in delivery order."""
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Subscribe to connection state transitions.

        Coroutine listeners are scheduled as tasks so they may issue requests.

        Returns:
            A callable that removes the subscription
        """
        self._state_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def request(self, event: str, payload: Optional[dict] = None, timeout: Optional[float] = None) -> dict:
        """
        Send a request and wait for its acknowledgement.

        Args:
            event: Event name (e.g. ``message:send``)
            payload: JSON payload
            timeout: Seconds to wait for the ack (defaults to config.request_timeout)

        Returns:
            The ``data`` object of a successful acknowledgement (may be empty)

        Raises:
            NotConnected: If the connection is down or drops before the ack
            AcknowledgementError: If the server answered ``success: false``
            RequestTimeout: If no ack arrived in time
        """
        if not self.is_connected:
            raise NotConnected(event)

        timeout = timeout if timeout is not None else self.config.request_timeout
        req_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = (event, future)
        frame = json.dumps({"event": event, "reqId": req_id, "payload": payload or {}})
        try:
            try:
                await self._ws.send(frame)
            except (ConnectionClosed, AttributeError) as e:
                raise NotConnected(event) from e
            try:
                response = await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Request {event} timed out after {timeout}s")
                raise RequestTimeout(event, timeout)
        finally:
            self._pending.pop(req_id, None)

        if not response.get("success"):
            raise AcknowledgementError(event, response.get("error"))
        return response.get("data") or {}

    async def emit(self, event: str, payload: Optional[dict] = None) -> bool:
        """
        Send a fire-and-forget signal.

        Returns:
            True if the frame was written, False if not connected
        """
        if not self.is_connected:
            logger.debug(f"Dropping {event}: not connected")
            return False
        try:
            await self._ws.send(json.dumps({"event": event, "payload": payload or {}}))
        except ConnectionClosed:
            return False
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _url(self) -> str:
        separator = "&" if "?" in self.config.ws_url else "?"
        return f"{self.config.ws_url}{separator}{urlencode({'token': self._token})}"

    def _backoff(self, attempt: int) -> float:
        """Delay before reconnect attempt N (1-based): doubling from the initial delay, capped."""
        delay = min(
            self.config.reconnect_delay * (2 ** (attempt - 1)),
            self.config.reconnect_delay_max,
        )
        jitter = self.config.reconnect_randomization
        if jitter:
            delay *= 1 + random.uniform(-jitter, jitter)
        return max(0.0, min(delay, self.config.reconnect_delay_max))

    async def _supervise(self) -> None:
        """Connect, read until the socket drops, and reconnect within the attempt budget."""
        attempt = 0
        while True:
            if attempt:
                if attempt > self.config.reconnect_attempts:
                    self._fail(
                        f"Unable to reconnect after {self.config.reconnect_attempts} attempts"
                    )
                    return
                await asyncio.sleep(self._backoff(attempt))

            self._set_state(
                ConnectionState.RECONNECTING if attempt else ConnectionState.CONNECTING
            )
            try:
                ws = await asyncio.wait_for(
                    self._connector(self._url()), self.config.connect_timeout
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                attempt += 1
                logger.warning(f"Connection attempt failed: {e}")
                continue

            # The server accepts the socket before checking the token
            self._ws = ws
            try:
                greeted = await asyncio.wait_for(self._handshake(ws), self.config.connect_timeout)
            except asyncio.TimeoutError:
                logger.warning("No greeting from messaging server, closing socket")
                greeted = False
                await self._close_quietly(ws)
            if not greeted:
                if self._ws is ws:
                    self._ws = None
                if getattr(ws, "close_code", None) == POLICY_VIOLATION_CLOSE_CODE:
                    self._fail("Authentication rejected by messaging server")
                    return
                attempt += 1
                continue

            attempt = 0
            self.last_error = None
            self._set_state(ConnectionState.CONNECTED)
            logger.info("Connected to messaging server")
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(True)

            self._heartbeat_task = asyncio.create_task(self._heartbeat(ws))
            try:
                close_code = await self._read_loop(ws)
            finally:
                self._heartbeat_task.cancel()
                self._heartbeat_task = None
                if self._ws is ws:
                    self._ws = None
                self._fail_pending()

            if close_code == POLICY_VIOLATION_CLOSE_CODE:
                self._fail("Authentication rejected by messaging server")
                return

            logger.info(f"Connection lost (code {close_code}), reconnecting")
            self._set_state(ConnectionState.RECONNECTING)
            attempt = 1

    async def _handshake(self, ws) -> bool:
        """Consume frames until the ``connected`` greeting; False if the socket closed first."""
        try:
            async for raw in ws:
                if await self._handle_frame(ws, raw) == events.CONNECTED:
                    return True
        except ConnectionClosed as e:
            logger.info(f"Connection closed during handshake: {e}")
        except OSError as e:
            logger.warning(f"Connection error during handshake: {e}")
        return False

    async def _close_quietly(self, ws) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error closing websocket: {e}")

    async def _read_loop(self, ws) -> Optional[int]:
        """Consume frames until the socket closes; returns the close code."""
        try:
            async for raw in ws:
                await self._handle_frame(ws, raw)
        except ConnectionClosed as e:
            logger.info(f"Connection closed: {e}")
        except OSError as e:
            logger.warning(f"Connection error: {e}")
        return getattr(ws, "close_code", None)

    async def _handle_frame(self, ws, raw) -> Optional[str]:
        """Apply one inbound frame; returns the push event name, if any."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")

        if raw == events.PING:
            try:
                await ws.send(events.PONG)
            except ConnectionClosed:
                pass
            return
        if raw == events.PONG:
            return

        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning(f"Dropping malformed frame: {raw[:200]}")
            return
        if not isinstance(frame, dict):
            logger.warning(f"Dropping non-object frame: {raw[:200]}")
            return

        event = frame.get("event")
        if event == events.ACK:
            entry = self._pending.get(frame.get("reqId"))
            if entry is None:
                logger.debug(f"Ack for unknown or expired request {frame.get('reqId')}")
                return
            _, future = entry
            if not future.done():
                future.set_result(frame)
            return

        payload = frame.get("payload") or {}
        if event == events.CONNECTED:
            self.user_id = payload.get("userId", self.user_id)
        await self._dispatch(event, payload)
        return event

    async def _dispatch(self, event: str, payload: dict) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in handler for {event}: {e}", exc_info=True)

    async def _heartbeat(self, ws) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                await ws.send(events.PING)
            except ConnectionClosed:
                return

    def _fail(self, message: str) -> None:
        """Enter the terminal state; only an explicit connect() leaves it."""
        self.last_error = message
        logger.error(f"Messaging connection failed: {message}")
        self._set_state(ConnectionState.FAILED)
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(ReconnectFailed(message))

    def _fail_pending(self) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for event, future in pending:
            if not future.done():
                future.set_exception(NotConnected(event))

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.state = state
        for listener in list(self._state_listeners):
            try:
                result = listener(state)
            except Exception as e:
                logger.error(f"Error in connection state listener: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Error in connection state listener: {task.exception()}",
                exc_info=task.exception(),
            )
