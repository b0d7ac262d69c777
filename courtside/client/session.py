"""
MessagingSession: constructs and wires the realtime components for one
authenticated user session.
"""

import logging
from typing import Optional

from courtside.client.api_client import MessagingApi
from courtside.client.config import ClientConfig
from courtside.client.connection_manager import ConnectionManager, Connector
from courtside.client.conversation_store import ConversationStore
from courtside.client.message_pipeline import MessagePipeline
from courtside.client.notification_feed import AlertHandler, AlertSettings, NotificationFeed
from courtside.client.presence_tracker import PresenceTracker
from courtside.client.typing_coordinator import TypingCoordinator

logger = logging.getLogger(__name__)


class MessagingSession:
    """
    Owns one ConnectionManager and the components that share it.

    Lifetime matches the credential: start() when a token becomes available,
    stop() when it is lost or the user signs out.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        connector: Optional[Connector] = None,
        api: Optional[MessagingApi] = None,
        alert_settings: Optional[AlertSettings] = None,
        on_alert: Optional[AlertHandler] = None,
    ):
        self.config = config or ClientConfig.from_env()
        self.connection = ConnectionManager(self.config, connector=connector)
        # A caller-supplied api client stays open after the session closes
        self._owns_api = api is None
        self.api = api or MessagingApi(self.config.api_url)
        self.conversations = ConversationStore(
            self.connection, api=self.api, history_page_size=self.config.history_page_size
        )
        self.messages = MessagePipeline(self.connection, self.conversations)
        self.typing = TypingCoordinator(
            self.connection,
            quiet_period=self.config.typing_quiet_period,
            hard_cap=self.config.typing_hard_cap,
            indicator_ttl=self.config.typing_indicator_ttl,
        )
        self.presence = PresenceTracker(self.connection)
        self.notifications = NotificationFeed(
            self.connection, api=self.api, settings=alert_settings, on_alert=on_alert
        )

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def last_error(self) -> Optional[str]:
        return self.connection.last_error

    async def start(self, token: str) -> "MessagingSession":
        """
        Connect with a bearer token and load the conversation list.

        Raises:
            ReconnectFailed: If the connection could not be established
        """
        await self.connection.connect(token)
        self.api.set_token(token)
        await self.conversations.refresh()
        logger.info(f"Messaging session started for user {self.connection.user_id}")
        return self

    async def stop(self) -> None:
        """
        Tear down the connection and forget the signed-out user's state.

        The session can be started again, with the same or another token.
        """
        self.typing.reset()
        await self.connection.disconnect()
        self.conversations.reset()
        self.notifications.reset()
        self.presence.reset()
        self.api.set_token(None)

    async def aclose(self) -> None:
        """Stop, then close the REST client if this session created it."""
        await self.stop()
        if self._owns_api:
            await self.api.aclose()

    async def __aenter__(self) -> "MessagingSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
