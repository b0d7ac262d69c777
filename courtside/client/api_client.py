"""
REST client for the paginated history, notification and preference endpoints.

Every failure surfaces as LoadError so callers can show an inline retry.
"""

import logging
from typing import List, Optional

import httpx

from courtside.client.errors import LoadError
from courtside.models.schemas import (
    Conversation,
    MessageListResponse,
    Notification,
    NotificationCategory,
    NotificationListResponse,
    NotificationPreferences,
    NotificationType,
)

logger = logging.getLogger(__name__)


class MessagingApi:
    """Bearer-authenticated async client for the messaging REST API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: Server root, e.g. ``http://localhost:8000``
            token: Bearer token; may be set later with set_token()
            timeout: Per-request timeout in seconds
            client: Pre-built httpx client (tests pass one with a MockTransport)
        """
        self.token = token
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    def set_token(self, token: Optional[str]) -> None:
        self.token = token

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, params: Optional[dict] = None, body=None):
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        try:
            response = await self._client.request(
                method, path, params=params, json=body, headers=headers
            )
            response.raise_for_status()
        except httpx.TimeoutException:
            raise LoadError(f"{method} {path} timed out")
        except httpx.HTTPStatusError as e:
            raise LoadError(_error_detail(e.response), status_code=e.response.status_code)
        except httpx.RequestError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise LoadError(f"{method} {path} failed: {e}")

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Conversations and messages
    # ------------------------------------------------------------------

    async def list_conversations(self) -> List[Conversation]:
        data = await self._request("GET", "/api/conversations")
        return [Conversation.model_validate(c) for c in data.get("conversations", [])]

    async def get_messages(self, conversation_id: str, page: int = 1, limit: int = 50) -> MessageListResponse:
        """One page of a conversation's history, oldest first."""
        data = await self._request(
            "GET",
            f"/api/conversations/{conversation_id}/messages",
            params={"page": page, "limit": limit},
        )
        return MessageListResponse.model_validate(data)

    async def mark_message_read(self, message_id: str) -> dict:
        return await self._request("POST", f"/api/messages/{message_id}/read")

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def list_notifications(
        self,
        type: Optional[NotificationType] = None,
        category: Optional[NotificationCategory] = None,
        is_read: Optional[bool] = None,
        page: int = 1,
        limit: int = 20,
    ) -> NotificationListResponse:
        params = {
            "type": type.value if type else None,
            "category": category.value if category else None,
            "is_read": str(is_read).lower() if is_read is not None else None,
            "page": page,
            "limit": limit,
        }
        data = await self._request("GET", "/api/notifications", params=params)
        return NotificationListResponse.model_validate(data)

    async def get_unread_count(self) -> int:
        data = await self._request("GET", "/api/notifications/unread-count")
        return data["count"]

    async def mark_notification_read(self, notification_id: str) -> Notification:
        data = await self._request("POST", f"/api/notifications/{notification_id}/read")
        return Notification.model_validate(data)

    async def mark_all_notifications_read(self) -> int:
        data = await self._request("POST", "/api/notifications/read-all")
        return data.get("count", 0)

    async def delete_notification(self, notification_id: str) -> None:
        await self._request("DELETE", f"/api/notifications/{notification_id}")

    async def clear_notifications(self) -> int:
        data = await self._request("DELETE", "/api/notifications")
        return (data or {}).get("count", 0)

    async def get_preferences(self) -> NotificationPreferences:
        data = await self._request("GET", "/api/notifications/preferences")
        return NotificationPreferences.model_validate(data)

    async def update_preferences(self, preferences: NotificationPreferences) -> NotificationPreferences:
        data = await self._request(
            "PUT", "/api/notifications/preferences", body=preferences.to_wire()
        )
        return NotificationPreferences.model_validate(data)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return f"HTTP {response.status_code}"
