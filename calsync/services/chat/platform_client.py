"""
Chat platform REST client (Mattermost-compatible API v4).
Presence, custom status and bot posting used by the sync engine.
"""

import httpx

from calsync.config import settings
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.chat_domain import ChatUser, CustomStatus, Post, SlackAttachment, UserStatus
from calsync.services.infrastructure.http_client import (
    create_async_client,
    decode_json,
    request_with_retry,
)

logger = get_logger(__name__)

API_PREFIX = "/api/v4"


class ChatPlatformError(Exception):
    """Custom exception for chat platform API errors."""

    def __init__(self, message: str, status_code: int | None = None, operation: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation


class _ChatAPI:
    """Shared transport for chat platform calls authenticated as the bot."""

    def __init__(
        self,
        site_url: str | None = None,
        bot_token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.site_url = (site_url or settings.CHAT_SITE_URL).rstrip("/")
        self._token = bot_token or settings.CHAT_BOT_TOKEN or ""
        self._client = client or create_async_client(self.site_url)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _call(self, method: str, path: str, operation: str, **kwargs):
        try:
            response = await request_with_retry(
                self._client, method, API_PREFIX + path, headers=self._headers(), **kwargs
            )
        except httpx.RequestError as e:
            logger.error("Chat platform request failed", operation=operation, error=str(e))
            raise ChatPlatformError(f"{operation} failed: {e}", operation=operation) from e

        if not response.is_success:
            message = ""
            try:
                message = decode_json(response).get("message", "")
            except ValueError:
                message = response.text[:200] if response.text else ""
            logger.warning(
                "Chat platform API error",
                operation=operation,
                status_code=response.status_code,
                error_message=message,
            )
            raise ChatPlatformError(
                f"{operation} failed (HTTP {response.status_code}): {message}",
                status_code=response.status_code,
                operation=operation,
            )

        try:
            return response.json() if response.text else {}
        except ValueError as e:
            raise ChatPlatformError(f"Invalid response format: {e}", operation=operation) from e


class ChatPlatformClient(_ChatAPI):
    """Presence and profile operations on behalf of linked users."""

    async def get_user_statuses_by_ids(self, user_ids: list[str]) -> list[UserStatus]:
        data = await self._call(
            "POST", "/users/status/ids", "get_statuses", json=user_ids, retry_server_errors=True
        )
        return [
            UserStatus(user_id=s["user_id"], status=s.get("status", ""), manual=s.get("manual", False))
            for s in data or []
        ]

    async def update_user_status(self, user_id: str, status: str) -> UserStatus:
        data = await self._call(
            "PUT",
            f"/users/{user_id}/status",
            "update_status",
            json={"user_id": user_id, "status": status},
        )
        logger.info("Updated user status", user_id=user_id, status=status)
        return UserStatus(
            user_id=data.get("user_id", user_id),
            status=data.get("status", status),
            manual=data.get("manual", False),
        )

    async def get_user(self, user_id: str) -> ChatUser:
        data = await self._call("GET", f"/users/{user_id}", "get_user")
        props = {k: v for k, v in (data.get("props") or {}).items() if isinstance(v, str)}
        return ChatUser(id=data.get("id", user_id), username=data.get("username", ""), props=props)

    async def update_user_custom_status(self, user_id: str, custom_status: CustomStatus) -> None:
        await self._call(
            "PUT",
            f"/users/{user_id}/status/custom",
            "update_custom_status",
            json=custom_status.model_dump(mode="json", exclude_none=True),
        )

    async def remove_user_custom_status(self, user_id: str) -> None:
        await self._call("DELETE", f"/users/{user_id}/status/custom", "remove_custom_status")


class Poster(_ChatAPI):
    """Bot posting: direct messages and channel posts."""

    def __init__(self, *args, bot_user_id: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.bot_user_id = bot_user_id or settings.CHAT_BOT_USER_ID or ""

    async def _direct_channel_id(self, user_id: str) -> str:
        data = await self._call(
            "POST",
            "/channels/direct",
            "create_direct_channel",
            json=[self.bot_user_id, user_id],
            # returns the existing channel when called again
            retry_server_errors=True,
        )
        return data["id"]

    async def create_post(self, post: Post) -> str:
        data = await self._call("POST", "/posts", "create_post", json=post.model_dump(mode="json"))
        return data.get("id", "")

    async def dm(self, user_id: str, message: str) -> str:
        channel_id = await self._direct_channel_id(user_id)
        return await self.create_post(Post(channel_id=channel_id, message=message))

    async def dm_with_attachments(self, user_id: str, *attachments: SlackAttachment) -> str:
        channel_id = await self._direct_channel_id(user_id)
        post = Post(channel_id=channel_id)
        post.add_attachments(list(attachments))
        return await self.create_post(post)
