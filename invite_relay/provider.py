"""
Telegram Bot API client for single-use invite links.

Only one call is needed: createChatInviteLink with member_limit=1. Failures
are classified for the worker:

- RateLimitedError: HTTP 429 or a `parameters.retry_after` hint
- ProviderError: any other refusal, or an ok reply without a link
- TransientError: the request never got an HTTP answer
"""

import logging
import time
from typing import Any, Dict, Optional, Protocol

import httpx

from .config import Settings
from .errors import ProviderError, RateLimitedError, TransientError

logger = logging.getLogger(__name__)

MAX_LINK_NAME = 255


class InviteLinkProvider(Protocol):
    async def create_invite_link(self, name: str) -> str: ...


def _retry_after(body: Dict[str, Any]) -> Optional[int]:
    params = body.get("parameters")
    if not isinstance(params, dict):
        return None
    try:
        value = int(params.get("retry_after") or 0)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


class TelegramInviteClient:
    """Creates single-use invite links for one chat."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        api_base: str = "https://api.telegram.org",
        expire_seconds: Optional[int] = None,
        timeout: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.chat_id = chat_id
        self.expire_seconds = expire_seconds
        self._url = f"{api_base.rstrip('/')}/bot{bot_token}/createChatInviteLink"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(
        cls, settings: Settings, client: Optional[httpx.AsyncClient] = None
    ) -> "TelegramInviteClient":
        return cls(
            bot_token=settings.telegram_bot_token,
            chat_id=settings.telegram_chat_id,
            api_base=settings.telegram_api_base,
            expire_seconds=settings.invite_expire_seconds,
            timeout=settings.http_timeout,
            client=client,
        )

    def build_payload(self, name: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "chat_id": self.chat_id,
            "member_limit": 1,
            "name": str(name)[:MAX_LINK_NAME],
        }
        if self.expire_seconds:
            payload["expire_date"] = int(time.time()) + self.expire_seconds
        return payload

    async def create_invite_link(self, name: str) -> str:
        """
        Create a single-use invite link labelled `name`.

        Returns:
            The invite link URL

        Raises:
            RateLimitedError, ProviderError, TransientError
        """
        try:
            response = await self._client.post(self._url, json=self.build_payload(name))
        except httpx.HTTPError as exc:
            # The token is part of the URL, keep it out of the message
            raise TransientError(
                f"Telegram createChatInviteLink failed: {type(exc).__name__}"
            ) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        retry_after = _retry_after(body)
        if response.status_code == 429 or retry_after is not None:
            raise RateLimitedError(
                f"Telegram rate limited (retry_after={retry_after})",
                retry_after=retry_after,
            )

        if not response.is_success or not body.get("ok", False):
            description = body.get("description") or response.text[:200]
            raise ProviderError(
                f"Telegram refused invite link: {description}",
                status_code=response.status_code,
            )

        result = body.get("result")
        link = result.get("invite_link") if isinstance(result, dict) else None
        if not link:
            raise ProviderError(
                "Telegram reply has no invite_link", status_code=response.status_code
            )
        return str(link)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
