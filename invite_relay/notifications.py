"""
WebEngage events client (notification gateway).

Fire-and-report: one POST per milestone, no retries, never raises. Callers
look at NotificationResult.ok and decide whether to record the milestone.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

MAX_BODY_PREVIEW = 800


@dataclass(frozen=True, slots=True)
class NotificationResult:
    ok: bool
    status_code: Optional[int] = None
    body: str = ""


class NotificationGateway(Protocol):
    async def send(
        self, user_id: str, event_name: str, event_data: Dict[str, Any]
    ) -> NotificationResult: ...


class WebEngageGateway:
    def __init__(
        self,
        license_code: str,
        api_key: str,
        api_base: str = "https://api.webengage.com",
        timeout: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = f"{api_base.rstrip('/')}/v1/accounts/{license_code}/events"
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(
        cls, settings: Settings, client: Optional[httpx.AsyncClient] = None
    ) -> "WebEngageGateway":
        return cls(
            license_code=settings.webengage_license_code,
            api_key=settings.webengage_api_key,
            api_base=settings.webengage_api_base,
            timeout=settings.http_timeout,
            client=client,
        )

    async def send(
        self, user_id: str, event_name: str, event_data: Dict[str, Any]
    ) -> NotificationResult:
        payload = {"userId": user_id, "eventName": event_name, "eventData": event_data}
        try:
            response = await self._client.post(
                self._url, headers=self._headers, json=payload
            )
        except httpx.HTTPError as exc:
            logger.warning(f"WebEngage {event_name} for {user_id} not sent: {exc!r}")
            return NotificationResult(ok=False)

        result = NotificationResult(
            ok=response.is_success,
            status_code=response.status_code,
            body=response.text[:MAX_BODY_PREVIEW],
        )
        if result.ok:
            logger.info(f"WebEngage {event_name} sent for {user_id}")
        else:
            logger.warning(
                f"WebEngage {event_name} for {user_id} rejected: "
                f"{result.status_code} {result.body}"
            )
        return result

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
