"""
web_push.py — Push delivery through a push gateway webhook.

The gateway owns device tokens; this service only knows user ids. Each push
is a JSON POST:

    {
      "user_id": "...",
      "notification": {"title": "...", "body": "...", "data": {...}}
    }

with an optional bearer token.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from backend.app.core.errors import ChannelDeliveryError
from backend.app.notifications.channels.base import PushSender

logger = logging.getLogger(__name__)


class WebhookPushSender(PushSender):

    def __init__(
        self,
        gateway_url: str,
        *,
        token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._gateway_url = gateway_url
        self._token = token
        self._timeout = timeout_seconds
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send(
        self, user_id: str, title: str, body: str, data: Dict[str, Any],
    ) -> None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        payload = {
            "user_id": user_id,
            "notification": {"title": title, "body": body, "data": data},
        }
        client = await self._get_client()
        try:
            response = await client.post(self._gateway_url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ChannelDeliveryError(
                "push", f"Gateway returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError("push", str(exc)) from exc

        logger.debug("[PUSH] Sent '%s' to user %s", title, user_id)
