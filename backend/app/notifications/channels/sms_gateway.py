"""
sms_gateway.py — SMS delivery via the Twilio Messages REST API.

    App  →  HTTPS POST  →  Twilio  →  Carrier  →  Handset

    POST https://api.twilio.com/2010-04-01/Accounts/{SID}/Messages.json
         form: To, From, Body     auth: (SID, auth token)

Bodies are trimmed to a single GSM-7 segment (160 chars).
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from backend.app.core.errors import ChannelDeliveryError
from backend.app.notifications.channels.base import SmsSender

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
SMS_MAX_GSM7 = 160


def format_sms(body: str, limit: int = SMS_MAX_GSM7) -> str:
    """Collapse whitespace and trim to one segment."""
    text = " ".join(body.split())
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text


class TwilioSmsSender(SmsSender):
    """
    Send SMS through Twilio.

    Parameters
    ----------
    account_sid, auth_token : str
        Twilio credentials.
    from_number : str
        Sender number in E.164 format.
    timeout_seconds : float
        HTTP timeout per request.
    client : httpx.AsyncClient | None
        Injected client (tests pass one with a MockTransport).
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        timeout_seconds: float = 15.0,
        base_url: str = TWILIO_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._timeout = timeout_seconds
        self._base_url = base_url.rstrip("/")
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send(self, phone: str, body: str) -> None:
        url = f"{self._base_url}/Accounts/{self._account_sid}/Messages.json"
        client = await self._get_client()
        try:
            response = await client.post(
                url,
                data={"To": phone, "From": self._from_number, "Body": format_sms(body)},
                auth=(self._account_sid, self._auth_token),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ChannelDeliveryError(
                "sms", f"Twilio returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError("sms", str(exc)) from exc

        logger.debug("[SMS] Sent to %s (HTTP %d)", phone, response.status_code)
