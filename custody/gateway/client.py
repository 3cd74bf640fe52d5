from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from custody.config import settings

logger = logging.getLogger(__name__)

SUPPORTED_CHANNELS = frozenset({"sms", "whatsapp", "email"})


class NotifyGatewayClient:
    """HTTP client for the out-of-band messaging gateway (SMS/WhatsApp/email).

    One attempt per message: a failed delivery is reported to the caller,
    who decides whether to issue a fresh challenge.
    """

    def __init__(self, base_url: str, token: str = "", *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0, read=10.0, write=10.0))

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = await self._client.request(method, url, headers=self._headers(), **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            logger.error(
                "gateway rejected %s %s",
                method,
                path,
                extra={"extra": {"status": e.response.status_code}},
            )
            raise
        except httpx.HTTPError as e:
            logger.error("gateway transport error on %s %s: %s", method, path, e)
            raise

    async def send(self, channel: str, to: str, message: str, *, subject: Optional[str] = None) -> Dict[str, Any]:
        if channel not in SUPPORTED_CHANNELS:
            raise ValueError(f"unsupported channel: {channel}")
        payload: Dict[str, Any] = {"to": to, "message": message}
        if subject and channel == "email":
            payload["subject"] = subject
        resp = await self._request("POST", f"/api/{channel}", json=payload)
        try:
            return resp.json()
        except ValueError:
            return {}

    async def ping(self) -> bool:
        resp = await self._request("GET", "/api/health")
        return resp.status_code == 200

    async def aclose(self) -> None:
        await self._client.aclose()


def get_client() -> Optional[NotifyGatewayClient]:
    if not settings.notify_gateway_url:
        return None
    return NotifyGatewayClient(settings.notify_gateway_url, settings.notify_gateway_token)
