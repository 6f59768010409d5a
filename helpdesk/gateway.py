from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from . import config
from .errors import GatewayRejectedError, GatewayUnavailableError

log = logging.getLogger(__name__)

# Events the webhook knows how to process; everything else is left unsubscribed.
WEBHOOK_EVENTS = ["MESSAGES_UPSERT", "CONNECTION_UPDATE", "QRCODE_UPDATED"]


def jid_to_phone(jid: str | None) -> str:
    """Strip the gateway suffix from a WhatsApp jid: '5511999990000:12@s.whatsapp.net' -> '5511999990000'."""
    s = str(jid or "").strip()
    s = s.split("@", 1)[0]
    return s.split(":", 1)[0]


class EvolutionClient:
    """Evolution API client (messaging gateway).

    Stateless request/response wrapper: construct one explicitly and hand it to the
    registry and the dispatcher. ``transport`` lets tests plug an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        timeout: float | None = None,
        connect_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (config.EVOLUTION_API_URL if base_url is None else str(base_url or "")).rstrip("/")
        self.api_key = config.EVOLUTION_API_KEY if api_key is None else str(api_key or "")
        self.timeout = httpx.Timeout(
            float(timeout if timeout is not None else config.GATEWAY_HTTP_TIMEOUT_SECONDS),
            connect=float(connect_timeout if connect_timeout is not None else config.GATEWAY_HTTP_CONNECT_TIMEOUT_SECONDS),
        )
        self._transport = transport

    @property
    def headers(self) -> dict:
        return {"apikey": self.api_key, "Content-Type": "application/json"}

    async def _make_request(self, method: str, path: str, *, json: dict | None = None, params: dict | None = None) -> Any:
        """Send one request; map transport trouble and 5xx to transient, other non-2xx to rejected."""
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, json=json, params=params, headers=self.headers)
        except httpx.TransportError as exc:
            log.warning("Gateway %s %s unreachable: %s", method, path, exc)
            raise GatewayUnavailableError(f"Gateway unreachable: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {"text": response.text}

        if response.status_code >= 500:
            log.warning("Gateway %s %s failed with status %s: %s", method, path, response.status_code, body)
            raise GatewayUnavailableError(f"Gateway request failed with status {response.status_code}")
        if response.status_code < 200 or response.status_code >= 300:
            log.warning("Gateway %s %s rejected with status %s: %s", method, path, response.status_code, body)
            raise GatewayRejectedError(
                _error_message(body) or f"Gateway request failed with status {response.status_code}",
                status=response.status_code,
                body=body if isinstance(body, dict) else {"body": body},
            )
        return body

    # ── instances ──
    async def create_instance(
        self,
        instance_name: str,
        *,
        webhook_url: str | None = None,
        webhook_headers: Optional[dict] = None,
    ) -> dict:
        payload: dict = {
            "instanceName": instance_name,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
        }
        if webhook_url:
            payload["webhook"] = {
                "url": webhook_url,
                "byEvents": False,
                "base64": False,
                "headers": dict(webhook_headers or {}),
                "events": list(WEBHOOK_EVENTS),
            }
        return await self._make_request("POST", "/instance/create", json=payload)

    async def connect(self, instance_name: str) -> dict:
        """Ask for the pairing code of an instance (QR image and/or raw code)."""
        return await self._make_request("GET", f"/instance/connect/{instance_name}")

    async def connection_state(self, instance_name: str) -> dict:
        return await self._make_request("GET", f"/instance/connectionState/{instance_name}")

    async def fetch_instance(self, instance_name: str) -> dict:
        data = await self._make_request("GET", "/instance/fetchInstances", params={"instanceName": instance_name})
        if isinstance(data, list):
            return data[0] if data else {}
        return data or {}

    async def owner_phone(self, instance_name: str) -> Optional[str]:
        """Phone number paired with the instance, if the gateway reports it."""
        info = await self.fetch_instance(instance_name)
        owner = (info.get("instance") or {}).get("owner") or info.get("ownerJid") or info.get("owner")
        return jid_to_phone(owner) or None

    async def logout(self, instance_name: str) -> dict:
        return await self._make_request("DELETE", f"/instance/logout/{instance_name}")

    async def delete_instance(self, instance_name: str) -> dict:
        return await self._make_request("DELETE", f"/instance/delete/{instance_name}")

    async def restart(self, instance_name: str) -> dict:
        return await self._make_request("PUT", f"/instance/restart/{instance_name}")

    # ── messages ──
    async def send_text(self, instance_name: str, number: str, text: str) -> dict:
        return await self._make_request(
            "POST", f"/message/sendText/{instance_name}", json={"number": number, "text": text}
        )

    async def send_media(self, instance_name: str, number: str, mediatype: str, media: str, caption: str = "") -> dict:
        payload = {"number": number, "mediatype": mediatype, "media": media}
        if caption:
            payload["caption"] = caption
        return await self._make_request("POST", f"/message/sendMedia/{instance_name}", json=payload)

    async def send_audio(self, instance_name: str, number: str, audio: str) -> dict:
        return await self._make_request(
            "POST", f"/message/sendWhatsAppAudio/{instance_name}", json={"number": number, "audio": audio}
        )


def _error_message(body: Any) -> str:
    if not isinstance(body, dict):
        return ""
    msg = body.get("message") or body.get("error")
    resp = body.get("response")
    if not msg and isinstance(resp, dict):
        msg = resp.get("message")
    if isinstance(msg, list):
        msg = "; ".join(str(m) for m in msg)
    return str(msg or "")
