from __future__ import annotations

import asyncio
import base64
import io
import logging
import time
from typing import Any, Dict, List, Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from qrcode.image.pil import PilImage

from . import config
from .db import (
    CONN_CONNECTED,
    CONN_CONNECTING,
    CONN_DISCONNECTED,
    CONN_QR_CODE,
    DatabaseManager,
    utcnow_iso,
)
from .errors import GatewayRejectedError, HelpdeskError, NotFoundError, ProvisionError, ValidationError
from .gateway import EvolutionClient

log = logging.getLogger(__name__)


def map_gateway_state(state: str | None) -> str:
    """Gateway connection-state vocabulary -> connection status."""
    s = str(state or "").strip().lower()
    if s == "open":
        return CONN_CONNECTED
    if s == "close":
        return CONN_DISCONNECTED
    return CONN_CONNECTING


def render_qr_data_url(code: str) -> str:
    """Render a raw pairing string into a scannable PNG data URL."""
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, border=1, box_size=8)
    qr.add_data(code)
    qr.make(fit=True)
    img = qr.make_image(image_factory=PilImage, fill_color="black", back_color="white").get_image()
    buf = io.BytesIO()
    img.save(buf, format="PNG", optimize=True)
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def extract_qr_value(data: Any) -> Optional[str]:
    """Normalize the gateway's pairing response to a displayable image.

    Priority: a pre-rendered base64 image (nested under ``qrcode`` or top-level),
    then a raw ``code`` string which we render locally.
    """
    if not isinstance(data, dict):
        return None
    nested = data.get("qrcode")
    if isinstance(nested, dict) and nested.get("base64"):
        return str(nested["base64"])
    if data.get("base64"):
        return str(data["base64"])
    code = data.get("code")
    if isinstance(code, str) and code.strip():
        return render_qr_data_url(code.strip())
    return None


class ConnectionRegistry:
    """CRUD + status lifecycle for WhatsApp connections, backed by gateway instances."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        gateway: EvolutionClient,
        *,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
    ):
        self.db_manager = db_manager
        self.gateway = gateway
        self.webhook_url = config.WEBHOOK_PUBLIC_URL if webhook_url is None else webhook_url
        self.webhook_secret = config.WEBHOOK_SECRET if webhook_secret is None else webhook_secret

    async def get(self, organization_id: str, connection_id: str) -> dict:
        conn = await self.db_manager.get_connection(connection_id)
        if not conn or conn["organization_id"] != organization_id:
            raise NotFoundError("Connection not found")
        return conn

    async def list_for_org(self, organization_id: str) -> List[dict]:
        return await self.db_manager.list_connections(organization_id)

    async def create(self, organization_id: str, display_name: str | None = None) -> Dict[str, Any]:
        """Provision a gateway instance, then persist the connection in qr_code status.

        The provider's instance namespace is flat, so the name carries a tenant prefix.
        Nothing is written locally when provisioning fails.
        """
        if not organization_id:
            raise ValidationError("organizationId is required")
        instance_name = f"{str(organization_id)[:8]}_{int(time.time() * 1000)}"
        headers = {"X-Webhook-Secret": self.webhook_secret} if self.webhook_secret else None
        try:
            evolution = await self.gateway.create_instance(
                instance_name,
                webhook_url=self.webhook_url or None,
                webhook_headers=headers,
            )
        except GatewayRejectedError as exc:
            raise ProvisionError(exc.message or "Failed to create instance", status=exc.status, body=exc.body) from exc

        try:
            connection = await self.db_manager.insert_connection(
                {
                    "organization_id": organization_id,
                    "instance_name": instance_name,
                    "display_name": (display_name or "").strip() or instance_name,
                    "status": CONN_QR_CODE,
                }
            )
        except Exception:
            log.error("Connection insert failed, removing orphan instance=%s", instance_name)
            try:
                await self.gateway.delete_instance(instance_name)
            except HelpdeskError as cleanup_exc:
                log.error("Orphan instance cleanup failed instance=%s: %s", instance_name, cleanup_exc)
            raise
        log.info("Connection created instance=%s organization=%s", instance_name, organization_id)
        return {"connection": connection, "evolution": evolution}

    async def get_qr_code(self, connection: dict) -> Dict[str, Any]:
        data = await self.gateway.connect(connection["instance_name"])
        qr_value = extract_qr_value(data)
        if qr_value:
            await self.db_manager.update_connection(connection_id=connection["id"], qr_code=qr_value, status=CONN_QR_CODE)
        return {"qrCode": qr_value, "instance": (data or {}).get("instance") if isinstance(data, dict) else None}

    async def check_status(self, connection: dict) -> Dict[str, Any]:
        """Poll the gateway once; on connect, record the paired phone number."""
        data = await self.gateway.connection_state(connection["instance_name"])
        instance = (data or {}).get("instance") or {}
        state = instance.get("state") or (data or {}).get("state")
        if map_gateway_state(state) == CONN_CONNECTED:
            phone = await self.gateway.owner_phone(connection["instance_name"])
            await self.db_manager.update_connection(
                connection_id=connection["id"],
                status=CONN_CONNECTED,
                phone_number=phone,
                last_connected_at=utcnow_iso(),
                qr_code=None,
            )
            return {"status": CONN_CONNECTED, "instance": instance}
        return {"status": state or CONN_DISCONNECTED, "instance": instance}

    async def poll_until_connected(
        self,
        connection: dict,
        *,
        interval: float | None = None,
        timeout: float | None = None,
    ) -> Dict[str, Any]:
        """Run check_status on a fixed interval until connected or the timeout elapses."""
        interval = config.STATUS_POLL_INTERVAL_SECONDS if interval is None else interval
        timeout = config.STATUS_POLL_TIMEOUT_SECONDS if timeout is None else timeout
        deadline = time.monotonic() + max(0.0, float(timeout))
        while True:
            result = await self.check_status(connection)
            if result.get("status") == CONN_CONNECTED:
                return result
            if time.monotonic() + interval > deadline:
                return result
            await asyncio.sleep(interval)

    async def set_default(self, organization_id: str, connection_id: str) -> None:
        updated = await self.db_manager.set_default_connection(organization_id, connection_id)
        if not updated:
            raise NotFoundError("Connection not found")

    async def update(
        self,
        organization_id: str,
        connection_id: str,
        *,
        display_name: str | None = None,
        auto_close_tickets: bool | None = None,
    ) -> dict:
        await self.get(organization_id, connection_id)
        fields: Dict[str, Any] = {}
        if display_name is not None:
            name = str(display_name).strip()
            if not name:
                raise ValidationError("displayName cannot be empty")
            fields["display_name"] = name
        if auto_close_tickets is not None:
            fields["auto_close_tickets"] = 1 if auto_close_tickets else 0
        if fields:
            await self.db_manager.update_connection(connection_id=connection_id, **fields)
        return await self.get(organization_id, connection_id)

    async def disconnect(self, connection: dict) -> None:
        # Gateway first: a failed logout must not leave the row looking disconnected.
        await self.gateway.logout(connection["instance_name"])
        await self.db_manager.update_connection(connection_id=connection["id"], status=CONN_DISCONNECTED, qr_code=None)

    async def delete(self, connection: dict) -> None:
        await self.gateway.delete_instance(connection["instance_name"])
        await self.db_manager.delete_connection(connection["id"])
        log.info("Connection deleted instance=%s", connection["instance_name"])

    async def restart_all(self, organization_id: str) -> List[Dict[str, Any]]:
        """Restart every instance of the organization; one failure never blocks the others."""
        results: List[Dict[str, Any]] = []
        for conn in await self.db_manager.list_connections(organization_id):
            try:
                await self.gateway.restart(conn["instance_name"])
                results.append({"id": conn["id"], "success": True})
            except Exception as exc:
                log.warning("Restart failed instance=%s: %s", conn["instance_name"], exc)
                results.append({"id": conn["id"], "success": False, "error": str(exc)})
        return results

    # ── webhook-driven sync ──
    async def apply_state_update(self, instance_name: str, state: str | None) -> Optional[str]:
        """Apply a gateway connection.update; repeated identical updates are harmless overwrites."""
        status = map_gateway_state(state)
        fields: Dict[str, Any] = {"status": status}
        if status == CONN_CONNECTED:
            fields["last_connected_at"] = utcnow_iso()
            fields["qr_code"] = None
        elif status == CONN_DISCONNECTED:
            fields["qr_code"] = None
        updated = await self.db_manager.update_connection(instance_name=instance_name, **fields)
        if not updated:
            log.warning("connection.update for unknown instance=%s", instance_name)
            return None
        return status

    async def apply_qr_update(self, instance_name: str, qr_value: str) -> bool:
        updated = await self.db_manager.update_connection(instance_name=instance_name, qr_code=qr_value, status=CONN_QR_CODE)
        if not updated:
            log.warning("qrcode.updated for unknown instance=%s", instance_name)
        return bool(updated)
