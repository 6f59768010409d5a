from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from .db import (
    DELIVERY_FAILED,
    DELIVERY_PENDING,
    DELIVERY_SENT,
    SENDER_USER,
    TICKET_CLOSED,
    DatabaseManager,
)
from .errors import HelpdeskError, NotFoundError, ValidationError
from .gateway import EvolutionClient
from .realtime import TicketEventBus

log = logging.getLogger(__name__)


def select_media_endpoint(media_type: str | None) -> Tuple[str, Optional[str]]:
    """Map a MIME type (or a bare kind like ``image``) to (gateway call, mediatype).

    ``("audio", None)`` means the dedicated voice-note endpoint; anything unclassified
    goes out as a document.
    """
    mt = str(media_type or "").strip().lower()
    kind = mt.split("/", 1)[0]
    if kind == "image":
        return "media", "image"
    if kind == "audio":
        return "audio", None
    return "media", "document"


def _external_id(response: Any) -> Optional[str]:
    if not isinstance(response, dict):
        return None
    key = response.get("key") or {}
    mid = key.get("id") if isinstance(key, dict) else None
    return str(mid or response.get("id") or "") or None


class OutboundDispatcher:
    """Persist an agent reply first, then hand it to the gateway.

    A gateway failure never loses the authored text: the row stays with
    ``delivery_status=failed`` and can be re-sent with ``retry_delivery``.
    """

    def __init__(self, db_manager: DatabaseManager, gateway: EvolutionClient, bus: TicketEventBus | None = None):
        self.db_manager = db_manager
        self.gateway = gateway
        self.bus = bus

    async def _resolve_connection(self, organization_id: str, ticket: dict) -> dict:
        conn = None
        if ticket.get("whatsapp_connection_id"):
            conn = await self.db_manager.get_connection(ticket["whatsapp_connection_id"])
        if not conn or conn["organization_id"] != organization_id:
            conn = await self.db_manager.get_default_connection(organization_id)
        if not conn:
            raise ValidationError("No WhatsApp connection available for this ticket")
        return conn

    async def _load_ticket(self, organization_id: str, ticket_id: str) -> dict:
        ticket = await self.db_manager.get_ticket(ticket_id)
        if not ticket or ticket["organization_id"] != organization_id:
            raise NotFoundError("Ticket not found")
        return ticket

    async def send_reply(
        self,
        organization_id: str,
        ticket_id: str,
        agent_id: str | None,
        content: str | None,
        *,
        media_url: str | None = None,
        media_type: str | None = None,
        client_message_id: str | None = None,
    ) -> Dict[str, Any]:
        text = str(content or "").strip()
        if not text and not media_url:
            raise ValidationError("content or mediaUrl is required")
        ticket = await self._load_ticket(organization_id, ticket_id)
        if ticket["status"] == TICKET_CLOSED:
            raise ValidationError("Ticket is closed")
        contact = await self.db_manager.get_contact(ticket["contact_id"])
        if not contact:
            raise NotFoundError("Contact not found")
        connection = await self._resolve_connection(organization_id, ticket)

        message, created = await self.db_manager.insert_message(
            {
                "ticket_id": ticket_id,
                "sender_type": SENDER_USER,
                "sender_id": agent_id,
                "content": text or None,
                "media_url": media_url,
                "media_type": media_type,
                "delivery_status": DELIVERY_PENDING,
                "client_message_id": client_message_id or None,
            }
        )
        if not created:
            # Same client_message_id submitted again: never resend.
            log.info("Duplicate submit client_message_id=%s ticket_id=%s", client_message_id, ticket_id)
            return {"message": message, "delivered": message.get("delivery_status") == DELIVERY_SENT, "duplicate": True}

        if self.bus:
            await self.bus.publish(ticket_id, "message.created", message)
        return await self._deliver(message, contact["phone"], connection)

    async def retry_delivery(self, organization_id: str, message_id: int) -> Dict[str, Any]:
        """Re-send a failed agent message on the same row; pending rows are left alone."""
        message = await self.db_manager.get_message(message_id)
        if not message:
            raise NotFoundError("Message not found")
        ticket = await self._load_ticket(organization_id, message["ticket_id"])
        if message["sender_type"] != SENDER_USER:
            raise ValidationError("Only agent messages can be re-sent")
        if message.get("delivery_status") == DELIVERY_SENT:
            return {"message": message, "delivered": True}
        if message.get("delivery_status") != DELIVERY_FAILED:
            raise ValidationError("Message delivery is still in progress")
        contact = await self.db_manager.get_contact(ticket["contact_id"])
        if not contact:
            raise NotFoundError("Contact not found")
        connection = await self._resolve_connection(organization_id, ticket)
        # Another retry may have claimed the row since we read it.
        if not await self.db_manager.claim_failed_message(message["id"]):
            raise ValidationError("Message delivery is still in progress")
        return await self._deliver(message, contact["phone"], connection)

    async def _deliver(self, message: dict, phone: str, connection: dict) -> Dict[str, Any]:
        instance = connection["instance_name"]
        try:
            if message.get("media_url"):
                call, mediatype = select_media_endpoint(message.get("media_type"))
                if call == "audio":
                    response = await self.gateway.send_audio(instance, phone, message["media_url"])
                else:
                    response = await self.gateway.send_media(
                        instance, phone, mediatype, message["media_url"], message.get("content") or ""
                    )
            else:
                response = await self.gateway.send_text(instance, phone, message.get("content") or "")
        except HelpdeskError as exc:
            log.warning("Delivery failed message_id=%s instance=%s: %s", message["id"], instance, exc.message)
            await self.db_manager.update_message_delivery(message["id"], delivery_status=DELIVERY_FAILED)
            stored = await self.db_manager.get_message(message["id"])
            return {"message": stored, "delivered": False, "error": exc.message, "code": exc.code}

        await self.db_manager.update_message_delivery(
            message["id"], delivery_status=DELIVERY_SENT, external_id=_external_id(response)
        )
        stored = await self.db_manager.get_message(message["id"])
        log.info("Delivered message_id=%s instance=%s", message["id"], instance)
        return {"message": stored, "delivered": True}
