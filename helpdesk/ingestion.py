from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from .connections import ConnectionRegistry
from .db import SENDER_CONTACT, DatabaseManager
from .errors import TransientError
from .gateway import jid_to_phone
from .observability.context import reset_organization_id, set_organization_id
from .realtime import TicketEventBus

log = logging.getLogger(__name__)

MEDIA_PLACEHOLDER = "[Mídia]"
TICKET_RESOLVE_ATTEMPTS = 3

# Gateway message-node name -> stored media_type. Order matters when a payload carries several.
_MEDIA_NODES: Tuple[Tuple[str, str], ...] = (
    ("imageMessage", "image"),
    ("stickerMessage", "image"),
    ("audioMessage", "audio"),
    ("videoMessage", "video"),
    ("documentMessage", "document"),
    ("documentWithCaptionMessage", "document"),
)


class MalformedEventError(ValueError):
    """Envelope the webhook cannot even route (not an object, no event name)."""


def _message_body(item: dict) -> dict:
    body = item.get("message")
    if not isinstance(body, dict):
        return {}
    # Some gateway versions wrap the whole record once more under "message".
    if isinstance(body.get("key"), dict) and isinstance(body.get("message"), dict):
        body = body["message"]
    return body


def _message_key(item: dict) -> dict:
    key = item.get("key")
    if isinstance(key, dict):
        return key
    nested = item.get("message")
    if isinstance(nested, dict) and isinstance(nested.get("key"), dict):
        return nested["key"]
    return {}


def extract_content(body: dict) -> str:
    """Text of an inbound message; the placeholder when only media without caption is present."""
    if body.get("conversation"):
        return str(body["conversation"])
    ext = body.get("extendedTextMessage") or {}
    if isinstance(ext, dict) and ext.get("text"):
        return str(ext["text"])
    for node in ("imageMessage", "videoMessage", "documentMessage"):
        part = body.get(node) or {}
        if isinstance(part, dict) and part.get("caption"):
            return str(part["caption"])
    wrapped = ((body.get("documentWithCaptionMessage") or {}).get("message") or {}).get("documentMessage") or {}
    if isinstance(wrapped, dict) and wrapped.get("caption"):
        return str(wrapped["caption"])
    return MEDIA_PLACEHOLDER


def extract_media_type(body: dict) -> Optional[str]:
    for node, media_type in _MEDIA_NODES:
        if body.get(node):
            return media_type
    return None


def split_upsert_items(data: Any) -> List[dict]:
    """messages.upsert carries one record or a ``messages`` list; each is handled on its own."""
    if not isinstance(data, dict):
        return []
    items = data.get("messages")
    if isinstance(items, list):
        return [m for m in items if isinstance(m, dict)]
    return [data]


def is_group_or_broadcast(jid: str) -> bool:
    j = (jid or "").lower()
    return j.endswith("@g.us") or j.endswith("@broadcast") or j.endswith("@newsletter")


class WebhookProcessor:
    """Apply one gateway event to the data model.

    At-least-once delivery from the gateway, at-most-once effect here: every
    find-or-create step is an insert-if-absent guarded by a unique index, and the
    gateway message id makes redelivered messages a no-op.
    """

    def __init__(self, db_manager: DatabaseManager, registry: ConnectionRegistry, bus: TicketEventBus | None = None):
        self.db_manager = db_manager
        self.registry = registry
        self.bus = bus

    async def handle(self, envelope: Any) -> Dict[str, Any]:
        if not isinstance(envelope, dict):
            raise MalformedEventError("Webhook body must be a JSON object")
        event = str(envelope.get("event") or "").strip()
        if not event:
            raise MalformedEventError("Webhook body is missing 'event'")
        # Some gateway configs send MESSAGES_UPSERT instead of messages.upsert
        event = event.lower().replace("_", ".")
        instance = str(envelope.get("instance") or "").strip()
        data = envelope.get("data")

        if event == "messages.upsert":
            results = []
            for item in split_upsert_items(data):
                results.append(await self.handle_message(instance, item))
            return {"event": event, "results": results}
        if event == "connection.update":
            return {"event": event, "status": await self.handle_connection_update(instance, data)}
        if event == "qrcode.updated":
            return {"event": event, "updated": await self.handle_qrcode_updated(instance, data)}

        log.info("Unhandled webhook event=%s instance=%s", event, instance)
        return {"event": event, "ignored": True}

    async def handle_message(self, instance: str, item: dict) -> Dict[str, Any]:
        key = _message_key(item)
        remote_jid = str(key.get("remoteJid") or "").strip()
        if key.get("fromMe"):
            log.debug("Ignoring outgoing message instance=%s", instance)
            return {"skipped": "from_me"}
        if not remote_jid:
            log.info("Ignoring message without sender instance=%s", instance)
            return {"skipped": "no_sender"}
        if is_group_or_broadcast(remote_jid):
            return {"skipped": "group"}
        phone = jid_to_phone(remote_jid)
        if not phone:
            return {"skipped": "no_sender"}

        connection = await self.db_manager.get_connection_by_instance(instance) if instance else None
        if not connection:
            log.error("Connection not found for instance=%s; dropping message", instance)
            return {"skipped": "unknown_instance"}
        organization_id = connection["organization_id"]

        token = set_organization_id(organization_id)
        try:
            return await self._ingest(connection, key, item, phone)
        finally:
            reset_organization_id(token)

    async def _ingest(self, connection: dict, key: dict, item: dict, phone: str) -> Dict[str, Any]:
        organization_id = connection["organization_id"]
        external_id = str(key.get("id") or "").strip() or None
        if external_id:
            existing = await self.db_manager.find_message_by_external_id(organization_id, external_id)
            if existing:
                log.info("Duplicate delivery external_id=%s ignored", external_id)
                return {"duplicate": True, "message_id": existing["id"], "ticket_id": existing["ticket_id"]}

        wrapped = item.get("message") if isinstance(item.get("message"), dict) else {}
        push_name = str(wrapped.get("pushName") or item.get("pushName") or "").strip()
        contact, contact_created = await self.db_manager.upsert_contact(organization_id, phone, push_name or phone)
        ticket, ticket_created = await self._resolve_ticket(connection, contact)

        body = _message_body(item)
        message, created = await self.db_manager.insert_message(
            {
                "ticket_id": ticket["id"],
                "sender_type": SENDER_CONTACT,
                "sender_id": contact["id"],
                "content": extract_content(body),
                # Asset is not downloaded; the gateway URL's lifetime is unknown, so none is stored.
                "media_url": None,
                "media_type": extract_media_type(body),
                "external_id": external_id,
            }
        )
        if not created:
            log.info("Duplicate delivery external_id=%s ignored (concurrent)", external_id)
            return {"duplicate": True, "message_id": message["id"] if message else None, "ticket_id": ticket["id"]}

        log.info(
            "Inbound message stored ticket_id=%s contact_created=%s ticket_created=%s",
            ticket["id"],
            contact_created,
            ticket_created,
        )
        if self.bus:
            await self.bus.publish(ticket["id"], "message.created", message)
        return {
            "message_id": message["id"],
            "ticket_id": ticket["id"],
            "contact_id": contact["id"],
            "contact_created": contact_created,
            "ticket_created": ticket_created,
        }

    async def _resolve_ticket(self, connection: dict, contact: dict) -> Tuple[dict, bool]:
        """Find the contact's active ticket or open one; a lost race re-reads the winner."""
        last_error: Exception | None = None
        for attempt in range(1, TICKET_RESOLVE_ATTEMPTS + 1):
            try:
                ticket, created = await self.db_manager.insert_ticket_if_no_active(
                    connection["organization_id"],
                    contact["id"],
                    title=f"Atendimento - {contact['name']}",
                    whatsapp_connection_id=connection["id"],
                )
            except Exception as exc:
                if not _is_unique_violation(exc):
                    raise
                last_error = exc
                ticket, created = None, False
            if ticket:
                return ticket, created
            # The winner's ticket was closed between our insert and our read; try again.
            log.info("Active ticket race for contact_id=%s (attempt %s)", contact["id"], attempt)
        raise TransientError(f"Could not resolve an active ticket for contact {contact['id']}") from last_error

    async def handle_connection_update(self, instance: str, data: Any) -> Optional[str]:
        if not instance or not isinstance(data, dict):
            log.info("Ignoring connection.update without instance or data")
            return None
        state = data.get("state")
        log.info("Connection update instance=%s state=%s", instance, state)
        return await self.registry.apply_state_update(instance, state)

    async def handle_qrcode_updated(self, instance: str, data: Any) -> bool:
        qr = (data or {}).get("qrcode") if isinstance(data, dict) else None
        value = qr.get("base64") if isinstance(qr, dict) else None
        if not instance or not value:
            log.info("Ignoring qrcode.updated without image instance=%s", instance)
            return False
        return await self.registry.apply_qr_update(instance, str(value))


def _is_unique_violation(exc: Exception) -> bool:
    if isinstance(exc, asyncpg.exceptions.UniqueViolationError):
        return True
    return isinstance(exc, sqlite3.IntegrityError) and "UNIQUE" in str(exc).upper()
