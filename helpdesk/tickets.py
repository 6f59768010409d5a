from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

from . import config
from .db import (
    ACTIVE_TICKET_STATUSES,
    TICKET_CLOSED,
    TICKET_IN_PROGRESS,
    TICKET_OPEN,
    TICKET_WAITING,
    DatabaseManager,
    utcnow_iso,
)
from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .realtime import TicketEventBus

log = logging.getLogger(__name__)

# action -> (allowed source statuses, target status)
TRANSITIONS: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "accept": ((TICKET_OPEN, TICKET_WAITING), TICKET_IN_PROGRESS),
    "close-for-now": ((TICKET_IN_PROGRESS,), TICKET_WAITING),
    "finish": (ACTIVE_TICKET_STATUSES, TICKET_CLOSED),
}


class TicketLifecycle:
    """Agent-driven ticket state machine.

    Every transition is a compare-and-set on the current status, so two agents
    racing on the same ticket can't both win. Closed tickets are never reopened;
    the pipeline opens a new one on the contact's next message.
    """

    def __init__(self, db_manager: DatabaseManager, bus: TicketEventBus | None = None):
        self.db_manager = db_manager
        self.bus = bus

    async def get(self, organization_id: str, ticket_id: str) -> dict:
        ticket = await self.db_manager.get_ticket(ticket_id)
        if not ticket or ticket["organization_id"] != organization_id:
            raise NotFoundError("Ticket not found")
        return ticket

    async def _transition(self, organization_id: str, ticket_id: str, action: str, **fields) -> dict:
        from_statuses, target = TRANSITIONS[action]
        ticket = await self.get(organization_id, ticket_id)
        if ticket["status"] not in from_statuses:
            raise InvalidTransitionError(f"Cannot {action} a ticket in status '{ticket['status']}'")
        updated = await self.db_manager.update_ticket_status(
            ticket_id, from_statuses=from_statuses, status=target, **fields
        )
        if not updated:
            current = await self.get(organization_id, ticket_id)
            raise InvalidTransitionError(f"Cannot {action} a ticket in status '{current['status']}'")
        ticket = await self.get(organization_id, ticket_id)
        log.info("Ticket %s ticket_id=%s -> %s", action, ticket_id, target)
        if self.bus:
            await self.bus.publish(ticket_id, "ticket.updated", ticket)
        return ticket

    async def accept(self, organization_id: str, ticket_id: str, agent_id: str) -> dict:
        if not agent_id:
            raise ValidationError("agent id is required to accept a ticket")
        return await self._transition(organization_id, ticket_id, "accept", assigned_to=agent_id)

    async def close_for_now(self, organization_id: str, ticket_id: str) -> dict:
        return await self._transition(organization_id, ticket_id, "close-for-now")

    async def finish(self, organization_id: str, ticket_id: str) -> dict:
        return await self._transition(organization_id, ticket_id, "finish", closed_at=utcnow_iso())

    async def open_ticket(
        self,
        organization_id: str,
        contact_id: str,
        *,
        connection_id: str | None = None,
        title: str | None = None,
    ) -> Dict[str, Any]:
        """Agent-initiated ticket; returns the contact's existing active ticket when there is one."""
        contact = await self.db_manager.get_contact(contact_id)
        if not contact or contact["organization_id"] != organization_id:
            raise NotFoundError("Contact not found")
        if connection_id:
            conn = await self.db_manager.get_connection(connection_id)
            if not conn or conn["organization_id"] != organization_id:
                raise NotFoundError("Connection not found")
        ticket, created = await self.db_manager.insert_ticket_if_no_active(
            organization_id,
            contact_id,
            title=(title or "").strip() or f"Atendimento - {contact['name']}",
            whatsapp_connection_id=connection_id,
        )
        if not ticket:
            raise InvalidTransitionError("Ticket changed concurrently, try again")
        return {"ticket": ticket, "created": created}

    async def mark_read(self, organization_id: str, ticket_id: str) -> dict:
        await self.get(organization_id, ticket_id)
        await self.db_manager.reset_unread(ticket_id)
        return await self.get(organization_id, ticket_id)

    async def list_messages(self, organization_id: str, ticket_id: str, *, offset: int = 0, limit: int = 200) -> List[dict]:
        await self.get(organization_id, ticket_id)
        return await self.db_manager.list_messages(ticket_id, offset=offset, limit=limit)

    async def auto_close_idle(self, max_idle_seconds: float) -> List[str]:
        """Finish active tickets on auto-close connections idle for longer than ``max_idle_seconds``."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=float(max_idle_seconds))
        cutoff_iso = cutoff.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        closed: List[str] = []
        for ticket in await self.db_manager.list_idle_auto_close_tickets(cutoff_iso):
            updated = await self.db_manager.update_ticket_status(
                ticket["id"], from_statuses=ACTIVE_TICKET_STATUSES, status=TICKET_CLOSED, closed_at=utcnow_iso()
            )
            # 0 rows: an agent got there first.
            if updated:
                closed.append(ticket["id"])
                if self.bus:
                    await self.bus.publish(ticket["id"], "ticket.updated", {"id": ticket["id"], "status": TICKET_CLOSED})
        if closed:
            log.info("Auto-closed %s idle ticket(s)", len(closed))
        return closed

    async def run_auto_close_loop(self, *, interval: float | None = None, max_idle_seconds: float | None = None):
        """Background sweep; errors are logged and the loop keeps going."""
        interval = config.AUTO_CLOSE_SWEEP_INTERVAL_SECONDS if interval is None else interval
        max_idle = config.AUTO_CLOSE_IDLE_HOURS * 3600 if max_idle_seconds is None else max_idle_seconds
        while True:
            try:
                await self.auto_close_idle(max_idle)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("Auto-close sweep failed: %s", exc)
            await asyncio.sleep(max(1.0, float(interval)))
