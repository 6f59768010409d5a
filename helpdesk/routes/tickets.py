from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse

from ..auth import get_current_agent
from ..db import normalize_rows
from ..errors import HelpdeskError, ValidationError, is_transient
from ..services import Services

log = logging.getLogger(__name__)


def _error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, HelpdeskError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    return JSONResponse(status_code=503, content={"error": "Temporarily unavailable", "code": "unavailable"})


def create_tickets_router(services: Services) -> APIRouter:
    router = APIRouter(prefix="/tickets")
    lifecycle = services.lifecycle

    async def _run(coro):
        try:
            return await coro
        except HelpdeskError as exc:
            log.info("Ticket request rejected: %s", exc.message)
            return _error_response(exc)
        except Exception as exc:
            if is_transient(exc):
                log.warning("Ticket request deferred (transient): %r", exc)
                return _error_response(exc)
            raise

    @router.post("")
    async def create_ticket(body: Any = Body(None), agent: dict = Depends(get_current_agent)):
        """Agent-initiated ticket; returns the existing active ticket for the contact if any."""
        async def _create():
            if not isinstance(body, dict) or not body.get("contactId"):
                raise ValidationError("contactId is required")
            result = await lifecycle.open_ticket(
                agent["organization_id"],
                str(body["contactId"]),
                connection_id=body.get("connectionId"),
                title=body.get("title"),
            )
            return {"ticket": result["ticket"], "created": result["created"]}

        return await _run(_create())

    @router.post("/{ticket_id}/accept")
    async def accept_ticket(ticket_id: str, agent: dict = Depends(get_current_agent)):
        return await _run(lifecycle.accept(agent["organization_id"], ticket_id, agent["member_id"]))

    @router.post("/{ticket_id}/close-for-now")
    async def close_ticket_for_now(ticket_id: str, agent: dict = Depends(get_current_agent)):
        return await _run(lifecycle.close_for_now(agent["organization_id"], ticket_id))

    @router.post("/{ticket_id}/finish")
    async def finish_ticket(ticket_id: str, agent: dict = Depends(get_current_agent)):
        return await _run(lifecycle.finish(agent["organization_id"], ticket_id))

    @router.post("/{ticket_id}/read")
    async def mark_ticket_read(ticket_id: str, agent: dict = Depends(get_current_agent)):
        return await _run(lifecycle.mark_read(agent["organization_id"], ticket_id))

    @router.get("/{ticket_id}/messages")
    async def list_ticket_messages(
        ticket_id: str,
        offset: int = Query(0, ge=0),
        limit: int = Query(200, ge=1, le=1000),
        agent: dict = Depends(get_current_agent),
    ):
        async def _list():
            rows = await lifecycle.list_messages(agent["organization_id"], ticket_id, offset=offset, limit=limit)
            return normalize_rows(rows)

        return await _run(_list())

    return router
