from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .. import config
from ..auth import parse_access_token
from ..db import normalize_rows
from ..services import Services

log = logging.getLogger(__name__)

RECENT_MESSAGES_LIMIT = 50


def create_realtime_router(services: Services) -> APIRouter:
    router = APIRouter()
    bus = services.bus

    @router.websocket("/ws/tickets/{ticket_id}")
    async def ticket_websocket(websocket: WebSocket, ticket_id: str):
        """Live feed of one ticket: recent messages on connect, then bus events."""
        agent: Optional[dict]
        if config.DISABLE_AUTH:
            agent = {
                "member_id": websocket.query_params.get("agent") or "dev-agent",
                "organization_id": websocket.query_params.get("organization") or "",
            }
        else:
            # Browsers can't set Authorization on websockets; the token rides in the query string.
            agent = parse_access_token(str(websocket.query_params.get("token") or ""))

        ticket = await services.db_manager.get_ticket(ticket_id)
        if not agent or not ticket or ticket["organization_id"] != agent["organization_id"]:
            log.warning("WS rejected ticket_id=%s authenticated=%s", ticket_id, bool(agent))
            await websocket.close(code=4401 if not agent else 4404)
            return

        await bus.subscribe(websocket, ticket_id)
        try:
            recent = await services.db_manager.list_messages(ticket_id, limit=RECENT_MESSAGES_LIMIT)
            await websocket.send_json({"type": "recent_messages", "ticket_id": ticket_id, "data": normalize_rows(recent)})
            while True:
                data = await websocket.receive_json()
                if isinstance(data, dict) and data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            pass
        finally:
            bus.unsubscribe(websocket, ticket_id)

    return router
