from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter

from .. import config
from ..auth import get_current_agent
from ..db import normalize_rows
from ..errors import HelpdeskError, ValidationError, is_transient
from ..services import Services

log = logging.getLogger(__name__)


# Optional rate limit dependency that no-ops when the limiter is not initialized
async def _optional_rate_limit_send(request: Request, response: Response):
    if not FastAPILimiter.redis:
        return
    try:
        payload = await request.json()
    except ValueError:
        return
    # Only agent replies are throttled.
    if not isinstance(payload, dict) or payload.get("action") not in ("send-message", "retry-delivery"):
        return
    limiter = RateLimiter(times=config.SEND_TEXT_PER_MIN, seconds=60)
    try:
        return await limiter(request, response)
    except HTTPException:
        raise
    except Exception as exc:
        # Limiter backend trouble never blocks a reply.
        log.warning("Rate limiter unavailable: %s", exc)


def _require(body: dict, *names: str) -> list:
    values = []
    for name in names:
        value = body.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(f"{name} is required")
        values.append(value)
    return values


def _one(row: dict | None) -> dict | None:
    return normalize_rows([row])[0] if row else None


def create_actions_router(services: Services) -> APIRouter:
    router = APIRouter()
    registry = services.registry

    async def create_instance(org: str, agent: dict, body: dict) -> dict:
        result = await registry.create(org, body.get("displayName"))
        return {"connection": _one(result["connection"]), "evolution": result["evolution"]}

    async def get_qrcode(org: str, agent: dict, body: dict) -> dict:
        (connection_id,) = _require(body, "connectionId")
        return await registry.get_qr_code(await registry.get(org, connection_id))

    async def check_status(org: str, agent: dict, body: dict) -> dict:
        (connection_id,) = _require(body, "connectionId")
        conn = await registry.get(org, connection_id)
        if body.get("wait"):
            return await registry.poll_until_connected(conn, timeout=body.get("timeoutSeconds"))
        return await registry.check_status(conn)

    async def disconnect(org: str, agent: dict, body: dict) -> dict:
        (connection_id,) = _require(body, "connectionId")
        await registry.disconnect(await registry.get(org, connection_id))
        return {"success": True}

    async def delete_instance(org: str, agent: dict, body: dict) -> dict:
        (connection_id,) = _require(body, "connectionId")
        await registry.delete(await registry.get(org, connection_id))
        return {"success": True}

    async def restart_all(org: str, agent: dict, body: dict) -> dict:
        return {"results": await registry.restart_all(org)}

    async def set_default(org: str, agent: dict, body: dict) -> dict:
        (connection_id,) = _require(body, "connectionId")
        await registry.set_default(org, connection_id)
        return {"success": True}

    async def update_connection(org: str, agent: dict, body: dict) -> dict:
        (connection_id,) = _require(body, "connectionId")
        auto_close = body.get("autoCloseTickets")
        conn = await registry.update(
            org,
            connection_id,
            display_name=body.get("displayName"),
            auto_close_tickets=None if auto_close is None else bool(auto_close),
        )
        return {"connection": _one(conn)}

    async def list_connections(org: str, agent: dict, body: dict) -> dict:
        return {"connections": normalize_rows(await registry.list_for_org(org))}

    async def send_message(org: str, agent: dict, body: dict) -> dict:
        (ticket_id,) = _require(body, "ticketId")
        result = await services.dispatcher.send_reply(
            org,
            ticket_id,
            agent["member_id"],
            body.get("message"),
            media_url=body.get("mediaUrl"),
            media_type=body.get("mediaType"),
            client_message_id=body.get("clientMessageId"),
        )
        return _send_result(result)

    async def retry_delivery(org: str, agent: dict, body: dict) -> dict:
        (message_id,) = _require(body, "messageId")
        try:
            mid = int(message_id)
        except (TypeError, ValueError):
            raise ValidationError("messageId must be an integer")
        return _send_result(await services.dispatcher.retry_delivery(org, mid))

    handlers: Dict[str, Callable[[str, dict, dict], Awaitable[Any]]] = {
        "create-instance": create_instance,
        "get-qrcode": get_qrcode,
        "check-status": check_status,
        "disconnect": disconnect,
        "delete-instance": delete_instance,
        "send-message": send_message,
        "restart-all": restart_all,
        "set-default": set_default,
        "update-connection": update_connection,
        "retry-delivery": retry_delivery,
        "list-connections": list_connections,
    }

    @router.post("/gateway/actions")
    async def gateway_actions(
        body: Any = Body(None),
        agent: dict = Depends(get_current_agent),
        _: None = Depends(_optional_rate_limit_send),
    ):
        """Single action-dispatch endpoint: {action, ...params}."""
        if not isinstance(body, dict):
            return JSONResponse(status_code=400, content={"error": "Body must be a JSON object", "code": "validation"})
        action = str(body.get("action") or "").strip()
        handler = handlers.get(action)
        if handler is None:
            return JSONResponse(status_code=400, content={"error": f"Unknown action: {action}", "code": "validation"})
        org = agent.get("organization_id") or ""
        if not org:
            return JSONResponse(status_code=400, content={"error": "organization is required", "code": "validation"})

        log.info("Gateway action %s", action)
        try:
            return await handler(org, agent, body)
        except HelpdeskError as exc:
            log.warning("Gateway action %s failed: %s", action, exc.message)
            return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
        except Exception as exc:
            if is_transient(exc):
                log.warning("Gateway action %s deferred (transient): %r", action, exc)
                return JSONResponse(status_code=503, content={"error": "Temporarily unavailable", "code": "unavailable"})
            raise

    return router


def _send_result(result: dict) -> dict:
    message = _one(result.get("message"))
    out = {
        "success": bool(result.get("delivered")),
        "delivered": bool(result.get("delivered")),
        "message": message,
        "messageId": (message or {}).get("external_id"),
    }
    if result.get("duplicate"):
        out["duplicate"] = True
    if not result.get("delivered") and result.get("error"):
        # Saved but not delivered: the UI flags the bubble and offers retry-delivery.
        out["error"] = result["error"]
        out["code"] = result.get("code")
    return out
