from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..errors import is_transient
from ..ingestion import MalformedEventError
from .runtime import WebhookRuntime
from .signature import verify_webhook_secret

log = logging.getLogger(__name__)


def create_webhook_router(rt: WebhookRuntime) -> APIRouter:
    router = APIRouter()

    @router.post("/webhook")
    async def webhook(request: Request):
        """Gateway webhook endpoint (ingress).

        200 {"success": true} for handled, ignored or unroutable events, 503 for
        transient trouble so the gateway retries, 400 for a body that is not JSON
        or a failed event.
        """
        body_bytes = await request.body()
        if rt.webhook_secret:
            ok, debug = verify_webhook_secret(
                rt.webhook_secret,
                presented_secret=request.headers.get("X-Webhook-Secret") or request.headers.get("apikey"),
                body=body_bytes,
                signature=request.headers.get("X-Webhook-Signature"),
            )
            if not ok:
                log.warning("Invalid webhook secret %s", debug)
                return JSONResponse(status_code=401, content={"error": "Invalid webhook secret"})

        try:
            envelope = json.loads(body_bytes.decode("utf-8") or "null")
        except (UnicodeDecodeError, ValueError):
            return JSONResponse(status_code=400, content={"error": "Body is not valid JSON"})

        try:
            result = await asyncio.wait_for(
                rt.processor.handle(envelope),
                timeout=max(0.2, float(rt.processing_timeout_seconds)),
            )
        except MalformedEventError as exc:
            # Unroutable envelopes are acknowledged and dropped.
            log.warning("Malformed webhook discarded: %s envelope=%.500s", exc, body_bytes)
            return {"success": True}
        except Exception as exc:
            rt.state.failed += 1
            if is_transient(exc):
                log.warning("Webhook processing deferred (transient): %r", exc)
                return JSONResponse(status_code=503, content={"error": str(exc) or "Temporarily unavailable"})
            log.exception("Webhook processing failed")
            return JSONResponse(status_code=400, content={"error": str(exc) or type(exc).__name__})

        rt.state.processed += 1
        log.debug("Webhook handled: %s", result)
        return {"success": True}

    return router
