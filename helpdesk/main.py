from __future__ import annotations

import asyncio
import logging
from typing import List

from fastapi import FastAPI
from fastapi.responses import ORJSONResponse
from fastapi_limiter import FastAPILimiter
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from . import config
from .db import DatabaseManager
from .gateway import EvolutionClient
from .observability.context import (
    get_agent_id as _get_agent_id,
    get_organization_id as _get_organization_id,
    get_request_id as _get_request_id,
    reset_request_id as _reset_request_id,
    set_request_id as _set_request_id,
)
from .observability.logging import configure_logging as _configure_logging
from .realtime import RedisManager
from .routes import create_actions_router, create_realtime_router, create_tickets_router
from .services import build_services
from .webhook import WebhookRuntime, WebhookState, create_webhook_router

log = logging.getLogger(__name__)


def create_app(
    db_manager: DatabaseManager | None = None,
    gateway: EvolutionClient | None = None,
    redis_manager: RedisManager | None = None,
    *,
    webhook_secret: str | None = None,
    background_tasks: bool = True,
) -> FastAPI:
    """Wire the services explicitly and mount every router on a fresh app."""
    _configure_logging(
        level=config.LOG_LEVEL,
        fmt=config.LOG_FORMAT,
        organization_getter=_get_organization_id,
        request_id_getter=_get_request_id,
        agent_getter=_get_agent_id,
    )
    secret = config.WEBHOOK_SECRET if webhook_secret is None else webhook_secret
    services = build_services(db_manager, gateway, redis_manager, webhook_secret=secret)
    webhook_runtime = WebhookRuntime(
        db_manager=services.db_manager,
        redis_manager=services.redis_manager,
        processor=services.processor,
        webhook_secret=secret,
        processing_timeout_seconds=config.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
        state=WebhookState(),
    )

    app = FastAPI(title="WhatsApp Helpdesk", default_response_class=ORJSONResponse)
    app.state.services = services
    app.state.webhook_runtime = webhook_runtime
    app.include_router(create_webhook_router(webhook_runtime))
    app.include_router(create_actions_router(services))
    app.include_router(create_tickets_router(services))
    app.include_router(create_realtime_router(services))

    # ── Request context: request_id (for tracing) ──────────────────────
    @app.middleware("http")
    async def request_id_middleware(request: StarletteRequest, call_next):
        incoming = (request.headers.get("x-request-id") or "").strip()
        rid, tok = _set_request_id(incoming or None)
        try:
            resp: StarletteResponse = await call_next(request)
            resp.headers["X-Request-Id"] = rid
            return resp
        finally:
            _reset_request_id(tok)

    # Expose Prometheus metrics
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    tasks: List[asyncio.Task] = []

    @app.on_event("startup")
    async def startup():
        logging.getLogger("httpx").setLevel(logging.WARNING)
        # If Postgres is configured+required, failing here keeps traffic off a broken instance.
        await services.db_manager.init_db()
        webhook_runtime.state.db_ready = True
        if not secret:
            log.warning("WEBHOOK_SECRET is empty; /webhook accepts unauthenticated calls.")

        await services.redis_manager.connect()
        if services.redis_manager.redis_client:
            tasks.append(asyncio.create_task(services.redis_manager.subscribe_ticket_events(services.bus)))
            try:
                await FastAPILimiter.init(services.redis_manager.redis_client)
            except Exception as exc:
                log.warning("Rate limiter init failed: %s", exc)

        if background_tasks and config.AUTO_CLOSE_ENABLED:
            tasks.append(asyncio.create_task(services.lifecycle.run_auto_close_loop()))
        log.info("Startup complete backend=%s", webhook_runtime.backend_name())

    @app.on_event("shutdown")
    async def shutdown():
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        tasks.clear()
        await services.redis_manager.close()
        await services.db_manager.close()

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        db_ok = False
        try:
            db_ok = await asyncio.wait_for(services.db_manager.ping(), timeout=config.HEALTH_DB_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "db": "ok" if db_ok else "unavailable",
            "db_backend": webhook_runtime.backend_name(),
            "redis": "connected" if services.redis_manager.redis_client else "disconnected",
            "webhook": {
                "processed": webhook_runtime.state.processed,
                "failed": webhook_runtime.state.failed,
            },
            "subscribed_tickets": len(services.bus.active_tickets()),
        }

    return app


app = create_app()
