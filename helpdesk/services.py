from __future__ import annotations

from dataclasses import dataclass

from . import config
from .connections import ConnectionRegistry
from .db import DatabaseManager
from .dispatch import OutboundDispatcher
from .gateway import EvolutionClient
from .ingestion import WebhookProcessor
from .realtime import RedisManager, TicketEventBus
from .tickets import TicketLifecycle


@dataclass
class Services:
    """Explicitly wired collaborators shared by the routers (no module singletons)."""

    db_manager: DatabaseManager
    gateway: EvolutionClient
    redis_manager: RedisManager
    bus: TicketEventBus
    registry: ConnectionRegistry
    processor: WebhookProcessor
    dispatcher: OutboundDispatcher
    lifecycle: TicketLifecycle


def build_services(
    db_manager: DatabaseManager | None = None,
    gateway: EvolutionClient | None = None,
    redis_manager: RedisManager | None = None,
    *,
    webhook_url: str | None = None,
    webhook_secret: str | None = None,
) -> Services:
    db_manager = db_manager or DatabaseManager()
    gateway = gateway or EvolutionClient()
    redis_manager = redis_manager or RedisManager()
    bus = TicketEventBus(redis_manager)
    registry = ConnectionRegistry(
        db_manager,
        gateway,
        webhook_url=config.WEBHOOK_PUBLIC_URL if webhook_url is None else webhook_url,
        webhook_secret=config.WEBHOOK_SECRET if webhook_secret is None else webhook_secret,
    )
    return Services(
        db_manager=db_manager,
        gateway=gateway,
        redis_manager=redis_manager,
        bus=bus,
        registry=registry,
        processor=WebhookProcessor(db_manager, registry, bus),
        dispatcher=OutboundDispatcher(db_manager, gateway, bus),
        lifecycle=TicketLifecycle(db_manager, bus),
    )
