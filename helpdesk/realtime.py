from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

import redis.asyncio as redis
from fastapi import WebSocket

from . import config

log = logging.getLogger(__name__)


class RedisManager:
    def __init__(self, redis_url: str | None = None):
        self.redis_url = config.REDIS_URL if redis_url is None else redis_url
        self.redis_client: Optional[redis.Redis] = None

    async def connect(self):
        """Connect to Redis (no-op without REDIS_URL)."""
        if not self.redis_url:
            return
        try:
            self.redis_client = redis.from_url(self.redis_url)
            await self.redis_client.ping()
            log.info("Redis connected")
        except Exception as exc:
            log.warning("Redis connection failed: %s", exc)
            self.redis_client = None

    async def close(self):
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None

    async def publish_ticket_event(self, ticket_id: str, event: dict, origin: str) -> None:
        """Publish a ticket event so other instances can deliver it."""
        if not self.redis_client:
            return
        payload = json.dumps({"ticket_id": ticket_id, "event": event, "origin": origin}, default=str)
        await self.redis_client.publish(config.TICKET_EVENTS_CHANNEL, payload)

    async def subscribe_ticket_events(self, bus: "TicketEventBus"):
        """Subscribe to ticket events and forward them to local subscribers only."""
        if not self.redis_client:
            return
        pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(config.TICKET_EVENTS_CHANNEL)
        try:
            async for msg in pubsub.listen():
                if not msg or msg.get("type") != "message":
                    continue
                try:
                    data = json.loads(msg.get("data"))
                except (TypeError, ValueError):
                    continue
                # Our own publishes were already delivered locally.
                if data.get("origin") == bus.instance_id:
                    continue
                tid = data.get("ticket_id")
                event = data.get("event")
                if tid and event:
                    await bus.deliver_local(tid, event)
        finally:
            await pubsub.aclose()


class TicketEventBus:
    """Publish/subscribe channel keyed by ticket id.

    The pipeline and the dispatcher publish after a successful commit; websocket clients
    watching a ticket are the subscribers.
    """

    def __init__(self, redis_manager: RedisManager | None = None):
        self.redis_manager = redis_manager
        self.subscribers: Dict[str, Set[WebSocket]] = defaultdict(set)
        self.instance_id = f"bus-{id(self):x}"

    async def subscribe(self, websocket: WebSocket, ticket_id: str):
        await websocket.accept()
        self.subscribers[str(ticket_id)].add(websocket)
        log.info("WS subscribed ticket_id=%s subscribers=%s", ticket_id, len(self.subscribers[str(ticket_id)]))

    def unsubscribe(self, websocket: WebSocket, ticket_id: str):
        key = str(ticket_id)
        self.subscribers[key].discard(websocket)
        if not self.subscribers[key]:
            del self.subscribers[key]
        log.info("WS unsubscribed ticket_id=%s", key)

    async def deliver_local(self, ticket_id: str, event: dict):
        key = str(ticket_id)
        disconnected = set()
        for websocket in list(self.subscribers.get(key) or []):
            try:
                await websocket.send_json(event)
            except Exception:
                disconnected.add(websocket)
        for ws in disconnected:
            self.unsubscribe(ws, key)

    async def publish(self, ticket_id: str, event_type: str, data: dict) -> None:
        """Best-effort publish; delivery problems are logged and never raised."""
        event = {
            "type": event_type,
            "ticket_id": str(ticket_id),
            "data": data,
            "published_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.deliver_local(ticket_id, json.loads(json.dumps(event, default=str)))
        except Exception as exc:
            log.warning("Local ticket event delivery failed ticket_id=%s: %s", ticket_id, exc)
        try:
            if self.redis_manager:
                await self.redis_manager.publish_ticket_event(str(ticket_id), event, self.instance_id)
        except Exception as exc:
            log.warning("Redis publish failed ticket_id=%s: %s", ticket_id, exc)

    def active_tickets(self) -> List[str]:
        return list(self.subscribers.keys())
