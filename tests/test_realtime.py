import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from helpdesk.realtime import RedisManager, TicketEventBus
from .utils import upsert_event

PHONE = "5511999990000"


class FakeWebSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


def test_publish_reaches_only_that_tickets_subscribers():
    bus = TicketEventBus(RedisManager(redis_url=""))
    a, b = FakeWebSocket(), FakeWebSocket()

    async def scenario():
        await bus.subscribe(a, "t-1")
        await bus.subscribe(b, "t-2")
        await bus.publish("t-1", "message.created", {"id": 1, "content": "oi"})

    asyncio.run(scenario())
    assert a.accepted
    assert [e["type"] for e in a.sent] == ["message.created"]
    assert a.sent[0]["ticket_id"] == "t-1"
    assert a.sent[0]["data"]["content"] == "oi"
    assert b.sent == []


def test_broken_socket_is_dropped_and_publish_never_raises():
    bus = TicketEventBus(RedisManager(redis_url=""))
    good, bad = FakeWebSocket(), FakeWebSocket(fail=True)

    async def scenario():
        await bus.subscribe(good, "t-1")
        await bus.subscribe(bad, "t-1")
        await bus.publish("t-1", "ticket.updated", {"status": "waiting"})

    asyncio.run(scenario())
    assert len(good.sent) == 1
    assert bus.subscribers["t-1"] == {good}


def test_unsubscribe_last_socket_forgets_ticket():
    bus = TicketEventBus()
    ws = FakeWebSocket()
    asyncio.run(bus.subscribe(ws, "t-1"))
    bus.unsubscribe(ws, "t-1")
    assert bus.active_tickets() == []


def _ticket(client, org_connection):
    org_id, _ = org_connection
    client.post("/webhook", json=upsert_event("inst-1", PHONE, "primeira"))
    dm = client.app.state.services.db_manager
    contact = asyncio.run(dm.get_contact_by_phone(org_id, PHONE))
    return org_id, asyncio.run(dm.get_active_ticket(org_id, contact["id"]))


def test_ws_sends_recent_messages_then_live_events(client, org_connection):
    org_id, ticket = _ticket(client, org_connection)
    with client.websocket_connect(f"/ws/tickets/{ticket['id']}?organization={org_id}&agent=a-1") as ws:
        first = ws.receive_json()
        assert first["type"] == "recent_messages"
        assert [m["content"] for m in first["data"]] == ["primeira"]

        client.post("/webhook", json=upsert_event("inst-1", PHONE, "segunda"))
        live = ws.receive_json()
        assert live["type"] == "message.created"
        assert live["data"]["content"] == "segunda"

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_ws_rejects_ticket_of_another_org(client, org_connection):
    _, ticket = _ticket(client, org_connection)
    with pytest.raises(WebSocketDisconnect) as info:
        with client.websocket_connect(f"/ws/tickets/{ticket['id']}?organization=other-org"):
            pass
    assert info.value.code == 4404


def test_ws_rejects_unknown_ticket(client, org_connection):
    org_id, _ = org_connection
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/tickets/does-not-exist?organization={org_id}"):
            pass


def test_ws_requires_token_when_auth_enabled(client, org_connection, monkeypatch):
    from helpdesk import config

    monkeypatch.setattr(config, "DISABLE_AUTH", False)
    _, ticket = _ticket(client, org_connection)
    with pytest.raises(WebSocketDisconnect) as info:
        with client.websocket_connect(f"/ws/tickets/{ticket['id']}?token=garbage"):
            pass
    assert info.value.code == 4401


def test_ws_accepts_valid_token(client, org_connection, monkeypatch):
    from helpdesk import config
    from helpdesk.auth import issue_access_token

    monkeypatch.setattr(config, "DISABLE_AUTH", False)
    monkeypatch.setattr(config, "AGENT_AUTH_SECRET", "test-secret")
    org_id, ticket = _ticket(client, org_connection)
    token = issue_access_token("a-1", org_id)
    with client.websocket_connect(f"/ws/tickets/{ticket['id']}?token={token}") as ws:
        assert ws.receive_json()["type"] == "recent_messages"
