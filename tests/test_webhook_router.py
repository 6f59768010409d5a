import asyncio

from fastapi.testclient import TestClient

from helpdesk.errors import StoreUnavailableError
from helpdesk.main import create_app
from helpdesk.realtime import RedisManager
from helpdesk.webhook.signature import compute_body_signature
from .utils import connection_event, upsert_event


def test_message_upsert_is_acknowledged(client, db_manager, org_connection):
    r = client.post("/webhook", json=upsert_event("inst-1", "5511999990000", "Oi"))
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert asyncio.run(db_manager.count_rows("messages")) == 1


def test_ignored_events_still_get_200(client, org_connection):
    r = client.post("/webhook", json={"event": "presence.update", "instance": "inst-1", "data": {}})
    assert r.status_code == 200
    r = client.post("/webhook", json=upsert_event("inst-1", "120363000000@g.us", jid_suffix=""))
    assert r.status_code == 200
    r = client.post("/webhook", json=upsert_event("ghost", "5511999990000"))
    assert r.status_code == 200


def test_connection_update_is_acknowledged(client, db_manager, org_connection):
    _, conn = org_connection
    r = client.post("/webhook", json=connection_event("inst-1", "close"))
    assert r.status_code == 200
    assert asyncio.run(db_manager.get_connection(conn["id"]))["status"] == "disconnected"


def test_invalid_json_is_400(client):
    r = client.post("/webhook", content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400


def test_non_object_body_is_acknowledged_and_dropped(client, app, db_manager):
    for body in ([1, 2, 3], "hello"):
        r = client.post("/webhook", json=body)
        assert r.status_code == 200
        assert r.json() == {"success": True}
    assert app.state.webhook_runtime.state.failed == 0
    assert asyncio.run(db_manager.count_rows("messages")) == 0


def test_missing_event_is_acknowledged_and_dropped(client, db_manager, org_connection):
    r = client.post("/webhook", json={"instance": "inst-1", "data": {}})
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert asyncio.run(db_manager.count_rows("messages")) == 0


def test_transient_failure_is_503(client, app, monkeypatch):
    async def boom(envelope):
        raise StoreUnavailableError("database is locked")

    monkeypatch.setattr(app.state.services.processor, "handle", boom)
    r = client.post("/webhook", json=upsert_event("inst-1", "5511999990000"))
    assert r.status_code == 503
    assert app.state.webhook_runtime.state.failed == 1


def test_unexpected_failure_is_400(client, app, monkeypatch):
    async def boom(envelope):
        raise KeyError("data")

    monkeypatch.setattr(app.state.services.processor, "handle", boom)
    r = client.post("/webhook", json=upsert_event("inst-1", "5511999990000"))
    assert r.status_code == 400


def test_processing_timeout_is_503(client, app, monkeypatch):
    async def slow(envelope):
        await asyncio.sleep(2)

    monkeypatch.setattr(app.state.services.processor, "handle", slow)
    app.state.webhook_runtime.processing_timeout_seconds = 0.2
    r = client.post("/webhook", json=upsert_event("inst-1", "5511999990000"))
    assert r.status_code == 503


def test_health_reports_webhook_counters(client, org_connection):
    client.post("/webhook", json=upsert_event("inst-1", "5511999990000"))
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["db_backend"] == "sqlite"
    assert body["webhook"]["processed"] == 1


def _secured_client(db_manager, gateway):
    app = create_app(db_manager, gateway, RedisManager(redis_url=""), webhook_secret="s3cr3t", background_tasks=False)
    return TestClient(app)


def test_secret_is_required_when_configured(db_manager, gateway, org_connection):
    with _secured_client(db_manager, gateway) as client:
        event = upsert_event("inst-1", "5511999990000")
        assert client.post("/webhook", json=event).status_code == 401
        assert client.post("/webhook", json=event, headers={"X-Webhook-Secret": "nope"}).status_code == 401
        assert client.post("/webhook", json=event, headers={"X-Webhook-Secret": "s3cr3t"}).status_code == 200
    assert asyncio.run(db_manager.count_rows("messages")) == 1


def test_secret_accepted_from_apikey_header(db_manager, gateway, org_connection):
    with _secured_client(db_manager, gateway) as client:
        r = client.post("/webhook", json=upsert_event("inst-1", "5511999990000"), headers={"apikey": "s3cr3t"})
        assert r.status_code == 200


def test_body_signature_is_accepted(db_manager, gateway, org_connection):
    body = b'{"event": "presence.update", "instance": "inst-1", "data": {}}'
    sig = compute_body_signature("s3cr3t", body)
    with _secured_client(db_manager, gateway) as client:
        r = client.post(
            "/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": f"sha256={sig}"},
        )
        assert r.status_code == 200
