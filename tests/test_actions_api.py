import asyncio

from helpdesk import config
from helpdesk.auth import issue_access_token
from helpdesk.errors import GatewayRejectedError, GatewayUnavailableError
from .utils import seed_connection, upsert_event

PHONE = "5511999990000"


def _headers(org_id, agent="agent-1"):
    return {"X-Organization-Id": org_id, "X-Agent-Id": agent}


def _act(client, org_id, action, **params):
    return client.post("/gateway/actions", json={"action": action, **params}, headers=_headers(org_id))


def _open_ticket(client, db_manager, org_id):
    client.post("/webhook", json=upsert_event("inst-1", PHONE, "Oi"))
    contact = asyncio.run(db_manager.get_contact_by_phone(org_id, PHONE))
    return asyncio.run(db_manager.get_active_ticket(org_id, contact["id"]))["id"]


def test_unknown_action_is_validation_error(client, org_connection):
    org_id, _ = org_connection
    r = _act(client, org_id, "explode")
    assert r.status_code == 400
    assert r.json()["code"] == "validation"


def test_missing_organization_is_rejected(client):
    r = client.post("/gateway/actions", json={"action": "list-connections"})
    assert r.status_code == 400


def test_create_instance(client, db_manager, gateway):
    org = asyncio.run(db_manager.create_organization("Acme"))
    r = _act(client, org["id"], "create-instance", displayName="Vendas")
    assert r.status_code == 200
    body = r.json()
    assert body["connection"]["display_name"] == "Vendas"
    assert body["connection"]["is_default"] is False
    assert gateway.called("create_instance")


def test_create_instance_rejected_by_gateway(client, db_manager, gateway):
    org = asyncio.run(db_manager.create_organization("Acme"))
    gateway.fail["create_instance"] = GatewayRejectedError("This name is already in use", status=403)
    r = _act(client, org["id"], "create-instance", displayName="Vendas")
    assert r.status_code == 502
    assert r.json() == {"error": "This name is already in use", "code": "gateway_rejected"}


def test_get_qrcode_missing_connection(client, org_connection):
    org_id, _ = org_connection
    r = _act(client, org_id, "get-qrcode", connectionId="nope")
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


def test_get_qrcode_requires_connection_id(client, org_connection):
    org_id, _ = org_connection
    r = _act(client, org_id, "get-qrcode")
    assert r.status_code == 400
    assert "connectionId" in r.json()["error"]


def test_get_qrcode_and_check_status(client, org_connection):
    org_id, conn = org_connection
    r = _act(client, org_id, "get-qrcode", connectionId=conn["id"])
    assert r.status_code == 200
    assert r.json()["qrCode"].startswith("data:image/png;base64,")
    r = _act(client, org_id, "check-status", connectionId=conn["id"])
    assert r.json()["status"] == "connected"


def test_connection_of_another_org_is_not_found(client, db_manager, org_connection):
    _, conn = org_connection
    other = asyncio.run(db_manager.create_organization("Other"))
    for action in ("get-qrcode", "check-status", "disconnect", "delete-instance", "set-default"):
        r = _act(client, other["id"], action, connectionId=conn["id"])
        assert r.status_code == 404, action


def test_list_set_default_and_update(client, db_manager, org_connection):
    org_id, c1 = org_connection
    _, c2 = asyncio.run(seed_connection(db_manager, organization_id=org_id, instance_name="inst-2"))
    assert _act(client, org_id, "set-default", connectionId=c2["id"]).json() == {"success": True}
    r = _act(client, org_id, "update-connection", connectionId=c1["id"], displayName="Suporte", autoCloseTickets=True)
    assert r.json()["connection"]["auto_close_tickets"] is True

    rows = _act(client, org_id, "list-connections").json()["connections"]
    by_id = {row["id"]: row for row in rows}
    assert by_id[c2["id"]]["is_default"] is True
    assert by_id[c1["id"]]["is_default"] is False
    assert by_id[c1["id"]]["display_name"] == "Suporte"


def test_restart_all_reports_each_connection(client, db_manager, gateway, org_connection):
    org_id, _ = org_connection
    asyncio.run(seed_connection(db_manager, organization_id=org_id, instance_name="inst-2"))
    gateway.fail["restart"] = GatewayUnavailableError("boom")
    gateway.fail_instances["restart"] = {"inst-2"}
    r = _act(client, org_id, "restart-all")
    assert r.status_code == 200
    assert sorted(x["success"] for x in r.json()["results"]) == [False, True]


def test_send_message_delivered(client, db_manager, gateway, org_connection):
    org_id, _ = org_connection
    ticket_id = _open_ticket(client, db_manager, org_id)
    r = _act(client, org_id, "send-message", ticketId=ticket_id, message="Olá!")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["messageId"] == "OUT1"
    assert body["message"]["sender_id"] == "agent-1"


def test_send_message_saved_but_not_delivered(client, db_manager, gateway, org_connection):
    org_id, _ = org_connection
    ticket_id = _open_ticket(client, db_manager, org_id)
    gateway.fail["send_text"] = GatewayUnavailableError("gateway down")
    body = _act(client, org_id, "send-message", ticketId=ticket_id, message="Olá!").json()
    assert body["success"] is False
    assert body["delivered"] is False
    assert body["code"] == "unavailable"
    assert body["message"]["delivery_status"] == "failed"

    gateway.fail.clear()
    retried = _act(client, org_id, "retry-delivery", messageId=body["message"]["id"]).json()
    assert retried["delivered"] is True
    assert retried["message"]["id"] == body["message"]["id"]


def test_retry_delivery_rejects_non_integer_id(client, org_connection):
    org_id, _ = org_connection
    r = _act(client, org_id, "retry-delivery", messageId="abc")
    assert r.status_code == 400


def test_disconnect_and_delete(client, db_manager, gateway, org_connection):
    org_id, conn = org_connection
    assert _act(client, org_id, "disconnect", connectionId=conn["id"]).status_code == 200
    assert asyncio.run(db_manager.get_connection(conn["id"]))["status"] == "disconnected"
    assert _act(client, org_id, "delete-instance", connectionId=conn["id"]).status_code == 200
    assert asyncio.run(db_manager.get_connection(conn["id"])) is None


def test_ticket_routes(client, db_manager, org_connection):
    org_id, _ = org_connection
    ticket_id = _open_ticket(client, db_manager, org_id)
    headers = _headers(org_id)

    r = client.post(f"/tickets/{ticket_id}/accept", headers=headers)
    assert r.status_code == 200
    assert r.json()["status"] == "in_progress"
    assert client.post(f"/tickets/{ticket_id}/close-for-now", headers=headers).json()["status"] == "waiting"
    assert client.post(f"/tickets/{ticket_id}/read", headers=headers).json()["unread_count"] == 0

    msgs = client.get(f"/tickets/{ticket_id}/messages", headers=headers).json()
    assert [m["content"] for m in msgs] == ["Oi"]
    assert msgs[0]["read"] is True

    assert client.post(f"/tickets/{ticket_id}/finish", headers=headers).json()["status"] == "closed"
    r = client.post(f"/tickets/{ticket_id}/finish", headers=headers)
    assert r.status_code == 400
    assert r.json()["code"] == "validation"


def test_ticket_routes_scoped_to_org(client, db_manager, org_connection):
    org_id, _ = org_connection
    ticket_id = _open_ticket(client, db_manager, org_id)
    r = client.post(f"/tickets/{ticket_id}/accept", headers=_headers("other-org"))
    assert r.status_code == 404


def test_create_ticket_route(client, db_manager, org_connection):
    org_id, _ = org_connection
    contact, _ = asyncio.run(db_manager.upsert_contact(org_id, PHONE, "Maria"))
    r = client.post("/tickets", json={"contactId": contact["id"]}, headers=_headers(org_id))
    assert r.status_code == 200
    assert r.json()["created"] is True
    again = client.post("/tickets", json={"contactId": contact["id"]}, headers=_headers(org_id)).json()
    assert again["created"] is False
    assert again["ticket"]["id"] == r.json()["ticket"]["id"]
    assert client.post("/tickets", json={}, headers=_headers(org_id)).status_code == 400


def test_bearer_token_required_when_auth_enabled(client, org_connection, monkeypatch):
    org_id, _ = org_connection
    monkeypatch.setattr(config, "DISABLE_AUTH", False)
    monkeypatch.setattr(config, "AGENT_AUTH_SECRET", "test-secret")

    r = client.post("/gateway/actions", json={"action": "list-connections"})
    assert r.status_code == 401

    token = issue_access_token("agent-9", org_id)
    r = client.post(
        "/gateway/actions",
        json={"action": "list-connections"},
        headers={"Authorization": f"Bearer {token}", "X-Organization-Id": "ignored-when-auth-on"},
    )
    assert r.status_code == 200
    assert len(r.json()["connections"]) == 1


def test_expired_token_is_rejected(client, org_connection, monkeypatch):
    org_id, _ = org_connection
    monkeypatch.setattr(config, "DISABLE_AUTH", False)
    monkeypatch.setattr(config, "AGENT_AUTH_SECRET", "test-secret")
    token = issue_access_token("agent-9", org_id, ttl_seconds=-10)
    r = client.post("/gateway/actions", json={"action": "list-connections"}, headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401


def test_response_carries_request_id(client):
    r = client.get("/health", headers={"X-Request-Id": "req-123"})
    assert r.headers["X-Request-Id"] == "req-123"
