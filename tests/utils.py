import itertools
from typing import Any, Dict, List, Optional

from helpdesk.db import DatabaseManager


class FakeGateway:
    """Recording stand-in for EvolutionClient.

    ``fail`` maps a method name to the exception it should raise; ``fail_instances``
    limits that failure to specific instance names.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail: Dict[str, Exception] = {}
        self.fail_instances: Dict[str, set] = {}
        self.states: List[str] = ["open"]
        self.owner_jid = "5511988887777:3@s.whatsapp.net"
        self.connect_response: Dict[str, Any] = {"qrcode": {"base64": "data:image/png;base64,QUJD"}, "instance": {"instanceName": "x"}}
        self._ids = itertools.count(1)

    def _record(self, name: str, instance: str, *args):
        self.calls.append((name, instance) + args)
        exc = self.fail.get(name)
        if exc is not None:
            only = self.fail_instances.get(name)
            if not only or instance in only:
                raise exc

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def create_instance(self, instance_name, *, webhook_url=None, webhook_headers=None):
        self._record("create_instance", instance_name, webhook_url, webhook_headers)
        return {"instance": {"instanceName": instance_name, "status": "created"}, "hash": {"apikey": "inst-key"}}

    async def connect(self, instance_name):
        self._record("connect", instance_name)
        return dict(self.connect_response)

    async def connection_state(self, instance_name):
        self._record("connection_state", instance_name)
        state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        return {"instance": {"instanceName": instance_name, "state": state}}

    async def fetch_instance(self, instance_name):
        self._record("fetch_instance", instance_name)
        return {"instance": {"instanceName": instance_name, "owner": self.owner_jid}}

    async def owner_phone(self, instance_name):
        self._record("owner_phone", instance_name)
        return self.owner_jid.split("@", 1)[0].split(":", 1)[0]

    async def logout(self, instance_name):
        self._record("logout", instance_name)
        return {"status": "SUCCESS"}

    async def delete_instance(self, instance_name):
        self._record("delete_instance", instance_name)
        return {"status": "SUCCESS"}

    async def restart(self, instance_name):
        self._record("restart", instance_name)
        return {"instance": {"instanceName": instance_name, "state": "connecting"}}

    async def send_text(self, instance_name, number, text):
        self._record("send_text", instance_name, number, text)
        return {"key": {"id": f"OUT{next(self._ids)}", "fromMe": True}}

    async def send_media(self, instance_name, number, mediatype, media, caption=""):
        self._record("send_media", instance_name, number, mediatype, media, caption)
        return {"key": {"id": f"OUT{next(self._ids)}", "fromMe": True}}

    async def send_audio(self, instance_name, number, audio):
        self._record("send_audio", instance_name, number, audio)
        return {"key": {"id": f"OUT{next(self._ids)}", "fromMe": True}}


async def seed_connection(
    dm: DatabaseManager,
    *,
    org_name: str = "Org X",
    organization_id: Optional[str] = None,
    instance_name: str = "inst-1",
    **fields,
):
    """Create an organization (unless given) and one connection bound to it."""
    if organization_id is None:
        org = await dm.create_organization(org_name)
        organization_id = org["id"]
    conn = await dm.insert_connection(
        {
            "organization_id": organization_id,
            "instance_name": instance_name,
            "display_name": fields.pop("display_name", instance_name),
            "status": fields.pop("status", "connected"),
            **fields,
        }
    )
    return organization_id, conn


_msg_ids = itertools.count(1)


def upsert_event(
    instance: str,
    phone: str,
    text: Optional[str] = "Oi",
    *,
    msg_id: Optional[str] = None,
    from_me: bool = False,
    push_name: Optional[str] = "Maria",
    message: Optional[dict] = None,
    jid_suffix: str = "@s.whatsapp.net",
) -> dict:
    """A messages.upsert envelope shaped like the gateway sends it."""
    body = message if message is not None else {"conversation": text}
    data = {
        "key": {
            "remoteJid": f"{phone}{jid_suffix}" if phone else None,
            "fromMe": from_me,
            "id": msg_id or f"WAMID{next(_msg_ids):06d}",
        },
        "message": body,
        "messageTimestamp": 1700000000,
    }
    if push_name is not None:
        data["pushName"] = push_name
    return {"event": "messages.upsert", "instance": instance, "data": data}


def connection_event(instance: str, state: str) -> dict:
    return {"event": "connection.update", "instance": instance, "data": {"instance": instance, "state": state}}


def qrcode_event(instance: str, base64_png: str) -> dict:
    return {"event": "qrcode.updated", "instance": instance, "data": {"qrcode": {"base64": base64_png}}}
