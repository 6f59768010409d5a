import asyncio
import os
import tempfile

import pytest

# Tests focus on business logic, not authentication; keep auth disabled here.
os.environ.setdefault("DISABLE_AUTH", "1")
# Ensure tests always use SQLite (some environments may export DATABASE_URL).
os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("REQUIRE_POSTGRES", "0")
os.environ.pop("REDIS_URL", None)
os.environ.pop("WEBHOOK_SECRET", None)
os.environ.pop("JWT_ISSUER", None)
os.environ.pop("JWT_AUDIENCE", None)
os.environ.setdefault("AUTO_CLOSE_ENABLED", "0")
os.environ.setdefault("DB_PATH", os.path.join(tempfile.gettempdir(), "helpdesk-import.sqlite"))

from helpdesk.db import DatabaseManager
from helpdesk.realtime import RedisManager
from helpdesk.services import build_services
from .utils import FakeGateway, seed_connection


@pytest.fixture
def db_manager(tmp_path):
    db_path = tmp_path / "db.sqlite"
    dm = DatabaseManager(str(db_path), db_url="")
    asyncio.run(dm.init_db())
    return dm


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def services(db_manager, gateway):
    return build_services(db_manager, gateway, RedisManager(redis_url=""), webhook_url="", webhook_secret="")


@pytest.fixture
def org_connection(db_manager):
    """(organization_id, connection) for instance ``inst-1``."""
    return asyncio.run(seed_connection(db_manager))


@pytest.fixture
def app(db_manager, gateway):
    from helpdesk.main import create_app

    return create_app(db_manager, gateway, RedisManager(redis_url=""), webhook_secret="", background_tasks=False)


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as c:
        yield c
