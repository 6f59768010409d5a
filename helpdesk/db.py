from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import aiosqlite
import asyncpg

from . import config
from .errors import StoreUnavailableError

log = logging.getLogger(__name__)

# Ticket statuses
TICKET_OPEN = "open"
TICKET_IN_PROGRESS = "in_progress"
TICKET_WAITING = "waiting"
TICKET_CLOSED = "closed"
ACTIVE_TICKET_STATUSES = (TICKET_OPEN, TICKET_IN_PROGRESS, TICKET_WAITING)

# Connection statuses
CONN_CONNECTING = "connecting"
CONN_QR_CODE = "qr_code"
CONN_CONNECTED = "connected"
CONN_DISCONNECTED = "disconnected"

# Message sender types
SENDER_CONTACT = "contact"
SENDER_USER = "user"
SENDER_BOT = "bot"

# Outbound delivery states (inbound rows stay NULL)
DELIVERY_PENDING = "pending"
DELIVERY_SENT = "sent"
DELIVERY_FAILED = "failed"


def utcnow_iso() -> str:
    """Millisecond ISO-8601 UTC timestamp; same shape the schema defaults produce."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def new_id() -> str:
    return str(uuid.uuid4())


# SQLite default for store-assigned timestamps; rewritten for Postgres in init_db().
_SQLITE_NOW = "(strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))"
_PG_NOW = "(to_char(NOW() AT TIME ZONE 'UTC', 'YYYY-MM-DD\"T\"HH24:MI:SS.MS\"Z\"'))"

_SCHEMA = f"""
    CREATE TABLE IF NOT EXISTS organizations (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        created_at  TEXT NOT NULL DEFAULT {_SQLITE_NOW}
    );

    CREATE TABLE IF NOT EXISTS whatsapp_connections (
        id                 TEXT PRIMARY KEY,
        organization_id    TEXT NOT NULL REFERENCES organizations(id),
        instance_name      TEXT NOT NULL UNIQUE,
        display_name       TEXT NOT NULL,
        phone_number       TEXT,
        status             TEXT NOT NULL DEFAULT 'connecting',  -- connecting|qr_code|connected|disconnected
        is_default         INTEGER NOT NULL DEFAULT 0,          -- bool 0/1
        auto_close_tickets INTEGER NOT NULL DEFAULT 0,          -- bool 0/1
        qr_code            TEXT,
        last_connected_at  TEXT,
        created_at         TEXT NOT NULL DEFAULT {_SQLITE_NOW},
        updated_at         TEXT NOT NULL DEFAULT {_SQLITE_NOW}
    );
    CREATE INDEX IF NOT EXISTS idx_connections_org
        ON whatsapp_connections (organization_id);

    CREATE TABLE IF NOT EXISTS contacts (
        id               TEXT PRIMARY KEY,
        organization_id  TEXT NOT NULL REFERENCES organizations(id),
        phone            TEXT NOT NULL,
        name             TEXT NOT NULL,
        email            TEXT,
        document         TEXT,
        city             TEXT,
        state            TEXT,
        notes            TEXT,
        created_at       TEXT NOT NULL DEFAULT {_SQLITE_NOW},
        updated_at       TEXT NOT NULL DEFAULT {_SQLITE_NOW}
    );
    -- natural key the pipeline resolves on
    CREATE UNIQUE INDEX IF NOT EXISTS uniq_contacts_org_phone
        ON contacts (organization_id, phone);

    CREATE TABLE IF NOT EXISTS tickets (
        id                      TEXT PRIMARY KEY,
        organization_id         TEXT NOT NULL REFERENCES organizations(id),
        contact_id              TEXT NOT NULL REFERENCES contacts(id),
        whatsapp_connection_id  TEXT REFERENCES whatsapp_connections(id) ON DELETE SET NULL,
        title                   TEXT NOT NULL,
        status                  TEXT NOT NULL DEFAULT 'open',  -- open|in_progress|waiting|closed
        assigned_to             TEXT,
        column_id               TEXT,
        position                INTEGER NOT NULL DEFAULT 0,
        unread_count            INTEGER NOT NULL DEFAULT 0,
        last_message_at         TEXT,
        closed_at               TEXT,
        created_at              TEXT NOT NULL DEFAULT {_SQLITE_NOW},
        updated_at              TEXT NOT NULL DEFAULT {_SQLITE_NOW}
    );
    -- at most one active ticket per (organization, contact)
    CREATE UNIQUE INDEX IF NOT EXISTS uniq_tickets_active_contact
        ON tickets (organization_id, contact_id)
        WHERE status IN ('open', 'in_progress', 'waiting');
    CREATE INDEX IF NOT EXISTS idx_tickets_org_status
        ON tickets (organization_id, status);

    CREATE TABLE IF NOT EXISTS messages (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        ticket_id        TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        sender_type      TEXT NOT NULL,                -- contact|user|bot
        sender_id        TEXT,
        content          TEXT,
        media_url        TEXT,
        media_type       TEXT,
        external_id      TEXT,                         -- gateway message id (idempotency key)
        delivery_status  TEXT,                         -- pending|sent|failed for outbound rows
        client_message_id TEXT,
        read             INTEGER NOT NULL DEFAULT 0,
        created_at       TEXT NOT NULL DEFAULT {_SQLITE_NOW}
    );
    CREATE INDEX IF NOT EXISTS idx_messages_ticket_created
        ON messages (ticket_id, created_at, id);
    CREATE UNIQUE INDEX IF NOT EXISTS uniq_messages_ticket_external
        ON messages (ticket_id, external_id)
        WHERE external_id IS NOT NULL;
    CREATE UNIQUE INDEX IF NOT EXISTS uniq_messages_ticket_client
        ON messages (ticket_id, client_message_id)
        WHERE client_message_id IS NOT NULL
"""

_SQLITE_TRIGGER = """
    CREATE TRIGGER IF NOT EXISTS trg_messages_ticket_activity
    AFTER INSERT ON messages
    BEGIN
        UPDATE tickets
        SET last_message_at = NEW.created_at,
            unread_count = unread_count + (CASE WHEN NEW.sender_type = 'contact' THEN 1 ELSE 0 END),
            updated_at = NEW.created_at
        WHERE id = NEW.ticket_id;
    END;
"""

_PG_TRIGGER_FUNCTION = """
    CREATE OR REPLACE FUNCTION trg_messages_ticket_activity() RETURNS trigger AS $$
    BEGIN
        UPDATE tickets
        SET last_message_at = NEW.created_at,
            unread_count = unread_count + (CASE WHEN NEW.sender_type = 'contact' THEN 1 ELSE 0 END),
            updated_at = NEW.created_at
        WHERE id = NEW.ticket_id;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
"""

_PG_TRIGGER = """
    CREATE TRIGGER trg_messages_ticket_activity
    AFTER INSERT ON messages
    FOR EACH ROW EXECUTE FUNCTION trg_messages_ticket_activity()
"""


def _strip_dash_comments(sql: str) -> str:
    """Remove SQL line comments (`-- ...`) so the script can be split on ';'."""
    out_lines: list[str] = []
    for line in (sql or "").splitlines():
        if "--" in line:
            line = line.split("--", 1)[0]
        if line.strip():
            out_lines.append(line)
    return "\n".join(out_lines).strip()


def _db_url_summary(url: str) -> str:
    # Avoid leaking credentials in logs. Only log basic routing info.
    try:
        p = urlparse(url)
        dbname = (p.path or "").lstrip("/") or None
        return f"{p.scheme}://{p.username or '?'}@{p.hostname or '?'}:{p.port or '?'}{('/' + dbname) if dbname else ''}"
    except Exception:
        return "unparseable"


class DatabaseManager:
    """Database helper supporting SQLite and optional PostgreSQL."""

    connection_columns = {"display_name", "phone_number", "status", "is_default", "auto_close_tickets", "qr_code", "last_connected_at"}

    def __init__(self, db_path: str | None = None, db_url: str | None = None):
        # Normalize DB URL. Some platforms provide SQLAlchemy-style URLs which asyncpg does NOT accept.
        raw_url = (db_url if db_url is not None else (config.DATABASE_URL or "")).strip() or None
        if raw_url:
            for prefix in ("postgresql+asyncpg://", "postgres+asyncpg://", "postgresql+psycopg://", "postgresql+psycopg2://"):
                if raw_url.startswith(prefix):
                    raw_url = raw_url.replace(prefix, "postgresql://", 1)
            if (urlparse(raw_url).scheme or "").lower() not in ("postgresql", "postgres"):
                raw_url = None

        self.db_url = raw_url
        self.db_path = db_path or config.DB_PATH
        self.use_postgres = bool(self.db_url)
        if not self.use_postgres:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._pool: Optional[asyncpg.pool.Pool] = None
        # Pool creation can be slow/fail on cold start. Protect with a lock and back off
        # so every webhook call doesn't stampede the DB.
        self._pool_lock = asyncio.Lock()
        self._pool_failed_until: float = 0.0
        self._pool_last_error: Optional[BaseException] = None

    async def _get_pool(self):
        if self._pool:
            return self._pool
        if not self.db_url:
            return None

        now = time.time()
        if self._pool_failed_until and now < self._pool_failed_until:
            remaining = max(0.0, self._pool_failed_until - now)
            last = type(self._pool_last_error).__name__ if self._pool_last_error else "unknown"
            raise StoreUnavailableError(f"Postgres pool unavailable (retry in ~{remaining:.0f}s; last_error={last})")

        async with self._pool_lock:
            if self._pool:
                return self._pool
            try:
                self._pool = await asyncpg.create_pool(
                    self.db_url,
                    min_size=config.PG_POOL_MIN,
                    max_size=config.PG_POOL_MAX,
                    timeout=float(config.PG_CONNECT_TIMEOUT_SECONDS),
                    # PgBouncer in transaction pooling mode and prepared statements don't mix
                    statement_cache_size=0,
                    max_inactive_connection_lifetime=60.0,
                )
                self._pool_last_error = None
                self._pool_failed_until = 0.0
            except Exception as exc:
                self._pool_last_error = exc
                self._pool_failed_until = time.time() + float(config.PG_POOL_RETRY_BACKOFF_SECONDS)
                log.error(
                    "Postgres pool creation failed (will back off %ss). db=%s err=%s",
                    float(config.PG_POOL_RETRY_BACKOFF_SECONDS),
                    _db_url_summary(self.db_url or ""),
                    exc,
                )
                if config.REQUIRE_POSTGRES:
                    raise StoreUnavailableError(f"Postgres unavailable: {exc}") from exc
                log.warning("Falling back to SQLite at %s", self.db_path)
                self.use_postgres = False
                self._pool = None
        return self._pool

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    def _convert(self, query: str) -> str:
        """Convert SQLite style placeholders to asyncpg numbered ones."""
        if not self.use_postgres:
            return query

        idx = 1

        def repl(match):
            nonlocal idx
            rep = f"${idx}"
            idx += 1
            return rep

        # Only "?" is a placeholder; time literals like "00:00" must survive untouched.
        return re.sub(r"\?", repl, query)

    # ── basic connection helper ──
    @asynccontextmanager
    async def _conn(self):
        if self.use_postgres:
            pool = await self._get_pool()
            if pool:
                try:
                    conn_cm = pool.acquire()
                    conn = await conn_cm.__aenter__()
                except (OSError, asyncio.TimeoutError, asyncpg.exceptions.PostgresConnectionError) as exc:
                    raise StoreUnavailableError(f"Postgres connection unavailable: {exc}") from exc
                try:
                    yield conn
                finally:
                    await conn_cm.__aexit__(None, None, None)
                return
        timeout_s = max(0.1, float(config.SQLITE_BUSY_TIMEOUT_MS) / 1000.0)
        try:
            db = await aiosqlite.connect(self.db_path, timeout=timeout_s)
        except OSError as exc:
            raise StoreUnavailableError(f"SQLite database unavailable: {exc}") from exc
        try:
            db.row_factory = aiosqlite.Row
            await db.execute(f"PRAGMA busy_timeout = {int(config.SQLITE_BUSY_TIMEOUT_MS)}")
            await db.execute("PRAGMA foreign_keys = ON")
            yield db
        finally:
            await db.close()

    # ── tiny query helpers hiding the driver differences ──
    async def _fetchrow(self, db, query: str, *params) -> Optional[dict]:
        query = self._convert(query)
        if self.use_postgres:
            row = await db.fetchrow(query, *params)
        else:
            cur = await db.execute(query, tuple(params))
            row = await cur.fetchone()
        return dict(row) if row else None

    async def _fetch(self, db, query: str, *params) -> List[dict]:
        query = self._convert(query)
        if self.use_postgres:
            rows = await db.fetch(query, *params)
        else:
            cur = await db.execute(query, tuple(params))
            rows = await cur.fetchall()
        return [dict(r) for r in rows or []]

    async def _execute(self, db, query: str, *params) -> int:
        """Run a write and commit (SQLite). Returns affected row count."""
        query = self._convert(query)
        if self.use_postgres:
            status = await db.execute(query, *params)
            try:
                return int(str(status).rsplit(" ", 1)[-1])
            except ValueError:
                return 0
        cur = await db.execute(query, tuple(params))
        await db.commit()
        return cur.rowcount

    async def ping(self) -> bool:
        """Lightweight DB connectivity check (used by /health)."""
        try:
            async with self._conn() as db:
                row = await self._fetchrow(db, "SELECT 1 AS ok")
                return bool(row and row["ok"])
        except Exception:
            return False

    # ── schema ──
    async def init_db(self):
        async with self._conn() as db:
            if self.use_postgres:
                script = _SCHEMA.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
                script = script.replace(_SQLITE_NOW, _PG_NOW)
                statements = [s.strip() for s in _strip_dash_comments(script).split(";") if s and s.strip()]
                for stmt in statements:
                    await db.execute(stmt)
                await db.execute(_PG_TRIGGER_FUNCTION)
                await db.execute("DROP TRIGGER IF EXISTS trg_messages_ticket_activity ON messages")
                await db.execute(_PG_TRIGGER)
            else:
                await db.executescript(_SCHEMA + ";\n" + _SQLITE_TRIGGER)
                await db.commit()

    # ── organizations ──
    async def create_organization(self, name: str, organization_id: str | None = None) -> dict:
        org_id = organization_id or new_id()
        async with self._conn() as db:
            await self._execute(db, "INSERT INTO organizations (id, name) VALUES (?, ?)", org_id, name)
            return await self._fetchrow(db, "SELECT * FROM organizations WHERE id = ?", org_id)

    async def get_organization(self, organization_id: str) -> Optional[dict]:
        async with self._conn() as db:
            return await self._fetchrow(db, "SELECT * FROM organizations WHERE id = ?", organization_id)

    # ── whatsapp connections ──
    async def insert_connection(self, data: dict) -> dict:
        row = {"id": new_id(), **data}
        cols = ", ".join(row.keys())
        qs = ", ".join("?" for _ in row)
        async with self._conn() as db:
            await self._execute(db, f"INSERT INTO whatsapp_connections ({cols}) VALUES ({qs})", *row.values())
            return await self._fetchrow(db, "SELECT * FROM whatsapp_connections WHERE id = ?", row["id"])

    async def get_connection(self, connection_id: str) -> Optional[dict]:
        async with self._conn() as db:
            return await self._fetchrow(db, "SELECT * FROM whatsapp_connections WHERE id = ?", connection_id)

    async def get_connection_by_instance(self, instance_name: str) -> Optional[dict]:
        async with self._conn() as db:
            return await self._fetchrow(db, "SELECT * FROM whatsapp_connections WHERE instance_name = ?", instance_name)

    async def list_connections(self, organization_id: str) -> List[dict]:
        async with self._conn() as db:
            return await self._fetch(
                db,
                "SELECT * FROM whatsapp_connections WHERE organization_id = ? ORDER BY created_at DESC",
                organization_id,
            )

    async def get_default_connection(self, organization_id: str) -> Optional[dict]:
        async with self._conn() as db:
            return await self._fetchrow(
                db,
                "SELECT * FROM whatsapp_connections WHERE organization_id = ? AND is_default = 1 ORDER BY created_at LIMIT 1",
                organization_id,
            )

    async def update_connection(self, *, connection_id: str | None = None, instance_name: str | None = None, **fields) -> int:
        """Update the given columns on one connection, found by id or instance name."""
        data = {k: v for k, v in fields.items() if k in self.connection_columns}
        if not data:
            return 0
        data["updated_at"] = utcnow_iso()
        sets = ", ".join(f"{c} = ?" for c in data)
        if connection_id:
            where, key = "id = ?", connection_id
        elif instance_name:
            where, key = "instance_name = ?", instance_name
        else:
            raise ValueError("connection_id or instance_name is required")
        async with self._conn() as db:
            return await self._execute(db, f"UPDATE whatsapp_connections SET {sets} WHERE {where}", *data.values(), key)

    async def delete_connection(self, connection_id: str) -> int:
        async with self._conn() as db:
            return await self._execute(db, "DELETE FROM whatsapp_connections WHERE id = ?", connection_id)

    async def set_default_connection(self, organization_id: str, connection_id: str) -> int:
        """Make one connection the organization's default in a single statement.

        Clearing the others and setting the target happen in the same UPDATE, so concurrent
        callers can never leave zero or two defaults behind; the last writer wins.
        """
        async with self._conn() as db:
            return await self._execute(
                db,
                """
                UPDATE whatsapp_connections
                SET is_default = CASE WHEN id = ? THEN 1 ELSE 0 END,
                    updated_at = ?
                WHERE organization_id = ?
                  AND EXISTS (SELECT 1 FROM whatsapp_connections t WHERE t.id = ? AND t.organization_id = ?)
                """,
                connection_id,
                utcnow_iso(),
                organization_id,
                connection_id,
                organization_id,
            )

    # ── contacts ──
    async def get_contact(self, contact_id: str) -> Optional[dict]:
        async with self._conn() as db:
            return await self._fetchrow(db, "SELECT * FROM contacts WHERE id = ?", contact_id)

    async def get_contact_by_phone(self, organization_id: str, phone: str) -> Optional[dict]:
        async with self._conn() as db:
            return await self._fetchrow(
                db, "SELECT * FROM contacts WHERE organization_id = ? AND phone = ?", organization_id, phone
            )

    async def upsert_contact(self, organization_id: str, phone: str, name: str) -> tuple[dict, bool]:
        """Insert the contact unless (organization_id, phone) exists; return (row, created)."""
        contact_id = new_id()
        async with self._conn() as db:
            await self._execute(
                db,
                """
                INSERT INTO contacts (id, organization_id, phone, name)
                VALUES (?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                contact_id,
                organization_id,
                phone,
                name,
            )
            row = await self._fetchrow(
                db, "SELECT * FROM contacts WHERE organization_id = ? AND phone = ?", organization_id, phone
            )
        return row, bool(row and row["id"] == contact_id)

    # ── tickets ──
    async def get_ticket(self, ticket_id: str) -> Optional[dict]:
        async with self._conn() as db:
            return await self._fetchrow(db, "SELECT * FROM tickets WHERE id = ?", ticket_id)

    async def get_active_ticket(self, organization_id: str, contact_id: str) -> Optional[dict]:
        async with self._conn() as db:
            return await self._fetchrow(
                db,
                """
                SELECT * FROM tickets
                WHERE organization_id = ? AND contact_id = ?
                  AND status IN ('open', 'in_progress', 'waiting')
                ORDER BY created_at DESC
                LIMIT 1
                """,
                organization_id,
                contact_id,
            )

    async def insert_ticket_if_no_active(
        self,
        organization_id: str,
        contact_id: str,
        *,
        title: str,
        whatsapp_connection_id: str | None = None,
    ) -> tuple[Optional[dict], bool]:
        """Create an open ticket unless the contact already has an active one.

        Returns (active_ticket, created). The partial unique index decides the race;
        the loser's insert is a no-op and it reads back the winner's row.
        """
        ticket_id = new_id()
        async with self._conn() as db:
            await self._execute(
                db,
                """
                INSERT INTO tickets (id, organization_id, contact_id, whatsapp_connection_id, title, status)
                VALUES (?, ?, ?, ?, ?, 'open')
                ON CONFLICT DO NOTHING
                """,
                ticket_id,
                organization_id,
                contact_id,
                whatsapp_connection_id,
                title,
            )
            row = await self._fetchrow(
                db,
                """
                SELECT * FROM tickets
                WHERE organization_id = ? AND contact_id = ?
                  AND status IN ('open', 'in_progress', 'waiting')
                ORDER BY created_at DESC
                LIMIT 1
                """,
                organization_id,
                contact_id,
            )
        return row, bool(row and row["id"] == ticket_id)

    async def update_ticket_status(
        self,
        ticket_id: str,
        *,
        from_statuses: tuple[str, ...],
        status: str,
        assigned_to: str | None = None,
        closed_at: str | None = None,
    ) -> int:
        """Compare-and-set the status; returns 0 when the ticket moved on meanwhile."""
        sets = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status, utcnow_iso()]
        if assigned_to is not None:
            sets.append("assigned_to = ?")
            params.append(assigned_to)
        if closed_at is not None:
            sets.append("closed_at = ?")
            params.append(closed_at)
        qs = ", ".join("?" for _ in from_statuses)
        async with self._conn() as db:
            return await self._execute(
                db,
                f"UPDATE tickets SET {', '.join(sets)} WHERE id = ? AND status IN ({qs})",
                *params,
                ticket_id,
                *from_statuses,
            )

    async def list_idle_auto_close_tickets(self, cutoff_iso: str) -> List[dict]:
        """Active tickets on auto-close connections with no activity since ``cutoff_iso``."""
        async with self._conn() as db:
            return await self._fetch(
                db,
                """
                SELECT t.* FROM tickets t
                JOIN whatsapp_connections c ON c.id = t.whatsapp_connection_id
                WHERE c.auto_close_tickets = 1
                  AND t.status IN ('open', 'in_progress', 'waiting')
                  AND COALESCE(t.last_message_at, t.created_at) < ?
                ORDER BY t.created_at
                """,
                cutoff_iso,
            )

    async def reset_unread(self, ticket_id: str) -> None:
        async with self._conn() as db:
            await self._execute(db, "UPDATE messages SET read = 1 WHERE ticket_id = ? AND read = 0", ticket_id)
            await self._execute(db, "UPDATE tickets SET unread_count = 0, updated_at = ? WHERE id = ?", utcnow_iso(), ticket_id)

    # ── messages ──
    async def find_message_by_external_id(self, organization_id: str, external_id: str) -> Optional[dict]:
        async with self._conn() as db:
            return await self._fetchrow(
                db,
                """
                SELECT m.* FROM messages m
                JOIN tickets t ON t.id = m.ticket_id
                WHERE t.organization_id = ? AND m.external_id = ?
                LIMIT 1
                """,
                organization_id,
                external_id,
            )

    async def find_message_by_client_id(self, ticket_id: str, client_message_id: str) -> Optional[dict]:
        async with self._conn() as db:
            return await self._fetchrow(
                db,
                "SELECT * FROM messages WHERE ticket_id = ? AND client_message_id = ?",
                ticket_id,
                client_message_id,
            )

    async def get_message(self, message_id: int) -> Optional[dict]:
        async with self._conn() as db:
            return await self._fetchrow(db, "SELECT * FROM messages WHERE id = ?", int(message_id))

    async def insert_message(self, data: dict) -> tuple[Optional[dict], bool]:
        """Append a message; a duplicate idempotency key is a no-op. Returns (row, created)."""
        allowed = {
            "ticket_id", "sender_type", "sender_id", "content", "media_url",
            "media_type", "external_id", "delivery_status", "client_message_id",
        }
        data = {k: v for k, v in data.items() if k in allowed}
        cols = ", ".join(data.keys())
        qs = ", ".join("?" for _ in data)
        async with self._conn() as db:
            if self.use_postgres:
                row = await db.fetchrow(
                    self._convert(f"INSERT INTO messages ({cols}) VALUES ({qs}) ON CONFLICT DO NOTHING RETURNING *"),
                    *data.values(),
                )
                if row:
                    return dict(row), True
            else:
                cur = await db.execute(
                    f"INSERT INTO messages ({cols}) VALUES ({qs}) ON CONFLICT DO NOTHING", tuple(data.values())
                )
                await db.commit()
                if cur.rowcount:
                    return await self._fetchrow(db, "SELECT * FROM messages WHERE id = ?", cur.lastrowid), True
            if data.get("external_id"):
                existing = await self._fetchrow(
                    db, "SELECT * FROM messages WHERE ticket_id = ? AND external_id = ?", data["ticket_id"], data["external_id"]
                )
            else:
                existing = await self._fetchrow(
                    db,
                    "SELECT * FROM messages WHERE ticket_id = ? AND client_message_id = ?",
                    data["ticket_id"],
                    data.get("client_message_id"),
                )
            return existing, False

    async def update_message_delivery(self, message_id: int, *, delivery_status: str, external_id: str | None = None) -> None:
        async with self._conn() as db:
            if external_id:
                await self._execute(
                    db,
                    "UPDATE messages SET delivery_status = ?, external_id = ? WHERE id = ?",
                    delivery_status,
                    external_id,
                    int(message_id),
                )
            else:
                await self._execute(
                    db, "UPDATE messages SET delivery_status = ? WHERE id = ?", delivery_status, int(message_id)
                )

    async def claim_failed_message(self, message_id: int) -> bool:
        """failed -> pending in one statement; only the caller that flips the row may resend it."""
        async with self._conn() as db:
            updated = await self._execute(
                db,
                "UPDATE messages SET delivery_status = ? WHERE id = ? AND delivery_status = ?",
                DELIVERY_PENDING,
                int(message_id),
                DELIVERY_FAILED,
            )
        return updated == 1

    async def list_messages(self, ticket_id: str, offset: int = 0, limit: int = 200) -> List[dict]:
        """Return messages of a ticket in commit order (created_at, then id)."""
        async with self._conn() as db:
            return await self._fetch(
                db,
                "SELECT * FROM messages WHERE ticket_id = ? ORDER BY created_at ASC, id ASC LIMIT ? OFFSET ?",
                ticket_id,
                int(limit),
                int(offset),
            )

    async def count_rows(self, table: str, **where) -> int:
        """Small helper for diagnostics and tests: COUNT(*) with equality filters."""
        if table not in ("organizations", "whatsapp_connections", "contacts", "tickets", "messages"):
            raise ValueError(f"unknown table {table}")
        clause = " AND ".join(f"{k} = ?" for k in where) or "1 = 1"
        async with self._conn() as db:
            row = await self._fetchrow(db, f"SELECT COUNT(*) AS n FROM {table} WHERE {clause}", *where.values())
            return int(row["n"]) if row else 0


def normalize_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Coerce 0/1 integer flags into booleans for API responses."""
    out = []
    for r in rows or []:
        d = dict(r)
        for k in ("is_default", "auto_close_tickets", "read"):
            if k in d and d[k] is not None:
                d[k] = bool(d[k])
        out.append(d)
    return out
