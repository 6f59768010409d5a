import os
from pathlib import Path

from dotenv import load_dotenv

# Absolute paths
ROOT_DIR = Path(__file__).resolve().parent.parent

# Load environment variables early so defaults below can be overridden by a local `.env`.
# In managed platforms environment variables are injected directly and this is a no-op.
load_dotenv()

PORT = int(os.getenv("PORT", "8080"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# "text" (key=value context) or "json" (one object per line)
LOG_FORMAT = os.getenv("LOG_FORMAT", "text").lower()

# ── Data store ───────────────────────────────────────────────────
DB_PATH = os.getenv("DB_PATH") or str(ROOT_DIR / "data" / "helpdesk.db")
DATABASE_URL = os.getenv("DATABASE_URL")  # optional PostgreSQL URL
PG_POOL_MIN = int(os.getenv("PG_POOL_MIN", "1"))
PG_POOL_MAX = int(os.getenv("PG_POOL_MAX", "10"))
# When 1 and DATABASE_URL is set, never fall back to SQLite.
REQUIRE_POSTGRES = int(os.getenv("REQUIRE_POSTGRES", "1"))
PG_CONNECT_TIMEOUT_SECONDS = float(os.getenv("PG_CONNECT_TIMEOUT_SECONDS", "10"))
PG_POOL_RETRY_BACKOFF_SECONDS = float(os.getenv("PG_POOL_RETRY_BACKOFF_SECONDS", "15"))
# Keep lock waits small so webhook calls don't hang under contention.
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "3000"))
HEALTH_DB_TIMEOUT_SECONDS = float(os.getenv("HEALTH_DB_TIMEOUT_SECONDS", "2"))

# ── Redis (realtime fan-out + rate limiting) ─────────────────────
REDIS_URL = os.getenv("REDIS_URL", "")
TICKET_EVENTS_CHANNEL = os.getenv("TICKET_EVENTS_CHANNEL", "ticket_events")

# ── Messaging gateway (Evolution API) ────────────────────────────
EVOLUTION_API_URL = (os.getenv("EVOLUTION_API_URL", "") or "").rstrip("/")
EVOLUTION_API_KEY = os.getenv("EVOLUTION_API_KEY", "")
GATEWAY_HTTP_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_HTTP_TIMEOUT_SECONDS", "15"))
GATEWAY_HTTP_CONNECT_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_HTTP_CONNECT_TIMEOUT_SECONDS", "5"))

# ── Webhook ingress ──────────────────────────────────────────────
# Shared secret the gateway presents on every webhook call (header X-Webhook-Secret).
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
# Public URL of POST /webhook; when set, new instances are registered to call it.
WEBHOOK_PUBLIC_URL = os.getenv("WEBHOOK_PUBLIC_URL", "")
# Safety timeout for processing a single webhook event (seconds). Exceeding it is treated as transient.
WEBHOOK_PROCESSING_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_PROCESSING_TIMEOUT_SECONDS", "20"))

# ── Agent auth (bearer tokens issued by the session service) ─────
AGENT_AUTH_SECRET = os.getenv("AGENT_AUTH_SECRET", "")
JWT_ISSUER = os.getenv("JWT_ISSUER", "")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "")
DISABLE_AUTH = os.getenv("DISABLE_AUTH", "0") == "1"
SEND_TEXT_PER_MIN = int(os.getenv("SEND_TEXT_PER_MIN", "60"))

# ── Connection pairing ───────────────────────────────────────────
STATUS_POLL_INTERVAL_SECONDS = float(os.getenv("STATUS_POLL_INTERVAL_SECONDS", "4"))
STATUS_POLL_TIMEOUT_SECONDS = float(os.getenv("STATUS_POLL_TIMEOUT_SECONDS", "120"))

# ── Ticket auto-close policy ─────────────────────────────────────
AUTO_CLOSE_ENABLED = os.getenv("AUTO_CLOSE_ENABLED", "1") == "1"
AUTO_CLOSE_IDLE_HOURS = float(os.getenv("AUTO_CLOSE_IDLE_HOURS", "24"))
AUTO_CLOSE_SWEEP_INTERVAL_SECONDS = float(os.getenv("AUTO_CLOSE_SWEEP_INTERVAL_SECONDS", "300"))
