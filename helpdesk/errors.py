"""Error taxonomy shared by the pipeline, the registry and the HTTP layer.

User-visible errors carry a short ``code`` category the UI maps to a notification.
Transient errors mean "retry later": the webhook turns them into a 5xx so the
gateway's at-least-once delivery can recover.
"""

from __future__ import annotations

import asyncio
import sqlite3

import asyncpg


class HelpdeskError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(HelpdeskError):
    code = "validation"
    status_code = 400


class NotFoundError(HelpdeskError):
    code = "not_found"
    status_code = 404


class InvalidTransitionError(ValidationError):
    pass


class GatewayRejectedError(HelpdeskError):
    """The gateway answered but refused the request (4xx)."""

    code = "gateway_rejected"
    status_code = 502

    def __init__(self, message: str, *, status: int | None = None, body: dict | None = None):
        super().__init__(message)
        self.status = status
        self.body = body or {}


class ProvisionError(GatewayRejectedError):
    pass


class TransientError(HelpdeskError):
    code = "unavailable"
    status_code = 503


class StoreUnavailableError(TransientError):
    pass


class GatewayUnavailableError(TransientError):
    pass


_TRANSIENT_PG_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.InterfaceError,
)


def is_transient(exc: BaseException) -> bool:
    """Return True when ``exc`` looks like infrastructure trouble rather than a bad event."""
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, _TRANSIENT_PG_ERRORS):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        msg = str(exc).lower()
        return "locked" in msg or "busy" in msg or "unable to open" in msg
    return False
