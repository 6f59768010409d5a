from __future__ import annotations

from contextvars import ContextVar, Token
from typing import Optional
import uuid

# NOTE: These are request-scoped for HTTP handlers. Background sweeps will typically
# have empty values unless explicitly set.
_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_ORGANIZATION_ID: ContextVar[Optional[str]] = ContextVar("organization_id", default=None)
_AGENT_ID: ContextVar[Optional[str]] = ContextVar("agent_id", default=None)


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


def set_request_id(value: Optional[str] = None) -> tuple[str, Token[Optional[str]]]:
    rid = (value or "").strip() or uuid.uuid4().hex
    tok = _REQUEST_ID.set(rid)
    return rid, tok


def reset_request_id(token: Token[Optional[str]]) -> None:
    _REQUEST_ID.reset(token)


def get_organization_id() -> Optional[str]:
    return _ORGANIZATION_ID.get()


def set_organization_id(value: Optional[str]) -> Token[Optional[str]]:
    v = (value or "").strip() if value else None
    return _ORGANIZATION_ID.set(v or None)


def reset_organization_id(token: Token[Optional[str]]) -> None:
    _ORGANIZATION_ID.reset(token)


def get_agent_id() -> Optional[str]:
    return _AGENT_ID.get()


def set_agent_id(value: Optional[str]) -> Token[Optional[str]]:
    v = (value or "").strip() if value else None
    return _AGENT_ID.set(v or None)


def reset_agent_id(token: Token[Optional[str]]) -> None:
    _AGENT_ID.reset(token)
