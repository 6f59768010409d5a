from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from . import config
from .observability.context import set_agent_id, set_organization_id

log = logging.getLogger(__name__)

ACCESS_TOKEN_TTL_SECONDS = 3600


def _jwt_secret() -> str:
    # Keep a hard requirement in production, but don't crash tests/dev when DISABLE_AUTH is on.
    if not config.AGENT_AUTH_SECRET and not config.DISABLE_AUTH:
        log.warning("AGENT_AUTH_SECRET is empty; set it for secure authentication.")
    return config.AGENT_AUTH_SECRET or "dev-unsafe-secret"


def issue_access_token(member_id: str, organization_id: str, ttl_seconds: int = ACCESS_TOKEN_TTL_SECONDS) -> str:
    """Mint a session token the way the session service does (used by tests and local tooling)."""
    now = datetime.utcnow()
    payload = {
        "sub": member_id,
        "organization_id": organization_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    if config.JWT_ISSUER:
        payload["iss"] = config.JWT_ISSUER
    if config.JWT_AUDIENCE:
        payload["aud"] = config.JWT_AUDIENCE
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def parse_access_token(token: str) -> Optional[dict]:
    """Validate a bearer token; returns {member_id, organization_id} or None."""
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            _jwt_secret(),
            algorithms=["HS256"],
            options={"require_sub": True, "require_exp": True, "verify_aud": bool(config.JWT_AUDIENCE)},
            issuer=config.JWT_ISSUER or None,
            audience=config.JWT_AUDIENCE or None,
        )
    except JWTError:
        return None
    member_id = str(payload.get("sub") or "").strip()
    meta = payload.get("app_metadata") or {}
    organization_id = str(payload.get("organization_id") or (meta.get("organization_id") if isinstance(meta, dict) else "") or "").strip()
    if not member_id or not organization_id:
        return None
    return {"member_id": member_id, "organization_id": organization_id}


def _extract_bearer(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or ""
    parts = auth_header.split()
    if len(parts) >= 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


async def get_current_agent(request: Request) -> dict:
    """Return the calling agent ({member_id, organization_id}) or raise 401."""
    if config.DISABLE_AUTH:
        agent = {
            "member_id": request.headers.get("X-Agent-Id") or "dev-agent",
            "organization_id": request.headers.get("X-Organization-Id") or "",
        }
    else:
        agent = parse_access_token(_extract_bearer(request) or "")
        if not agent:
            raise HTTPException(status_code=401, detail="Unauthorized")
    # Request-scoped: the task running this request is discarded afterwards.
    set_agent_id(agent["member_id"])
    set_organization_id(agent["organization_id"])
    return agent
