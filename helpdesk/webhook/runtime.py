from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class WebhookState:
    db_ready: bool = False
    processed: int = 0
    failed: int = 0


@dataclass
class WebhookRuntime:
    # Core dependencies (injected from helpdesk.main)
    db_manager: Any
    redis_manager: Any
    processor: Any

    # Webhook verification/config
    webhook_secret: str
    processing_timeout_seconds: float

    state: WebhookState = field(default_factory=WebhookState)

    def backend_name(self) -> str:
        return "postgres" if bool(getattr(self.db_manager, "use_postgres", False)) else "sqlite"
