"""Webhook ingress: secret verification + inline event processing."""

from .runtime import WebhookRuntime, WebhookState
from .router import create_webhook_router
from .signature import verify_webhook_secret

__all__ = [
    "WebhookRuntime",
    "WebhookState",
    "create_webhook_router",
    "verify_webhook_secret",
]
