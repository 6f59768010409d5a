"""WhatsApp helpdesk: gateway webhook ingestion, connection registry and ticket routing."""

__version__ = "0.1.0"
