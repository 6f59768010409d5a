"""HTTP routers, each built from the wired Services."""

from .actions import create_actions_router
from .realtime import create_realtime_router
from .tickets import create_tickets_router

__all__ = [
    "create_actions_router",
    "create_realtime_router",
    "create_tickets_router",
]
