from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import orjson

Getter = Optional[Callable[[], Optional[str]]]

TEXT_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s "
    "request_id=%(request_id)s organization=%(organization)s agent=%(agent)s "
    "%(message)s"
)


class _ContextFilter(logging.Filter):
    """Stamp request_id / organization / agent on every record that reaches a handler."""

    def __init__(self, getters: Dict[str, Getter]) -> None:
        super().__init__()
        self._getters = getters

    def filter(self, record: logging.LogRecord) -> bool:
        for field, getter in self._getters.items():
            value = None
            if getter is not None:
                try:
                    value = getter()
                except LookupError:
                    value = None
            setattr(record, field, value)
        return True


class JSONLineFormatter(logging.Formatter):
    """One JSON object per line; context fields are included when set."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in ("request_id", "organization", "agent"):
            value = getattr(record, field, None)
            if value:
                entry[field] = value
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.pathname}:{record.lineno}"
        return orjson.dumps(entry, default=str).decode("utf-8")


def configure_logging(
    *,
    level: str = "INFO",
    fmt: str = "text",
    organization_getter: Getter = None,
    request_id_getter: Getter = None,
    agent_getter: Getter = None,
) -> None:
    """Configure root logging with consistent contextual fields.

    ``fmt="json"`` switches handlers we own to JSON lines; handlers installed by
    someone else (uvicorn) keep their formatter.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(lvl)
        root.addHandler(handler)

    formatter = JSONLineFormatter() if (fmt or "").lower() == "json" else logging.Formatter(fmt=TEXT_FORMAT)
    getters = {"organization": organization_getter, "request_id": request_id_getter, "agent": agent_getter}
    for handler in root.handlers:
        # Root-logger filters don't run for records propagated from child loggers.
        if not any(isinstance(f, _ContextFilter) for f in handler.filters):
            handler.addFilter(_ContextFilter(getters))
        if handler.formatter is None:
            handler.setFormatter(formatter)
