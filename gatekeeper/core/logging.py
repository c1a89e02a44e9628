"""Structured logging for the gate.

Every log call in the package uses an event name as the message and puts the
context in ``extra``. In JSON mode those fields are emitted under ``extra``
next to the service and environment tags.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet

from gatekeeper.core.config import AppSettings

# Attributes every LogRecord carries; anything else came in through ``extra``.
_STANDARD_ATTRS: FrozenSet[str] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}

REDACTED = "[redacted]"
SENSITIVE_KEYS: FrozenSet[str] = frozenset(
    {"token", "authorization", "cookie", "secret_key", "redis_token", "csrf_token"}
)


def _redact(key: str, value: Any) -> Any:
    return REDACTED if key.lower() in SENSITIVE_KEYS else value


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with session secrets masked."""

    def __init__(self, service_name: str, environment: str) -> None:
        super().__init__()
        self.service_name = service_name
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
        }

        context = {
            key: _redact(key, value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS
        }
        if context:
            payload["extra"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(settings: AppSettings) -> None:
    """Install a single stdout handler on the root logger."""

    level = logging.getLevelName(settings.log_level)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    if settings.log_json:
        handler.setFormatter(JsonFormatter(settings.service_name, settings.environment))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers[:] = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = True

    # httpx logs every outbound request at INFO, including IdP session checks.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
