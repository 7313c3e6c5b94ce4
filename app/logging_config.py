from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

from app.config import settings

correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }
        cid = correlation_id.get()
        if cid:
            payload["correlationId"] = cid
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or "-"
        return True


def configure_logging(level: Optional[str] = None, json_lines: Optional[bool] = None) -> None:
    level = (level or settings.log_level).upper()
    json_lines = settings.log_json if json_lines is None else json_lines

    handler = logging.StreamHandler()
    if json_lines:
        handler.setFormatter(JsonFormatter(settings.service_name))
    else:
        handler.addFilter(CorrelationFilter())
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s")
        )

    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_sync_backend_handler", False):
            root.removeHandler(existing)
    handler._sync_backend_handler = True
    root.addHandler(handler)
    root.setLevel(level)


def mask_token(value: Optional[str]) -> str:
    if not value:
        return ""
    return f"{value[:10]}..."
