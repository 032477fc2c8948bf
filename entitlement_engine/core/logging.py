"""
Structured logging with request and tenant correlation.

Features:
- JSON logs in production, pretty logs elsewhere.
- request_id and tenant_id bound per request in context vars and stamped on
  every record by ContextFilter.
- Fields passed through ``extra=`` are kept on the output line.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

LOGGER_NAME = "entitlements"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
tenant_id_ctx_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)

_CONTEXT_FIELDS = ("request_id", "tenant_id")

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current request_id from context (if any)."""
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def get_tenant_id() -> Optional[str]:
    return tenant_id_ctx_var.get()


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _fields(record: logging.LogRecord) -> Dict[str, object]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and key not in _CONTEXT_FIELDS
    }


class ContextFilter(logging.Filter):
    """Stamp request_id/tenant_id from context unless the caller passed them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        if getattr(record, "tenant_id", None) is None:
            record.tenant_id = get_tenant_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "tenant_id": getattr(record, "tenant_id", None),
        }
        payload.update(_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        context = "".join(
            f" [{label}={value}]"
            for label, value in (
                ("rid", getattr(record, "request_id", None)),
                ("tenant", getattr(record, "tenant_id", None)),
            )
            if value
        )
        fields = " ".join(f"{k}={v}" for k, v in sorted(_fields(record).items()))
        line = f"{_timestamp(record)} {record.levelname} [{record.name}]{context} {record.getMessage()}"
        if fields:
            line = f"{line} {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    """Configure structured logging based on environment."""
    logger = logging.getLogger(LOGGER_NAME)
    resolved = logging.getLevelName(level.upper())
    logger.setLevel(resolved if isinstance(resolved, int) else logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(ContextFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # Reduce noise from uvicorn loggers but keep error output
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False
