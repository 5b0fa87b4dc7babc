"""
Structured logging for habitchain.

Every record carries the request id and, inside a request, the calling
user. log_event attaches domain context (habit_id, session_id, day_key,
amounts) as record attributes and lists their names in `context_keys`, so
both formatters can render them: one JSON object per line in production,
a single readable line elsewhere.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_ctx_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

_CORE_FIELDS = ("request_id", "user_id", "event_type", "error_code")

# (upper bound in ms, label); anything slower is ">=1000ms"
_LATENCY_BUCKETS: Tuple[Tuple[float, str], ...] = (
    (10, "<10ms"),
    (100, "10-100ms"),
    (500, "100-500ms"),
    (1000, "500-1000ms"),
)

MAX_FIELD_LENGTH = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in _LATENCY_BUCKETS:
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _context(record: logging.LogRecord) -> Dict[str, object]:
    return {key: getattr(record, key, None) for key in getattr(record, "context_keys", ())}


class RequestIdFilter(logging.Filter):
    """Fill request_id and user_id from the request context when the caller did not."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        if getattr(record, "user_id", None) is None:
            record.user_id = user_id_ctx_var.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _CORE_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        context = _context(record)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_timestamp(record), record.levelname, "[habitchain]"]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        user = getattr(record, "user_id", None)
        if user:
            parts.append(f"user={user}")
        code = getattr(record, "error_code", None)
        if code:
            parts.append(f"code={code}")
        parts.extend(f"{key}={value}" for key, value in _context(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    logger = logging.getLogger("habitchain")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn's access log duplicates request.complete
    logging.getLogger("uvicorn.access").propagate = False


def _safe_truncate(value, limit: int = MAX_FIELD_LENGTH) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log `msg` on the habitchain logger with correlation fields and truncated context."""
    logger = logging.getLogger("habitchain")
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"), os.getenv("LOG_LEVEL", "INFO"))

    payload: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id or user_id_ctx_var.get(),
        "event_type": event_type,
        "error_code": error_code,
    }
    context = {key: _safe_truncate(value) for key, value in (extra or {}).items()}
    payload.update(context)
    payload["context_keys"] = tuple(context)

    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=payload)
