"""Structured logging for the portal.

Records carry the request trace id and, inside runner workers, the id of the
job being executed. ``LOG_FORMAT=text`` switches to a compact line format for
local runs; JSON lines are the default.
"""
from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

_TRACE_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("trace_id", default=None)
_JOB_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("job_id", default=None)
_CONFIGURED = False

# Attributes every LogRecord has; anything else came in through ``extra=``.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def _context_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    trace_id = getattr(record, "trace_id", None) or _TRACE_ID.get()
    if trace_id:
        fields["trace_id"] = trace_id
    job_id = getattr(record, "job_id", None) or _JOB_ID.get()
    if job_id:
        fields["job_id"] = job_id
    for key, value in vars(record).items():
        if key.startswith("_") or key in _RECORD_ATTRS:
            continue
        fields.setdefault(key, value)
    return fields


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_context_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger message key=value ...``"""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        parts = [stamp, record.levelname, record.name, record.getMessage()]
        parts.extend(f"{key}={value}" for key, value in _context_fields(record).items() if value is not None)
        line = " ".join(str(part) for part in parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return
    style = (fmt or os.getenv("LOG_FORMAT") or "json").strip().lower()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(TextFormatter() if style == "text" else JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def bind_trace_id(trace_id: str) -> None:
    _TRACE_ID.set(trace_id)


def clear_trace_id() -> None:
    _TRACE_ID.set(None)


def current_trace_id() -> Optional[str]:
    return _TRACE_ID.get()


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``job_id``."""

    token = _JOB_ID.set(job_id)
    try:
        yield
    finally:
        _JOB_ID.reset(token)


def log_job_event(logger: logging.Logger, *, job_id: str, event: str, **details: Any) -> None:
    details = {key: value for key, value in details.items() if value is not None}
    logger.info(
        "job_event",
        extra={"job_id": job_id, "job_event": event, "details": details or None},
    )
