"""
Structured JSON logging configuration.

- Uses python's logging + python-json-logger for one JSON object per line.
- Carries the request correlation id via a ContextVar so every record
  emitted while handling a request can be joined with its response header.
- Call configure_logging() once at startup.
"""

import logging
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

# Context var to carry request id across async contexts
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

_FORMAT_FIELDS = ("asctime", "levelname", "name", "message", "request_id")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    if any(getattr(h, "_qecoach_json", False) for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(
        JsonFormatter(
            fmt=" ".join(f"%({field})s" for field in _FORMAT_FIELDS),
            rename_fields={"asctime": "ts", "levelname": "level"},
        )
    )
    handler.addFilter(RequestIdFilter())
    handler._qecoach_json = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def set_request_id(request_id: str):
    """Bind the correlation id to the current context; returns a reset token."""
    return request_id_ctx.set(request_id)


def reset_request_id(token) -> None:
    request_id_ctx.reset(token)
