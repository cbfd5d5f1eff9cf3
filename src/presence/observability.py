"""Structured logging helpers."""

from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

from .serialization import json_encode
from .tenancy import RequestContext

_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Render each record as one compact JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED or key.startswith("_") or value is None:
                continue
            payload[key] = value if isinstance(value, (str, int, float, bool)) else repr(value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json_encode(payload).decode("utf-8")


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter stamping tenant, correlation id and operation on records."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def bind(
    logger: logging.Logger,
    context: RequestContext,
    operation: str,
    **fields: Any,
) -> ContextLogger:
    """Return ``logger`` bound to the request ``context`` and ``operation``."""

    extra: dict[str, Any] = dict(context.log_fields())
    extra["operation"] = operation
    extra.update(fields)
    return ContextLogger(logger, extra)


def configure_logging(level: str | int = "INFO", *, stream: Any | None = None) -> logging.Handler:
    """Install a JSON handler on the ``presence`` logger hierarchy."""

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger("presence")
    for existing in list(root.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper() if isinstance(level, str) else level)
    return handler


__all__ = ["ContextLogger", "JsonFormatter", "bind", "configure_logging"]
