"""Structured JSON logging for the marketplace order engine."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

__all__ = [
    'StructuredFormatter',
    'configure_logging',
    'get_logger',
    'reset_logging',
]

_LOGGER_PREFIX = 'marketplace'

_STDLIB_KEYS: frozenset[str] = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None)).keys()) | {
    'message',
    'taskName',
}


class _JSONEncoder(json.JSONEncoder):
    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if hasattr(obj, 'value'):
            return obj.value
        return super().default(obj)


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            'ts': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = val

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload['exc_type'] = type(exc).__name__
            payload['exc_message'] = str(exc)
            if hasattr(exc, 'code'):
                payload['exc_code'] = exc.code
            payload['traceback'] = self.formatException(record.exc_info)

        return json.dumps(payload, cls=_JSONEncoder, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the marketplace namespace."""
    return logging.getLogger(f'{_LOGGER_PREFIX}.{name}')


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    json_output: bool = True,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Configure the marketplace logger hierarchy (idempotent)."""
    global _configured
    with _lock:
        if _configured:
            return

        root = logging.getLogger(_LOGGER_PREFIX)
        root.setLevel(level)

        if handler is None:
            handler = logging.StreamHandler(stream)
            if json_output:
                handler.setFormatter(StructuredFormatter())
            else:
                handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s'))

        root.addHandler(handler)
        root.propagate = False
        _configured = True


def reset_logging() -> None:
    """Remove handlers installed by configure_logging. Used by tests."""
    global _configured
    with _lock:
        root = logging.getLogger(_LOGGER_PREFIX)
        for existing in list(root.handlers):
            root.removeHandler(existing)
        root.propagate = True
        root.setLevel(logging.NOTSET)
        _configured = False
