"""
Structured JSON logging for the sync library.

Most sync work happens in background tasks, so failures only show up in
logs. Records carry their context (device id, counts, entity ids) as
``extra`` fields; ``SyncJsonFormatter`` writes them as one JSON object per
line and masks credential fields so user records can be logged safely.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, Any

LIBRARY_LOGGER = "dispatch_task_storage"

# LogRecord attributes that are not caller-supplied context
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}

SECRET_FIELDS = frozenset({"password", "new_password", "token"})
MASK = "***"


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: MASK if k in SECRET_FIELDS else _mask(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_mask(v) for v in value]
    return value


class SyncJsonFormatter(logging.Formatter):
    """Single-line JSON formatter.

    Fixed fields are ``ts`` (ISO 8601, UTC, from the record's creation
    time), ``level``, ``logger`` and ``msg``; everything passed in
    ``extra`` follows, with credential fields replaced by ``***``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            entry[key] = MASK if key in SECRET_FIELDS else _jsonable(_mask(value))
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = LIBRARY_LOGGER,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Send a logger's records to ``stream`` (stdout) as JSON lines.

    Args:
        level: Logging level
        logger_name: Logger to configure; None configures the root logger
        stream: Output stream

    Returns:
        The configured logger
    """
    target = logging.getLogger(logger_name)
    for handler in list(target.handlers):
        target.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(SyncJsonFormatter())
    target.addHandler(handler)
    target.setLevel(level)
    return target


def get_component_logger(component: str) -> logging.Logger:
    """Logger named ``dispatch_task_storage.<component>``."""
    return logging.getLogger(f"{LIBRARY_LOGGER}.{component}")


class DeviceLoggerAdapter(logging.LoggerAdapter):
    """Adds the installation's device id to every record.

    Per-call ``extra`` values are merged with, not replaced by, the
    adapter's context.
    """

    def __init__(self, logger: logging.Logger, device_id: str):
        super().__init__(logger, {"device_id": device_id})

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs
