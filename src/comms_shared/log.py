"""Structured JSON logging shared by the dispatch components."""

import json
import logging
import sys
from collections.abc import Mapping, MutableMapping, Sequence
from datetime import datetime, timezone
from typing import Any

# Build the set of standard LogRecord attributes so we can extract
# extra fields added via `extra={...}` in log calls.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
    | {"message", "asctime"}
)


class JsonFormatter(logging.Formatter):
    """Single-line JSON log formatter for structured log aggregation."""

    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self._service = service

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self._service:
            log_entry["service"] = self._service

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_entry[key] = value

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that merges bound context into every record's extra.

    Per-call ``extra`` wins over bound context on key clashes.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs

    def bind(self, **context: object) -> "ContextLogger":
        """Return a new adapter with *context* added to the bound fields."""
        return ContextLogger(self.logger, {**(self.extra or {}), **context})


def get_logger(
    name: str,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
    context: Mapping[str, object] | None = None,
) -> ContextLogger:
    """Return a ContextLogger around *logger* (or the named module logger).

    Components accept an optional logger in their constructor and pass it
    through here, so tests and callers can inject their own.
    """
    if isinstance(logger, ContextLogger):
        return logger.bind(**(context or {}))
    if isinstance(logger, logging.LoggerAdapter):
        logger = logger.logger
    return ContextLogger(logger or logging.getLogger(name), dict(context or {}))


def setup_logging(
    level: str = "INFO",
    suppress: Sequence[str] = (),
    service: str | None = None,
) -> None:
    """Configure root logger with JSON formatter to stdout.

    Args:
        level: Root log level (e.g. "INFO", "DEBUG").
        suppress: Logger names to set to WARNING (e.g. "celery", "httpx")
                  to reduce noise from third-party libs.
        service: Optional service name stamped on every log line.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(service))

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(handler)

    for name in suppress:
        logging.getLogger(name).setLevel(logging.WARNING)
