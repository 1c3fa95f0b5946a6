"""Logging setup for comms_dispatch (delegates to comms_shared)."""

from comms_shared.log import JsonFormatter, get_logger, setup_logging as _setup

__all__ = ["JsonFormatter", "get_logger", "setup_logging"]


def setup_logging(level: str = "INFO") -> None:
    _setup(
        level,
        suppress=["celery", "kombu", "httpx", "confluent_kafka"],
        service="comms-dispatch",
    )
