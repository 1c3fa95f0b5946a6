"""Database layer: models, repository, engine/session utilities."""

from comms_shared.db.base import (
    Base,
    create_all,
    create_db_engine,
    create_session_factory,
)
from comms_shared.db.models import NotificationDelivery
from comms_shared.db.repositories import DeliveryRecordRepository

__all__ = [
    "Base",
    "create_all",
    "create_db_engine",
    "create_session_factory",
    "NotificationDelivery",
    "DeliveryRecordRepository",
]
