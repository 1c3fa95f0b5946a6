"""Kafka producer for delivery status events."""

import json
import logging

from confluent_kafka import Producer

from comms_shared.config import KafkaConfig
from comms_shared.schemas import DeliveryRecord

logger = logging.getLogger(__name__)


class KafkaStatusPublisher:
    """Publishes record status changes to the delivery events topic.

    Messages are keyed by record id so all events for one record land on
    the same partition in order.
    """

    def __init__(self, config: KafkaConfig, producer: Producer | None = None) -> None:
        self._topic = config.delivery_events_topic
        self._producer = producer or Producer({
            "bootstrap.servers": config.bootstrap_servers,
            "acks": "all",
            "enable.idempotence": True,
            "linger.ms": 5,
            "compression.type": "lz4",
        })

    def publish_status(self, record: DeliveryRecord) -> None:
        """Publish the current status of *record*."""
        value = json.dumps({
            "record_id": str(record.id),
            "channel": str(record.channel),
            "status": str(record.status),
            "provider_message_id": record.provider_message_id,
            "failure_reason": record.failure_reason,
            "retry_count": record.retry_count,
            "cost": str(record.cost),
            "currency": record.currency,
            "batch_id": record.batch_id,
            "updated_at": record.updated_at.isoformat(),
        }).encode("utf-8")

        self._producer.produce(
            topic=self._topic,
            key=str(record.id).encode("utf-8"),
            value=value,
            on_delivery=self._on_delivery,
        )
        self._producer.poll(0)

    def flush(self, timeout: float = 10.0) -> int:
        """Flush remaining messages. Returns number of unflushed messages."""
        return self._producer.flush(timeout=timeout)

    def close(self) -> None:
        """Flush remaining messages before shutdown."""
        remaining = self.flush()
        if remaining > 0:
            logger.warning(
                "Producer closed with unflushed messages",
                extra={"remaining": remaining},
            )

    @staticmethod
    def _on_delivery(err: object, msg: object) -> None:
        if err is not None:
            logger.error("Kafka delivery failed: %s", err)
