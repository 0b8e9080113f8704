# booking_service/core/kafka_producer.py
"""
Booking event and operator alert publishing.

Ledger transitions publish `booking.*` events after they commit and the
payment reconciler raises operator alerts for conditions that need a human
(money collected for a released hold, overbooking on payment). A broker
outage must never fail a booking, so send errors are logged and dropped.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError

from booking_service.core.config import settings

logger = logging.getLogger(__name__)

BOOKING_EVENTS_TOPIC = "booking.events.v1"
OPERATOR_ALERTS_TOPIC = "booking.alerts.v1"


class BookingEventPublisher:
    """Thin wrapper over a KafkaProducer that never raises on send."""

    def __init__(self, producer: Optional[KafkaProducer] = None):
        self._producer = producer

    @property
    def enabled(self) -> bool:
        return self._producer is not None

    def publish(
        self, event_type: str, payload: Dict[str, Any], key: Optional[str] = None
    ) -> None:
        message = {
            "type": event_type,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
            "data": payload,
        }
        self._send(BOOKING_EVENTS_TOPIC, message, key)

    def alert(self, alert_type: str, message: str, **context: Any) -> None:
        """Raise an operator alert. Always logged, published when Kafka is up."""
        logger.critical(f"OPERATOR ALERT [{alert_type}]: {message} {context}")
        self._send(
            OPERATOR_ALERTS_TOPIC,
            {
                "type": alert_type,
                "message": message,
                "context": context,
                "raised_at": datetime.now(timezone.utc).isoformat(),
            },
            context.get("booking_id") or context.get("instance_id"),
        )

    def _send(self, topic: str, message: Dict[str, Any], key: Optional[str]) -> None:
        if self._producer is None:
            logger.debug(f"Event publishing disabled, dropping {message['type']}")
            return
        try:
            self._producer.send(
                topic,
                value=message,
                key=key.encode("utf-8") if key else None,
            )
        except KafkaError as e:
            logger.error(f"Failed to publish {message['type']} to {topic}: {e}")

    def close(self) -> None:
        if self._producer is not None:
            self._producer.flush()  # Ensure all buffered messages are sent
            self._producer.close()
            self._producer = None


_publisher: Optional[BookingEventPublisher] = None


def _create_producer() -> Optional[KafkaProducer]:
    if not settings.ENABLE_EVENT_PUBLISHING or not settings.KAFKA_BOOTSTRAP_SERVERS:
        logger.info("Kafka publishing disabled for this process")
        return None
    try:
        return KafkaProducer(
            bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            # Fail fast on connection issues instead of blocking a request
            request_timeout_ms=5000,
        )
    except KafkaError as e:
        logger.warning(f"Kafka unavailable, booking events will not be published: {e}")
        return None


def get_event_publisher() -> BookingEventPublisher:
    """
    FastAPI dependency returning the process-wide publisher.
    The producer is created on first use and closed by shutdown_event_publisher.
    """
    global _publisher
    if _publisher is None:
        _publisher = BookingEventPublisher(_create_producer())
    return _publisher


def shutdown_event_publisher() -> None:
    global _publisher
    if _publisher is not None:
        _publisher.close()
        _publisher = None
