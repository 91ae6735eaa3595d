import json
import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

import aio_pika

from reservation_engine.config import NOTIFICATION_EXCHANGE, RABBITMQ_URL
from reservation_engine.models import utcnow

logger = logging.getLogger(__name__)


class EventPublisher:
    """Notification sink over a RabbitMQ topic exchange.

    Delivery is best effort: when the broker is unreachable the event is
    logged and dropped, and the caller's operation still succeeds.
    """

    def __init__(self, url: str = RABBITMQ_URL, exchange_name: str = NOTIFICATION_EXCHANGE):
        self.url = url
        self.exchange_name = exchange_name
        self.connection = None
        self.channel = None
        self.exchange = None

    async def connect(self):
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            self.channel = await self.connection.channel()
            self.exchange = await self.channel.declare_exchange(
                self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
            )
            logger.info(f"Connected to RabbitMQ exchange {self.exchange_name}")
        except Exception as e:
            logger.error(f"Error setting up RabbitMQ: {e}")
            self.exchange = None

    async def close(self):
        if self.connection is not None:
            await self.connection.close()
        self.connection = self.channel = self.exchange = None

    async def publish(self, routing_key: str, message_data: dict) -> bool:
        if self.exchange is None:
            logger.warning(f"RabbitMQ exchange not available, dropping {routing_key} event")
            return False

        message = aio_pika.Message(
            json.dumps(message_data, default=_encode).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self.exchange.publish(message, routing_key=routing_key)
        except Exception as e:
            logger.error(f"Error publishing {routing_key} event: {e}")
            return False
        logger.info(f"Published event to {routing_key}: {message_data['event_type']}")
        return True


def build_event(event_type: str, **data) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": utcnow().isoformat(),
        **data,
    }


async def notify(publisher: Optional[EventPublisher], routing_key: str, event_type: str, **data) -> bool:
    if publisher is None:
        return False
    return await publisher.publish(routing_key, build_event(event_type, **data))


def _encode(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Cannot encode {type(value).__name__}")
