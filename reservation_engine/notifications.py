import asyncio
import json
import logging

import aio_pika

from reservation_engine.config import LOG_LEVEL, NOTIFICATION_EXCHANGE, RABBITMQ_URL

logger = logging.getLogger(__name__)

ROUTING_KEYS = (
    "loan.overdue",
    "loan.returned",
    "order.fulfilled",
    "order.declined",
    "order.expired",
    "order.cancelled",
    "payment.anomaly",
)


def render_notification(event_data: dict) -> str:
    event_type = event_data.get("event_type", "UNKNOWN")
    recipient = event_data.get("principal_id", "operations")
    subject = event_data.get("reservation_id") or event_data.get("order_id", "N/A")
    if event_type == "LoanOverdue":
        return f"To {recipient}: loan {subject} for {event_data.get('item_id')} was due {event_data.get('due_at')}"
    if event_type == "PaymentAnomaly":
        return f"To {recipient}: payment {event_data.get('outcome')} on order {subject} ignored ({event_data.get('reason')})"
    return f"To {recipient}: {event_type} for {subject}"


async def process_notification_event(message: aio_pika.IncomingMessage):
    async with message.process():
        try:
            event_data = json.loads(message.body.decode())
        except ValueError as e:
            logger.error(f"Discarding undecodable notification on {message.routing_key}: {e}")
            return
        # Delivery channel is the log until a mail/push provider is wired in
        logger.info(render_notification(event_data))


async def main():
    logging.basicConfig(level=LOG_LEVEL)
    connection = await aio_pika.connect_robust(RABBITMQ_URL)
    async with connection:
        channel = await connection.channel()
        exchange = await channel.declare_exchange(NOTIFICATION_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)

        queue = await channel.declare_queue("reservation_notification_q", durable=True)
        for routing_key in ROUTING_KEYS:
            await queue.bind(exchange, routing_key)

        logger.info("Notification consumer is listening for events...")
        await queue.consume(process_notification_event)

        await asyncio.Future()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Notification consumer stopped.")
