import json
import aio_pika
import structlog

from course_payments.config import RABBITMQ_URL

logger = structlog.get_logger(__name__)

PAYMENT_EXCHANGE = "payment_exchange"

connection = None
channel = None


async def setup_rabbitmq(rabbitmq_url: str = RABBITMQ_URL):
    global connection, channel
    try:
        connection = await aio_pika.connect_robust(rabbitmq_url)
        channel = await connection.channel()
        await channel.declare_exchange(PAYMENT_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("rabbitmq_ready", exchange=PAYMENT_EXCHANGE)
    except Exception as e:
        # payments keep working without the bus; downstream consumers catch up from the db
        logger.error("rabbitmq_setup_failed", error=str(e))


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


async def publish_event(exchange_name: str, routing_key: str, message_data: dict):
    if not channel:
        logger.warning("rabbitmq_channel_unavailable", routing_key=routing_key, event_type=message_data.get("event_type"))
        return

    message = aio_pika.Message(
        json.dumps(message_data, default=str).encode("utf-8"),
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )

    try:
        exchange = await channel.get_exchange(exchange_name)
        await exchange.publish(message, routing_key=routing_key)
        logger.info("event_published", routing_key=routing_key, event_type=message_data.get("event_type"))
    except Exception as e:
        logger.error("event_publish_failed", routing_key=routing_key, error=str(e))
