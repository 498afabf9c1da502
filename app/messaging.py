"""RabbitMQ connection and setup"""
import aio_pika
import logging
import asyncio
import msgpack

from config import RABBITMQ_URL, EVENTS_QUEUE

logger = logging.getLogger(__name__)

DEAD_LETTER_EXCHANGE = f"{EVENTS_QUEUE}_dlx"
DEAD_LETTER_QUEUE = f"{EVENTS_QUEUE}_dead_letter"


class MessageMQ:
    connection: aio_pika.abc.AbstractRobustConnection = None
    channel: aio_pika.abc.AbstractChannel = None
    events_queue: aio_pika.abc.AbstractQueue = None


messagemq = MessageMQ()


async def connect_queue(attempts: int = 10, delay: float = 5):
    """Initialize RabbitMQ with DLQ"""
    for attempt in range(attempts):
        try:
            messagemq.connection = await aio_pika.connect_robust(RABBITMQ_URL, timeout=10)
            messagemq.channel = await messagemq.connection.channel()
            await messagemq.channel.set_qos(prefetch_count=100)

            # Dead letter exchange
            dlx = await messagemq.channel.declare_exchange(
                DEAD_LETTER_EXCHANGE,
                aio_pika.ExchangeType.DIRECT,
                durable=True
            )

            dlq = await messagemq.channel.declare_queue(DEAD_LETTER_QUEUE, durable=True)
            await dlq.bind(dlx, routing_key=EVENTS_QUEUE)

            messagemq.events_queue = await messagemq.channel.declare_queue(
                EVENTS_QUEUE,
                durable=True,
                arguments={
                    "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE,
                    "x-dead-letter-routing-key": EVENTS_QUEUE
                }
            )

            logger.info("Queue connected")
            return
        except (aio_pika.exceptions.AMQPError, OSError, asyncio.TimeoutError) as e:
            if attempt < attempts - 1:
                logger.warning(f"RabbitMQ not ready (attempt {attempt + 1}/{attempts}): {e}")
                await asyncio.sleep(delay)
            else:
                raise ConnectionError(f"Failed to connect to RabbitMQ: {e}") from e


async def disconnect_queue():
    """Close RabbitMQ connection"""
    if messagemq.connection and not messagemq.connection.is_closed:
        await messagemq.connection.close()


def encode_event(event_dict: dict) -> bytes:
    return msgpack.packb(event_dict)


def decode_event(body: bytes) -> dict:
    return msgpack.unpackb(body, raw=False)


async def publish_event(event_dict: dict):
    """Publish event to queue"""
    message = aio_pika.Message(
        body=encode_event(event_dict),
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        content_type="application/msgpack"
    )

    await messagemq.channel.default_exchange.publish(message, routing_key=EVENTS_QUEUE)
