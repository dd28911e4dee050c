"""
RabbitMQ Queue Backend

Task queue on a RabbitMQ broker through aio-pika.

Delayed sends are approximated with a per-message TTL on a side queue that
dead-letters into the main queue. RabbitMQ only expires messages at the head
of a queue, so a short delay queued behind a longer one waits for the longer
one to expire first.
"""

import asyncio
import datetime as dt
from typing import Optional

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError
from loguru import logger

from webhook_queue.core.errors import QueueStartupError, QueueTransportError
from webhook_queue.task_queue.tasks import QueueTask, encode_task

VISIBLE_AT_HEADER = "x-visible-at"

TRANSPORT_ERRORS = (AMQPError, ChannelInvalidStateError, ConnectionError, OSError)


def delayed_queue_name(queue: str) -> str:
    return f"{queue}-delayed"


def visible_at(message: AbstractIncomingMessage) -> dt.datetime:
    """Intended visibility time of a message, defaulting to now."""
    raw = (message.headers or {}).get(VISIBLE_AT_HEADER)
    if isinstance(raw, (bytes, str)):
        try:
            if isinstance(raw, bytes):
                raw = raw.decode()
            return dt.datetime.fromisoformat(raw)
        except ValueError:
            logger.debug(f"Ignoring malformed {VISIBLE_AT_HEADER} header: {raw!r}")
    return dt.datetime.now(dt.UTC)


async def ack_message(message: AbstractIncomingMessage) -> None:
    try:
        # Only this message, never the ones before it on the channel
        await message.ack(multiple=False)
    except TRANSPORT_ERRORS as e:
        raise QueueTransportError(f"RabbitMQ ack failed: {e}") from e


async def nack_message(message: AbstractIncomingMessage) -> None:
    try:
        await message.nack(multiple=False, requeue=True)
    except TRANSPORT_ERRORS as e:
        raise QueueTransportError(f"RabbitMQ nack failed: {e}") from e


async def reject_message(message: AbstractIncomingMessage) -> None:
    """Drop a message that cannot be decoded (dead-lettered if the queue has a DLX)."""
    try:
        await message.reject(requeue=False)
    except TRANSPORT_ERRORS as e:
        raise QueueTransportError(f"RabbitMQ reject failed: {e}") from e


class RabbitMqProducer:

    def __init__(self, channel: AbstractChannel, queue: str):
        self.channel = channel
        self.queue = queue

    async def send(self, task: QueueTask, delay: Optional[dt.timedelta] = None) -> None:
        now = dt.datetime.now(dt.UTC)
        delayed = bool(delay and delay > dt.timedelta(0))
        message = aio_pika.Message(
            body=encode_task(task),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            headers={VISIBLE_AT_HEADER: (now + delay if delayed else now).isoformat()},
            expiration=delay if delayed else None,
        )
        routing_key = delayed_queue_name(self.queue) if delayed else self.queue
        try:
            await self.channel.default_exchange.publish(message, routing_key=routing_key)
        except TRANSPORT_ERRORS as e:
            raise QueueTransportError(f"RabbitMQ publish failed: {e}") from e


class RabbitMqConsumer:
    """
    Buffers messages pushed by the broker and hands them out in batches.

    With the default prefetch of 1 the broker pushes one unacknowledged
    message at a time, so a batch holds at most `prefetch` messages.
    """

    def __init__(self, queue: AbstractQueue):
        self.queue = queue
        self._buffer: asyncio.Queue[AbstractIncomingMessage] = asyncio.Queue()
        self._consumer_tag: Optional[str] = None

    async def start(self) -> None:
        self._consumer_tag = await self.queue.consume(self._buffer.put, no_ack=False)

    async def receive_all(
        self, max_messages: int, deadline: float
    ) -> list[AbstractIncomingMessage]:
        try:
            first = await asyncio.wait_for(self._buffer.get(), timeout=deadline)
        except asyncio.TimeoutError:
            return []

        batch = [first]
        while len(batch) < max_messages:
            try:
                batch.append(self._buffer.get_nowait())
            except asyncio.QueueEmpty:
                break
        return batch


async def new_pair(
    dsn: str,
    queue: str,
    prefetch_size: int,
) -> tuple[RabbitMqProducer, RabbitMqConsumer]:
    """
    Connect to the broker and declare the main and delay queues.

    Raises:
        QueueStartupError: If the broker cannot be reached or configured
    """
    try:
        connection: AbstractRobustConnection = await aio_pika.connect_robust(dsn)
        publish_channel = await connection.channel()
        consume_channel = await connection.channel()
        await consume_channel.set_qos(prefetch_count=prefetch_size)

        await publish_channel.declare_queue(queue, durable=True)
        await publish_channel.declare_queue(
            delayed_queue_name(queue),
            durable=True,
            arguments={
                "x-dead-letter-exchange": "",
                "x-dead-letter-routing-key": queue,
            },
        )
        consume_queue = await consume_channel.declare_queue(queue, durable=True)

        consumer = RabbitMqConsumer(consume_queue)
        await consumer.start()
    except TRANSPORT_ERRORS as e:
        raise QueueStartupError(f"Cannot connect to RabbitMQ: {e}") from e

    logger.info(f"RabbitMQ task queue ready (queue={queue}, prefetch={prefetch_size})")
    return RabbitMqProducer(publish_channel, queue), consumer
