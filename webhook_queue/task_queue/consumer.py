"""
Task Queue Consumer

Receives batches of deliveries from whichever transport the consumer was
built for.

Items that fail to decode never abort a batch, on any transport: each one is
rejected at the transport (removed without redelivery, so it cannot poison
the queue) and reported in `ReceivedBatch.errors`.
"""

import datetime as dt
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

from loguru import logger

from webhook_queue.core.errors import (
    EmptyDeliveryError,
    TaskDecodeError,
    TaskQueueError,
)
from webhook_queue.task_queue import rabbitmq
from webhook_queue.task_queue.base import QueueConsumerBackend
from webhook_queue.task_queue.delivery import (
    Acker,
    FinalizeAction,
    OmniAcker,
    RabbitMqAcker,
    RedisAcker,
    TaskQueueDelivery,
    finalize,
    new_delivery_id,
)
from webhook_queue.task_queue.rabbitmq import RabbitMqConsumer
from webhook_queue.task_queue.redis import RedisQueueConsumer
from webhook_queue.task_queue.tasks import decode_task

# Most deliveries handed out by one receive_all() call
MAX_MESSAGES = 128
# Seconds receive_all() may wait for work to arrive
RECEIVE_TIMEOUT = 30.0

ConsumerBackend = Union[RedisQueueConsumer, RabbitMqConsumer, QueueConsumerBackend]


@dataclass
class ReceivedBatch:
    """
    Result of one receive_all() call.

    Iterates (and sizes) as its deliveries; per-item failures are kept apart.

    Attributes:
        deliveries: Decoded deliveries, each to be acked or nacked
        errors: Decode / empty-payload failures of rejected items
    """
    deliveries: list[TaskQueueDelivery] = field(default_factory=list)
    errors: list[TaskQueueError] = field(default_factory=list)

    def __iter__(self) -> Iterator[TaskQueueDelivery]:
        return iter(self.deliveries)

    def __len__(self) -> int:
        return len(self.deliveries)

    def __getitem__(self, index: int) -> TaskQueueDelivery:
        return self.deliveries[index]


class TaskQueueConsumer:
    """Receiving handle bound to one transport."""

    def __init__(self, inner: ConsumerBackend, receive_timeout: float = RECEIVE_TIMEOUT):
        if not isinstance(inner, (RedisQueueConsumer, RabbitMqConsumer, QueueConsumerBackend)):
            raise TypeError(f"Unsupported consumer backend: {type(inner).__name__}")
        self._inner = inner
        self.receive_timeout = receive_timeout

    async def receive_all(self) -> ReceivedBatch:
        """
        Receive up to MAX_MESSAGES deliveries.

        Waits at most `receive_timeout` seconds for work. An empty batch means
        nothing arrived in time and is not an error.

        Raises:
            QueueTransportError: If the receive call itself failed
        """
        inner = self._inner
        batch = ReceivedBatch()

        if isinstance(inner, RedisQueueConsumer):
            entries = await inner.receive_all(MAX_MESSAGES, self.receive_timeout)
            for entry in entries:
                await self._accept(
                    batch,
                    entry.payload,
                    RedisAcker(inner.inner, entry.entry_id),
                    entry.visible_at,
                )

        elif isinstance(inner, RabbitMqConsumer):
            messages = await inner.receive_all(MAX_MESSAGES, self.receive_timeout)
            for message in messages:
                await self._accept(
                    batch,
                    message.body,
                    RabbitMqAcker(message),
                    rabbitmq.visible_at(message),
                )

        else:
            handles = await inner.receive_all(MAX_MESSAGES, self.receive_timeout)
            for handle in handles:
                await self._accept(
                    batch, handle.payload, OmniAcker(handle), handle.visible_at
                )

        if batch.deliveries or batch.errors:
            logger.debug(
                f"Received {len(batch.deliveries)} deliveries "
                f"({len(batch.errors)} rejected)"
            )
        return batch

    async def _accept(
        self,
        batch: ReceivedBatch,
        payload: Optional[bytes],
        acker: Acker,
        visible_at: Optional[dt.datetime],
    ) -> None:
        delivery_id = new_delivery_id(visible_at)
        try:
            task = decode_task(payload, delivery_id=delivery_id)
        except (TaskDecodeError, EmptyDeliveryError) as e:
            logger.error(f"Rejecting undecodable delivery: {e}")
            batch.errors.append(e)
            try:
                await finalize(acker, FinalizeAction.REJECT)
            except TaskQueueError as reject_error:
                # Item stays in flight and comes back through redelivery
                logger.error(f"Failed to reject delivery {delivery_id}: {reject_error}")
                batch.errors.append(reject_error)
            return

        batch.deliveries.append(TaskQueueDelivery(delivery_id, task, acker))
