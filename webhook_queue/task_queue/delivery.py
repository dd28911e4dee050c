"""
Task Queue Deliveries

A delivery is one received task plus the acker that finalizes it against the
transport it came from. It is finalized exactly once: the first ack() or
nack() moves the acker out of the delivery, after which the delivery owns
nothing and every further finalize call fails.
"""

import datetime as dt
from dataclasses import dataclass
from enum import StrEnum
from typing import Optional, Union

from aio_pika.abc import AbstractIncomingMessage
from ksuid import KsuidMs
from loguru import logger

from webhook_queue.core.errors import DeliveryConsumedError
from webhook_queue.core.retry import HandleSlot, run_with_retries
from webhook_queue.task_queue import rabbitmq
from webhook_queue.task_queue.base import BackendDelivery, FinalizeError
from webhook_queue.task_queue.redis import RedisQueueInner
from webhook_queue.task_queue.tasks import QueueTask


class FinalizeAction(StrEnum):
    ACK = "ack"
    NACK = "nack"
    REJECT = "reject"  # Drop without redelivery


@dataclass(frozen=True)
class RedisAcker:
    """Shared Redis queue bookkeeping plus the stream entry to finalize."""
    queue: RedisQueueInner
    entry_id: str


@dataclass(frozen=True)
class RabbitMqAcker:
    """Native broker message."""
    message: AbstractIncomingMessage


@dataclass(frozen=True)
class OmniAcker:
    """Move-based handle from a generic backend."""
    delivery: BackendDelivery


Acker = Union[RedisAcker, RabbitMqAcker, OmniAcker]


def new_delivery_id(timestamp: Optional[dt.datetime] = None) -> str:
    """
    K-sortable delivery identifier.

    Seeded by when the task becomes visible (now if not given) plus a random
    payload, so ids sort by visibility time across producers.
    """
    return str(KsuidMs(datetime=timestamp or dt.datetime.now(dt.UTC)))


async def finalize(
    acker: Acker,
    action: FinalizeAction,
    task: Optional[QueueTask] = None,
) -> None:
    """
    Ack, nack or reject one delivery under the retry policy.

    Move-based handles sit in a HandleSlot: each attempt takes the handle,
    a failed attempt puts it back, a successful one leaves the slot empty.
    """
    slot = HandleSlot(acker.delivery) if isinstance(acker, OmniAcker) else None

    async def attempt() -> None:
        if isinstance(acker, RedisAcker):
            if action == FinalizeAction.NACK:
                await acker.queue.nack(acker.entry_id, task)
            elif action == FinalizeAction.REJECT:
                await acker.queue.reject(acker.entry_id)
            else:
                await acker.queue.ack(acker.entry_id)

        elif isinstance(acker, RabbitMqAcker):
            if action == FinalizeAction.NACK:
                await rabbitmq.nack_message(acker.message)
            elif action == FinalizeAction.REJECT:
                await rabbitmq.reject_message(acker.message)
            else:
                await rabbitmq.ack_message(acker.message)

        elif isinstance(acker, OmniAcker):
            handle = slot.take()
            try:
                if action == FinalizeAction.NACK:
                    await handle.nack()
                else:
                    await handle.ack()
            except FinalizeError as e:
                slot.put(e.delivery)
                raise e.error

        else:
            raise TypeError(f"Unknown acker: {type(acker).__name__}")

    await run_with_retries(attempt)


class TaskQueueDelivery:
    """
    A received task waiting to be acked or nacked.

    Attributes:
        id: K-sortable identifier, for logging and correlation only
        task: The decoded task (shared, read-only)
    """

    __slots__ = ("_id", "_task", "_acker")

    def __init__(self, delivery_id: str, task: QueueTask, acker: Acker):
        self._id = delivery_id
        self._task = task
        self._acker: Optional[Acker] = acker

    @classmethod
    def from_task(
        cls,
        task: QueueTask,
        acker: Acker,
        timestamp: Optional[dt.datetime] = None,
    ) -> "TaskQueueDelivery":
        """The `timestamp` is when this task is delivered at."""
        return cls(new_delivery_id(timestamp), task, acker)

    @property
    def id(self) -> str:
        return self._id

    @property
    def task(self) -> QueueTask:
        return self._task

    async def ack(self) -> None:
        """
        Acknowledge successful processing.

        Raises:
            DeliveryConsumedError: If this delivery was already finalized
            TaskQueueError: If the transport failed after all retries;
                the task must then be treated as still in flight
        """
        acker = self._release()
        logger.trace(f"ack {self._id}")
        await finalize(acker, FinalizeAction.ACK, self._task)

    async def nack(self) -> None:
        """
        Hand the task back to the transport for redelivery.

        Raises:
            DeliveryConsumedError: If this delivery was already finalized
            TaskQueueError: If the transport failed after all retries
        """
        acker = self._release()
        logger.trace(f"nack {self._id}")
        await finalize(acker, FinalizeAction.NACK, self._task)

    def _release(self) -> Acker:
        # Taken before any I/O, so concurrent callers cannot both finalize
        acker, self._acker = self._acker, None
        if acker is None:
            raise DeliveryConsumedError(f"delivery {self._id} was already acked or nacked")
        return acker

    def __repr__(self) -> str:
        return f"TaskQueueDelivery(id={self._id!r}, task_type={self._task.task_type()!r})"
