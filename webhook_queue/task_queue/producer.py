"""
Task Queue Producer

Sends tasks through whichever transport the producer was built for.
"""

import datetime as dt
from typing import Optional, Union

from loguru import logger

from webhook_queue.core.retry import run_with_retries
from webhook_queue.task_queue.base import ScheduledQueueProducer
from webhook_queue.task_queue.rabbitmq import RabbitMqProducer
from webhook_queue.task_queue.redis import RedisQueueProducer
from webhook_queue.task_queue.tasks import QueueTask, encode_task

ProducerBackend = Union[RedisQueueProducer, RabbitMqProducer, ScheduledQueueProducer]


class TaskQueueProducer:
    """
    Long-lived, shareable sending handle bound to one transport.

    Holds no per-task state, so one instance can serve every call site.
    """

    def __init__(self, inner: ProducerBackend):
        if not isinstance(inner, (RedisQueueProducer, RabbitMqProducer, ScheduledQueueProducer)):
            raise TypeError(f"Unsupported producer backend: {type(inner).__name__}")
        self._inner = inner

    @property
    def backend(self) -> str:
        """Transport name, for logging and health output."""
        if isinstance(self._inner, RedisQueueProducer):
            return "redis"
        if isinstance(self._inner, RabbitMqProducer):
            return "rabbitmq"
        return "memory"

    async def send(self, task: QueueTask, delay: Optional[dt.timedelta] = None) -> None:
        """
        Enqueue a task, optionally hidden from consumers until `delay` elapses.

        Transport failures are retried on the fixed schedule. If this raises,
        the task was not enqueued.

        Args:
            task: Task to enqueue (shared as-is across retry attempts)
            delay: Time before the task becomes visible

        Raises:
            TaskQueueError: If the send failed after all retries
        """
        inner = self._inner

        async def attempt() -> None:
            if isinstance(inner, RedisQueueProducer):
                await inner.send(task, delay)
            elif isinstance(inner, RabbitMqProducer):
                await inner.send(task, delay)
            elif delay:
                await inner.send_scheduled(encode_task(task), delay)
            else:
                await inner.send(encode_task(task))

        await run_with_retries(attempt)
        logger.trace(
            f"sent {task.task_type()} via {self.backend}"
            + (f" (delay {delay.total_seconds()}s)" if delay else "")
        )
