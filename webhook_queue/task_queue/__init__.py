"""
Task Queue System

Broker-agnostic queue for webhook delivery work:
- Tagged task model shared by producers and consumers
- Producer / consumer handles bound to one transport
- Deliveries finalized exactly once (ack or nack)
- Fast bounded retries for transient transport failures
- Redis, Redis Cluster, RabbitMQ and in-memory transports
- Polling worker and enqueue health check on top
"""

from typing import Optional

from loguru import logger

from webhook_queue.config import QueueType, Settings
from webhook_queue.core.redis_pool import new_redis_pool, new_redis_pool_clustered
from webhook_queue.task_queue import rabbitmq, redis
from webhook_queue.task_queue.consumer import (
    MAX_MESSAGES,
    ReceivedBatch,
    TaskQueueConsumer,
)
from webhook_queue.task_queue.delivery import TaskQueueDelivery
from webhook_queue.task_queue.health import HealthStatus, QueueHealth, check_queue_health
from webhook_queue.task_queue.memory import MemoryQueueBackend
from webhook_queue.task_queue.producer import TaskQueueProducer
from webhook_queue.task_queue.tasks import (
    HealthCheckTask,
    MessageTask,
    MessageTaskBatch,
    QueueTask,
    decode_task,
    encode_task,
)
from webhook_queue.task_queue.worker import QueueWorker

# Safest default: least likely to let one slow consumer starve the others
DEFAULT_RABBIT_PREFETCH = 1


async def new_pair(
    settings: Settings,
    prefix: Optional[str] = None,
) -> tuple[TaskQueueProducer, TaskQueueConsumer]:
    """
    Build the producer/consumer pair for the configured transport.

    Call once per process (or once per queue prefix). Failures are fatal to
    startup and are not retried.

    Args:
        settings: Application settings selecting the backend
        prefix: Queue name prefix, e.g. to split immediate and batch work

    Raises:
        QueueStartupError: If the transport cannot be established
    """
    backend = settings.queue_backend()
    receive_timeout = settings.queue_receive_timeout_seconds
    logger.info(f"Building task queue (backend={backend.kind.value}, prefix={prefix!r})")

    if backend.kind == QueueType.REDIS:
        client = await new_redis_pool(backend.dsn, settings)
        producer, consumer = await redis.new_pair(
            client, prefix, settings.redis_ack_deadline_ms
        )
    elif backend.kind == QueueType.REDIS_CLUSTER:
        client = await new_redis_pool_clustered(backend.dsn, settings)
        producer, consumer = await redis.new_pair(
            client, prefix, settings.redis_ack_deadline_ms
        )
    elif backend.kind == QueueType.RABBITMQ:
        queue = f"{prefix or ''}-message-queue"
        prefetch_size = settings.rabbit_consumer_prefetch_size
        if prefetch_size is None:
            prefetch_size = DEFAULT_RABBIT_PREFETCH
        producer, consumer = await rabbitmq.new_pair(backend.dsn, queue, prefetch_size)
    else:
        producer, consumer = MemoryQueueBackend.build_pair()

    return (
        TaskQueueProducer(producer),
        TaskQueueConsumer(consumer, receive_timeout=receive_timeout),
    )


__all__ = [
    "new_pair",
    "TaskQueueProducer",
    "TaskQueueConsumer",
    "TaskQueueDelivery",
    "ReceivedBatch",
    "MemoryQueueBackend",
    "QueueTask",
    "HealthCheckTask",
    "MessageTask",
    "MessageTaskBatch",
    "encode_task",
    "decode_task",
    "MAX_MESSAGES",
    "QueueWorker",
    "check_queue_health",
    "QueueHealth",
    "HealthStatus",
]
