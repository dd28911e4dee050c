"""
Queue Health Check

Checks that the enqueue path of the configured transport is alive by
sending a HealthCheck task through it.
"""
from enum import StrEnum
from typing import Optional

from loguru import logger
from pydantic import BaseModel

from webhook_queue.core.errors import TaskQueueError
from webhook_queue.task_queue.producer import TaskQueueProducer
from webhook_queue.task_queue.tasks import HealthCheckTask


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class QueueHealth(BaseModel):
    status: HealthStatus
    backend: str
    error: Optional[str] = None


async def check_queue_health(producer: TaskQueueProducer) -> QueueHealth:
    """
    Send a HealthCheck task and report the outcome.

    Transport failures are reported in the result, never raised.
    """
    try:
        await producer.send(HealthCheckTask())
    except TaskQueueError as e:
        logger.error(f"Queue health check failed: {e}")
        return QueueHealth(
            status=HealthStatus.UNHEALTHY,
            backend=producer.backend,
            error=str(e),
        )

    return QueueHealth(status=HealthStatus.HEALTHY, backend=producer.backend)
