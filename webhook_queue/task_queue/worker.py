"""
Queue Worker

Background polling loop that drains a task queue consumer.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

from loguru import logger

from webhook_queue.config import Settings, get_settings
from webhook_queue.core.errors import TaskQueueError
from webhook_queue.task_queue.consumer import TaskQueueConsumer
from webhook_queue.task_queue.delivery import TaskQueueDelivery
from webhook_queue.task_queue.tasks import HealthCheckTask, QueueTask
from webhook_queue.utils.observability import log_queue_event


class QueueWorker:
    """
    Background worker for processing queued tasks.

    Repeatedly receives a batch from the consumer and processes each delivery
    with the provided handler: ack on success, nack (redeliver) on failure.
    Health check tasks are acked without reaching the handler.

    Attributes:
        consumer: Task queue consumer to drain
        handler: Async function to process each task
        max_concurrent: Maximum number of concurrent task processors
        poll_interval: Seconds to wait after an empty batch or a receive failure
    """

    def __init__(
        self,
        consumer: TaskQueueConsumer,
        handler: Callable[[QueueTask], Awaitable[None]],
        max_concurrent: int = 10,
        poll_interval: float = 1.0,
    ):
        """
        Initialize queue worker.

        Args:
            consumer: Task queue consumer to drain
            handler: Async function that processes tasks
            max_concurrent: Max concurrent task processors
            poll_interval: Seconds between polls when idle
        """
        self.consumer = consumer
        self.handler = handler
        self.max_concurrent = max_concurrent
        self.poll_interval = poll_interval
        self._running = False
        self._tasks: set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(max_concurrent)

    @classmethod
    def from_settings(
        cls,
        consumer: TaskQueueConsumer,
        handler: Callable[[QueueTask], Awaitable[None]],
        settings: Optional[Settings] = None,
    ) -> "QueueWorker":
        """Build a worker sized by the `worker_*` settings."""
        settings = settings or get_settings()
        return cls(
            consumer,
            handler,
            max_concurrent=settings.worker_max_concurrent,
            poll_interval=settings.worker_poll_interval_seconds,
        )

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Start the worker.

        Polls the consumer and processes deliveries until stop() is called.
        """
        if self._running:
            logger.warning("Worker already running")
            return

        self._running = True
        logger.info(
            f"🚀 Queue worker started (max_concurrent={self.max_concurrent}, "
            f"poll_interval={self.poll_interval}s)"
        )

        try:
            while self._running:
                try:
                    batch = await self.consumer.receive_all()
                except TaskQueueError as e:
                    logger.error(f"Failed to receive from task queue: {e}")
                    await asyncio.sleep(self.poll_interval)
                    continue

                for error in batch.errors:
                    logger.warning(f"Skipped delivery: {error}")

                if not self._running:
                    # Stopped while waiting on this batch
                    await self._hand_back(batch.deliveries)
                    break

                for delivery in batch:
                    await self._semaphore.acquire()
                    task = asyncio.create_task(self._process_delivery(delivery))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)

                if not batch.deliveries:
                    await asyncio.sleep(self.poll_interval)

        except Exception as e:
            logger.error(f"Worker crashed: {e}", exc_info=True)
            raise

        finally:
            logger.info("🛑 Queue worker stopped")

    async def stop(self) -> None:
        """
        Stop the worker.

        Gracefully shuts down:
        1. Stops receiving new batches
        2. Waits for in-flight deliveries to be finalized
        3. Cancels any remaining tasks
        """
        if not self._running:
            return

        logger.info("Stopping queue worker...")
        self._running = False

        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} tasks to complete...")
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self._tasks, return_exceptions=True),
                    timeout=30.0
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for tasks, cancelling remaining")
                for task in self._tasks:
                    task.cancel()

    async def _process_delivery(self, delivery: TaskQueueDelivery) -> None:
        """
        Process a single delivery and finalize it.

        The semaphore slot was taken by the polling loop and is released here.

        Args:
            delivery: Delivery to process
        """
        task = delivery.task
        started = time.perf_counter()
        try:
            if isinstance(task, HealthCheckTask):
                logger.debug(f"Health check {delivery.id} received")
            else:
                logger.debug(f"Processing {task.task_type()} delivery {delivery.id}")
                await self.handler(task)
        except Exception as e:
            logger.error(f"❌ Failed to process delivery {delivery.id}: {e}")
            if await self._finalize(delivery, success=False):
                log_queue_event(
                    "redelivered",
                    delivery.id,
                    task.task_type(),
                    duration_ms=(time.perf_counter() - started) * 1000,
                    error=str(e),
                )
        else:
            if await self._finalize(delivery, success=True):
                log_queue_event(
                    "processed",
                    delivery.id,
                    task.task_type(),
                    duration_ms=(time.perf_counter() - started) * 1000,
                )
        finally:
            self._semaphore.release()

    async def _hand_back(self, deliveries: list[TaskQueueDelivery]) -> None:
        if deliveries:
            logger.info(f"Returning {len(deliveries)} unprocessed deliveries to the queue")
        for delivery in deliveries:
            await self._finalize(delivery, success=False)

    async def _finalize(self, delivery: TaskQueueDelivery, success: bool) -> bool:
        """Ack or nack a delivery. Returns False if the transport kept it in flight."""
        try:
            if success:
                await delivery.ack()
            else:
                await delivery.nack()
        except TaskQueueError as e:
            logger.error(f"Failed to {'ack' if success else 'nack'} delivery {delivery.id}: {e}")
            return False
        return True
