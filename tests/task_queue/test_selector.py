"""
Tests for backend selection in new_pair().
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from webhook_queue.config import QueueType, Settings
from webhook_queue.core.errors import QueueStartupError
from webhook_queue.task_queue import DEFAULT_RABBIT_PREFETCH, new_pair
from webhook_queue.task_queue.rabbitmq import RabbitMqConsumer, RabbitMqProducer
from webhook_queue.task_queue.redis import RedisQueueConsumer, RedisQueueInner, RedisQueueProducer


@pytest.fixture
def redis_pair():
    inner = MagicMock(spec=RedisQueueInner)
    return RedisQueueProducer(inner), RedisQueueConsumer(inner)


@pytest.fixture
def rabbit_pair():
    return RabbitMqProducer(MagicMock(), "q"), RabbitMqConsumer(MagicMock())


class TestNewPair:

    async def test_memory_pair_round_trips(self, message_task):
        producer, consumer = await new_pair(
            Settings(queue_type=QueueType.MEMORY, queue_receive_timeout_seconds=0.2)
        )

        await producer.send(message_task)
        batch = await consumer.receive_all()

        assert producer.backend == "memory"
        assert consumer.receive_timeout == 0.2
        assert [d.task for d in batch] == [message_task]

    async def test_memory_pairs_are_isolated(self, message_task):
        settings = Settings(queue_receive_timeout_seconds=0.1)
        producer_a, _ = await new_pair(settings)
        _, consumer_b = await new_pair(settings)

        await producer_a.send(message_task)

        assert len(await consumer_b.receive_all()) == 0

    async def test_redis_uses_single_node_pool(self, monkeypatch, redis_pair):
        client = MagicMock()
        pool = AsyncMock(return_value=client)
        clustered = AsyncMock()
        build = AsyncMock(return_value=redis_pair)
        monkeypatch.setattr("webhook_queue.task_queue.new_redis_pool", pool)
        monkeypatch.setattr("webhook_queue.task_queue.new_redis_pool_clustered", clustered)
        monkeypatch.setattr("webhook_queue.task_queue.redis.new_pair", build)
        settings = Settings(queue_type=QueueType.REDIS, queue_dsn="redis://q:6379", redis_ack_deadline_ms=500)

        producer, _ = await new_pair(settings, prefix="batch")

        pool.assert_awaited_once_with("redis://q:6379", settings)
        clustered.assert_not_awaited()
        build.assert_awaited_once_with(client, "batch", 500)
        assert producer.backend == "redis"

    async def test_redis_falls_back_to_redis_dsn(self, monkeypatch, redis_pair):
        pool = AsyncMock(return_value=MagicMock())
        monkeypatch.setattr("webhook_queue.task_queue.new_redis_pool", pool)
        monkeypatch.setattr("webhook_queue.task_queue.redis.new_pair", AsyncMock(return_value=redis_pair))

        await new_pair(Settings(queue_type=QueueType.REDIS, redis_dsn="redis://cache:6379"))

        assert pool.await_args.args[0] == "redis://cache:6379"

    async def test_redis_cluster_uses_clustered_pool(self, monkeypatch, redis_pair):
        pool = AsyncMock()
        clustered = AsyncMock(return_value=MagicMock())
        monkeypatch.setattr("webhook_queue.task_queue.new_redis_pool", pool)
        monkeypatch.setattr("webhook_queue.task_queue.new_redis_pool_clustered", clustered)
        monkeypatch.setattr("webhook_queue.task_queue.redis.new_pair", AsyncMock(return_value=redis_pair))

        await new_pair(Settings(queue_type=QueueType.REDIS_CLUSTER, queue_dsn="redis://node1:7000"))

        clustered.assert_awaited_once()
        pool.assert_not_awaited()

    async def test_rabbitmq_queue_name_and_default_prefetch(self, monkeypatch, rabbit_pair):
        build = AsyncMock(return_value=rabbit_pair)
        monkeypatch.setattr("webhook_queue.task_queue.rabbitmq.new_pair", build)

        producer, _ = await new_pair(
            Settings(queue_type=QueueType.RABBITMQ, queue_dsn="amqp://mq"), prefix="batch"
        )

        build.assert_awaited_once_with("amqp://mq", "batch-message-queue", DEFAULT_RABBIT_PREFETCH)
        assert DEFAULT_RABBIT_PREFETCH == 1
        assert producer.backend == "rabbitmq"

    async def test_rabbitmq_without_prefix_and_custom_prefetch(self, monkeypatch, rabbit_pair):
        build = AsyncMock(return_value=rabbit_pair)
        monkeypatch.setattr("webhook_queue.task_queue.rabbitmq.new_pair", build)

        await new_pair(
            Settings(
                queue_type=QueueType.RABBITMQ,
                queue_dsn="amqp://mq",
                rabbit_consumer_prefetch_size=16,
            )
        )

        build.assert_awaited_once_with("amqp://mq", "-message-queue", 16)

    async def test_missing_dsn_is_startup_error(self):
        with pytest.raises(QueueStartupError):
            await new_pair(Settings(queue_type=QueueType.RABBITMQ))

    async def test_startup_failure_propagates(self, monkeypatch):
        monkeypatch.setattr(
            "webhook_queue.task_queue.new_redis_pool",
            AsyncMock(side_effect=QueueStartupError("Cannot reach Redis")),
        )

        with pytest.raises(QueueStartupError):
            await new_pair(Settings(queue_type=QueueType.REDIS, queue_dsn="redis://down:6379"))

    async def test_rabbitmq_prefetch_zero_is_kept(self, monkeypatch, rabbit_pair):
        build = AsyncMock(return_value=rabbit_pair)
        monkeypatch.setattr("webhook_queue.task_queue.rabbitmq.new_pair", build)

        await new_pair(
            Settings(
                queue_type=QueueType.RABBITMQ,
                queue_dsn="amqp://mq",
                rabbit_consumer_prefetch_size=0,
            )
        )

        assert build.await_args.args[2] == 0
