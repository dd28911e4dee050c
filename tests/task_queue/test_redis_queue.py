"""
Tests for the Redis stream queue backend, against a mocked client.
"""

import datetime as dt
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from webhook_queue.core.errors import QueueStartupError, QueueTransportError
from webhook_queue.task_queue.redis import (
    CONSUMER_GROUP,
    RedisQueueConsumer,
    RedisQueueInner,
    RedisQueueProducer,
    new_pair,
)
from webhook_queue.task_queue.tasks import decode_task, encode_task


@pytest.fixture
def client():
    client = MagicMock()
    # One AsyncMock per registered script: promote, ack, nack
    client.register_script.side_effect = [AsyncMock(), AsyncMock(), AsyncMock()]
    client.xgroup_create = AsyncMock()
    client.xadd = AsyncMock()
    client.zadd = AsyncMock()
    client.xreadgroup = AsyncMock(return_value=[])
    client.xautoclaim = AsyncMock(return_value=[b"0-0", [], []])
    return client


@pytest.fixture
def inner(client):
    return RedisQueueInner(client, prefix="batch", ack_deadline_ms=1000)


class TestRedisQueueInner:

    def test_keys_share_hash_tag(self, inner):
        assert inner.main_key == "{batch_task_queue}_main"
        assert inner.delayed_key == "{batch_task_queue}_delayed"

    def test_keys_without_prefix(self):
        unprefixed = RedisQueueInner(MagicMock())

        assert unprefixed.main_key == "{task_queue}_main"
        assert unprefixed.delayed_key == "{task_queue}_delayed"

    async def test_send_immediate_adds_to_stream(self, inner, client, message_task):
        await inner.send(message_task)

        key, fields = client.xadd.await_args.args
        assert key == inner.main_key
        assert decode_task(fields["data"]) == message_task
        client.zadd.assert_not_awaited()

    async def test_send_delayed_goes_to_sorted_set(self, inner, client, message_task):
        before_ms = int(dt.datetime.now(dt.UTC).timestamp() * 1000)

        await inner.send(message_task, dt.timedelta(seconds=5))

        key, mapping = client.zadd.await_args.args
        assert key == inner.delayed_key
        (member, score), = mapping.items()
        assert member.split(b"|", 1)[1] == encode_task(message_task)
        assert score >= before_ms + 5000
        client.xadd.assert_not_awaited()

    async def test_send_failure_is_transport_error(self, inner, client, message_task):
        client.xadd.side_effect = RedisConnectionError("refused")

        with pytest.raises(QueueTransportError):
            await inner.send(message_task)

    async def test_receive_parses_entries(self, inner, client, message_task):
        client.xreadgroup.return_value = [
            [
                inner.main_key.encode(),
                [(b"1700000000000-0", {b"data": encode_task(message_task), b"visible_at": b"1700000000000"})],
            ]
        ]

        entries = await inner.receive_all(128, deadline=0.1)

        assert len(entries) == 1
        assert entries[0].entry_id == "1700000000000-0"
        assert decode_task(entries[0].payload) == message_task
        assert entries[0].visible_at == dt.datetime.fromtimestamp(1_700_000_000, tz=dt.UTC)
        assert client.xreadgroup.await_args.args[0] == CONSUMER_GROUP

    async def test_receive_promotes_delayed_before_reading(self, inner, client):
        await inner.receive_all(128, deadline=0.05)

        inner._promote_delayed.assert_awaited()
        assert inner._promote_delayed.await_args.kwargs["keys"] == [inner.delayed_key, inner.main_key]

    async def test_receive_returns_reclaimed_entries_first(self, inner, client, message_task):
        client.xautoclaim.return_value = [
            b"0-0",
            [(b"5-0", {b"data": encode_task(message_task), b"visible_at": b"5"})],
            [],
        ]

        entries = await inner.receive_all(128, deadline=1.0)

        assert [e.entry_id for e in entries] == ["5-0"]
        client.xreadgroup.assert_not_awaited()
        assert client.xautoclaim.await_args.kwargs["min_idle_time"] == 1000

    async def test_receive_timeout_returns_empty(self, inner):
        assert await inner.receive_all(128, deadline=0.05) == []

    async def test_receive_failure_is_transport_error(self, inner, client):
        client.xautoclaim.side_effect = RedisConnectionError("refused")

        with pytest.raises(QueueTransportError):
            await inner.receive_all(128, deadline=0.05)

    async def test_ack_runs_script(self, inner):
        await inner.ack("1-0")

        inner._ack.assert_awaited_once_with(keys=[inner.main_key], args=[CONSUMER_GROUP, "1-0"])

    async def test_nack_readds_task(self, inner, message_task):
        await inner.nack("1-0", message_task)

        args = inner._nack.await_args.kwargs["args"]
        assert args[:3] == [CONSUMER_GROUP, "1-0", encode_task(message_task)]

    async def test_ack_failure_is_transport_error(self, inner):
        inner._ack.side_effect = RedisConnectionError("refused")

        with pytest.raises(QueueTransportError):
            await inner.ack("1-0")

    async def test_ensure_group_ignores_existing_group(self, inner, client):
        client.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")

        await inner.ensure_group()


class TestNewPair:

    async def test_builds_producer_and_consumer(self, client):
        producer, consumer = await new_pair(client, prefix="p")

        assert isinstance(producer, RedisQueueProducer)
        assert isinstance(consumer, RedisQueueConsumer)
        assert producer.inner is consumer.inner
        client.xgroup_create.assert_awaited_once()

    async def test_group_failure_is_startup_error(self, client):
        client.xgroup_create.side_effect = RedisConnectionError("refused")

        with pytest.raises(QueueStartupError):
            await new_pair(client)
