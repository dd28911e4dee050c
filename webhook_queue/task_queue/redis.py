"""
Redis Queue Backend

Task queue on top of a Redis stream with a consumer group, for both
single-node Redis and Redis Cluster.

Layout (all keys share one hash tag so scripts stay cluster-safe; without a
prefix the tag is `{task_queue}`):
- `{<prefix>_task_queue}_main`     stream of visible tasks
- `{<prefix>_task_queue}_delayed`  sorted set of delayed tasks, scored by
                                    visibility time in milliseconds

Received entries stay in the group's pending list until acked. Entries left
pending longer than the ack deadline (crashed worker) are reclaimed and
delivered again.
"""

import asyncio
import datetime as dt
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Union

from loguru import logger
from redis.asyncio import Redis
from redis.asyncio.cluster import RedisCluster
from redis.exceptions import RedisError, ResponseError

from webhook_queue.core.errors import QueueStartupError, QueueTransportError
from webhook_queue.task_queue.tasks import QueueTask, encode_task

RedisClient = Union[Redis, RedisCluster]

CONSUMER_GROUP = "webhook_queue_workers"

# Upper bound for a single blocking read, so due delayed tasks get promoted
BLOCK_SLICE_SECONDS = 1.0

_PROMOTE_DELAYED = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'WITHSCORES', 'LIMIT', 0, ARGV[2])
for i = 1, #due, 2 do
    local member = due[i]
    local sep = string.find(member, '|', 1, true)
    redis.call('XADD', KEYS[2], '*', 'data', string.sub(member, sep + 1), 'visible_at', due[i + 1])
    redis.call('ZREM', KEYS[1], member)
end
return #due / 2
"""

_ACK = """
redis.call('XACK', KEYS[1], ARGV[1], ARGV[2])
return redis.call('XDEL', KEYS[1], ARGV[2])
"""

_NACK = """
redis.call('XADD', KEYS[1], '*', 'data', ARGV[3], 'visible_at', ARGV[4])
redis.call('XACK', KEYS[1], ARGV[1], ARGV[2])
return redis.call('XDEL', KEYS[1], ARGV[2])
"""


def _now_ms() -> int:
    return int(dt.datetime.now(dt.UTC).timestamp() * 1000)


@asynccontextmanager
async def _transport_errors(action: str) -> AsyncIterator[None]:
    try:
        yield
    except (RedisError, OSError) as e:
        raise QueueTransportError(f"Redis {action} failed: {e}") from e


@dataclass(frozen=True)
class RedisEntry:
    """A stream entry as read from Redis: native id, raw payload, visibility time."""
    entry_id: str
    payload: Optional[bytes]
    visible_at: dt.datetime


class RedisQueueInner:
    """
    Connection and key bookkeeping shared by a Redis producer/consumer pair
    and by every acker handed out for their deliveries.
    """

    def __init__(
        self,
        client: RedisClient,
        prefix: Optional[str] = None,
        ack_deadline_ms: int = 45_000,
    ):
        self.client = client
        tag = f"{{{prefix}_task_queue}}" if prefix else "{task_queue}"
        self.main_key = f"{tag}_main"
        self.delayed_key = f"{tag}_delayed"
        self.consumer_name = f"consumer-{uuid.uuid4().hex[:12]}"
        self.ack_deadline_ms = ack_deadline_ms

        self._promote_delayed = client.register_script(_PROMOTE_DELAYED)
        self._ack = client.register_script(_ACK)
        self._nack = client.register_script(_NACK)

    async def ensure_group(self) -> None:
        """Create the consumer group (and stream) if missing."""
        try:
            await self.client.xgroup_create(
                self.main_key, CONSUMER_GROUP, id="0", mkstream=True
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def send(self, task: QueueTask, delay: Optional[dt.timedelta] = None) -> None:
        payload = encode_task(task)
        async with _transport_errors("send"):
            if delay and delay > dt.timedelta(0):
                visible_at = _now_ms() + int(delay.total_seconds() * 1000)
                # Unique prefix keeps identical tasks from collapsing in the set
                member = uuid.uuid4().hex.encode() + b"|" + payload
                await self.client.zadd(self.delayed_key, {member: visible_at})
            else:
                await self.client.xadd(
                    self.main_key, {"data": payload, "visible_at": _now_ms()}
                )

    async def receive_all(self, max_messages: int, deadline: float) -> list[RedisEntry]:
        loop = asyncio.get_running_loop()
        expires = loop.time() + deadline

        async with _transport_errors("receive"):
            entries = await self._reclaim_stale(max_messages)
            while not entries:
                await self._promote_delayed(
                    keys=[self.delayed_key, self.main_key],
                    args=[_now_ms(), max_messages],
                )
                remaining = expires - loop.time()
                block_ms = int(min(max(remaining, 0.0), BLOCK_SLICE_SECONDS) * 1000)
                response = await self.client.xreadgroup(
                    CONSUMER_GROUP,
                    self.consumer_name,
                    {self.main_key: ">"},
                    count=max_messages,
                    block=block_ms or None,
                )
                for _stream, messages in response or []:
                    entries.extend(self._parse(messages))
                if loop.time() >= expires:
                    break

        return entries[:max_messages]

    async def ack(self, entry_id: str) -> None:
        async with _transport_errors("ack"):
            await self._ack(keys=[self.main_key], args=[CONSUMER_GROUP, entry_id])

    async def nack(self, entry_id: str, task: QueueTask) -> None:
        async with _transport_errors("nack"):
            await self._nack(
                keys=[self.main_key],
                args=[CONSUMER_GROUP, entry_id, encode_task(task), _now_ms()],
            )

    async def reject(self, entry_id: str) -> None:
        """Drop an entry that cannot be decoded."""
        await self.ack(entry_id)

    async def _reclaim_stale(self, max_messages: int) -> list[RedisEntry]:
        response = await self.client.xautoclaim(
            self.main_key,
            CONSUMER_GROUP,
            self.consumer_name,
            min_idle_time=self.ack_deadline_ms,
            start_id="0-0",
            count=max_messages,
        )
        entries = self._parse(response[1])
        if entries:
            logger.warning(f"Reclaimed {len(entries)} stale Redis queue entries")
        return entries

    @staticmethod
    def _parse(messages: list[Any]) -> list[RedisEntry]:
        entries = []
        for entry_id, fields in messages:
            if isinstance(entry_id, bytes):
                entry_id = entry_id.decode()
            fields = fields or {}
            visible_ms = fields.get(b"visible_at") or entry_id.split("-")[0]
            entries.append(
                RedisEntry(
                    entry_id=entry_id,
                    payload=fields.get(b"data"),
                    visible_at=dt.datetime.fromtimestamp(
                        int(float(visible_ms)) / 1000, tz=dt.UTC
                    ),
                )
            )
        return entries


class RedisQueueProducer:

    def __init__(self, inner: RedisQueueInner):
        self.inner = inner

    async def send(self, task: QueueTask, delay: Optional[dt.timedelta] = None) -> None:
        await self.inner.send(task, delay)


class RedisQueueConsumer:

    def __init__(self, inner: RedisQueueInner):
        self.inner = inner

    async def receive_all(self, max_messages: int, deadline: float) -> list[RedisEntry]:
        return await self.inner.receive_all(max_messages, deadline)


async def new_pair(
    client: RedisClient,
    prefix: Optional[str] = None,
    ack_deadline_ms: int = 45_000,
) -> tuple[RedisQueueProducer, RedisQueueConsumer]:
    """
    Build a producer/consumer pair over an already connected client.

    Raises:
        QueueStartupError: If the consumer group cannot be created
    """
    inner = RedisQueueInner(client, prefix, ack_deadline_ms)
    try:
        await inner.ensure_group()
    except (RedisError, OSError) as e:
        raise QueueStartupError(f"Cannot create Redis consumer group: {e}") from e

    logger.info(f"Redis task queue ready (stream={inner.main_key}, consumer={inner.consumer_name})")
    return RedisQueueProducer(inner), RedisQueueConsumer(inner)
