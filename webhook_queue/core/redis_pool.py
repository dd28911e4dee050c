"""
Redis Connection Pools
Single-node and cluster clients, verified with a ping before use.
"""
from redis.asyncio import BlockingConnectionPool, Redis
from redis.asyncio.cluster import RedisCluster
from redis.exceptions import RedisError
from loguru import logger

from webhook_queue.config import Settings
from webhook_queue.core.errors import QueueStartupError


def _redacted(dsn: str) -> str:
    return dsn.split("@")[-1]


async def _ping(client, dsn: str) -> None:
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        raise QueueStartupError(f"Cannot reach Redis at {_redacted(dsn)}: {e}") from e


async def new_redis_pool(dsn: str, settings: Settings) -> Redis:
    """
    Connect to a single Redis node.

    Raises:
        QueueStartupError: If the server does not answer
    """
    logger.info(
        f"Connecting to Redis at {_redacted(dsn)}",
        extra={"max_connections": settings.redis_pool_max_size}
    )
    pool = BlockingConnectionPool.from_url(
        dsn,
        max_connections=settings.redis_pool_max_size,
        timeout=5,  # wait up to 5s for a free connection
    )
    client = Redis(connection_pool=pool)
    await _ping(client, dsn)
    return client


async def new_redis_pool_clustered(dsn: str, settings: Settings) -> RedisCluster:
    """
    Connect to a Redis Cluster through one of its nodes.

    Raises:
        QueueStartupError: If the cluster does not answer
    """
    logger.info(
        f"Connecting to Redis Cluster at {_redacted(dsn)}",
        extra={"max_connections": settings.redis_pool_max_size}
    )
    try:
        client = RedisCluster.from_url(dsn, max_connections=settings.redis_pool_max_size)
    except (RedisError, ValueError) as e:
        raise QueueStartupError(f"Invalid Redis Cluster DSN {_redacted(dsn)}: {e}") from e
    await _ping(client, dsn)
    return client
