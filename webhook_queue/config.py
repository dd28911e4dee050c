"""
Centralized Configuration System
Environment-aware settings for the task queue and its workers.
"""
from dataclasses import dataclass
from enum import StrEnum
from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from webhook_queue.core.errors import QueueStartupError


class QueueType(StrEnum):
    MEMORY = "memory"
    REDIS = "redis"
    REDIS_CLUSTER = "rediscluster"
    RABBITMQ = "rabbitmq"


@dataclass(frozen=True)
class QueueBackend:
    """Resolved queue backend: the transport kind plus its connection string."""
    kind: QueueType
    dsn: Optional[str] = None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow"
    )
    """
    Production-grade configuration management.
    Loads from environment variables with sensible defaults.
    """

    # ============================================
    # QUEUE BACKEND SELECTION
    # ============================================
    queue_type: QueueType = QueueType.MEMORY
    queue_dsn: Optional[str] = None
    redis_dsn: Optional[str] = None  # Fallback DSN for redis queue types

    # ============================================
    # TRANSPORT TUNING
    # ============================================
    redis_pool_max_size: int = 100
    redis_ack_deadline_ms: int = 45_000  # Idle time before an un-acked entry is redelivered
    rabbit_consumer_prefetch_size: Optional[int] = None  # Unset means 1; 0 means no limit
    queue_receive_timeout_seconds: float = 30.0

    # ============================================
    # WORKER
    # ============================================
    worker_max_concurrent: int = 10
    worker_poll_interval_seconds: float = 1.0

    # ============================================
    # LOGGING
    # ============================================
    log_level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    enable_structured_logging: bool = False  # JSON logs; implied when environment is production

    # ============================================
    # ENVIRONMENT
    # ============================================
    environment: Literal["development", "test", "staging", "production"] = "development"

    def queue_backend(self) -> QueueBackend:
        """
        Resolve the configured transport.

        Redis flavours fall back to `redis_dsn` when `queue_dsn` is unset.

        Raises:
            QueueStartupError: When the selected backend has no DSN
        """
        if self.queue_type == QueueType.MEMORY:
            return QueueBackend(QueueType.MEMORY)

        if self.queue_type in (QueueType.REDIS, QueueType.REDIS_CLUSTER):
            dsn = self.queue_dsn or self.redis_dsn
        else:
            dsn = self.queue_dsn

        if not dsn:
            raise QueueStartupError(
                f"queue_type={self.queue_type.value} requires a queue DSN"
            )
        return QueueBackend(self.queue_type, dsn)


@lru_cache()
def get_settings() -> Settings:
    """
    Singleton pattern for settings.
    Uses LRU cache to ensure only one Settings instance exists.
    """
    return Settings()
