"""
Worker Logging
One loguru sink per process, plus structured lifecycle events for deliveries.
"""
import sys
from typing import Optional

from loguru import logger

from webhook_queue.config import Settings, get_settings

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "{message}"
)


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Install the process-wide loguru sink on stderr.

    Production processes and anything with `enable_structured_logging`
    emit one JSON object per record, so the fields bound by
    log_queue_event() survive; other environments get colored lines.
    """
    settings = settings or get_settings()
    structured = settings.enable_structured_logging or settings.environment == "production"

    logger.remove()
    if structured:
        logger.add(sys.stderr, format="{message}", level=settings.log_level, serialize=True)
    else:
        logger.add(sys.stderr, format=CONSOLE_FORMAT, level=settings.log_level, colorize=True)

    logger.debug(
        f"Worker logging ready (environment={settings.environment}, "
        f"level={settings.log_level}, structured={structured})"
    )


def log_queue_event(
    event_type: str,
    delivery_id: str,
    task_type: str,
    duration_ms: float | None = None,
    **context
):
    """
    Log one delivery lifecycle event ("processed", "redelivered", ...).

    The delivery id, task type, rounded duration and any extra context
    (backend, error, ...) are bound to the record as fields.
    """
    fields = {
        "event_type": event_type,
        "delivery_id": delivery_id,
        "task_type": task_type,
        **context,
    }
    if duration_ms is not None:
        fields["duration_ms"] = round(duration_ms, 2)

    logger.bind(**fields).info(f"{task_type} | {event_type}")
