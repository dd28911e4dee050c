import pytest

from webhook_queue.config import get_settings
from webhook_queue.core.types import MessageAttemptTriggerType
from webhook_queue.task_queue import MemoryQueueBackend, TaskQueueConsumer, TaskQueueProducer
from webhook_queue.task_queue.memory import MemoryQueueConsumer, MemoryQueueProducer
from webhook_queue.task_queue.tasks import MessageTask


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Every test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def message_task():
    """Returns the canonical MessageV1 task."""
    return MessageTask(
        msg_id="M1",
        app_id="A1",
        endpoint_id="E1",
        trigger_type=MessageAttemptTriggerType.SCHEDULED,
        attempt_count=0,
    )


@pytest.fixture
def memory_backend():
    return MemoryQueueBackend()


@pytest.fixture
def producer(memory_backend):
    return TaskQueueProducer(MemoryQueueProducer(memory_backend))


@pytest.fixture
def consumer(memory_backend):
    """Consumer with a short poll budget so empty receives return quickly."""
    return TaskQueueConsumer(MemoryQueueConsumer(memory_backend), receive_timeout=0.2)
