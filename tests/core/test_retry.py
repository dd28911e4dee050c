"""
Tests for the transport retry policy.
"""

import pytest

from webhook_queue.core.errors import (
    EmptyDeliveryError,
    QueueStartupError,
    QueueTransportError,
    TaskDecodeError,
)
from webhook_queue.core.retry import (
    RETRY_SCHEDULE,
    HandleSlot,
    Retry,
    run_with_retries,
    should_retry,
)


def flaky(failures: int, error_factory=lambda: QueueTransportError("connection reset")):
    """Async operation failing `failures` times before returning "ok"."""
    calls = {"count": 0}

    async def op():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error_factory()
        return "ok"

    return op, calls


class TestShouldRetry:

    def test_transport_errors_are_retryable(self):
        assert should_retry(QueueTransportError("down"))

    @pytest.mark.parametrize(
        "error",
        [
            TaskDecodeError("bad"),
            EmptyDeliveryError("empty"),
            QueueStartupError("nope"),
            ValueError("unrelated"),
        ],
    )
    def test_other_errors_are_not_retryable(self, error):
        assert not should_retry(error)


class TestRunWithRetries:

    def test_schedule_is_three_short_delays(self):
        assert RETRY_SCHEDULE == (0.010, 0.020, 0.040)

    async def test_success_first_try(self):
        op, calls = flaky(0)

        assert await run_with_retries(op) == "ok"
        assert calls["count"] == 1

    async def test_two_transport_failures_then_success(self):
        op, calls = flaky(2)

        assert await run_with_retries(op) == "ok"
        assert calls["count"] == 3

    async def test_one_attempt_per_schedule_slot(self):
        op, calls = flaky(len(RETRY_SCHEDULE))

        with pytest.raises(QueueTransportError):
            await run_with_retries(op)
        assert calls["count"] == len(RETRY_SCHEDULE) == 3

    async def test_exhausted_schedule_raises_last_failure(self):
        errors = iter(
            [QueueTransportError("first"), QueueTransportError("second"), QueueTransportError("third")]
        )
        op, _ = flaky(3, lambda: next(errors))

        with pytest.raises(QueueTransportError, match="third"):
            await run_with_retries(op)

    async def test_retries_wait_the_scheduled_delays(self, monkeypatch):
        slept = []

        async def fake_sleep(delay):
            slept.append(delay)

        monkeypatch.setattr("webhook_queue.core.retry.asyncio.sleep", fake_sleep)
        op, _ = flaky(2)

        assert await run_with_retries(op) == "ok"
        assert slept == [0.010, 0.020]

    async def test_non_transport_error_is_raised_without_retry(self):
        op, calls = flaky(1, lambda: TaskDecodeError("bad payload"))

        with pytest.raises(TaskDecodeError):
            await run_with_retries(op)
        assert calls["count"] == 1

    async def test_custom_schedule(self):
        op, calls = flaky(1)

        with pytest.raises(QueueTransportError):
            await run_with_retries(op, schedule=())
        assert calls["count"] == 1


class TestRetry:

    async def test_backoff_counts_retries(self):
        retry = Retry(schedule=(0.001, 0.001, 0.001))

        assert await retry.backoff(QueueTransportError("x")) is True
        assert await retry.backoff(QueueTransportError("x")) is True
        assert await retry.backoff(QueueTransportError("x")) is False
        assert retry.retries == 2

    async def test_single_slot_allows_no_retry(self):
        retry = Retry(schedule=(0.001,))

        assert await retry.backoff(QueueTransportError("x")) is False
        assert retry.retries == 0

    async def test_backoff_refuses_non_retryable(self):
        retry = Retry()

        assert await retry.backoff(TaskDecodeError("x")) is False
        assert retry.retries == 0


class TestHandleSlot:

    def test_take_empties_slot(self):
        slot = HandleSlot("handle")

        assert slot.take() == "handle"
        assert slot.empty

    def test_put_restores_handle(self):
        slot = HandleSlot("handle")
        handle = slot.take()
        slot.put(handle)

        assert not slot.empty
        assert slot.take() == "handle"

    def test_take_from_empty_slot_raises(self):
        slot = HandleSlot(None)

        with pytest.raises(RuntimeError):
            slot.take()
