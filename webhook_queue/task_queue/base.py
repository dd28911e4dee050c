"""
Generic Queue Backend Interface

Abstract producer/consumer/delivery contracts for backends that plug in
behind the task queue without a dedicated adapter (the in-process queue).

Deliveries are move-based: ack() and nack() consume the handle, and a failed
call hands it back inside a FinalizeError so the caller can try again.
"""

import datetime as dt
from abc import ABC, abstractmethod
from typing import Optional


class FinalizeError(Exception):
    """
    Failed ack/nack that returns the consumed delivery handle.

    Attributes:
        error: The underlying failure
        delivery: The handle, usable again for the next attempt
    """

    def __init__(self, error: Exception, delivery: "BackendDelivery"):
        super().__init__(str(error))
        self.error = error
        self.delivery = delivery


class BackendDelivery(ABC):
    """
    A single received payload, owned by whoever holds it.

    Implementations must reject a second ack/nack after a successful one.
    """

    @property
    @abstractmethod
    def payload(self) -> Optional[bytes]:
        """Raw payload, or None if the transport delivered nothing."""
        pass

    @property
    @abstractmethod
    def visible_at(self) -> dt.datetime:
        """When the payload became (or was scheduled to become) visible."""
        pass

    @abstractmethod
    async def ack(self) -> None:
        """
        Acknowledge successful processing.

        Raises:
            FinalizeError: On failure, carrying this handle back
        """
        pass

    @abstractmethod
    async def nack(self) -> None:
        """
        Return the payload to the queue for redelivery.

        Raises:
            FinalizeError: On failure, carrying this handle back
        """
        pass


class ScheduledQueueProducer(ABC):
    """Producer able to hold a payload back until a delay has elapsed."""

    @abstractmethod
    async def send(self, payload: bytes) -> None:
        """Enqueue a payload for immediate delivery."""
        pass

    @abstractmethod
    async def send_scheduled(self, payload: bytes, delay: dt.timedelta) -> None:
        """Enqueue a payload that becomes visible after `delay`."""
        pass


class QueueConsumerBackend(ABC):
    """Batch consumer of raw payloads."""

    @abstractmethod
    async def receive_all(
        self, max_messages: int, deadline: float
    ) -> list[BackendDelivery]:
        """
        Receive up to `max_messages` payloads.

        Args:
            max_messages: Batch cap
            deadline: Seconds to wait for the first payload

        Returns:
            Received deliveries, empty if nothing arrived before the deadline
        """
        pass
