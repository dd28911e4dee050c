"""
Queue Error Taxonomy

Every failure that escapes the task queue layer is a TaskQueueError whose
kind decides whether the retry policy may replay the call.
"""
from enum import StrEnum
from typing import Optional


class ErrorKind(StrEnum):
    """Error classification used by the retry policy."""
    QUEUE = "queue"                    # Transport failure, retryable
    DECODE = "decode"                  # Payload is not a valid task
    EMPTY_DELIVERY = "empty_delivery"  # Transport handed back no payload
    STARTUP = "startup"                # Transport could not be built


class TaskQueueError(Exception):
    """
    Base class for task queue failures.

    Attributes:
        kind: Classification of the failure
        task_type: Type of the task involved, when known
        delivery_id: Identifier of the delivery involved, when known
    """
    kind: ErrorKind = ErrorKind.QUEUE

    def __init__(
        self,
        message: str,
        *,
        task_type: Optional[str] = None,
        delivery_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.task_type = task_type
        self.delivery_id = delivery_id

    def __str__(self) -> str:
        context = []
        if self.task_type:
            context.append(f"task_type={self.task_type}")
        if self.delivery_id:
            context.append(f"delivery_id={self.delivery_id}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class QueueTransportError(TaskQueueError):
    """Raised when the backend connection fails (network, broker protocol, store down)."""
    kind = ErrorKind.QUEUE


class TaskDecodeError(TaskQueueError):
    """Raised when a payload is present but is not a valid task encoding."""
    kind = ErrorKind.DECODE


class EmptyDeliveryError(TaskQueueError):
    """Raised when a transport returns a delivery without any payload."""
    kind = ErrorKind.EMPTY_DELIVERY


class QueueStartupError(TaskQueueError):
    """Raised when the configured transport cannot be established."""
    kind = ErrorKind.STARTUP


class DeliveryConsumedError(RuntimeError):
    """Raised when a delivery is acked or nacked after it was already finalized."""
    pass
