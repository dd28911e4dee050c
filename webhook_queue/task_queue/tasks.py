"""
Queue Task Model

Work items carried by the task queue, encoded as a JSON tagged union.
The "type" discriminant lets a consumer running other code (rolling deploy)
reject task kinds it does not know instead of misparsing them.
"""

from typing import Annotated, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from webhook_queue.core.errors import EmptyDeliveryError, TaskDecodeError
from webhook_queue.core.types import (
    ApplicationId,
    AttemptCount,
    EndpointId,
    MessageAttemptTriggerType,
    MessageId,
)


class _QueueTaskModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    TASK_TYPE: ClassVar[str]

    def task_type(self) -> str:
        """Returns a type string, for logging."""
        return self.TASK_TYPE


class HealthCheckTask(_QueueTaskModel):
    """Check that the enqueue -> dequeue path is alive."""
    TASK_TYPE: ClassVar[str] = "HealthCheck"

    type: Literal["HealthCheck"] = "HealthCheck"


class MessageTask(_QueueTaskModel):
    """
    One delivery attempt of a message to a single endpoint.

    Attributes:
        msg_id: Message being delivered
        app_id: Application owning the message
        endpoint_id: Endpoint to deliver to
        trigger_type: Scheduled delivery or manual resend
        attempt_count: Attempts made so far (bumped by the processor, not the queue)
    """
    TASK_TYPE: ClassVar[str] = "MessageV1"

    type: Literal["MessageV1"] = "MessageV1"
    msg_id: MessageId
    app_id: ApplicationId
    endpoint_id: EndpointId
    trigger_type: MessageAttemptTriggerType
    attempt_count: AttemptCount = 0

    @classmethod
    def new_task(
        cls,
        msg_id: str,
        app_id: str,
        endpoint_id: str,
        trigger_type: MessageAttemptTriggerType,
    ) -> "MessageTask":
        return cls(
            msg_id=msg_id,
            app_id=app_id,
            endpoint_id=endpoint_id,
            trigger_type=trigger_type,
            attempt_count=0,
        )


class MessageTaskBatch(_QueueTaskModel):
    """
    Fan-out of a message to every endpoint of an application.

    Attributes:
        msg_id: Message being delivered
        app_id: Application owning the message
        force_endpoint: Deliver only to this endpoint, if set
        trigger_type: Scheduled delivery or manual resend
    """
    TASK_TYPE: ClassVar[str] = "MessageBatch"

    type: Literal["MessageBatch"] = "MessageBatch"
    msg_id: MessageId
    app_id: ApplicationId
    force_endpoint: Optional[EndpointId] = None
    trigger_type: MessageAttemptTriggerType

    @classmethod
    def new_task(
        cls,
        msg_id: str,
        app_id: str,
        force_endpoint: Optional[str],
        trigger_type: MessageAttemptTriggerType,
    ) -> "MessageTaskBatch":
        return cls(
            msg_id=msg_id,
            app_id=app_id,
            force_endpoint=force_endpoint,
            trigger_type=trigger_type,
        )


QueueTask = Annotated[
    Union[HealthCheckTask, MessageTask, MessageTaskBatch],
    Field(discriminator="type"),
]

_task_adapter: TypeAdapter[QueueTask] = TypeAdapter(QueueTask)


def encode_task(task: QueueTask) -> bytes:
    """Serialize a task to its tagged JSON wire form."""
    return _task_adapter.dump_json(task, by_alias=True)


def decode_task(
    payload: Optional[Union[bytes, str]],
    delivery_id: Optional[str] = None,
) -> QueueTask:
    """
    Parse a task from its tagged JSON wire form.

    Args:
        payload: Raw payload as received from the transport
        delivery_id: Delivery being decoded, for error context

    Raises:
        EmptyDeliveryError: If the transport returned no payload
        TaskDecodeError: If the payload is not a known task encoding
    """
    if payload is None or len(payload) == 0:
        raise EmptyDeliveryError("Unexpected empty delivery", delivery_id=delivery_id)

    try:
        return _task_adapter.validate_json(payload)
    except ValidationError as e:
        raise TaskDecodeError(
            f"Failed to decode queue task: {e.error_count()} validation error(s)",
            delivery_id=delivery_id,
        ) from e
