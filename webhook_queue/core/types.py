from enum import IntEnum
from typing import Annotated

from pydantic import Field, StringConstraints

MessageId = Annotated[str, StringConstraints(min_length=1)]
ApplicationId = Annotated[str, StringConstraints(min_length=1)]
EndpointId = Annotated[str, StringConstraints(min_length=1)]

# Attempt counters travel as unsigned 16-bit integers on the wire
AttemptCount = Annotated[int, Field(ge=0, le=65_535)]


class MessageAttemptTriggerType(IntEnum):
    """What caused a delivery attempt. Serialized as its integer value."""
    SCHEDULED = 0
    MANUAL = 1
