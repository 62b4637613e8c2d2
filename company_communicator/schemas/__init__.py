"""Company Communicator Schemas.

- base: Common configuration and error responses
- notifications: Status endpoint payloads
- queue: Send-queue wire contract
"""

from .base import (
    CommunicatorBaseModel,
    ErrorDetail,
    ErrorResponse,
    WireModel,
)
from .notifications import DeliveryCounts, NotificationStatusResponse
from .queue import SendQueueMessage

__all__ = [
    "CommunicatorBaseModel",
    "WireModel",
    "ErrorDetail",
    "ErrorResponse",
    "DeliveryCounts",
    "NotificationStatusResponse",
    "SendQueueMessage",
]
