"""Notification status schemas."""

from datetime import datetime
from uuid import UUID

from ..models import NotificationStatus
from .base import CommunicatorBaseModel


class DeliveryCounts(CommunicatorBaseModel):
    """Aggregate delivery counters as last computed by the aggregator."""

    total_recipient_count: int
    succeeded_count: int
    failed_count: int
    recipient_not_found_count: int
    canceled_count: int
    unknown_count: int


class NotificationStatusResponse(CommunicatorBaseModel):
    """Status endpoint payload: a thin read of the notification row."""

    id: UUID
    status: NotificationStatus
    counts: DeliveryCounts
    error_message: str | None = None
    scheduled_date: datetime | None = None
    sent_date: datetime | None = None

    @classmethod
    def from_notification(cls, notification) -> "NotificationStatusResponse":
        return cls(
            id=notification.id,
            status=notification.status,
            counts=DeliveryCounts.model_validate(notification),
            error_message=notification.error_message,
            scheduled_date=notification.scheduled_date,
            sent_date=notification.sent_date,
        )
