"""SQLAlchemy ORM Models for Company Communicator."""

from .base import Base, UUIDMixin
from .models import (
    # Enums
    AudienceType,
    DeliveryStatus,
    NotificationStatus,
    RecipientType,
    PENDING_DELIVERY_STATUSES,
    TERMINAL_DELIVERY_STATUSES,
    # Notifications
    Notification,
    NotificationAudience,
    SentNotification,
    # Directory caches
    Team,
    User,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    # Enums
    "AudienceType",
    "DeliveryStatus",
    "NotificationStatus",
    "RecipientType",
    "PENDING_DELIVERY_STATUSES",
    "TERMINAL_DELIVERY_STATUSES",
    # Notifications
    "Notification",
    "NotificationAudience",
    "SentNotification",
    # Directory caches
    "Team",
    "User",
]
