"""SQLAlchemy ORM Models for Company Communicator.

Notification and its audience rows are written by the API layer; the
preparation pipeline owns SentNotification rows and the notification's
status and aggregate counters while a send is in flight. User and Team are
tenant-wide directory caches shared by every notification.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, UUIDMixin


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================


class NotificationStatus(str, PyEnum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    QUEUED = "queued"
    SYNCING_RECIPIENTS = "syncing_recipients"
    INSTALLING_APP = "installing_app"
    SENDING = "sending"
    SENT = "sent"  # Terminal
    FAILED = "failed"  # Terminal
    CANCELED = "canceled"  # Terminal

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_NOTIFICATION_STATUSES

    def can_transition_to(self, target: "NotificationStatus") -> bool:
        return target in _NOTIFICATION_TRANSITIONS[self]


_TERMINAL_NOTIFICATION_STATUSES = frozenset({
    NotificationStatus.SENT,
    NotificationStatus.FAILED,
    NotificationStatus.CANCELED,
})

_NOTIFICATION_TRANSITIONS: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    NotificationStatus.DRAFT: frozenset({
        NotificationStatus.SCHEDULED,
        NotificationStatus.QUEUED,
    }),
    NotificationStatus.SCHEDULED: frozenset({
        NotificationStatus.QUEUED,
        NotificationStatus.CANCELED,
        NotificationStatus.FAILED,
    }),
    NotificationStatus.QUEUED: frozenset({
        NotificationStatus.SYNCING_RECIPIENTS,
        NotificationStatus.CANCELED,
        NotificationStatus.FAILED,
    }),
    NotificationStatus.SYNCING_RECIPIENTS: frozenset({
        NotificationStatus.INSTALLING_APP,
        NotificationStatus.SENDING,  # Installation disabled
        NotificationStatus.CANCELED,
        NotificationStatus.FAILED,
    }),
    NotificationStatus.INSTALLING_APP: frozenset({
        NotificationStatus.SENDING,
        NotificationStatus.CANCELED,
        NotificationStatus.FAILED,
    }),
    NotificationStatus.SENDING: frozenset({
        NotificationStatus.SENT,
        NotificationStatus.FAILED,
        NotificationStatus.CANCELED,
    }),
    NotificationStatus.SENT: frozenset(),
    NotificationStatus.FAILED: frozenset(),
    NotificationStatus.CANCELED: frozenset(),
}


class DeliveryStatus(str, PyEnum):
    QUEUED = "queued"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"  # Terminal
    FAILED = "failed"  # Terminal
    RECIPIENT_NOT_FOUND = "recipient_not_found"  # Terminal

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_DELIVERY_STATUSES

    def can_transition_to(self, target: "DeliveryStatus") -> bool:
        return target in _DELIVERY_TRANSITIONS[self]


TERMINAL_DELIVERY_STATUSES = frozenset({
    DeliveryStatus.SUCCEEDED,
    DeliveryStatus.FAILED,
    DeliveryStatus.RECIPIENT_NOT_FOUND,
})

PENDING_DELIVERY_STATUSES = frozenset({
    DeliveryStatus.QUEUED,
    DeliveryStatus.RETRYING,
})

_DELIVERY_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.QUEUED: frozenset({DeliveryStatus.RETRYING}) | TERMINAL_DELIVERY_STATUSES,
    DeliveryStatus.RETRYING: TERMINAL_DELIVERY_STATUSES,
    DeliveryStatus.SUCCEEDED: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
    DeliveryStatus.RECIPIENT_NOT_FOUND: frozenset(),
}


class RecipientType(str, PyEnum):
    USER = "user"
    TEAM = "team"


class AudienceType(str, PyEnum):
    TEAM = "team"      # Post once to the team's General channel
    ROSTER = "roster"  # Every member of the team, individually
    GROUP = "group"    # Every member of an AAD group


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class Notification(Base, UUIDMixin):
    """A message authored once and delivered to a resolved audience."""

    __tablename__ = "notifications"

    # Content (opaque to the pipeline apart from the card builder)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    summary: Mapped[str | None] = mapped_column(String(4000))
    image_link: Mapped[str | None] = mapped_column(String(1000))
    button_title: Mapped[str | None] = mapped_column(String(200))
    button_link: Mapped[str | None] = mapped_column(String(1000))
    author: Mapped[str | None] = mapped_column(String(200))
    created_by: Mapped[str | None] = mapped_column(String(200))
    custom_variables: Mapped[dict | None] = mapped_column(
        nullable=True,
        comment="Notification-wide {{name}} substitutions applied to the card",
    )

    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )
    scheduled_date: Mapped[datetime | None] = mapped_column()
    sent_date: Mapped[datetime | None] = mapped_column()

    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus, name="notification_status", values_callable=lambda x: [e.value for e in x]),
        default=NotificationStatus.DRAFT,
        nullable=False,
    )
    all_users: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Aggregate counters, recomputed from sent_notifications by the aggregator
    total_recipient_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    succeeded_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    recipient_not_found_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    canceled_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unknown_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    error_message: Mapped[str | None] = mapped_column(Text)

    # Relationships
    audiences: Mapped[list["NotificationAudience"]] = relationship(
        back_populates="notification",
        cascade="all, delete-orphan",
    )
    sent_notifications: Mapped[list["SentNotification"]] = relationship(
        back_populates="notification",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_notifications_status_scheduled", "status", "scheduled_date"),
    )


class NotificationAudience(Base):
    """One targeted Team, Roster or Group of a notification."""

    __tablename__ = "notification_audiences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[UUID] = mapped_column(
        ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False
    )
    audience_type: Mapped[AudienceType] = mapped_column(
        Enum(AudienceType, name="audience_type", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    audience_id: Mapped[str] = mapped_column(String(200), nullable=False)

    notification: Mapped["Notification"] = relationship(back_populates="audiences")


class SentNotification(Base):
    """Delivery record: one concrete send target of a notification.

    ``id`` is monotonic and doubles as the keyset pagination cursor.
    A null ``conversation_id`` means the conversation handle is not known yet.
    """

    __tablename__ = "sent_notifications"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    notification_id: Mapped[UUID] = mapped_column(
        ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False
    )
    recipient_id: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="User AAD id or team AAD group id",
    )
    recipient_type: Mapped[RecipientType] = mapped_column(
        Enum(RecipientType, name="recipient_type", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    conversation_id: Mapped[str | None] = mapped_column(String(500))
    service_url: Mapped[str | None] = mapped_column(String(500))
    delivery_status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, name="delivery_status", values_callable=lambda x: [e.value for e in x]),
        default=DeliveryStatus.QUEUED,
        nullable=False,
    )
    status_code: Mapped[int | None] = mapped_column(Integer)
    sent_date: Mapped[datetime | None] = mapped_column()
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(String(1000))

    notification: Mapped["Notification"] = relationship(back_populates="sent_notifications")

    __table_args__ = (
        UniqueConstraint("notification_id", "recipient_id", name="uq_sent_notifications_recipient"),
        # Install pagination: notification + status, walked by id
        Index("idx_sent_notifications_install_lookup", "notification_id", "delivery_status", "id"),
    )


# =============================================================================
# DIRECTORY CACHES
# =============================================================================


class User(Base):
    """Local mirror of a directory user, keyed by AAD object id."""

    __tablename__ = "users"

    aad_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(200))
    email: Mapped[str | None] = mapped_column(String(200))
    upn: Mapped[str | None] = mapped_column(String(200))
    conversation_id: Mapped[str | None] = mapped_column(String(500))
    service_url: Mapped[str | None] = mapped_column(String(500))
    tenant_id: Mapped[str | None] = mapped_column(String(100))
    user_type: Mapped[str | None] = mapped_column(String(20))
    last_synced_date: Mapped[datetime | None] = mapped_column()


class Team(Base):
    """Team channel cache: AAD group id -> General channel thread id."""

    __tablename__ = "teams"

    aad_group_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    team_id: Mapped[str | None] = mapped_column(
        String(200),
        comment="Bot Framework thread id of the team's General channel",
    )
    name: Mapped[str | None] = mapped_column(String(200))
    service_url: Mapped[str | None] = mapped_column(String(500))
    tenant_id: Mapped[str | None] = mapped_column(String(100))
    installed_date: Mapped[datetime | None] = mapped_column()
