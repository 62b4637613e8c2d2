"""
Status Aggregator: notification counters, completion, and status writes.

Key responsibilities:
1. Recompute the aggregate counters from delivery records (overwrite, never increment)
2. Move a Sending notification to Sent once nothing is Queued or Retrying
3. Force-complete runs that exceed the 24-hour budget
4. Validate every other notification status write against the state machine
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    PENDING_DELIVERY_STATUSES,
    TERMINAL_DELIVERY_STATUSES,
    DeliveryStatus,
    Notification,
    NotificationStatus,
    SentNotification,
)
from .errors import InvalidStatusTransitionError, NotificationNotFoundError

logger = logging.getLogger(__name__)

FORCED_RECORD_MESSAGE = "Forced completion: 24-hour safety net triggered."
FORCED_NOTIFICATION_MESSAGE = "Forced completion: aggregation exceeded 24-hour limit."


@dataclass
class AggregationResult:
    """Per-status counts of one notification's delivery records."""
    is_complete: bool
    total: int
    succeeded: int
    failed: int
    recipient_not_found: int
    canceled: int
    unknown: int
    queued: int
    retrying: int
    notification_status: NotificationStatus | None = None


class StatusAggregator:
    """Sole writer of a notification's status and aggregate counters."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_notification(self, notification_id: UUID) -> Notification:
        notification = await self._session.get(Notification, notification_id)
        if notification is None:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        return notification

    async def _count_by_status(self, notification_id: UUID) -> AggregationResult:
        result = await self._session.execute(
            select(SentNotification.delivery_status, func.count())
            .where(SentNotification.notification_id == notification_id)
            .group_by(SentNotification.delivery_status)
        )
        counts: dict[DeliveryStatus, int] = {
            DeliveryStatus(status): count for status, count in result.all()
        }

        queued = counts.get(DeliveryStatus.QUEUED, 0)
        retrying = counts.get(DeliveryStatus.RETRYING, 0)
        # Statuses outside the known pending/terminal sets
        canceled = sum(
            count for status, count in counts.items()
            if status not in TERMINAL_DELIVERY_STATUSES
            and status not in PENDING_DELIVERY_STATUSES
        )

        return AggregationResult(
            is_complete=queued == 0 and retrying == 0,
            total=sum(counts.values()),
            succeeded=counts.get(DeliveryStatus.SUCCEEDED, 0),
            failed=counts.get(DeliveryStatus.FAILED, 0),
            recipient_not_found=counts.get(DeliveryStatus.RECIPIENT_NOT_FOUND, 0),
            canceled=canceled,
            unknown=0,  # Reserved; no status maps here yet
            queued=queued,
            retrying=retrying,
        )

    @staticmethod
    def _write_counters(notification: Notification, counts: AggregationResult) -> None:
        notification.succeeded_count = counts.succeeded
        notification.failed_count = counts.failed
        notification.recipient_not_found_count = counts.recipient_not_found
        notification.canceled_count = counts.canceled
        notification.unknown_count = counts.unknown

    # =========================================================================
    # AGGREGATION
    # =========================================================================

    async def aggregate(self, notification_id: UUID) -> AggregationResult:
        """
        Recompute counters and detect completion.

        Safe to run repeatedly: with no record changes in between, two runs
        write identical counters.
        """
        notification = await self._get_notification(notification_id)
        counts = await self._count_by_status(notification_id)

        self._write_counters(notification, counts)
        if counts.is_complete and notification.status == NotificationStatus.SENDING:
            notification.status = NotificationStatus.SENT
            notification.sent_date = datetime.now(timezone.utc)
        counts.notification_status = notification.status

        await self._session.flush()

        logger.info(
            f"Aggregated notification {notification_id}: total={counts.total}, "
            f"succeeded={counts.succeeded}, failed={counts.failed}, "
            f"not_found={counts.recipient_not_found}, queued={counts.queued}, "
            f"retrying={counts.retrying}, complete={counts.is_complete}"
        )
        return counts

    async def force_complete(self, notification_id: UUID) -> NotificationStatus:
        """
        Safety net: fail every pending record and finish the notification.

        The notification ends Failed if any record failed (including the
        ones forced here), Sent otherwise. A notification that is already
        terminal keeps its status.
        """
        notification = await self._get_notification(notification_id)

        forced = await self._session.execute(
            update(SentNotification)
            .where(
                SentNotification.notification_id == notification_id,
                SentNotification.delivery_status.in_(list(PENDING_DELIVERY_STATUSES)),
            )
            .values(
                delivery_status=DeliveryStatus.FAILED,
                error_message=FORCED_RECORD_MESSAGE,
            )
            .execution_options(synchronize_session=False)
        )

        counts = await self._count_by_status(notification_id)
        self._write_counters(notification, counts)

        if not notification.status.is_terminal:
            notification.status = (
                NotificationStatus.FAILED if counts.failed > 0 else NotificationStatus.SENT
            )
            notification.sent_date = datetime.now(timezone.utc)
            notification.error_message = FORCED_NOTIFICATION_MESSAGE

        await self._session.flush()

        logger.warning(
            f"Notification {notification_id} forced to '{notification.status.value}'; "
            f"{forced.rowcount} pending records marked as failed"
        )
        return notification.status

    # =========================================================================
    # STATUS WRITES
    # =========================================================================

    async def set_status(self, notification_id: UUID, status: NotificationStatus) -> bool:
        """
        Move the notification to ``status``.

        Returns False without writing when the notification is already
        terminal (e.g. canceled while the pipeline ran). Writing the current
        status is a no-op.

        Raises:
            InvalidStatusTransitionError: If the move goes backwards or skips ahead
        """
        notification = await self._get_notification(notification_id)
        current = notification.status

        if current == status:
            return True
        if current.is_terminal:
            logger.warning(
                f"Notification {notification_id} is already {current.value}; "
                f"not moving to {status.value}"
            )
            return False
        if not current.can_transition_to(status):
            raise InvalidStatusTransitionError(
                f"Notification {notification_id} cannot move from "
                f"{current.value} to {status.value}"
            )

        notification.status = status
        await self._session.flush()
        logger.info(f"Notification {notification_id} status set to {status.value}")
        return True

    async def mark_failed(self, notification_id: UUID, error_message: str) -> bool:
        """Fail a non-terminal notification with an explanation."""
        notification = await self._get_notification(notification_id)
        if notification.status.is_terminal:
            return False

        notification.status = NotificationStatus.FAILED
        notification.error_message = error_message[:4000]
        await self._session.flush()
        logger.error(f"Notification {notification_id} failed: {error_message}")
        return True

    async def update_recipient_count(self, notification_id: UUID) -> int:
        """Store the total recipient count, recounted from the delivery records."""
        notification = await self._get_notification(notification_id)
        result = await self._session.execute(
            select(func.count()).select_from(SentNotification).where(
                SentNotification.notification_id == notification_id
            )
        )
        total = result.scalar_one()

        notification.total_recipient_count = total
        await self._session.flush()
        logger.info(f"Notification {notification_id} total recipient count = {total}")
        return total
