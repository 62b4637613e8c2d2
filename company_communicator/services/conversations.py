"""
Conversation Refresh and Mark-Unreachable.

Both are set-based UPDATE statements; neither loads delivery records
into the session.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    DeliveryStatus,
    RecipientType,
    SentNotification,
    Team,
    User,
)

logger = logging.getLogger(__name__)

UNREACHABLE_MESSAGE = "Bot installation did not produce a ConversationId."


@dataclass
class RefreshResult:
    users_refreshed: int
    teams_refreshed: int
    still_pending: int

    @property
    def refreshed(self) -> int:
        return self.users_refreshed + self.teams_refreshed


class ConversationService:
    """Reconciles delivery records against the user and team caches."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def refresh_conversation_ids(self, notification_id: UUID) -> RefreshResult:
        """
        Copy conversation handles from the caches onto Queued records.

        User records only have nulls filled. Team records are overwritten
        whenever the team cache has a channel id, since a team's channel
        id can change after the record was created.
        """
        user_match = User.aad_id == SentNotification.recipient_id
        users_result = await self._session.execute(
            update(SentNotification)
            .where(
                SentNotification.notification_id == notification_id,
                SentNotification.recipient_type == RecipientType.USER,
                SentNotification.delivery_status == DeliveryStatus.QUEUED,
                SentNotification.conversation_id.is_(None),
                exists().where(user_match, User.conversation_id.isnot(None)),
            )
            .values(
                conversation_id=select(User.conversation_id).where(user_match).scalar_subquery(),
                service_url=select(User.service_url).where(user_match).scalar_subquery(),
            )
            .execution_options(synchronize_session=False)
        )

        team_match = Team.aad_group_id == SentNotification.recipient_id
        teams_result = await self._session.execute(
            update(SentNotification)
            .where(
                SentNotification.notification_id == notification_id,
                SentNotification.recipient_type == RecipientType.TEAM,
                SentNotification.delivery_status == DeliveryStatus.QUEUED,
                exists().where(team_match, Team.team_id.isnot(None)),
            )
            .values(
                conversation_id=select(Team.team_id).where(team_match).scalar_subquery(),
                service_url=select(Team.service_url).where(team_match).scalar_subquery(),
            )
            .execution_options(synchronize_session=False)
        )

        pending_result = await self._session.execute(
            select(func.count()).select_from(SentNotification).where(
                SentNotification.notification_id == notification_id,
                SentNotification.delivery_status == DeliveryStatus.QUEUED,
                SentNotification.conversation_id.is_(None),
            )
        )

        refresh = RefreshResult(
            users_refreshed=users_result.rowcount,
            teams_refreshed=teams_result.rowcount,
            still_pending=pending_result.scalar_one(),
        )
        logger.info(
            f"Refreshed conversation ids for notification {notification_id}: "
            f"users={refresh.users_refreshed}, teams={refresh.teams_refreshed}, "
            f"still pending={refresh.still_pending}"
        )
        return refresh

    async def mark_unreachable(self, notification_id: UUID) -> int:
        """
        Reclassify Queued records still lacking a conversation as RecipientNotFound.

        Runs once installation has given up.
        """
        result = await self._session.execute(
            update(SentNotification)
            .where(
                SentNotification.notification_id == notification_id,
                SentNotification.delivery_status == DeliveryStatus.QUEUED,
                SentNotification.conversation_id.is_(None),
            )
            .values(
                delivery_status=DeliveryStatus.RECIPIENT_NOT_FOUND,
                error_message=UNREACHABLE_MESSAGE,
            )
            .execution_options(synchronize_session=False)
        )

        marked = result.rowcount
        if marked:
            logger.warning(
                f"Marked {marked} recipients unreachable for notification {notification_id}"
            )
        return marked
