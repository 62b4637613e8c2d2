"""
Audience Resolver.

Turns a notification's audience specification into delivery records:
- All users: full tenant enumeration through the directory delta query
- Group / Roster: member enumeration, one record per member
- Team: a single channel-post record, no member enumeration

Directory errors propagate; the orchestration retries the whole activity
and every write below is safe to redo.
"""

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..integrations.graph import DirectoryService, DirectoryUser
from ..models import AudienceType, Notification, NotificationAudience
from .errors import NotificationNotFoundError
from .recipients import RecipientService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudienceSpec:
    audience_type: AudienceType
    audience_id: str


@dataclass
class NotificationAudienceInfo:
    """What a notification targets."""
    notification_id: UUID
    all_users: bool
    audiences: list[AudienceSpec] = field(default_factory=list)


class AudienceResolver:
    """Resolves audiences into SentNotification rows."""

    def __init__(self, session: AsyncSession, directory: DirectoryService):
        self._session = session
        self._directory = directory
        self._recipients = RecipientService(session)

    async def get_audience(self, notification_id: UUID) -> NotificationAudienceInfo:
        """Load the AllUsers flag and the distinct audience rows."""
        notification = await self._session.get(Notification, notification_id)
        if notification is None:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")

        result = await self._session.execute(
            select(NotificationAudience)
            .where(NotificationAudience.notification_id == notification_id)
            .order_by(NotificationAudience.id)
        )
        specs = [
            AudienceSpec(audience_type=row.audience_type, audience_id=row.audience_id)
            for row in result.scalars().all()
        ]

        return NotificationAudienceInfo(
            notification_id=notification_id,
            all_users=notification.all_users,
            audiences=list(dict.fromkeys(specs)),
        )

    async def _create_user_records(
        self,
        notification_id: UUID,
        users: list[DirectoryUser],
    ) -> int:
        await self._recipients.upsert_users(users)
        return await self._recipients.batch_create_sent_notifications(
            notification_id,
            [u.aad_id for u in users],
        )

    async def sync_all_users(self, notification_id: UUID) -> int:
        """Enumerate the whole tenant and create a record per user."""
        logger.info(f"Starting full-tenant user sync for notification {notification_id}")

        # A null delta link always requests full enumeration
        users, _ = await self._directory.get_all_users_delta(None)
        logger.info(f"Retrieved {len(users)} users for notification {notification_id}")

        return await self._create_user_records(notification_id, users)

    async def sync_group_members(self, notification_id: UUID, group_id: str) -> int:
        users = await self._directory.get_group_members(group_id)
        logger.info(
            f"Retrieved {len(users)} members of group {group_id} "
            f"for notification {notification_id}"
        )
        return await self._create_user_records(notification_id, users)

    async def sync_team_members(self, notification_id: UUID, team_id: str) -> int:
        """Roster audience: every member of the team, individually."""
        users = await self._directory.get_team_members(team_id)
        logger.info(
            f"Retrieved {len(users)} members of team {team_id} "
            f"for notification {notification_id}"
        )
        return await self._create_user_records(notification_id, users)

    async def sync_team_channel(self, notification_id: UUID, team_group_id: str) -> int:
        """Team audience: one record addressed to the team's General channel."""
        created = await self._recipients.create_team_record(notification_id, team_group_id)
        return 1 if created else 0
