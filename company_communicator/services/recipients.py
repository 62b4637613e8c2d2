"""
Recipient Store writes: directory-cache upserts and delivery-record creation.

Every write here is safe to repeat and safe to race. Activities run
at-least-once and sibling audience activities run concurrently, so user
rows are written with INSERT .. ON CONFLICT DO UPDATE keyed by AAD id and
delivery records with ON CONFLICT DO NOTHING on (notification, recipient).
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from ..integrations.graph import DirectoryUser
from ..models import (
    DeliveryStatus,
    RecipientType,
    SentNotification,
    Team,
    User,
)

logger = logging.getLogger(__name__)

DB_BATCH_SIZE = 500

# Dialects with INSERT .. ON CONFLICT
_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _chunks(items: Sequence, size: int) -> Iterable[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class RecipientService:
    """Writes the user cache and SentNotification rows for one session."""

    def __init__(self, session: AsyncSession, batch_size: int = DB_BATCH_SIZE):
        self._session = session
        self._batch_size = batch_size

    def _insert(self, model):
        dialect = self._session.get_bind().dialect.name
        return _UPSERT_INSERTS[dialect](model)

    async def upsert_users(self, users: Sequence[DirectoryUser]) -> int:
        """
        Upsert directory users into the user cache.

        Profile fields are overwritten; a blank tenant id keeps the stored
        one. Conversation handles are never touched here, so concurrent
        upserts of the same user commute.
        Returns the number of users written.
        """
        # Later duplicates win
        by_id = {u.aad_id: u for u in users if u.aad_id and u.aad_id.strip()}
        unique = list(by_id.values())
        now = datetime.now(timezone.utc)

        for batch in _chunks(unique, self._batch_size):
            stmt = self._insert(User).values([
                {
                    "aad_id": u.aad_id,
                    "name": u.name,
                    "email": u.email,
                    "upn": u.upn,
                    "user_type": u.user_type,
                    "tenant_id": u.tenant_id or None,
                    "last_synced_date": now,
                }
                for u in batch
            ])
            stmt = stmt.on_conflict_do_update(
                index_elements=[User.aad_id],
                set_={
                    "name": stmt.excluded.name,
                    "email": stmt.excluded.email,
                    "upn": stmt.excluded.upn,
                    "user_type": stmt.excluded.user_type,
                    "tenant_id": func.coalesce(stmt.excluded.tenant_id, User.tenant_id),
                    "last_synced_date": stmt.excluded.last_synced_date,
                },
            )
            await self._session.execute(stmt)

        logger.debug(f"Upserted {len(unique)} users into the user cache")
        return len(unique)

    async def batch_create_sent_notifications(
        self,
        notification_id: UUID,
        recipient_aad_ids: Iterable[str],
    ) -> int:
        """
        Create User-typed delivery records for the given AAD ids.

        Ids that already have a record for this notification are skipped,
        including records a concurrent activity inserts meanwhile.
        Conversation handles already known in the user cache are copied
        onto the new records. Returns the number of records inserted.
        """
        ids = list(dict.fromkeys(i for i in recipient_aad_ids if i and i.strip()))
        inserted = 0

        for batch in _chunks(ids, self._batch_size):
            existing_result = await self._session.execute(
                select(SentNotification.recipient_id).where(
                    SentNotification.notification_id == notification_id,
                    SentNotification.recipient_id.in_(batch),
                )
            )
            existing = set(existing_result.scalars().all())
            missing = [aad_id for aad_id in batch if aad_id not in existing]
            if not missing:
                continue

            handles_result = await self._session.execute(
                select(User.aad_id, User.conversation_id, User.service_url).where(
                    User.aad_id.in_(missing)
                )
            )
            handles = {row.aad_id: row for row in handles_result.all()}

            rows = []
            for aad_id in missing:
                handle = handles.get(aad_id)
                rows.append({
                    "notification_id": notification_id,
                    "recipient_id": aad_id,
                    "recipient_type": RecipientType.USER,
                    "conversation_id": handle.conversation_id if handle else None,
                    "service_url": handle.service_url if handle else None,
                    "delivery_status": DeliveryStatus.QUEUED,
                    "retry_count": 0,
                })
            result = await self._session.execute(
                self._insert(SentNotification)
                .values(rows)
                .on_conflict_do_nothing(index_elements=["notification_id", "recipient_id"])
            )
            inserted += result.rowcount

        logger.info(
            f"Inserted {inserted} SentNotification records for notification {notification_id} "
            f"({len(ids) - inserted} already present)"
        )
        return inserted

    async def create_team_record(self, notification_id: UUID, team_group_id: str) -> bool:
        """
        Create the single Team-typed delivery record for a channel post.

        The conversation handle comes from the team channel cache and is
        null when the app is not installed in the team yet. Returns False
        when the record already exists.
        """
        team = await self._session.get(Team, team_group_id)
        result = await self._session.execute(
            self._insert(SentNotification)
            .values(
                notification_id=notification_id,
                recipient_id=team_group_id,
                recipient_type=RecipientType.TEAM,
                conversation_id=team.team_id if team else None,
                service_url=team.service_url if team else None,
                delivery_status=DeliveryStatus.QUEUED,
                retry_count=0,
            )
            .on_conflict_do_nothing(index_elements=["notification_id", "recipient_id"])
        )
        if result.rowcount == 0:
            logger.info(
                f"Team {team_group_id} already has a record for notification {notification_id}; skipping"
            )
            return False
        return True
