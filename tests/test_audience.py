"""
Tests for the Audience Resolver and Recipient Store writes.

These tests verify:
1. Each audience type produces the right delivery records
2. Re-running a sync never duplicates records
3. Known conversation handles are copied onto new records
"""

import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from company_communicator.core.database import session_scope
from company_communicator.models import (
    AudienceType,
    DeliveryStatus,
    RecipientType,
    SentNotification,
    Team,
    User,
)
from company_communicator.services import (
    AudienceResolver,
    AudienceSpec,
    NotificationNotFoundError,
    RecipientService,
)

from conftest import FakeDirectory, create_notification, make_user


async def _records(session: AsyncSession, notification_id) -> list[SentNotification]:
    result = await session.execute(
        select(SentNotification)
        .where(SentNotification.notification_id == notification_id)
        .order_by(SentNotification.id)
    )
    return list(result.scalars().all())


# =============================================================================
# TEST: AUDIENCE LOOKUP
# =============================================================================


class TestGetAudience:
    async def test_returns_distinct_audiences(self, session: AsyncSession, directory: FakeDirectory):
        notification = await create_notification(
            session,
            audiences=[
                (AudienceType.TEAM, "team-1"),
                (AudienceType.GROUP, "group-1"),
                (AudienceType.TEAM, "team-1"),
            ],
        )

        audience = await AudienceResolver(session, directory).get_audience(notification.id)

        assert audience.all_users is False
        assert audience.audiences == [
            AudienceSpec(AudienceType.TEAM, "team-1"),
            AudienceSpec(AudienceType.GROUP, "group-1"),
        ]

    async def test_missing_notification_raises(self, session: AsyncSession, directory: FakeDirectory):
        with pytest.raises(NotificationNotFoundError):
            await AudienceResolver(session, directory).get_audience(uuid4())


# =============================================================================
# TEST: SYNC BY AUDIENCE TYPE
# =============================================================================


class TestSyncAudiences:
    async def test_all_users_creates_one_record_per_user(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
    ):
        """All-users sync enumerates the tenant and caches every user."""
        notification = await create_notification(session, all_users=True)
        directory.all_users = [make_user("u1"), make_user("u2"), make_user("u3")]

        created = await AudienceResolver(session, directory).sync_all_users(notification.id)

        assert created == 3
        records = await _records(session, notification.id)
        assert [r.recipient_id for r in records] == ["u1", "u2", "u3"]
        assert all(r.recipient_type == RecipientType.USER for r in records)
        assert all(r.delivery_status == DeliveryStatus.QUEUED for r in records)

        cached = await session.execute(select(func.count()).select_from(User))
        assert cached.scalar_one() == 3

    async def test_group_sync_is_idempotent(self, session: AsyncSession, directory: FakeDirectory):
        """Running the same group sync twice leaves one record per member."""
        notification = await create_notification(session)
        directory.groups["group-1"] = [make_user("u1"), make_user("u2")]
        resolver = AudienceResolver(session, directory)

        first = await resolver.sync_group_members(notification.id, "group-1")
        second = await resolver.sync_group_members(notification.id, "group-1")

        assert first == 2
        assert second == 0
        assert len(await _records(session, notification.id)) == 2

    async def test_overlapping_audiences_share_records(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
    ):
        """A user in both a group and a roster gets a single record."""
        notification = await create_notification(session)
        directory.groups["group-1"] = [make_user("u1"), make_user("u2")]
        directory.teams["team-1"] = [make_user("u2"), make_user("u3")]
        resolver = AudienceResolver(session, directory)

        await resolver.sync_group_members(notification.id, "group-1")
        await resolver.sync_team_members(notification.id, "team-1")

        records = await _records(session, notification.id)
        assert sorted(r.recipient_id for r in records) == ["u1", "u2", "u3"]

    async def test_team_audience_creates_single_channel_record(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
    ):
        """Team audiences post once to the channel; members are not enumerated."""
        notification = await create_notification(session)
        directory.teams["team-1"] = [make_user("u1"), make_user("u2")]
        resolver = AudienceResolver(session, directory)

        first = await resolver.sync_team_channel(notification.id, "team-1")
        second = await resolver.sync_team_channel(notification.id, "team-1")

        assert (first, second) == (1, 0)
        records = await _records(session, notification.id)
        assert len(records) == 1
        assert records[0].recipient_id == "team-1"
        assert records[0].recipient_type == RecipientType.TEAM
        assert records[0].conversation_id is None

    async def test_team_record_uses_cached_channel(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
    ):
        notification = await create_notification(session)
        session.add(Team(aad_group_id="team-1", team_id="19:general@thread.tacv2",
                         service_url="https://smba.example/"))
        await session.flush()

        await AudienceResolver(session, directory).sync_team_channel(notification.id, "team-1")

        records = await _records(session, notification.id)
        assert records[0].conversation_id == "19:general@thread.tacv2"
        assert records[0].service_url == "https://smba.example/"


# =============================================================================
# TEST: RECIPIENT STORE
# =============================================================================


class TestRecipientService:
    async def test_upsert_keeps_conversation_handles(self, session: AsyncSession):
        """Directory refreshes update profile fields only."""
        session.add(User(aad_id="u1", name="Old", conversation_id="a:conv-1",
                         service_url="https://smba.example/", tenant_id="tenant-1"))
        await session.flush()

        await RecipientService(session).upsert_users([make_user("u1", name="New")])

        user = await session.get(User, "u1", populate_existing=True)
        assert user.name == "New"
        assert user.conversation_id == "a:conv-1"
        assert user.tenant_id == "tenant-1"
        assert user.last_synced_date is not None

    async def test_upsert_ignores_blank_ids_and_duplicates(self, session: AsyncSession):
        written = await RecipientService(session).upsert_users([
            make_user("u1", name="First"),
            make_user("  "),
            make_user("u1", name="Second"),
        ])

        assert written == 1
        assert (await session.get(User, "u1")).name == "Second"

    async def test_new_records_copy_known_handles(self, session: AsyncSession):
        notification = await create_notification(session)
        session.add(User(aad_id="u1", conversation_id="a:conv-1", service_url="https://smba.example/"))
        session.add(User(aad_id="u2"))
        await session.flush()

        inserted = await RecipientService(session).batch_create_sent_notifications(
            notification.id, ["u1", "u2", "u1"]
        )

        assert inserted == 2
        records = {r.recipient_id: r for r in await _records(session, notification.id)}
        assert records["u1"].conversation_id == "a:conv-1"
        assert records["u1"].service_url == "https://smba.example/"
        assert records["u2"].conversation_id is None

    async def test_batches_smaller_than_input(self, session: AsyncSession):
        """Batching does not change the outcome."""
        notification = await create_notification(session)
        ids = [f"u{i}" for i in range(7)]
        service = RecipientService(session, batch_size=3)

        assert await service.batch_create_sent_notifications(notification.id, ids) == 7
        assert await service.batch_create_sent_notifications(notification.id, ids) == 0
        assert len(await _records(session, notification.id)) == 7

    async def test_concurrent_syncs_of_the_same_users_commute(self, session_factory):
        """Two activities write overlapping users and records at the same time."""
        async with session_scope(session_factory) as session:
            notification = await create_notification(session)

        async def sync(aad_ids: list[str]) -> int:
            async with session_scope(session_factory) as session:
                service = RecipientService(session)
                await service.upsert_users([make_user(aad_id) for aad_id in aad_ids])
                return await service.batch_create_sent_notifications(notification.id, aad_ids)

        inserted = await asyncio.gather(sync(["u1", "u2", "u3"]), sync(["u2", "u3", "u4"]))

        assert sum(inserted) == 4
        async with session_factory() as session:
            records = await _records(session, notification.id)
            assert sorted(r.recipient_id for r in records) == ["u1", "u2", "u3", "u4"]
            user_count = await session.scalar(select(func.count()).select_from(User))
            assert user_count == 4

    async def test_team_record_conflict_is_skipped(self, session: AsyncSession):
        notification = await create_notification(session)
        service = RecipientService(session)

        assert await service.create_team_record(notification.id, "team-1") is True
        assert await service.create_team_record(notification.id, "team-1") is False
        assert len(await _records(session, notification.id)) == 1
