"""
Shared fixtures: an in-memory SQLite store and in-process fakes for the
directory, payload store and send queue.
"""

import asyncio
import functools
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from company_communicator.core.config import Settings
from company_communicator.core.database import build_session_factory
from company_communicator.integrations.graph import (
    CircuitBreakerOpenError,
    DirectoryService,
    DirectoryUser,
)
from company_communicator.models import (
    AudienceType,
    Base,
    DeliveryStatus,
    Notification,
    NotificationAudience,
    NotificationStatus,
    RecipientType,
    SentNotification,
)
from company_communicator.orchestration import LocalOrchestrationContext, PipelineServices

TEAMS_APP_ID = "6f1c2e0a-3b9d-4c55-9a1e-2d7b8c9f0a11"


# =============================================================================
# FAKES
# =============================================================================


class FakeDirectory(DirectoryService):
    """Directory with canned users and scripted install outcomes."""

    def __init__(self):
        self.all_users: list[DirectoryUser] = []
        self.groups: dict[str, list[DirectoryUser]] = {}
        self.teams: dict[str, list[DirectoryUser]] = {}
        self.chat_ids: dict[str, str] = {}
        self.channel_ids: dict[str, str] = {}
        self.rejected: set[str] = set()
        self.break_on_install: int | None = None
        self.yield_on_install = False
        self.install_calls: list[str] = []
        self.team_install_calls: list[str] = []
        # Concurrency bookkeeping for install_app_for_user
        self.tripped = False
        self.calls_after_trip: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_all_users_delta(self, delta_link):
        return list(self.all_users), "delta-link"

    async def get_group_members(self, group_id):
        return list(self.groups.get(group_id, []))

    async def get_team_members(self, team_id):
        return list(self.teams.get(team_id, []))

    async def install_app_for_user(self, user_aad_id, teams_app_id):
        if self.tripped:
            self.calls_after_trip.append(user_aad_id)
        self.install_calls.append(user_aad_id)
        call_number = len(self.install_calls)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.yield_on_install:
                await asyncio.sleep(0)
            if self.break_on_install and call_number >= self.break_on_install:
                self.tripped = True
                raise CircuitBreakerOpenError("Circuit breaker 'graph' is OPEN.")
            return user_aad_id not in self.rejected
        finally:
            self.in_flight -= 1

    async def get_personal_chat_id(self, user_aad_id, teams_app_id):
        return self.chat_ids.get(user_aad_id)

    async def install_app_in_team(self, team_group_id, teams_app_id):
        self.team_install_calls.append(team_group_id)
        return team_group_id not in self.rejected

    async def get_team_primary_channel_id(self, team_group_id):
        return self.channel_ids.get(team_group_id)


class FakePayloadStore:
    def __init__(self):
        self.cards: dict[UUID, str] = {}

    async def upload_card(self, notification_id, card_json):
        self.cards[notification_id] = card_json
        return f"{notification_id}.json"


class FakeSendQueue:
    def __init__(self):
        self.messages = []

    async def send_batch(self, messages):
        self.messages.extend(messages)


class VirtualClockContext(LocalOrchestrationContext):
    """
    Local context on a virtual clock: timers and retry delays advance the
    clock instead of sleeping. Fan-outs run one activity at a time unless
    concurrent_fan_out is set.
    """

    def __init__(
        self,
        services,
        start: datetime | None = None,
        concurrent_fan_out: bool = False,
        **kwargs,
    ):
        super().__init__(services, sleep=self._advance, **kwargs)
        self.concurrent_fan_out = concurrent_fan_out
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        self.timers: list[datetime] = []
        self.activity_calls: list[str] = []
        self.on_timer = None

    @property
    def current_utc_datetime(self) -> datetime:
        return self.now

    async def _advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def create_timer(self, fire_at: datetime) -> None:
        self.timers.append(fire_at)
        if self.on_timer is not None:
            await self.on_timer(self)
        await super().create_timer(fire_at)

    async def call_activity(self, activity, input=None, retry_policy=None):
        @functools.wraps(activity)
        async def counted(services, activity_input):
            self.activity_calls.append(activity.__name__)
            return await activity(services, activity_input)

        return await super().call_activity(counted, input, retry_policy)

    async def task_all(self, awaitables):
        if self.concurrent_fan_out:
            return await super().task_all(awaitables)
        return [await awaitable for awaitable in awaitables]


# =============================================================================
# STORE
# =============================================================================


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        # Concurrent sessions share the one connection; closing one must not roll back the others
        pool_reset_on_return=None,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


# =============================================================================
# COLLABORATORS
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        teams_app_id=TEAMS_APP_ID,
        install_wait_seconds=60,
        max_refresh_attempts=20,
        teams_service_url="https://smba.trafficmanager.net/amer/",
    )


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def payload_store() -> FakePayloadStore:
    return FakePayloadStore()


@pytest.fixture
def send_queue() -> FakeSendQueue:
    return FakeSendQueue()


@pytest.fixture
def services(session_factory, directory, payload_store, send_queue, settings) -> PipelineServices:
    return PipelineServices(
        session_factory=session_factory,
        directory=directory,
        payload_store=payload_store,
        send_queue=send_queue,
        settings=settings,
    )


# =============================================================================
# DATA HELPERS
# =============================================================================


def make_user(aad_id: str, **kwargs) -> DirectoryUser:
    return DirectoryUser(aad_id=aad_id, name=kwargs.pop("name", f"User {aad_id}"), **kwargs)


async def create_notification(
    session: AsyncSession,
    status: NotificationStatus = NotificationStatus.QUEUED,
    audiences: list[tuple[AudienceType, str]] | None = None,
    **kwargs,
) -> Notification:
    notification = Notification(
        id=kwargs.pop("id", uuid4()),
        title=kwargs.pop("title", "Quarterly all-hands"),
        summary=kwargs.pop("summary", "Join us on Friday."),
        status=status,
        **kwargs,
    )
    session.add(notification)
    for audience_type, audience_id in audiences or []:
        session.add(NotificationAudience(
            notification=notification,
            audience_type=audience_type,
            audience_id=audience_id,
        ))
    await session.flush()
    return notification


async def add_records(
    session: AsyncSession,
    notification_id: UUID,
    recipient_ids: list[str],
    status: DeliveryStatus = DeliveryStatus.QUEUED,
    recipient_type: RecipientType = RecipientType.USER,
    conversation_id: str | None = None,
) -> list[SentNotification]:
    records = [
        SentNotification(
            notification_id=notification_id,
            recipient_id=recipient_id,
            recipient_type=recipient_type,
            conversation_id=conversation_id,
            delivery_status=status,
        )
        for recipient_id in recipient_ids
    ]
    session.add_all(records)
    await session.flush()
    return records
