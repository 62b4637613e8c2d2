"""
Tests for the Install Coordinator.

These tests verify:
1. CONFIG: App id validation and effective defaults
2. PAGINATION: Keyset windows visit every unreachable record exactly once
3. INSTALL: Per-user outcomes and conversation handle backfill
4. CIRCUIT BREAKER: An open circuit stops the page but keeps discovered handles
"""

from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from company_communicator.core.config import Settings
from company_communicator.integrations.graph import CircuitBreakerOpenError, DirectoryError
from company_communicator.models import DeliveryStatus, RecipientType, Team, User
from company_communicator.services import (
    ConfigurationError,
    InstallCoordinator,
    get_install_config,
)

from conftest import TEAMS_APP_ID, FakeDirectory, add_records, create_notification


# =============================================================================
# TEST: CONFIG
# =============================================================================


class TestInstallConfig:
    def test_empty_app_id_disables_install(self):
        config = get_install_config(Settings(teams_app_id=""))
        assert config.enabled is False

    def test_invalid_app_id_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            get_install_config(Settings(teams_app_id="not-a-guid"))

    def test_non_positive_values_fall_back_to_defaults(self):
        config = get_install_config(Settings(
            teams_app_id=TEAMS_APP_ID,
            install_wait_seconds=0,
            max_refresh_attempts=-1,
        ))

        assert config.enabled is True
        assert config.wait_seconds == 60
        assert config.max_refresh_attempts == 20


# =============================================================================
# TEST: PAGINATION
# =============================================================================


class TestGetInstallBatch:
    async def test_windows_cover_every_record_once(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
        settings: Settings,
    ):
        """45 unreachable users in windows of 2 pages x 20."""
        notification = await create_notification(session)
        ids = [f"u{i:02d}" for i in range(45)]
        await add_records(session, notification.id, ids)
        coordinator = InstallCoordinator(session, directory, settings)

        first = await coordinator.get_install_batch(notification.id, 0, 20, 2)
        second = await coordinator.get_install_batch(notification.id, first.next_cursor, 20, 2)

        assert [len(page) for page in first.pages] == [20, 20]
        assert first.has_more is True
        assert [len(page) for page in second.pages] == [5]
        assert second.has_more is False

        visited = [aad_id for batch in (first, second) for page in batch.pages for aad_id in page]
        assert visited == ids

    async def test_skips_reachable_team_and_terminal_records(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
        settings: Settings,
    ):
        notification = await create_notification(session)
        await add_records(session, notification.id, ["needs-install"])
        await add_records(session, notification.id, ["has-chat"], conversation_id="a:chat")
        await add_records(session, notification.id, ["team-1"], recipient_type=RecipientType.TEAM)
        await add_records(
            session, notification.id, ["gone"], status=DeliveryStatus.RECIPIENT_NOT_FOUND
        )

        batch = await InstallCoordinator(session, directory, settings).get_install_batch(
            notification.id, 0, 20, 10
        )

        assert batch.pages == [["needs-install"]]
        assert batch.has_more is False

    async def test_empty_window_keeps_cursor(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
        settings: Settings,
    ):
        notification = await create_notification(session)

        batch = await InstallCoordinator(session, directory, settings).get_install_batch(
            notification.id, 17, 20, 10
        )

        assert batch.pages == []
        assert batch.next_cursor == 17
        assert batch.has_more is False


# =============================================================================
# TEST: USER INSTALL
# =============================================================================


class TestInstallAppForUsers:
    async def test_records_discovered_conversations(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
        settings: Settings,
    ):
        directory.chat_ids = {"u1": "a:chat-1", "u2": "a:chat-2"}
        directory.rejected = {"u3"}
        session.add(User(aad_id="u2", conversation_id="a:existing"))
        await session.flush()

        result = await InstallCoordinator(session, directory, settings).install_app_for_users(
            uuid4(), ["u1", "u2", "u3"], TEAMS_APP_ID
        )

        assert result.installed == 2
        assert result.failed == 1
        assert result.conversations_recorded == 1

        u1 = await session.get(User, "u1")
        assert u1.conversation_id == "a:chat-1"
        assert u1.service_url == settings.teams_service_url
        # Known handles are never overwritten
        assert (await session.get(User, "u2")).conversation_id == "a:existing"

    async def test_chat_lookup_failure_is_not_an_install_failure(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
        settings: Settings,
    ):
        directory.chat_ids = {"u1": "a:chat-1"}

        async def flaky_lookup(user_aad_id, teams_app_id):
            if user_aad_id == "u2":
                raise DirectoryError("Graph returned 502", status_code=502)
            return directory.chat_ids.get(user_aad_id)

        directory.get_personal_chat_id = flaky_lookup

        result = await InstallCoordinator(session, directory, settings).install_app_for_users(
            uuid4(), ["u1", "u2"], TEAMS_APP_ID
        )

        assert result.installed == 2
        assert result.failed == 0
        assert result.lookup_failed == 1
        assert result.conversations_recorded == 1

    async def test_circuit_breaker_stops_page_and_keeps_handles(
        self,
        session: AsyncSession,
        session_factory,
        directory: FakeDirectory,
        settings: Settings,
    ):
        """Breaker opens on the 4th of 10 installs: 3 handles survive the abort."""
        ids = [f"u{i}" for i in range(1, 11)]
        directory.chat_ids = {aad_id: f"a:chat-{aad_id}" for aad_id in ids}
        directory.break_on_install = 4

        with pytest.raises(CircuitBreakerOpenError):
            await InstallCoordinator(session, directory, settings).install_app_for_users(
                uuid4(), ids, TEAMS_APP_ID
            )

        assert directory.install_calls == ["u1", "u2", "u3", "u4"]

        async with session_factory() as fresh:
            for aad_id in ("u1", "u2", "u3"):
                assert (await fresh.get(User, aad_id)).conversation_id == f"a:chat-{aad_id}"
            assert await fresh.get(User, "u4") is None

    async def test_open_circuit_stops_new_installs_under_concurrency(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
        settings: Settings,
    ):
        """Installs overlap; once the breaker trips no further install starts."""
        ids = [f"u{i}" for i in range(1, 11)]
        directory.chat_ids = {aad_id: f"a:chat-{aad_id}" for aad_id in ids}
        directory.break_on_install = 4
        directory.yield_on_install = True

        coordinator = InstallCoordinator(session, directory, settings, concurrency=3)
        with pytest.raises(CircuitBreakerOpenError):
            await coordinator.install_app_for_users(uuid4(), ids, TEAMS_APP_ID)

        assert directory.calls_after_trip == []
        assert directory.max_in_flight == 3
        # Only installs already in flight at the trip ran past the 4th call
        assert len(directory.install_calls) <= 3 + 3
        for aad_id in ("u1", "u2", "u3"):
            assert (await session.get(User, aad_id)).conversation_id == f"a:chat-{aad_id}"
        assert await session.get(User, "u4") is None


# =============================================================================
# TEST: TEAM INSTALL
# =============================================================================


class TestInstallAppForTeams:
    async def test_stores_channel_in_team_cache(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
        settings: Settings,
    ):
        notification = await create_notification(session)
        records = await add_records(
            session, notification.id, ["team-1", "team-2"], recipient_type=RecipientType.TEAM
        )
        directory.channel_ids = {"team-1": "19:general-1@thread.tacv2"}
        directory.rejected = {"team-2"}

        result = await InstallCoordinator(session, directory, settings).install_app_for_teams(
            notification.id, TEAMS_APP_ID
        )

        assert result.installed == 1
        assert result.failed == 1
        team = await session.get(Team, "team-1")
        assert team.team_id == "19:general-1@thread.tacv2"
        assert team.service_url == settings.teams_service_url
        # Delivery records are left for conversation refresh
        assert all(record.conversation_id is None for record in records)

    async def test_no_team_records_is_a_no_op(
        self,
        session: AsyncSession,
        directory: FakeDirectory,
        settings: Settings,
    ):
        notification = await create_notification(session)
        await add_records(session, notification.id, ["u1"])

        result = await InstallCoordinator(session, directory, settings).install_app_for_teams(
            notification.id, TEAMS_APP_ID
        )

        assert result.installed == 0
        assert directory.team_install_calls == []
