"""
Install Coordinator: proactive app installation for recipients that have
no conversation handle yet.

- Config: resolves the app id and install round parameters
- Pagination: keyset scan over not-yet-reachable user records
- Users/Teams: bounded-concurrency installation through the directory

Network calls fan out concurrently, but every store write happens
sequentially after the fan-out on the activity's single session.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings
from ..integrations.graph import CircuitBreakerOpenError, DirectoryService
from ..models import (
    DeliveryStatus,
    RecipientType,
    SentNotification,
    Team,
    User,
)
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Max in-flight directory calls per install activity
INSTALL_CONCURRENCY = 5


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class InstallConfig:
    """Proactive installation parameters."""
    teams_app_id: str
    wait_seconds: int
    max_refresh_attempts: int

    @property
    def enabled(self) -> bool:
        return bool(self.teams_app_id)


@dataclass
class InstallBatch:
    """Up to page_count pages of recipient ids, plus the cursor to resume from."""
    pages: list[list[str]] = field(default_factory=list)
    next_cursor: int = 0
    has_more: bool = False


@dataclass
class InstallBatchResult:
    installed: int = 0
    failed: int = 0
    # Installed, but the conversation handle could not be read yet
    lookup_failed: int = 0
    conversations_recorded: int = 0


def get_install_config(settings: Settings) -> InstallConfig:
    """
    Resolve install parameters from settings.

    An empty app id disables installation. A non-empty app id that is
    not a UUID raises ConfigurationError.
    """
    app_id = (settings.teams_app_id or "").strip()
    if app_id:
        try:
            uuid.UUID(app_id)
        except ValueError:
            raise ConfigurationError(
                f"TEAMS_APP_ID '{app_id}' is not a valid GUID; proactive installation cannot run"
            )

    return InstallConfig(
        teams_app_id=app_id,
        wait_seconds=settings.effective_install_wait_seconds,
        max_refresh_attempts=settings.effective_max_refresh_attempts,
    )


# =============================================================================
# INSTALL COORDINATOR
# =============================================================================


class InstallCoordinator:
    """Pagination and installation activities for one session."""

    def __init__(
        self,
        session: AsyncSession,
        directory: DirectoryService,
        settings: Settings,
        concurrency: int = INSTALL_CONCURRENCY,
    ):
        self._session = session
        self._directory = directory
        self._settings = settings
        self._concurrency = concurrency

    async def get_install_batch(
        self,
        notification_id: UUID,
        last_seen_id: int,
        page_size: int,
        page_count: int,
    ) -> InstallBatch:
        """
        Fetch the next window of user records still lacking a conversation.

        Reads page_size * page_count + 1 rows; the extra row only signals
        that more pages exist and is dropped.
        """
        window = page_size * page_count
        result = await self._session.execute(
            select(SentNotification.id, SentNotification.recipient_id)
            .where(
                SentNotification.notification_id == notification_id,
                SentNotification.id > last_seen_id,
                SentNotification.conversation_id.is_(None),
                SentNotification.recipient_type == RecipientType.USER,
                SentNotification.delivery_status == DeliveryStatus.QUEUED,
            )
            .order_by(SentNotification.id)
            .limit(window + 1)
        )
        rows = result.all()

        has_more = len(rows) > window
        if has_more:
            rows = rows[:window]

        pages = [
            [row.recipient_id for row in rows[start:start + page_size]]
            for start in range(0, len(rows), page_size)
        ]
        next_cursor = rows[-1].id if rows else last_seen_id

        logger.debug(
            f"Install batch for notification {notification_id}: {len(pages)} page(s), "
            f"{len(rows)} users, cursor {last_seen_id}->{next_cursor}, has_more={has_more}"
        )
        return InstallBatch(pages=pages, next_cursor=next_cursor, has_more=has_more)

    async def install_app_for_users(
        self,
        notification_id: UUID,
        user_aad_ids: list[str],
        teams_app_id: str,
    ) -> InstallBatchResult:
        """
        Install the app for one page of users.

        Per-user failures are counted, not raised. A circuit breaker trip
        stops the remaining users of the page; handles discovered so far
        are still committed before the error propagates.
        """
        semaphore = asyncio.Semaphore(self._concurrency)
        stop = asyncio.Event()
        discovered: dict[str, str] = {}
        result = InstallBatchResult()
        breaker_errors: list[CircuitBreakerOpenError] = []

        async def install_one(aad_id: str) -> None:
            async with semaphore:
                if stop.is_set():
                    return
                installed = False
                try:
                    installed = await self._directory.install_app_for_user(aad_id, teams_app_id)
                    if not installed:
                        result.failed += 1
                        return
                    result.installed += 1

                    # Resolve the handle now rather than waiting for the install callback
                    conversation_id = await self._directory.get_personal_chat_id(
                        aad_id, teams_app_id
                    )
                    if conversation_id:
                        discovered[aad_id] = conversation_id
                except CircuitBreakerOpenError as e:
                    stop.set()
                    breaker_errors.append(e)
                except Exception as e:
                    if installed:
                        # Conversation refresh picks the handle up later
                        logger.warning(f"Chat lookup for user {aad_id} failed: {e}")
                        result.lookup_failed += 1
                    else:
                        logger.warning(f"Install for user {aad_id} failed: {e}")
                        result.failed += 1

        await asyncio.gather(*(install_one(aad_id) for aad_id in user_aad_ids))

        result.conversations_recorded = await self._record_user_conversations(discovered)

        logger.info(
            f"Install for notification {notification_id}: installed={result.installed}, "
            f"failed={result.failed}, lookup_failed={result.lookup_failed}, "
            f"conversations={result.conversations_recorded}"
        )

        if breaker_errors:
            await self._session.commit()
            logger.error(
                f"Circuit breaker open; aborted install page for notification {notification_id}"
            )
            raise breaker_errors[0]

        return result

    async def _record_user_conversations(self, discovered: dict[str, str]) -> int:
        """Backfill personal conversation handles where the cache has none."""
        recorded = 0
        for aad_id, conversation_id in discovered.items():
            user = await self._session.get(User, aad_id)
            if user is None:
                user = User(aad_id=aad_id)
                self._session.add(user)
            elif user.conversation_id:
                continue
            user.conversation_id = conversation_id
            user.service_url = user.service_url or self._settings.teams_service_url
            recorded += 1

        await self._session.flush()
        return recorded

    async def install_app_for_teams(
        self,
        notification_id: UUID,
        teams_app_id: str,
    ) -> InstallBatchResult:
        """
        Install the app in every targeted team that has no channel handle.

        Delivery records are not modified; the General channel id goes into
        the team channel cache, where conversation refresh picks it up.
        """
        records = await self._session.execute(
            select(SentNotification.recipient_id).where(
                SentNotification.notification_id == notification_id,
                SentNotification.recipient_type == RecipientType.TEAM,
                SentNotification.conversation_id.is_(None),
                SentNotification.delivery_status == DeliveryStatus.QUEUED,
            )
        )
        team_group_ids = list(records.scalars().all())
        if not team_group_ids:
            logger.info(f"No teams need install for notification {notification_id}")
            return InstallBatchResult()

        semaphore = asyncio.Semaphore(self._concurrency)
        stop = asyncio.Event()
        channels: dict[str, str] = {}
        result = InstallBatchResult()
        breaker_errors: list[CircuitBreakerOpenError] = []

        async def install_one(group_id: str) -> None:
            async with semaphore:
                if stop.is_set():
                    return
                installed = False
                try:
                    installed = await self._directory.install_app_in_team(group_id, teams_app_id)
                    if not installed:
                        result.failed += 1
                        return
                    result.installed += 1
                    channel_id = await self._directory.get_team_primary_channel_id(group_id)
                    if channel_id:
                        channels[group_id] = channel_id
                except CircuitBreakerOpenError as e:
                    stop.set()
                    breaker_errors.append(e)
                except Exception as e:
                    if installed:
                        logger.warning(f"Channel lookup for team {group_id} failed: {e}")
                        result.lookup_failed += 1
                    else:
                        logger.warning(f"Install in team {group_id} failed: {e}")
                        result.failed += 1

        await asyncio.gather(*(install_one(group_id) for group_id in team_group_ids))

        result.conversations_recorded = await self._record_team_channels(channels)

        logger.info(
            f"Team install for notification {notification_id}: installed={result.installed}, "
            f"failed={result.failed}"
        )

        if breaker_errors:
            await self._session.commit()
            raise breaker_errors[0]

        return result

    async def _record_team_channels(self, channels: dict[str, str]) -> int:
        now = datetime.now(timezone.utc)
        for group_id, channel_id in channels.items():
            team = await self._session.get(Team, group_id)
            if team is None:
                team = Team(
                    aad_group_id=group_id,
                    service_url=self._settings.teams_service_url,
                    installed_date=now,
                )
                self._session.add(team)
            team.team_id = channel_id
            team.service_url = team.service_url or self._settings.teams_service_url
            logger.info(f"Stored channel {channel_id} for team {group_id}")

        await self._session.flush()
        return len(channels)
