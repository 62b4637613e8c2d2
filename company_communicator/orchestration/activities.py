"""
Pipeline activities.

Each activity opens its own session, does one unit of work and commits.
Inputs and outputs are plain dataclasses so a durable runtime can
serialize them.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from ..core.database import session_scope
from ..models import NotificationStatus
from ..services import (
    AggregationResult,
    AudienceResolver,
    ConversationService,
    InstallBatch,
    InstallBatchResult,
    InstallConfig,
    InstallCoordinator,
    NotificationAudienceInfo,
    PayloadService,
    RefreshResult,
    SendBatchResult,
    SendDispatcher,
    StatusAggregator,
    get_install_config,
)
from .runtime import PipelineServices

logger = logging.getLogger(__name__)


# =============================================================================
# INPUTS
# =============================================================================


@dataclass(frozen=True)
class SyncInput:
    notification_id: UUID
    audience_id: str


@dataclass(frozen=True)
class SetStatusInput:
    notification_id: UUID
    status: NotificationStatus


@dataclass(frozen=True)
class MarkFailedInput:
    notification_id: UUID
    error_message: str


@dataclass(frozen=True)
class GetInstallBatchInput:
    notification_id: UUID
    last_seen_id: int
    page_size: int
    page_count: int


@dataclass(frozen=True)
class InstallUsersInput:
    notification_id: UUID
    teams_app_id: str
    user_aad_ids: list[str]


@dataclass(frozen=True)
class InstallTeamsInput:
    notification_id: UUID
    teams_app_id: str


@dataclass(frozen=True)
class SendBatchInput:
    notification_id: UUID
    last_seen_id: int
    batch_size: int


# =============================================================================
# PAYLOAD AND STATUS
# =============================================================================


async def store_card_activity(services: PipelineServices, notification_id: UUID) -> bool:
    """
    Upload the card payload and move the notification to SyncingRecipients.

    Returns False when the notification was canceled meanwhile.
    """
    async with session_scope(services.session_factory) as session:
        await PayloadService(
            session, services.card_builder, services.payload_store
        ).store_card(notification_id)
        return await StatusAggregator(session).set_status(
            notification_id, NotificationStatus.SYNCING_RECIPIENTS
        )


async def set_notification_status_activity(
    services: PipelineServices,
    input: SetStatusInput,
) -> bool:
    async with session_scope(services.session_factory) as session:
        return await StatusAggregator(session).set_status(input.notification_id, input.status)


async def mark_notification_failed_activity(
    services: PipelineServices,
    input: MarkFailedInput,
) -> bool:
    async with session_scope(services.session_factory) as session:
        return await StatusAggregator(session).mark_failed(
            input.notification_id, input.error_message
        )


async def update_recipient_count_activity(services: PipelineServices, notification_id: UUID) -> int:
    async with session_scope(services.session_factory) as session:
        return await StatusAggregator(session).update_recipient_count(notification_id)


# =============================================================================
# AUDIENCE RESOLUTION
# =============================================================================


async def get_notification_audience_activity(
    services: PipelineServices,
    notification_id: UUID,
) -> NotificationAudienceInfo:
    async with session_scope(services.session_factory) as session:
        return await AudienceResolver(session, services.directory).get_audience(notification_id)


async def sync_all_users_activity(services: PipelineServices, notification_id: UUID) -> int:
    async with session_scope(services.session_factory) as session:
        return await AudienceResolver(session, services.directory).sync_all_users(notification_id)


async def sync_group_members_activity(services: PipelineServices, input: SyncInput) -> int:
    async with session_scope(services.session_factory) as session:
        return await AudienceResolver(session, services.directory).sync_group_members(
            input.notification_id, input.audience_id
        )


async def sync_team_members_activity(services: PipelineServices, input: SyncInput) -> int:
    async with session_scope(services.session_factory) as session:
        return await AudienceResolver(session, services.directory).sync_team_members(
            input.notification_id, input.audience_id
        )


async def sync_team_channel_activity(services: PipelineServices, input: SyncInput) -> int:
    async with session_scope(services.session_factory) as session:
        return await AudienceResolver(session, services.directory).sync_team_channel(
            input.notification_id, input.audience_id
        )


# =============================================================================
# INSTALLATION
# =============================================================================


async def get_install_config_activity(services: PipelineServices, _input=None) -> InstallConfig:
    return get_install_config(services.settings)


async def get_install_batch_activity(
    services: PipelineServices,
    input: GetInstallBatchInput,
) -> InstallBatch:
    async with session_scope(services.session_factory) as session:
        coordinator = InstallCoordinator(session, services.directory, services.settings)
        return await coordinator.get_install_batch(
            input.notification_id, input.last_seen_id, input.page_size, input.page_count
        )


async def install_app_for_users_activity(
    services: PipelineServices,
    input: InstallUsersInput,
) -> InstallBatchResult:
    async with session_scope(services.session_factory) as session:
        coordinator = InstallCoordinator(session, services.directory, services.settings)
        return await coordinator.install_app_for_users(
            input.notification_id, input.user_aad_ids, input.teams_app_id
        )


async def install_app_for_teams_activity(
    services: PipelineServices,
    input: InstallTeamsInput,
) -> InstallBatchResult:
    async with session_scope(services.session_factory) as session:
        coordinator = InstallCoordinator(session, services.directory, services.settings)
        return await coordinator.install_app_for_teams(input.notification_id, input.teams_app_id)


async def refresh_conversation_ids_activity(
    services: PipelineServices,
    notification_id: UUID,
) -> RefreshResult:
    async with session_scope(services.session_factory) as session:
        return await ConversationService(session).refresh_conversation_ids(notification_id)


async def mark_unreachable_activity(services: PipelineServices, notification_id: UUID) -> int:
    async with session_scope(services.session_factory) as session:
        return await ConversationService(session).mark_unreachable(notification_id)


# =============================================================================
# SEND AND AGGREGATION
# =============================================================================


async def send_batch_to_queue_activity(
    services: PipelineServices,
    input: SendBatchInput,
) -> SendBatchResult:
    async with session_scope(services.session_factory) as session:
        return await SendDispatcher(session, services.send_queue).send_batch_to_queue(
            input.notification_id, input.last_seen_id, input.batch_size
        )


async def data_aggregation_activity(
    services: PipelineServices,
    notification_id: UUID,
) -> AggregationResult:
    async with session_scope(services.session_factory) as session:
        return await StatusAggregator(session).aggregate(notification_id)


async def force_complete_activity(
    services: PipelineServices,
    notification_id: UUID,
) -> NotificationStatus:
    async with session_scope(services.session_factory) as session:
        return await StatusAggregator(session).force_complete(notification_id)
