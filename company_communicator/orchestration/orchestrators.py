"""
Pipeline orchestrators.

prepare_to_send sequences the phases of one notification:

1. Store the card payload              (-> SyncingRecipients)
2. Resolve recipients                  (sync_recipients)
3. Store the recipient count
4. Proactive installation              (install_app, -> InstallingApp)
5. Enqueue every ready record          (-> Sending, send_queue)
6. Poll delivery status until done     (data_aggregation)

A cancel is honored between phases: each phase starts with a status
write, which is refused once the notification is terminal.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from ..models import AudienceType, NotificationStatus
from . import activities
from .activities import (
    GetInstallBatchInput,
    InstallTeamsInput,
    InstallUsersInput,
    MarkFailedInput,
    SendBatchInput,
    SetStatusInput,
    SyncInput,
)
from .runtime import ActivityFailedError, OrchestrationContext

logger = logging.getLogger(__name__)

# Install phase
INSTALL_PAGE_SIZE = 20
INSTALL_PAGES_PER_BATCH = 10
INSTALL_PHASE_TIMEOUT = timedelta(minutes=60)
NO_PROGRESS_LIMIT = 3

# Send phase
SEND_BATCH_SIZE = 100

# Aggregation phase
FAST_PHASE = timedelta(minutes=10)
FAST_INTERVAL = timedelta(seconds=10)
SLOW_INTERVAL = timedelta(seconds=60)
SAFETY_NET = timedelta(hours=24)


@dataclass(frozen=True)
class InstallAppInput:
    notification_id: UUID
    teams_app_id: str
    wait_seconds: int
    max_refresh_attempts: int


def refresh_backoff_multiplier(attempt: int) -> float:
    """Refresh poll backoff: x1 for attempts 1-2, x1.5 for 3-5, x2 after."""
    if attempt <= 2:
        return 1.0
    if attempt <= 5:
        return 1.5
    return 2.0


# =============================================================================
# ROOT ORCHESTRATION
# =============================================================================


async def prepare_to_send(context: OrchestrationContext, notification_id: UUID) -> None:
    """Run the full pipeline for one notification."""
    logger.info(f"Preparing notification {notification_id}")

    try:
        if not await context.call_activity(activities.store_card_activity, notification_id):
            logger.info(f"Notification {notification_id} canceled before recipient sync")
            return

        recipient_count = await context.call_sub_orchestrator(sync_recipients, notification_id)
        logger.info(f"Sync complete for notification {notification_id}: {recipient_count} new records")

        await context.call_activity(activities.update_recipient_count_activity, notification_id)

        install_config = await context.call_activity(activities.get_install_config_activity)

        if install_config.enabled:
            try:
                completed = await context.call_sub_orchestrator(
                    install_app,
                    InstallAppInput(
                        notification_id=notification_id,
                        teams_app_id=install_config.teams_app_id,
                        wait_seconds=install_config.wait_seconds,
                        max_refresh_attempts=install_config.max_refresh_attempts,
                    ),
                )
                if not completed:
                    logger.info(f"Notification {notification_id} canceled before installation")
                    return
            except ActivityFailedError as e:
                # Degrade: still send to recipients that already have a conversation
                logger.error(
                    f"Install step failed for notification {notification_id}; "
                    f"continuing with available recipients: {e}"
                )
                await context.call_activity(
                    activities.refresh_conversation_ids_activity, notification_id
                )
                await context.call_activity(activities.mark_unreachable_activity, notification_id)
        else:
            logger.warning("TEAMS_APP_ID not configured; skipping proactive installation")
            await context.call_activity(activities.mark_unreachable_activity, notification_id)

        if not await context.call_activity(
            activities.set_notification_status_activity,
            SetStatusInput(notification_id, NotificationStatus.SENDING),
        ):
            logger.info(f"Notification {notification_id} canceled before sending")
            return

        await context.call_sub_orchestrator(send_queue, notification_id)
        await context.call_sub_orchestrator(data_aggregation, notification_id)

    except ActivityFailedError as e:
        logger.error(f"Pipeline failed for notification {notification_id}: {e}")
        await context.call_activity(
            activities.mark_notification_failed_activity,
            MarkFailedInput(notification_id, str(e.cause) or e.activity_name),
        )
        raise

    logger.info(f"Pipeline completed for notification {notification_id}")


# =============================================================================
# SUB-ORCHESTRATIONS
# =============================================================================


async def sync_recipients(context: OrchestrationContext, notification_id: UUID) -> int:
    """Resolve the audience; returns the number of records created."""
    audience = await context.call_activity(
        activities.get_notification_audience_activity, notification_id
    )
    logger.info(
        f"Notification {notification_id}: all_users={audience.all_users}, "
        f"audiences={len(audience.audiences)}"
    )

    if audience.all_users:
        return await context.call_activity(activities.sync_all_users_activity, notification_id)

    sync_by_type = {
        AudienceType.TEAM: activities.sync_team_channel_activity,
        AudienceType.ROSTER: activities.sync_team_members_activity,
        AudienceType.GROUP: activities.sync_group_members_activity,
    }
    results = await context.task_all(
        context.call_activity(
            sync_by_type[target.audience_type],
            SyncInput(notification_id, target.audience_id),
        )
        for target in audience.audiences
    )
    return sum(results)


async def install_app(context: OrchestrationContext, input: InstallAppInput) -> bool:
    """
    Proactive installation with bounded refresh polling.

    Returns False if the notification was canceled before installation
    started. Ends with mark-unreachable, so no record is left Queued
    without a conversation.
    """
    notification_id = input.notification_id
    deadline = context.current_utc_datetime + INSTALL_PHASE_TIMEOUT

    if not await context.call_activity(
        activities.set_notification_status_activity,
        SetStatusInput(notification_id, NotificationStatus.INSTALLING_APP),
    ):
        return False

    # Users: windowed keyset pagination, pages installed in parallel
    users_installed = users_failed = 0
    last_seen_id = 0
    while context.current_utc_datetime < deadline:
        batch = await context.call_activity(
            activities.get_install_batch_activity,
            GetInstallBatchInput(
                notification_id, last_seen_id, INSTALL_PAGE_SIZE, INSTALL_PAGES_PER_BATCH
            ),
        )
        if not batch.pages:
            break
        last_seen_id = batch.next_cursor

        results = await context.task_all(
            context.call_activity(
                activities.install_app_for_users_activity,
                InstallUsersInput(notification_id, input.teams_app_id, page),
            )
            for page in batch.pages
            if page
        )
        users_installed += sum(r.installed for r in results)
        users_failed += sum(r.failed for r in results)

        if not batch.has_more:
            break

    logger.info(
        f"User install for notification {notification_id}: "
        f"installed={users_installed}, failed={users_failed}"
    )

    team_result = await context.call_activity(
        activities.install_app_for_teams_activity,
        InstallTeamsInput(notification_id, input.teams_app_id),
    )

    # Refresh polling, only when something was installed
    if users_installed + team_result.installed > 0:
        no_progress = 0
        best_pending: int | None = None
        for attempt in range(1, input.max_refresh_attempts + 1):
            if context.current_utc_datetime >= deadline:
                break
            wait = timedelta(seconds=input.wait_seconds * refresh_backoff_multiplier(attempt))
            await context.create_timer(context.current_utc_datetime + wait)
            if context.current_utc_datetime >= deadline:
                break

            refresh = await context.call_activity(
                activities.refresh_conversation_ids_activity, notification_id
            )
            logger.info(
                f"Refresh {attempt}/{input.max_refresh_attempts} for notification "
                f"{notification_id}: refreshed={refresh.refreshed}, "
                f"still pending={refresh.still_pending}"
            )
            if refresh.still_pending == 0:
                break
            if best_pending is not None and refresh.still_pending >= best_pending:
                no_progress += 1
            else:
                no_progress = 0
                best_pending = refresh.still_pending
            if no_progress >= NO_PROGRESS_LIMIT:
                logger.warning(
                    f"No refresh progress for {NO_PROGRESS_LIMIT} polls; stopping for "
                    f"notification {notification_id} with {refresh.still_pending} pending"
                )
                break

    unreachable = await context.call_activity(activities.mark_unreachable_activity, notification_id)
    if unreachable:
        logger.warning(f"Notification {notification_id}: {unreachable} recipient(s) unreachable")
    return True


async def send_queue(context: OrchestrationContext, notification_id: UUID) -> int:
    """Enqueue every Queued record, page by page, until a page comes back empty."""
    batch_number = 0
    total = 0
    last_seen_id = 0
    while True:
        batch = await context.call_activity(
            activities.send_batch_to_queue_activity,
            SendBatchInput(notification_id, last_seen_id, SEND_BATCH_SIZE),
        )
        if batch.enqueued == 0:
            break
        total += batch.enqueued
        last_seen_id = batch.next_cursor
        batch_number += 1

    logger.info(
        f"Enqueued {total} messages for notification {notification_id} "
        f"across {batch_number} batch(es)"
    )
    return total


async def data_aggregation(context: OrchestrationContext, notification_id: UUID) -> None:
    """
    Poll the aggregator until every record is terminal.

    Polls every 10s for the first 10 minutes, then every minute. Once more
    than 24 hours have passed the safety net forces completion.
    """
    started = context.current_utc_datetime

    while True:
        elapsed = context.current_utc_datetime - started
        if elapsed > SAFETY_NET:
            logger.warning(
                f"Safety net triggered for notification {notification_id} after {elapsed}"
            )
            await context.call_activity(activities.force_complete_activity, notification_id)
            break

        interval = FAST_INTERVAL if elapsed < FAST_PHASE else SLOW_INTERVAL
        await context.create_timer(context.current_utc_datetime + interval)

        result = await context.call_activity(activities.data_aggregation_activity, notification_id)
        if result.is_complete:
            break
        if result.notification_status is not None and result.notification_status.is_terminal:
            logger.info(
                f"Notification {notification_id} is {result.notification_status.value}; "
                "stopping aggregation"
            )
            break

    logger.info(f"Aggregation finished for notification {notification_id}")
