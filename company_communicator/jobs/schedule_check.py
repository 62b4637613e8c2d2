"""
Schedule Check Job: start notifications whose scheduled time has passed.

Runs every minute, either inside the API process (see main.lifespan) or
as a standalone command:

    python -m company_communicator.jobs.schedule_check --wait

Each due notification moves Scheduled -> Queued and gets its own
preparation pipeline. One failing notification does not stop the others.
"""

import asyncio
import logging
import traceback
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import get_settings
from ..core.database import session_scope
from ..models import Notification, NotificationStatus
from ..services import StatusAggregator

logger = logging.getLogger(__name__)

CHECK_INTERVAL_SECONDS = 60


# =============================================================================
# ALERTING
# =============================================================================


async def send_alert(
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
) -> None:
    """
    Report a job failure.

    Always logged; also posted to ALERT_WEBHOOK_URL when configured.
    """
    log_message = f"[SCHEDULE ALERT] {title}: {message}"
    if details:
        log_message += f" | Details: {details}"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    webhook_url = get_settings().alert_webhook_url
    if webhook_url:
        payload = {
            "title": title,
            "message": message,
            "severity": severity,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": "company-communicator-schedule-check",
            "details": details or {},
        }
        try:
            async with httpx.AsyncClient() as client:
                await client.post(webhook_url, json=payload, timeout=10)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook alert: {e}")


# =============================================================================
# JOB
# =============================================================================


async def run_schedule_check(
    session_factory: async_sessionmaker[AsyncSession],
    start_pipeline: Callable[[UUID], Any],
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Queue every due Scheduled notification and start its pipeline.

    Returns a summary with the started notification ids and any errors.
    """
    now = now or datetime.now(timezone.utc)
    results: dict[str, Any] = {"checked_at": now.isoformat(), "started": [], "errors": []}

    async with session_scope(session_factory) as session:
        due = await session.execute(
            select(Notification.id).where(
                Notification.status == NotificationStatus.SCHEDULED,
                Notification.scheduled_date.isnot(None),
                Notification.scheduled_date <= now,
            ).order_by(Notification.scheduled_date)
        )
        due_ids = list(due.scalars().all())

    if not due_ids:
        logger.debug(f"No due scheduled notifications at {now.isoformat()}")
        return results

    logger.info(f"Found {len(due_ids)} due notification(s) at {now.isoformat()}")

    for notification_id in due_ids:
        try:
            async with session_scope(session_factory) as session:
                queued = await StatusAggregator(session).set_status(
                    notification_id, NotificationStatus.QUEUED
                )
            if not queued:
                continue

            start_pipeline(notification_id)
            results["started"].append(notification_id)
            logger.info(f"Started pipeline for scheduled notification {notification_id}")
        except Exception as e:
            logger.error(f"Failed to start scheduled notification {notification_id}: {e}")
            results["errors"].append(f"{notification_id}: {e}")

    if results["errors"]:
        await send_alert(
            title="Schedule Check Completed with Errors",
            message=f"{len(results['errors'])} scheduled notification(s) could not be started.",
            severity="warning",
            details={"errors": results["errors"][:5]},
        )

    return results


async def run_schedule_loop(
    session_factory: async_sessionmaker[AsyncSession],
    start_pipeline: Callable[[UUID], Any],
    interval_seconds: float = CHECK_INTERVAL_SECONDS,
) -> None:
    """Run the schedule check forever; a failed tick is alerted and the loop continues."""
    while True:
        try:
            await run_schedule_check(session_factory, start_pipeline)
        except Exception as e:
            await send_alert(
                title="Schedule Check Failed",
                message="The scheduled-notification check crashed.",
                severity="critical",
                details={"error": str(e), "traceback": traceback.format_exc()[-500:]},
            )
        await asyncio.sleep(interval_seconds)


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


async def _run_once(database_url: str, wait: bool) -> dict[str, Any]:
    from sqlalchemy.ext.asyncio import create_async_engine

    from ..core.database import build_session_factory
    from ..integrations.azure import BlobStorageService, ServiceBusService
    from ..integrations.graph import GraphDirectoryService
    from ..orchestration import LocalOrchestrationClient, PipelineServices, prepare_to_send

    settings = get_settings()
    engine = create_async_engine(database_url)
    session_factory = build_session_factory(engine)
    directory = GraphDirectoryService(settings)
    payload_store = BlobStorageService(settings)
    send_queue = ServiceBusService(settings)
    client = LocalOrchestrationClient(
        PipelineServices(
            session_factory=session_factory,
            directory=directory,
            payload_store=payload_store,
            send_queue=send_queue,
            settings=settings,
        )
    )

    try:
        results = await run_schedule_check(
            session_factory,
            lambda notification_id: client.start_new(prepare_to_send, notification_id),
        )
        if wait:
            await client.wait_all()
        return results
    finally:
        await directory.aclose()
        await payload_store.aclose()
        await send_queue.aclose()
        await engine.dispose()


def main():
    """CLI entry point for the schedule check."""
    import argparse

    parser = argparse.ArgumentParser(description="Start due scheduled notifications")
    parser.add_argument(
        "--database-url",
        default=get_settings().database_url_async,
        help="Async SQLAlchemy connection string",
    )
    parser.add_argument(
        "--wait",
        action="store_true",
        help="Keep running until every started pipeline finishes",
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        results = asyncio.run(_run_once(args.database_url, args.wait))
        logger.info(f"Schedule check completed: {results}")
    except Exception as e:
        logger.error(f"Schedule check failed: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
