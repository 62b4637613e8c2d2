"""
Notification API Routes: thin surface over the preparation pipeline.

1. POST /notifications/{id}/send   - Queue a draft and start the pipeline
2. POST /notifications/{id}/cancel - Cancel a notification that is still in flight
3. GET  /notifications/{id}/status - Status and aggregate counters
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..core import SessionDep, require_api_key
from ..models import Notification, NotificationStatus
from ..orchestration import LocalOrchestrationClient, prepare_to_send
from ..schemas import NotificationStatusResponse
from ..services import (
    InvalidStatusTransitionError,
    NotificationNotFoundError,
    StatusAggregator,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/notifications",
    tags=["notifications"],
    dependencies=[Depends(require_api_key)],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_orchestration_client(request: Request) -> LocalOrchestrationClient:
    return request.app.state.orchestration_client


OrchestrationClientDep = Annotated[LocalOrchestrationClient, Depends(get_orchestration_client)]


def get_status_aggregator(session: SessionDep) -> StatusAggregator:
    return StatusAggregator(session)


StatusAggregatorDep = Annotated[StatusAggregator, Depends(get_status_aggregator)]


async def _load_notification(session, notification_id: UUID) -> Notification:
    notification = await session.get(Notification, notification_id)
    if notification is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Notification {notification_id} not found",
        )
    return notification


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.post(
    "/{notification_id}/send",
    response_model=NotificationStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def send_notification(
    notification_id: UUID,
    session: SessionDep,
    aggregator: StatusAggregatorDep,
    client: OrchestrationClientDep,
):
    """
    Queue a draft notification and start preparing it for delivery.

    Progress is reported by the status endpoint.
    """
    notification = await _load_notification(session, notification_id)
    if notification.status != NotificationStatus.DRAFT:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only draft notifications can be sent (status is {notification.status.value})",
        )

    await aggregator.set_status(notification_id, NotificationStatus.QUEUED)
    # The pipeline reads the notification from its own sessions
    await session.commit()

    client.start_new(prepare_to_send, notification_id)
    logger.info(f"Notification {notification_id} queued for sending")

    return NotificationStatusResponse.from_notification(notification)


@router.post(
    "/{notification_id}/cancel",
    response_model=NotificationStatusResponse,
)
async def cancel_notification(
    notification_id: UUID,
    session: SessionDep,
    aggregator: StatusAggregatorDep,
):
    """
    Cancel a notification.

    The running pipeline notices at its next phase boundary; work already
    in progress finishes.
    """
    try:
        canceled = await aggregator.set_status(notification_id, NotificationStatus.CANCELED)
    except NotificationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    notification = await _load_notification(session, notification_id)
    if not canceled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Notification is already {notification.status.value}",
        )

    logger.info(f"Notification {notification_id} canceled")
    return NotificationStatusResponse.from_notification(notification)


@router.get(
    "/{notification_id}/status",
    response_model=NotificationStatusResponse,
)
async def get_notification_status(notification_id: UUID, session: SessionDep):
    """Status plus the counters last written by the aggregator."""
    notification = await _load_notification(session, notification_id)
    return NotificationStatusResponse.from_notification(notification)
