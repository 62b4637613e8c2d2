"""
Payload storage and Send Dispatcher.

The card payload is built and uploaded once per notification; each send
message only references it by blob key.
"""

import logging
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..integrations.azure import payload_blob_name
from ..models import DeliveryStatus, Notification, SentNotification
from ..schemas import SendQueueMessage
from .errors import NotificationNotFoundError

logger = logging.getLogger(__name__)

SEND_BATCH_SIZE = 100


class PayloadBuilder(Protocol):
    def build_payload(self, notification: Notification) -> str: ...

    def resolve_variables(self, card_json: str, variables: dict | str | None) -> str: ...


class PayloadStore(Protocol):
    async def upload_card(self, notification_id: UUID, card_json: str) -> str: ...


class SendQueue(Protocol):
    async def send_batch(self, messages: list[SendQueueMessage]) -> None: ...


class PayloadService:
    """Builds and stores a notification's card payload."""

    def __init__(
        self,
        session: AsyncSession,
        card_builder: PayloadBuilder,
        payload_store: PayloadStore,
    ):
        self._session = session
        self._card_builder = card_builder
        self._payload_store = payload_store

    async def store_card(self, notification_id: UUID) -> str:
        """
        Build the card, resolve notification-wide variables and upload it.

        Uploading overwrites, so a replay stores the same blob again.
        Returns the blob key.
        """
        notification = await self._session.get(Notification, notification_id)
        if notification is None:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")

        card_json = self._card_builder.build_payload(notification)
        # Same values for every recipient, so resolved once here
        card_json = self._card_builder.resolve_variables(card_json, notification.custom_variables)

        blob_key = await self._payload_store.upload_card(notification_id, card_json)
        logger.info(f"Stored card for notification {notification_id} as blob '{blob_key}'")
        return blob_key


@dataclass
class SendBatchResult:
    """One page of enqueued records and the cursor to resume from."""
    enqueued: int = 0
    next_cursor: int = 0


class SendDispatcher:
    """Publishes Queued delivery records to the send queue, one page at a time."""

    def __init__(self, session: AsyncSession, send_queue: SendQueue):
        self._session = session
        self._send_queue = send_queue

    async def send_batch_to_queue(
        self,
        notification_id: UUID,
        last_seen_id: int = 0,
        batch_size: int = SEND_BATCH_SIZE,
    ) -> SendBatchResult:
        """
        Enqueue the next page of Queued records after ``last_seen_id``.

        Pages follow the record id, so records the send worker completes
        meanwhile never shift later pages. Delivery status is left
        untouched; the worker records the outcome. ``enqueued == 0`` means
        every page has been sent.
        """
        result = await self._session.execute(
            select(SentNotification)
            .where(
                SentNotification.notification_id == notification_id,
                SentNotification.id > last_seen_id,
                SentNotification.delivery_status == DeliveryStatus.QUEUED,
            )
            .order_by(SentNotification.id)
            .limit(batch_size)
        )
        records = result.scalars().all()

        if not records:
            logger.info(
                f"No more records for notification {notification_id} after id {last_seen_id}"
            )
            return SendBatchResult(enqueued=0, next_cursor=last_seen_id)

        blob_key = payload_blob_name(notification_id)
        messages = [
            SendQueueMessage(
                notification_id=record.notification_id,
                delivery_record_id=record.id,
                recipient_id=record.recipient_id,
                conversation_id=record.conversation_id,
                service_url=record.service_url,
                payload_blob_key=blob_key,
            )
            for record in records
        ]
        await self._send_queue.send_batch(messages)

        next_cursor = records[-1].id
        logger.info(
            f"Enqueued {len(messages)} messages for notification {notification_id}, "
            f"ids {last_seen_id + 1}..{next_cursor}"
        )
        return SendBatchResult(enqueued=len(messages), next_cursor=next_cursor)
