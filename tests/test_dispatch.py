"""
Tests for payload storage and the Send Dispatcher.
"""

import json
from uuid import uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from company_communicator.integrations.teams import NotificationCards
from company_communicator.models import DeliveryStatus, RecipientType, SentNotification
from company_communicator.services import (
    NotificationNotFoundError,
    PayloadService,
    SendDispatcher,
)

from conftest import FakePayloadStore, FakeSendQueue, add_records, create_notification


class TestStoreCard:
    async def test_uploads_card_with_resolved_variables(
        self,
        session: AsyncSession,
        payload_store: FakePayloadStore,
    ):
        notification = await create_notification(
            session,
            title="Welcome to {{team}}",
            summary="Say hi in {{channel}}",
            custom_variables={"team": "Platform \"Core\""},
        )

        blob_key = await PayloadService(session, NotificationCards(), payload_store).store_card(
            notification.id
        )

        assert blob_key == f"{notification.id}.json"
        card = json.loads(payload_store.cards[notification.id])
        texts = [block.get("text") for block in card["body"]]
        assert 'Welcome to Platform "Core"' in texts
        # Unknown placeholders are left for the send worker
        assert "Say hi in {{channel}}" in texts

    async def test_missing_notification_raises(
        self,
        session: AsyncSession,
        payload_store: FakePayloadStore,
    ):
        with pytest.raises(NotificationNotFoundError):
            await PayloadService(session, NotificationCards(), payload_store).store_card(uuid4())


class TestSendBatchToQueue:
    async def test_pages_queued_records(self, session: AsyncSession, send_queue: FakeSendQueue):
        """250 Queued records in pages of 100; terminal records are not sent."""
        notification = await create_notification(session)
        queued = await add_records(
            session, notification.id, [f"u{i:03d}" for i in range(250)], conversation_id="a:chat"
        )
        await add_records(
            session, notification.id, ["gone"], status=DeliveryStatus.RECIPIENT_NOT_FOUND
        )
        dispatcher = SendDispatcher(session, send_queue)

        counts = []
        cursor = 0
        for _ in range(4):
            batch = await dispatcher.send_batch_to_queue(notification.id, cursor, 100)
            counts.append(batch.enqueued)
            cursor = batch.next_cursor

        assert counts == [100, 100, 50, 0]
        assert cursor == queued[-1].id
        assert [m.delivery_record_id for m in send_queue.messages] == [r.id for r in queued]

    async def test_records_completed_between_pages_do_not_shift_paging(
        self,
        session: AsyncSession,
        send_queue: FakeSendQueue,
    ):
        """The send worker finishes each page before the next one is read."""
        notification = await create_notification(session)
        queued = await add_records(
            session, notification.id, [f"u{i:03d}" for i in range(250)], conversation_id="a:chat"
        )
        dispatcher = SendDispatcher(session, send_queue)

        cursor = 0
        while True:
            batch = await dispatcher.send_batch_to_queue(notification.id, cursor, 100)
            if batch.enqueued == 0:
                break
            cursor = batch.next_cursor
            sent_ids = [m.delivery_record_id for m in send_queue.messages[-batch.enqueued:]]
            await session.execute(
                update(SentNotification)
                .where(SentNotification.id.in_(sent_ids))
                .values(delivery_status=DeliveryStatus.SUCCEEDED)
            )

        assert len(send_queue.messages) == 250
        assert sorted(m.delivery_record_id for m in send_queue.messages) == [r.id for r in queued]

    async def test_message_contract(self, session: AsyncSession, send_queue: FakeSendQueue):
        notification = await create_notification(session)
        [record] = await add_records(
            session,
            notification.id,
            ["team-1"],
            recipient_type=RecipientType.TEAM,
            conversation_id="19:general@thread.tacv2",
        )

        await SendDispatcher(session, send_queue).send_batch_to_queue(notification.id, 0)

        [message] = send_queue.messages
        assert json.loads(message.to_json()) == {
            "notificationId": str(notification.id),
            "deliveryRecordId": record.id,
            "recipientId": "team-1",
            "conversationId": "19:general@thread.tacv2",
            "serviceUrl": None,
            "payloadBlobKey": f"{notification.id}.json",
        }
        # Status stays Queued until the send worker reports back
        assert record.delivery_status == DeliveryStatus.QUEUED
