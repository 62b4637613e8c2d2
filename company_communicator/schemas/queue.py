"""Queue message contracts shared with the send worker."""

from uuid import UUID

from .base import WireModel


class SendQueueMessage(WireModel):
    """One per-recipient send job on the send queue.

    Serialized with camelCase keys: ``notificationId``, ``deliveryRecordId``,
    ``recipientId``, ``conversationId``, ``serviceUrl``, ``payloadBlobKey``.
    """

    notification_id: UUID
    delivery_record_id: int
    recipient_id: str
    conversation_id: str | None = None
    service_url: str | None = None
    payload_blob_key: str | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
