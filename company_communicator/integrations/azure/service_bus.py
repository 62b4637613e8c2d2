"""Azure Service Bus send-queue publisher.

Uses the Service Bus REST API directly, signing requests with a
shared access key.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
import urllib.parse
from collections.abc import Sequence

import httpx

from ...core.config import Settings, get_settings
from ...schemas import SendQueueMessage

logger = logging.getLogger(__name__)


class ServiceBusError(Exception):
    """Publishing to the queue failed."""
    pass


def generate_sas_token(resource_uri: str, key_name: str, key: str, ttl_seconds: int = 3600) -> str:
    """Build a Service Bus shared access signature for ``resource_uri``."""
    encoded_uri = urllib.parse.quote_plus(resource_uri)
    expiry = str(int(time.time()) + ttl_seconds)
    to_sign = f"{encoded_uri}\n{expiry}".encode("utf-8")
    signature = base64.b64encode(
        hmac.new(key.encode("utf-8"), to_sign, hashlib.sha256).digest()
    )
    return (
        f"SharedAccessSignature sr={encoded_uri}"
        f"&sig={urllib.parse.quote_plus(signature)}"
        f"&se={expiry}&skn={key_name}"
    )


class ServiceBusService:
    """Publishes per-recipient send jobs to the send queue."""

    # Max messages per REST batch call
    SEND_BATCH_SIZE = 100
    BATCH_CONTENT_TYPE = "application/vnd.microsoft.servicebus.json"

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self._client = http_client or httpx.AsyncClient(timeout=30.0)
        self._owns_client = http_client is None

    @property
    def is_configured(self) -> bool:
        return self.settings.service_bus_enabled

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def queue_url(self) -> str:
        namespace = self.settings.service_bus_namespace
        return f"https://{namespace}.servicebus.windows.net/{self.settings.service_bus_send_queue}"

    async def send_batch(self, messages: Sequence[SendQueueMessage]) -> None:
        """
        Publish send messages, chunked into REST batches.

        Each message id is the delivery record id, so the broker's duplicate
        detection can drop a page published twice after a replay.
        """
        if not messages:
            return
        if not self.is_configured:
            raise ServiceBusError("Service Bus is not configured")

        token = generate_sas_token(
            self.queue_url,
            self.settings.service_bus_key_name,
            self.settings.service_bus_key,
        )

        batches = 0
        for start in range(0, len(messages), self.SEND_BATCH_SIZE):
            chunk = messages[start:start + self.SEND_BATCH_SIZE]
            body = [
                {
                    "Body": message.to_json(),
                    "BrokerProperties": {
                        "MessageId": str(message.delivery_record_id),
                        "ContentType": "application/json",
                    },
                }
                for message in chunk
            ]
            response = await self._client.post(
                f"{self.queue_url}/messages",
                content=json.dumps(body),
                headers={
                    "Authorization": token,
                    "Content-Type": self.BATCH_CONTENT_TYPE,
                },
            )
            if response.status_code != 201:
                logger.error(
                    f"Failed to enqueue send batch: {response.status_code} {response.text}"
                )
                raise ServiceBusError(f"Send batch returned {response.status_code}")
            batches += 1

        logger.info(f"Enqueued {len(messages)} send messages across {batches} batch(es)")
