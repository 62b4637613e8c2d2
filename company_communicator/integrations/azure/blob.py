"""Azure Blob Storage payload store.

Uses the Blob service REST API directly with a container SAS token.
"""

import logging
from uuid import UUID

import httpx

from ...core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class BlobStorageError(Exception):
    """A blob upload failed."""
    pass


def payload_blob_name(notification_id: UUID | str) -> str:
    """Blob key of a notification's card payload."""
    return f"{notification_id}.json"


class BlobStorageService:
    """Stores one Adaptive Card payload per notification."""

    API_VERSION = "2021-08-06"

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
        return bool(self.settings.blob_container_url and self.settings.blob_sas_token)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _blob_url(self, blob_name: str) -> str:
        container = self.settings.blob_container_url.rstrip("/")
        sas = self.settings.blob_sas_token.lstrip("?")
        return f"{container}/{blob_name}?{sas}"

    async def upload_card(self, notification_id: UUID, card_json: str) -> str:
        """
        Upload a notification's card payload, overwriting any previous copy.

        Returns the blob key referenced by send-queue messages.
        """
        if not self.is_configured:
            raise BlobStorageError("Blob storage is not configured")

        blob_name = payload_blob_name(notification_id)
        response = await self._client.put(
            self._blob_url(blob_name),
            content=card_json.encode("utf-8"),
            headers={
                "x-ms-blob-type": "BlockBlob",
                "x-ms-version": self.API_VERSION,
                "Content-Type": "application/json",
            },
        )
        if response.status_code not in (200, 201):
            logger.error(f"Failed to upload blob '{blob_name}': {response.status_code} {response.text}")
            raise BlobStorageError(f"Upload of '{blob_name}' returned {response.status_code}")

        logger.info(f"Uploaded Adaptive Card blob '{blob_name}' for notification {notification_id}")
        return blob_name

