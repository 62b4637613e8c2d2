"""Azure payload store and send queue."""

from .blob import BlobStorageError, BlobStorageService, payload_blob_name
from .service_bus import ServiceBusError, ServiceBusService, generate_sas_token

__all__ = [
    "BlobStorageService",
    "BlobStorageError",
    "payload_blob_name",
    "ServiceBusService",
    "ServiceBusError",
    "generate_sas_token",
]
