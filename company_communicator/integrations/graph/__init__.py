"""Microsoft Graph directory integration."""

from .client import GraphDirectoryService
from .directory import (
    DirectoryError,
    DirectoryService,
    DirectoryUser,
    TransientDirectoryError,
)
from .resilience import CircuitBreaker, CircuitBreakerOpenError, CircuitState

__all__ = [
    "GraphDirectoryService",
    "DirectoryService",
    "DirectoryUser",
    "DirectoryError",
    "TransientDirectoryError",
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitState",
]
