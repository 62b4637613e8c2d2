"""Preparation pipeline services."""

from .aggregation import AggregationResult, StatusAggregator
from .audience import AudienceResolver, AudienceSpec, NotificationAudienceInfo
from .conversations import ConversationService, RefreshResult
from .dispatch import PayloadService, SendBatchResult, SendDispatcher
from .errors import (
    ConfigurationError,
    InvalidStatusTransitionError,
    NotificationNotFoundError,
    PipelineError,
)
from .install import (
    InstallBatch,
    InstallBatchResult,
    InstallConfig,
    InstallCoordinator,
    get_install_config,
)
from .recipients import RecipientService

__all__ = [
    # Errors
    "PipelineError",
    "ConfigurationError",
    "NotificationNotFoundError",
    "InvalidStatusTransitionError",
    # Recipients
    "RecipientService",
    "AudienceResolver",
    "AudienceSpec",
    "NotificationAudienceInfo",
    # Installation
    "InstallCoordinator",
    "InstallConfig",
    "InstallBatch",
    "InstallBatchResult",
    "get_install_config",
    "ConversationService",
    "RefreshResult",
    # Dispatch
    "PayloadService",
    "SendDispatcher",
    "SendBatchResult",
    # Status
    "StatusAggregator",
    "AggregationResult",
]
