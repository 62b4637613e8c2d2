"""Preparation pipeline orchestration."""

from .orchestrators import (
    data_aggregation,
    install_app,
    prepare_to_send,
    send_queue,
    sync_recipients,
)
from .runtime import (
    DEFAULT_RETRY_POLICY,
    ActivityFailedError,
    LocalOrchestrationClient,
    LocalOrchestrationContext,
    OrchestrationContext,
    PipelineServices,
    RetryPolicy,
)

__all__ = [
    # Orchestrators
    "prepare_to_send",
    "sync_recipients",
    "install_app",
    "send_queue",
    "data_aggregation",
    # Runtime
    "OrchestrationContext",
    "LocalOrchestrationContext",
    "LocalOrchestrationClient",
    "PipelineServices",
    "RetryPolicy",
    "DEFAULT_RETRY_POLICY",
    "ActivityFailedError",
]
