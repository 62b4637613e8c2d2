"""Pipeline error types."""


class PipelineError(Exception):
    """Base exception for preparation pipeline operations."""
    pass


class ConfigurationError(PipelineError):
    """Invalid deployment configuration. Never retried."""
    pass


class NotificationNotFoundError(PipelineError):
    """Notification does not exist."""
    pass


class InvalidStatusTransitionError(PipelineError):
    """Status write not allowed by the notification state machine."""
    pass
