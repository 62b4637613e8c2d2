"""Microsoft Teams card payloads."""

from .cards import NotificationCards

__all__ = ["NotificationCards"]
