"""Directory adapter interface.

The pipeline only talks to the directory (users, groups, teams, app
installations) through this interface; the Microsoft Graph client is the
production implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


class DirectoryError(Exception):
    """A directory request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientDirectoryError(DirectoryError):
    """Throttling or service unavailability; safe to retry."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


@dataclass
class DirectoryUser:
    """A user identity as returned by the directory."""
    aad_id: str
    name: str | None = None
    email: str | None = None
    upn: str | None = None
    user_type: str | None = None
    tenant_id: str | None = None


class DirectoryService(ABC):
    """Abstract directory/identity service."""

    @abstractmethod
    async def get_all_users_delta(
        self,
        delta_link: str | None,
    ) -> tuple[list[DirectoryUser], str | None]:
        """
        Enumerate tenant users.

        A ``None`` delta link means full enumeration. Returns the users and
        the delta link to resume from next time.
        """

    @abstractmethod
    async def get_group_members(self, group_id: str) -> list[DirectoryUser]:
        """Enumerate the user members of an AAD group."""

    @abstractmethod
    async def get_team_members(self, team_id: str) -> list[DirectoryUser]:
        """Enumerate the members of a team."""

    @abstractmethod
    async def install_app_for_user(self, user_aad_id: str, teams_app_id: str) -> bool:
        """
        Install the app in the user's personal scope.

        Returns True when installed (or already installed), False when the
        user cannot receive the app. Raises CircuitBreakerOpenError when
        the directory is failing.
        """

    @abstractmethod
    async def get_personal_chat_id(self, user_aad_id: str, teams_app_id: str) -> str | None:
        """Resolve the personal conversation id between the app and a user."""

    @abstractmethod
    async def install_app_in_team(self, team_group_id: str, teams_app_id: str) -> bool:
        """Install the app in a team. Same result contract as install_app_for_user."""

    @abstractmethod
    async def get_team_primary_channel_id(self, team_group_id: str) -> str | None:
        """Resolve the thread id of a team's General channel."""
