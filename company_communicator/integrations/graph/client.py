"""Microsoft Graph directory client.

Uses the Graph REST API directly (no SDK dependency). Every request goes
through a shared circuit breaker, wrapped in a retry loop for throttling
and transient service errors.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from ...core.config import Settings, get_settings
from .directory import (
    DirectoryError,
    DirectoryService,
    DirectoryUser,
    TransientDirectoryError,
)
from .resilience import CircuitBreaker, CircuitBreakerOpenError, retry_async

logger = logging.getLogger(__name__)


def _require_guid(value: str, name: str) -> str:
    try:
        uuid.UUID(str(value))
    except ValueError:
        raise ValueError(f"{name} must be a GUID, got {value!r}")
    return value


def _retry_after(error: BaseException) -> float | None:
    return getattr(error, "retry_after", None)


class GraphDirectoryService(DirectoryService):
    """
    Directory operations against Microsoft Graph.

    Handles:
    - Client-credential token acquisition and caching
    - Paged user, group and team enumeration
    - Proactive app installation for users and teams
    - Conversation id lookup for installed apps
    """

    LOGIN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
    GRAPH_SCOPE = "https://graph.microsoft.com/.default"
    TEAMS_APP_BIND_URL = "https://graph.microsoft.com/v1.0/appCatalogs/teamsApps/{app_id}"

    USER_FIELDS = "id,displayName,mail,userPrincipalName,userType"
    RETRYABLE_STATUS_CODES = frozenset({429, 503, 504})

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.graph_base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(
            timeout=self.settings.graph_timeout_seconds
        )
        self._owns_client = http_client is None
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name="graph",
            failure_threshold=self.settings.graph_circuit_failure_threshold,
            timeout_seconds=self.settings.graph_circuit_break_seconds,
            failure_exceptions=(TransientDirectoryError,),
        )
        self._sleep = sleep

        # Token cache
        self._access_token: str | None = None
        self._token_expires: datetime | None = None

    @property
    def is_configured(self) -> bool:
        """Check if Graph client credentials are configured."""
        return self.settings.graph_enabled

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # =========================================================================
    # Transport
    # =========================================================================

    async def get_access_token(self) -> str:
        """
        Get a Graph access token for API calls.

        Caches the token and refreshes when expired.
        """
        now = datetime.now(timezone.utc)
        if self._access_token and self._token_expires:
            if now < self._token_expires - timedelta(minutes=5):
                return self._access_token

        if not self.is_configured:
            raise DirectoryError("Microsoft Graph is not configured")

        try:
            response = await self._client.post(
                self.LOGIN_URL.format(tenant_id=self.settings.graph_tenant_id),
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.settings.graph_client_id,
                    "client_secret": self.settings.graph_client_secret,
                    "scope": self.GRAPH_SCOPE,
                },
            )
        except httpx.TransportError as e:
            raise TransientDirectoryError(f"Token request failed: {e}")

        if response.status_code in self.RETRYABLE_STATUS_CODES:
            raise TransientDirectoryError(
                "Token endpoint unavailable", status_code=response.status_code
            )
        if response.status_code != 200:
            logger.error(f"Failed to get Graph token: {response.text}")
            raise DirectoryError(
                "Failed to authenticate with Microsoft Graph",
                status_code=response.status_code,
            )

        data = response.json()
        self._access_token = data["access_token"]
        self._token_expires = now + timedelta(seconds=data.get("expires_in", 3600))
        return self._access_token

    async def _send_once(
        self,
        method: str,
        url: str,
        json: dict | None,
        params: dict | None,
    ) -> httpx.Response:
        token = await self.get_access_token()
        try:
            response = await self._client.request(
                method,
                url,
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as e:
            raise TransientDirectoryError(f"{method} {url} failed: {e}")

        if response.status_code in self.RETRYABLE_STATUS_CODES:
            retry_after = response.headers.get("Retry-After")
            raise TransientDirectoryError(
                f"{method} {url} returned {response.status_code}",
                status_code=response.status_code,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code == 401:
            # Force a fresh token on the next attempt
            self._access_token = None
        return response

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
    ) -> httpx.Response:
        if not url.startswith("http"):
            url = f"{self.base_url}{url}"

        async def attempt() -> httpx.Response:
            return await self.circuit_breaker.call(self._send_once, method, url, json, params)

        return await retry_async(
            attempt,
            retry_on=(TransientDirectoryError,),
            max_retries=self.settings.graph_max_retries,
            base_delay=self.settings.graph_retry_delay_seconds,
            delay_hint=_retry_after,
            sleep=self._sleep,
        )

    async def _get_json(self, url: str, params: dict | None = None) -> dict[str, Any]:
        response = await self._request("GET", url, params=params)
        if not response.is_success:
            raise DirectoryError(
                f"GET {url} returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response.json()

    async def _get_paged(self, url: str, params: dict | None = None) -> list[dict[str, Any]]:
        """Follow @odata.nextLink until the collection is exhausted."""
        items: list[dict[str, Any]] = []
        next_url: str | None = url
        while next_url:
            data = await self._get_json(next_url, params)
            items.extend(data.get("value", []))
            next_url = data.get("@odata.nextLink")
            params = None  # nextLink already carries the query
        return items

    @staticmethod
    def _to_user(item: dict[str, Any]) -> DirectoryUser:
        return DirectoryUser(
            aad_id=item.get("id") or "",
            name=item.get("displayName"),
            email=item.get("mail"),
            upn=item.get("userPrincipalName"),
            user_type=item.get("userType"),
        )

    # =========================================================================
    # Enumeration
    # =========================================================================

    async def get_all_users_delta(
        self,
        delta_link: str | None,
    ) -> tuple[list[DirectoryUser], str | None]:
        users: list[DirectoryUser] = []
        url = delta_link or f"{self.base_url}/users/delta"
        params = None if delta_link else {"$select": self.USER_FIELDS}

        while True:
            response = await self._request("GET", url, params=params)
            if response.status_code == 410 and delta_link:
                logger.warning("Delta link expired (HTTP 410); starting a fresh user sync")
                return await self.get_all_users_delta(None)
            if not response.is_success:
                raise DirectoryError(
                    f"User delta query returned {response.status_code}",
                    status_code=response.status_code,
                )

            data = response.json()
            for item in data.get("value", []):
                if "@removed" in item or not item.get("id"):
                    continue
                users.append(self._to_user(item))

            if data.get("@odata.deltaLink"):
                new_delta_link = data["@odata.deltaLink"]
                break
            if not data.get("@odata.nextLink"):
                new_delta_link = None
                break
            url = data["@odata.nextLink"]
            params = None

        logger.info(f"Graph user delta returned {len(users)} users")
        return users, new_delta_link

    async def get_group_members(self, group_id: str) -> list[DirectoryUser]:
        items = await self._get_paged(
            f"/groups/{group_id}/transitiveMembers/microsoft.graph.user",
            params={"$select": self.USER_FIELDS},
        )
        users = [self._to_user(item) for item in items if item.get("id")]
        logger.info(f"Graph returned {len(users)} members for group {group_id}")
        return users

    async def get_team_members(self, team_id: str) -> list[DirectoryUser]:
        items = await self._get_paged(f"/teams/{team_id}/members")
        users = [
            DirectoryUser(
                aad_id=item["userId"],
                name=item.get("displayName"),
                email=item.get("email"),
                user_type="Member",
                tenant_id=item.get("tenantId"),
            )
            for item in items
            if item.get("@odata.type") == "#microsoft.graph.aadUserConversationMember"
            and item.get("userId")
        ]
        logger.info(f"Graph returned {len(users)} members for team {team_id}")
        return users

    # =========================================================================
    # Proactive installation
    # =========================================================================

    async def _install(self, url: str, teams_app_id: str, target: str) -> bool:
        body = {
            "teamsApp@odata.bind": self.TEAMS_APP_BIND_URL.format(app_id=teams_app_id),
        }
        try:
            response = await self._request("POST", url, json=body)
        except CircuitBreakerOpenError:
            raise
        except DirectoryError as e:
            logger.warning(f"App install for {target} failed after retries: {e}")
            return False

        if response.is_success:
            logger.debug(f"Installed app for {target}")
            return True
        if response.status_code == 409:
            logger.debug(f"App already installed for {target}")
            return True
        if response.status_code in (403, 404):
            logger.warning(
                f"App install for {target} rejected ({response.status_code}); "
                "recipient cannot receive the app"
            )
            return False

        logger.error(f"Unexpected {response.status_code} installing app for {target}: {response.text}")
        return False

    async def install_app_for_user(self, user_aad_id: str, teams_app_id: str) -> bool:
        _require_guid(user_aad_id, "user_aad_id")
        _require_guid(teams_app_id, "teams_app_id")
        return await self._install(
            f"/users/{user_aad_id}/teamwork/installedApps",
            teams_app_id,
            f"user {user_aad_id}",
        )

    async def install_app_in_team(self, team_group_id: str, teams_app_id: str) -> bool:
        _require_guid(team_group_id, "team_group_id")
        _require_guid(teams_app_id, "teams_app_id")
        return await self._install(
            f"/teams/{team_group_id}/installedApps",
            teams_app_id,
            f"team {team_group_id}",
        )

    async def get_personal_chat_id(self, user_aad_id: str, teams_app_id: str) -> str | None:
        _require_guid(user_aad_id, "user_aad_id")
        installed = await self._get_json(
            f"/users/{user_aad_id}/teamwork/installedApps",
            params={
                "$filter": f"teamsApp/id eq '{teams_app_id}'",
                "$expand": "teamsApp",
            },
        )
        apps = installed.get("value", [])
        if not apps:
            logger.debug(f"App not installed for user {user_aad_id}")
            return None

        chat = await self._get_json(
            f"/users/{user_aad_id}/teamwork/installedApps/{apps[0]['id']}/chat"
        )
        return chat.get("id")

    async def get_team_primary_channel_id(self, team_group_id: str) -> str | None:
        response = await self._request("GET", f"/teams/{team_group_id}/primaryChannel")
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise DirectoryError(
                f"primaryChannel lookup returned {response.status_code}",
                status_code=response.status_code,
            )
        return response.json().get("id")
