"""
Orchestration runtime contract.

Orchestrators are plain ``async def orchestrator(context, input)``
functions. They never touch the store or the network directly; all side
effects go through activities, ``async def activity(services, input)``,
scheduled with ``context.call_activity``. Activities may run more than
once, so every activity is written to be safe to repeat.

LocalOrchestrationContext runs everything in-process on asyncio. It
applies retry policies and real timers but does not persist progress;
a durable runtime implements the same OrchestrationContext interface.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from ..integrations.azure import BlobStorageService, ServiceBusService
from ..integrations.graph import DirectoryService
from ..integrations.teams import NotificationCards
from ..services.errors import (
    ConfigurationError,
    InvalidStatusTransitionError,
    NotificationNotFoundError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Activity retry policy: exponential backoff between attempts."""

    max_attempts: int = 3
    first_retry_interval: float = 5.0
    backoff_coefficient: float = 2.0
    max_retry_interval: float = 30.0

    # Failures that retrying cannot fix
    non_retryable: tuple[type[BaseException], ...] = (
        ConfigurationError,
        NotificationNotFoundError,
        InvalidStatusTransitionError,
    )

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = self.first_retry_interval * (self.backoff_coefficient ** (attempt - 1))
        return min(delay, self.max_retry_interval)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return attempt < self.max_attempts and not isinstance(error, self.non_retryable)


DEFAULT_RETRY_POLICY = RetryPolicy()


class ActivityFailedError(Exception):
    """An activity failed after its retry policy gave up."""

    def __init__(self, activity_name: str, cause: BaseException):
        super().__init__(f"Activity '{activity_name}' failed: {cause}")
        self.activity_name = activity_name
        self.cause = cause


@dataclass
class PipelineServices:
    """Collaborators handed to every activity."""
    session_factory: async_sessionmaker[AsyncSession]
    directory: DirectoryService
    payload_store: BlobStorageService
    send_queue: ServiceBusService
    settings: Settings
    card_builder: NotificationCards = field(default_factory=NotificationCards)


Activity = Callable[[PipelineServices, Any], Awaitable[Any]]


# =============================================================================
# CONTEXT
# =============================================================================


class OrchestrationContext(ABC):
    """What an orchestrator may do."""

    @property
    @abstractmethod
    def current_utc_datetime(self) -> datetime:
        """Orchestration clock. Orchestrators must not read the wall clock."""

    @abstractmethod
    async def call_activity(
        self,
        activity: Activity,
        input: Any = None,
        retry_policy: RetryPolicy | None = None,
    ) -> Any:
        """
        Run an activity and return its result.

        Raises:
            ActivityFailedError: Once retries are exhausted or the failure is non-retryable
        """

    @abstractmethod
    async def call_sub_orchestrator(
        self,
        orchestrator: Callable[["OrchestrationContext", Any], Awaitable[T]],
        input: Any = None,
    ) -> T:
        """Run a child orchestration to completion."""

    @abstractmethod
    async def create_timer(self, fire_at: datetime) -> None:
        """Suspend until ``fire_at`` on the orchestration clock."""

    async def task_all(self, awaitables: Iterable[Awaitable[T]]) -> list[T]:
        """
        Wait for a fan-out of activity calls.

        Every call runs to completion before the first failure is raised,
        so no sibling is still writing when the caller moves on.
        """
        results = await asyncio.gather(*awaitables, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)


class LocalOrchestrationContext(OrchestrationContext):
    """In-process orchestration on the running event loop."""

    def __init__(
        self,
        services: PipelineServices,
        default_retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.services = services
        self._default_retry_policy = default_retry_policy
        self._sleep = sleep

    @property
    def current_utc_datetime(self) -> datetime:
        return datetime.now(timezone.utc)

    async def call_activity(
        self,
        activity: Activity,
        input: Any = None,
        retry_policy: RetryPolicy | None = None,
    ) -> Any:
        policy = retry_policy or self._default_retry_policy
        name = activity.__name__
        attempt = 0

        while True:
            attempt += 1
            try:
                return await activity(self.services, input)
            except Exception as e:
                if not policy.should_retry(e, attempt):
                    logger.error(f"Activity '{name}' failed on attempt {attempt}: {e}")
                    raise ActivityFailedError(name, e) from e

                delay = policy.delay_after(attempt)
                logger.warning(
                    f"Activity '{name}' attempt {attempt}/{policy.max_attempts} failed: {e}; "
                    f"retrying in {delay:.0f}s"
                )
                await self._sleep(delay)

    async def call_sub_orchestrator(self, orchestrator, input=None):
        return await orchestrator(self, input)

    async def create_timer(self, fire_at: datetime) -> None:
        delay = (fire_at - self.current_utc_datetime).total_seconds()
        if delay > 0:
            await self._sleep(delay)


class LocalOrchestrationClient:
    """Starts orchestrations as background tasks on the running loop."""

    def __init__(self, services: PipelineServices):
        self.services = services
        self._running: set[asyncio.Task] = set()

    def start_new(self, orchestrator, input: Any = None) -> asyncio.Task:
        context = LocalOrchestrationContext(self.services)
        task = asyncio.create_task(orchestrator(context, input))
        self._running.add(task)
        task.add_done_callback(self._on_done)
        logger.info(f"Started orchestration '{orchestrator.__name__}' for {input}")
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._running.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Orchestration ended with error: {task.exception()}")

    async def wait_all(self) -> None:
        """Wait for every running orchestration (used at shutdown)."""
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
