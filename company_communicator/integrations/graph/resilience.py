"""Retry and circuit breaker for directory calls.

The circuit breaker prevents cascading failures by:
1. CLOSED state: Normal operation, requests pass through
2. OPEN state: Fast-fail requests without calling the directory (after threshold failures)
3. HALF_OPEN state: Test recovery with limited requests

State transitions:
- CLOSED -> OPEN: After failure_threshold consecutive failures
- OPEN -> HALF_OPEN: After timeout period expires
- HALF_OPEN -> CLOSED: After successful request
- HALF_OPEN -> OPEN: If request fails

Retries wrap the breaker: every attempt passes through it, and an open
circuit is never retried here.
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests immediately
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreakerOpenError(Exception):
    """Raised when circuit breaker is open and request is rejected."""

    pass


class CircuitBreaker:
    """Circuit breaker for directory operations.

    Args:
        name: Name of the circuit
        failure_threshold: Number of consecutive failures before opening
        timeout_seconds: Seconds to wait before attempting recovery (HALF_OPEN)
        half_open_max_calls: Max requests to allow in HALF_OPEN state
        failure_exceptions: Exception types that count as failures
        clock: Monotonic time source
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout_seconds: float = 30,
        half_open_max_calls: int = 1,
        failure_exceptions: tuple[type[BaseException], ...] = (Exception,),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self.half_open_max_calls = half_open_max_calls
        self.failure_exceptions = failure_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self._state

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute a coroutine function through the circuit breaker.

        Raises:
            CircuitBreakerOpenError: If circuit is open
            Exception: Any exception raised by func
        """
        if self._state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self._transition_to(CircuitState.HALF_OPEN)
            else:
                remaining = self.timeout_seconds - (self._clock() - self._last_failure_time)
                raise CircuitBreakerOpenError(
                    f"Circuit breaker '{self.name}' is OPEN. "
                    f"Retry in {int(remaining)} seconds."
                )

        half_open = self._state == CircuitState.HALF_OPEN
        if half_open:
            if self._half_open_calls >= self.half_open_max_calls:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker '{self.name}' is HALF_OPEN "
                    f"(max concurrent calls reached)."
                )
            self._half_open_calls += 1

        try:
            result = await func(*args, **kwargs)
        except self.failure_exceptions as e:
            self._on_failure(e)
            raise
        else:
            self._on_success()
            return result
        finally:
            if half_open:
                self._half_open_calls -= 1

    def _on_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.CLOSED)
        elif self._failure_count > 0:
            logger.debug(
                f"Circuit '{self.name}' failure count reset "
                f"(previous failures: {self._failure_count})"
            )
            self._failure_count = 0

    def _on_failure(self, exception: BaseException) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            logger.warning(f"Circuit '{self.name}' recovery failed: {exception}")
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.failure_threshold:
                logger.error(
                    f"Circuit '{self.name}' opened after {self._failure_count} "
                    f"consecutive failures: {exception}"
                )
                self._transition_to(CircuitState.OPEN)
            else:
                logger.warning(
                    f"Circuit '{self.name}' failure {self._failure_count}/"
                    f"{self.failure_threshold}: {exception}"
                )

    def _should_attempt_reset(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time >= self.timeout_seconds

    def _transition_to(self, state: CircuitState) -> None:
        logger.info(f"Circuit '{self.name}': {self._state.value} -> {state.value}")
        self._state = state
        if state == CircuitState.CLOSED:
            self._failure_count = 0
            self._last_failure_time = None
        if state != CircuitState.HALF_OPEN:
            self._half_open_calls = 0


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[BaseException], ...],
    max_retries: int,
    base_delay: float,
    max_delay: float = 60.0,
    delay_hint: Callable[[BaseException], float | None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``func`` with exponential backoff and jitter on ``retry_on`` errors.

    ``delay_hint`` may extract a server-provided delay (e.g. Retry-After),
    which is used when it is longer than the computed backoff.
    """
    attempt = 0
    while True:
        try:
            return await func()
        except retry_on as e:
            if attempt >= max_retries:
                raise
            delay = min(max_delay, base_delay * (2 ** attempt))
            delay = delay * (0.5 + random.random() / 2)
            hinted = delay_hint(e) if delay_hint else None
            if hinted is not None:
                delay = max(delay, min(hinted, max_delay))
            attempt += 1
            logger.warning(
                f"Transient failure ({e}); retry {attempt}/{max_retries} in {delay:.1f}s"
            )
            await sleep(delay)
