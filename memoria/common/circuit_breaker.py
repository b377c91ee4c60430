"""Circuit breaker for outbound calls to embedding providers.

A breaker opens after ``failure_threshold`` consecutive failures and rejects
calls until ``recovery_timeout`` seconds have passed, then lets a single
probe through (HALF_OPEN). Other callers are rejected while the probe is in
flight. A successful probe closes the breaker, a failed one reopens it.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, Union

import structlog

logger = structlog.get_logger("circuit_breaker")


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised instead of calling through while the breaker is open."""
    pass


class CircuitBreaker:
    """Async circuit breaker guarding a single dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        expected_exception: Union[Type[BaseException], Tuple[Type[BaseException], ...]] = Exception,
    ):
        """Configure a circuit breaker.

        Parameters
        - name: Identifier for logs
        - failure_threshold: Consecutive failures before opening
        - recovery_timeout: Seconds to wait before a HALF_OPEN probe
        - expected_exception: Exception type(s) counted as failures
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitBreakerState.CLOSED
        self._half_open_in_flight = False
        self._lock = asyncio.Lock()

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Await ``func(*args, **kwargs)`` under breaker protection."""
        probe = False
        async with self._lock:
            if self.state == CircuitBreakerState.OPEN:
                if not self._recovery_elapsed():
                    raise CircuitBreakerError(f"Circuit breaker {self.name} is open")
                self.state = CircuitBreakerState.HALF_OPEN
                logger.info("Circuit breaker transitioning to HALF_OPEN", name=self.name)
            if self.state == CircuitBreakerState.HALF_OPEN:
                if self._half_open_in_flight:
                    raise CircuitBreakerError(f"Circuit breaker {self.name} is half-open, probe in flight")
                self._half_open_in_flight = True
                probe = True

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            await self._on_failure()
            raise
        else:
            await self._on_success()
            return result
        finally:
            if probe:
                self._half_open_in_flight = False

    def _recovery_elapsed(self) -> bool:
        if self.last_failure_time is None:
            return True
        return (time.monotonic() - self.last_failure_time) >= self.recovery_timeout

    async def _on_success(self) -> None:
        async with self._lock:
            if self.state == CircuitBreakerState.HALF_OPEN:
                logger.info("Circuit breaker reset to CLOSED", name=self.name)
            self.state = CircuitBreakerState.CLOSED
            self.failure_count = 0

    async def _on_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.monotonic()

            if self.state == CircuitBreakerState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != CircuitBreakerState.OPEN:
                    logger.warning(
                        "Circuit breaker opened due to failures",
                        name=self.name,
                        failure_count=self.failure_count,
                        threshold=self.failure_threshold
                    )
                self.state = CircuitBreakerState.OPEN

    def get_stats(self) -> dict:
        """Snapshot for health endpoints."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }
