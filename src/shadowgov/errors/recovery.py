"""Retry and circuit-breaker helpers for collaborator calls.

Used by the archival mirror publisher, whose writes are fire-and-forget:
failures are retried with backoff and never propagate into engine state.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Tuple, Type

from .exceptions import ExternalServiceError, GovernanceError


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Calls are blocked
    HALF_OPEN = "half_open"  # Probing whether the service is back


@dataclass
class RetryPolicy:
    """Retry policy configuration."""

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: List[Type[BaseException]] = field(
        default_factory=lambda: [ExternalServiceError, ConnectionError, TimeoutError]
    )

    def get_delay(self, attempt: int) -> float:
        """Get delay for the given attempt."""
        if attempt <= 0:
            return 0.0

        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= random.uniform(0.5, 1.5)

        return delay

    def is_retryable(self, error: BaseException) -> bool:
        """Check whether an error should be retried under this policy."""
        if isinstance(error, GovernanceError):
            return error.retryable
        return isinstance(error, tuple(self.retryable_exceptions))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "exponential_base": self.exponential_base,
            "jitter": self.jitter,
        }


def call_with_retry(
    policy: RetryPolicy,
    func: Callable[..., Any],
    *args,
    operation: str = "call",
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> Tuple[Any, int]:
    """Run ``func`` under ``policy``; returns ``(result, attempts)``.

    Non-retryable errors propagate immediately. Once retries are exhausted an
    ``ExternalServiceError`` wrapping the last failure is raised.
    """
    logger = logging.getLogger(__name__)
    last_error = None

    for attempt in range(policy.max_retries + 1):
        try:
            return func(*args, **kwargs), attempt + 1
        except Exception as e:
            last_error = e
            if not policy.is_retryable(e):
                raise
            if attempt >= policy.max_retries:
                break

            delay = policy.get_delay(attempt + 1)
            logger.warning(
                f"Retry attempt {attempt + 1}/{policy.max_retries} for '{operation}' "
                f"after {delay:.2f}s delay. Error: {e}"
            )
            sleep(delay)

    raise ExternalServiceError(
        f"Operation '{operation}' failed after {policy.max_retries} retries",
        operation=operation,
        error_code="MAX_RETRIES_EXCEEDED",
        cause=last_error,
        retryable=False,
    )


class CircuitBreaker:
    """Circuit breaker implementation."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._lock = threading.RLock()
        self._logger = logging.getLogger(f"{__name__}.{name}")

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """Call function with circuit breaker protection."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._state = CircuitState.HALF_OPEN
                    self._logger.info(
                        f"Circuit breaker {self.name} transitioning to HALF_OPEN"
                    )
                else:
                    raise ExternalServiceError(
                        f"Circuit breaker {self.name} is OPEN",
                        service=self.name,
                        error_code="CIRCUIT_BREAKER_OPEN",
                    )

        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        return self._clock() - self._last_failure_time >= self.recovery_timeout

    def _on_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._logger.info(
                    f"Circuit breaker {self.name} transitioning to CLOSED"
                )
            self._failure_count = 0

    def _on_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if (
                self._state == CircuitState.HALF_OPEN
                or self._failure_count >= self.failure_threshold
            ):
                self._state = CircuitState.OPEN
                self._logger.warning(
                    f"Circuit breaker {self.name} transitioning to OPEN "
                    f"(failure count: {self._failure_count})"
                )

    def get_state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            return self._state

    def get_metrics(self) -> Dict[str, Any]:
        """Get circuit breaker metrics."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "last_failure_time": self._last_failure_time,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout,
            }

    def reset(self) -> None:
        """Reset the circuit breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = 0.0
            self._logger.info(f"Circuit breaker {self.name} reset")
