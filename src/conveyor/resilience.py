"""Resilience patterns for control-plane provider calls.

Implements retry with exponential backoff and a circuit breaker. These are
the only automatic recovery paths in conveyor: ProviderUnavailableError (and
the builtin ConnectionError/TimeoutError raised by HTTP-backed providers)
is retried by default, and the Rollout Controller backs off on a dedicated
policy while a rollout queues on LockContentionError. Every other failure
surfaces immediately.

Key Components:
    RetryPolicy: Exponential backoff with jitter for transient failures
    CircuitBreaker: Three-state pattern (CLOSED/OPEN/HALF_OPEN) per provider
    ResilientCaller: Retry around a circuit-protected call

Example:
    >>> caller = ResilientCaller("scheduler", RetryConfig(max_attempts=3))
    >>> task_ids = caller.call(scheduler.start, "staging", "v1.0.0", 2)
"""

from __future__ import annotations

import functools
import random
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ParamSpec, TypeVar

import structlog

from conveyor.errors import CircuitBreakerOpenError, ProviderUnavailableError
from conveyor.schemas.config import CircuitBreakerConfig, RetryConfig

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_RETRYABLE: tuple[type[Exception], ...] = (
    ProviderUnavailableError,
    ConnectionError,
    TimeoutError,
)


class RetryPolicy:
    """Exponential backoff with jitter around a callable.

    With the default RetryConfig the first attempt is immediate, the second
    waits about 1s and the third about 2s. CircuitBreakerOpenError is never
    retried.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retryable_exceptions: tuple[type[Exception], ...] | None = None,
        *,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            retryable_exceptions: Exception types to retry on. Defaults to
                DEFAULT_RETRYABLE.
            sleep: Delay function. Passing a cancellation Event's ``wait``
                ends backoff early when an operator cancels.
        """
        self._config = config or RetryConfig()
        self._retryable = retryable_exceptions or DEFAULT_RETRYABLE
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait after the given 0-indexed attempt failed.

        initial_delay_ms * backoff_multiplier**attempt, capped at
        max_delay_ms, then spread by up to 25% when jitter is on.
        """
        cfg = self._config
        delay_ms = min(cfg.initial_delay_ms * cfg.backoff_multiplier**attempt, cfg.max_delay_ms)
        if cfg.jitter:
            delay_ms *= random.uniform(0.75, 1.25)
        return max(delay_ms, 0.0) / 1000.0

    def should_retry(self, exception: Exception) -> bool:
        return isinstance(exception, self._retryable) and not isinstance(
            exception, CircuitBreakerOpenError
        )

    def call(self, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """Invoke func, retrying retryable failures until attempts run out.

        Raises:
            The last exception once attempts are exhausted, or any
            non-retryable exception immediately.
        """
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                attempt += 1
                if not self.should_retry(e):
                    raise
                if attempt >= self._config.max_attempts:
                    logger.warning(
                        "retry_exhausted",
                        attempts=attempt,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    raise
                delay = self.calculate_delay(attempt - 1)
                logger.debug(
                    "retry_scheduled",
                    attempt=attempt,
                    max_attempts=self._config.max_attempts,
                    delay_seconds=round(delay, 3),
                    error_type=type(e).__name__,
                )
                self._sleep(delay)

    def wrap(self, func: Callable[P, T]) -> Callable[P, T]:
        """Decorator form of call()."""

        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return self.call(func, *args, **kwargs)

        return wrapper


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fail fast against a provider that keeps failing.

    The circuit opens after ``failure_threshold`` consecutive counted
    failures. Once ``recovery_timeout_ms`` has passed it lets
    ``half_open_requests`` probes through: a successful probe closes it, a
    failed one reopens it.

    Only the retryable exception classes count as failures. A provider that
    rejects bad input is still available.

    Example:
        >>> circuit = CircuitBreaker("scheduler")
        >>> with circuit.protect():
        ...     scheduler.stop("staging", ["task-1"])
    """

    def __init__(
        self,
        provider: str,
        config: CircuitBreakerConfig | None = None,
        counted_exceptions: tuple[type[Exception], ...] = DEFAULT_RETRYABLE,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._config = config or CircuitBreakerConfig()
        self._counted = counted_exceptions
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._probes_left = 0

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def recovery_time(self) -> datetime | None:
        """Wall-clock time the circuit admits probes again, or None unless OPEN."""
        with self._lock:
            if self._state is not CircuitState.OPEN or self._opened_at is None:
                return None
            remaining_s = self._recovery_s - (self._clock() - self._opened_at)
        return datetime.now(timezone.utc) + timedelta(seconds=max(remaining_s, 0.0))

    @property
    def _recovery_s(self) -> float:
        return self._config.recovery_timeout_ms / 1000.0

    def allow_request(self) -> bool:
        if not self._config.enabled:
            return True
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.HALF_OPEN and self._probes_left > 0:
                self._probes_left -= 1
                logger.debug("circuit_probe_allowed", provider=self._provider)
                return True
            return self._state is CircuitState.CLOSED

    def record_success(self) -> None:
        if not self._config.enabled:
            return
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED, previous_failures=self._failures)
            self._failures = 0

    def record_failure(self) -> None:
        if not self._config.enabled:
            return
        with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN or (
                self._state is CircuitState.CLOSED
                and self._failures >= self._config.failure_threshold
            ):
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN, failure_count=self._failures)

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None
            self._transition(CircuitState.CLOSED, reason="reset")

    @contextmanager
    def protect(self) -> Iterator[None]:
        """Run the block through the breaker.

        Raises:
            CircuitBreakerOpenError: If the circuit does not admit the request.
        """
        if not self.allow_request():
            recovery_at = self.recovery_time
            raise CircuitBreakerOpenError(
                provider=self._provider,
                failure_count=self._failures,
                recovery_at=recovery_at.isoformat() if recovery_at else None,
            )
        try:
            yield
        except self._counted:
            self.record_failure()
            raise
        self.record_success()

    def _maybe_half_open(self) -> None:
        # Caller holds self._lock.
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self._recovery_s:
            self._transition(CircuitState.HALF_OPEN)

    def _transition(self, new_state: CircuitState, **fields: Any) -> None:
        # Caller holds self._lock.
        if new_state is CircuitState.HALF_OPEN:
            self._probes_left = self._config.half_open_requests
        if new_state is self._state:
            return
        level = "warning" if new_state is CircuitState.OPEN else "info"
        getattr(logger, level)(
            f"circuit_{new_state.value}",
            provider=self._provider,
            previous_state=self._state.value,
            **fields,
        )
        self._state = new_state


class ResilientCaller:
    """Retry policy applied around circuit-breaker-protected provider calls.

    Each retry attempt goes through the breaker, so a provider that keeps
    failing opens its circuit and later callers fail fast.
    """

    def __init__(
        self,
        provider: str,
        retry_config: RetryConfig | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        *,
        sleep: Callable[[float], Any] = time.sleep,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.policy = RetryPolicy(retry_config, sleep=sleep)
        self.breaker = breaker or CircuitBreaker(provider, breaker_config)

    def with_sleep(self, sleep: Callable[[float], Any]) -> ResilientCaller:
        """Return a caller sharing this breaker but backing off with sleep."""
        return ResilientCaller(
            self.breaker.provider,
            self.policy.config,
            sleep=sleep,
            breaker=self.breaker,
        )

    def call(self, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """Invoke func with retry and circuit breaking.

        Raises:
            ProviderUnavailableError: Once retries are exhausted, including for
                builtin ConnectionError/TimeoutError raised by the provider.
        """

        def protected() -> T:
            with self.breaker.protect():
                return func(*args, **kwargs)

        try:
            return self.policy.call(protected)
        except (ConnectionError, TimeoutError) as e:
            raise ProviderUnavailableError(self.breaker.provider, str(e)) from e


__all__: list[str] = [
    "CircuitBreaker",
    "CircuitState",
    "DEFAULT_RETRYABLE",
    "ResilientCaller",
    "RetryPolicy",
]
