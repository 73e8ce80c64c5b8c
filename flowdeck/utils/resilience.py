"""
Resilience Utils — Bounded retry with exponential backoff & circuit breaking.

Guards every operation that reaches the filesystem or an external service:
  - RetryExecutor: re-runs an async operation until it succeeds, the retry
    predicate rejects the error, or the attempt budget is exhausted.
  - retry_with_backoff: decorator form of the executor.
  - CircuitBreaker: three-state (closed / open / half-open) fast-fail guard.
"""

from __future__ import annotations

import asyncio
import enum
import errno
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from flowdeck.errors import CircuitOpenError, RetryExhaustedError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]


# ── Retry Predicates ─────────────────────────────────────────────────

_TRANSIENT_ERRNOS = {
    errno.EAGAIN,
    errno.EBUSY,
    errno.EINTR,
    errno.ETIMEDOUT,
    errno.ECONNRESET,
    errno.ECONNREFUSED,
    errno.ESTALE,
    errno.ENOENT,  # editor temp files vanishing mid-walk
}

_TRANSIENT_MARKERS = ("network", "timeout", "timed out", "temporar", "unavailable", "busy")


def always_retry(_: BaseException) -> bool:
    return True


def never_retry(_: BaseException) -> bool:
    return False


def is_transient_io_error(exc: BaseException) -> bool:
    """True for filesystem/network errors that are worth another attempt."""
    retryable = getattr(exc, "retryable", None)
    if retryable is not None:
        return bool(retryable)
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, OSError) and exc.errno in _TRANSIENT_ERRNOS:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


# ── Retry Executor ───────────────────────────────────────────────────


@dataclass(frozen=True)
class RetryOptions:
    """Retry budget and backoff shape. Delays are in seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    should_retry: RetryPredicate = field(default=always_retry)

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (0-based)."""
        return min(self.base_delay * self.backoff_multiplier**attempt, self.max_delay)


class RetryExecutor:
    """
    Runs async operations under a bounded retry policy.

    ``max_attempts`` includes the first attempt. The wait before retry n
    (0-based) is ``min(base_delay * backoff_multiplier ** n, max_delay)``.

    Usage:
        executor = RetryExecutor(RetryOptions(max_attempts=3, should_retry=is_transient_io_error))
        files = await executor.run(lambda: source.discover(root, exts))
    """

    def __init__(self, options: RetryOptions | None = None, *, name: str = "operation"):
        self._options = options or RetryOptions()
        self._name = name

    @property
    def options(self) -> RetryOptions:
        return self._options

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        options: RetryOptions | None = None,
    ) -> T:
        """
        Invoke ``operation`` until it succeeds or the policy gives up.

        Raises:
            RetryExhaustedError: Every allowed attempt failed with a retryable error.
            Exception: The original error, unchanged, when ``should_retry`` rejects it.
        """
        opts = options or self._options
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, opts.max_attempts)),
            wait=wait_exponential(
                multiplier=opts.base_delay,
                exp_base=opts.backoff_multiplier,
                min=0,
                max=opts.max_delay,
            ),
            retry=retry_if_exception(opts.should_retry),
            before_sleep=self._log_retry,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await operation()
        except RetryError as exc:
            last_attempt = exc.last_attempt
            last_error = last_attempt.exception()
            logger.error(
                "retry_exhausted",
                operation=self._name,
                attempts=last_attempt.attempt_number,
                error=str(last_error),
            )
            raise RetryExhaustedError(
                f"{self._name} failed after {last_attempt.attempt_number} attempts: {last_error}",
                last_error=last_error,
                attempts=last_attempt.attempt_number,
            ) from last_error

        raise AssertionError("unreachable")  # pragma: no cover

    def _log_retry(self, retry_state: Any) -> None:
        outcome = retry_state.outcome
        logger.warning(
            "retry_attempt",
            operation=self._name,
            attempt=retry_state.attempt_number,
            wait_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else 0,
            error=str(outcome.exception()) if outcome else None,
        )


def retry_with_backoff(
    retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_factor: float = 2.0,
    should_retry: RetryPredicate = always_retry,
) -> Callable:
    """
    Decorator that retries an async function with exponential backoff.

    Args:
        retries: Max number of retries after the first attempt (default 3).
        initial_delay: Initial wait time in seconds (default 1.0).
        max_delay: Max cap on wait time (default 10.0).
        backoff_factor: Multiplier for exponential growth (default 2.0).
        should_retry: Predicate deciding whether an error is retryable.
    """
    options = RetryOptions(
        max_attempts=retries + 1,
        base_delay=initial_delay,
        max_delay=max_delay,
        backoff_multiplier=backoff_factor,
        should_retry=should_retry,
    )

    def decorator(func: Callable) -> Callable:
        executor = RetryExecutor(options, name=func.__name__)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await executor.run(lambda: func(*args, **kwargs))

        return wrapper

    return decorator


# ── Circuit Breaker ──────────────────────────────────────────────────


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Three-state failure isolation around an unstable async call.

      - CLOSED: calls pass through, consecutive failures are counted.
      - OPEN: calls fail fast with ``CircuitOpenError`` until ``reset_timeout``
        seconds have passed since the last failure.
      - HALF_OPEN: one trial call is let through; success closes the circuit,
        failure re-opens it and restarts the timer. A cancelled trial counts
        as a failure.

    ``is_failure`` decides which errors count against the circuit. An error it
    rejects still propagates, but is treated as a healthy response.

    Usage:
        breaker = CircuitBreaker(failure_threshold=5, reset_timeout=30, name="publish")
        await breaker.call(lambda: client.put(...))
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        *,
        name: str = "circuit",
        clock: Callable[[], float] = time.monotonic,
        is_failure: RetryPredicate = always_retry,
    ):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = reset_timeout
        self._name = name
        self._clock = clock
        self._is_failure = is_failure
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def name(self) -> str:
        return self._name

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker."""
        async with self._lock:
            self._before_call()

        try:
            result = await operation()
        except asyncio.CancelledError:
            # Only a half-open trial holds state worth releasing. No await
            # here: the task is already being cancelled.
            if self._trial_in_flight:
                self._on_failure()
            raise
        except Exception as exc:
            async with self._lock:
                if self._is_failure(exc):
                    self._on_failure()
                else:
                    self._on_success()
            raise

        async with self._lock:
            self._on_success()
        return result

    # ── Transitions ──────────────────────────────────────────────────

    def _before_call(self) -> None:
        if self._state == CircuitState.OPEN:
            if self._clock() - self._opened_at >= self._reset_timeout:
                self._transition(CircuitState.HALF_OPEN)
            else:
                raise CircuitOpenError(
                    f"Circuit '{self._name}' is open; call rejected.",
                    breaker_name=self._name,
                )

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(
                    f"Circuit '{self._name}' is half-open; trial call already in flight.",
                    breaker_name=self._name,
                )
            self._trial_in_flight = True

    def _on_success(self) -> None:
        self._trial_in_flight = False
        self._failures = 0
        if self._state != CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._trial_in_flight = False
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or self._failures >= self._failure_threshold:
            self._opened_at = self._clock()
            if self._state != CircuitState.OPEN:
                self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        logger.info(
            "circuit_state_changed",
            breaker=self._name,
            from_state=self._state.value,
            to_state=new_state.value,
            failures=self._failures,
        )
        self._state = new_state

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self._name!r}, state={self._state.value}, failures={self._failures})"
