"""Retry with exponential backoff, and a circuit breaker, for FHIR calls.

`with_retry` re-runs a coroutine while the failure looks transient: the
server could not be reached, or answered 5xx or 429. Waits grow by
BACKOFF_FACTOR from the configured base delay, capped at MAX_RETRY_DELAY_MS,
with up to JITTER_RATIO of random jitter added on top.

`CircuitBreaker` stops sending after `failure_threshold` consecutive transient
failures and fails fast with `CircuitOpenError` until `recovery_timeout_ms`
has passed. The next call is then let through as a trial (half-open); its
outcome closes or re-opens the circuit.
"""
import enum
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import backoff

from fhir_offline.errors import CircuitOpenError, FhirError, is_connectivity_error

logger = logging.getLogger(__name__)

BACKOFF_FACTOR = 2
MAX_RETRY_DELAY_MS = 10000
JITTER_RATIO = 0.1
RETRYABLE_STATUSES = frozenset({429, 503})

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT_MS = 60000

T = TypeVar("T")

RetryHandler = Callable[[int, BaseException], Any]


def is_retryable_error(exc: BaseException) -> bool:
    """
    True for failures worth another attempt.

    Connectivity failures, 5xx answers and 429 qualify. An open circuit does
    not: the breaker decides when to try again.
    """
    if isinstance(exc, CircuitOpenError):
        return False
    if is_connectivity_error(exc):
        return True
    if isinstance(exc, FhirError) and exc.status is not None:
        return exc.status >= 500 or exc.status in RETRYABLE_STATUSES
    return False


def add_jitter(seconds: float) -> float:
    """Add up to JITTER_RATIO of random slack so clients do not retry in lockstep."""
    return seconds + random.uniform(0, JITTER_RATIO * seconds)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay_ms: int,
    max_delay_ms: int = MAX_RETRY_DELAY_MS,
    retry_condition: Callable[[BaseException], bool] = is_retryable_error,
    on_retry: Optional[RetryHandler] = None,
    jitter: Optional[Callable[[float], float]] = add_jitter,
) -> T:
    """
    Await `operation()` up to `max_attempts` times.

    Args:
        operation: Zero-argument coroutine function making one attempt.
        max_attempts: Total attempts, including the first.
        base_delay_ms: Wait before the second attempt; doubles after that.
        max_delay_ms: Cap on a single wait, before jitter.
        retry_condition: Decides whether a failure is worth another attempt.
        on_retry: Called as on_retry(attempt, error) before each wait.
        jitter: Applied to each wait in seconds; None for exact delays.

    Returns:
        The first successful result.

    Raises:
        The last failure, or the first one retry_condition rejects.
    """
    def notify(details):
        logger.info(
            "Attempt %d/%d failed; retrying in %.2fs: %s",
            details["tries"], max_attempts, details["wait"], details["exception"],
        )
        if on_retry is not None:
            on_retry(details["tries"], details["exception"])

    async def attempt():
        return await operation()

    retrying = backoff.on_exception(
        backoff.expo,
        Exception,
        max_tries=max(1, max_attempts),
        giveup=lambda ex: not retry_condition(ex),
        on_backoff=notify,
        jitter=jitter,
        logger=None,
        base=BACKOFF_FACTOR,
        factor=base_delay_ms / 1000,
        max_value=max_delay_ms / 1000,
    )(attempt)
    return await retrying()


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """
    Fail fast while the FHIR server keeps failing.

    Only failures that `is_retryable_error` accepts are counted; a 4xx answer
    shows the server is up and counts as a success.

    Args:
        failure_threshold: Consecutive failures that open the circuit.
        recovery_timeout_ms: Time the circuit stays open before a trial call.
        clock: Monotonic seconds source.

    Examples:
        >>> breaker = CircuitBreaker(failure_threshold=3)
        >>> bundle = await breaker.call(lambda: client.search("Patient"))
        >>> breaker.state
        <CircuitState.CLOSED: 'closed'>
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout_ms: int = DEFAULT_RECOVERY_TIMEOUT_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.recovery_timeout_ms = recovery_timeout_ms
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        self._check_recovery()
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def _check_recovery(self) -> None:
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return
        if (self._clock() - self._opened_at) * 1000 >= self.recovery_timeout_ms:
            self._transition(CircuitState.HALF_OPEN)

    def _transition(self, state: CircuitState) -> None:
        if state is self._state:
            return
        logger.info("Circuit breaker %s -> %s", self._state.value, state.value)
        self._state = state

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None
        self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._failures += 1
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            self._opened_at = self._clock()
            if self._state is not CircuitState.OPEN:
                logger.warning("Circuit breaker opened after %d failure(s)", self._failures)
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Close the circuit and forget past failures."""
        logger.info("Circuit breaker reset from %s", self._state.value)
        self._failures = 0
        self._opened_at = None
        self._state = CircuitState.CLOSED

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Await `operation()` unless the circuit is open.

        Raises:
            CircuitOpenError: The circuit is open; the operation was not started.
        """
        if self.state is CircuitState.OPEN:
            raise CircuitOpenError("Circuit breaker is open")
        try:
            result = await operation()
        except Exception as ex:
            if is_retryable_error(ex):
                self.record_failure()
            else:
                self.record_success()
            raise
        self.record_success()
        return result
