"""
Bounded exponential backoff with jitter.

Retry behavior is a standalone unit: callers hand an operation and an
error classifier to RetryPolicy.execute and receive a RetryResult instead
of relying on ad-hoc loops at each call site. Every wait observes both the
caller's deadline and its cancellation token.
"""

import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

from loguru import logger

from .errors import (
    ErrorKind,
    OperationCancelled,
    RetryExhaustedError,
    SpendGuardError,
    TransientBackendError,
    error_kind,
)

T = TypeVar("T")


class RetryDecision(Enum):
    """Outcome of classifying a failure."""
    RETRYABLE = "retryable"
    FATAL = "fatal"


class CancellationToken:
    """Cooperative cancellation flag shared across one pipeline run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True if cancelled meanwhile."""
        return self._event.wait(max(0.0, timeout))

    def raise_if_cancelled(self, operation: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelled(f"{operation} cancelled")


class Deadline:
    """Absolute point in time derived from an invocation's time budget."""

    def __init__(self, seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded. Never negative."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def allows(self, delay: float) -> bool:
        """Whether ``delay`` seconds fit in the remaining budget."""
        remaining = self.remaining()
        return remaining is None or remaining >= delay


def classify_error(error: BaseException) -> RetryDecision:
    """Default classifier over the pipeline error taxonomy."""
    if isinstance(error, TransientBackendError):
        return RetryDecision.RETRYABLE
    if isinstance(error, SpendGuardError):
        return RetryDecision.FATAL
    if isinstance(error, (ConnectionError, TimeoutError)):
        return RetryDecision.RETRYABLE
    return RetryDecision.FATAL


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Explicit outcome of a retried operation."""
    value: Optional[T]
    error: Optional[Exception]
    attempts: int

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return None if self.error is None else error_kind(self.error)

    def unwrap(self) -> T:
        """Return the value or raise the recorded error."""
        if self.error is not None:
            raise self.error
        return self.value


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters, delays in seconds."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")


class RetryPolicy:
    """Runs operations with bounded exponential backoff.

    Delay before retry ``n`` (0-based) is ``base_delay * 2**n`` capped at
    ``max_delay``, then spread by +/- ``jitter`` of itself. A retry is never
    scheduled when the remaining deadline is shorter than its delay.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()
        self._sleep = sleep

    def compute_delay(self, retry_number: int) -> float:
        """Backoff delay in seconds before the given retry (0-based)."""
        capped = min(self.config.base_delay * (2 ** retry_number), self.config.max_delay)
        if self.config.jitter == 0:
            return capped
        spread = capped * self.config.jitter
        return max(0.0, capped + self._rng.uniform(-spread, spread))

    def execute(
        self,
        operation: Callable[[], T],
        classify: Callable[[BaseException], RetryDecision] = classify_error,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None,
        operation_name: str = "operation"
    ) -> RetryResult[T]:
        """Run ``operation`` until it succeeds, fails fatally or runs out of budget.

        Args:
            operation: Zero-argument callable to run
            classify: Maps a raised exception to RETRYABLE or FATAL
            deadline: Optional time budget shared with the caller
            cancel_token: Optional cancellation flag
            operation_name: Label used in logs and errors

        Returns:
            RetryResult holding either the value or the final error. Fatal
            errors are returned as raised; exhausted retries are wrapped in
            RetryExhaustedError; cancellation yields OperationCancelled.
        """
        attempts = 0
        last_error: Optional[Exception] = None
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                return RetryResult(None, OperationCancelled(f"{operation_name} cancelled"), attempts)
            if deadline is not None and deadline.expired and attempts > 0:
                return RetryResult(None, RetryExhaustedError(
                    operation_name, attempts, last_error, deadline_exceeded=True
                ), attempts)

            attempts += 1
            try:
                value = operation()
            except OperationCancelled as e:
                return RetryResult(None, e, attempts)
            except Exception as e:
                last_error = e
                decision = classify(e)
                if decision is RetryDecision.FATAL:
                    logger.debug(f"{operation_name} failed with non-retryable error: {e}")
                    return RetryResult(None, e, attempts)

                if attempts >= self.config.max_attempts:
                    logger.error(f"{operation_name} failed after {attempts} attempt(s): {e}")
                    return RetryResult(None, RetryExhaustedError(operation_name, attempts, e), attempts)

                delay = self.compute_delay(attempts - 1)
                if deadline is not None and not deadline.allows(delay):
                    logger.error(
                        f"{operation_name} not retried: {delay:.2f}s backoff exceeds remaining budget"
                    )
                    return RetryResult(None, RetryExhaustedError(
                        operation_name, attempts, e, deadline_exceeded=True
                    ), attempts)

                logger.warning(
                    f"{operation_name} failed on attempt {attempts}/{self.config.max_attempts}, "
                    f"retrying in {delay:.2f}s: {e}"
                )
                if cancel_token is not None:
                    if cancel_token.wait(delay):
                        return RetryResult(None, OperationCancelled(f"{operation_name} cancelled"), attempts)
                else:
                    self._sleep(delay)
                continue

            if attempts > 1:
                logger.info(f"{operation_name} succeeded after {attempts} attempts")
            return RetryResult(value, None, attempts)

    def call(self, operation: Callable[[], T], **kwargs: Any) -> T:
        """Shorthand for ``execute(...).unwrap()``."""
        return self.execute(operation, **kwargs).unwrap()
