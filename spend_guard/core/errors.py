"""
Error taxonomy for the alert pipeline.

Every failure that crosses a component boundary is one of these kinds.
Backend adapters translate library exceptions into this taxonomy so that
retry classification never needs to know about a specific SDK.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Coarse classification used by callers and delivery reports."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    BACKEND = "backend"
    RATE_LIMITED = "rate_limited"
    COST_CAPPED = "cost_capped"
    CANCELLED = "cancelled"
    RETRY_EXHAUSTED = "retry_exhausted"
    UNKNOWN = "unknown"


class SpendGuardError(Exception):
    """Base class for all pipeline errors."""
    kind = ErrorKind.UNKNOWN


class ValidationError(SpendGuardError, ValueError):
    """Malformed input: bad token, non-positive threshold, oversized payload."""
    kind = ErrorKind.VALIDATION


class NotFoundError(SpendGuardError):
    """Referenced registration or endpoint does not exist."""
    kind = ErrorKind.NOT_FOUND


class TransientBackendError(SpendGuardError):
    """Network, timeout, throttling or 5xx failure from an external backend."""
    kind = ErrorKind.TRANSIENT


class BackendError(SpendGuardError):
    """Non-retryable rejection from an external backend."""
    kind = ErrorKind.BACKEND


class RateLimitExceeded(SpendGuardError):
    """No rate-limiter slot became free before the caller's deadline."""
    kind = ErrorKind.RATE_LIMITED


class CostCapExceeded(SpendGuardError):
    """Cumulative enrichment spend reached the monthly cap."""
    kind = ErrorKind.COST_CAPPED

    def __init__(self, message: str, cumulative_cost: float, cap: float):
        super().__init__(message)
        self.cumulative_cost = cumulative_cost
        self.cap = cap


class OperationCancelled(SpendGuardError):
    """The run was cancelled by its caller."""
    kind = ErrorKind.CANCELLED


class RetryExhaustedError(SpendGuardError):
    """Retryable failures persisted past max attempts or the deadline."""
    kind = ErrorKind.RETRY_EXHAUSTED

    def __init__(
        self,
        operation: str,
        attempts: int,
        last_error: Exception,
        deadline_exceeded: bool = False
    ):
        reason = "deadline reached" if deadline_exceeded else "attempts exhausted"
        super().__init__(
            f"{operation} failed after {attempts} attempt(s), {reason}: {last_error}"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        self.deadline_exceeded = deadline_exceeded


def error_kind(error: Optional[BaseException]) -> ErrorKind:
    """Map any exception to an ErrorKind."""
    if error is None:
        return ErrorKind.UNKNOWN
    if isinstance(error, SpendGuardError):
        return error.kind
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN
