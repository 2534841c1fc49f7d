"""
Sliding-window rate limiter for enrichment calls.

Concurrent callers block cooperatively until a slot frees up; a caller
whose deadline passes first gets RateLimitExceeded instead.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional, Tuple

from loguru import logger

from .errors import OperationCancelled, RateLimitExceeded
from .retry import CancellationToken, Deadline

# Upper bound on a single condition wait so cancellation is noticed promptly.
_WAIT_SLICE_SECONDS = 0.05


@dataclass(frozen=True)
class RateLimiterState:
    """Snapshot of the limiter window."""
    max_calls: int
    window_seconds: float
    call_timestamps: Tuple[float, ...]

    @property
    def calls_in_window(self) -> int:
        return len(self.call_timestamps)


class RateLimiter:
    """Admits at most ``max_calls`` acquisitions in any rolling window."""

    def __init__(
        self,
        max_calls: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_calls <= 0:
            raise ValueError("max_calls must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: Deque[float] = deque()
        self._condition = threading.Condition()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._calls and self._calls[0] <= cutoff:
            self._calls.popleft()

    def try_acquire(self) -> bool:
        """Take a slot if one is free right now."""
        with self._condition:
            now = self._clock()
            self._prune(now)
            if len(self._calls) < self.max_calls:
                self._calls.append(now)
                return True
            return False

    def acquire(
        self,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> None:
        """Block until a slot is free.

        Raises:
            RateLimitExceeded: If the deadline passes before a slot frees up
            OperationCancelled: If the run is cancelled while waiting
        """
        with self._condition:
            while True:
                if cancel_token is not None and cancel_token.cancelled:
                    raise OperationCancelled("rate limiter wait cancelled")

                now = self._clock()
                self._prune(now)
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    self._condition.notify_all()
                    return

                wait_for = self._calls[0] + self.window_seconds - now
                remaining = None if deadline is None else deadline.remaining()
                if remaining is not None and remaining < wait_for:
                    logger.warning(
                        f"Rate limit of {self.max_calls}/{self.window_seconds:g}s reached; "
                        f"next slot in {wait_for:.2f}s exceeds remaining {remaining:.2f}s"
                    )
                    raise RateLimitExceeded(
                        f"No slot within deadline ({self.max_calls} calls per {self.window_seconds:g}s)"
                    )
                self._condition.wait(min(wait_for, _WAIT_SLICE_SECONDS))

    def state(self) -> RateLimiterState:
        with self._condition:
            self._prune(self._clock())
            return RateLimiterState(
                max_calls=self.max_calls,
                window_seconds=self.window_seconds,
                call_timestamps=tuple(self._calls)
            )

    def reset(self) -> None:
        with self._condition:
            self._calls.clear()
            self._condition.notify_all()
