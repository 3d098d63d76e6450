from __future__ import annotations

import errno
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from mirrord.core.errors import ListingError, RetryExhaustedError, TransferError
from mirrord.jobs.types import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRNOS = {
    errno.EAGAIN,
    errno.EINTR,
    errno.EBUSY,
    errno.EIO,
    errno.ETIMEDOUT,
    errno.ECONNRESET,
    errno.ECONNREFUSED,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    getattr(errno, "ESTALE", errno.EIO),
}


def default_is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (TransferError, ListingError)):
        return exc.retryable
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, OSError):
        return exc.errno in _TRANSIENT_ERRNOS
    return False


@dataclass
class RetryPolicy:
    """Bounded exponential backoff with jitter.

    The wait before retry ``n`` (0-based) is ``w = min(base * 2**n, max)``
    plus a jitter drawn from ``[0, w)``, and the sum is capped at ``max``.
    Because each jittered wait stays below the next un-jittered one, the
    sequence of waits never decreases.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: bool = True
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    @classmethod
    def from_settings(cls, settings: RetrySettings, **overrides) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
            **overrides,
        )

    def backoff(self, retry_index: int) -> float:
        return min(self.base_delay * (2**retry_index), self.max_delay)

    def delay_for(self, retry_index: int) -> float:
        window = self.backoff(retry_index)
        if not self.jitter or window <= 0:
            return window
        return min(window + self.rng.random() * window, self.max_delay)

    def execute(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool] = default_is_retryable,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
    ) -> T:
        delays: list[float] = []
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                if attempt >= self.max_attempts:
                    raise RetryExhaustedError(exc, attempts=attempt, delays=delays) from exc
                delay = self.delay_for(attempt - 1)
                delays.append(delay)
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                else:
                    logger.warning("Attempt %d/%d failed (%s); retrying in %.2fs", attempt, self.max_attempts, exc, delay)
                if delay > 0:
                    self.sleep(delay)
