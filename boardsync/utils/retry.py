"""
BoardSync — Retry Policy

One policy object shared by every upstream call site instead of per-site
loops with their own magic constants. Call sites differ only in the values
they configure (collections queue longer than thing lookups, image lookups
are best effort).
"""

from __future__ import annotations

from dataclasses import dataclass, field

from boardsync.config import settings

# 202 = upstream is still preparing the result, 429 = throttled
DEFAULT_RETRY_STATUSES: frozenset[int] = frozenset({202, 429, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    delay(attempt) = min(max_delay, base_delay * 2 ** (attempt - 1))

    Attempts are 1-indexed; there is never an unbounded loop because the
    caller stops after max_attempts.
    """

    max_attempts: int = 3
    base_delay: float = 1.5
    max_delay: float = 5.0
    retry_statuses: frozenset[int] = field(default=DEFAULT_RETRY_STATUSES)
    retry_on_network_error: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-indexed) failed attempt."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def should_retry_status(self, status_code: int) -> bool:
        return status_code in self.retry_statuses

    def has_attempts_left(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    @property
    def worst_case_seconds(self) -> float:
        """Upper bound of total sleep time for one call."""
        return sum(self.delay_for(a) for a in range(1, self.max_attempts))

    # -----------------------------------------------------------------------
    # Call-site presets
    # -----------------------------------------------------------------------

    @classmethod
    def for_thing_lookup(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.THING_RETRY_MAX_ATTEMPTS,
            base_delay=settings.THING_RETRY_BASE_DELAY,
            max_delay=settings.THING_RETRY_MAX_DELAY,
        )

    @classmethod
    def for_collection(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.COLLECTION_RETRY_MAX_ATTEMPTS,
            base_delay=settings.COLLECTION_RETRY_BASE_DELAY,
            max_delay=settings.COLLECTION_RETRY_MAX_DELAY,
        )

    @classmethod
    def for_image_lookup(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.IMAGE_RETRY_MAX_ATTEMPTS,
            base_delay=settings.IMAGE_RETRY_BASE_DELAY,
            max_delay=settings.IMAGE_RETRY_MAX_DELAY,
        )
