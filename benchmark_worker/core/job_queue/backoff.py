"""Retry backoff policy."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before the next attempt, as a function of the retry count.

    Exponential mode waits `base` for attempts 0 and 1, then multiplies by
    `multiplier` per attempt. The delay never exceeds `max_seconds`.
    """

    base_seconds: float = 5.0
    max_seconds: float = 300.0
    multiplier: float = 2.0
    exponential: bool = True

    def __post_init__(self) -> None:
        if self.base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")

    def delay_for(self, attempt: int) -> float:
        attempt = max(0, int(attempt))
        if not self.exponential or attempt == 0:
            return min(self.base_seconds, self.max_seconds)
        try:
            delay = self.base_seconds * (self.multiplier ** (attempt - 1))
        except OverflowError:
            return self.max_seconds
        return min(delay, self.max_seconds)

    __call__ = delay_for
