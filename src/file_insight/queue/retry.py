"""Retry/backoff policy for failed analysis attempts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple

from file_insight.storage.common import utc_now


class RetryDecision(NamedTuple):
    retry: bool
    delay_seconds: float

    def eligible_at(self, now: datetime | None = None) -> datetime:
        return (now or utc_now()) + timedelta(seconds=self.delay_seconds)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff: ``base * 2 ** (attempt - 1)`` capped at ``max_delay_seconds``."""

    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0
    max_attempts: int = 3

    def __post_init__(self) -> None:
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0.")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds.")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")

    def delay_for(self, attempt: int) -> float:
        """Delay before the job becomes eligible again after failed attempt ``attempt``."""

        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))

    def decide(self, *, attempts: int, max_attempts: int | None = None) -> RetryDecision:
        """Retry while attempts remain; otherwise the failure is terminal."""

        ceiling = self.max_attempts if max_attempts is None else max_attempts
        if attempts < ceiling:
            return RetryDecision(retry=True, delay_seconds=self.delay_for(attempts))
        return RetryDecision(retry=False, delay_seconds=0.0)
