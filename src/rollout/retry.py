from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

import structlog

from src.common.config import RolloutSettings
from src.common.errors import ApplyActionError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Bounded exponential backoff for cluster calls.

    Only transient ``ApplyActionError``s are retried; everything else
    propagates on the first failure. With the defaults an action is tried at
    t=0, t=1s and t=3s before the error is surfaced.
    """

    def __init__(
        self,
        attempts: int = 3,
        base_delay_seconds: float = 1.0,
        factor: float = 2.0,
        max_delay_seconds: float = 30.0,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts
        self.base_delay_seconds = base_delay_seconds
        self.factor = factor
        self.max_delay_seconds = max_delay_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: RolloutSettings, *, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(
            attempts=settings.retry_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            factor=settings.retry_factor,
            max_delay_seconds=settings.retry_max_delay_seconds,
            sleep=sleep,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay after the 0-indexed ``attempt`` failed."""

        return min(self.base_delay_seconds * (self.factor ** attempt), self.max_delay_seconds)

    def should_retry(self, exc: Exception) -> bool:
        return isinstance(exc, ApplyActionError) and exc.transient

    def call(self, func: Callable[[], T], *, description: Optional[str] = None) -> T:
        for attempt in range(self.attempts):
            try:
                return func()
            except ApplyActionError as exc:
                remaining = self.attempts - attempt - 1
                if not self.should_retry(exc) or remaining == 0:
                    if self.should_retry(exc):
                        logger.warning("retry_exhausted", action=description, attempts=self.attempts, error=exc.detail)
                    raise
                delay = self.calculate_delay(attempt)
                logger.info(
                    "retry_attempt",
                    action=description,
                    attempt=attempt + 1,
                    max_attempts=self.attempts,
                    delay_seconds=delay,
                    error=exc.detail,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["RetryPolicy"]
