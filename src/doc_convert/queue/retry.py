"""Exponential backoff policy for failed conversion attempts."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .models import utcnow


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a job after a failed attempt."""

    attempts_made: int
    retry: bool
    delay_ms: int = 0
    available_at: Optional[datetime] = None


@dataclass(frozen=True)
class RetryPolicy:
    """delay = base * 2^(attempts_made - 1)

    With the default base of 2000ms the first failure waits 2s, the second 4s,
    the third 8s, and so on until max_attempts is reached.
    """

    base_delay_ms: int = 2000

    def delay_ms(self, attempts_made: int) -> int:
        if attempts_made < 1:
            raise ValueError("attempts_made must be >= 1 after a failure")
        return self.base_delay_ms * (2 ** (attempts_made - 1))

    def decide(
        self,
        attempts_before: int,
        max_attempts: int,
        retryable: bool = True,
        now: Optional[datetime] = None,
    ) -> RetryDecision:
        """Account for one failed attempt.

        Args:
            attempts_before: attempts_made before this failure
            max_attempts: the job's ceiling
            retryable: False for permanent failures (no further attempts)
            now: Clock override

        Returns:
            RetryDecision with the incremented attempt count
        """
        attempts_made = min(attempts_before + 1, max_attempts)
        if not retryable or attempts_made >= max_attempts:
            return RetryDecision(attempts_made=attempts_made, retry=False)

        delay = self.delay_ms(attempts_made)
        now = now or utcnow()
        return RetryDecision(
            attempts_made=attempts_made,
            retry=True,
            delay_ms=delay,
            available_at=now + timedelta(milliseconds=delay),
        )
