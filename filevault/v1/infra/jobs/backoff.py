"""
Retry delay policy: exponential backoff in minutes with ±25% jitter.
"""

import random
from datetime import datetime, timedelta

from filevault.config.settings import Settings
from filevault.infra.database import utcnow

JITTER_LOW = 0.75
JITTER_HIGH = 1.25


class RetryPolicy:
    """
    Computes when a failed or reclaimed job may run again.

    delay = min(2 ** attempts, max_minutes) minutes, scaled by a uniform
    jitter factor in [0.75, 1.25] so that jobs failing together spread out.
    """

    def __init__(self, settings: Settings, rng: random.Random | None = None):
        self.max_minutes = settings.job_backoff_max_minutes
        self.rng = rng or random.Random()

    def base_delay_minutes(self, attempts: int) -> float:
        # Cap the exponent before raising to keep the integer small
        exponent = max(0, min(attempts, 32))
        return float(min(2**exponent, self.max_minutes))

    def compute_delay(self, attempts: int) -> timedelta:
        """Backoff for a job that has been claimed ``attempts`` times."""
        jitter = self.rng.uniform(JITTER_LOW, JITTER_HIGH)
        return timedelta(minutes=self.base_delay_minutes(attempts) * jitter)

    def next_attempt_at(self, attempts: int, now: datetime | None = None) -> datetime:
        return (now or utcnow()) + self.compute_delay(attempts)
