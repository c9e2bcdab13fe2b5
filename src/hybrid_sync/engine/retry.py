"""
Retry decisions for failed sync jobs.
"""

import logging
import random
from dataclasses import dataclass
from typing import Optional

from ..exceptions import (
    ConfigurationError, MappingError, PermanentSystemError, TransientSystemError
)
from ..models.config import RetrySettings
from ..models.sync import SyncJob

logger = logging.getLogger(__name__)

PERMANENT_ERRORS = (PermanentSystemError, MappingError, ConfigurationError)


@dataclass
class RetryDecision:
    """
    Result of consulting the retry policy.

    Attributes:
        retry: Whether the job is rescheduled
        delay: Seconds until the job becomes visible again
        transient: Whether the error was classified as transient
        reason: Short explanation for logs and the job record
    """
    retry: bool
    delay: float = 0.0
    transient: bool = False
    reason: str = ""


def is_transient(error: BaseException) -> bool:
    """Network, 5xx and 429 are transient; 4xx and bad records are not.

    Errors we cannot classify are treated as transient; max_attempts still
    bounds them.
    """
    if isinstance(error, PERMANENT_ERRORS):
        return False
    return True


class RetryPolicy:
    """
    Exponential backoff with a ceiling and jitter.
    """

    def __init__(self, settings: Optional[RetrySettings] = None, rng: Optional[random.Random] = None):
        self.settings = settings or RetrySettings()
        self._rng = rng or random.Random()

    def calculate_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before the next attempt.

        Args:
            attempt: Attempts made so far (1-based)
            retry_after: Server hint from a 429 response, in seconds

        Returns:
            Delay in seconds
        """
        base = self.settings.base_delay_seconds * (2 ** max(attempt - 1, 0))
        delay = min(base, self.settings.max_delay_seconds)

        if retry_after is not None:
            delay = min(max(delay, retry_after), self.settings.max_delay_seconds)

        if self.settings.jitter_ratio > 0 and delay > 0:
            delay += self._rng.uniform(0, delay * self.settings.jitter_ratio)

        return delay

    def should_retry(self, job: SyncJob, error: BaseException) -> RetryDecision:
        """
        Decide whether a failed job is retried.

        Args:
            job: The job as it was when it failed
            error: The error raised while applying it

        Returns:
            RetryDecision
        """
        if not is_transient(error):
            return RetryDecision(retry=False, transient=False, reason=f"permanent: {error}")

        if job.attempt >= job.max_attempts:
            return RetryDecision(
                retry=False,
                transient=True,
                reason=f"exhausted {job.max_attempts} attempts: {error}",
            )

        retry_after = error.retry_after if isinstance(error, TransientSystemError) else None
        delay = self.calculate_delay(job.attempt, retry_after)
        logger.debug(f"Job {job.id} attempt {job.attempt}/{job.max_attempts} will retry in {delay:.2f}s")
        return RetryDecision(retry=True, delay=delay, transient=True, reason=f"transient: {error}")
