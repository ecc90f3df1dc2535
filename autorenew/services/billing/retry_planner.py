"""Retry schedule for failed recurring charges.

Pure decision logic: no I/O, no clock reads beyond the ``now`` argument.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from autorenew.models.billing import BillingAttemptStatus

RETRY_OFFSETS_DAYS: tuple[int, ...] = (1, 3, 7)
MAX_FAILURES = 3


@dataclass(frozen=True)
class RetryDecision:
    retry_count: int
    delay: timedelta
    next_retry_at: datetime | None
    exhausted: bool

    @property
    def delay_days(self) -> int:
        return self.delay.days


def offset_for(failure_count: int) -> timedelta:
    """Offset applied after the ``failure_count``-th failure (1-based)."""
    if failure_count < 1:
        raise ValueError("failure_count must be >= 1")
    index = min(failure_count, len(RETRY_OFFSETS_DAYS)) - 1
    return timedelta(days=RETRY_OFFSETS_DAYS[index])


def plan_retry(
    prior_failures: int,
    last_outcome: BillingAttemptStatus,
    now: datetime,
) -> RetryDecision:
    """Decide what happens after a failed charge.

    ``prior_failures`` is the attempt's ``retry_count`` before this failure.
    Declines, gateway errors and timeouts share one policy, so
    ``last_outcome`` only guards against being called for a success.
    """
    if last_outcome in (BillingAttemptStatus.approved, BillingAttemptStatus.pending):
        raise ValueError(f"No retry decision for outcome {last_outcome.value}")
    if prior_failures < 0:
        raise ValueError("prior_failures must be >= 0")

    failures = prior_failures + 1
    delay = offset_for(failures)
    if failures >= MAX_FAILURES:
        return RetryDecision(
            retry_count=failures,
            delay=delay,
            next_retry_at=None,
            exhausted=True,
        )
    return RetryDecision(
        retry_count=failures,
        delay=delay,
        next_retry_at=now + delay,
        exhausted=False,
    )
