"""
Retry policy evaluation.

delay(attempt) = initial_delay * backoff_multiplier ** (attempt - 1)

attempt is the 1-based retry number, so with {maxRetries: 3,
backoffMultiplier: 2.0, initialDelay: 0.1} the retries wait 0.1, 0.2 and
0.4 seconds and the fourth failure is final.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..errors import ErrorKind, is_retryable
from ..resources.models import RetryPolicy


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Seconds to wait before retry number `attempt` (1-based)."""
    if attempt < 1:
        attempt = 1
    return policy.initial_delay * (policy.backoff_multiplier ** (attempt - 1))


def should_retry(kind: ErrorKind) -> bool:
    """
    Whether the control loop retries a failure of this kind.

    Transient kinds always qualify. Execution failures (the work unit exited
    non-zero) are also retried within the policy limit; validation,
    authentication, template and internal failures never are.
    """
    return is_retryable(kind) or ErrorKind(kind) == ErrorKind.EXECUTION


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    retry_count: int
    delay: Optional[float] = None


def decide(policy: RetryPolicy, kind: ErrorKind, previous_retry_count: int) -> RetryDecision:
    """Count this failure and decide between a delayed retry and giving up."""
    retry_count = previous_retry_count + 1
    if should_retry(kind) and retry_count <= policy.max_retries:
        return RetryDecision(retry=True, retry_count=retry_count, delay=backoff_delay(policy, retry_count))
    return RetryDecision(retry=False, retry_count=retry_count)
