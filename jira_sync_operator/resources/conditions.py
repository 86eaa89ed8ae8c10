"""
Condition bookkeeping.

Conditions are replaced by type or appended; nothing is dropped. The
transition time only moves when the status value actually changes.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from .models import Condition

# Condition types
READY = "Ready"
PROCESSING = "Processing"
FAILED = "Failed"
COMPLETED = "Completed"
API_SERVER_READY = "APIServerReady"
VALIDATED = "Validated"
CLAIMED = "Claimed"

# Reasons
REASON_INITIALIZING = "Initializing"
REASON_VALIDATING = "Validating"
REASON_VALIDATION_FAILED = "ValidationFailed"
REASON_SCHEDULING = "Scheduling"
REASON_PROCESSING = "Processing"
REASON_COMPLETED = "Completed"
REASON_FAILED = "Failed"
REASON_RETRYING = "Retrying"
REASON_WAITING = "Waiting"
REASON_NO_API_SERVER = "No APIServer found"
REASON_API_SERVER_READY = "APIServerReady"
REASON_JOB_ERROR = "JobError"
REASON_CLAIMED = "Claimed"

TRUE = "True"
FALSE = "False"
UNKNOWN = "Unknown"


def get_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_true(conditions: List[Condition], condition_type: str) -> bool:
    condition = get_condition(conditions, condition_type)
    return condition is not None and condition.status == TRUE


def set_condition(
    conditions: List[Condition],
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    now: datetime,
) -> Condition:
    """Replace the condition of this type in place, or append it."""
    for index, existing in enumerate(conditions):
        if existing.type == condition_type:
            transition = existing.last_transition_time if existing.status == status else now
            updated = Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=transition or now,
            )
            conditions[index] = updated
            return updated

    condition = Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        last_transition_time=now,
    )
    conditions.append(condition)
    return condition
