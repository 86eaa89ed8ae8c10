"""
JIRASync control loop.

Components:
    - reconciler: per-resource state machine (Pending -> Processing -> Completed/Failed)
    - status_writer: conflict-aware status writes with stale-transition guard
    - dependency: APIServer readiness gate
    - retry: backoff policy evaluation
    - workqueue: keyed, de-duplicating work queue
    - loop: recover/watch/resync/worker orchestration
"""

from .dependency import DependencyGate, GateResult
from .loop import ControlLoop, build_control_loop, run_operator
from .reconciler import (
    API_ENDPOINT_ENV,
    DONE,
    ClaimLost,
    ReconcileResult,
    Reconciler,
    ReconcilerConfig,
    requeue,
)
from .retry import RetryDecision, backoff_delay, decide, should_retry
from .status_writer import StaleTransition, StatusWriter
from .workqueue import ShutDown, WorkQueue

__all__ = [
    "API_ENDPOINT_ENV",
    "ClaimLost",
    "ControlLoop",
    "DONE",
    "DependencyGate",
    "GateResult",
    "ReconcileResult",
    "Reconciler",
    "ReconcilerConfig",
    "RetryDecision",
    "ShutDown",
    "StaleTransition",
    "StatusWriter",
    "WorkQueue",
    "backoff_delay",
    "build_control_loop",
    "decide",
    "requeue",
    "run_operator",
    "should_retry",
]
