"""
Data types for cluster work units.

WorkUnitConfig is what the orchestrator submits (frozen once built).
WorkUnitResult is what the scheduler observes back from the cluster.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, conint


class JobKind(str, Enum):
    """Kinds of sync work."""

    SINGLE = "single"
    BATCH = "batch"
    JQL = "jql"


class JobStatus(str, Enum):
    """Observed status of a work unit."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED})


class ResourceRequirements(BaseModel):
    """CPU/memory requests and limits (cluster quantity strings)."""

    model_config = ConfigDict(frozen=True)

    requests_cpu: Optional[str] = None
    requests_memory: Optional[str] = None
    limits_cpu: Optional[str] = None
    limits_memory: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(
            (self.requests_cpu, self.requests_memory, self.limits_cpu, self.limits_memory)
        )


class WorkUnitConfig(BaseModel):
    """Configuration for one cluster work unit. Immutable once submitted."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: JobKind
    name: str = ""
    created: Optional[datetime] = None

    # Sync target: issue key, comma-joined keys, or JQL query
    target: str
    repository: str

    batch_size: conint(ge=0) = 0
    concurrency: conint(ge=0) = 0
    rate_limit_ms: conint(ge=0) = 0
    incremental: bool = False
    force: bool = False
    dry_run: bool = False
    safe_mode: bool = False

    namespace: str = ""
    image: str = ""
    resources: Optional[ResourceRequirements] = None
    parallelism: Optional[conint(ge=0)] = None
    completions: Optional[conint(ge=1)] = None
    timeout_seconds: Optional[conint(ge=1)] = None
    environment: Dict[str, str] = Field(default_factory=dict)


class WorkUnitResult(BaseModel):
    """Observed outcome of a work unit."""

    job_id: str
    kind: Optional[JobKind] = None
    status: JobStatus = JobStatus.UNKNOWN
    namespace: str = ""
    job_name: str = ""
    created: Optional[datetime] = None
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    total_issues: int = 0
    processed_issues: int = 0
    successful_issues: int = 0
    failed_issues: int = 0
    processed_files: List[str] = Field(default_factory=list)

    message: str = ""
    error_message: str = ""
    errors: List[str] = Field(default_factory=list)
    pod_name: str = ""
    container_logs: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class JobMonitor(BaseModel):
    """One status observation emitted by a job watch."""

    job_id: str
    status: JobStatus
    progress: float = 0.0
    message: str = ""
    timestamp: datetime


class JobFilter(BaseModel):
    """
    Criteria for listing jobs.

    kinds and statuses are independent predicates: a job matches when its kind
    is in kinds (or kinds is empty) AND its status is in statuses (or statuses
    is empty).
    """

    kinds: List[JobKind] = Field(default_factory=list)
    statuses: List[JobStatus] = Field(default_factory=list)
    created_since: Optional[datetime] = None
    created_before: Optional[datetime] = None
    namespace: Optional[str] = None
    limit: conint(ge=0) = 0
    offset: conint(ge=0) = 0

    def matches(self, result: WorkUnitResult) -> bool:
        if self.kinds and result.kind not in self.kinds:
            return False
        if self.statuses and result.status not in self.statuses:
            return False
        if self.namespace and result.namespace != self.namespace:
            return False
        if self.created_since and (result.created is None or result.created < self.created_since):
            return False
        if self.created_before and (result.created is None or result.created >= self.created_before):
            return False
        return True


class QueueStatus(BaseModel):
    """Counts of tracked work units by status."""

    total: int = 0
    pending: int = 0
    running: int = 0
    succeeded: int = 0
    failed: int = 0
    unknown: int = 0


class HealthStatus(BaseModel):
    """Health summary reported by the orchestrator."""

    healthy: bool
    message: str = ""
    checked_at: datetime
    details: Dict[str, str] = Field(default_factory=dict)
