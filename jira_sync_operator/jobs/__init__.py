"""
Work units: identifiers, templates, scheduling and orchestration.
"""

from .orchestrator import (
    BatchSyncRequest,
    JobConfiguration,
    JQLSyncRequest,
    SingleIssueSyncRequest,
    SyncJobOrchestrator,
)
from .pipeline import IncrementalOptions, LocalSyncRequest, SyncOutcome, SyncPipeline
from .scheduler import JobScheduler, job_name_for
from .templates import JobTemplate, TemplateCatalog, validate_template
from .types import (
    JobFilter,
    JobKind,
    JobMonitor,
    JobStatus,
    QueueStatus,
    ResourceRequirements,
    WorkUnitConfig,
    WorkUnitResult,
)
from .watch import JobWatch

__all__ = [
    "BatchSyncRequest",
    "IncrementalOptions",
    "JQLSyncRequest",
    "JobConfiguration",
    "JobFilter",
    "JobKind",
    "JobMonitor",
    "JobScheduler",
    "JobStatus",
    "JobTemplate",
    "JobWatch",
    "LocalSyncRequest",
    "QueueStatus",
    "ResourceRequirements",
    "SingleIssueSyncRequest",
    "SyncJobOrchestrator",
    "SyncOutcome",
    "SyncPipeline",
    "TemplateCatalog",
    "WorkUnitConfig",
    "WorkUnitResult",
    "job_name_for",
    "validate_template",
]
