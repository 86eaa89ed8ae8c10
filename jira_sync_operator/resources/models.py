"""
Declarative sync resource models.

Strongly-typed records for the JIRASync custom resource and the APIServer
resource it depends on. Python attributes are snake_case; the wire form
(to_wire / from_wire) is the camelCase shape the cluster stores:

    spec:   {syncType, target:{issueKeys|jqlQuery|projectKey},
             destination:{repository,branch,path}, priority, timeout,
             retryPolicy:{maxRetries,backoffMultiplier,initialDelay}, labels}
    status: {phase, progress:{percentage,totalIssues,processedIssues,failedIssues},
             conditions:[{type,status,reason,message,lastTransitionTime}],
             lastError, retryCount, lastSync, ...}
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

GROUP = "sync.jira.io"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"
SYNC_KIND = "JIRASync"
SYNC_PLURAL = "jirasyncs"
ENDPOINT_KIND = "APIServer"
ENDPOINT_PLURAL = "apiservers"

FINALIZER = "sync.jira.io/finalizer"
DISPATCH_LABEL = "sync.jira.io/dispatch"
DISPATCH_DIRECT = "direct"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncType(str, Enum):
    SINGLE = "single"
    BATCH = "batch"
    JQL = "jql"
    INCREMENTAL = "incremental"


class Phase(str, Enum):
    """Reconciliation phases."""

    PENDING = "Pending"
    PROCESSING = "Processing"
    RECOVERING = "Recovering"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ObjectMeta(WireModel):
    name: str
    namespace: str = "default"
    uid: Optional[str] = None
    generation: int = 1
    resource_version: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None


class SyncTarget(WireModel):
    issue_keys: List[str] = Field(default_factory=list)
    jql_query: Optional[str] = None
    project_key: Optional[str] = None


class Destination(WireModel):
    repository: str
    branch: str = "main"
    path: str = "/"


class RetryPolicy(WireModel):
    """Retry schedule. initial_delay is in seconds."""

    max_retries: int = 3
    backoff_multiplier: float = 2.0
    initial_delay: float = 30.0


class SyncSpec(WireModel):
    sync_type: SyncType
    target: SyncTarget = Field(default_factory=SyncTarget)
    destination: Destination
    priority: str = "normal"
    timeout: int = 1800
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    labels: Dict[str, str] = Field(default_factory=dict)


class Condition(WireModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None


class Progress(WireModel):
    percentage: float = 0.0
    total_issues: int = 0
    processed_issues: int = 0
    failed_issues: int = 0
    current_operation: str = ""


class LastError(WireModel):
    type: str
    message: str
    time: datetime
    retryable: bool = False


class JobRef(WireModel):
    name: str
    namespace: str
    job_id: str


class Claim(WireModel):
    """Which control-loop instance currently owns reconciliation."""

    holder: str
    acquired_at: datetime
    renewed_at: datetime


class SyncStatus(WireModel):
    phase: Optional[Phase] = None
    progress: Progress = Field(default_factory=Progress)
    conditions: List[Condition] = Field(default_factory=list)
    last_error: Optional[LastError] = None
    retry_count: int = 0
    last_sync: Optional[datetime] = None
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    next_retry_time: Optional[datetime] = None
    job_ref: Optional[JobRef] = None
    observed_generation: int = 0
    claim: Optional[Claim] = None
    api_endpoint: Optional[str] = None
    last_status_update: Optional[datetime] = None


class SyncResource(WireModel):
    """The JIRASync custom resource."""

    api_version: str = API_VERSION
    kind: str = SYNC_KIND
    metadata: ObjectMeta
    spec: SyncSpec
    status: SyncStatus = Field(default_factory=SyncStatus)

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def is_terminal(self) -> bool:
        return self.status.phase in (Phase.COMPLETED, Phase.FAILED) and self.status.next_retry_time is None

    @property
    def being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "SyncResource":
        return cls.model_validate(data)


class ApiEndpointStatus(WireModel):
    phase: str = ""
    conditions: List[Condition] = Field(default_factory=list)
    endpoint: Optional[str] = None


class ApiEndpoint(WireModel):
    """The APIServer resource a sync may wait on. Looked up, never managed."""

    api_version: str = API_VERSION
    kind: str = ENDPOINT_KIND
    metadata: ObjectMeta
    spec: Dict[str, Any] = Field(default_factory=dict)
    status: ApiEndpointStatus = Field(default_factory=ApiEndpointStatus)

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    def is_ready(self) -> bool:
        if self.status.phase != "Running":
            return False
        return any(c.type == "Ready" and c.status == "True" for c in self.status.conditions)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "ApiEndpoint":
        return cls.model_validate(data)


def split_key(key: str) -> tuple:
    namespace, _, name = key.partition("/")
    return namespace, name
