"""
Declarative sync resources and their storage.
"""

from . import conditions
from .models import (
    API_VERSION,
    DISPATCH_DIRECT,
    DISPATCH_LABEL,
    FINALIZER,
    ApiEndpoint,
    ApiEndpointStatus,
    Claim,
    Condition,
    Destination,
    JobRef,
    LastError,
    ObjectMeta,
    Phase,
    Progress,
    RetryPolicy,
    SyncResource,
    SyncSpec,
    SyncStatus,
    SyncTarget,
    SyncType,
    split_key,
)
from .store import (
    ADDED,
    DELETED,
    MODIFIED,
    MemoryResourceStore,
    ResourceStore,
    StoreEvent,
    create_resource_store,
)

__all__ = [
    "ADDED",
    "API_VERSION",
    "ApiEndpoint",
    "ApiEndpointStatus",
    "Claim",
    "Condition",
    "DELETED",
    "DISPATCH_DIRECT",
    "DISPATCH_LABEL",
    "Destination",
    "FINALIZER",
    "JobRef",
    "LastError",
    "MODIFIED",
    "MemoryResourceStore",
    "ObjectMeta",
    "Phase",
    "Progress",
    "ResourceStore",
    "RetryPolicy",
    "StoreEvent",
    "SyncResource",
    "SyncSpec",
    "SyncStatus",
    "SyncTarget",
    "SyncType",
    "conditions",
    "create_resource_store",
    "split_key",
]
