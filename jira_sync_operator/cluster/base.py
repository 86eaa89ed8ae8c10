"""
Cluster API boundary.

The scheduler talks to the cluster only through ClusterClient. Objects are
plain dicts shaped like Kubernetes API objects (metadata/spec/status), so the
in-memory backend and the REST backend are interchangeable.

Errors surface as typed SyncErrors (NotFoundError, ConflictError,
SyncConnectionError, ...). Clients never retry; retry policy belongs to the
callers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


@dataclass
class WatchEvent:
    """One change notification from a watch stream."""

    type: str
    object: Dict[str, Any]


def format_selector(labels: Optional[Dict[str, str]]) -> str:
    """Render {"a": "b", "c": "d"} as the selector string "a=b,c=d"."""
    if not labels:
        return ""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def matches_labels(obj: Dict[str, Any], selector: Optional[Dict[str, str]]) -> bool:
    if not selector:
        return True
    labels = obj.get("metadata", {}).get("labels") or {}
    return all(labels.get(key) == value for key, value in selector.items())


class ClusterClient(ABC):
    """Abstract client for work-unit (Job) and execution-unit (Pod) objects."""

    @abstractmethod
    async def create_job(self, namespace: str, manifest: Dict[str, Any]) -> Dict[str, Any]:
        """Create a Job. Raises ConflictError if the name is taken."""
        pass

    @abstractmethod
    async def get_job(self, namespace: str, name: str) -> Dict[str, Any]:
        """Fetch a Job. Raises NotFoundError."""
        pass

    @abstractmethod
    async def list_jobs(
        self, namespace: Optional[str], label_selector: Optional[Dict[str, str]] = None
    ) -> List[Dict[str, Any]]:
        """List Jobs, in one namespace or (namespace=None) all of them."""
        pass

    @abstractmethod
    async def update_job(self, namespace: str, manifest: Dict[str, Any]) -> Dict[str, Any]:
        """Replace a Job. Rejected with ConflictError if metadata.resourceVersion is stale."""
        pass

    @abstractmethod
    async def delete_job(
        self, namespace: str, name: str, propagation: str = "Foreground"
    ) -> None:
        """Delete a Job and (with Foreground/Background propagation) its pods."""
        pass

    @abstractmethod
    def watch_jobs(self, namespace: str, name: str) -> AsyncIterator[WatchEvent]:
        """Stream changes to one Job until the iterator is closed."""
        pass

    @abstractmethod
    async def list_pods(
        self, namespace: str, label_selector: Optional[Dict[str, str]] = None
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete_pod(self, namespace: str, name: str) -> None:
        pass

    @abstractmethod
    async def read_pod_log(self, namespace: str, name: str, container: Optional[str] = None) -> str:
        pass

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""
        return None
