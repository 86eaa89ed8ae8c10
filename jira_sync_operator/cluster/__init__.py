"""
Cluster API boundary and its backends.
"""

from typing import Optional

from ..config import Settings, get_settings
from ..errors import InternalError
from .base import ADDED, DELETED, MODIFIED, ClusterClient, WatchEvent
from .memory import InMemoryCluster


def create_cluster_client(settings: Optional[Settings] = None) -> ClusterClient:
    """Build the cluster client selected by CLUSTER_BACKEND."""
    settings = settings or get_settings()
    backend = settings.cluster_backend.lower()

    if backend == "memory":
        return InMemoryCluster()
    if backend == "kubernetes":
        from .kubernetes import KubernetesClusterClient

        return KubernetesClusterClient.from_settings(settings)

    raise InternalError(
        f"unsupported cluster backend: {settings.cluster_backend}",
        component="cluster",
        operation="create_client",
    )


__all__ = [
    "ADDED",
    "DELETED",
    "MODIFIED",
    "ClusterClient",
    "InMemoryCluster",
    "WatchEvent",
    "create_cluster_client",
]
