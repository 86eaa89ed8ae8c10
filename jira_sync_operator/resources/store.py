"""
Storage for declarative sync resources.

The control loop reads and writes resources only through ResourceStore.
Writes are optimistic: update_status and update_metadata succeed only when
the caller's metadata.resource_version is still current, otherwise they raise
ConflictError and the caller must re-read. Spec is never rewritten after
create.

Backends (create_resource_store picks one by URL scheme):
- memory://                 MemoryResourceStore (this module)
- sqlite:// / postgresql:// SqlResourceStore
- kubernetes://             KubernetesResourceStore
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..errors import ConflictError, InternalError, NotFoundError
from .models import ApiEndpoint, SyncResource

logger = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

DEFAULT_WATCH_BUFFER_SIZE = 1000


@dataclass
class StoreEvent:
    """A change to a sync resource."""

    type: str
    resource: SyncResource


def _not_found(namespace: str, name: str) -> NotFoundError:
    return NotFoundError(
        f'jirasyncs "{name}" not found in namespace "{namespace}"',
        operation="get",
        resource=f"jirasyncs/{name}",
    )


@dataclass
class _Watcher:
    namespace: Optional[str]
    queue: asyncio.Queue
    overflowed: bool = False


def _conflict(resource: SyncResource, operation: str) -> ConflictError:
    return ConflictError(
        f'operation cannot be fulfilled on jirasyncs "{resource.metadata.name}": '
        "the object has been modified; please apply your changes to the latest version",
        operation=operation,
        resource=f"jirasyncs/{resource.metadata.name}",
    )


class ResourceStore(ABC):
    """Abstract store for JIRASync and APIServer resources."""

    @abstractmethod
    async def create(self, resource: SyncResource) -> SyncResource:
        """Persist a new resource. Raises ConflictError if the name is taken."""
        pass

    @abstractmethod
    async def get(self, namespace: str, name: str) -> SyncResource:
        """Fetch a resource. Raises NotFoundError."""
        pass

    @abstractmethod
    async def list(self, namespace: Optional[str] = None) -> List[SyncResource]:
        pass

    @abstractmethod
    async def update_status(self, resource: SyncResource) -> SyncResource:
        """Write resource.status if resource.metadata.resource_version is current."""
        pass

    @abstractmethod
    async def update_metadata(self, resource: SyncResource) -> SyncResource:
        """Write labels/annotations/finalizers under the same version check.

        Clearing the last finalizer of a resource marked for deletion removes it.
        """
        pass

    @abstractmethod
    async def delete(self, namespace: str, name: str) -> None:
        """Delete a resource, or mark it for deletion while finalizers remain."""
        pass

    @abstractmethod
    def watch(self, namespace: Optional[str] = None) -> AsyncIterator[StoreEvent]:
        pass

    @abstractmethod
    async def list_endpoints(self, namespace: str) -> List[ApiEndpoint]:
        pass

    @abstractmethod
    async def put_endpoint(self, endpoint: ApiEndpoint) -> ApiEndpoint:
        """Create or replace an APIServer resource (used by its own controller and tests)."""
        pass

    async def close(self) -> None:
        return None


class MemoryResourceStore(ResourceStore):
    """In-process store with a global version counter and watch fan-out.

    Each watcher buffers at most `watch_buffer_size` events. A watcher that
    falls further behind loses the overflow and, once it has drained its
    buffer, is sent the current state of every resource it watches as
    MODIFIED events instead.
    """

    def __init__(self, watch_buffer_size: int = DEFAULT_WATCH_BUFFER_SIZE):
        self._resources: Dict[Tuple[str, str], SyncResource] = {}
        self._endpoints: Dict[Tuple[str, str], ApiEndpoint] = {}
        self._version = 0
        self.watch_buffer_size = watch_buffer_size
        self._watchers: List[_Watcher] = []
        self.status_writes = 0
        self.conflicts = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _notify(self, event_type: str, resource: SyncResource) -> None:
        for watcher in list(self._watchers):
            if watcher.namespace is not None and watcher.namespace != resource.metadata.namespace:
                continue
            if watcher.queue.full():
                if not watcher.overflowed:
                    logger.warning(
                        f"Watch buffer full ({self.watch_buffer_size} events), resending current state once drained"
                    )
                watcher.overflowed = True
                continue
            watcher.queue.put_nowait(StoreEvent(type=event_type, resource=resource.model_copy(deep=True)))

    def _current(self, namespace: str, name: str) -> SyncResource:
        current = self._resources.get((namespace, name))
        if current is None:
            raise _not_found(namespace, name)
        return current

    async def create(self, resource: SyncResource) -> SyncResource:
        await asyncio.sleep(0)
        key = (resource.metadata.namespace, resource.metadata.name)
        if key in self._resources:
            raise ConflictError(
                f'jirasyncs "{resource.metadata.name}" already exists',
                operation="create",
                resource=f"jirasyncs/{resource.metadata.name}",
            )
        stored = resource.model_copy(deep=True)
        stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
        stored.metadata.generation = 1
        stored.metadata.creation_timestamp = stored.metadata.creation_timestamp or datetime.now(timezone.utc)
        stored.metadata.resource_version = self._next_version()
        self._resources[key] = stored
        self._notify(ADDED, stored)
        return stored.model_copy(deep=True)

    async def get(self, namespace: str, name: str) -> SyncResource:
        await asyncio.sleep(0)
        return self._current(namespace, name).model_copy(deep=True)

    async def list(self, namespace: Optional[str] = None) -> List[SyncResource]:
        await asyncio.sleep(0)
        return [
            resource.model_copy(deep=True)
            for (ns, _), resource in sorted(self._resources.items())
            if namespace is None or ns == namespace
        ]

    async def update_status(self, resource: SyncResource) -> SyncResource:
        await asyncio.sleep(0)
        current = self._current(resource.metadata.namespace, resource.metadata.name)
        if resource.metadata.resource_version != current.metadata.resource_version:
            self.conflicts += 1
            raise _conflict(resource, "update status")

        stored = current.model_copy(deep=True)
        stored.status = resource.status.model_copy(deep=True)
        stored.metadata.resource_version = self._next_version()
        self._resources[(stored.metadata.namespace, stored.metadata.name)] = stored
        self.status_writes += 1
        self._notify(MODIFIED, stored)
        return stored.model_copy(deep=True)

    async def update_metadata(self, resource: SyncResource) -> SyncResource:
        await asyncio.sleep(0)
        key = (resource.metadata.namespace, resource.metadata.name)
        current = self._current(*key)
        if resource.metadata.resource_version != current.metadata.resource_version:
            self.conflicts += 1
            raise _conflict(resource, "update")

        stored = current.model_copy(deep=True)
        stored.metadata.labels = dict(resource.metadata.labels)
        stored.metadata.annotations = dict(resource.metadata.annotations)
        stored.metadata.finalizers = list(resource.metadata.finalizers)
        stored.metadata.resource_version = self._next_version()

        if stored.being_deleted and not stored.metadata.finalizers:
            del self._resources[key]
            self._notify(DELETED, stored)
        else:
            self._resources[key] = stored
            self._notify(MODIFIED, stored)
        return stored.model_copy(deep=True)

    async def delete(self, namespace: str, name: str) -> None:
        await asyncio.sleep(0)
        current = self._current(namespace, name)
        if current.metadata.finalizers:
            if current.metadata.deletion_timestamp is None:
                current.metadata.deletion_timestamp = datetime.now(timezone.utc)
                current.metadata.resource_version = self._next_version()
                self._notify(MODIFIED, current)
            return
        del self._resources[(namespace, name)]
        self._notify(DELETED, current)

    async def watch(self, namespace: Optional[str] = None) -> AsyncIterator[StoreEvent]:
        watcher = _Watcher(namespace=namespace, queue=asyncio.Queue(maxsize=self.watch_buffer_size))
        self._watchers.append(watcher)
        try:
            while True:
                if watcher.overflowed and watcher.queue.empty():
                    watcher.overflowed = False
                    for resource in self._snapshot(namespace):
                        yield StoreEvent(type=MODIFIED, resource=resource)
                    continue
                yield await watcher.queue.get()
        finally:
            self._watchers.remove(watcher)

    def _snapshot(self, namespace: Optional[str]) -> List[SyncResource]:
        return [
            resource.model_copy(deep=True)
            for (ns, _), resource in sorted(self._resources.items())
            if namespace is None or ns == namespace
        ]

    async def list_endpoints(self, namespace: str) -> List[ApiEndpoint]:
        await asyncio.sleep(0)
        return [
            endpoint.model_copy(deep=True)
            for (ns, _), endpoint in sorted(self._endpoints.items())
            if ns == namespace
        ]

    async def put_endpoint(self, endpoint: ApiEndpoint) -> ApiEndpoint:
        await asyncio.sleep(0)
        stored = endpoint.model_copy(deep=True)
        stored.metadata.resource_version = self._next_version()
        self._endpoints[(stored.metadata.namespace, stored.metadata.name)] = stored
        return stored.model_copy(deep=True)

    async def delete_endpoint(self, namespace: str, name: str) -> None:
        await asyncio.sleep(0)
        self._endpoints.pop((namespace, name), None)


def create_resource_store(url: str, cluster=None) -> ResourceStore:
    """
    Build a resource store from a URL.

    Args:
        url: memory://, sqlite:///path, postgresql://..., or kubernetes://
        cluster: KubernetesClusterClient, required for kubernetes://
    """
    scheme = url.split(":", 1)[0].lower()

    if scheme == "memory":
        return MemoryResourceStore()
    if scheme.startswith("sqlite") or scheme.startswith("postgresql"):
        from .sql_store import SqlResourceStore

        return SqlResourceStore(url)
    if scheme == "kubernetes":
        from .kube_store import KubernetesResourceStore

        if cluster is None:
            raise InternalError(
                "kubernetes resource store needs a Kubernetes cluster client",
                component="resources",
                operation="create_store",
            )
        return KubernetesResourceStore(cluster)

    raise InternalError(
        f"unsupported resource store URL: {url}", component="resources", operation="create_store"
    )
