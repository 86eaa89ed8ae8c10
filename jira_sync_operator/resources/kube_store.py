"""
Resource store backed by Kubernetes custom objects.

JIRASync resources live under sync.jira.io/v1alpha1 with a /status
subresource; the API server enforces resourceVersion on status PUTs and
answers 409 on stale writes, which the REST client maps to ConflictError.
"""

from __future__ import annotations

from typing import AsyncIterator, List, Optional

from ..cluster.kubernetes import KubernetesClusterClient
from ..errors import NotFoundError
from .models import ENDPOINT_PLURAL, GROUP, SYNC_PLURAL, VERSION, ApiEndpoint, SyncResource
from .store import ResourceStore, StoreEvent


class KubernetesResourceStore(ResourceStore):
    """ResourceStore on the Kubernetes custom-objects API."""

    def __init__(self, client: KubernetesClusterClient):
        self.client = client

    async def create(self, resource: SyncResource) -> SyncResource:
        body = resource.to_wire()
        body["metadata"].pop("resourceVersion", None)
        body.pop("status", None)
        created = await self.client.create_custom_object(
            GROUP, VERSION, resource.metadata.namespace, SYNC_PLURAL, body
        )
        return SyncResource.from_wire(created)

    async def get(self, namespace: str, name: str) -> SyncResource:
        data = await self.client.get_custom_object(GROUP, VERSION, namespace, SYNC_PLURAL, name)
        return SyncResource.from_wire(data)

    async def list(self, namespace: Optional[str] = None) -> List[SyncResource]:
        items = await self.client.list_custom_objects(GROUP, VERSION, namespace, SYNC_PLURAL)
        return [SyncResource.from_wire(item) for item in items]

    async def update_status(self, resource: SyncResource) -> SyncResource:
        data = await self.client.replace_custom_object_status(
            GROUP,
            VERSION,
            resource.metadata.namespace,
            SYNC_PLURAL,
            resource.metadata.name,
            resource.to_wire(),
        )
        return SyncResource.from_wire(data)

    async def update_metadata(self, resource: SyncResource) -> SyncResource:
        data = await self.client.replace_custom_object(
            GROUP,
            VERSION,
            resource.metadata.namespace,
            SYNC_PLURAL,
            resource.metadata.name,
            resource.to_wire(),
        )
        return SyncResource.from_wire(data)

    async def delete(self, namespace: str, name: str) -> None:
        await self.client.delete_custom_object(GROUP, VERSION, namespace, SYNC_PLURAL, name)

    async def watch(self, namespace: Optional[str] = None) -> AsyncIterator[StoreEvent]:
        async for event in self.client.watch_custom_objects(GROUP, VERSION, namespace, SYNC_PLURAL):
            yield StoreEvent(type=event.type, resource=SyncResource.from_wire(event.object))

    async def list_endpoints(self, namespace: str) -> List[ApiEndpoint]:
        items = await self.client.list_custom_objects(GROUP, VERSION, namespace, ENDPOINT_PLURAL)
        return [ApiEndpoint.from_wire(item) for item in items]

    async def put_endpoint(self, endpoint: ApiEndpoint) -> ApiEndpoint:
        namespace = endpoint.metadata.namespace
        name = endpoint.metadata.name
        try:
            current = await self.client.get_custom_object(GROUP, VERSION, namespace, ENDPOINT_PLURAL, name)
        except NotFoundError:
            body = endpoint.to_wire()
            body["metadata"].pop("resourceVersion", None)
            created = await self.client.create_custom_object(GROUP, VERSION, namespace, ENDPOINT_PLURAL, body)
            return ApiEndpoint.from_wire(created)

        body = endpoint.to_wire()
        body["metadata"]["resourceVersion"] = current["metadata"]["resourceVersion"]
        updated = await self.client.replace_custom_object_status(
            GROUP, VERSION, namespace, ENDPOINT_PLURAL, name, body
        )
        return ApiEndpoint.from_wire(updated)

    async def close(self) -> None:
        await self.client.close()
