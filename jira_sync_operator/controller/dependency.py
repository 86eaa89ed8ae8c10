"""
API endpoint dependency gate.

A sync dispatched through the API server waits until an APIServer resource
in its namespace reports phase Running with a Ready=True condition. Syncs
labelled sync.jira.io/dispatch=direct skip the gate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..resources import conditions
from ..resources.models import DISPATCH_DIRECT, DISPATCH_LABEL, SyncResource
from ..resources.store import ResourceStore

DISPATCH_API = "api"


@dataclass
class GateResult:
    ready: bool
    reason: str
    message: str
    endpoint: Optional[str] = None


class DependencyGate:
    """Checks whether a sync's API endpoint dependency is satisfied."""

    def __init__(self, store: ResourceStore, required_by_default: bool = True):
        self.store = store
        self.required_by_default = required_by_default

    def required(self, resource: SyncResource) -> bool:
        dispatch = resource.spec.labels.get(DISPATCH_LABEL)
        if dispatch == DISPATCH_DIRECT:
            return False
        if dispatch == DISPATCH_API:
            return True
        return self.required_by_default

    async def check(self, resource: SyncResource) -> GateResult:
        if not self.required(resource):
            return GateResult(True, conditions.REASON_API_SERVER_READY, "direct dispatch, no APIServer needed")

        namespace = resource.metadata.namespace
        endpoints = await self.store.list_endpoints(namespace)
        if not endpoints:
            return GateResult(
                False,
                conditions.REASON_NO_API_SERVER,
                f"No APIServer resource found in namespace {namespace}",
            )

        for endpoint in endpoints:
            if endpoint.is_ready():
                url = endpoint.status.endpoint or (
                    f"http://{endpoint.metadata.name}.{namespace}.svc.cluster.local:8080"
                )
                return GateResult(
                    True,
                    conditions.REASON_API_SERVER_READY,
                    f"APIServer {endpoint.metadata.name} is ready",
                    endpoint=url,
                )

        names = ", ".join(e.metadata.name for e in endpoints)
        return GateResult(
            False,
            conditions.REASON_WAITING,
            f"Waiting for APIServer to become ready: {names}",
        )
