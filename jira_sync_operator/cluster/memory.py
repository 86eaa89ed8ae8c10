"""
In-memory cluster.

A small stand-in for the Kubernetes API used by tests, local development
and the `memory` cluster backend. It keeps versioned Job and Pod objects,
fans out watch events, and offers simulation helpers (spawn_pods,
complete_job, fail_job) that play the part of the cluster's job controller.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..errors import ConflictError, NotFoundError, SyncError
from .base import ADDED, DELETED, MODIFIED, ClusterClient, WatchEvent, matches_labels

logger = logging.getLogger(__name__)

Key = Tuple[str, str]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class InMemoryCluster(ClusterClient):
    """Versioned in-process Job/Pod store with watch support."""

    def __init__(self):
        self._jobs: Dict[Key, Dict[str, Any]] = {}
        self._pods: Dict[Key, Dict[str, Any]] = {}
        self._logs: Dict[Key, str] = {}
        self._version = 0
        self._watchers: List[Tuple[str, str, asyncio.Queue]] = []
        self._faults: Dict[str, List[SyncError]] = {}
        self.calls: List[Tuple[str, str, str]] = []

    # ---- fault injection -------------------------------------------------

    def inject_error(self, operation: str, error: SyncError, times: int = 1) -> None:
        """Make the next `times` calls of `operation` raise `error`."""
        self._faults.setdefault(operation, []).extend([error] * times)

    def _check_fault(self, operation: str) -> None:
        faults = self._faults.get(operation)
        if faults:
            raise faults.pop(0)

    # ---- internals -------------------------------------------------------

    def _bump(self, obj: Dict[str, Any]) -> None:
        self._version += 1
        obj.setdefault("metadata", {})["resourceVersion"] = str(self._version)

    def _notify(self, event_type: str, job: Dict[str, Any]) -> None:
        meta = job["metadata"]
        for namespace, name, queue in list(self._watchers):
            if namespace == meta["namespace"] and name == meta["name"]:
                queue.put_nowait(WatchEvent(type=event_type, object=copy.deepcopy(job)))

    def _job(self, namespace: str, name: str) -> Dict[str, Any]:
        job = self._jobs.get((namespace, name))
        if job is None:
            raise NotFoundError(
                f'jobs.batch "{name}" not found', operation="get", resource=f"jobs/{name}"
            )
        return job

    def _job_pods(self, namespace: str, name: str) -> List[Dict[str, Any]]:
        return [
            pod
            for (ns, _), pod in self._pods.items()
            if ns == namespace and pod["metadata"]["labels"].get("job-name") == name
        ]

    def _refresh_active(self, job: Dict[str, Any]) -> None:
        meta = job["metadata"]
        running = [
            pod
            for pod in self._job_pods(meta["namespace"], meta["name"])
            if pod["status"]["phase"] == "Running"
        ]
        job.setdefault("status", {})["active"] = len(running)

    # ---- ClusterClient ---------------------------------------------------

    async def create_job(self, namespace: str, manifest: Dict[str, Any]) -> Dict[str, Any]:
        await asyncio.sleep(0)
        self.calls.append(("create_job", namespace, manifest["metadata"]["name"]))
        self._check_fault("create_job")

        name = manifest["metadata"]["name"]
        if (namespace, name) in self._jobs:
            raise ConflictError(
                f'jobs.batch "{name}" already exists', operation="create", resource=f"jobs/{name}"
            )

        job = copy.deepcopy(manifest)
        meta = job.setdefault("metadata", {})
        meta["namespace"] = namespace
        meta.setdefault("creationTimestamp", _now())
        meta.setdefault("uid", f"uid-{self._version + 1}")
        job.setdefault("status", {})
        self._bump(job)
        self._jobs[(namespace, name)] = job
        self._notify(ADDED, job)
        return copy.deepcopy(job)

    async def get_job(self, namespace: str, name: str) -> Dict[str, Any]:
        await asyncio.sleep(0)
        self._check_fault("get_job")
        return copy.deepcopy(self._job(namespace, name))

    async def list_jobs(
        self, namespace: Optional[str], label_selector: Optional[Dict[str, str]] = None
    ) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        self._check_fault("list_jobs")
        return [
            copy.deepcopy(job)
            for (ns, _), job in sorted(self._jobs.items())
            if (namespace is None or ns == namespace) and matches_labels(job, label_selector)
        ]

    async def update_job(self, namespace: str, manifest: Dict[str, Any]) -> Dict[str, Any]:
        await asyncio.sleep(0)
        name = manifest["metadata"]["name"]
        self.calls.append(("update_job", namespace, name))
        self._check_fault("update_job")

        current = self._job(namespace, name)
        expected = manifest["metadata"].get("resourceVersion")
        if expected and expected != current["metadata"]["resourceVersion"]:
            raise ConflictError(
                f'operation cannot be fulfilled on jobs.batch "{name}": '
                "the object has been modified",
                operation="update",
                resource=f"jobs/{name}",
            )

        job = copy.deepcopy(manifest)
        # status is owned by the job controller, not by updates
        job["status"] = current.get("status", {})
        job["metadata"]["namespace"] = namespace
        self._bump(job)
        self._jobs[(namespace, name)] = job
        self._notify(MODIFIED, job)
        return copy.deepcopy(job)

    async def delete_job(
        self, namespace: str, name: str, propagation: str = "Foreground"
    ) -> None:
        await asyncio.sleep(0)
        self.calls.append(("delete_job", namespace, name))
        self._check_fault("delete_job")

        job = self._job(namespace, name)
        if propagation in ("Foreground", "Background"):
            for pod in self._job_pods(namespace, name):
                self._pods.pop((namespace, pod["metadata"]["name"]), None)
        del self._jobs[(namespace, name)]
        self._bump(job)
        self._notify(DELETED, job)

    async def watch_jobs(self, namespace: str, name: str) -> AsyncIterator[WatchEvent]:
        self._check_fault("watch_jobs")
        queue: asyncio.Queue = asyncio.Queue()
        entry = (namespace, name, queue)
        self._watchers.append(entry)
        try:
            job = self._jobs.get((namespace, name))
            if job is not None:
                yield WatchEvent(type=ADDED, object=copy.deepcopy(job))
            while True:
                event = await queue.get()
                yield event
        finally:
            self._watchers.remove(entry)

    async def list_pods(
        self, namespace: str, label_selector: Optional[Dict[str, str]] = None
    ) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        self._check_fault("list_pods")
        return [
            copy.deepcopy(pod)
            for (ns, _), pod in sorted(self._pods.items())
            if ns == namespace and matches_labels(pod, label_selector)
        ]

    async def delete_pod(self, namespace: str, name: str) -> None:
        await asyncio.sleep(0)
        self.calls.append(("delete_pod", namespace, name))
        pod = self._pods.pop((namespace, name), None)
        if pod is None:
            raise NotFoundError(f'pods "{name}" not found', operation="delete", resource=f"pods/{name}")
        job = self._jobs.get((namespace, pod["metadata"]["labels"].get("job-name", "")))
        if job is not None:
            self._refresh_active(job)
            self._bump(job)
            self._notify(MODIFIED, job)

    async def read_pod_log(self, namespace: str, name: str, container: Optional[str] = None) -> str:
        await asyncio.sleep(0)
        if (namespace, name) not in self._pods:
            raise NotFoundError(f'pods "{name}" not found', operation="logs", resource=f"pods/{name}")
        return self._logs.get((namespace, name), "")

    # ---- job-controller simulation ----------------------------------------

    def spawn_pods(self, namespace: str, job_name: str) -> List[str]:
        """
        Start execution units for a Job up to its desired parallelism.

        Returns the names of newly created pods. A Job whose parallelism is 0
        (cancelled) or that already finished gets none.
        """
        job = self._job(namespace, job_name)
        spec = job.get("spec", {})
        status = job.setdefault("status", {})
        if any(c.get("status") == "True" for c in status.get("conditions", [])):
            return []

        desired = spec.get("parallelism", 1)
        running = [p for p in self._job_pods(namespace, job_name) if p["status"]["phase"] == "Running"]
        created = []
        for _ in range(max(0, desired - len(running))):
            index = len(self._job_pods(namespace, job_name))
            pod_name = f"{job_name}-{index:05d}"
            while (namespace, pod_name) in self._pods:
                index += 1
                pod_name = f"{job_name}-{index:05d}"
            self._pods[(namespace, pod_name)] = {
                "metadata": {
                    "name": pod_name,
                    "namespace": namespace,
                    "labels": {"job-name": job_name},
                },
                "status": {"phase": "Running"},
            }
            created.append(pod_name)

        if created:
            status.setdefault("startTime", _now())
            self._refresh_active(job)
            self._bump(job)
            self._notify(MODIFIED, job)
        return created

    def set_pod_log(self, namespace: str, pod_name: str, text: str) -> None:
        self._logs[(namespace, pod_name)] = text

    def annotate_job(self, namespace: str, job_name: str, annotations: Dict[str, str]) -> None:
        """Record worker-reported progress on the Job."""
        job = self._job(namespace, job_name)
        job["metadata"].setdefault("annotations", {}).update(annotations)
        self._bump(job)
        self._notify(MODIFIED, job)

    def complete_job(self, namespace: str, job_name: str, succeeded: int = 1) -> None:
        self._finish(namespace, job_name, "Complete", "Succeeded", succeeded=succeeded)

    def fail_job(self, namespace: str, job_name: str, message: str = "BackoffLimitExceeded") -> None:
        self._finish(namespace, job_name, "Failed", "Failed", failed=1, message=message)

    def _finish(
        self,
        namespace: str,
        job_name: str,
        condition: str,
        pod_phase: str,
        succeeded: int = 0,
        failed: int = 0,
        message: str = "",
    ) -> None:
        job = self._job(namespace, job_name)
        for pod in self._job_pods(namespace, job_name):
            pod["status"]["phase"] = pod_phase
        status = job.setdefault("status", {})
        now = _now()
        status.setdefault("startTime", now)
        if condition == "Complete":
            status["completionTime"] = now
        status["succeeded"] = status.get("succeeded", 0) + succeeded
        status["failed"] = status.get("failed", 0) + failed
        status.setdefault("conditions", []).append(
            {
                "type": condition,
                "status": "True",
                "message": message,
                "lastTransitionTime": now,
            }
        )
        self._refresh_active(job)
        self._bump(job)
        self._notify(MODIFIED, job)
