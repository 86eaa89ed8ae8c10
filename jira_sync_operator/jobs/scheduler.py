"""
Job scheduler.

Turns a WorkUnitConfig into a cluster Job, and cluster Jobs back into
WorkUnitResults. The scheduler is the only component that translates cluster
state into results.

It never retries: cluster and network failures surface as typed errors so the
orchestrator and control loop can apply their retry policy. The one exception
is re-reading a Job after an optimistic-concurrency conflict during cancel,
which is a read-modify-write, not a retry of a failed call.

Status derivation:
1. Complete condition True  -> succeeded
2. Failed condition True    -> failed
3. status.active > 0        -> running
4. otherwise                -> pending
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import structlog

from ..clock import Clock, SystemClock
from ..cluster.base import ClusterClient, WatchEvent
from ..errors import ConflictError, NotFoundError, SyncTimeoutError, ValidationError
from . import job_id as job_ids
from .templates import TemplateCatalog
from .types import (
    JobFilter,
    JobKind,
    JobMonitor,
    JobStatus,
    QueueStatus,
    WorkUnitConfig,
    WorkUnitResult,
)
from .watch import DEFAULT_BUFFER_SIZE, JobWatch

logger = structlog.get_logger()

T = TypeVar("T")

APP_LABEL = "app"
APP_NAME = "jira-sync"
SYNC_TYPE_LABEL = "sync-type"
SYNC_ID_LABEL = "sync-id"
MANAGED_BY_LABEL = "managed-by"
MANAGED_BY = "jira-sync-scheduler"
JOB_NAME_LABEL = "job-name"

TARGET_ANNOTATION = "jira-sync/target"
REPOSITORY_ANNOTATION = "jira-sync/repository"
CREATED_ANNOTATION = "jira-sync/created"
TOTAL_ANNOTATION = "jira-sync/total-issues"
PROCESSED_ANNOTATION = "jira-sync/processed-issues"
SUCCESSFUL_ANNOTATION = "jira-sync/successful-issues"
FAILED_ANNOTATION = "jira-sync/failed-issues"
FILES_ANNOTATION = "jira-sync/processed-files"

CANCEL_CONFLICT_ATTEMPTS = 3

JOB_NAME_PREFIX = "jira-sync-"
# longer ids would be truncated into the 63-char Job name and could collide
MAX_JOB_ID_LENGTH = job_ids.MAX_NAME_LENGTH - len(JOB_NAME_PREFIX)


def job_name_for(job_id: str) -> str:
    """Cluster Job name for a work-unit identifier."""
    return job_ids.format_name(f"{JOB_NAME_PREFIX}{job_id}")


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _condition_true(status: Dict[str, Any], condition_type: str) -> Optional[Dict[str, Any]]:
    for condition in status.get("conditions") or []:
        if condition.get("type") == condition_type and condition.get("status") == "True":
            return condition
    return None


def derive_status(job: Dict[str, Any]) -> JobStatus:
    status = job.get("status") or {}
    if _condition_true(status, "Complete"):
        return JobStatus.SUCCEEDED
    if _condition_true(status, "Failed"):
        return JobStatus.FAILED
    if (status.get("active") or 0) > 0:
        return JobStatus.RUNNING
    return JobStatus.PENDING


def derive_message(job: Dict[str, Any]) -> str:
    status = job.get("status") or {}
    conditions = status.get("conditions") or []
    if conditions and conditions[0].get("message"):
        return conditions[0]["message"]
    active = status.get("active") or 0
    if active > 0:
        return f"Running with {active} active pods"
    return "Job pending"


def derive_progress(job: Dict[str, Any]) -> float:
    """succeeded / completions * 100, capped at 100."""
    completions = (job.get("spec") or {}).get("completions") or 1
    succeeded = (job.get("status") or {}).get("succeeded") or 0
    return min(100.0, succeeded / completions * 100.0)


def _int_annotation(annotations: Dict[str, str], key: str) -> Optional[int]:
    value = annotations.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def job_to_result(job: Dict[str, Any]) -> WorkUnitResult:
    """Translate a cluster Job object into a WorkUnitResult."""
    meta = job.get("metadata") or {}
    labels = meta.get("labels") or {}
    annotations = meta.get("annotations") or {}
    status = job.get("status") or {}

    kind = None
    if labels.get(SYNC_TYPE_LABEL) in {k.value for k in JobKind}:
        kind = JobKind(labels[SYNC_TYPE_LABEL])

    result_status = derive_status(job)
    start_time = parse_time(status.get("startTime"))
    completion_time = parse_time(status.get("completionTime"))
    duration = None
    if start_time and completion_time:
        duration = (completion_time - start_time).total_seconds()

    succeeded = status.get("succeeded") or 0
    failed = status.get("failed") or 0
    total = _int_annotation(annotations, TOTAL_ANNOTATION)
    processed = _int_annotation(annotations, PROCESSED_ANNOTATION)
    successful = _int_annotation(annotations, SUCCESSFUL_ANNOTATION)
    failed_issues = _int_annotation(annotations, FAILED_ANNOTATION)

    files = [f for f in annotations.get(FILES_ANNOTATION, "").split(",") if f]

    error_message = ""
    errors: List[str] = []
    failed_condition = _condition_true(status, "Failed")
    if failed_condition:
        error_message = failed_condition.get("message") or failed_condition.get("reason") or "job failed"
        errors.append(error_message)

    return WorkUnitResult(
        job_id=labels.get(SYNC_ID_LABEL, meta.get("name", "")),
        kind=kind,
        status=result_status,
        namespace=meta.get("namespace", ""),
        job_name=meta.get("name", ""),
        created=parse_time(meta.get("creationTimestamp")),
        start_time=start_time,
        completion_time=completion_time,
        duration_seconds=duration,
        total_issues=total if total is not None else succeeded + failed,
        processed_issues=processed if processed is not None else succeeded + failed,
        successful_issues=successful if successful is not None else succeeded,
        failed_issues=failed_issues if failed_issues is not None else failed,
        processed_files=files,
        message=derive_message(job),
        error_message=error_message,
        errors=errors,
    )


def build_args(config: WorkUnitConfig) -> List[str]:
    """Command-line arguments for the sync worker."""
    args = ["sync"]
    if config.kind == JobKind.JQL:
        args.append(f"--jql={config.target}")
    else:
        args.append(f"--issues={config.target}")
    args.append(f"--repo={config.repository}")
    if config.concurrency > 0:
        args.append(f"--concurrency={config.concurrency}")
    if config.rate_limit_ms > 0:
        args.append(f"--rate-limit={config.rate_limit_ms}ms")
    if config.incremental:
        args.append("--incremental")
    if config.force:
        args.append("--force")
    if config.dry_run:
        args.append("--dry-run")
    return args


def _set_env(container: Dict[str, Any], name: str, value: str) -> None:
    env = container.setdefault("env", [])
    for entry in env:
        if entry.get("name") == name:
            entry.pop("valueFrom", None)
            entry["value"] = value
            return
    env.append({"name": name, "value": value})


class JobScheduler:
    """Creates, observes and tears down sync work units on the cluster."""

    def __init__(
        self,
        cluster: ClusterClient,
        catalog: Optional[TemplateCatalog] = None,
        namespace: str = "jira-sync",
        image: str = "jira-sync:latest",
        log_level: str = "INFO",
        clock: Optional[Clock] = None,
        watch_buffer_size: int = DEFAULT_BUFFER_SIZE,
    ):
        self.cluster = cluster
        self.catalog = catalog or TemplateCatalog()
        self.namespace = namespace
        self.image = image
        self.log_level = log_level
        self.clock = clock or SystemClock()
        self.watch_buffer_size = watch_buffer_size

    async def _call(self, awaitable: Awaitable[T], timeout: Optional[float], operation: str, job_id: str = "") -> T:
        """Await a cluster call under the caller's deadline."""
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(
                f"{operation} did not finish within {timeout}s", timeout=timeout, job_id=job_id, cause=e
            )

    # ---- rendering -------------------------------------------------------

    def validate_config(self, config: WorkUnitConfig) -> None:
        for field_name in ("id", "target", "repository"):
            if not getattr(config, field_name):
                raise ValidationError(
                    f"{field_name} is required",
                    field=field_name,
                    code="MISSING_FIELD",
                    job_id=config.id,
                )
        job_ids.validate(config.id)
        if len(config.id) > MAX_JOB_ID_LENGTH:
            raise ValidationError(
                f"job id must be at most {MAX_JOB_ID_LENGTH} characters to form a unique job name",
                field="id",
                value=config.id,
                code="JOB_ID_TOO_LONG",
                job_id=config.id,
            )

    def render_job(self, config: WorkUnitConfig) -> Dict[str, Any]:
        """Render the Job manifest for a config (no cluster calls)."""
        self.validate_config(config)
        template = self.catalog.get_template(config.kind)
        manifest = template.manifest
        namespace = config.namespace or self.namespace
        created = config.created or self.clock.now()

        labels = {
            APP_LABEL: APP_NAME,
            SYNC_TYPE_LABEL: config.kind.value,
            SYNC_ID_LABEL: config.id,
            MANAGED_BY_LABEL: MANAGED_BY,
        }
        meta = manifest.setdefault("metadata", {})
        meta["name"] = job_name_for(config.id)
        meta["namespace"] = namespace
        meta.setdefault("labels", {}).update(labels)
        meta.setdefault("annotations", {}).update(
            {
                TARGET_ANNOTATION: config.target,
                REPOSITORY_ANNOTATION: config.repository,
                CREATED_ANNOTATION: created.isoformat(),
            }
        )

        spec = manifest["spec"]
        pod_meta = spec.setdefault("template", {}).setdefault("metadata", {})
        pod_meta.setdefault("labels", {}).update(labels)

        if config.parallelism is not None:
            spec["parallelism"] = config.parallelism
        if config.completions is not None:
            spec["completions"] = config.completions
        if config.timeout_seconds is not None:
            spec["activeDeadlineSeconds"] = config.timeout_seconds

        container = template.worker_container
        container["image"] = config.image or self.image
        container["args"] = build_args(config)

        if config.resources is not None and not config.resources.is_empty():
            resources = container.setdefault("resources", {})
            requests = resources.setdefault("requests", {})
            limits = resources.setdefault("limits", {})
            if config.resources.requests_cpu:
                requests["cpu"] = config.resources.requests_cpu
            if config.resources.requests_memory:
                requests["memory"] = config.resources.requests_memory
            if config.resources.limits_cpu:
                limits["cpu"] = config.resources.limits_cpu
            if config.resources.limits_memory:
                limits["memory"] = config.resources.limits_memory

        _set_env(container, "SYNC_JOB_ID", config.id)
        _set_env(container, "LOG_LEVEL", self.log_level)
        _set_env(container, "SPIKE_SAFE_MODE", "true" if config.safe_mode else "false")
        for name, value in sorted(config.environment.items()):
            _set_env(container, name, value)

        return manifest

    # ---- operations ------------------------------------------------------

    async def create_job(self, config: WorkUnitConfig, timeout: Optional[float] = None) -> WorkUnitResult:
        """Submit a work unit. Returns a pending result stamped with its start time."""
        manifest = self.render_job(config)
        namespace = manifest["metadata"]["namespace"]
        log = logger.bind(job_id=config.id, kind=config.kind.value, namespace=namespace)

        created = await self._call(
            self.cluster.create_job(namespace, manifest), timeout, "create job", config.id
        )
        log.info("job_created", job_name=created["metadata"]["name"])

        return WorkUnitResult(
            job_id=config.id,
            kind=config.kind,
            status=JobStatus.PENDING,
            namespace=namespace,
            job_name=created["metadata"]["name"],
            created=config.created,
            start_time=self.clock.now(),
            message="Job pending",
        )

    async def _get_job_object(
        self, job_id: str, namespace: Optional[str], timeout: Optional[float]
    ) -> Dict[str, Any]:
        return await self._call(
            self.cluster.get_job(namespace or self.namespace, job_name_for(job_id)),
            timeout,
            "get job",
            job_id,
        )

    async def get_job(
        self, job_id: str, namespace: Optional[str] = None, timeout: Optional[float] = None
    ) -> WorkUnitResult:
        """Current result for a work unit. Pure read."""
        job = await self._get_job_object(job_id, namespace, timeout)
        return job_to_result(job)

    async def list_jobs(
        self, job_filter: Optional[JobFilter] = None, timeout: Optional[float] = None
    ) -> List[WorkUnitResult]:
        """List tracked work units matching a filter, oldest first."""
        job_filter = job_filter or JobFilter()
        namespace = job_filter.namespace or self.namespace
        jobs = await self._call(
            self.cluster.list_jobs(namespace, {APP_LABEL: APP_NAME}), timeout, "list jobs"
        )
        results = [r for r in (job_to_result(j) for j in jobs) if job_filter.matches(r)]
        results.sort(key=lambda r: (r.created or datetime.min.replace(tzinfo=timezone.utc), r.job_id))

        if job_filter.offset:
            results = results[job_filter.offset:]
        if job_filter.limit:
            results = results[: job_filter.limit]
        return results

    async def cancel_job(
        self, job_id: str, namespace: Optional[str] = None, timeout: Optional[float] = None
    ) -> None:
        """
        Stop a work unit: no new pods, running pods removed.

        Best-effort; callers should watch or poll for the resulting status.
        """
        namespace = namespace or self.namespace
        name = job_name_for(job_id)
        log = logger.bind(job_id=job_id, namespace=namespace)

        for attempt in range(1, CANCEL_CONFLICT_ATTEMPTS + 1):
            job = await self._call(self.cluster.get_job(namespace, name), timeout, "get job", job_id)
            job.setdefault("spec", {})["parallelism"] = 0
            try:
                await self._call(self.cluster.update_job(namespace, job), timeout, "update job", job_id)
                break
            except ConflictError:
                if attempt == CANCEL_CONFLICT_ATTEMPTS:
                    raise
                log.info("job_cancel_conflict", attempt=attempt)

        pods = await self._call(
            self.cluster.list_pods(namespace, {JOB_NAME_LABEL: name}), timeout, "list pods", job_id
        )
        for pod in pods:
            pod_name = pod["metadata"]["name"]
            try:
                await self._call(self.cluster.delete_pod(namespace, pod_name), timeout, "delete pod", job_id)
            except NotFoundError:
                log.debug("pod_already_gone", pod=pod_name)

        log.info("job_cancelled", pods_deleted=len(pods))

    async def delete_job(
        self, job_id: str, namespace: Optional[str] = None, timeout: Optional[float] = None
    ) -> None:
        """Delete a work unit and, in the foreground, its pods."""
        namespace = namespace or self.namespace
        await self._call(
            self.cluster.delete_job(namespace, job_name_for(job_id), propagation="Foreground"),
            timeout,
            "delete job",
            job_id,
        )
        logger.info("job_deleted", job_id=job_id, namespace=namespace)

    def _monitor(self, job_id: str, event: WatchEvent) -> JobMonitor:
        return JobMonitor(
            job_id=job_id,
            status=derive_status(event.object),
            progress=derive_progress(event.object),
            message=derive_message(event.object),
            timestamp=self.clock.now(),
        )

    def watch_job(
        self,
        job_id: str,
        namespace: Optional[str] = None,
        timeout: Optional[float] = None,
        until_terminal: bool = False,
    ) -> JobWatch:
        """
        Stream JobMonitor events for one work unit.

        Must be called from a running event loop. Iterate the returned watch;
        it ends when the job is deleted, the timeout passes or cancel() is
        called.
        """
        job_ids.validate(job_id)
        namespace = namespace or self.namespace
        events = self.cluster.watch_jobs(namespace, job_name_for(job_id))
        watch = JobWatch(
            job_id,
            events,
            lambda event: self._monitor(job_id, event),
            buffer_size=self.watch_buffer_size,
            until_terminal=until_terminal,
        )
        return watch.start(timeout=timeout)

    async def get_job_logs(
        self, job_id: str, namespace: Optional[str] = None, timeout: Optional[float] = None
    ) -> str:
        """Logs of the first execution unit of a work unit."""
        namespace = namespace or self.namespace
        name = job_name_for(job_id)
        pods = await self._call(
            self.cluster.list_pods(namespace, {JOB_NAME_LABEL: name}), timeout, "list pods", job_id
        )
        if not pods:
            raise NotFoundError(
                f"no pods found for job {job_id}", operation="logs", resource=f"jobs/{name}", job_id=job_id
            )
        pod = pods[0]
        containers = (pod.get("spec") or {}).get("containers") or []
        container = containers[0].get("name") if containers else None
        return await self._call(
            self.cluster.read_pod_log(namespace, pod["metadata"]["name"], container),
            timeout,
            "read pod log",
            job_id,
        )

    async def get_queue_status(
        self, namespace: Optional[str] = None, timeout: Optional[float] = None
    ) -> QueueStatus:
        """Counts of tracked work units by status."""
        results = await self.list_jobs(JobFilter(namespace=namespace), timeout=timeout)
        counts = QueueStatus(total=len(results))
        for result in results:
            field_name = result.status.value
            setattr(counts, field_name, getattr(counts, field_name) + 1)
        return counts
