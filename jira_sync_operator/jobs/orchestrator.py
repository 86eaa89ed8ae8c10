"""
Sync job orchestrator.

Validates sync intents (single issue, issue batch, JQL query), turns them
into WorkUnitConfigs and hands them to the scheduler. When no cluster is
available, execute_local_sync runs the same sync in-process through the
SyncPipeline collaborator.

Request rules:
- issue key / issue keys / query and repository are required
- incremental and force are mutually exclusive
- batch and query concurrency must be in [0, 10]
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from .. import COMPONENT, __version__
from ..clock import Clock, SystemClock
from ..errors import InternalError, SyncError, SyncTimeoutError, ValidationError
from . import job_id as job_ids
from .pipeline import IncrementalOptions, LocalSyncRequest, SyncOutcome, SyncPipeline
from .scheduler import JobScheduler
from .types import (
    HealthStatus,
    JobFilter,
    JobKind,
    JobStatus,
    QueueStatus,
    ResourceRequirements,
    WorkUnitConfig,
    WorkUnitResult,
)
from .watch import JobWatch

logger = structlog.get_logger()

DEFAULT_NAMESPACE = "jira-sync"
DEFAULT_IMAGE = "jira-sync:latest"
DEFAULT_TIMEOUT_SECONDS = 1800
DEFAULT_RATE_LIMIT_MS = 500
DEFAULT_CONCURRENCY = 5
MAX_CONCURRENCY = 10
MAX_BATCH_SIZE = 100


class SingleIssueSyncRequest(BaseModel):
    issue_key: str = ""
    repository: str = ""
    rate_limit_ms: int = 0
    incremental: bool = False
    force: bool = False
    dry_run: bool = False
    safe_mode: bool = False
    resources: Optional[ResourceRequirements] = None
    timeout_seconds: Optional[int] = None
    environment: Dict[str, str] = Field(default_factory=dict)


class BatchSyncRequest(BaseModel):
    issue_keys: List[str] = Field(default_factory=list)
    repository: str = ""
    concurrency: int = 0
    rate_limit_ms: int = 0
    incremental: bool = False
    force: bool = False
    dry_run: bool = False
    safe_mode: bool = False
    parallelism: Optional[int] = None
    resources: Optional[ResourceRequirements] = None
    timeout_seconds: Optional[int] = None
    environment: Dict[str, str] = Field(default_factory=dict)


class JQLSyncRequest(BaseModel):
    jql: str = ""
    repository: str = ""
    concurrency: int = 0
    rate_limit_ms: int = 0
    incremental: bool = False
    force: bool = False
    dry_run: bool = False
    safe_mode: bool = False
    parallelism: Optional[int] = None
    resources: Optional[ResourceRequirements] = None
    timeout_seconds: Optional[int] = None
    environment: Dict[str, str] = Field(default_factory=dict)


class JobConfiguration(BaseModel):
    """Deployment-level defaults for submitted jobs."""

    namespace: str = DEFAULT_NAMESPACE
    image: str = DEFAULT_IMAGE
    default_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    default_concurrency: int = DEFAULT_CONCURRENCY
    max_concurrency: int = MAX_CONCURRENCY
    rate_limit_ms: int = DEFAULT_RATE_LIMIT_MS


def validate_configuration(config: JobConfiguration) -> None:
    if not config.namespace:
        raise ValidationError("namespace cannot be empty", field="namespace", code="INVALID_CONFIGURATION")
    if not config.image:
        raise ValidationError("image cannot be empty", field="image", code="INVALID_CONFIGURATION")
    if config.default_timeout_seconds <= 0:
        raise ValidationError(
            "default timeout must be positive",
            field="default_timeout_seconds",
            value=config.default_timeout_seconds,
            code="INVALID_CONFIGURATION",
        )
    if not 1 <= config.default_concurrency <= config.max_concurrency:
        raise ValidationError(
            f"default concurrency must be between 1 and {config.max_concurrency}",
            field="default_concurrency",
            value=config.default_concurrency,
            code="INVALID_CONFIGURATION",
        )
    if config.max_concurrency > MAX_CONCURRENCY:
        raise ValidationError(
            f"max concurrency cannot exceed {MAX_CONCURRENCY}",
            field="max_concurrency",
            value=config.max_concurrency,
            code="INVALID_CONFIGURATION",
        )


def _require(value: Any, field: str, message: str) -> None:
    if not value:
        raise ValidationError(message, field=field, code="MISSING_FIELD")


def _check_flags(incremental: bool, force: bool) -> None:
    if incremental and force:
        raise ValidationError(
            "incremental and force options are mutually exclusive",
            field="force",
            code="CONFLICTING_OPTIONS",
        )


def _check_concurrency(concurrency: int) -> None:
    if concurrency < 0 or concurrency > MAX_CONCURRENCY:
        raise ValidationError(
            f"concurrency must be between 0 and {MAX_CONCURRENCY}",
            field="concurrency",
            value=concurrency,
            code="INVALID_CONCURRENCY",
        )


def validate_single_request(request: SingleIssueSyncRequest) -> None:
    _require(request.issue_key.strip(), "issue_key", "issue key is required")
    _require(request.repository.strip(), "repository", "repository is required")
    _check_flags(request.incremental, request.force)


def validate_batch_request(request: BatchSyncRequest) -> None:
    keys = [k for k in request.issue_keys if k.strip()]
    _require(keys, "issue_keys", "at least one issue key is required")
    if len(keys) > MAX_BATCH_SIZE:
        raise ValidationError(
            f"batch size cannot exceed {MAX_BATCH_SIZE} issues",
            field="issue_keys",
            value=len(keys),
            code="BATCH_TOO_LARGE",
        )
    _require(request.repository.strip(), "repository", "repository is required")
    _check_flags(request.incremental, request.force)
    _check_concurrency(request.concurrency)


def validate_jql_request(request: JQLSyncRequest) -> None:
    _require(request.jql.strip(), "jql", "JQL query is required")
    _require(request.repository.strip(), "repository", "repository is required")
    _check_flags(request.incremental, request.force)
    _check_concurrency(request.concurrency)


class SyncJobOrchestrator:
    """Front door for submitting and managing sync jobs."""

    def __init__(
        self,
        scheduler: JobScheduler,
        pipeline: Optional[SyncPipeline] = None,
        configuration: Optional[JobConfiguration] = None,
        clock: Optional[Clock] = None,
    ):
        self.scheduler = scheduler
        self.pipeline = pipeline
        self.configuration = configuration or JobConfiguration(
            namespace=scheduler.namespace, image=scheduler.image
        )
        validate_configuration(self.configuration)
        self.clock = clock or SystemClock()

    def _config(
        self, kind: JobKind, name: str, target: str, request: Any, job_id: Optional[str] = None, **extra: Any
    ) -> WorkUnitConfig:
        if job_id is not None:
            job_ids.validate(job_id)
        return WorkUnitConfig(
            id=job_id or job_ids.generate_with_kind(kind.value, now=self.clock.now()),
            kind=kind,
            name=name,
            created=self.clock.now(),
            target=target,
            repository=request.repository.strip(),
            rate_limit_ms=request.rate_limit_ms,
            incremental=request.incremental,
            force=request.force,
            dry_run=request.dry_run,
            safe_mode=request.safe_mode,
            namespace=self.configuration.namespace,
            image=self.configuration.image,
            resources=request.resources,
            timeout_seconds=request.timeout_seconds,
            environment=dict(request.environment),
            **extra,
        )

    async def _submit(self, config: WorkUnitConfig, timeout: Optional[float]) -> WorkUnitResult:
        log = logger.bind(job_id=config.id, kind=config.kind.value)
        try:
            result = await self.scheduler.create_job(config, timeout=timeout)
        except SyncError as e:
            log.warning("job_submit_failed", error_type=e.kind.value, error=e.message)
            raise
        log.info("job_submitted", name=config.name)
        return result

    def build_single_config(
        self, request: SingleIssueSyncRequest, job_id: Optional[str] = None
    ) -> WorkUnitConfig:
        validate_single_request(request)
        key = request.issue_key.strip()
        return self._config(
            JobKind.SINGLE,
            f"Single Issue Sync: {key}",
            key,
            request,
            job_id=job_id,
            batch_size=1,
            concurrency=1,
        )

    def build_batch_config(self, request: BatchSyncRequest, job_id: Optional[str] = None) -> WorkUnitConfig:
        validate_batch_request(request)
        keys = [k.strip() for k in request.issue_keys if k.strip()]
        return self._config(
            JobKind.BATCH,
            f"Batch Sync: {len(keys)} issues",
            ",".join(keys),
            request,
            job_id=job_id,
            batch_size=len(keys),
            concurrency=request.concurrency,
            parallelism=request.parallelism,
        )

    def build_jql_config(self, request: JQLSyncRequest, job_id: Optional[str] = None) -> WorkUnitConfig:
        validate_jql_request(request)
        query = request.jql.strip()
        return self._config(
            JobKind.JQL,
            f"JQL Sync: {query}",
            query,
            request,
            job_id=job_id,
            concurrency=request.concurrency,
            parallelism=request.parallelism,
        )

    async def submit_config(self, config: WorkUnitConfig, timeout: Optional[float] = None) -> WorkUnitResult:
        """Submit a config built earlier by one of the build_*_config methods."""
        return await self._submit(config, timeout)

    async def submit_single_issue_sync(
        self, request: SingleIssueSyncRequest, timeout: Optional[float] = None
    ) -> WorkUnitResult:
        return await self._submit(self.build_single_config(request), timeout)

    async def submit_batch_sync(
        self, request: BatchSyncRequest, timeout: Optional[float] = None
    ) -> WorkUnitResult:
        return await self._submit(self.build_batch_config(request), timeout)

    async def submit_jql_sync(
        self, request: JQLSyncRequest, timeout: Optional[float] = None
    ) -> WorkUnitResult:
        return await self._submit(self.build_jql_config(request), timeout)

    # ---- pass-throughs with identifier validation ------------------------

    async def get_job(self, job_id: str, timeout: Optional[float] = None) -> WorkUnitResult:
        job_ids.validate(job_id)
        return await self.scheduler.get_job(job_id, timeout=timeout)

    async def list_jobs(
        self, job_filter: Optional[JobFilter] = None, timeout: Optional[float] = None
    ) -> List[WorkUnitResult]:
        return await self.scheduler.list_jobs(job_filter, timeout=timeout)

    async def cancel_job(self, job_id: str, timeout: Optional[float] = None) -> None:
        job_ids.validate(job_id)
        await self.scheduler.cancel_job(job_id, timeout=timeout)

    async def delete_job(self, job_id: str, timeout: Optional[float] = None) -> None:
        job_ids.validate(job_id)
        await self.scheduler.delete_job(job_id, timeout=timeout)

    def watch_job(self, job_id: str, timeout: Optional[float] = None, until_terminal: bool = False) -> JobWatch:
        job_ids.validate(job_id)
        return self.scheduler.watch_job(job_id, timeout=timeout, until_terminal=until_terminal)

    async def get_job_logs(self, job_id: str, timeout: Optional[float] = None) -> str:
        job_ids.validate(job_id)
        return await self.scheduler.get_job_logs(job_id, timeout=timeout)

    async def get_queue_status(self, timeout: Optional[float] = None) -> QueueStatus:
        return await self.scheduler.get_queue_status(timeout=timeout)

    # ---- local fallback --------------------------------------------------

    async def execute_local_sync(
        self, request: LocalSyncRequest, timeout: Optional[float] = None
    ) -> WorkUnitResult:
        """
        Run a sync in-process, blocking the caller until it finishes.

        Uses the incremental engine when incremental, force or dry-run is set,
        otherwise the plain batch engine. JQL wins over issue keys when both
        are given.
        """
        if self.pipeline is None:
            raise InternalError(
                "no sync pipeline configured for local execution",
                component="orchestrator",
                operation="execute_local_sync",
            )
        jql = request.jql.strip()
        _require(jql or request.issue_keys, "target", "issue keys or JQL query is required")
        _require(request.repository.strip(), "repository", "repository is required")
        _check_flags(request.incremental, request.force)
        _check_concurrency(request.concurrency)

        kind = JobKind.JQL if jql else JobKind.BATCH
        job_id = job_ids.generate_with_kind(f"local-{kind.value}", now=self.clock.now())
        log = logger.bind(job_id=job_id, kind=kind.value)
        started = self.clock.now()
        started_mono = self.clock.monotonic()

        try:
            outcome = await asyncio.wait_for(self._run_pipeline(request, jql), timeout)
        except asyncio.TimeoutError as e:
            log.warning("local_sync_timeout", timeout=timeout)
            raise SyncTimeoutError(
                "local sync exceeded its deadline",
                timeout=timeout,
                elapsed=self.clock.monotonic() - started_mono,
                job_id=job_id,
                cause=e,
            )

        completed = self.clock.now()
        log.info(
            "local_sync_finished",
            processed=outcome.processed_issues,
            failed=outcome.failed_issues,
        )
        return WorkUnitResult(
            job_id=job_id,
            kind=kind,
            status=JobStatus.SUCCEEDED if outcome.failed_issues == 0 else JobStatus.FAILED,
            start_time=started,
            completion_time=completed,
            duration_seconds=outcome.duration_seconds
            if outcome.duration_seconds is not None
            else (completed - started).total_seconds(),
            total_issues=outcome.total_issues,
            processed_issues=outcome.processed_issues,
            successful_issues=outcome.successful_issues,
            failed_issues=outcome.failed_issues,
            processed_files=list(outcome.processed_files),
            errors=list(outcome.errors),
            error_message="; ".join(outcome.errors),
        )

    async def _run_pipeline(self, request: LocalSyncRequest, jql: str) -> SyncOutcome:
        repository = request.repository.strip()
        if request.incremental or request.force or request.dry_run:
            options = IncrementalOptions(
                force=request.force,
                dry_run=request.dry_run,
                include_new=True,
                include_modified=True,
            )
            if jql:
                return await self.pipeline.sync_jql_incremental(jql, repository, options)
            return await self.pipeline.sync_issues_incremental(request.issue_keys, repository, options)

        if jql:
            return await self.pipeline.sync_jql(
                jql, repository, request.concurrency, request.rate_limit_ms
            )
        return await self.pipeline.sync_issues(
            request.issue_keys, repository, request.concurrency, request.rate_limit_ms
        )

    # ---- system info -----------------------------------------------------

    async def health(self, timeout: Optional[float] = 5.0) -> HealthStatus:
        try:
            queue = await self.scheduler.get_queue_status(timeout=timeout)
        except SyncError as e:
            return HealthStatus(
                healthy=False,
                message=f"cluster unavailable: {e.message}",
                checked_at=self.clock.now(),
                details={"error_type": e.kind.value},
            )
        return HealthStatus(
            healthy=True,
            message="Job scheduler is operational",
            checked_at=self.clock.now(),
            details={"tracked_jobs": str(queue.total)},
        )

    async def system_info(self) -> Dict[str, Any]:
        health = await self.health()
        return {
            "version": __version__,
            "component": COMPONENT,
            "namespace": self.configuration.namespace,
            "image": self.configuration.image,
            "health": health.model_dump(mode="json"),
        }
