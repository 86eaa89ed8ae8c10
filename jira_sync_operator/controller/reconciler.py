"""
JIRASync reconciler.

One call to reconcile() moves a resource at most one step through:

    (new) -> Pending -> Processing -> Completed
                           |
                           v
                        Failed --(retry due)--> Recovering -> Processing
                           |
                           v
                     Failed (terminal)

Every step is written through StatusWriter, guarded by the phase the step
was computed from and by this instance still holding the claim. The
returned ReconcileResult says whether and when the key should be looked at
again.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog

from ..clock import Clock, SystemClock
from ..config import Settings
from ..converter import (
    CONCURRENCY_LABEL,
    DRY_RUN_LABEL,
    FORCE_LABEL,
    INCREMENTAL_LABEL,
    PARALLELISM_ANNOTATION,
    RATE_LIMIT_LABEL,
    SAFE_MODE_ANNOTATION,
    validate_conversion,
    validate_issue_keys,
    validate_jql,
    validate_repository,
)
from ..errors import (
    ConflictError,
    ErrorKind,
    ExecutionError,
    NotFoundError,
    SyncError,
    ValidationError,
    kind_of,
)
from ..jobs.orchestrator import (
    BatchSyncRequest,
    JQLSyncRequest,
    SingleIssueSyncRequest,
    SyncJobOrchestrator,
)
from ..jobs.scheduler import job_name_for
from ..jobs.types import JobStatus, WorkUnitConfig, WorkUnitResult
from ..resources import conditions
from ..resources.models import (
    FINALIZER,
    Claim,
    JobRef,
    LastError,
    Phase,
    Progress,
    SyncResource,
    SyncType,
    split_key,
)
from ..resources.store import ResourceStore
from . import retry
from .dependency import DependencyGate, GateResult
from .status_writer import StaleTransition, StatusWriter

logger = structlog.get_logger()

API_ENDPOINT_ENV = "SYNC_API_ENDPOINT"
RESOURCE_ENV = "SYNC_RESOURCE"


@dataclass
class ReconcilerConfig:
    """Timing and identity knobs for a Reconciler."""

    operator_id: str = ""
    dependency_requeue_seconds: float = 30.0
    running_requeue_seconds: float = 15.0
    error_requeue_seconds: float = 30.0
    claim_lease_seconds: float = 60.0
    status_conflict_retries: int = 5
    require_api_endpoint: bool = True

    def __post_init__(self):
        if not self.operator_id:
            self.operator_id = f"operator-{uuid.uuid4().hex[:8]}"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconcilerConfig":
        return cls(
            operator_id=settings.operator_id or "",
            dependency_requeue_seconds=settings.dependency_requeue_seconds,
            running_requeue_seconds=settings.running_requeue_seconds,
            error_requeue_seconds=settings.error_requeue_seconds,
            claim_lease_seconds=float(settings.claim_lease_seconds),
            status_conflict_retries=settings.status_conflict_retries,
            require_api_endpoint=settings.require_api_endpoint,
        )


@dataclass(frozen=True)
class ReconcileResult:
    """requeue_after None: nothing more to do. 0: look again right away."""

    requeue_after: Optional[float] = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


DONE = ReconcileResult()


def requeue(after: float = 0.0) -> ReconcileResult:
    return ReconcileResult(requeue_after=max(0.0, after))


class ClaimLost(Exception):
    """Another operator instance holds the claim on this resource."""


def _flag(values: Dict[str, str], key: str) -> bool:
    return values.get(key, "").lower() == "true"


def _int_value(values: Dict[str, str], key: str) -> int:
    raw = values.get(key)
    if raw is None or raw == "":
        return 0
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{key} must be an integer", field=key, value=raw, code="INVALID_LABEL")


def expected_total(resource: SyncResource) -> int:
    if resource.spec.sync_type in (SyncType.SINGLE, SyncType.BATCH):
        return len(resource.spec.target.issue_keys)
    return 0


def validate_resource(resource: SyncResource) -> None:
    """Structural and field-level checks run before any work is scheduled."""
    validate_conversion(resource)
    validate_repository(resource.spec.destination.repository)
    target = resource.spec.target
    if resource.spec.sync_type in (SyncType.SINGLE, SyncType.BATCH):
        validate_issue_keys(target.issue_keys)
    elif resource.spec.sync_type == SyncType.JQL:
        validate_jql(target.jql_query or "")


def _condition_is(resource: SyncResource, condition_type: str, status: str, reason: str, message: str) -> bool:
    current = conditions.get_condition(resource.status.conditions, condition_type)
    return (
        current is not None
        and current.status == status
        and current.reason == reason
        and current.message == message
    )


class Reconciler:
    """Drives JIRASync resources toward their desired state."""

    def __init__(
        self,
        store: ResourceStore,
        orchestrator: SyncJobOrchestrator,
        config: Optional[ReconcilerConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.config = config or ReconcilerConfig()
        self.clock = clock or SystemClock()
        self.writer = StatusWriter(store, self.clock, self.config.status_conflict_retries)
        self.gate = DependencyGate(store, self.config.require_api_endpoint)

    @property
    def operator_id(self) -> str:
        return self.config.operator_id

    async def reconcile_key(self, key: str) -> ReconcileResult:
        namespace, name = split_key(key)
        return await self.reconcile(namespace, name)

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        log = logger.bind(resource=f"{namespace}/{name}", operator=self.operator_id)
        try:
            resource = await self.store.get(namespace, name)
        except NotFoundError:
            log.debug("resource_gone")
            return DONE

        if resource.being_deleted:
            return await self._finalize(resource, log)

        if resource.is_terminal:
            return DONE

        try:
            if FINALIZER not in resource.metadata.finalizers:
                resource.metadata.finalizers.append(FINALIZER)
                resource = await self.store.update_metadata(resource)

            claimed = await self._claim(resource, log)
            if claimed is None:
                return requeue(self._lease_remaining(resource))
            return await self._step(claimed, log)
        except StaleTransition:
            return requeue(0)
        except ClaimLost:
            log.info("claim_lost")
            return requeue(self.config.claim_lease_seconds)
        except ConflictError:
            return requeue(0)
        except NotFoundError:
            log.debug("resource_gone")
            return DONE

    async def _step(self, resource: SyncResource, log) -> ReconcileResult:
        phase = resource.status.phase
        if phase is None:
            return await self._initialize(resource, log)
        if phase == Phase.PENDING:
            return await self._pending(resource, log)
        if phase == Phase.PROCESSING:
            return await self._processing(resource, log)
        if phase == Phase.FAILED:
            return await self._failed(resource, log)
        if phase == Phase.RECOVERING:
            return await self._recovering(resource, log)
        return DONE

    # ---- claims ----------------------------------------------------------

    def _claim_expired(self, claim: Claim, now: datetime) -> bool:
        return (now - claim.renewed_at).total_seconds() >= self.config.claim_lease_seconds

    def _lease_remaining(self, resource: SyncResource) -> float:
        claim = resource.status.claim
        if claim is None:
            return 0.0
        elapsed = (self.clock.now() - claim.renewed_at).total_seconds()
        return self.config.claim_lease_seconds - elapsed

    async def _claim(self, resource: SyncResource, log) -> Optional[SyncResource]:
        """Take, renew or respect the claim. None when someone else holds it."""
        now = self.clock.now()
        claim = resource.status.claim
        if claim is not None and claim.holder == self.operator_id:
            if (now - claim.renewed_at).total_seconds() < self.config.claim_lease_seconds / 2:
                return resource
        elif claim is not None and not self._claim_expired(claim, now):
            return None

        def take(current: SyncResource) -> Optional[bool]:
            now = self.clock.now()
            held = current.status.claim
            if held is not None and held.holder != self.operator_id and not self._claim_expired(held, now):
                return False
            if held is not None and held.holder == self.operator_id:
                held.renewed_at = now
                return None
            if held is not None:
                log.info("claim_taken_over", previous_holder=held.holder)
            current.status.claim = Claim(holder=self.operator_id, acquired_at=now, renewed_at=now)
            conditions.set_condition(
                current.status.conditions,
                conditions.CLAIMED,
                conditions.TRUE,
                conditions.REASON_CLAIMED,
                f"Claimed by {self.operator_id}",
                now,
            )
            return None

        updated = await self.writer.apply(resource.metadata.namespace, resource.metadata.name, take)
        if updated.status.claim is None or updated.status.claim.holder != self.operator_id:
            log.debug("claim_held_elsewhere", holder=updated.status.claim.holder if updated.status.claim else None)
            return None
        return updated

    async def _transition(
        self,
        resource: SyncResource,
        mutate: Callable[[SyncResource], Optional[bool]],
        *expected: Optional[Phase],
    ) -> SyncResource:
        def guarded(current: SyncResource) -> Optional[bool]:
            claim = current.status.claim
            if claim is None or claim.holder != self.operator_id:
                raise ClaimLost(current.key)
            return mutate(current)

        return await self.writer.apply(
            resource.metadata.namespace, resource.metadata.name, guarded, expected_phases=set(expected)
        )

    # ---- phases ----------------------------------------------------------

    async def _initialize(self, resource: SyncResource, log) -> ReconcileResult:
        try:
            validate_resource(resource)
        except ValidationError as e:
            def reject(current: SyncResource) -> None:
                now = self.clock.now()
                status = current.status
                status.phase = Phase.FAILED
                status.next_retry_time = None
                status.start_time = status.start_time or now
                status.completion_time = now
                status.observed_generation = current.metadata.generation
                status.last_error = LastError(
                    type=ErrorKind.VALIDATION.value, message=e.message, time=now, retryable=False
                )
                for condition_type in (conditions.VALIDATED, conditions.READY):
                    conditions.set_condition(
                        status.conditions, condition_type, conditions.FALSE,
                        conditions.REASON_VALIDATION_FAILED, e.message, now,
                    )
                conditions.set_condition(
                    status.conditions, conditions.FAILED, conditions.TRUE,
                    conditions.REASON_VALIDATION_FAILED, e.message, now,
                )

            await self._transition(resource, reject, None)
            log.warning("validation_failed", code=e.code, error=e.message)
            return DONE

        def initialize(current: SyncResource) -> None:
            now = self.clock.now()
            status = current.status
            status.phase = Phase.PENDING
            status.start_time = now
            status.observed_generation = current.metadata.generation
            status.progress = Progress(
                total_issues=expected_total(current), current_operation="Waiting to start"
            )
            conditions.set_condition(
                status.conditions, conditions.VALIDATED, conditions.TRUE,
                conditions.REASON_VALIDATING, "Sync spec validated", now,
            )
            conditions.set_condition(
                status.conditions, conditions.READY, conditions.FALSE,
                conditions.REASON_INITIALIZING, "Sync initialized", now,
            )

        await self._transition(resource, initialize, None)
        log.info("sync_initialized", sync_type=resource.spec.sync_type.value)
        return requeue(0)

    async def _wait_for_dependency(self, resource: SyncResource, gate: GateResult, phase: Phase, log) -> ReconcileResult:
        def waiting(current: SyncResource) -> Optional[bool]:
            if _condition_is(current, conditions.API_SERVER_READY, conditions.FALSE, gate.reason, gate.message):
                return False
            now = self.clock.now()
            conditions.set_condition(
                current.status.conditions, conditions.API_SERVER_READY, conditions.FALSE,
                gate.reason, gate.message, now,
            )
            conditions.set_condition(
                current.status.conditions, conditions.READY, conditions.FALSE,
                gate.reason, gate.message, now,
            )
            return None

        await self._transition(resource, waiting, phase)
        log.info("waiting_for_api_server", reason=gate.reason)
        return requeue(self.config.dependency_requeue_seconds)

    async def _pending(self, resource: SyncResource, log) -> ReconcileResult:
        gate = await self.gate.check(resource)
        if not gate.ready:
            return await self._wait_for_dependency(resource, gate, Phase.PENDING, log)
        return await self._start_attempt(resource, gate, Phase.PENDING, log)

    async def _processing(self, resource: SyncResource, log) -> ReconcileResult:
        ref = resource.status.job_ref
        if ref is None:
            gate = await self.gate.check(resource)
            if not gate.ready:
                return await self._wait_for_dependency(resource, gate, Phase.PROCESSING, log)
            return await self._start_attempt(resource, gate, Phase.PROCESSING, log)

        try:
            result = await self.orchestrator.get_job(ref.job_id)
        except NotFoundError:
            # status recorded the job but the submission never landed
            log.info("job_missing_resubmitting", job_id=ref.job_id)
            try:
                config = self.build_config(resource, resource.status.api_endpoint, job_id=ref.job_id)
            except SyncError as e:
                return await self._handle_failure(resource, e, Phase.PROCESSING, log)
            return await self._submit(resource, config, log)
        except SyncError as e:
            return await self._handle_failure(resource, e, Phase.PROCESSING, log)

        if result.status == JobStatus.FAILED:
            err = ExecutionError(
                result.error_message or result.message or "sync job failed",
                pod_name=result.pod_name or "",
                job_id=ref.job_id,
            )
            return await self._handle_failure(resource, err, Phase.PROCESSING, log)

        total = expected_total(resource) or result.total_issues
        processed = result.processed_issues
        if result.status == JobStatus.SUCCEEDED:
            percentage = 100.0
        elif total:
            percentage = min(100.0, processed * 100.0 / total)
        else:
            percentage = 0.0

        if percentage >= 100.0:
            return await self._complete(resource, result, total, log)

        operation = f"Synced {processed}/{total} issues" if total else "Sync running"

        def progress(current: SyncResource) -> Optional[bool]:
            wanted = Progress(
                percentage=round(percentage, 2),
                total_issues=total,
                processed_issues=processed,
                failed_issues=result.failed_issues,
                current_operation=operation,
            )
            if current.status.progress == wanted:
                return False
            current.status.progress = wanted
            conditions.set_condition(
                current.status.conditions, conditions.PROCESSING, conditions.TRUE,
                conditions.REASON_PROCESSING, operation, self.clock.now(),
            )
            return None

        await self._transition(resource, progress, Phase.PROCESSING)
        return requeue(self.config.running_requeue_seconds)

    async def _failed(self, resource: SyncResource, log) -> ReconcileResult:
        due = resource.status.next_retry_time
        now = self.clock.now()
        if due is not None and now < due:
            return requeue((due - now).total_seconds())

        def recover(current: SyncResource) -> None:
            now = self.clock.now()
            status = current.status
            status.phase = Phase.RECOVERING
            status.last_error = None
            status.next_retry_time = None
            conditions.set_condition(
                status.conditions, conditions.FAILED, conditions.FALSE,
                conditions.REASON_RETRYING, "Retrying after failure", now,
            )
            conditions.set_condition(
                status.conditions, conditions.PROCESSING, conditions.TRUE,
                conditions.REASON_RETRYING, f"Retry attempt {status.retry_count}", now,
            )

        await self._transition(resource, recover, Phase.FAILED)
        log.info("sync_recovering", retry_count=resource.status.retry_count)
        return requeue(0)

    async def _recovering(self, resource: SyncResource, log) -> ReconcileResult:
        ref = resource.status.job_ref
        if ref is not None:
            try:
                await self.orchestrator.delete_job(ref.job_id)
            except NotFoundError:
                pass
            except SyncError as e:
                log.warning("previous_job_cleanup_failed", job_id=ref.job_id, error=e.message)

        gate = await self.gate.check(resource)
        if not gate.ready:
            return await self._wait_for_dependency(resource, gate, Phase.RECOVERING, log)
        return await self._start_attempt(resource, gate, Phase.RECOVERING, log)

    # ---- submission ------------------------------------------------------

    def build_config(
        self, resource: SyncResource, endpoint: Optional[str], job_id: Optional[str] = None
    ) -> WorkUnitConfig:
        """Work unit configuration for the current attempt of a sync."""
        spec = resource.spec
        labels = spec.labels
        annotations = resource.metadata.annotations

        environment = {RESOURCE_ENV: resource.key}
        if endpoint:
            environment[API_ENDPOINT_ENV] = endpoint

        common: Dict[str, Any] = {
            "repository": spec.destination.repository,
            "rate_limit_ms": _int_value(labels, RATE_LIMIT_LABEL),
            "incremental": _flag(labels, INCREMENTAL_LABEL),
            "force": _flag(labels, FORCE_LABEL),
            "dry_run": _flag(labels, DRY_RUN_LABEL),
            "safe_mode": _flag(annotations, SAFE_MODE_ANNOTATION),
            "timeout_seconds": spec.timeout or None,
            "environment": environment,
        }
        parallelism = _int_value(annotations, PARALLELISM_ANNOTATION) or None

        if spec.sync_type == SyncType.SINGLE:
            request = SingleIssueSyncRequest(issue_key=spec.target.issue_keys[0], **common)
            return self.orchestrator.build_single_config(request, job_id=job_id)
        if spec.sync_type == SyncType.BATCH:
            request = BatchSyncRequest(
                issue_keys=list(spec.target.issue_keys),
                concurrency=_int_value(labels, CONCURRENCY_LABEL),
                parallelism=parallelism,
                **common,
            )
            return self.orchestrator.build_batch_config(request, job_id=job_id)

        if spec.sync_type == SyncType.INCREMENTAL:
            common["incremental"] = True
            common["force"] = False
            query = f"project = {spec.target.project_key}"
        else:
            query = spec.target.jql_query or ""
        request = JQLSyncRequest(
            jql=query,
            concurrency=_int_value(labels, CONCURRENCY_LABEL),
            parallelism=parallelism,
            **common,
        )
        return self.orchestrator.build_jql_config(request, job_id=job_id)

    async def _start_attempt(
        self, resource: SyncResource, gate: GateResult, phase: Phase, log
    ) -> ReconcileResult:
        try:
            config = self.build_config(resource, gate.endpoint)
        except SyncError as e:
            return await self._handle_failure(resource, e, phase, log)

        job_ref = JobRef(name=job_name_for(config.id), namespace=config.namespace, job_id=config.id)
        gated = self.gate.required(resource)

        def processing(current: SyncResource) -> None:
            now = self.clock.now()
            status = current.status
            status.phase = Phase.PROCESSING
            status.job_ref = job_ref
            status.next_retry_time = None
            status.api_endpoint = gate.endpoint
            status.progress = Progress(
                total_issues=expected_total(current), current_operation=f"Submitting job {config.id}"
            )
            if gated:
                conditions.set_condition(
                    status.conditions, conditions.API_SERVER_READY, conditions.TRUE,
                    gate.reason, gate.message, now,
                )
            conditions.set_condition(
                status.conditions, conditions.PROCESSING, conditions.TRUE,
                conditions.REASON_SCHEDULING, f"Submitted job {config.id}", now,
            )
            conditions.set_condition(
                status.conditions, conditions.READY, conditions.FALSE,
                conditions.REASON_PROCESSING, "Sync in progress", now,
            )

        updated = await self._transition(resource, processing, phase)
        return await self._submit(updated, config, log)

    async def _submit(self, resource: SyncResource, config: WorkUnitConfig, log) -> ReconcileResult:
        try:
            await self.orchestrator.submit_config(config)
        except ConflictError:
            log.info("job_already_exists", job_id=config.id)
        except SyncError as e:
            return await self._handle_failure(resource, e, Phase.PROCESSING, log)
        log.info("sync_job_submitted", job_id=config.id, attempt=resource.status.retry_count + 1)
        return requeue(self.config.running_requeue_seconds)

    # ---- outcomes --------------------------------------------------------

    async def _complete(
        self, resource: SyncResource, result: WorkUnitResult, total: int, log
    ) -> ReconcileResult:
        processed = result.processed_issues or total
        message = f"Synced {processed} issues"
        if result.failed_issues:
            message += f" ({result.failed_issues} failed)"

        def complete(current: SyncResource) -> None:
            now = self.clock.now()
            status = current.status
            status.phase = Phase.COMPLETED
            status.progress = Progress(
                percentage=100.0,
                total_issues=total,
                processed_issues=processed,
                failed_issues=result.failed_issues,
                current_operation="Completed",
            )
            status.completion_time = now
            status.last_sync = now
            status.retry_count = 0
            status.last_error = None
            status.next_retry_time = None
            conditions.set_condition(
                status.conditions, conditions.COMPLETED, conditions.TRUE,
                conditions.REASON_COMPLETED, message, now,
            )
            conditions.set_condition(
                status.conditions, conditions.PROCESSING, conditions.FALSE,
                conditions.REASON_COMPLETED, message, now,
            )
            conditions.set_condition(
                status.conditions, conditions.READY, conditions.TRUE,
                conditions.REASON_COMPLETED, message, now,
            )
            if conditions.get_condition(status.conditions, conditions.FAILED) is not None:
                conditions.set_condition(
                    status.conditions, conditions.FAILED, conditions.FALSE,
                    conditions.REASON_COMPLETED, message, now,
                )

        await self._transition(resource, complete, Phase.PROCESSING)
        log.info("sync_completed", processed=processed, failed=result.failed_issues)
        return DONE

    async def _handle_failure(
        self, resource: SyncResource, err: BaseException, phase: Phase, log
    ) -> ReconcileResult:
        kind = kind_of(err)
        message = err.message if isinstance(err, SyncError) else str(err)
        decided: Dict[str, retry.RetryDecision] = {}

        def fail(current: SyncResource) -> None:
            now = self.clock.now()
            status = current.status
            policy = current.spec.retry_policy
            decision = retry.decide(policy, kind, status.retry_count)
            decided["decision"] = decision

            status.phase = Phase.FAILED
            status.retry_count = decision.retry_count
            status.last_error = LastError(type=kind.value, message=message, time=now, retryable=decision.retry)
            if decision.retry:
                status.next_retry_time = now + timedelta(seconds=decision.delay)
                detail = f"{message}; retry {decision.retry_count}/{policy.max_retries} in {decision.delay:g}s"
                conditions.set_condition(
                    status.conditions, conditions.FAILED, conditions.TRUE,
                    conditions.REASON_RETRYING, detail, now,
                )
                conditions.set_condition(
                    status.conditions, conditions.PROCESSING, conditions.FALSE,
                    conditions.REASON_RETRYING, detail, now,
                )
                return

            reason = conditions.REASON_JOB_ERROR if kind == ErrorKind.EXECUTION else conditions.REASON_FAILED
            status.next_retry_time = None
            status.completion_time = now
            for condition_type in (conditions.PROCESSING, conditions.READY):
                conditions.set_condition(status.conditions, condition_type, conditions.FALSE, reason, message, now)
            conditions.set_condition(status.conditions, conditions.FAILED, conditions.TRUE, reason, message, now)

        await self._transition(resource, fail, phase)
        decision = decided["decision"]
        if decision.retry:
            log.warning(
                "sync_failed_retrying",
                error_type=kind.value,
                error=message,
                retry_count=decision.retry_count,
                delay=decision.delay,
            )
            return requeue(decision.delay)

        log.error("sync_failed", error_type=kind.value, error=message, retry_count=decision.retry_count)
        return DONE

    # ---- deletion --------------------------------------------------------

    async def _finalize(self, resource: SyncResource, log) -> ReconcileResult:
        if FINALIZER not in resource.metadata.finalizers:
            return DONE

        ref = resource.status.job_ref
        if ref is not None:
            try:
                await self.orchestrator.delete_job(ref.job_id)
                log.info("sync_job_deleted", job_id=ref.job_id)
            except NotFoundError:
                pass
            except SyncError as e:
                log.warning("sync_job_delete_failed", job_id=ref.job_id, error=e.message)
                return requeue(self.config.error_requeue_seconds)

        resource.metadata.finalizers = [f for f in resource.metadata.finalizers if f != FINALIZER]
        try:
            await self.store.update_metadata(resource)
        except ConflictError:
            return requeue(0)
        except NotFoundError:
            return DONE
        log.info("finalizer_removed")
        return DONE
