"""Tests for the JIRASync reconciler and its collaborators."""

import asyncio

import pytest

from jira_sync_operator.controller import retry
from jira_sync_operator.controller.dependency import DependencyGate
from jira_sync_operator.controller.reconciler import (
    API_ENDPOINT_ENV,
    DONE,
    RESOURCE_ENV,
    Reconciler,
    ReconcilerConfig,
    requeue,
)
from jira_sync_operator.controller.status_writer import StaleTransition, StatusWriter
from jira_sync_operator.errors import ConflictError, ErrorKind, NotFoundError, SyncConnectionError
from jira_sync_operator.resources import conditions
from jira_sync_operator.resources.models import (
    DISPATCH_LABEL,
    FINALIZER,
    ApiEndpoint,
    ApiEndpointStatus,
    Condition,
    ObjectMeta,
    Phase,
    RetryPolicy,
    SyncType,
)
from jira_sync_operator.resources.store import MemoryResourceStore

from helpers import JOB_NAMESPACE, make_resource

FAST_RETRIES = RetryPolicy(max_retries=3, backoff_multiplier=2.0, initial_delay=0.1)


def make_endpoint(name: str = "api", phase: str = "Running", ready: bool = True, endpoint=None) -> ApiEndpoint:
    """Create an APIServer resource in the default namespace."""
    return ApiEndpoint(
        metadata=ObjectMeta(name=name, namespace="default"),
        status=ApiEndpointStatus(
            phase=phase,
            endpoint=endpoint,
            conditions=[Condition(type="Ready", status="True" if ready else "False")],
        ),
    )


def make_reconciler(store, orchestrator, clock, operator_id: str = "operator-a", **overrides) -> Reconciler:
    config = ReconcilerConfig(operator_id=operator_id, **overrides)
    return Reconciler(store, orchestrator, config=config, clock=clock)


async def settle(reconciler: Reconciler, name: str = "sync-one", namespace: str = "default", limit: int = 10):
    """Reconcile until the result asks for anything but an immediate requeue."""
    result = DONE
    for _ in range(limit):
        result = await reconciler.reconcile(namespace, name)
        if result.requeue_after != 0:
            return result
    return result


def container_env(job: dict) -> dict:
    container = job["spec"]["template"]["spec"]["containers"][0]
    return {e["name"]: e.get("value") for e in container.get("env", [])}


def created_jobs(cluster) -> list:
    return [name for op, _, name in cluster.calls if op == "create_job"]


@pytest.fixture
def reconciler(store, orchestrator, clock) -> Reconciler:
    return make_reconciler(store, orchestrator, clock)


class TestRetryPolicy:
    """Backoff arithmetic and retry classification."""

    def test_backoff_delays(self):
        assert [retry.backoff_delay(FAST_RETRIES, n) for n in (1, 2, 3)] == pytest.approx([0.1, 0.2, 0.4])
        assert retry.backoff_delay(FAST_RETRIES, 0) == pytest.approx(0.1)

    def test_decide_counts_every_failure(self):
        decision = retry.decide(FAST_RETRIES, ErrorKind.EXECUTION, 0)
        assert decision.retry and decision.retry_count == 1
        assert decision.delay == pytest.approx(0.1)

        decision = retry.decide(FAST_RETRIES, ErrorKind.TIMEOUT, 2)
        assert decision.retry and decision.retry_count == 3
        assert decision.delay == pytest.approx(0.4)

    def test_retries_exhausted(self):
        decision = retry.decide(FAST_RETRIES, ErrorKind.EXECUTION, 3)
        assert not decision.retry
        assert decision.retry_count == 4
        assert decision.delay is None

    @pytest.mark.parametrize(
        "kind,expected",
        [
            (ErrorKind.CONNECTION, True),
            (ErrorKind.TIMEOUT, True),
            (ErrorKind.RESOURCE, True),
            (ErrorKind.CLUSTER_API, True),
            (ErrorKind.EXECUTION, True),
            (ErrorKind.VALIDATION, False),
            (ErrorKind.AUTHENTICATION, False),
            (ErrorKind.TEMPLATE, False),
            (ErrorKind.INTERNAL, False),
        ],
    )
    def test_should_retry(self, kind, expected):
        assert retry.should_retry(kind) is expected

    def test_non_retryable_never_retries(self):
        decision = retry.decide(FAST_RETRIES, ErrorKind.VALIDATION, 0)
        assert not decision.retry
        assert decision.retry_count == 1

    def test_requeue_never_negative(self):
        assert requeue(-5).requeue_after == 0
        assert not DONE.requeue


class ConflictingStore(MemoryResourceStore):
    """Memory store whose next status writes lose the race."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.pending_conflicts = conflicts

    async def update_status(self, resource):
        if self.pending_conflicts:
            self.pending_conflicts -= 1
            raise ConflictError("the object has been modified", operation="update status")
        return await super().update_status(resource)


@pytest.mark.asyncio
class TestStatusWriter:
    """Re-read and retry on conflicts, drop stale transitions."""

    async def test_retries_after_conflict(self, clock):
        store = ConflictingStore(conflicts=2)
        await store.create(make_resource())
        writer = StatusWriter(store, clock, max_attempts=5)

        def pending(resource):
            resource.status.phase = Phase.PENDING

        updated = await writer.apply("default", "sync-one", pending, expected_phases={None})
        assert updated.status.phase == Phase.PENDING
        assert updated.status.last_status_update == clock.now()
        assert store.status_writes == 1

    async def test_gives_up_after_max_attempts(self, clock):
        store = ConflictingStore(conflicts=3)
        await store.create(make_resource())
        writer = StatusWriter(store, clock, max_attempts=3)

        with pytest.raises(ConflictError):
            await writer.apply("default", "sync-one", lambda r: None)
        assert store.status_writes == 0

    async def test_stale_phase_is_dropped(self, store, clock):
        await store.create(make_resource())
        writer = StatusWriter(store, clock)
        calls = []

        with pytest.raises(StaleTransition) as exc_info:
            await writer.apply("default", "sync-one", calls.append, expected_phases={Phase.PROCESSING})
        assert exc_info.value.observed is None
        assert calls == []
        assert store.status_writes == 0

    async def test_false_means_no_write(self, store, clock):
        await store.create(make_resource())
        writer = StatusWriter(store, clock)
        current = await writer.apply("default", "sync-one", lambda r: False)
        assert current.metadata.resource_version == "1"
        assert store.status_writes == 0

    async def test_missing_resource(self, store, clock):
        with pytest.raises(NotFoundError):
            await StatusWriter(store, clock).apply("default", "absent", lambda r: None)


class TestDispatchMode:
    """Which syncs need an APIServer."""

    def test_required_by_dispatch_label(self, store):
        gate = DependencyGate(store)
        assert gate.required(make_resource())
        assert not gate.required(make_resource(direct=True))

        optional = DependencyGate(store, required_by_default=False)
        assert not optional.required(make_resource())
        assert optional.required(make_resource(labels={DISPATCH_LABEL: "api"}))


@pytest.mark.asyncio
class TestDependencyGate:
    """APIServer readiness checks."""

    async def test_no_endpoint(self, store):
        result = await DependencyGate(store).check(make_resource())
        assert not result.ready
        assert result.reason == conditions.REASON_NO_API_SERVER

    async def test_not_ready_endpoint(self, store):
        await store.put_endpoint(make_endpoint(phase="Pending"))
        result = await DependencyGate(store).check(make_resource())
        assert not result.ready
        assert result.reason == conditions.REASON_WAITING
        assert "api" in result.message

    async def test_ready_endpoint_default_url(self, store):
        await store.put_endpoint(make_endpoint(name="sync-api"))
        result = await DependencyGate(store).check(make_resource())
        assert result.ready
        assert result.endpoint == "http://sync-api.default.svc.cluster.local:8080"

    async def test_ready_endpoint_reported_url(self, store):
        await store.put_endpoint(make_endpoint(ready=False, name="a"))
        await store.put_endpoint(make_endpoint(name="b", endpoint="http://10.0.0.5:9000"))
        result = await DependencyGate(store).check(make_resource())
        assert result.endpoint == "http://10.0.0.5:9000"

    async def test_direct_skips_lookup(self, store):
        result = await DependencyGate(store).check(make_resource(direct=True))
        assert result.ready
        assert result.endpoint is None


@pytest.mark.asyncio
class TestInitialization:
    """First reconcile of a new resource."""

    async def test_new_resource_becomes_pending(self, store, reconciler, clock):
        await store.create(make_resource())
        result = await reconciler.reconcile("default", "sync-one")
        assert result.requeue_after == 0

        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.PENDING
        assert resource.status.start_time == clock.now()
        assert resource.status.progress.total_issues == 1
        assert FINALIZER in resource.metadata.finalizers
        assert resource.status.claim.holder == "operator-a"
        assert conditions.is_true(resource.status.conditions, conditions.VALIDATED)
        assert conditions.is_true(resource.status.conditions, conditions.CLAIMED)

    async def test_validation_failure_is_terminal(self, store, reconciler, cluster):
        await store.create(make_resource(repository="file:///etc/passwd"))
        result = await reconciler.reconcile("default", "sync-one")
        assert result == DONE

        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.FAILED
        assert resource.status.next_retry_time is None
        assert resource.is_terminal
        assert resource.status.last_error.type == "validation"
        assert not resource.status.last_error.retryable
        validated = conditions.get_condition(resource.status.conditions, conditions.VALIDATED)
        assert validated.status == conditions.FALSE
        assert validated.reason == conditions.REASON_VALIDATION_FAILED
        assert created_jobs(cluster) == []

        writes = store.status_writes
        assert await reconciler.reconcile("default", "sync-one") == DONE
        assert store.status_writes == writes

    async def test_missing_resource(self, reconciler):
        assert await reconciler.reconcile("default", "absent") == DONE

    async def test_reconcile_key(self, store, reconciler):
        await store.create(make_resource(name="keyed", namespace="team"))
        await reconciler.reconcile_key("team/keyed")
        assert (await store.get("team", "keyed")).status.phase == Phase.PENDING


@pytest.mark.asyncio
class TestDependencyWait:
    """A sync dispatched through the API server waits for it."""

    async def test_waits_then_starts(self, store, reconciler, cluster):
        await store.create(make_resource())

        result = await settle(reconciler)
        assert result.requeue_after == 30
        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.PENDING
        gate = conditions.get_condition(resource.status.conditions, conditions.API_SERVER_READY)
        assert gate.status == conditions.FALSE
        assert gate.reason == "No APIServer found"

        writes = store.status_writes
        assert (await reconciler.reconcile("default", "sync-one")).requeue_after == 30
        assert store.status_writes == writes

        await store.put_endpoint(make_endpoint(phase="Pending"))
        await reconciler.reconcile("default", "sync-one")
        resource = await store.get("default", "sync-one")
        gate = conditions.get_condition(resource.status.conditions, conditions.API_SERVER_READY)
        assert gate.reason == "Waiting"
        assert resource.status.phase == Phase.PENDING
        assert created_jobs(cluster) == []

        await store.put_endpoint(make_endpoint(phase="Running"))
        result = await reconciler.reconcile("default", "sync-one")
        assert result.requeue_after == 15

        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.PROCESSING
        assert conditions.is_true(resource.status.conditions, conditions.API_SERVER_READY)
        assert resource.status.api_endpoint == "http://api.default.svc.cluster.local:8080"

        job = await cluster.get_job(JOB_NAMESPACE, resource.status.job_ref.name)
        env = container_env(job)
        assert env[API_ENDPOINT_ENV] == "http://api.default.svc.cluster.local:8080"
        assert env[RESOURCE_ENV] == "default/sync-one"

    async def test_direct_dispatch_has_no_endpoint(self, store, reconciler, cluster):
        await store.create(make_resource(direct=True))
        await settle(reconciler)

        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.PROCESSING
        assert conditions.get_condition(resource.status.conditions, conditions.API_SERVER_READY) is None
        env = container_env(await cluster.get_job(JOB_NAMESPACE, resource.status.job_ref.name))
        assert API_ENDPOINT_ENV not in env

    async def test_gate_can_be_disabled(self, store, orchestrator, clock):
        reconciler = make_reconciler(store, orchestrator, clock, require_api_endpoint=False)
        await store.create(make_resource())
        await settle(reconciler)
        assert (await store.get("default", "sync-one")).status.phase == Phase.PROCESSING


@pytest.mark.asyncio
class TestProcessing:
    """Progress tracking and completion."""

    async def test_single_completes(self, store, reconciler, cluster, clock):
        await store.create(make_resource(direct=True))
        await settle(reconciler)
        resource = await store.get("default", "sync-one")
        job_ref = resource.status.job_ref
        assert job_ref.namespace == JOB_NAMESPACE
        assert job_ref.job_id.startswith("single-")

        cluster.complete_job(JOB_NAMESPACE, job_ref.name)
        result = await reconciler.reconcile("default", "sync-one")
        assert result == DONE

        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.COMPLETED
        assert resource.status.progress.percentage == 100.0
        assert resource.status.completion_time == clock.now()
        assert resource.status.last_sync == clock.now()
        assert conditions.is_true(resource.status.conditions, conditions.READY)
        assert conditions.is_true(resource.status.conditions, conditions.COMPLETED)
        assert not conditions.is_true(resource.status.conditions, conditions.PROCESSING)

        assert await reconciler.reconcile("default", "sync-one") == DONE

    async def test_batch_progress(self, store, reconciler, cluster):
        keys = [f"PROJ-{i}" for i in range(1, 6)]
        await store.create(make_resource(sync_type=SyncType.BATCH, issue_keys=keys, direct=True))
        await settle(reconciler)
        job_name = (await store.get("default", "sync-one")).status.job_ref.name

        cluster.annotate_job(JOB_NAMESPACE, job_name, {"jira-sync/processed-issues": "2"})
        result = await reconciler.reconcile("default", "sync-one")
        assert result.requeue_after == 15
        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.PROCESSING
        assert resource.status.progress.percentage == 40.0
        assert resource.status.progress.processed_issues == 2
        assert resource.status.progress.total_issues == 5
        assert resource.status.progress.current_operation == "Synced 2/5 issues"

        writes = store.status_writes
        await reconciler.reconcile("default", "sync-one")
        assert store.status_writes == writes

        cluster.annotate_job(JOB_NAMESPACE, job_name, {"jira-sync/processed-issues": "5"})
        assert await reconciler.reconcile("default", "sync-one") == DONE
        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.COMPLETED
        assert resource.status.progress.percentage == 100.0
        assert resource.status.progress.processed_issues == 5

    async def test_batch_job_carries_options(self, store, reconciler, cluster):
        resource = make_resource(
            sync_type=SyncType.BATCH,
            issue_keys=["PROJ-1", "PROJ-2"],
            direct=True,
            labels={"sync.jira.io/dry-run": "true", "sync.jira.io/concurrency": "4"},
            annotations={"sync.jira.io/parallelism": "3", "sync.jira.io/safe-mode": "true"},
        )
        await store.create(resource)
        await settle(reconciler)

        job_name = (await store.get("default", "sync-one")).status.job_ref.name
        job = await cluster.get_job(JOB_NAMESPACE, job_name)
        container = job["spec"]["template"]["spec"]["containers"][0]
        assert "--issues=PROJ-1,PROJ-2" in container["args"]
        assert "--dry-run" in container["args"]
        assert "--concurrency=4" in container["args"]
        assert job["spec"]["parallelism"] == 3
        assert container_env(job)["SPIKE_SAFE_MODE"] == "true"

    async def test_incremental_uses_project_query(self, store, reconciler, cluster):
        await store.create(make_resource(sync_type=SyncType.INCREMENTAL, project_key="PROJ", direct=True))
        await settle(reconciler)

        job_name = (await store.get("default", "sync-one")).status.job_ref.name
        container = (await cluster.get_job(JOB_NAMESPACE, job_name))["spec"]["template"]["spec"]["containers"][0]
        assert "--jql=project = PROJ" in container["args"]
        assert "--incremental" in container["args"]


@pytest.mark.asyncio
class TestRetries:
    """Failures are retried with backoff until the retries run out."""

    async def test_execution_failures_exhaust_retries(self, store, reconciler, cluster, clock):
        await store.create(make_resource(direct=True, retry_policy=FAST_RETRIES))
        await settle(reconciler)

        delays = []
        for attempt in range(1, 5):
            resource = await store.get("default", "sync-one")
            assert resource.status.phase == Phase.PROCESSING
            cluster.fail_job(JOB_NAMESPACE, resource.status.job_ref.name, "worker exited with 1")

            result = await reconciler.reconcile("default", "sync-one")
            resource = await store.get("default", "sync-one")
            assert resource.status.retry_count == attempt
            assert resource.status.phase == Phase.FAILED
            if attempt == 4:
                assert result == DONE
                break

            delays.append(result.requeue_after)
            assert resource.status.last_error.retryable
            assert resource.status.next_retry_time is not None

            early = await reconciler.reconcile("default", "sync-one")
            assert early.requeue_after == pytest.approx(result.requeue_after)
            assert (await store.get("default", "sync-one")).status.phase == Phase.FAILED

            clock.advance(result.requeue_after)
            await settle(reconciler)

        assert delays == pytest.approx([0.1, 0.2, 0.4])
        assert len(created_jobs(cluster)) == 4
        assert len(set(created_jobs(cluster))) == 4

        resource = await store.get("default", "sync-one")
        assert resource.is_terminal
        assert resource.status.next_retry_time is None
        assert resource.status.last_error.type == "execution"
        assert resource.status.last_error.message == "worker exited with 1"
        failed = conditions.get_condition(resource.status.conditions, conditions.FAILED)
        assert failed.status == conditions.TRUE
        assert failed.reason == conditions.REASON_JOB_ERROR

    async def test_recovery_removes_previous_job(self, store, reconciler, cluster, clock):
        await store.create(make_resource(direct=True, retry_policy=FAST_RETRIES))
        await settle(reconciler)
        first = (await store.get("default", "sync-one")).status.job_ref
        cluster.fail_job(JOB_NAMESPACE, first.name)
        await reconciler.reconcile("default", "sync-one")

        clock.advance(0.1)
        await settle(reconciler)

        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.PROCESSING
        assert resource.status.job_ref.job_id != first.job_id
        assert ("delete_job", JOB_NAMESPACE, first.name) in cluster.calls
        with pytest.raises(NotFoundError):
            await cluster.get_job(JOB_NAMESPACE, first.name)

    async def test_submission_failure_is_retried(self, store, reconciler, cluster, clock):
        cluster.inject_error("create_job", SyncConnectionError("connection refused"))
        await store.create(make_resource(direct=True, retry_policy=FAST_RETRIES))

        result = await settle(reconciler)
        assert result.requeue_after == pytest.approx(0.1)
        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.FAILED
        assert resource.status.last_error.type == "connection"

        clock.advance(0.1)
        await settle(reconciler)
        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.PROCESSING
        assert resource.status.retry_count == 1
        assert len(created_jobs(cluster)) == 2

    async def test_success_resets_retry_count(self, store, reconciler, cluster, clock):
        await store.create(make_resource(direct=True, retry_policy=FAST_RETRIES))
        await settle(reconciler)
        cluster.fail_job(JOB_NAMESPACE, (await store.get("default", "sync-one")).status.job_ref.name)
        await reconciler.reconcile("default", "sync-one")
        clock.advance(0.1)
        await settle(reconciler)

        resource = await store.get("default", "sync-one")
        cluster.complete_job(JOB_NAMESPACE, resource.status.job_ref.name)
        await reconciler.reconcile("default", "sync-one")

        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.COMPLETED
        assert resource.status.retry_count == 0
        assert resource.status.last_error is None
        assert not conditions.is_true(resource.status.conditions, conditions.FAILED)


@pytest.mark.asyncio
class TestClaims:
    """Only one operator instance drives a resource at a time."""

    async def test_concurrent_operators_submit_once(self, store, orchestrator, cluster, clock):
        first = make_reconciler(store, orchestrator, clock, operator_id="operator-a")
        second = make_reconciler(store, orchestrator, clock, operator_id="operator-b")
        await store.create(make_resource(direct=True))

        for _ in range(6):
            await asyncio.gather(
                first.reconcile("default", "sync-one"),
                second.reconcile("default", "sync-one"),
            )

        resource = await store.get("default", "sync-one")
        assert resource.status.phase == Phase.PROCESSING
        assert resource.status.claim.holder in {"operator-a", "operator-b"}
        assert len(created_jobs(cluster)) == 1

    async def test_held_claim_is_respected(self, store, orchestrator, clock):
        first = make_reconciler(store, orchestrator, clock, operator_id="operator-a")
        second = make_reconciler(store, orchestrator, clock, operator_id="operator-b")
        await store.create(make_resource())
        await settle(first)

        clock.advance(10)
        result = await second.reconcile("default", "sync-one")
        assert result.requeue_after == pytest.approx(50)
        assert (await store.get("default", "sync-one")).status.claim.holder == "operator-a"

    async def test_expired_claim_is_taken_over(self, store, orchestrator, clock):
        first = make_reconciler(store, orchestrator, clock, operator_id="operator-a")
        second = make_reconciler(store, orchestrator, clock, operator_id="operator-b")
        await store.create(make_resource())
        await settle(first)

        clock.advance(61)
        await second.reconcile("default", "sync-one")
        resource = await store.get("default", "sync-one")
        assert resource.status.claim.holder == "operator-b"
        assert resource.status.claim.acquired_at == clock.now()

        result = await first.reconcile("default", "sync-one")
        assert result.requeue_after == pytest.approx(60)
        assert (await store.get("default", "sync-one")).status.claim.holder == "operator-b"

    async def test_claim_renewed_after_half_lease(self, store, reconciler, clock):
        await store.create(make_resource())
        await settle(reconciler)
        acquired = (await store.get("default", "sync-one")).status.claim.acquired_at

        clock.advance(31)
        await reconciler.reconcile("default", "sync-one")
        claim = (await store.get("default", "sync-one")).status.claim
        assert claim.renewed_at == clock.now()
        assert claim.acquired_at == acquired


@pytest.mark.asyncio
class TestRestart:
    """A new operator instance picks up where the old one stopped."""

    async def test_lost_submission_is_resubmitted(self, store, orchestrator, cluster, clock):
        old = make_reconciler(store, orchestrator, clock, operator_id="operator-old")
        await store.create(make_resource(direct=True))
        await settle(old)
        job_ref = (await store.get("default", "sync-one")).status.job_ref

        # the job never reached the cluster
        await cluster.delete_job(JOB_NAMESPACE, job_ref.name)

        clock.advance(61)
        new = make_reconciler(store, orchestrator, clock, operator_id="operator-new")
        result = await new.reconcile("default", "sync-one")
        assert result.requeue_after == 15

        resource = await store.get("default", "sync-one")
        assert resource.status.job_ref == job_ref
        assert resource.status.retry_count == 0
        job = await cluster.get_job(JOB_NAMESPACE, job_ref.name)
        assert job["metadata"]["labels"]["sync-id"] == job_ref.job_id

    async def test_existing_job_is_adopted(self, store, orchestrator, cluster, clock):
        old = make_reconciler(store, orchestrator, clock, operator_id="operator-old")
        await store.create(make_resource(direct=True))
        await settle(old)
        job_ref = (await store.get("default", "sync-one")).status.job_ref
        cluster.complete_job(JOB_NAMESPACE, job_ref.name)

        clock.advance(61)
        new = make_reconciler(store, orchestrator, clock, operator_id="operator-new")
        assert await new.reconcile("default", "sync-one") == DONE
        assert (await store.get("default", "sync-one")).status.phase == Phase.COMPLETED
        assert len(created_jobs(cluster)) == 1


@pytest.mark.asyncio
class TestDeletion:
    """Finalizer handling."""

    async def test_delete_removes_job_and_finalizer(self, store, reconciler, cluster):
        await store.create(make_resource(direct=True))
        await settle(reconciler)
        job_ref = (await store.get("default", "sync-one")).status.job_ref

        await store.delete("default", "sync-one")
        assert (await store.get("default", "sync-one")).being_deleted

        assert await reconciler.reconcile("default", "sync-one") == DONE
        assert ("delete_job", JOB_NAMESPACE, job_ref.name) in cluster.calls
        with pytest.raises(NotFoundError):
            await store.get("default", "sync-one")

    async def test_delete_with_job_already_gone(self, store, reconciler, cluster):
        await store.create(make_resource(direct=True))
        await settle(reconciler)
        job_ref = (await store.get("default", "sync-one")).status.job_ref
        await cluster.delete_job(JOB_NAMESPACE, job_ref.name)

        await store.delete("default", "sync-one")
        assert await reconciler.reconcile("default", "sync-one") == DONE
        with pytest.raises(NotFoundError):
            await store.get("default", "sync-one")

    async def test_job_delete_failure_keeps_finalizer(self, store, reconciler, cluster):
        await store.create(make_resource(direct=True))
        await settle(reconciler)
        cluster.inject_error("delete_job", SyncConnectionError("connection reset"))

        await store.delete("default", "sync-one")
        result = await reconciler.reconcile("default", "sync-one")
        assert result.requeue_after == 30
        resource = await store.get("default", "sync-one")
        assert FINALIZER in resource.metadata.finalizers

        assert await reconciler.reconcile("default", "sync-one") == DONE
        with pytest.raises(NotFoundError):
            await store.get("default", "sync-one")
