"""Tests for the job scheduler and job watches."""

import asyncio

import pytest

from jira_sync_operator.cluster.base import WatchEvent
from jira_sync_operator.cluster.memory import InMemoryCluster
from jira_sync_operator.errors import (
    ClusterAPIError,
    ConflictError,
    InternalError,
    NotFoundError,
    SyncTimeoutError,
    ValidationError,
)
from jira_sync_operator.jobs.scheduler import (
    JobScheduler,
    build_args,
    job_name_for,
    job_to_result,
)
from jira_sync_operator.jobs.types import (
    JobFilter,
    JobKind,
    JobMonitor,
    JobStatus,
    ResourceRequirements,
    WorkUnitConfig,
)
from jira_sync_operator.jobs.watch import JobWatch

from helpers import JOB_NAMESPACE, REPOSITORY


def make_config(job_id: str = "single-20240301-120000-aaaaaaaa", **overrides) -> WorkUnitConfig:
    """Create a work-unit config with optional overrides."""
    defaults = {
        "id": job_id,
        "kind": JobKind.SINGLE,
        "name": "Single Issue Sync: PROJ-1",
        "target": "PROJ-1",
        "repository": REPOSITORY,
        "namespace": JOB_NAMESPACE,
    }
    defaults.update(overrides)
    return WorkUnitConfig(**defaults)


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class SlowCluster(InMemoryCluster):
    """Cluster whose reads hang long enough to trip a deadline."""

    async def get_job(self, namespace, name):
        await asyncio.sleep(1)
        return await super().get_job(namespace, name)


class TestRender:
    """Manifest rendering without cluster calls."""

    def test_labels_annotations_and_env(self, scheduler):
        config = make_config(environment={"SYNC_RESOURCE": "default/sync-one"}, safe_mode=True)
        manifest = scheduler.render_job(config)

        meta = manifest["metadata"]
        assert meta["name"] == job_name_for(config.id)
        assert meta["namespace"] == JOB_NAMESPACE
        assert meta["labels"]["app"] == "jira-sync"
        assert meta["labels"]["sync-type"] == "single"
        assert meta["labels"]["sync-id"] == config.id
        assert meta["annotations"]["jira-sync/target"] == "PROJ-1"
        assert meta["annotations"]["jira-sync/repository"] == REPOSITORY

        pod_labels = manifest["spec"]["template"]["metadata"]["labels"]
        assert pod_labels["sync-id"] == config.id

        container = manifest["spec"]["template"]["spec"]["containers"][0]
        env = {e["name"]: e.get("value") for e in container["env"]}
        assert env["SYNC_JOB_ID"] == config.id
        assert env["SPIKE_SAFE_MODE"] == "true"
        assert env["SYNC_RESOURCE"] == "default/sync-one"
        assert container["args"] == ["sync", "--issues=PROJ-1", f"--repo={REPOSITORY}"]

    def test_overrides_shape(self, scheduler):
        config = make_config(
            kind=JobKind.BATCH,
            target="PROJ-1,PROJ-2",
            parallelism=4,
            completions=2,
            timeout_seconds=90,
            resources=ResourceRequirements(limits_memory="2Gi"),
            image="jira-sync:v9",
        )
        manifest = scheduler.render_job(config)
        spec = manifest["spec"]
        assert spec["parallelism"] == 4
        assert spec["completions"] == 2
        assert spec["activeDeadlineSeconds"] == 90
        container = spec["template"]["spec"]["containers"][0]
        assert container["image"] == "jira-sync:v9"
        assert container["resources"]["limits"]["memory"] == "2Gi"
        assert container["resources"]["limits"]["cpu"] == "1000m"

    def test_build_args_flags(self):
        config = make_config(
            kind=JobKind.JQL,
            target="project = PROJ",
            concurrency=3,
            rate_limit_ms=250,
            incremental=True,
            dry_run=True,
        )
        assert build_args(config) == [
            "sync",
            "--jql=project = PROJ",
            f"--repo={REPOSITORY}",
            "--concurrency=3",
            "--rate-limit=250ms",
            "--incremental",
            "--dry-run",
        ]

    def test_rejects_bad_id(self, scheduler):
        with pytest.raises(ValidationError) as exc_info:
            scheduler.render_job(make_config(job_id="Bad_ID"))
        assert exc_info.value.code == "JOB_ID_INVALID_CHARS"

    def test_long_ids_cannot_share_a_job_name(self, scheduler):
        prefix = "sync-" + "a" * 47
        for job_id in (f"{prefix}-1", f"{prefix}-2"):
            with pytest.raises(ValidationError) as exc_info:
                scheduler.render_job(make_config(job_id=job_id))
            assert exc_info.value.code == "JOB_ID_TOO_LONG"

        longest = "sync-" + "a" * 48
        manifest = scheduler.render_job(make_config(job_id=longest))
        assert manifest["metadata"]["name"] == f"jira-sync-{longest}"

    def test_rejects_missing_repository(self, scheduler):
        with pytest.raises(ValidationError) as exc_info:
            scheduler.render_job(make_config(repository=""))
        assert exc_info.value.code == "MISSING_FIELD"


@pytest.mark.asyncio
class TestJobLifecycle:
    """Create, observe, cancel and delete."""

    async def test_create_returns_pending(self, scheduler, cluster, clock):
        config = make_config()
        result = await scheduler.create_job(config)

        assert result.status == JobStatus.PENDING
        assert result.job_name == job_name_for(config.id)
        assert result.start_time == clock.now()
        assert ("create_job", JOB_NAMESPACE, result.job_name) in cluster.calls

    async def test_duplicate_create_conflicts(self, scheduler):
        await scheduler.create_job(make_config())
        with pytest.raises(ConflictError):
            await scheduler.create_job(make_config())

    async def test_status_derivation(self, scheduler, cluster):
        config = make_config()
        await scheduler.create_job(config)
        name = job_name_for(config.id)

        assert (await scheduler.get_job(config.id)).status == JobStatus.PENDING

        cluster.spawn_pods(JOB_NAMESPACE, name)
        running = await scheduler.get_job(config.id)
        assert running.status == JobStatus.RUNNING
        assert running.message == "Running with 1 active pods"

        cluster.complete_job(JOB_NAMESPACE, name)
        done = await scheduler.get_job(config.id)
        assert done.status == JobStatus.SUCCEEDED
        assert done.kind == JobKind.SINGLE
        assert done.job_id == config.id
        assert done.duration_seconds is not None
        assert done.successful_issues == 1

    async def test_completed_job_reads_are_stable(self, scheduler, cluster):
        config = make_config()
        await scheduler.create_job(config)
        cluster.complete_job(JOB_NAMESPACE, job_name_for(config.id))
        writes = list(cluster.calls)

        results = [await scheduler.get_job(config.id) for _ in range(3)]

        first = results[0]
        assert first.status == JobStatus.SUCCEEDED
        assert first.completion_time is not None
        for result in results[1:]:
            assert result.status == first.status
            assert result.duration_seconds == first.duration_seconds
            assert result.completion_time == first.completion_time
            assert (
                result.total_issues,
                result.processed_issues,
                result.successful_issues,
                result.failed_issues,
            ) == (
                first.total_issues,
                first.processed_issues,
                first.successful_issues,
                first.failed_issues,
            )
        assert cluster.calls == writes

    async def test_failed_job_carries_message(self, scheduler, cluster):
        config = make_config()
        await scheduler.create_job(config)
        cluster.fail_job(JOB_NAMESPACE, job_name_for(config.id), "worker exited with code 2")

        result = await scheduler.get_job(config.id)
        assert result.status == JobStatus.FAILED
        assert result.error_message == "worker exited with code 2"
        assert result.errors == ["worker exited with code 2"]

    async def test_progress_annotations(self, scheduler, cluster):
        config = make_config(kind=JobKind.BATCH, target="PROJ-1,PROJ-2,PROJ-3")
        await scheduler.create_job(config)
        cluster.annotate_job(
            JOB_NAMESPACE,
            job_name_for(config.id),
            {
                "jira-sync/total-issues": "3",
                "jira-sync/processed-issues": "2",
                "jira-sync/successful-issues": "1",
                "jira-sync/failed-issues": "1",
                "jira-sync/processed-files": "PROJ-1.md,PROJ-2.md",
            },
        )
        result = await scheduler.get_job(config.id)
        assert result.total_issues == 3
        assert result.processed_issues == 2
        assert result.successful_issues == 1
        assert result.failed_issues == 1
        assert result.processed_files == ["PROJ-1.md", "PROJ-2.md"]

    async def test_get_missing(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.get_job("single-20240301-120000-zzzzzzzz")

    async def test_delete(self, scheduler, cluster):
        config = make_config(kind=JobKind.BATCH, target="PROJ-1,PROJ-2")
        await scheduler.create_job(config)
        cluster.spawn_pods(JOB_NAMESPACE, job_name_for(config.id))

        await scheduler.delete_job(config.id)

        with pytest.raises(NotFoundError):
            await scheduler.get_job(config.id)
        assert await cluster.list_pods(JOB_NAMESPACE) == []

    async def test_cancel_stops_pods(self, scheduler, cluster):
        config = make_config(kind=JobKind.BATCH, target="PROJ-1,PROJ-2")
        await scheduler.create_job(config)
        name = job_name_for(config.id)
        assert len(cluster.spawn_pods(JOB_NAMESPACE, name)) == 2

        await scheduler.cancel_job(config.id)

        job = await cluster.get_job(JOB_NAMESPACE, name)
        assert job["spec"]["parallelism"] == 0
        assert await cluster.list_pods(JOB_NAMESPACE, {"job-name": name}) == []
        assert cluster.spawn_pods(JOB_NAMESPACE, name) == []
        assert (await scheduler.get_job(config.id)).status == JobStatus.PENDING

    async def test_cancel_rereads_after_conflict(self, scheduler, cluster):
        config = make_config()
        await scheduler.create_job(config)
        cluster.inject_error("update_job", ConflictError("stale"), times=2)

        await scheduler.cancel_job(config.id)

        job = await cluster.get_job(JOB_NAMESPACE, job_name_for(config.id))
        assert job["spec"]["parallelism"] == 0
        assert [c[0] for c in cluster.calls].count("update_job") == 3

    async def test_cancel_gives_up_after_repeated_conflicts(self, scheduler, cluster):
        config = make_config()
        await scheduler.create_job(config)
        cluster.inject_error("update_job", ConflictError("stale"), times=3)

        with pytest.raises(ConflictError):
            await scheduler.cancel_job(config.id)

    async def test_logs(self, scheduler, cluster):
        config = make_config()
        await scheduler.create_job(config)
        name = job_name_for(config.id)

        with pytest.raises(NotFoundError):
            await scheduler.get_job_logs(config.id)

        [pod] = cluster.spawn_pods(JOB_NAMESPACE, name)
        cluster.set_pod_log(JOB_NAMESPACE, pod, "synced PROJ-1\n")
        assert await scheduler.get_job_logs(config.id) == "synced PROJ-1\n"

    async def test_deadline_raises_timeout(self, clock):
        scheduler = JobScheduler(SlowCluster(), namespace=JOB_NAMESPACE, clock=clock)
        with pytest.raises(SyncTimeoutError) as exc_info:
            await scheduler.get_job("single-20240301-120000-aaaaaaaa", timeout=0.01)
        assert exc_info.value.timeout == 0.01
        assert exc_info.value.job_id == "single-20240301-120000-aaaaaaaa"

    async def test_cluster_errors_propagate(self, scheduler, cluster):
        cluster.inject_error("create_job", ClusterAPIError("quota check failed"))
        with pytest.raises(ClusterAPIError):
            await scheduler.create_job(make_config())


@pytest.mark.asyncio
class TestListing:
    """Filtering, paging and queue counts."""

    async def _populate(self, scheduler, cluster):
        configs = [
            make_config(job_id="batch-20240301-120000-aaaaaaa1", kind=JobKind.BATCH, target="PROJ-1,PROJ-2"),
            make_config(job_id="batch-20240301-120000-aaaaaaa2", kind=JobKind.BATCH, target="PROJ-3,PROJ-4"),
            make_config(job_id="jql-20240301-120000-aaaaaaa3", kind=JobKind.JQL, target="project = PROJ"),
            make_config(job_id="single-20240301-120000-aaaaaaa4"),
        ]
        for config in configs:
            await scheduler.create_job(config)
        cluster.spawn_pods(JOB_NAMESPACE, job_name_for(configs[0].id))
        cluster.complete_job(JOB_NAMESPACE, job_name_for(configs[1].id))
        cluster.fail_job(JOB_NAMESPACE, job_name_for(configs[2].id))
        return configs

    async def test_list_all_in_creation_order(self, scheduler, cluster):
        configs = await self._populate(scheduler, cluster)
        results = await scheduler.list_jobs()
        assert [r.job_id for r in results] == [c.id for c in configs]

    async def test_kind_and_status_are_independent(self, scheduler, cluster):
        await self._populate(scheduler, cluster)

        batch = await scheduler.list_jobs(JobFilter(kinds=[JobKind.BATCH]))
        assert {r.status for r in batch} == {JobStatus.RUNNING, JobStatus.SUCCEEDED}

        finished = await scheduler.list_jobs(
            JobFilter(statuses=[JobStatus.SUCCEEDED, JobStatus.FAILED])
        )
        assert {r.kind for r in finished} == {JobKind.BATCH, JobKind.JQL}

        both = await scheduler.list_jobs(
            JobFilter(kinds=[JobKind.BATCH], statuses=[JobStatus.SUCCEEDED])
        )
        assert [r.job_id for r in both] == ["batch-20240301-120000-aaaaaaa2"]

    async def test_offset_and_limit(self, scheduler, cluster):
        configs = await self._populate(scheduler, cluster)
        page = await scheduler.list_jobs(JobFilter(offset=1, limit=2))
        assert [r.job_id for r in page] == [configs[1].id, configs[2].id]

    async def test_ignores_unmanaged_jobs(self, scheduler, cluster):
        await cluster.create_job(JOB_NAMESPACE, {"metadata": {"name": "other", "labels": {"app": "x"}}})
        assert await scheduler.list_jobs() == []

    async def test_queue_status(self, scheduler, cluster):
        await self._populate(scheduler, cluster)
        counts = await scheduler.get_queue_status()
        assert counts.total == 4
        assert counts.pending == 1
        assert counts.running == 1
        assert counts.succeeded == 1
        assert counts.failed == 1


class TestJobToResult:
    """Translating raw Job objects."""

    def test_counts_fall_back_to_pod_totals(self):
        job = {
            "metadata": {
                "name": "jira-sync-x",
                "namespace": JOB_NAMESPACE,
                "labels": {"sync-type": "batch", "sync-id": "batch-1-x"},
            },
            "status": {"succeeded": 2, "failed": 1, "active": 0},
        }
        result = job_to_result(job)
        assert result.kind == JobKind.BATCH
        assert result.total_issues == 3
        assert result.processed_issues == 3
        assert result.successful_issues == 2
        assert result.failed_issues == 1

    def test_unknown_kind_label(self):
        result = job_to_result({"metadata": {"name": "x", "labels": {"sync-type": "nightly"}}})
        assert result.kind is None
        assert result.status == JobStatus.PENDING
        assert result.job_id == "x"

    def test_bad_annotation_ignored(self):
        job = {
            "metadata": {"name": "x", "annotations": {"jira-sync/total-issues": "many"}},
            "status": {"succeeded": 1},
        }
        assert job_to_result(job).total_issues == 1


@pytest.mark.asyncio
class TestWatch:
    """Streaming job status."""

    async def test_until_terminal(self, scheduler, cluster):
        config = make_config()
        await scheduler.create_job(config)
        name = job_name_for(config.id)

        watch = scheduler.watch_job(config.id, until_terminal=True)
        await settle()
        cluster.spawn_pods(JOB_NAMESPACE, name)
        cluster.complete_job(JOB_NAMESPACE, name)

        statuses = [m.status async for m in watch]
        assert statuses == [JobStatus.PENDING, JobStatus.RUNNING, JobStatus.SUCCEEDED]
        assert watch.closed
        assert watch.error is None

    async def test_deleted_job_closes_watch(self, scheduler, cluster):
        config = make_config()
        await scheduler.create_job(config)

        watch = scheduler.watch_job(config.id)
        await settle()
        await scheduler.delete_job(config.id)

        events = [m async for m in watch]
        assert [m.status for m in events] == [JobStatus.PENDING]
        assert watch.closed

    async def test_deadline_closes_watch(self, scheduler):
        config = make_config()
        await scheduler.create_job(config)

        watch = scheduler.watch_job(config.id, timeout=0.05)
        events = [m async for m in watch]
        assert len(events) == 1
        assert watch.closed

    async def test_stream_error_is_kept(self, scheduler, cluster):
        config = make_config()
        await scheduler.create_job(config)
        cluster.inject_error("watch_jobs", ClusterAPIError("watch expired"))

        watch = scheduler.watch_job(config.id)
        events = [m async for m in watch]
        assert events == []
        assert isinstance(watch.error, ClusterAPIError)

    async def test_unexpected_stream_failure_is_typed(self, clock):
        async def events():
            yield WatchEvent(type="ADDED", object={})
            raise ValueError("Expecting value: line 1 column 1")

        def translate(event):
            return JobMonitor(job_id="job-a", status=JobStatus.RUNNING, timestamp=clock.now())

        watch = JobWatch("job-a", events(), translate).start()
        received = [m async for m in watch]
        await watch.aclose()

        assert len(received) == 1
        assert watch.closed
        assert isinstance(watch.error, InternalError)
        assert isinstance(watch.error.cause, ValueError)
        assert watch.error.job_id == "job-a"

    async def test_slow_consumer_applies_backpressure(self, cluster, clock):
        scheduler = JobScheduler(cluster, namespace=JOB_NAMESPACE, clock=clock, watch_buffer_size=2)
        config = make_config()
        await scheduler.create_job(config)
        name = job_name_for(config.id)

        watch = scheduler.watch_job(config.id)
        await settle()
        for index in range(5):
            cluster.annotate_job(JOB_NAMESPACE, name, {"jira-sync/processed-issues": str(index)})
        await settle(20)

        assert watch.buffered == 2
        assert not watch.closed

        received = []
        async for monitor in watch:
            received.append(monitor)
            if len(received) == 6:
                break
        await watch.aclose()
        assert len(received) == 6
        assert watch.closed

    async def test_rejects_bad_id(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.watch_job("--")
