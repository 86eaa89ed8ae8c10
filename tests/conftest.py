"""Test configuration and fixtures."""

from datetime import datetime, timezone

import pytest

from jira_sync_operator.clock import ManualClock
from jira_sync_operator.cluster.memory import InMemoryCluster
from jira_sync_operator.jobs.orchestrator import JobConfiguration, SyncJobOrchestrator
from jira_sync_operator.jobs.scheduler import JobScheduler
from jira_sync_operator.jobs.templates import TemplateCatalog
from jira_sync_operator.resources.store import MemoryResourceStore

from helpers import JOB_NAMESPACE


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def cluster() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture
def scheduler(cluster, clock) -> JobScheduler:
    return JobScheduler(cluster, catalog=TemplateCatalog(), namespace=JOB_NAMESPACE, clock=clock)


@pytest.fixture
def orchestrator(scheduler, clock) -> SyncJobOrchestrator:
    return SyncJobOrchestrator(
        scheduler,
        configuration=JobConfiguration(namespace=JOB_NAMESPACE, image="jira-sync:test"),
        clock=clock,
    )


@pytest.fixture
def store() -> MemoryResourceStore:
    return MemoryResourceStore()
