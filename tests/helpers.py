"""Shared builders for tests."""

from typing import List, Optional

from jira_sync_operator.resources.models import (
    DISPATCH_DIRECT,
    DISPATCH_LABEL,
    Destination,
    ObjectMeta,
    RetryPolicy,
    SyncResource,
    SyncSpec,
    SyncTarget,
    SyncType,
)

JOB_NAMESPACE = "jira-sync"
REPOSITORY = "https://github.com/example/issues.git"


def make_resource(
    name: str = "sync-one",
    namespace: str = "default",
    sync_type: SyncType = SyncType.SINGLE,
    issue_keys: Optional[List[str]] = None,
    jql: Optional[str] = None,
    project_key: Optional[str] = None,
    repository: str = REPOSITORY,
    retry_policy: Optional[RetryPolicy] = None,
    direct: bool = False,
    labels: Optional[dict] = None,
    annotations: Optional[dict] = None,
) -> SyncResource:
    """Create a JIRASync resource with optional overrides."""
    if issue_keys is None and sync_type in (SyncType.SINGLE, SyncType.BATCH):
        issue_keys = ["PROJ-1"]
    spec_labels = dict(labels or {})
    if direct:
        spec_labels[DISPATCH_LABEL] = DISPATCH_DIRECT
    return SyncResource(
        metadata=ObjectMeta(name=name, namespace=namespace, annotations=dict(annotations or {})),
        spec=SyncSpec(
            sync_type=sync_type,
            target=SyncTarget(issue_keys=issue_keys or [], jql_query=jql, project_key=project_key),
            destination=Destination(repository=repository),
            retry_policy=retry_policy or RetryPolicy(),
            labels=spec_labels,
        ),
    )
