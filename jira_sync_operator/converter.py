"""
Declarative-resource converter.

Turns transport-layer sync intents into JIRASync resources. Validation here
is independent of whatever the transport already checked:

- issue keys:  ^[A-Z][A-Z0-9]*-[1-9][0-9]*$, 4..50 characters
- repository:  https://host/owner/repo[.git] or git@host:owner/repo[.git],
               at most 500 characters, no "..", no file:/javascript:/data:/ftp:
- JQL:         1..1000 characters, none of ; \\ < > " or control characters
- batch:       1..100 issue keys
- concurrency and parallelism: 0..10
- incremental and force are mutually exclusive

Defaults applied to the spec: branch "main", path "/", priority "normal",
timeout 1800s, retry policy {maxRetries: 3, backoffMultiplier: 2.0,
initialDelay: 30s}.

Request-only metadata (safe mode, async, source, issue count, parallelism,
query) goes into annotations, never into the spec.
"""

from __future__ import annotations

import re
import secrets
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .clock import Clock, SystemClock
from .errors import ValidationError
from .resources.models import (
    DISPATCH_LABEL,
    Destination,
    ObjectMeta,
    RetryPolicy,
    SyncResource,
    SyncSpec,
    SyncTarget,
    SyncType,
)

ISSUE_KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9]*-[1-9][0-9]*$")
REPOSITORY_PATTERN = re.compile(
    r"^(https://[a-zA-Z0-9][a-zA-Z0-9.-]*[a-zA-Z0-9]/[a-zA-Z0-9_.-]+/[a-zA-Z0-9_.-]+(\.git)?"
    r"|git@[a-zA-Z0-9][a-zA-Z0-9.-]*[a-zA-Z0-9]:[a-zA-Z0-9_.-]+/[a-zA-Z0-9_.-]+(\.git)?)$"
)
JQL_PATTERN = re.compile(r'^[^;\\<>"\x00-\x1f]*$')
FORBIDDEN_SCHEMES = ("file://", "javascript:", "data:", "ftp://")

MIN_ISSUE_KEY_LENGTH = 4
MAX_ISSUE_KEY_LENGTH = 50
MAX_REPOSITORY_LENGTH = 500
MAX_JQL_LENGTH = 1000
MAX_BATCH_SIZE = 100
MAX_KNOB_VALUE = 10

DEFAULT_NAMESPACE = "default"
DEFAULT_BRANCH = "main"
DEFAULT_PATH = "/"
DEFAULT_PRIORITY = "normal"
DEFAULT_TIMEOUT_SECONDS = 1800

SAFE_MODE_ANNOTATION = "sync.jira.io/safe-mode"
ASYNC_ANNOTATION = "sync.jira.io/async"
SOURCE_ANNOTATION = "sync.jira.io/source"
ISSUE_COUNT_ANNOTATION = "sync.jira.io/issue-count"
PARALLELISM_ANNOTATION = "sync.jira.io/parallelism"
JQL_ANNOTATION = "sync.jira.io/jql-query"

INCREMENTAL_LABEL = "sync.jira.io/incremental"
FORCE_LABEL = "sync.jira.io/force"
DRY_RUN_LABEL = "sync.jira.io/dry-run"
INCLUDE_LINKS_LABEL = "sync.jira.io/include-links"
CONCURRENCY_LABEL = "sync.jira.io/concurrency"
RATE_LIMIT_LABEL = "sync.jira.io/rate-limit"

SOURCE_SINGLE = "api-single-sync"
SOURCE_BATCH = "api-batch-sync"
SOURCE_JQL = "api-jql-sync"


class SyncOptions(BaseModel):
    """Per-request sync knobs."""

    concurrency: int = 0
    rate_limit_ms: int = 0
    incremental: bool = False
    force: bool = False
    dry_run: bool = False
    include_links: bool = False


class _Intent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repository: str = ""
    options: SyncOptions = Field(default_factory=SyncOptions)
    safe_mode: bool = False
    run_async: bool = Field(default=True, alias="async")
    dispatch: Optional[str] = None


class SingleSyncIntent(_Intent):
    issue_key: str = ""


class BatchSyncIntent(_Intent):
    issue_keys: List[str] = Field(default_factory=list)
    parallelism: int = 0


class JQLSyncIntent(_Intent):
    jql: str = ""
    parallelism: int = 0


def _invalid(message: str, field: str, value, code: str) -> ValidationError:
    return ValidationError(message, field=field, value=value, code=code)


def validate_issue_key(key: str) -> None:
    if not MIN_ISSUE_KEY_LENGTH <= len(key) <= MAX_ISSUE_KEY_LENGTH:
        raise _invalid(
            f"issue key must be {MIN_ISSUE_KEY_LENGTH}-{MAX_ISSUE_KEY_LENGTH} characters",
            "issue_key", key, "INVALID_ISSUE_KEY",
        )
    if not ISSUE_KEY_PATTERN.fullmatch(key):
        raise _invalid(
            f"invalid issue key format: {key} (expected PROJECT-123)",
            "issue_key", key, "INVALID_ISSUE_KEY",
        )


def validate_repository(repository: str) -> None:
    if not repository:
        raise _invalid("repository is required", "repository", repository, "MISSING_REPOSITORY")
    if len(repository) > MAX_REPOSITORY_LENGTH:
        raise _invalid(
            f"repository must be at most {MAX_REPOSITORY_LENGTH} characters",
            "repository", repository, "INVALID_REPOSITORY",
        )
    lowered = repository.lower()
    if lowered.startswith(FORBIDDEN_SCHEMES):
        raise _invalid(
            "repository scheme is not allowed (use https:// or git@)",
            "repository", repository, "FORBIDDEN_REPOSITORY_SCHEME",
        )
    if ".." in repository:
        raise _invalid(
            "repository must not contain path traversal sequences",
            "repository", repository, "INVALID_REPOSITORY",
        )
    if not REPOSITORY_PATTERN.fullmatch(repository):
        raise _invalid(
            "repository must be an HTTPS or SSH Git URL",
            "repository", repository, "INVALID_REPOSITORY",
        )


def validate_jql(query: str) -> None:
    if not 1 <= len(query) <= MAX_JQL_LENGTH:
        raise _invalid(
            f"JQL query must be 1-{MAX_JQL_LENGTH} characters", "jql", query, "INVALID_JQL",
        )
    if not JQL_PATTERN.fullmatch(query):
        raise _invalid(
            "JQL query contains forbidden characters", "jql", query, "INVALID_JQL",
        )


def _validate_knob(value: int, field: str) -> None:
    if not 0 <= value <= MAX_KNOB_VALUE:
        raise _invalid(
            f"{field} must be between 0 and {MAX_KNOB_VALUE}", field, value, "INVALID_RANGE",
        )


def validate_options(options: SyncOptions) -> None:
    if options.incremental and options.force:
        raise _invalid(
            "incremental and force options are mutually exclusive",
            "options.force", True, "CONFLICTING_OPTIONS",
        )
    _validate_knob(options.concurrency, "concurrency")
    if options.rate_limit_ms < 0:
        raise _invalid("rate limit cannot be negative", "rate_limit_ms", options.rate_limit_ms, "INVALID_RANGE")


def validate_issue_keys(keys: List[str]) -> None:
    if not keys:
        raise _invalid("at least one issue key is required", "issue_keys", keys, "MISSING_ISSUE_KEYS")
    if len(keys) > MAX_BATCH_SIZE:
        raise _invalid(
            f"batch size cannot exceed {MAX_BATCH_SIZE} issues",
            "issue_keys", len(keys), "BATCH_TOO_LARGE",
        )
    for key in keys:
        validate_issue_key(key)


class ResourceConverter:
    """Builds validated JIRASync resources from sync intents."""

    def __init__(
        self,
        namespace: str = DEFAULT_NAMESPACE,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self.namespace = namespace
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or SystemClock()

    def _resource(
        self,
        sync_type: SyncType,
        target: SyncTarget,
        intent: _Intent,
        source: str,
        extra_annotations: Dict[str, str],
    ) -> SyncResource:
        stamp = int(self.clock.now().timestamp())
        suffix = "".join(secrets.choice("abcdefghijklmnopqrstuvwxyz0123456789") for _ in range(4))
        name = f"jirasync-{sync_type.value}-{stamp}-{suffix}"

        annotations = {
            SAFE_MODE_ANNOTATION: str(intent.safe_mode).lower(),
            ASYNC_ANNOTATION: str(intent.run_async).lower(),
            SOURCE_ANNOTATION: source,
        }
        annotations.update(extra_annotations)

        resource = SyncResource(
            metadata=ObjectMeta(
                name=name,
                namespace=self.namespace,
                labels={
                    "app.kubernetes.io/name": "jira-sync-operator",
                    "app.kubernetes.io/component": "sync-job",
                    "sync.jira.io/type": sync_type.value,
                    "sync.jira.io/source": "api",
                },
                annotations=annotations,
            ),
            spec=SyncSpec(
                sync_type=sync_type,
                target=target,
                destination=Destination(
                    repository=intent.repository,
                    branch=DEFAULT_BRANCH,
                    path=DEFAULT_PATH,
                ),
                priority=DEFAULT_PRIORITY,
                timeout=DEFAULT_TIMEOUT_SECONDS,
                retry_policy=self.retry_policy.model_copy(),
                labels=self._option_labels(intent),
            ),
        )
        validate_conversion(resource)
        return resource

    @staticmethod
    def _option_labels(intent: _Intent) -> Dict[str, str]:
        options = intent.options
        labels = {}
        if options.incremental:
            labels[INCREMENTAL_LABEL] = "true"
        if options.force:
            labels[FORCE_LABEL] = "true"
        if options.dry_run:
            labels[DRY_RUN_LABEL] = "true"
        if options.include_links:
            labels[INCLUDE_LINKS_LABEL] = "true"
        if options.concurrency > 0:
            labels[CONCURRENCY_LABEL] = str(options.concurrency)
        if options.rate_limit_ms > 0:
            labels[RATE_LIMIT_LABEL] = str(options.rate_limit_ms)
        if intent.dispatch:
            labels[DISPATCH_LABEL] = intent.dispatch
        return labels

    def convert_single(self, intent: SingleSyncIntent) -> SyncResource:
        validate_issue_key(intent.issue_key)
        validate_repository(intent.repository)
        validate_options(intent.options)
        return self._resource(
            SyncType.SINGLE,
            SyncTarget(issue_keys=[intent.issue_key]),
            intent,
            SOURCE_SINGLE,
            {},
        )

    def convert_batch(self, intent: BatchSyncIntent) -> SyncResource:
        validate_issue_keys(intent.issue_keys)
        validate_repository(intent.repository)
        validate_options(intent.options)
        _validate_knob(intent.parallelism, "parallelism")
        extra = {ISSUE_COUNT_ANNOTATION: str(len(intent.issue_keys))}
        if intent.parallelism > 0:
            extra[PARALLELISM_ANNOTATION] = str(intent.parallelism)
        return self._resource(
            SyncType.BATCH,
            SyncTarget(issue_keys=list(intent.issue_keys)),
            intent,
            SOURCE_BATCH,
            extra,
        )

    def convert_jql(self, intent: JQLSyncIntent) -> SyncResource:
        validate_jql(intent.jql)
        validate_repository(intent.repository)
        validate_options(intent.options)
        _validate_knob(intent.parallelism, "parallelism")
        extra = {JQL_ANNOTATION: intent.jql}
        if intent.parallelism > 0:
            extra[PARALLELISM_ANNOTATION] = str(intent.parallelism)
        return self._resource(
            SyncType.JQL,
            SyncTarget(jql_query=intent.jql),
            intent,
            SOURCE_JQL,
            extra,
        )


def validate_conversion(resource: Optional[SyncResource]) -> None:
    """
    Final consistency check of a converted resource.

    Independent of the field-level checks: the target must be present for
    the sync type and the repository must be set.
    """
    if resource is None:
        raise _invalid("resource is nil", "resource", None, "INVALID_RESOURCE")
    spec = resource.spec
    if spec is None:
        raise _invalid("resource spec is missing", "spec", None, "INVALID_RESOURCE")

    sync_type = spec.sync_type
    if sync_type not in set(SyncType):
        raise _invalid(f"invalid sync type: {sync_type}", "syncType", sync_type, "INVALID_SYNC_TYPE")

    target = spec.target
    if sync_type in (SyncType.SINGLE, SyncType.BATCH) and not target.issue_keys:
        raise _invalid(
            f"issueKeys required for {sync_type.value} sync", "target.issueKeys", None, "MISSING_TARGET",
        )
    if sync_type == SyncType.SINGLE and len(target.issue_keys) != 1:
        raise _invalid(
            "single sync takes exactly one issue key", "target.issueKeys", target.issue_keys, "INVALID_TARGET",
        )
    if sync_type == SyncType.JQL and not target.jql_query:
        raise _invalid("jqlQuery required for jql sync", "target.jqlQuery", None, "MISSING_TARGET")
    if sync_type == SyncType.INCREMENTAL and not target.project_key:
        raise _invalid(
            "projectKey required for incremental sync", "target.projectKey", None, "MISSING_TARGET",
        )

    if not spec.destination or not spec.destination.repository:
        raise _invalid(
            "destination repository is required", "destination.repository", None, "MISSING_REPOSITORY",
        )
