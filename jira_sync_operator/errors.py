"""
Error taxonomy for sync jobs.

Every failure raised by the scheduler, the orchestrator, the converter or the
control loop is a SyncError carrying a closed ErrorKind. Retry and severity
decisions are table lookups on that kind, never isinstance chains.

Retryable kinds: connection, timeout, resource, cluster_api.

Severity:
- critical: validation, authentication, template, internal
- high: timeout, resource, execution
- medium: connection, cluster_api
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Closed set of failure categories."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    CONNECTION = "connection"
    CLUSTER_API = "cluster_api"
    TIMEOUT = "timeout"
    RESOURCE = "resource"
    TEMPLATE = "template"
    EXECUTION = "execution"
    INTERNAL = "internal"


class Severity(str, Enum):
    """How urgently a failure needs attention."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.CONNECTION,
        ErrorKind.TIMEOUT,
        ErrorKind.RESOURCE,
        ErrorKind.CLUSTER_API,
    }
)

SEVERITY_BY_KIND: Dict[ErrorKind, Severity] = {
    ErrorKind.VALIDATION: Severity.CRITICAL,
    ErrorKind.AUTHENTICATION: Severity.CRITICAL,
    ErrorKind.TEMPLATE: Severity.CRITICAL,
    ErrorKind.INTERNAL: Severity.CRITICAL,
    ErrorKind.TIMEOUT: Severity.HIGH,
    ErrorKind.RESOURCE: Severity.HIGH,
    ErrorKind.EXECUTION: Severity.HIGH,
    ErrorKind.CONNECTION: Severity.MEDIUM,
    ErrorKind.CLUSTER_API: Severity.MEDIUM,
}

SUGGESTIONS: Dict[ErrorKind, List[str]] = {
    ErrorKind.VALIDATION: [
        "Check job configuration parameters",
        "Verify required fields are provided",
        "Ensure values are in correct format",
    ],
    ErrorKind.AUTHENTICATION: [
        "Verify JIRA credentials are correct",
        "Check if token has expired",
        "Ensure proper permissions are granted",
    ],
    ErrorKind.CONNECTION: [
        "Check network connectivity",
        "Verify JIRA server is accessible",
        "Check firewall and proxy settings",
    ],
    ErrorKind.CLUSTER_API: [
        "Check Kubernetes cluster status",
        "Verify namespace and permissions",
        "Check resource quotas",
    ],
    ErrorKind.TIMEOUT: [
        "Consider increasing timeout value",
        "Check if operation is taking longer than expected",
        "Verify target system performance",
    ],
    ErrorKind.RESOURCE: [
        "Check cluster resource availability",
        "Consider reducing resource requests",
        "Scale cluster if needed",
    ],
    ErrorKind.TEMPLATE: [
        "Verify job template is valid",
        "Check template file exists and is readable",
        "Validate template syntax",
    ],
    ErrorKind.EXECUTION: [
        "Check job logs for detailed error information",
        "Verify container image and command",
        "Check volume mounts and permissions",
    ],
}

DEFAULT_SUGGESTIONS = [
    "Contact system administrator",
    "Check system logs for more details",
]


def is_retryable(kind: ErrorKind) -> bool:
    """Whether failures of this kind are worth another attempt."""
    return ErrorKind(kind) in RETRYABLE_KINDS


def severity(kind: ErrorKind) -> Severity:
    """Severity for a kind."""
    return SEVERITY_BY_KIND[ErrorKind(kind)]


def suggestions_for(kind: ErrorKind) -> List[str]:
    """Remediation hints for a kind (a fresh list each call)."""
    return list(SUGGESTIONS.get(ErrorKind(kind), DEFAULT_SUGGESTIONS))


class SyncError(Exception):
    """
    Base class for all sync job failures.

    Attributes:
        kind: Failure category
        message: Human-readable description
        job_id: Identifier of the work unit or resource involved, if any
        timestamp: When the error was raised
        cause: Underlying exception, if any
        details: Kind-specific structured fields
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        job_id: str = "",
        cause: Optional[BaseException] = None,
        timestamp: Optional[datetime] = None,
        **details: Any,
    ):
        self.message = message
        self.job_id = job_id
        self.cause = cause
        self.timestamp = timestamp or datetime.now(timezone.utc)
        self.details = details
        super().__init__(self._format())

    def _format(self) -> str:
        text = f"{self.kind.value} error: {self.message}"
        if self.job_id:
            text = f"{text} (job {self.job_id})"
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        return text

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)

    @property
    def severity(self) -> Severity:
        return severity(self.kind)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "type": self.kind.value,
            "message": self.message,
            "job_id": self.job_id,
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details),
        }


class ValidationError(SyncError):
    """Malformed input. Never retried.

    Attributes:
        code: Stable machine-readable error code (e.g. INVALID_ISSUE_KEY)
        field: Offending field name
        value: Offending value
    """

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        field: str = "",
        value: Any = None,
        code: str = "VALIDATION_FAILED",
        job_id: str = "",
        cause: Optional[BaseException] = None,
    ):
        self.code = code
        self.field = field
        self.value = value
        super().__init__(message, job_id=job_id, cause=cause, field=field, code=code)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["code"] = self.code
        return data


class AuthenticationError(SyncError):
    kind = ErrorKind.AUTHENTICATION


class SyncConnectionError(SyncError):
    """Could not reach a remote system."""

    kind = ErrorKind.CONNECTION

    def __init__(self, message: str, target: str = "", protocol: str = "", **kwargs: Any):
        self.target = target
        self.protocol = protocol
        super().__init__(message, target=target, protocol=protocol, **kwargs)


class ClusterAPIError(SyncError):
    """A cluster API call failed."""

    kind = ErrorKind.CLUSTER_API

    def __init__(self, message: str, operation: str = "", resource: str = "", **kwargs: Any):
        self.operation = operation
        self.resource = resource
        super().__init__(message, operation=operation, resource=resource, **kwargs)


class NotFoundError(ClusterAPIError):
    """The addressed object does not exist."""


class ConflictError(ClusterAPIError):
    """Optimistic-concurrency write rejected: the object changed since it was read."""


class SyncTimeoutError(SyncError):
    kind = ErrorKind.TIMEOUT

    def __init__(
        self,
        message: str,
        timeout: Optional[float] = None,
        elapsed: Optional[float] = None,
        **kwargs: Any,
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        super().__init__(message, timeout=timeout, elapsed=elapsed, **kwargs)


class ResourceError(SyncError):
    """Quota or capacity exhausted."""

    kind = ErrorKind.RESOURCE

    def __init__(
        self,
        message: str,
        resource_type: str = "",
        requested: str = "",
        available: str = "",
        **kwargs: Any,
    ):
        self.resource_type = resource_type
        self.requested = requested
        self.available = available
        super().__init__(
            message,
            resource_type=resource_type,
            requested=requested,
            available=available,
            **kwargs,
        )


class TemplateError(SyncError):
    kind = ErrorKind.TEMPLATE

    def __init__(self, message: str, job_type: str = "", template_path: str = "", **kwargs: Any):
        self.job_type = job_type
        self.template_path = template_path
        super().__init__(message, job_type=job_type, template_path=template_path, **kwargs)


class ExecutionError(SyncError):
    """The work unit's process exited unsuccessfully."""

    kind = ErrorKind.EXECUTION

    def __init__(
        self,
        message: str,
        pod_name: str = "",
        container: str = "",
        exit_code: Optional[int] = None,
        logs: str = "",
        **kwargs: Any,
    ):
        self.pod_name = pod_name
        self.container = container
        self.exit_code = exit_code
        self.logs = logs
        super().__init__(
            message,
            pod_name=pod_name,
            container=container,
            exit_code=exit_code,
            **kwargs,
        )


class InternalError(SyncError):
    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, component: str = "", operation: str = "", **kwargs: Any):
        self.component = component
        self.operation = operation
        super().__init__(message, component=component, operation=operation, **kwargs)


def kind_of(err: BaseException) -> ErrorKind:
    """Kind of an arbitrary exception; anything foreign is internal."""
    if isinstance(err, SyncError):
        return err.kind
    return ErrorKind.INTERNAL


def summarize_error(err: BaseException) -> Dict[str, Any]:
    """
    Stable, user-facing summary of an error.

    Only the work-unit/resource identifier is exposed; pod names, container
    logs and other cluster internals stay in `details` and are not copied.
    """
    kind = kind_of(err)
    if isinstance(err, SyncError):
        message = err.message
        job_id = err.job_id
        timestamp = err.timestamp
    else:
        message = str(err) or err.__class__.__name__
        job_id = ""
        timestamp = datetime.now(timezone.utc)

    return {
        "type": kind.value,
        "severity": severity(kind).value,
        "message": message,
        "retryable": is_retryable(kind),
        "timestamp": timestamp.isoformat(),
        "job_id": job_id,
        "suggestions": suggestions_for(kind),
    }
