"""
Resource template catalog.

Each work kind has a default cluster Job manifest (batch/v1) carrying its
resource shape: CPU/memory, parallelism, completions and deadline. The
scheduler renders a concrete manifest by overlaying per-request settings on
a copy of the template.

Built-in shapes:
- single: deadline 600s, backoffLimit 3, cpu 100m/500m, memory 128Mi/512Mi
- batch:  deadline 1800s, parallelism 2, completions 1, cpu 200m/1000m,
          memory 256Mi/1Gi, shared scratch volume, RATE_LIMIT_PER_MINUTE=30
- jql:    batch's shape relabeled

Retrieval always deep-copies; the catalog itself is never handed out.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..errors import TemplateError
from .types import JobKind

logger = logging.getLogger(__name__)

WORKER_IMAGE = "jira-sync:latest"
ALLOWED_RESTART_POLICIES = {"Never", "OnFailure"}


@dataclass
class JobTemplate:
    """A work kind and its Job manifest."""

    kind: str
    manifest: Dict[str, Any] = field(default_factory=dict)

    @property
    def spec(self) -> Dict[str, Any]:
        return self.manifest.get("spec", {})

    @property
    def pod_spec(self) -> Dict[str, Any]:
        return self.spec.get("template", {}).get("spec", {})

    @property
    def containers(self) -> List[Dict[str, Any]]:
        return self.pod_spec.get("containers", [])

    @property
    def worker_container(self) -> Optional[Dict[str, Any]]:
        containers = self.containers
        return containers[0] if containers else None

    @property
    def parallelism(self) -> Optional[int]:
        return self.spec.get("parallelism")

    @property
    def completions(self) -> Optional[int]:
        return self.spec.get("completions")

    @property
    def timeout_seconds(self) -> Optional[int]:
        return self.spec.get("activeDeadlineSeconds")

    @property
    def resources(self) -> Dict[str, Any]:
        container = self.worker_container or {}
        return container.get("resources", {})


def _secret_env(name: str, key: str) -> Dict[str, Any]:
    return {
        "name": name,
        "valueFrom": {"secretKeyRef": {"name": "jira-credentials", "key": key}},
    }


def _single_template() -> JobTemplate:
    labels = {"app": "jira-sync", "sync-type": JobKind.SINGLE.value}
    manifest = {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {"labels": dict(labels)},
        "spec": {
            "backoffLimit": 3,
            "activeDeadlineSeconds": 600,
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": {
                    "restartPolicy": "Never",
                    "securityContext": {
                        "runAsNonRoot": True,
                        "runAsUser": 1000,
                        "fsGroup": 1000,
                    },
                    "containers": [
                        {
                            "name": "sync-worker",
                            "image": WORKER_IMAGE,
                            "imagePullPolicy": "IfNotPresent",
                            "command": ["./jira-sync"],
                            "args": ["sync"],
                            "resources": {
                                "requests": {"cpu": "100m", "memory": "128Mi"},
                                "limits": {"cpu": "500m", "memory": "512Mi"},
                            },
                            "env": [
                                _secret_env("JIRA_BASE_URL", "base-url"),
                                _secret_env("JIRA_PAT", "token"),
                                {"name": "LOG_LEVEL", "value": "INFO"},
                                {"name": "SPIKE_SAFE_MODE", "value": "true"},
                            ],
                            "volumeMounts": [
                                {"name": "git-repo", "mountPath": "/workspace/repo"},
                                {"name": "config", "mountPath": "/etc/jira-sync", "readOnly": True},
                                {
                                    "name": "credentials",
                                    "mountPath": "/etc/jira-sync/secrets",
                                    "readOnly": True,
                                },
                            ],
                        }
                    ],
                    "volumes": [
                        {"name": "git-repo", "persistentVolumeClaim": {"claimName": "git-repo-pvc"}},
                        {"name": "config", "configMap": {"name": "jira-sync-config"}},
                        {
                            "name": "credentials",
                            "secret": {"secretName": "jira-credentials", "defaultMode": 0o400},
                        },
                    ],
                },
            },
        },
    }
    return JobTemplate(kind=JobKind.SINGLE.value, manifest=manifest)


def _batch_template() -> JobTemplate:
    template = _single_template()
    template.kind = JobKind.BATCH.value
    _relabel(template, JobKind.BATCH.value)

    template.spec["parallelism"] = 2
    template.spec["completions"] = 1
    template.spec["activeDeadlineSeconds"] = 1800

    container = template.worker_container
    container["name"] = "batch-sync-worker"
    container["resources"] = {
        "requests": {"cpu": "200m", "memory": "256Mi"},
        "limits": {"cpu": "1000m", "memory": "1Gi"},
    }
    container["env"].append({"name": "RATE_LIMIT_PER_MINUTE", "value": "30"})
    container["volumeMounts"].append({"name": "shared-state", "mountPath": "/workspace/shared"})
    template.pod_spec["volumes"].append({"name": "shared-state", "emptyDir": {}})
    return template


def _jql_template() -> JobTemplate:
    template = _batch_template()
    template.kind = JobKind.JQL.value
    _relabel(template, JobKind.JQL.value)
    return template


def _relabel(template: JobTemplate, kind: str) -> None:
    template.manifest.setdefault("metadata", {}).setdefault("labels", {})["sync-type"] = kind
    pod_meta = template.spec.setdefault("template", {}).setdefault("metadata", {})
    pod_meta.setdefault("labels", {})["sync-type"] = kind


def validate_template(template: Optional[JobTemplate]) -> None:
    """Raise TemplateError unless the template can produce a runnable Job."""
    if template is None or not template.manifest:
        raise TemplateError("template is empty")

    kind = template.kind
    if not template.containers:
        raise TemplateError("template must define at least one container", job_type=kind)

    for container in template.containers:
        if not container.get("name"):
            raise TemplateError("container name is required", job_type=kind)
        if not container.get("image"):
            raise TemplateError(
                f"container image is required for container {container['name']}",
                job_type=kind,
            )

    policy = template.pod_spec.get("restartPolicy")
    if policy not in ALLOWED_RESTART_POLICIES:
        raise TemplateError(
            f"restart policy must be Never or OnFailure, got {policy!r}", job_type=kind
        )


def load_template(path: Union[str, Path], kind: Optional[str] = None) -> JobTemplate:
    """Load a Job manifest from a YAML file and validate it."""
    path = Path(path)
    kind = kind or path.stem
    try:
        with path.open("r", encoding="utf-8") as f:
            manifest = yaml.safe_load(f)
    except OSError as e:
        raise TemplateError(
            f"failed to read template file: {e}", job_type=kind, template_path=str(path), cause=e
        )
    except yaml.YAMLError as e:
        raise TemplateError(
            f"failed to parse template YAML: {e}", job_type=kind, template_path=str(path), cause=e
        )

    if not isinstance(manifest, dict):
        raise TemplateError(
            "template file must contain a mapping", job_type=kind, template_path=str(path)
        )

    template = JobTemplate(kind=kind, manifest=manifest)
    validate_template(template)
    return template


class TemplateCatalog:
    """
    Per-kind Job templates.

    Safe for concurrent reads; writes (register/load) take a lock. Every read
    returns a deep copy.
    """

    def __init__(self, include_builtin: bool = True):
        self._lock = threading.RLock()
        self._templates: Dict[str, JobTemplate] = {}
        if include_builtin:
            for builder in (_single_template, _batch_template, _jql_template):
                template = builder()
                self._templates[template.kind] = template

    def get_template(self, kind: str) -> JobTemplate:
        """Return a private copy of the template for kind."""
        key = kind.value if isinstance(kind, JobKind) else str(kind)
        with self._lock:
            template = self._templates.get(key)
            if template is None:
                raise TemplateError(f"template not found for job type: {key}", job_type=key)
            return copy.deepcopy(template)

    def register_template(self, kind: str, template: JobTemplate) -> None:
        key = kind.value if isinstance(kind, JobKind) else str(kind)
        validate_template(template)
        stored = copy.deepcopy(template)
        stored.kind = key
        with self._lock:
            self._templates[key] = stored
        logger.info(f"Registered job template for kind {key}")

    def load_directory(self, directory: Union[str, Path]) -> List[str]:
        """Load <kind>.yaml / <kind>.yml overrides from a directory."""
        loaded = []
        for path in sorted(Path(directory).glob("*.y*ml")):
            template = load_template(path)
            self.register_template(template.kind, template)
            loaded.append(template.kind)
        return loaded

    def list_kinds(self) -> List[str]:
        with self._lock:
            return sorted(self._templates)
