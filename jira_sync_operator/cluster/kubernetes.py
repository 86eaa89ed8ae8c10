"""
Kubernetes REST client on httpx.

Talks to the API server directly with the pod's service-account token.
Covers the handful of calls the scheduler and the resource store need:
Jobs, Pods, pod logs and namespaced custom objects (with their /status
subresource).

HTTP failures are mapped onto the error taxonomy:
- 401/403         -> AuthenticationError (403 quota denials -> ResourceError)
- 404             -> NotFoundError
- 409             -> ConflictError
- other 4xx / 5xx -> ClusterAPIError
- transport errors -> SyncConnectionError / SyncTimeoutError
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

from ..config import Settings, get_settings
from ..errors import (
    AuthenticationError,
    ClusterAPIError,
    ConflictError,
    NotFoundError,
    ResourceError,
    SyncConnectionError,
    SyncTimeoutError,
)
from .base import ClusterClient, WatchEvent, format_selector

logger = logging.getLogger(__name__)


class KubernetesClusterClient(ClusterClient):
    """Cluster client speaking the Kubernetes REST API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        verify: Union[bool, str] = True,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API server URL, e.g. https://kubernetes.default.svc
            token: Bearer token (service-account token)
            verify: TLS verification flag or CA bundle path
            timeout: Per-request timeout in seconds (watches have no read timeout)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            verify=verify,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "KubernetesClusterClient":
        """Build a client from in-cluster service-account files."""
        settings = settings or get_settings()
        token = None
        token_path = Path(settings.kube_token_path)
        if token_path.exists():
            token = token_path.read_text().strip()
        else:
            logger.warning(f"Service account token not found at {token_path}")

        verify: Union[bool, str] = True
        if settings.kube_ca_path and Path(settings.kube_ca_path).exists():
            verify = settings.kube_ca_path

        return cls(
            settings.kube_api_url,
            token=token,
            verify=verify,
            timeout=settings.kube_request_timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ---- request plumbing ------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, params=params, json=body)
        except httpx.TimeoutException as e:
            raise SyncTimeoutError(
                f"{operation} timed out talking to the API server",
                timeout=self.timeout,
                cause=e,
            )
        except httpx.TransportError as e:
            raise SyncConnectionError(
                f"{operation} could not reach the API server",
                target=self.base_url,
                protocol="https",
                cause=e,
            )
        self._raise_for_status(response, operation, path)
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str, path: str) -> None:
        if response.is_success:
            return

        message = response.text
        try:
            message = response.json().get("message", message)
        except ValueError:
            pass

        status = response.status_code
        if status == 404:
            raise NotFoundError(message, operation=operation, resource=path)
        if status == 409:
            raise ConflictError(message, operation=operation, resource=path)
        if status == 403 and "exceeded quota" in message:
            raise ResourceError(message, resource_type="quota")
        if status in (401, 403):
            raise AuthenticationError(message)
        raise ClusterAPIError(f"HTTP {status}: {message}", operation=operation, resource=path)

    @staticmethod
    def _jobs_path(namespace: str, name: str = "") -> str:
        path = f"/apis/batch/v1/namespaces/{namespace}/jobs"
        return f"{path}/{name}" if name else path

    @staticmethod
    def _pods_path(namespace: str, name: str = "") -> str:
        path = f"/api/v1/namespaces/{namespace}/pods"
        return f"{path}/{name}" if name else path

    @staticmethod
    def _selector_params(label_selector: Optional[Dict[str, str]]) -> Dict[str, str]:
        selector = format_selector(label_selector)
        return {"labelSelector": selector} if selector else {}

    async def _stream(self, path: str, params: Dict[str, str], operation: str) -> AsyncIterator[WatchEvent]:
        params = dict(params, watch="true")
        try:
            async with self._client.stream(
                "GET", path, params=params, timeout=httpx.Timeout(self.timeout, read=None)
            ) as response:
                if not response.is_success:
                    await response.aread()
                    self._raise_for_status(response, operation, path)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        payload = json.loads(line)
                        event_type = payload["type"]
                        obj = (payload.get("object") or {}) if event_type == "ERROR" else payload["object"]
                    except (ValueError, KeyError, TypeError) as e:
                        raise ClusterAPIError(
                            f"malformed watch event: {line[:200]}", operation=operation, resource=path, cause=e
                        )
                    if event_type == "ERROR":
                        raise ClusterAPIError(
                            obj.get("message", "watch error"), operation=operation, resource=path
                        )
                    yield WatchEvent(type=event_type, object=obj)
        except httpx.TransportError as e:
            raise SyncConnectionError(
                f"{operation} stream interrupted", target=self.base_url, protocol="https", cause=e
            )

    # ---- Jobs ------------------------------------------------------------

    async def create_job(self, namespace: str, manifest: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request("POST", self._jobs_path(namespace), "create job", body=manifest)
        return response.json()

    async def get_job(self, namespace: str, name: str) -> Dict[str, Any]:
        response = await self._request("GET", self._jobs_path(namespace, name), "get job")
        return response.json()

    async def list_jobs(
        self, namespace: Optional[str], label_selector: Optional[Dict[str, str]] = None
    ) -> List[Dict[str, Any]]:
        path = self._jobs_path(namespace) if namespace else "/apis/batch/v1/jobs"
        response = await self._request(
            "GET", path, "list jobs", params=self._selector_params(label_selector)
        )
        return response.json().get("items", [])

    async def update_job(self, namespace: str, manifest: Dict[str, Any]) -> Dict[str, Any]:
        name = manifest["metadata"]["name"]
        response = await self._request("PUT", self._jobs_path(namespace, name), "update job", body=manifest)
        return response.json()

    async def delete_job(
        self, namespace: str, name: str, propagation: str = "Foreground"
    ) -> None:
        await self._request(
            "DELETE",
            self._jobs_path(namespace, name),
            "delete job",
            body={"kind": "DeleteOptions", "apiVersion": "v1", "propagationPolicy": propagation},
        )

    def watch_jobs(self, namespace: str, name: str) -> AsyncIterator[WatchEvent]:
        return self._stream(
            self._jobs_path(namespace), {"fieldSelector": f"metadata.name={name}"}, "watch job"
        )

    # ---- Pods ------------------------------------------------------------

    async def list_pods(
        self, namespace: str, label_selector: Optional[Dict[str, str]] = None
    ) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET", self._pods_path(namespace), "list pods", params=self._selector_params(label_selector)
        )
        return response.json().get("items", [])

    async def delete_pod(self, namespace: str, name: str) -> None:
        await self._request("DELETE", self._pods_path(namespace, name), "delete pod")

    async def read_pod_log(self, namespace: str, name: str, container: Optional[str] = None) -> str:
        params = {"container": container} if container else None
        response = await self._request(
            "GET", f"{self._pods_path(namespace, name)}/log", "read pod log", params=params
        )
        return response.text

    # ---- custom objects --------------------------------------------------

    @staticmethod
    def _custom_path(group: str, version: str, namespace: Optional[str], plural: str, name: str = "") -> str:
        path = (
            f"/apis/{group}/{version}/namespaces/{namespace}/{plural}"
            if namespace
            else f"/apis/{group}/{version}/{plural}"
        )
        return f"{path}/{name}" if name else path

    async def create_custom_object(
        self, group: str, version: str, namespace: str, plural: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        response = await self._request(
            "POST", self._custom_path(group, version, namespace, plural), f"create {plural}", body=body
        )
        return response.json()

    async def get_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> Dict[str, Any]:
        response = await self._request(
            "GET", self._custom_path(group, version, namespace, plural, name), f"get {plural}"
        )
        return response.json()

    async def list_custom_objects(
        self, group: str, version: str, namespace: Optional[str], plural: str
    ) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET", self._custom_path(group, version, namespace, plural), f"list {plural}"
        )
        return response.json().get("items", [])

    async def replace_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        response = await self._request(
            "PUT", self._custom_path(group, version, namespace, plural, name), f"update {plural}", body=body
        )
        return response.json()

    async def replace_custom_object_status(
        self, group: str, version: str, namespace: str, plural: str, name: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        path = f"{self._custom_path(group, version, namespace, plural, name)}/status"
        response = await self._request("PUT", path, f"update {plural} status", body=body)
        return response.json()

    async def delete_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> None:
        await self._request(
            "DELETE", self._custom_path(group, version, namespace, plural, name), f"delete {plural}"
        )

    def watch_custom_objects(
        self, group: str, version: str, namespace: Optional[str], plural: str
    ) -> AsyncIterator[WatchEvent]:
        return self._stream(self._custom_path(group, version, namespace, plural), {}, f"watch {plural}")
