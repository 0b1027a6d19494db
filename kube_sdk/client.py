"""
Kube SDK — Client
Thin synchronous wrapper over the Kubernetes REST API, and the
ResourceStore implementation the webhook and controller run against.

Every HTTP failure is mapped onto the gate's error taxonomy:
  404                     NotFoundError
  409 AlreadyExists       AlreadyExistsError
  409 otherwise           ConflictError
  429, 5xx, timeouts      TransientStoreError
  anything else           StoreError
"""

from __future__ import annotations

import base64
import json
import logging
import os
import ssl
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from kube_sdk.models import KubeStatus, ObjectList, WatchEventBody
from netpol_approval.errors import (
    AlreadyExistsError,
    ConfigError,
    ConflictError,
    NotFoundError,
    StoreError,
    TransientStoreError,
)
from netpol_approval.models import ApprovalRequest, ApprovalToken
from netpol_approval.store import WatchEvent

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")

CSR_PATH = "/apis/certificates.k8s.io/v1/certificatesigningrequests"
SECRETS_PATH = "/api/v1/secrets"


def _secrets_path(namespace: str) -> str:
    return f"/api/v1/namespaces/{namespace}/secrets"


def label_selector(labels: Mapping[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def error_for(response: httpx.Response, what: str) -> StoreError:
    """Translate a failed response into the matching StoreError subclass."""
    code = response.status_code
    try:
        status = KubeStatus.model_validate(response.json())
        message = status.message or response.reason_phrase
        reason = status.reason
    except (ValueError, ValidationError):
        message = response.text.strip() or response.reason_phrase
        reason = ""

    text = f"{what}: {message}"
    if code == 404:
        return NotFoundError(text, code)
    if code == 409:
        if reason == "AlreadyExists":
            return AlreadyExistsError(text, code)
        return ConflictError(text, code)
    if code == 429 or code >= 500:
        return TransientStoreError(text, code)
    return StoreError(text, code)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class KubeClient:
    """
    Client for the Kubernetes API server.

    Authenticates with a bearer token; in a pod use in_cluster().
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        verify: bool | ssl.SSLContext = True,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Args:
            base_url: API server URL (e.g. "https://10.0.0.1:443")
            token: Bearer token (service-account token in cluster)
            verify: SSL context holding the cluster CA, or False to skip TLS verification
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            verify=verify,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def in_cluster(cls, timeout: float = 5.0) -> KubeClient:
        host = os.environ.get("KUBERNETES_SERVICE_HOST")
        port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
        if not host:
            raise ConfigError(
                "KUBERNETES_SERVICE_HOST is not set; set kube_api_url when running out of cluster"
            )
        token_file = SERVICE_ACCOUNT_DIR / "token"
        try:
            token = token_file.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"cannot read service account token {token_file}: {exc}") from exc
        ca_file = SERVICE_ACCOUNT_DIR / "ca.crt"
        verify: bool | ssl.SSLContext = True
        if ca_file.exists():
            verify = ssl.create_default_context(cafile=str(ca_file))
        return cls(f"https://{host}:{port}", token=token, verify=verify, timeout=timeout)

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        what = f"{method} {path}"
        try:
            resp = self._client.request(method, path, params=params, json=body)
        except httpx.TimeoutException as exc:
            raise TransientStoreError(f"{what}: timed out after {self.timeout}s") from exc
        except httpx.TransportError as exc:
            raise TransientStoreError(f"{what}: {exc}") from exc
        if resp.status_code >= 400:
            raise error_for(resp, what)
        if not resp.content:
            return {}
        return resp.json()

    def stream(self, path: str, params: dict[str, Any]) -> Iterator[dict[str, Any]]:
        """Yield one decoded JSON object per line of a watch response."""
        what = f"WATCH {path}"
        # reads block for as long as the server keeps the watch open
        timeout = httpx.Timeout(self.timeout, read=None)
        try:
            with self._client.stream("GET", path, params=params, timeout=timeout) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    raise error_for(resp, what)
                for line in resp.iter_lines():
                    if not line.strip():
                        continue
                    try:
                        decoded = json.loads(line)
                    except ValueError as exc:
                        raise TransientStoreError(f"{what}: malformed watch line: {exc}") from exc
                    yield decoded
        except httpx.TimeoutException as exc:
            raise TransientStoreError(f"{what}: timed out") from exc
        except httpx.TransportError as exc:
            raise TransientStoreError(f"{what}: {exc}") from exc

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# Wire encoding of byte fields
# ---------------------------------------------------------------------------

def _b64decode(value: Any) -> bytes:
    if not value:
        return b""
    try:
        return base64.b64decode(value, validate=True)
    except (TypeError, ValueError) as exc:
        raise StoreError(f"invalid base64 field: {exc}") from exc


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _clean_metadata(meta: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in meta.items() if v not in ("", None, [], {})}


def request_from_wire(data: dict[str, Any]) -> ApprovalRequest:
    data = dict(data)
    spec = dict(data.get("spec") or {})
    spec["request"] = _b64decode(spec.get("request"))
    data["spec"] = spec
    if data.get("status") is not None:
        status = dict(data["status"])
        status["certificate"] = _b64decode(status.get("certificate"))
        data["status"] = status
    return ApprovalRequest.model_validate(data)


def request_to_wire(request: ApprovalRequest) -> dict[str, Any]:
    body = request.model_dump(by_alias=True, exclude_none=True)
    body["metadata"] = _clean_metadata(body["metadata"])
    body["spec"]["request"] = _b64encode(request.spec.request)
    if "status" in body:
        body["status"]["certificate"] = _b64encode(request.status.certificate)
    return body


def token_from_wire(data: dict[str, Any]) -> ApprovalToken:
    data = dict(data)
    data["data"] = {k: _b64decode(v) for k, v in (data.get("data") or {}).items()}
    return ApprovalToken.model_validate(data)


def token_to_wire(token: ApprovalToken) -> dict[str, Any]:
    body = token.model_dump(by_alias=True, exclude_none=True)
    body["metadata"] = _clean_metadata(body["metadata"])
    body["data"] = {k: _b64encode(v) for k, v in token.data.items()}
    return body


def _delete_options(resource_version: Optional[str]) -> dict[str, Any]:
    options: dict[str, Any] = {"kind": "DeleteOptions", "apiVersion": "v1"}
    if resource_version:
        options["preconditions"] = {"resourceVersion": resource_version}
    return options


# ---------------------------------------------------------------------------
# ResourceStore over the API server
# ---------------------------------------------------------------------------

class KubeResourceStore:
    """ResourceStore backed by CertificateSigningRequests and Secrets."""

    def __init__(self, client: KubeClient):
        self.client = client

    # -- approval requests --------------------------------------------------

    def get_request(self, name: str) -> ApprovalRequest:
        return request_from_wire(self.client.request("GET", f"{CSR_PATH}/{name}"))

    def create_request(self, request: ApprovalRequest) -> ApprovalRequest:
        created = self.client.request("POST", CSR_PATH, body=request_to_wire(request))
        return request_from_wire(created)

    def delete_request(self, name: str, resource_version: Optional[str] = None) -> None:
        self.client.request(
            "DELETE", f"{CSR_PATH}/{name}", body=_delete_options(resource_version),
        )

    def list_requests(self, labels: Mapping[str, str]) -> list[ApprovalRequest]:
        raw = self.client.request("GET", CSR_PATH, params={"labelSelector": label_selector(labels)})
        return [request_from_wire(item) for item in ObjectList.model_validate(raw).items]

    def watch_requests(
        self, labels: Mapping[str, str], timeout_seconds: float,
    ) -> Iterator[WatchEvent]:
        params = {
            "watch": "1",
            "labelSelector": label_selector(labels),
            "timeoutSeconds": str(int(timeout_seconds)),
            "allowWatchBookmarks": "true",
        }
        for line in self.client.stream(CSR_PATH, params):
            try:
                event = WatchEventBody.model_validate(line)
                if event.type == "BOOKMARK":
                    continue
                if event.type == "ERROR":
                    status = KubeStatus.model_validate(event.object)
                    raise TransientStoreError(f"watch error: {status.message}", status.code)
                request = request_from_wire(event.object)
            except ValidationError as exc:
                raise TransientStoreError(f"malformed watch event: {exc}") from exc
            yield WatchEvent(event.type, request)

    # -- approval tokens ----------------------------------------------------

    def get_token(self, namespace: str, name: str) -> ApprovalToken:
        return token_from_wire(self.client.request("GET", f"{_secrets_path(namespace)}/{name}"))

    def create_token(self, token: ApprovalToken) -> ApprovalToken:
        created = self.client.request(
            "POST", _secrets_path(token.metadata.namespace), body=token_to_wire(token),
        )
        return token_from_wire(created)

    def update_token(self, token: ApprovalToken) -> ApprovalToken:
        path = f"{_secrets_path(token.metadata.namespace)}/{token.metadata.name}"
        return token_from_wire(self.client.request("PUT", path, body=token_to_wire(token)))

    def delete_token(
        self, namespace: str, name: str, resource_version: Optional[str] = None,
    ) -> None:
        self.client.request(
            "DELETE", f"{_secrets_path(namespace)}/{name}", body=_delete_options(resource_version),
        )

    def list_tokens(self, labels: Mapping[str, str]) -> list[ApprovalToken]:
        raw = self.client.request("GET", SECRETS_PATH, params={"labelSelector": label_selector(labels)})
        return [token_from_wire(item) for item in ObjectList.model_validate(raw).items]
