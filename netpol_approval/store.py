"""
Resource Store
The durable store every component coordinates through. The gate, the
materializer and the collector only ever see the ResourceStore protocol;
KubeResourceStore (kube_sdk) talks to a real API server and
InMemoryResourceStore reproduces the platform's semantics in-process:

  - create is create-if-absent (AlreadyExistsError otherwise)
  - update/delete are version-checked when a resourceVersion is supplied
  - deleting an object that still carries finalizers only marks it with a
    deletionTimestamp; clearing the last finalizer of a marked object
    removes it
  - the watch log keeps the most recent max_events events; a watcher that
    falls further behind gets a TransientStoreError (410 Gone) and restarts
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from netpol_approval.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
)
from netpol_approval.models import ApprovalRequest, ApprovalToken, RequestStatus


@dataclass
class WatchEvent:
    type: str                   # ADDED | MODIFIED | DELETED
    request: ApprovalRequest


class ResourceStore(Protocol):
    # Approval requests (cluster-scoped)
    def get_request(self, name: str) -> ApprovalRequest: ...

    def create_request(self, request: ApprovalRequest) -> ApprovalRequest: ...

    def delete_request(self, name: str, resource_version: Optional[str] = None) -> None: ...

    def list_requests(self, labels: Mapping[str, str]) -> list[ApprovalRequest]: ...

    def watch_requests(
        self, labels: Mapping[str, str], timeout_seconds: float,
    ) -> Iterator[WatchEvent]: ...

    # Approval tokens (namespaced)
    def get_token(self, namespace: str, name: str) -> ApprovalToken: ...

    def create_token(self, token: ApprovalToken) -> ApprovalToken: ...

    def update_token(self, token: ApprovalToken) -> ApprovalToken: ...

    def delete_token(
        self, namespace: str, name: str, resource_version: Optional[str] = None,
    ) -> None: ...

    def list_tokens(self, labels: Mapping[str, str]) -> list[ApprovalToken]: ...


DEFAULT_MAX_EVENTS = 10_000


def matches_labels(actual: Mapping[str, str], wanted: Mapping[str, str]) -> bool:
    return all(actual.get(k) == v for k, v in wanted.items())


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryResourceStore:
    """Thread-safe ResourceStore with the platform's write semantics.

    Objects are copied on the way in and out so callers can never mutate
    stored state without going through update.
    """

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS):
        self._lock = threading.Condition()
        self._max_events = max_events
        self._dropped = 0           # events discarded from the front of _events
        self._versions = itertools.count(1)
        self._requests: dict[str, ApprovalRequest] = {}
        self._tokens: dict[tuple[str, str], ApprovalToken] = {}
        self._events: list[WatchEvent] = []

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _record(self, event_type: str, request: ApprovalRequest) -> None:
        self._events.append(WatchEvent(event_type, request.model_copy(deep=True)))
        excess = len(self._events) - self._max_events
        if excess > 0:
            del self._events[:excess]
            self._dropped += excess
        self._lock.notify_all()

    # -- approval requests --------------------------------------------------

    def get_request(self, name: str) -> ApprovalRequest:
        with self._lock:
            stored = self._requests.get(name)
            if stored is None:
                raise NotFoundError(f"certificatesigningrequest {name} not found", 404)
            return stored.model_copy(deep=True)

    def create_request(self, request: ApprovalRequest) -> ApprovalRequest:
        name = request.metadata.name
        with self._lock:
            if name in self._requests:
                raise AlreadyExistsError(
                    f"certificatesigningrequest {name} already exists", 409,
                )
            stored = request.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            self._requests[name] = stored
            self._record("ADDED", stored)
            return stored.model_copy(deep=True)

    def delete_request(self, name: str, resource_version: Optional[str] = None) -> None:
        with self._lock:
            stored = self._requests.get(name)
            if stored is None:
                raise NotFoundError(f"certificatesigningrequest {name} not found", 404)
            if resource_version and stored.metadata.resource_version != resource_version:
                raise ConflictError(
                    f"certificatesigningrequest {name} has been modified", 409,
                )
            del self._requests[name]
            self._record("DELETED", stored)

    def list_requests(self, labels: Mapping[str, str]) -> list[ApprovalRequest]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._requests.values()
                if matches_labels(r.metadata.labels, labels)
            ]

    def watch_requests(
        self, labels: Mapping[str, str], timeout_seconds: float,
    ) -> Iterator[WatchEvent]:
        """Yield events recorded after the call, until *timeout_seconds* pass idle."""
        with self._lock:
            cursor = self._dropped + len(self._events)
        return self._follow(cursor, dict(labels), timeout_seconds)

    def _follow(
        self, cursor: int, labels: Mapping[str, str], timeout_seconds: float,
    ) -> Iterator[WatchEvent]:
        while True:
            with self._lock:
                if cursor >= self._dropped + len(self._events):
                    self._lock.wait(timeout_seconds)
                if cursor < self._dropped:
                    raise TransientStoreError("watch fell behind: too old resource version", 410)
                end = self._dropped + len(self._events)
                if cursor >= end:
                    return
                batch = self._events[cursor - self._dropped:]
                cursor = end
            for event in batch:
                if matches_labels(event.request.metadata.labels, labels):
                    yield event

    def set_request_status(self, name: str, status: RequestStatus) -> ApprovalRequest:
        """Act as the external approval authority (approve, deny, issue)."""
        with self._lock:
            stored = self._requests.get(name)
            if stored is None:
                raise NotFoundError(f"certificatesigningrequest {name} not found", 404)
            stored.status = status.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            self._record("MODIFIED", stored)
            return stored.model_copy(deep=True)

    # -- approval tokens ----------------------------------------------------

    def get_token(self, namespace: str, name: str) -> ApprovalToken:
        with self._lock:
            stored = self._tokens.get((namespace, name))
            if stored is None:
                raise NotFoundError(f"secret {namespace}/{name} not found", 404)
            return stored.model_copy(deep=True)

    def create_token(self, token: ApprovalToken) -> ApprovalToken:
        key = (token.metadata.namespace, token.metadata.name)
        with self._lock:
            if key in self._tokens:
                raise AlreadyExistsError(f"secret {key[0]}/{key[1]} already exists", 409)
            stored = token.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            stored.metadata.deletion_timestamp = None
            self._tokens[key] = stored
            return stored.model_copy(deep=True)

    def update_token(self, token: ApprovalToken) -> ApprovalToken:
        key = (token.metadata.namespace, token.metadata.name)
        with self._lock:
            current = self._tokens.get(key)
            if current is None:
                raise NotFoundError(f"secret {key[0]}/{key[1]} not found", 404)
            version = token.metadata.resource_version
            if version and current.metadata.resource_version != version:
                raise ConflictError(f"secret {key[0]}/{key[1]} has been modified", 409)
            stored = token.model_copy(deep=True)
            # deletionTimestamp is owned by the store, never by the writer
            stored.metadata.deletion_timestamp = current.metadata.deletion_timestamp
            if stored.metadata.deletion_timestamp and not stored.metadata.finalizers:
                del self._tokens[key]
                return stored
            stored.metadata.resource_version = self._next_version()
            self._tokens[key] = stored
            return stored.model_copy(deep=True)

    def delete_token(
        self, namespace: str, name: str, resource_version: Optional[str] = None,
    ) -> None:
        key = (namespace, name)
        with self._lock:
            current = self._tokens.get(key)
            if current is None:
                raise NotFoundError(f"secret {namespace}/{name} not found", 404)
            if resource_version and current.metadata.resource_version != resource_version:
                raise ConflictError(f"secret {namespace}/{name} has been modified", 409)
            if current.metadata.finalizers:
                if current.metadata.deletion_timestamp is None:
                    current.metadata.deletion_timestamp = _now_iso()
                    current.metadata.resource_version = self._next_version()
                return
            del self._tokens[key]

    def list_tokens(self, labels: Mapping[str, str]) -> list[ApprovalToken]:
        with self._lock:
            return [
                t.model_copy(deep=True)
                for t in self._tokens.values()
                if matches_labels(t.metadata.labels, labels)
            ]
