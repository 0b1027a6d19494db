"""In-memory store semantics: create-if-absent, version checks, finalizers, watch."""

from __future__ import annotations

import threading

import pytest

from netpol_approval.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    RetryableError,
    TransientStoreError,
)
from netpol_approval.models import ApprovalRequest, ApprovalToken, ObjectMeta, RequestStatus
from netpol_approval.store import InMemoryResourceStore, matches_labels


def _request(name="np-approval-shop-web", labels=None) -> ApprovalRequest:
    return ApprovalRequest(metadata=ObjectMeta(name=name, labels=labels or {"approval": "true"}))


def _token(name="t", namespace="shop", finalizers=None, labels=None) -> ApprovalToken:
    return ApprovalToken(
        metadata=ObjectMeta(
            name=name, namespace=namespace,
            finalizers=finalizers or [], labels=labels or {"approval": "true"},
        ),
        type="networkpolicy.webhook.io/approval",
        data={"hash": b"x"},
    )


def test_matches_labels():
    assert matches_labels({"a": "1", "b": "2"}, {"a": "1"})
    assert not matches_labels({"a": "1"}, {"a": "2"})
    assert matches_labels({}, {})


def test_create_request_is_create_if_absent(store):
    created = store.create_request(_request())
    assert created.metadata.resource_version
    with pytest.raises(AlreadyExistsError) as excinfo:
        store.create_request(_request())
    assert excinfo.value.status_code == 409


def test_reads_return_copies(store):
    store.create_request(_request())
    fetched = store.get_request("np-approval-shop-web")
    fetched.metadata.labels["mutated"] = "yes"
    assert "mutated" not in store.get_request("np-approval-shop-web").metadata.labels


def test_delete_request_checks_version(store):
    created = store.create_request(_request())
    store.set_request_status(created.metadata.name, RequestStatus())
    with pytest.raises(ConflictError) as excinfo:
        store.delete_request(created.metadata.name, created.metadata.resource_version)
    assert isinstance(excinfo.value, RetryableError)
    store.delete_request(created.metadata.name)
    with pytest.raises(NotFoundError):
        store.get_request(created.metadata.name)


def test_list_requests_filters_by_label(store):
    store.create_request(_request("a"))
    store.create_request(_request("b", labels={"other": "x"}))
    assert [r.metadata.name for r in store.list_requests({"approval": "true"})] == ["a"]


def test_update_token_checks_version(store):
    created = store.create_token(_token())
    store.update_token(created.model_copy(deep=True))
    with pytest.raises(ConflictError):
        store.update_token(created)


def test_update_missing_token_is_not_found(store):
    with pytest.raises(NotFoundError):
        store.update_token(_token())


def test_delete_of_guarded_token_only_marks_it(store):
    store.create_token(_token(finalizers=["guard"]))
    store.delete_token("shop", "t")
    marked = store.get_token("shop", "t")
    assert marked.metadata.deletion_timestamp is not None

    marked.metadata.finalizers = []
    store.update_token(marked)
    with pytest.raises(NotFoundError):
        store.get_token("shop", "t")


def test_writer_cannot_clear_deletion_timestamp(store):
    store.create_token(_token(finalizers=["guard", "other"]))
    store.delete_token("shop", "t")
    marked = store.get_token("shop", "t")
    marked.metadata.deletion_timestamp = None
    marked.metadata.finalizers = ["other"]
    updated = store.update_token(marked)
    assert updated.metadata.deletion_timestamp is not None


def test_list_tokens_spans_namespaces(store):
    store.create_token(_token("a", "ns1"))
    store.create_token(_token("b", "ns2"))
    store.create_token(_token("c", "ns3", labels={"unrelated": "x"}))
    assert sorted(t.metadata.name for t in store.list_tokens({"approval": "true"})) == ["a", "b"]


def test_watch_yields_events_after_the_call(store):
    store.create_request(_request("before"))
    seen: list[tuple[str, str]] = []
    events = store.watch_requests({"approval": "true"}, timeout_seconds=0.5)

    def consume():
        for event in events:
            seen.append((event.type, event.request.metadata.name))

    thread = threading.Thread(target=consume)
    thread.start()
    store.create_request(_request("after"))
    store.set_request_status("after", RequestStatus())
    store.create_request(_request("ignored", labels={"other": "x"}))
    store.delete_request("after")
    thread.join(5)

    assert not thread.is_alive()
    assert seen == [("ADDED", "after"), ("MODIFIED", "after"), ("DELETED", "after")]


def test_watch_ends_after_idle_timeout(store):
    assert list(store.watch_requests({}, timeout_seconds=0.05)) == []


def test_watch_log_is_bounded():
    store = InMemoryResourceStore(max_events=4)
    for i in range(10):
        store.create_request(_request(f"r{i}"))
    assert len(store._events) == 4

    # a fresh watch starts at the head and still sees new events
    events = store.watch_requests({}, timeout_seconds=0.05)
    store.create_request(_request("fresh"))
    assert [e.request.metadata.name for e in events] == ["fresh"]


def test_watcher_that_falls_behind_must_restart():
    store = InMemoryResourceStore(max_events=4)
    events = store.watch_requests({}, timeout_seconds=0.05)
    for i in range(6):
        store.create_request(_request(f"r{i}"))

    with pytest.raises(TransientStoreError) as excinfo:
        next(events)
    assert excinfo.value.status_code == 410
