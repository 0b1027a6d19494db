"""Shared test fixtures for the NetworkPolicy approval gate."""

from __future__ import annotations

from typing import Any, Callable, Optional

import pytest

from netpol_approval.admission import AdmissionGate
from netpol_approval.collector import OrphanCollector
from netpol_approval.config import GateConfig
from netpol_approval.controller import ApprovalController
from netpol_approval.materializer import GrantMaterializer
from netpol_approval.models import (
    ObjectMeta,
    PolicyObject,
    RequestCondition,
    RequestStatus,
)
from netpol_approval.store import InMemoryResourceStore

TEST_CERTIFICATE = b"-----BEGIN CERTIFICATE-----\nMIIBtest\n-----END CERTIFICATE-----\n"


class RecordingAudit:
    """In-memory stand-in for AuditSpineManager."""

    def __init__(self):
        self.events: list[dict[str, Any]] = []

    def log_event(self, actor_id: str, action_type: str, subject: str, payload: dict) -> str:
        event_id = str(len(self.events) + 1)
        self.events.append({
            "id": event_id,
            "actor_id": actor_id,
            "action_type": action_type,
            "subject": subject,
            "payload": payload,
        })
        return event_id

    def events_for_policy(self, namespace: str, name: str, limit: int = 100) -> list[dict]:
        subject = f"{namespace}/{name}"
        return [e for e in self.events if e["subject"] == subject][:limit]

    def action_types(self) -> list[str]:
        return [e["action_type"] for e in self.events]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def config() -> GateConfig:
    return GateConfig()


@pytest.fixture()
def store() -> InMemoryResourceStore:
    return InMemoryResourceStore()


@pytest.fixture()
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def gate(store: InMemoryResourceStore, config: GateConfig) -> AdmissionGate:
    return AdmissionGate(store, config)


@pytest.fixture()
def materializer(store: InMemoryResourceStore, config: GateConfig) -> GrantMaterializer:
    return GrantMaterializer(store, config)


@pytest.fixture()
def collector(store: InMemoryResourceStore) -> OrphanCollector:
    return OrphanCollector(store)


@pytest.fixture()
def controller(
    store: InMemoryResourceStore,
    config: GateConfig,
    materializer: GrantMaterializer,
    collector: OrphanCollector,
    clock: FakeClock,
) -> ApprovalController:
    return ApprovalController(store, config, materializer, collector, clock=clock)


@pytest.fixture()
def make_policy() -> Callable[..., PolicyObject]:
    """Factory for NetworkPolicy objects; *port* varies the spec."""

    def _make(
        name: str = "allow-frontend",
        namespace: str = "shop",
        port: int = 8080,
        labels: Optional[dict[str, str]] = None,
    ) -> PolicyObject:
        return PolicyObject(
            metadata=ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
            spec={
                "podSelector": {"matchLabels": {"app": "backend"}},
                "ingress": [{
                    "from": [{"podSelector": {"matchLabels": {"app": "frontend"}}}],
                    "ports": [{"protocol": "TCP", "port": port}],
                }],
                "policyTypes": ["Ingress"],
            },
        )

    return _make


@pytest.fixture()
def decide(store: InMemoryResourceStore) -> Callable[..., None]:
    """Play the external approval authority for a request name."""

    def _decide(
        name: str,
        condition: str = "Approved",
        certificate: bytes = TEST_CERTIFICATE,
    ) -> None:
        store.set_request_status(name, RequestStatus(
            conditions=[RequestCondition(type=condition, reason=f"Admin{condition}")],
            certificate=certificate if condition == "Approved" else b"",
        ))

    return _decide
