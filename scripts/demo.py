#!/usr/bin/env python3
"""
NetworkPolicy Approval — End-to-End Demo Script

Walks through the full approval loop against the in-memory store: create
(denied), administrator approval, materialization, create (allowed), drift
(denied again, request superseded), withdrawal and orphan collection.

Every admission goes through the real webhook as an AdmissionReview.

Usage:
    python scripts/demo.py

Requires: fastapi, httpx, cryptography
"""

from __future__ import annotations

import sys
from pathlib import Path
from uuid import uuid4

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fastapi.testclient import TestClient

from netpol_approval.admission import AdmissionGate
from netpol_approval.approval_requests import derived_name
from netpol_approval.collector import OrphanCollector
from netpol_approval.config import GateConfig, configure_logging
from netpol_approval.controller import ApprovalController
from netpol_approval.materializer import GrantMaterializer
from netpol_approval.models import PolicyIdentity, RequestCondition, RequestStatus
from netpol_approval.store import InMemoryResourceStore
from netpol_approval.webhook import VALIDATE_PATH, create_app

# ---------------------------------------------------------------------------
# Terminal colors (ANSI)
# ---------------------------------------------------------------------------

class C:
    RESET   = "\033[0m"
    BOLD    = "\033[1m"
    DIM     = "\033[2m"
    RED     = "\033[91m"
    GREEN   = "\033[92m"
    CYAN    = "\033[96m"
    WHITE   = "\033[97m"
    BG_RED  = "\033[41m"
    BG_GREEN = "\033[42m"


def banner(text: str):
    width = 64
    print()
    print(f"{C.CYAN}{C.BOLD}{'=' * width}{C.RESET}")
    print(f"{C.CYAN}{C.BOLD}  {text}{C.RESET}")
    print(f"{C.CYAN}{C.BOLD}{'=' * width}{C.RESET}")
    print()


def step(n: int, text: str):
    print(f"  {C.BOLD}{C.WHITE}[Step {n}]{C.RESET} {text}")


def info(text: str):
    print(f"  {C.DIM}{text}{C.RESET}")


def badge(allowed: bool) -> str:
    if allowed:
        return f"{C.BG_GREEN}{C.WHITE}{C.BOLD} ALLOWED {C.RESET}"
    return f"{C.BG_RED}{C.WHITE}{C.BOLD} DENIED {C.RESET}"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

NAMESPACE = "shop"
POLICY_NAME = "allow-frontend"


def policy(port: int) -> dict:
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": {"name": POLICY_NAME, "namespace": NAMESPACE},
        "spec": {
            "podSelector": {"matchLabels": {"app": "backend"}},
            "ingress": [{
                "from": [{"podSelector": {"matchLabels": {"app": "frontend"}}}],
                "ports": [{"protocol": "TCP", "port": port}],
            }],
            "policyTypes": ["Ingress"],
        },
    }


def review(operation: str, obj: dict | None, old: dict | None = None) -> dict:
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": str(uuid4()),
            "kind": {"group": "networking.k8s.io", "version": "v1", "kind": "NetworkPolicy"},
            "operation": operation,
            "name": POLICY_NAME,
            "namespace": NAMESPACE,
            "object": obj,
            "oldObject": old,
            "userInfo": {"username": "alice@example.com"},
        },
    }


def submit(client: TestClient, body: dict) -> bool:
    resp = client.post(VALIDATE_PATH, json=body).json()["response"]
    print(f"  {badge(resp['allowed'])}")
    if not resp["allowed"]:
        info(resp["status"]["message"])
    return resp["allowed"]


def approve(store: InMemoryResourceStore, name: str) -> None:
    store.set_request_status(name, RequestStatus(
        conditions=[RequestCondition(type="Approved", reason="AdminApproved")],
        certificate=b"-----BEGIN CERTIFICATE-----\ndemo\n-----END CERTIFICATE-----\n",
    ))


def main() -> int:
    configure_logging("warning")
    config = GateConfig()
    store = InMemoryResourceStore()
    gate = AdmissionGate(store, config)
    materializer = GrantMaterializer(store, config)
    collector = OrphanCollector(store)
    controller = ApprovalController(store, config, materializer, collector)
    client = TestClient(create_app(gate, collector=collector))

    name = derived_name(PolicyIdentity(NAMESPACE, POLICY_NAME), config.request_name_prefix)

    banner("NetworkPolicy Approval Demo")

    step(1, f"Create NetworkPolicy {NAMESPACE}/{POLICY_NAME} (never approved)")
    first = submit(client, review("CREATE", policy(8080)))

    step(2, f"Administrator approves CSR {name}; controller materializes the secret")
    approve(store, name)
    controller.process(name)
    info(f"approval secret fingerprint: {gate.describe(PolicyIdentity(NAMESPACE, POLICY_NAME))['token']['fingerprint']}")

    step(3, "Create the same NetworkPolicy again")
    second = submit(client, review("CREATE", policy(8080)))

    step(4, "Change the port to 9090 (content drift)")
    third = submit(client, review("UPDATE", policy(9090), policy(8080)))

    step(5, "Approve the new content and retry")
    approve(store, name)
    controller.process(name)
    fourth = submit(client, review("UPDATE", policy(9090), policy(8080)))

    step(6, "Withdraw the approval (delete the CSR) and sweep")
    store.delete_request(name)
    report = client.post("/sweep").json()
    info(f"collected: {report['collected']}")
    fifth = submit(client, review("UPDATE", policy(9090), policy(9090)))

    step(7, "Delete the NetworkPolicy")
    sixth = submit(client, review("DELETE", None, policy(9090)))

    expected = [False, True, False, True, False, True]
    actual = [first, second, third, fourth, fifth, sixth]
    banner("Demo complete" if actual == expected else "Demo FAILED")
    return 0 if actual == expected else 1


if __name__ == "__main__":
    sys.exit(main())
