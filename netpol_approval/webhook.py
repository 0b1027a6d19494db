"""
Admission Webhook
FastAPI surface of the approval gate. The API server posts an
admission.k8s.io/v1 AdmissionReview for every NetworkPolicy write; the
review is parsed into typed models here and the core only ever sees
PolicyObject.

Operator endpoints:
  GET  /health
  GET  /approvals/{namespace}/{name}
  POST /sweep
  GET  /audit/{namespace}/{name}
"""

from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import Field, ValidationError

from netpol_approval.admission import AdmissionGate, AdmissionResult
from netpol_approval.collector import OrphanCollector
from netpol_approval.controller import ApprovalController
from netpol_approval.errors import GateError
from netpol_approval.models import KubeModel, PolicyIdentity, PolicyObject

logger = logging.getLogger(__name__)

VALIDATE_PATH = "/validate-networking-k8s-io-v1-networkpolicy"
ADMISSION_API_VERSION = "admission.k8s.io/v1"

# ---------------------------------------------------------------------------
# AdmissionReview models
# ---------------------------------------------------------------------------

class UserInfo(KubeModel):
    username: str = ""
    groups: list[str] = Field(default_factory=list)


class AdmissionRequest(KubeModel):
    uid: str
    kind: dict[str, str] = Field(default_factory=dict)
    operation: str
    name: str = ""
    namespace: str = ""
    object: Optional[dict[str, Any]] = None
    old_object: Optional[dict[str, Any]] = None
    dry_run: bool = False
    user_info: UserInfo = Field(default_factory=UserInfo)


class ResponseStatus(KubeModel):
    code: int
    message: str


class AdmissionResponse(KubeModel):
    uid: str
    allowed: bool
    status: Optional[ResponseStatus] = None
    audit_annotations: dict[str, str] = Field(default_factory=dict)


class AdmissionReview(KubeModel):
    api_version: str = ADMISSION_API_VERSION
    kind: str = "AdmissionReview"
    request: Optional[AdmissionRequest] = None
    response: Optional[AdmissionResponse] = None


def _policy_from(raw: Optional[dict[str, Any]], request: AdmissionRequest) -> Optional[PolicyObject]:
    if raw is None:
        return None
    policy = PolicyObject.model_validate(raw)
    # objects created with generateName or without metadata.namespace
    if not policy.metadata.namespace:
        policy.metadata.namespace = request.namespace
    if not policy.metadata.name:
        policy.metadata.name = request.name
    return policy


def review_response(uid: str, result: AdmissionResult) -> dict[str, Any]:
    response = AdmissionResponse(
        uid=uid,
        allowed=result.allowed,
        status=None if result.allowed else ResponseStatus(code=403, message=result.reason),
        audit_annotations=result.annotations(),
    )
    review = AdmissionReview(response=response)
    return review.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    gate: AdmissionGate,
    controller: Optional[ApprovalController] = None,
    collector: Optional[OrphanCollector] = None,
    audit: Any = None,
) -> FastAPI:
    """Build the webhook app. The controller, if given, runs for the app's lifetime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop_event = threading.Event()
        if controller is not None:
            controller.start(stop_event)
        try:
            yield
        finally:
            if controller is not None:
                controller.stop(stop_event)

    app = FastAPI(title="NetworkPolicy Approval Webhook", version="1.0.0", lifespan=lifespan)
    app.state.gate = gate
    app.state.controller = controller
    app.state.audit = audit

    @app.get("/health")
    def health():
        return {
            "status": "operational",
            "service": "netpol-approval-webhook",
            "controller": controller is not None,
            "audit": audit is not None,
        }

    @app.post(VALIDATE_PATH)
    def validate(review: AdmissionReview):
        request = review.request
        if request is None:
            raise HTTPException(status_code=400, detail="AdmissionReview has no request.")

        try:
            new_object = _policy_from(request.object, request)
            old_object = _policy_from(request.old_object, request)
        except ValidationError as exc:
            logger.warning("malformed NetworkPolicy in admission %s: %s", request.uid, exc)
            return JSONResponse(
                status_code=200,
                content=AdmissionReview(response=AdmissionResponse(
                    uid=request.uid,
                    allowed=False,
                    status=ResponseStatus(code=400, message=f"malformed NetworkPolicy: {exc}"),
                )).model_dump(by_alias=True, exclude_none=True),
            )

        result = gate.admit(
            request.operation,
            new_object,
            old_object,
            actor=request.user_info.username or "unknown",
            dry_run=request.dry_run,
        )
        return review_response(request.uid, result)

    @app.get("/approvals/{namespace}/{name}")
    def approval_status(namespace: str, name: str):
        try:
            return gate.describe(PolicyIdentity(namespace=namespace, name=name))
        except GateError as exc:
            raise HTTPException(status_code=503, detail=str(exc))

    @app.post("/sweep")
    def sweep():
        try:
            if controller is not None:
                report = controller.sweep()
            elif collector is not None:
                report = collector.sweep()
            else:
                raise HTTPException(status_code=503, detail="No collector configured.")
        except GateError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return report.to_dict()

    @app.get("/audit/{namespace}/{name}")
    def audit_history(namespace: str, name: str, limit: int = 100):
        if audit is None:
            raise HTTPException(status_code=404, detail="Audit spine is not enabled.")
        return {
            "policy": f"{namespace}/{name}",
            "events": audit.events_for_policy(namespace, name, limit),
        }

    return app
