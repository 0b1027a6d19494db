"""
Admission Gate
Every create/update of a NetworkPolicy passes through AdmissionGate.admit().
The candidate content is fingerprinted and compared against the approval
token for that policy; only an exact match is admitted.

When the content is not approved the gate makes sure an approval request
exists for exactly that fingerprint and denies with a message naming it.
Any failure along the way (store error, deadline, unserializable spec) is
a denial too: the gate fails closed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from netpol_approval.approval_requests import (
    RequestState,
    build_request,
    derived_name,
    is_approval_request,
    request_state,
    requested_fingerprint,
)
from netpol_approval.config import GateConfig
from netpol_approval.errors import (
    AlreadyExistsError,
    DeadlineExceeded,
    GateError,
    MalformedRequestError,
    NotFoundError,
)
from netpol_approval.fingerprint import policy_fingerprint
from netpol_approval.models import PolicyIdentity, PolicyObject
from netpol_approval.store import ResourceStore
from netpol_approval.tokens import (
    TokenVerdict,
    evaluate_token,
    has_guard,
    lookup_token,
    stored_fingerprint,
)

logger = logging.getLogger(__name__)

# Audit action types
ADMISSION_ALLOWED = "ADMISSION_ALLOWED"
ADMISSION_DENIED = "ADMISSION_DENIED"
APPROVAL_REQUEST_CREATED = "APPROVAL_REQUEST_CREATED"
APPROVAL_REQUEST_SUPERSEDED = "APPROVAL_REQUEST_SUPERSEDED"

GATE_ACTOR = "system:netpol-approval"

AUDIT_ANNOTATION_FINGERPRINT = "networkpolicy.webhook.io/fingerprint"
AUDIT_ANNOTATION_REQUEST = "networkpolicy.webhook.io/approval-request"
AUDIT_ANNOTATION_VERDICT = "networkpolicy.webhook.io/verdict"
AUDIT_ANNOTATION_EVENT = "networkpolicy.webhook.io/audit-event-id"


class Operation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


@dataclass
class AdmissionResult:
    allowed: bool
    reason: str = ""
    fingerprint: Optional[str] = None
    request_name: Optional[str] = None
    verdict: Optional[TokenVerdict] = None
    request_state: Optional[RequestState] = None
    audit_event_id: Optional[str] = None

    def annotations(self) -> dict[str, str]:
        """auditAnnotations for the AdmissionReview response."""
        out: dict[str, str] = {}
        if self.fingerprint:
            out[AUDIT_ANNOTATION_FINGERPRINT] = self.fingerprint
        if self.request_name:
            out[AUDIT_ANNOTATION_REQUEST] = self.request_name
        if self.verdict is not None:
            out[AUDIT_ANNOTATION_VERDICT] = self.verdict.value
        if self.audit_event_id:
            out[AUDIT_ANNOTATION_EVENT] = self.audit_event_id
        return out


class Deadline:
    """Absolute point in time after which the caller stops waiting."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return self._expires_at - self._clock()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, step: str) -> None:
        if self.expired:
            raise DeadlineExceeded(f"admission deadline exceeded before {step}")


# ---------------------------------------------------------------------------
# Denial messages
# ---------------------------------------------------------------------------

def _not_approved_message(name: str, state: RequestState) -> str:
    if state == RequestState.DENIED:
        return (
            f"NetworkPolicy approval was denied. CSR: {name}. "
            "Delete the CSR to request approval again"
        )
    if state == RequestState.FAILED:
        return (
            f"NetworkPolicy approval failed to be signed. CSR: {name}. "
            "Delete the CSR to request approval again"
        )
    if state == RequestState.GRANTED:
        return (
            f"NetworkPolicy approval {name} has been granted but is not recorded yet. "
            "Retry shortly"
        )
    return (
        f"NetworkPolicy has not been approved yet. CSR created: {name}. "
        "Please ask an administrator to approve the CSR"
    )


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

@dataclass
class AdmissionGate:
    store: ResourceStore
    config: GateConfig
    audit: Any = None
    clock: Callable[[], float] = field(default=time.monotonic)

    def admit(
        self,
        operation: Operation | str,
        new_object: Optional[PolicyObject],
        old_object: Optional[PolicyObject] = None,
        *,
        actor: str = "unknown",
        dry_run: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> AdmissionResult:
        """Decide one admission. Never raises for store or content problems."""
        operation = Operation(operation)
        if operation == Operation.DELETE:
            return self.validate_delete(old_object)
        if operation == Operation.CONNECT:
            return AdmissionResult(allowed=True, reason=f"{operation.value} is not gated")
        if new_object is None:
            logger.warning("%s admission without an object denied", operation.value)
            return AdmissionResult(
                allowed=False, reason=f"no object in admission request for {operation.value}",
            )

        if deadline is None:
            deadline = Deadline(self.config.admission_timeout_seconds, self.clock)

        try:
            if operation == Operation.CREATE:
                result = self.validate_create(new_object, dry_run=dry_run, deadline=deadline)
            else:
                result = self.validate_update(
                    new_object, old_object, dry_run=dry_run, deadline=deadline,
                )
        except GateError as exc:
            logger.warning(
                "admission of NetworkPolicy %s failed closed: %s", new_object.identity, exc,
            )
            result = AdmissionResult(
                allowed=False, reason=f"NetworkPolicy approval check failed: {exc}",
            )

        self._record(result, operation, new_object.identity, actor, dry_run)
        return result

    def validate_create(
        self, policy: PolicyObject, *, dry_run: bool = False, deadline: Deadline,
    ) -> AdmissionResult:
        return self._check(policy, dry_run=dry_run, deadline=deadline)

    def validate_update(
        self,
        policy: PolicyObject,
        old_policy: Optional[PolicyObject] = None,
        *,
        dry_run: bool = False,
        deadline: Deadline,
    ) -> AdmissionResult:
        # Only the new content matters; the old content's approval says
        # nothing about what is being written now.
        return self._check(policy, dry_run=dry_run, deadline=deadline)

    def validate_delete(self, policy: Optional[PolicyObject]) -> AdmissionResult:
        return AdmissionResult(allowed=True, reason="deletion does not require approval")

    # -- internals -----------------------------------------------------------

    def _check(self, policy: PolicyObject, *, dry_run: bool, deadline: Deadline) -> AdmissionResult:
        identity = policy.identity
        if self.config.is_excluded(identity.namespace):
            return AdmissionResult(
                allowed=True, reason=f"namespace {identity.namespace} is excluded from approval",
            )

        candidate = policy_fingerprint(policy)
        name = derived_name(identity, self.config.request_name_prefix)

        deadline.check("approval token lookup")
        token = lookup_token(self.store, identity, self.config.request_name_prefix)
        verdict = evaluate_token(token, candidate)
        if verdict.approved:
            logger.info("NetworkPolicy %s approved (fingerprint %s)", identity, candidate[:12])
            return AdmissionResult(
                allowed=True,
                reason="NetworkPolicy content matches its approval",
                fingerprint=candidate,
                request_name=name,
                verdict=verdict,
            )

        logger.info("NetworkPolicy %s not approved: %s", identity, verdict.value)
        if dry_run:
            return AdmissionResult(
                allowed=False,
                reason=(
                    "NetworkPolicy has not been approved yet "
                    f"(dry run, no approval request created for {name})"
                ),
                fingerprint=candidate,
                request_name=name,
                verdict=verdict,
            )

        try:
            state = self._ensure_request(policy, candidate, name, deadline)
        except GateError as exc:
            logger.error("could not ensure approval request %s: %s", name, exc)
            return AdmissionResult(
                allowed=False,
                reason=(
                    "NetworkPolicy has not been approved yet and the approval "
                    f"request {name} could not be created: {exc}"
                ),
                fingerprint=candidate,
                request_name=name,
                verdict=verdict,
            )

        return AdmissionResult(
            allowed=False,
            reason=_not_approved_message(name, state),
            fingerprint=candidate,
            request_name=name,
            verdict=verdict,
            request_state=state,
        )

    def _ensure_request(
        self, policy: PolicyObject, candidate: str, name: str, deadline: Deadline,
    ) -> RequestState:
        """Make sure a request for *candidate* exists under *name*.

        A request for different content is superseded: deleted with a version
        check and recreated under the same name.
        """
        deadline.check("approval request lookup")
        try:
            existing = self.store.get_request(name)
        except NotFoundError:
            existing = None

        if existing is not None:
            if not is_approval_request(existing):
                raise MalformedRequestError(
                    f"certificatesigningrequest {name} exists but is not an approval request"
                )
            previous = requested_fingerprint(existing)
            if previous == candidate:
                return request_state(existing)

            deadline.check("superseding approval request")
            try:
                self.store.delete_request(name, existing.metadata.resource_version or None)
            except NotFoundError:
                pass
            logger.info(
                "superseded approval request %s (fingerprint %s -> %s)",
                name, (previous or "none")[:12], candidate[:12],
            )
            self._log(APPROVAL_REQUEST_SUPERSEDED, policy.identity, {
                "request_name": name,
                "previous_fingerprint": previous,
                "fingerprint": candidate,
            })

        request = build_request(policy, candidate, name, self.config.signer_name)
        deadline.check("approval request creation")
        try:
            self.store.create_request(request)
        except AlreadyExistsError:
            logger.info("approval request %s was created concurrently", name)
            return RequestState.CREATED
        logger.info("created approval request %s for NetworkPolicy %s", name, policy.identity)
        self._log(APPROVAL_REQUEST_CREATED, policy.identity, {
            "request_name": name,
            "fingerprint": candidate,
        })
        return RequestState.CREATED

    def _record(
        self,
        result: AdmissionResult,
        operation: Operation,
        identity: PolicyIdentity,
        actor: str,
        dry_run: bool,
    ) -> None:
        if self.audit is None:
            return
        result.audit_event_id = self.audit.log_event(
            actor_id=actor,
            action_type=ADMISSION_ALLOWED if result.allowed else ADMISSION_DENIED,
            subject=identity.key,
            payload={
                "operation": operation.value,
                "namespace": identity.namespace,
                "name": identity.name,
                "fingerprint": result.fingerprint,
                "request_name": result.request_name,
                "verdict": result.verdict.value if result.verdict else None,
                "reason": result.reason,
                "dry_run": dry_run,
            },
        )

    def _log(self, action_type: str, identity: PolicyIdentity, payload: dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.log_event(
                actor_id=GATE_ACTOR,
                action_type=action_type,
                subject=identity.key,
                payload={"namespace": identity.namespace, "name": identity.name, **payload},
            )

    # -- read-only view ------------------------------------------------------

    def describe(self, identity: PolicyIdentity) -> dict[str, Any]:
        """Current request and token state for one policy."""
        name = derived_name(identity, self.config.request_name_prefix)
        try:
            request = self.store.get_request(name)
        except NotFoundError:
            request = None
        token = lookup_token(self.store, identity, self.config.request_name_prefix)

        return {
            "policy": identity.key,
            "name": name,
            "request": None if request is None else {
                "state": request_state(request).value,
                "fingerprint": requested_fingerprint(request),
            },
            "token": None if token is None else {
                "fingerprint": stored_fingerprint(token),
                "guarded": has_guard(token),
                "deleting": bool(token.metadata.deletion_timestamp),
            },
        }
