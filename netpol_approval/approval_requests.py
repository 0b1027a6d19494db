"""
Approval Request Lifecycle
An approval request is a CertificateSigningRequest named deterministically
from the policy identity, so a policy has at most one live request at a time.

States:
  CREATED   no status yet
  PENDING   status present, no decision
  GRANTED   Approved=True; ready once the signer has issued the certificate
  DENIED    Denied=True (terminal)
  FAILED    Failed=True, the signer gave up (terminal)

A deleted request is "withdrawn": the store reports it as not found and the
orphan collector removes whatever token it left behind.
"""

from __future__ import annotations

from enum import Enum

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from netpol_approval.errors import MalformedRequestError
from netpol_approval.models import (
    ApprovalRequest,
    ObjectMeta,
    PolicyIdentity,
    PolicyObject,
    RequestSpec,
)

# ---------------------------------------------------------------------------
# Wire constants
# ---------------------------------------------------------------------------

APPROVAL_LABEL = "networkpolicy.webhook.io/approval"
ANNOTATION_FINGERPRINT = "networkpolicy.webhook.io/approval-hash"
ANNOTATION_POLICY_NAME = "networkpolicy.webhook.io/name"
ANNOTATION_POLICY_NAMESPACE = "networkpolicy.webhook.io/namespace"

CONDITION_APPROVED = "Approved"
CONDITION_DENIED = "Denied"
CONDITION_FAILED = "Failed"

REQUEST_ORGANIZATION = "networkpolicy-approval"
REQUEST_USAGES = ["digital signature", "key encipherment", "client auth"]
_KEY_SIZE = 2048
_MAX_COMMON_NAME = 64


class RequestState(str, Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    GRANTED = "GRANTED"
    DENIED = "DENIED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (RequestState.DENIED, RequestState.FAILED)


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

def derived_name(identity: PolicyIdentity, prefix: str) -> str:
    """``<prefix>-<namespace>-<policyName>``; shared by the request and its token."""
    return f"{prefix}-{identity.namespace}-{identity.name}"


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def _certificate_request_pem(name: str) -> bytes:
    # The key is thrown away: the issued certificate is an approval artifact,
    # never a credential anybody authenticates with.
    key = rsa.generate_private_key(public_exponent=65537, key_size=_KEY_SIZE)
    subject = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, name[:_MAX_COMMON_NAME]),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, REQUEST_ORGANIZATION),
    ])
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(subject)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(name)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM)


def build_request(
    policy: PolicyObject,
    fingerprint: str,
    name: str,
    signer_name: str,
) -> ApprovalRequest:
    """Build the approval request vouching for *fingerprint* of *policy*."""
    identity = policy.identity
    return ApprovalRequest(
        metadata=ObjectMeta(
            name=name,
            labels={APPROVAL_LABEL: "true"},
            annotations={
                ANNOTATION_FINGERPRINT: fingerprint,
                ANNOTATION_POLICY_NAME: identity.name,
                ANNOTATION_POLICY_NAMESPACE: identity.namespace,
            },
        ),
        spec=RequestSpec(
            request=_certificate_request_pem(name),
            signer_name=signer_name,
            usages=list(REQUEST_USAGES),
        ),
    )


# ---------------------------------------------------------------------------
# Observation
# ---------------------------------------------------------------------------

def is_approval_request(request: ApprovalRequest) -> bool:
    return request.metadata.labels.get(APPROVAL_LABEL) == "true"


def _condition_true(request: ApprovalRequest, condition_type: str) -> bool:
    if request.status is None:
        return False
    return any(
        c.type == condition_type and c.status == "True"
        for c in request.status.conditions
    )


def request_state(request: ApprovalRequest) -> RequestState:
    if request.status is None:
        return RequestState.CREATED
    # A denial or failure outranks an approval recorded alongside it.
    if _condition_true(request, CONDITION_DENIED):
        return RequestState.DENIED
    if _condition_true(request, CONDITION_FAILED):
        return RequestState.FAILED
    if _condition_true(request, CONDITION_APPROVED):
        return RequestState.GRANTED
    return RequestState.PENDING


def is_ready(request: ApprovalRequest) -> bool:
    """Granted and carrying the signed artifact."""
    return (
        request_state(request) == RequestState.GRANTED
        and request.status is not None
        and len(request.status.certificate) > 0
    )


def requested_fingerprint(request: ApprovalRequest) -> str | None:
    return request.metadata.annotations.get(ANNOTATION_FINGERPRINT) or None


def request_reference(request: ApprovalRequest) -> tuple[PolicyIdentity, str]:
    """Return (policy identity, fingerprint) the request vouches for.

    Raises MalformedRequestError if any cross-reference annotation is missing.
    """
    annotations = request.metadata.annotations
    missing = [
        key for key in (ANNOTATION_POLICY_NAME, ANNOTATION_POLICY_NAMESPACE, ANNOTATION_FINGERPRINT)
        if not annotations.get(key)
    ]
    if missing:
        raise MalformedRequestError(
            f"approval request {request.metadata.name} is missing "
            f"annotation(s): {', '.join(missing)}"
        )
    identity = PolicyIdentity(
        namespace=annotations[ANNOTATION_POLICY_NAMESPACE],
        name=annotations[ANNOTATION_POLICY_NAME],
    )
    return identity, annotations[ANNOTATION_FINGERPRINT]
