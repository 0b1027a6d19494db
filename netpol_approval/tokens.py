"""
Approval Token Store
An approval token is a typed Secret in the policy's namespace, named like its
approval request, recording the last fingerprint approved for that policy
together with the certificate the signer issued for it.

The token's finalizer is its protective guard. delete_token() is the only
path that removes a token and it always clears the guard, persists that,
and only then deletes.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from netpol_approval.approval_requests import APPROVAL_LABEL, derived_name
from netpol_approval.errors import NotFoundError
from netpol_approval.models import ApprovalRequest, ApprovalToken, ObjectMeta, PolicyIdentity
from netpol_approval.store import ResourceStore

logger = logging.getLogger(__name__)

TOKEN_TYPE = "networkpolicy.webhook.io/approval"
PROTECTION_FINALIZER = "networkpolicy.webhook.io/approval-protection"

DATA_FINGERPRINT = "hash"
DATA_CERTIFICATE = "tls.crt"
DATA_REQUEST_NAME = "csr-name"

LABEL_POLICY_NAME = "networkpolicy.webhook.io/name"
ANNOTATION_REQUEST_NAME = "networkpolicy.webhook.io/csr-name"
ANNOTATION_FINGERPRINT = "networkpolicy.webhook.io/approval-hash"
ANNOTATION_POLICY_NAME = "networkpolicy.webhook.io/np-name"
ANNOTATION_POLICY_NAMESPACE = "networkpolicy.webhook.io/np-namespace"

TOKEN_SELECTOR = {APPROVAL_LABEL: "true"}


class TokenVerdict(str, Enum):
    APPROVED = "APPROVED"
    ABSENT = "ABSENT"
    WRONG_TYPE = "WRONG_TYPE"
    WITHDRAWN = "WITHDRAWN"
    FINGERPRINT_MISMATCH = "FINGERPRINT_MISMATCH"
    MISSING_ARTIFACT = "MISSING_ARTIFACT"

    @property
    def approved(self) -> bool:
        return self is TokenVerdict.APPROVED


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def lookup_token(
    store: ResourceStore, identity: PolicyIdentity, prefix: str,
) -> Optional[ApprovalToken]:
    try:
        return store.get_token(identity.namespace, derived_name(identity, prefix))
    except NotFoundError:
        return None


def stored_fingerprint(token: ApprovalToken) -> Optional[str]:
    raw = token.data.get(DATA_FINGERPRINT)
    return raw.decode("utf-8", errors="replace") if raw else None


def evaluate_token(token: Optional[ApprovalToken], fingerprint: str) -> TokenVerdict:
    """Decide whether *token* approves content with *fingerprint*."""
    if token is None:
        return TokenVerdict.ABSENT
    if token.type != TOKEN_TYPE:
        return TokenVerdict.WRONG_TYPE
    if token.metadata.deletion_timestamp:
        return TokenVerdict.WITHDRAWN
    if stored_fingerprint(token) != fingerprint:
        return TokenVerdict.FINGERPRINT_MISMATCH
    if not token.data.get(DATA_CERTIFICATE):
        return TokenVerdict.MISSING_ARTIFACT
    return TokenVerdict.APPROVED


def is_approval_token(token: ApprovalToken) -> bool:
    return token.type == TOKEN_TYPE and token.metadata.labels.get(APPROVAL_LABEL) == "true"


def token_request_name(token: ApprovalToken) -> Optional[str]:
    """Name of the approval request the token was materialized from."""
    name = token.metadata.annotations.get(ANNOTATION_REQUEST_NAME)
    if name:
        return name
    raw = token.data.get(DATA_REQUEST_NAME)
    return raw.decode("utf-8", errors="replace") if raw else None


# ---------------------------------------------------------------------------
# Protective guard
# ---------------------------------------------------------------------------

def has_guard(token: ApprovalToken) -> bool:
    return PROTECTION_FINALIZER in token.metadata.finalizers


def add_guard(token: ApprovalToken) -> bool:
    """Add the guard in place. Returns True if the token changed."""
    if has_guard(token):
        return False
    token.metadata.finalizers.append(PROTECTION_FINALIZER)
    return True


def remove_guard(token: ApprovalToken) -> bool:
    """Remove the guard in place. Returns True if the token changed."""
    if not has_guard(token):
        return False
    token.metadata.finalizers = [
        f for f in token.metadata.finalizers if f != PROTECTION_FINALIZER
    ]
    return True


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

def apply_grant(
    token: ApprovalToken,
    request: ApprovalRequest,
    identity: PolicyIdentity,
    fingerprint: str,
) -> ApprovalToken:
    """Overwrite *token* in place with the grant carried by *request*.

    Pure overwrite: running it twice leaves the same state.
    """
    request_name = request.metadata.name
    certificate = request.status.certificate if request.status else b""
    token.type = TOKEN_TYPE
    token.data = {
        DATA_FINGERPRINT: fingerprint.encode("utf-8"),
        DATA_CERTIFICATE: bytes(certificate),
        DATA_REQUEST_NAME: request_name.encode("utf-8"),
    }
    token.metadata.labels.update({
        APPROVAL_LABEL: "true",
        LABEL_POLICY_NAME: identity.name,
    })
    token.metadata.annotations.update({
        ANNOTATION_REQUEST_NAME: request_name,
        ANNOTATION_FINGERPRINT: fingerprint,
        ANNOTATION_POLICY_NAME: identity.name,
        ANNOTATION_POLICY_NAMESPACE: identity.namespace,
    })
    add_guard(token)
    return token


def build_token(
    request: ApprovalRequest,
    identity: PolicyIdentity,
    fingerprint: str,
    name: str,
) -> ApprovalToken:
    token = ApprovalToken(metadata=ObjectMeta(name=name, namespace=identity.namespace))
    return apply_grant(token, request, identity, fingerprint)


def delete_token(store: ResourceStore, token: ApprovalToken) -> None:
    """Two-phase delete: clear the guard, persist, then delete.

    If the delete call fails after the guard was persisted the token stays
    unguarded and the next sweep retries the delete.
    """
    namespace, name = token.metadata.namespace, token.metadata.name
    if remove_guard(token):
        logger.info("removing protection finalizer from secret %s/%s", namespace, name)
        try:
            token = store.update_token(token)
        except NotFoundError:
            return
    try:
        store.delete_token(namespace, name, token.metadata.resource_version or None)
    except NotFoundError:
        return
