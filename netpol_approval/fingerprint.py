"""
Policy Fingerprint
Computes a SHA-256 digest over the canonical JSON of a NetworkPolicy's
identity and spec. Two policies share a fingerprint exactly when their
namespace, name and spec are structurally equal; metadata and status never
contribute.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from netpol_approval.errors import FingerprintError
from netpol_approval.models import PolicyIdentity, PolicyObject


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and no insignificant whitespace."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def _drop_nulls(value: Any) -> Any:
    # A null field and an absent field describe the same policy.
    if isinstance(value, Mapping):
        return {k: _drop_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_drop_nulls(v) for v in value]
    return value


def fingerprint(identity: PolicyIdentity, spec: Mapping[str, Any]) -> str:
    """Return the 64-character hex fingerprint of (identity, spec).

    Raises FingerprintError when the spec holds values JSON cannot encode.
    """
    payload = {
        "name": identity.name,
        "namespace": identity.namespace,
        "spec": _drop_nulls(spec),
    }
    try:
        canonical = canonical_json(payload)
    except (TypeError, ValueError) as exc:
        raise FingerprintError(
            f"failed to serialize NetworkPolicy {identity} for hashing: {exc}"
        ) from exc
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def policy_fingerprint(policy: PolicyObject) -> str:
    return fingerprint(policy.identity, policy.spec)
