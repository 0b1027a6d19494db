"""
Wire Models
Typed shapes of the three objects the gate works with, mirroring the
Kubernetes JSON layout (camelCase on the wire, snake_case in Python).

  PolicyObject     networking.k8s.io/v1 NetworkPolicy
  ApprovalRequest  certificates.k8s.io/v1 CertificateSigningRequest
  ApprovalToken    v1 Secret of the approval type
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class KubeModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ObjectMeta(KubeModel):
    # ownerReferences, uid, managedFields ... survive a read-modify-write
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow",
    )

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    resource_version: str = ""
    deletion_timestamp: Optional[str] = None


@dataclass(frozen=True)
class PolicyIdentity:
    namespace: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def __str__(self) -> str:
        return self.key


# ---------------------------------------------------------------------------
# NetworkPolicy
# ---------------------------------------------------------------------------

class PolicyObject(KubeModel):
    api_version: str = "networking.k8s.io/v1"
    kind: str = "NetworkPolicy"
    metadata: ObjectMeta
    spec: dict[str, Any] = Field(default_factory=dict)

    @property
    def identity(self) -> PolicyIdentity:
        return PolicyIdentity(namespace=self.metadata.namespace, name=self.metadata.name)


# ---------------------------------------------------------------------------
# CertificateSigningRequest
# ---------------------------------------------------------------------------

class RequestCondition(KubeModel):
    type: str
    status: str = "True"
    reason: str = ""
    message: str = ""
    last_update_time: Optional[str] = None


class RequestSpec(KubeModel):
    request: bytes = b""
    signer_name: str = ""
    usages: list[str] = Field(default_factory=list)
    expiration_seconds: Optional[int] = None


class RequestStatus(KubeModel):
    conditions: list[RequestCondition] = Field(default_factory=list)
    certificate: bytes = b""


class ApprovalRequest(KubeModel):
    api_version: str = "certificates.k8s.io/v1"
    kind: str = "CertificateSigningRequest"
    metadata: ObjectMeta
    spec: RequestSpec = Field(default_factory=RequestSpec)
    status: Optional[RequestStatus] = None


# ---------------------------------------------------------------------------
# Secret
# ---------------------------------------------------------------------------

class ApprovalToken(KubeModel):
    api_version: str = "v1"
    kind: str = "Secret"
    metadata: ObjectMeta
    type: str = ""
    data: dict[str, bytes] = Field(default_factory=dict)
