"""
Kube SDK — Data Models
Shapes of the API server's own envelopes (Status, lists, watch events).
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class KubeStatus(BaseModel):
    """metav1.Status returned with every failed call."""
    model_config = ConfigDict(extra="ignore")

    kind: str = "Status"
    status: str = ""          # Success | Failure
    message: str = ""
    reason: str = ""          # NotFound | AlreadyExists | Conflict | ...
    code: Optional[int] = None


class ObjectList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metadata: dict[str, Any] = Field(default_factory=dict)
    items: list[dict[str, Any]] = Field(default_factory=list)


class WatchEventBody(BaseModel):
    """One line of a watch stream."""
    type: str                 # ADDED | MODIFIED | DELETED | BOOKMARK | ERROR
    object: dict[str, Any] = Field(default_factory=dict)
