"""
Grant Materializer
Turns a granted approval request into the approval token the admission gate
reads. One reconcile call handles one request name; it reads fresh state
every time and is safe to run any number of times.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from netpol_approval.approval_requests import (
    RequestState,
    is_approval_request,
    request_reference,
    request_state,
)
from netpol_approval.config import GateConfig
from netpol_approval.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    NotReadyError,
    PermanentError,
)
from netpol_approval.store import ResourceStore
from netpol_approval.tokens import TOKEN_TYPE, apply_grant, build_token

logger = logging.getLogger(__name__)

APPROVAL_TOKEN_MATERIALIZED = "APPROVAL_TOKEN_MATERIALIZED"
MATERIALIZER_ACTOR = "system:netpol-approval-controller"


class ReconcileOutcome(str, Enum):
    REQUEST_GONE = "REQUEST_GONE"
    IGNORED = "IGNORED"
    PENDING = "PENDING"
    DENIED = "DENIED"
    MATERIALIZED = "MATERIALIZED"


class ForeignTokenError(PermanentError):
    """A same-named Secret of another type occupies the token's name."""


@dataclass
class GrantMaterializer:
    store: ResourceStore
    config: GateConfig
    audit: Any = None

    def reconcile(self, request_name: str) -> ReconcileOutcome:
        try:
            request = self.store.get_request(request_name)
        except NotFoundError:
            return ReconcileOutcome.REQUEST_GONE

        if not is_approval_request(request):
            return ReconcileOutcome.IGNORED

        state = request_state(request)
        if state in (RequestState.CREATED, RequestState.PENDING):
            return ReconcileOutcome.PENDING
        if state.terminal:
            logger.info("approval request %s is %s, no token", request_name, state.value.lower())
            return ReconcileOutcome.DENIED

        identity, fingerprint = request_reference(request)
        if request.status is None or not request.status.certificate:
            raise NotReadyError(
                f"approval request {request_name} is approved but has no certificate yet",
                requeue_after=self.config.not_ready_requeue_seconds,
            )

        try:
            existing = self.store.get_token(identity.namespace, request_name)
        except NotFoundError:
            existing = None

        if existing is None:
            token = build_token(request, identity, fingerprint, request_name)
            try:
                self.store.create_token(token)
            except AlreadyExistsError as exc:
                raise ConflictError(
                    f"secret {identity.namespace}/{request_name} appeared while creating it",
                    exc.status_code,
                ) from exc
            logger.info("created approval secret %s/%s", identity.namespace, request_name)
        else:
            if existing.type != TOKEN_TYPE:
                raise ForeignTokenError(
                    f"secret {identity.namespace}/{request_name} exists with type "
                    f"{existing.type!r}, refusing to overwrite"
                )
            if existing.metadata.deletion_timestamp:
                # finish the deletion first, the next pass recreates it
                raise ConflictError(
                    f"secret {identity.namespace}/{request_name} is being deleted"
                )
            updated = apply_grant(existing.model_copy(deep=True), request, identity, fingerprint)
            if updated == existing:
                logger.debug("approval secret %s/%s is up to date", identity.namespace, request_name)
                return ReconcileOutcome.MATERIALIZED
            self.store.update_token(updated)
            logger.info("updated approval secret %s/%s", identity.namespace, request_name)

        self._log(identity.key, request_name, fingerprint)
        return ReconcileOutcome.MATERIALIZED

    def _log(self, subject: str, request_name: str, fingerprint: Optional[str]) -> None:
        if self.audit is not None:
            self.audit.log_event(
                actor_id=MATERIALIZER_ACTOR,
                action_type=APPROVAL_TOKEN_MATERIALIZED,
                subject=subject,
                payload={"request_name": request_name, "fingerprint": fingerprint},
            )
