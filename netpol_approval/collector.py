"""
Orphan Collector
Sweeps approval tokens against the approval requests they were materialized
from. A token whose request no longer exists is orphaned and is removed
through tokens.delete_token (guard off, persist, delete).

Failures are per token: one bad token never stops the sweep, and a token
left unguarded by a half-finished deletion is picked up again next time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from netpol_approval.errors import GateError, NotFoundError
from netpol_approval.models import ApprovalToken
from netpol_approval.store import ResourceStore
from netpol_approval.tokens import (
    ANNOTATION_POLICY_NAME,
    ANNOTATION_POLICY_NAMESPACE,
    TOKEN_SELECTOR,
    delete_token,
    is_approval_token,
    token_request_name,
)

logger = logging.getLogger(__name__)

APPROVAL_TOKEN_COLLECTED = "APPROVAL_TOKEN_COLLECTED"
COLLECTOR_ACTOR = "system:netpol-approval-collector"


def _policy_key(token: ApprovalToken) -> Optional[str]:
    annotations = token.metadata.annotations
    namespace = annotations.get(ANNOTATION_POLICY_NAMESPACE)
    name = annotations.get(ANNOTATION_POLICY_NAME)
    return f"{namespace}/{name}" if namespace and name else None


@dataclass
class SweepReport:
    examined: int = 0
    collected: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "examined": self.examined,
            "collected": list(self.collected),
            "failed": dict(self.failed),
        }


@dataclass
class OrphanCollector:
    store: ResourceStore
    audit: Any = None

    def sweep(self) -> SweepReport:
        report = SweepReport()
        for token in self.store.list_tokens(TOKEN_SELECTOR):
            if not is_approval_token(token):
                continue
            report.examined += 1
            key = f"{token.metadata.namespace}/{token.metadata.name}"

            request_name = token_request_name(token)
            if not request_name:
                report.failed[key] = "secret does not reference an approval request"
                logger.error("approval secret %s does not reference an approval request", key)
                continue

            try:
                self.store.get_request(request_name)
                continue
            except NotFoundError:
                pass
            except GateError as exc:
                report.failed[key] = str(exc)
                logger.warning("could not look up approval request %s: %s", request_name, exc)
                continue

            try:
                delete_token(self.store, token)
            except GateError as exc:
                report.failed[key] = str(exc)
                logger.warning("failed to delete orphaned approval secret %s: %s", key, exc)
                continue

            report.collected.append(key)
            logger.info("deleted orphaned approval secret %s (request %s gone)", key, request_name)
            if self.audit is not None:
                try:
                    self.audit.log_event(
                        actor_id=COLLECTOR_ACTOR,
                        action_type=APPROVAL_TOKEN_COLLECTED,
                        subject=_policy_key(token) or key,
                        payload={"request_name": request_name, "secret": key},
                    )
                except Exception as exc:
                    # the secret is already gone; the sweep goes on without the event
                    report.failed[key] = f"collected but not audited: {exc}"
                    logger.exception("audit of collected approval secret %s failed", key)

        if report.examined:
            logger.info(
                "sweep examined %d approval secret(s), collected %d, failed %d",
                report.examined, len(report.collected), len(report.failed),
            )
        return report
