"""
Error Taxonomy
Every failure raised by the gate, the store adapters and the reconcilers.

Admission turns any GateError into a denial (fail closed). Reconcilers map
errors onto a ReconcileResult: permanent errors are reported and dropped,
not-ready errors wait a fixed delay, everything else backs off exponentially.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class GateError(Exception):
    """Base class for all approval-gate errors."""


# ---------------------------------------------------------------------------
# Retry classes
# ---------------------------------------------------------------------------

class RetryableError(GateError):
    """Failure that should be retried with backoff."""


class PermanentError(GateError):
    """Malformed input. Retrying cannot help; the caller must fix the input."""


class NotReadyError(GateError):
    """Request is granted but the signed artifact is not populated yet."""

    def __init__(self, message: str, requeue_after: float):
        super().__init__(message)
        self.requeue_after = requeue_after


class DeadlineExceeded(RetryableError):
    """The caller's deadline expired before the operation finished."""


class MalformedRequestError(PermanentError):
    """Approval request lacks a required cross-reference field."""


class FingerprintError(PermanentError):
    """Policy content could not be serialized for fingerprinting."""


class ConfigError(PermanentError):
    """Invalid configuration value."""


# ---------------------------------------------------------------------------
# Store errors
# ---------------------------------------------------------------------------

class StoreError(GateError):
    """Resource store failure not covered by a more specific class."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(StoreError):
    """Object absent at read time. A state signal, not a failure."""


class AlreadyExistsError(StoreError):
    """Create lost a race against another writer of the same name."""


class ConflictError(StoreError, RetryableError):
    """Version-checked write was rejected because the object changed."""


class TransientStoreError(StoreError, RetryableError):
    """Timeout, throttling, or connectivity failure."""


# ---------------------------------------------------------------------------
# Reconcile result mapping
# ---------------------------------------------------------------------------

@dataclass
class ReconcileResult:
    requeue_after: Optional[float] = None
    error: Optional[str] = None
    permanent: bool = False

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff for the *attempt*-th consecutive failure (1-based)."""
    if attempt < 1:
        attempt = 1
    # the exponent is capped so long failure streaks cannot overflow
    return min(base_seconds * (2 ** min(attempt - 1, 32)), max_seconds)


def reconcile_result_for(
    exc: Exception,
    attempt: int,
    base_seconds: float,
    max_seconds: float,
) -> ReconcileResult:
    """Translate a reconcile failure into a requeue decision.

    Anything outside the permanent and not-ready classes, including
    exceptions that are not GateErrors, backs off and retries.
    """
    if isinstance(exc, NotFoundError):
        return ReconcileResult()
    if isinstance(exc, PermanentError):
        return ReconcileResult(error=str(exc), permanent=True)
    if isinstance(exc, NotReadyError):
        return ReconcileResult(requeue_after=exc.requeue_after, error=str(exc))
    return ReconcileResult(
        requeue_after=backoff_delay(attempt, base_seconds, max_seconds),
        error=str(exc),
    )
