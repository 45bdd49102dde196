from __future__ import annotations

from typing import Optional


class SnapSplitError(Exception):
    def __init__(self, message: str, code: str = "error", status_code: int = 400):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class BillNotFound(SnapSplitError):
    """Terminal for the request. Distinct from an in-band conflict."""

    def __init__(self, bill_id: str):
        self.bill_id = bill_id
        super().__init__(f"Bill not found: {bill_id}", code="BILL_NOT_FOUND", status_code=404)


class ConcurrencyFault(SnapSplitError):
    """A second writer committed the bill first."""

    def __init__(self, bill_id: str, expected_version: Optional[int] = None, actual_version: Optional[int] = None):
        self.bill_id = bill_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrent modification of bill {bill_id} "
            f"(expected v{expected_version}, found v{actual_version})",
            code="CONCURRENT_MODIFICATION",
            status_code=409,
        )


class StructuralIntegrityError(RuntimeError):
    """
    Bookkeeping fault: an entity that should already be synced has no server id.

    Never a user-facing validation error. Callers abort the sync instead of
    guessing an identifier.
    """

    def __init__(self, kind: str, local_id: str, reason: str):
        self.kind = kind
        self.local_id = local_id
        self.reason = reason
        super().__init__(f"Structural integrity fault for {kind} '{local_id}': {reason}")


class ClaimError(SnapSplitError):
    def __init__(self, message: str):
        super().__init__(message, code="CLAIM_REJECTED", status_code=409)


class SyncTransportError(Exception):
    """Failure talking to the sync endpoint. `retryable` drives queue backoff."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = False, code: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.code = code
        super().__init__(message)
