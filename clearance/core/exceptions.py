"""
Clearance error kinds.

Every operation of the clearance workflow fails with one of these, never a
bare ValueError, so the presentation layer can tell the kinds apart. The
application exception handler in clearance.main renders them as

    {"error": <code>, "message": <text>, "details": {...}}

with the HTTP status carried by the class. Batch per-item failures reuse the
same codes inside BatchOperationResult instead of being raised.
"""

from typing import Any, Dict, Optional


class ErrorCode:
    """Error code constants - use these instead of strings."""
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_INPUT = "INVALID_INPUT"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    NOT_READY = "NOT_READY"
    EXTERNAL_FAILURE = "EXTERNAL_FAILURE"


class ClearanceError(Exception):
    """Base class for clearance workflow errors."""

    code: str = "CLEARANCE_ERROR"
    status_code: int = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidTransitionError(ClearanceError):
    """Lifecycle or payment state machine violation."""
    code = ErrorCode.INVALID_TRANSITION
    status_code = 409


class InvalidInputError(ClearanceError):
    """Malformed or out-of-range date/amount."""
    code = ErrorCode.INVALID_INPUT
    status_code = 422


class PreconditionFailedError(ClearanceError):
    """Completing a period while affiliates are still unsettled."""
    code = ErrorCode.PRECONDITION_FAILED
    status_code = 412


class NotFoundError(ClearanceError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class NotEligibleError(ClearanceError):
    """Affiliate is outside the current eligible set."""
    code = ErrorCode.NOT_ELIGIBLE
    status_code = 409


class NotReadyError(ClearanceError):
    """Criteria are not locked yet, so there is no eligible set to query."""
    code = ErrorCode.NOT_READY
    status_code = 409


class ExternalFailureError(ClearanceError):
    """A collaborator (ledger, identity provider, payment interface) failed."""
    code = ErrorCode.EXTERNAL_FAILURE
    status_code = 502
