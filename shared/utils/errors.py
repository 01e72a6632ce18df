"""
shared/utils/errors.py
Typed domain errors raised by the dispatch core.

Each error maps to one HTTP status code. main.py registers a handler for
DispatchError so routers never translate these by hand.
"""

from enum import Enum
from typing import Optional


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500
    code: str = "internal"

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)

    def to_dict(self) -> dict:
        return {"detail": self.detail, "code": self.code}


class NotFound(DispatchError):
    """Entity missing (404)."""

    status_code = 404
    code = "not_found"


class Forbidden(DispatchError):
    """Wrong principal, not a notified candidate, or inactive subscription (403)."""

    status_code = 403
    code = "forbidden"


class Conflict(DispatchError):
    """Lost the accept race or the request moved on (409)."""

    status_code = 409
    code = "conflict"

    def __init__(self, detail: str = "Request is no longer available"):
        super().__init__(detail)


class QuotaReason(str, Enum):
    TRIAL_EXHAUSTED = "trial_exhausted"
    NO_ACTIVE_PLAN = "no_active_plan"


class QuotaExceeded(DispatchError):
    """Admission denied by the membership quota (403)."""

    status_code = 403
    code = "quota_exceeded"

    def __init__(self, reason: QuotaReason, detail: Optional[str] = None):
        self.reason = reason
        if detail is None:
            detail = (
                "Free trial limit reached. Please upgrade to continue."
                if reason == QuotaReason.TRIAL_EXHAUSTED
                else "Request limit exceeded or no active membership"
            )
        super().__init__(detail)

    def to_dict(self) -> dict:
        return {**super().to_dict(), "reason": self.reason.value}


class ValidationError(DispatchError):
    """Illegal state transition or malformed input (400)."""

    status_code = 400
    code = "validation_error"


class Internal(DispatchError):
    """Unexpected persistence or transport failure (500)."""

    status_code = 500
    code = "internal"
