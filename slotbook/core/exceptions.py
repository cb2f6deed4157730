"""Error taxonomy for the scheduling core.

Every error a caller can act on derives from SchedulingError and carries a
machine-readable ``reason`` so the HTTP layer (or any other caller) can render
a specific message without parsing text.
"""
from typing import Any


class ConfigurationError(RuntimeError):
    """Raised for deployment mistakes (e.g. unknown timezone). Fatal at startup."""


class SchedulingError(Exception):
    status_code: int = 400
    default_reason: str = "scheduling_error"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "reason": self.reason}


class BookingValidationError(SchedulingError):
    """Malformed input, rejected before any store access."""

    status_code = 422
    default_reason = "invalid_request"


class NotFoundError(SchedulingError):
    status_code = 404
    default_reason = "not_found"


class StateConflictError(SchedulingError):
    """The target row is in a state that forbids the requested change."""

    status_code = 409
    default_reason = "state_conflict"


class PolicyViolationError(SchedulingError):
    status_code = 422
    default_reason = "policy_violation"

    def __init__(self, message: str, *, policy: str, limit: int | float) -> None:
        super().__init__(message, reason=policy)
        self.policy = policy
        self.limit = limit

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["limit"] = self.limit
        return data


class StoreTimeoutError(SchedulingError):
    status_code = 503
    default_reason = "store_timeout"


class AccessDeniedError(SchedulingError):
    status_code = 403
    default_reason = "access_denied"
