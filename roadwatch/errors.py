from __future__ import annotations

from typing import Any, Dict, Optional


class RoadwatchError(Exception):
    """Base class for expected, typed outcomes returned to callers."""

    status_code = 400
    default_code = "ROADWATCH_ERROR"

    def __init__(self, message: str, *, error_code: Optional[str] = None):
        self.message = str(message)
        self.error_code = str(error_code or self.default_code)
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
        }


class Unauthenticated(RoadwatchError):
    status_code = 401
    default_code = "AUTH_REQUIRED"


class Forbidden(RoadwatchError):
    status_code = 403
    default_code = "POLICY_DENIED"


class NotFound(RoadwatchError):
    status_code = 404
    default_code = "NOT_FOUND"


class InvalidTransition(RoadwatchError):
    status_code = 409
    default_code = "INVALID_TRANSITION"


class ConcurrentUpdate(RoadwatchError):
    status_code = 409
    default_code = "CONCURRENT_UPDATE"


class ValidationError(RoadwatchError):
    status_code = 422
    default_code = "VALIDATION_ERROR"


class ThrottleExceeded(RoadwatchError):
    status_code = 429
    default_code = "RATE_LIMIT_ROLE"

    def __init__(self, message: str, *, retry_after: int = 1, role: str = "", error_code: Optional[str] = None):
        self.retry_after = max(1, int(retry_after))
        self.role = role
        super().__init__(message, error_code=error_code)

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["retry_after"] = self.retry_after
        detail["role"] = self.role
        return detail
