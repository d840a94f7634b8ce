"""
API error types.

Every error carries a machine-readable ``code`` and an HTTP status. The app
factory registers a single handler that renders them as
``{"error": code, "message": ..., **extra}``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class ApiError(Exception):
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        body.update(self.extra)
        return body


class ValidationError(ApiError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, errors: list[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        super().__init__("; ".join(errors), errors=errors)
        self.errors = errors


class NotFoundError(ApiError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, entity: str) -> None:
        super().__init__(f"{entity} not found")


class ConflictError(ApiError):
    status_code = 409
    code = "CONFLICT"


class QuotaExceededError(ApiError):
    status_code = 402
    code = "QUOTA_EXCEEDED"

    def __init__(self, resource_type: str, current: int, limit: int) -> None:
        super().__init__(
            f"Quota exceeded for {resource_type}: {current}/{limit}",
            resourceType=resource_type,
            current=current,
            limit=limit,
            upgradeUrl=f"/pricing?upgrade={resource_type}",
        )
        self.resource_type = resource_type
        self.current = current
        self.limit = limit


class FeatureNotAvailableError(ApiError):
    status_code = 403
    code = "FEATURE_NOT_AVAILABLE"

    def __init__(self, feature: str, required_license: str, current_license: str) -> None:
        super().__init__(
            f"Feature '{feature}' requires {required_license} license. Current: {current_license}",
            feature=feature,
            requiredLicense=required_license,
            currentLicense=current_license,
            upgradeUrl=f"/pricing?upgrade={feature}",
        )
        self.feature = feature
        self.required_license = required_license


class RateLimitExceededError(ApiError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, current: int, limit: int, reset_at: datetime) -> None:
        super().__init__(
            f"Rate limit exceeded: {current}/{limit}. Resets at {reset_at.isoformat()}",
            current=current,
            limit=limit,
            resetAt=reset_at.isoformat(),
        )


class OrganizationInactiveError(ApiError):
    status_code = 403
    code = "ORGANIZATION_INACTIVE"

    def __init__(self, status: str) -> None:
        super().__init__(f"Organization is {status}", status=status)
