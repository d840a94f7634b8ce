from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from functools import wraps
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.irdesk.errors import FeatureNotAvailableError, QuotaExceededError, RateLimitExceededError
from app.irdesk.modules.licensing.features import (
    get_default_limits,
    get_features_for_license,
    get_required_license_for_feature,
    normalize_license,
)
from app.irdesk.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.irdesk.modules.licensing.models import OrganizationLimits
    from app.irdesk.modules.organizations.models import Organization

logger = logging.getLogger(__name__)

RESOURCE_TYPES = ("users", "incidents", "assets", "runbooks", "templates", "storage")
_LIMIT_FIELD = {
    "users": "max_users",
    "incidents": "max_incidents",
    "assets": "max_assets",
    "runbooks": "max_runbooks",
    "templates": "max_templates",
    "storage": "max_storage_mb",
}
_USAGE_KEY = {
    "users": "users",
    "incidents": "incidents",
    "assets": "assets",
    "runbooks": "runbooks",
    "templates": "templates",
    "storage": "storageMb",
}

WARNING_THRESHOLD = 80
CRITICAL_THRESHOLD = 90


# ---------- Features ----------
def organization_features(org: "Organization") -> dict[str, bool]:
    """Stored feature flags win over the license defaults (admins may toggle individual features)."""
    features = get_features_for_license(org.license_type)
    if org.features:
        features.update({k: bool(v) for k, v in org.features.items() if k in features})
    return features


def require_feature(org: "Organization", feature: str) -> None:
    if organization_features(org).get(feature):
        return
    required = get_required_license_for_feature(feature) or "enterprise"
    raise FeatureNotAvailableError(feature, required, normalize_license(org.license_type))


def feature_required(feature: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Route decorator; must sit below the auth/permission decorator."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            from app.irdesk.tenancy import current_organization

            require_feature(current_organization(), feature)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


# ---------- Limits ----------
def ensure_limits(s: "Session", org: "Organization") -> "OrganizationLimits":
    from app.irdesk.modules.licensing.models import OrganizationLimits

    limits = s.query(OrganizationLimits).filter(OrganizationLimits.organization_id == org.id).one_or_none()
    if limits is None:
        limits = OrganizationLimits(organization_id=org.id, **get_default_limits(org.license_type))
        s.add(limits)
        s.flush()
    return limits


def apply_license_limits(s: "Session", org: "Organization") -> "OrganizationLimits":
    """Reset quota ceilings to the defaults of the organization's license."""
    limits = ensure_limits(s, org)
    for field, value in get_default_limits(org.license_type).items():
        setattr(limits, field, value)
    # Seat count is sold separately from the tier.
    if org.license_count:
        limits.max_users = org.license_count
    return limits


def current_usage(s: "Session", org: "Organization") -> dict[str, Any]:
    from app.irdesk.modules.assets.models import Asset
    from app.irdesk.modules.communications.models import CommunicationTemplate
    from app.irdesk.modules.incidents.models import Incident
    from app.irdesk.modules.organizations.models import OrganizationMember
    from app.irdesk.modules.runbooks.models import Runbook

    def _count(model, *criteria) -> int:
        return int(s.query(func.count(model.id)).filter(*criteria).scalar() or 0)

    limits = ensure_limits(s, org)
    return {
        "users": _count(OrganizationMember, OrganizationMember.organization_id == org.id),
        "incidents": _count(Incident, Incident.organization_id == org.id),
        "assets": _count(Asset, Asset.organization_id == org.id, Asset.deleted_at.is_(None)),
        "runbooks": _count(Runbook, Runbook.organization_id == org.id),
        "templates": _count(CommunicationTemplate, CommunicationTemplate.organization_id == org.id),
        "storageMb": limits.current_storage_mb,
        "apiCallsThisHour": limits.api_calls_this_hour,
    }


def check_quota(s: "Session", org: "Organization", resource_type: str, increment: float = 1) -> dict[str, Any]:
    """
    Returns {allowed, current, limit, remaining}. Unlimited resources report limit/remaining as -1.
    """
    if resource_type not in RESOURCE_TYPES:
        raise ValueError(f"Invalid resource type: {resource_type}")
    limits = ensure_limits(s, org)
    usage = current_usage(s, org)
    current = usage[_USAGE_KEY[resource_type]]
    limit = getattr(limits, _LIMIT_FIELD[resource_type])
    if limit is None:
        return {"allowed": True, "current": current, "limit": -1, "remaining": -1}
    return {
        "allowed": current + increment <= limit,
        "current": current,
        "limit": limit,
        "remaining": limit - current,
    }


def enforce_quota(s: "Session", org: "Organization", resource_type: str, increment: float = 1) -> None:
    result = check_quota(s, org, resource_type, increment)
    if not result["allowed"]:
        logger.info(
            "Quota exceeded org=%s resource=%s current=%s limit=%s",
            org.id,
            resource_type,
            result["current"],
            result["limit"],
        )
        raise QuotaExceededError(resource_type, result["current"], result["limit"])


def add_storage_usage(s: "Session", org: "Organization", size_bytes: int) -> None:
    limits = ensure_limits(s, org)
    limits.current_storage_bytes = max((limits.current_storage_bytes or 0) + size_bytes, 0)


def quota_status(current: float, limit: float | None) -> str:
    if limit is None or limit <= 0:
        return "healthy"
    pct = current / limit * 100
    if pct >= 100:
        return "exceeded"
    if pct >= CRITICAL_THRESHOLD:
        return "critical"
    if pct >= WARNING_THRESHOLD:
        return "warning"
    return "healthy"


def quota_summary(s: "Session", org: "Organization") -> dict[str, Any]:
    limits = ensure_limits(s, org)
    usage = current_usage(s, org)
    percentages: dict[str, int] = {}
    statuses: dict[str, str] = {}
    for resource in RESOURCE_TYPES:
        limit = getattr(limits, _LIMIT_FIELD[resource])
        current = usage[_USAGE_KEY[resource]]
        percentages[resource] = round(current / limit * 100) if limit else 0
        statuses[resource] = quota_status(current, limit)
    warnings = [
        {"resource": r, "percentage": p, "message": f"{r} usage is at {p}%"}
        for r, p in percentages.items()
        if p > WARNING_THRESHOLD
    ]
    return {
        "usage": usage,
        "limits": limits.to_dict(),
        "percentages": percentages,
        "statuses": statuses,
        "warnings": warnings,
    }


# ---------- API rate limit ----------
def check_rate_limit(s: "Session", org: "Organization", *, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    limits = ensure_limits(s, org)
    limit = limits.api_rate_limit or 1000
    if limits.api_reset_at is None or now > limits.api_reset_at:
        limits.api_calls_this_hour = 0
        limits.api_reset_at = now + timedelta(hours=1)
        return {"allowed": True, "current": 0, "limit": limit, "remaining": limit, "resetAt": limits.api_reset_at}
    current = limits.api_calls_this_hour or 0
    return {
        "allowed": current < limit,
        "current": current,
        "limit": limit,
        "remaining": max(limit - current, 0),
        "resetAt": limits.api_reset_at,
    }


def enforce_rate_limit(s: "Session", org: "Organization", *, now: datetime | None = None) -> None:
    result = check_rate_limit(s, org, now=now)
    if not result["allowed"]:
        raise RateLimitExceededError(result["current"], result["limit"], result["resetAt"])
    limits = ensure_limits(s, org)
    limits.api_calls_this_hour = (limits.api_calls_this_hour or 0) + 1


def format_storage(mb: float) -> str:
    if mb >= 1024:
        return f"{mb / 1024:.1f} GB"
    return f"{mb:g} MB"
