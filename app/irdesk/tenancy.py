"""
Resolves the organization a request acts on.

Every organization-scoped handler calls ``current_organization()``; the result is
cached on ``g`` for the rest of the request.
"""

from __future__ import annotations

from flask import abort, g

from app.irdesk.db import db_session
from app.irdesk.errors import ApiError, OrganizationInactiveError
from app.irdesk.models import User
from app.irdesk.modules.organizations.models import Organization, OrganizationMember
from app.irdesk.utils import utcnow


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        abort(401)
    return u


def membership_for(user: User) -> OrganizationMember | None:
    s = db_session()
    return s.query(OrganizationMember).filter(OrganizationMember.user_id == user.id).one_or_none()


def organization_state(org: Organization) -> str:
    """Effective status: a lapsed trial or license reads as ``expired``."""
    now = utcnow()
    if org.status == "trial" and org.trial_ends_at is not None and org.trial_ends_at < now:
        return "expired"
    if org.status == "active" and org.expires_at is not None and org.expires_at < now:
        return "expired"
    return org.status


def ensure_active(org: Organization) -> None:
    state = organization_state(org)
    if state in ("suspended", "expired"):
        raise OrganizationInactiveError(state)


def current_organization(*, allow_inactive: bool = False) -> Organization:
    cached = getattr(g, "current_org", None)
    if cached is not None:
        if not allow_inactive:
            ensure_active(cached)
        return cached

    member = membership_for(current_user())
    if member is None:
        raise ApiError("You are not a member of any organization.", code="NO_ORGANIZATION", status_code=403)
    org = member.organization
    g.current_org = org
    g.current_member = member
    if not allow_inactive:
        ensure_active(org)
    return org


def meter_api_request() -> None:
    """
    before_request hook: counts organization API calls against the hourly rate limit.
    Platform administration routes are not metered.
    """
    from flask import request

    from app.irdesk.modules.licensing.service import enforce_rate_limit

    if not request.path.startswith("/api/") or request.path.startswith(("/api/system-admin", "/api/settings")):
        return None
    user = getattr(g, "current_user", None)
    if user is None:
        return None
    member = membership_for(user)
    if member is None:
        return None
    s = db_session()
    enforce_rate_limit(s, member.organization)
    s.commit()
    return None


def current_member() -> OrganizationMember:
    current_organization(allow_inactive=True)
    return g.current_member
