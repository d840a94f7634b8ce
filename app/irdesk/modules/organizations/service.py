from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from app.irdesk.audit import record_event
from app.irdesk.errors import ConflictError, NotFoundError, ValidationError
from app.irdesk.modules.licensing.features import LICENSE_TYPES, get_features_for_license, normalize_license
from app.irdesk.modules.organizations.models import (
    INVITATION_STATUSES,
    MEMBER_ROLES,
    ORG_SIZES,
    ORG_STATUSES,
    InsurancePolicy,
    Invitation,
    Organization,
    OrganizationMember,
)
from app.irdesk.rbac import MEMBER_ROLE_TO_RBAC, ensure_rbac
from app.irdesk.utils import clean_str, parse_date, parse_datetime, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.irdesk.models import User

logger = logging.getLogger(__name__)

INVITATION_TTL = timedelta(days=7)

_PROFILE_FIELDS = ("name", "industry", "size", "address", "phone", "website")


# ---------- Profile ----------
def validate_organization_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    name = clean_str(payload.get("name"))
    if not partial and not name:
        errors.append("Organization name is required.")
    if name and len(name) > 100:
        errors.append("Organization name must be 100 characters or fewer.")
    size = clean_str(payload.get("size"))
    if size and size not in ORG_SIZES:
        errors.append(f"Invalid size. Must be one of: {', '.join(ORG_SIZES)}")
    website = clean_str(payload.get("website"))
    if website and not website.startswith(("http://", "https://")):
        errors.append("Website must start with http:// or https://")
    license_type = clean_str(payload.get("license_type"))
    if license_type and license_type not in LICENSE_TYPES:
        errors.append(f"Invalid license type. Must be one of: {', '.join(LICENSE_TYPES)}")
    status = clean_str(payload.get("status"))
    if status and status not in ORG_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(ORG_STATUSES)}")
    return errors


def update_organization(s: "Session", org: Organization, payload: dict, user: "User") -> Organization:
    errors = validate_organization_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    changes: dict[str, Any] = {}
    for field in _PROFILE_FIELDS:
        if field not in payload:
            continue
        new = clean_str(payload.get(field))
        if field == "name" and not new:
            continue
        old = getattr(org, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(org, field, new)
    if "allowed_email_domains" in payload:
        domains = _parse_domains(payload.get("allowed_email_domains"))
        if domains != (org.allowed_email_domains or []):
            changes["allowed_email_domains"] = {"old": org.allowed_email_domains, "new": domains}
            org.allowed_email_domains = domains
    if "custom_domain" in payload:
        org.custom_domain = clean_str(payload.get("custom_domain"))
    org.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="organization.update",
        entity_type="Organization",
        entity_id=str(org.id),
        metadata={"changes": changes},
        organization_id=org.id,
    )
    return org


def _parse_domains(raw: Any) -> list[str]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        raise ValidationError("allowed_email_domains must be a list of domains.")
    return sorted({str(d).strip().lower().lstrip("@") for d in raw if str(d).strip()})


def update_settings(s: "Session", org: Organization, patch: dict, user: "User") -> dict:
    """Key-wise merge into the settings bag; a null value removes the key."""
    if not isinstance(patch, dict):
        raise ValidationError("Settings must be a JSON object.")
    patch = {k: v for k, v in patch.items() if k != "csrf_token"}
    settings = dict(org.settings or {})
    for key, value in patch.items():
        if value is None:
            settings.pop(key, None)
        else:
            settings[key] = value
    org.settings = settings
    record_event(
        s,
        actor=user,
        action="organization.settings_update",
        entity_type="Organization",
        entity_id=str(org.id),
        metadata={"keys": sorted(patch)},
        organization_id=org.id,
    )
    return settings


# ---------- Provisioning and lifecycle ----------
def provision_organization(
    s: "Session",
    *,
    name: str,
    actor: "User | None",
    admin_user: "User | None" = None,
    license_type: str = "starter",
    license_count: int | None = None,
    trial_days: int = 30,
    profile: dict | None = None,
) -> Organization:
    """
    New organization in trial with license features, a limits record and the
    required default tags. ``admin_user`` becomes the owner.
    """
    from app.irdesk.modules.content.service import provision_default_tags
    from app.irdesk.modules.licensing.service import apply_license_limits

    payload = dict(profile or {})
    payload["name"] = name
    errors = validate_organization_payload(payload)
    if errors:
        raise ValidationError(errors)

    license_type = normalize_license(license_type)
    org = Organization(
        name=name.strip(),
        industry=clean_str(payload.get("industry")),
        size=clean_str(payload.get("size")),
        address=clean_str(payload.get("address")),
        phone=clean_str(payload.get("phone")),
        website=clean_str(payload.get("website")),
        status="trial",
        license_type=license_type,
        license_count=license_count or 5,
        trial_ends_at=utcnow() + timedelta(days=trial_days),
        features=get_features_for_license(license_type),
        allowed_email_domains=_parse_domains(payload.get("allowed_email_domains")),
        settings={},
    )
    s.add(org)
    s.flush()

    apply_license_limits(s, org)
    tags = provision_default_tags(s, org, created_by=admin_user or actor)
    if admin_user is not None:
        add_member(s, org, admin_user, "owner", actor=actor, enforce_quota=False)

    record_event(
        s,
        actor=actor,
        action="organization.create",
        entity_type="Organization",
        entity_id=str(org.id),
        metadata={"name": org.name, "license_type": license_type, "default_tags": len(tags)},
        organization_id=org.id,
    )
    logger.info("Provisioned organization id=%s name=%s license=%s", org.id, org.name, license_type)
    return org


def set_organization_status(s: "Session", org: Organization, status: str, user: "User", reason: str | None = None) -> Organization:
    if status not in ("active", "suspended"):
        raise ValidationError("Status must be 'active' or 'suspended'.")
    if status == "suspended" and not clean_str(reason):
        raise ValidationError("A reason is required to suspend an organization.")
    old = org.status
    if old == status:
        return org
    org.status = status
    action = "organization.suspend" if status == "suspended" else "organization.reactivate"
    record_event(
        s,
        actor=user,
        action=action,
        entity_type="Organization",
        entity_id=str(org.id),
        reason=reason,
        metadata={"old": old, "new": status},
        organization_id=org.id,
    )
    return org


def suspend_organization(s: "Session", org: Organization, user: "User", reason: str) -> Organization:
    return set_organization_status(s, org, "suspended", user, reason)


def reactivate_organization(s: "Session", org: Organization, user: "User") -> Organization:
    return set_organization_status(s, org, "active", user)


def update_license(
    s: "Session",
    org: Organization,
    user: "User",
    *,
    license_type: str | None = None,
    license_count: Any = None,
    expires_at: Any = None,
) -> Organization:
    """Change tier/seats/expiry; features and quota ceilings follow the new tier."""
    from app.irdesk.modules.licensing.service import apply_license_limits

    errors = []
    if license_type is not None and license_type not in LICENSE_TYPES:
        errors.append(f"Invalid license type. Must be one of: {', '.join(LICENSE_TYPES)}")
    count = parse_int(license_count, field="license_count")
    if count is not None and count < 1:
        errors.append("license_count must be at least 1.")
    if errors:
        raise ValidationError(errors)

    old = {"license_type": org.license_type, "license_count": org.license_count, "expires_at": org.expires_at}
    if license_type:
        org.license_type = license_type
        org.features = get_features_for_license(license_type)
    if count is not None:
        org.license_count = count
    if expires_at is not None:
        org.expires_at = expires_at if isinstance(expires_at, datetime) else parse_datetime(expires_at)
    if org.status in ("trial", "expired") and license_type:
        org.status = "active"
        org.trial_ends_at = None
    apply_license_limits(s, org)
    record_event(
        s,
        actor=user,
        action="organization.license_update",
        entity_type="Organization",
        entity_id=str(org.id),
        metadata={
            "old": old,
            "new": {"license_type": org.license_type, "license_count": org.license_count, "expires_at": org.expires_at},
        },
        organization_id=org.id,
    )
    return org


# ---------- Members ----------
def sync_member_roles(s: "Session", user: "User", member_role: str | None) -> None:
    """Replace the user's organization RBAC role; platform roles are kept."""
    roles = ensure_rbac(s)
    org_role_keys = set(MEMBER_ROLE_TO_RBAC.values())
    for r in list(user.roles):
        if r.key in org_role_keys:
            user.roles.remove(r)
    if member_role:
        user.roles.append(roles[MEMBER_ROLE_TO_RBAC[member_role]])


def add_member(
    s: "Session",
    org: Organization,
    user: "User",
    role: str,
    *,
    actor: "User | None",
    enforce_quota: bool = True,
) -> OrganizationMember:
    from app.irdesk.modules.licensing.service import enforce_quota as _enforce_quota

    if role not in MEMBER_ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(MEMBER_ROLES)}")
    existing = s.query(OrganizationMember).filter(OrganizationMember.user_id == user.id).one_or_none()
    if existing is not None:
        raise ConflictError("User already belongs to an organization.")
    if enforce_quota:
        _enforce_quota(s, org, "users")
    member = OrganizationMember(organization_id=org.id, user_id=user.id, role=role)
    s.add(member)
    sync_member_roles(s, user, role)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="team.member_add",
        entity_type="OrganizationMember",
        entity_id=str(member.id),
        metadata={"user_id": user.id, "email": user.email, "role": role},
        organization_id=org.id,
    )
    return member


def get_member(s: "Session", org: Organization, member_id: int) -> OrganizationMember:
    member = s.get(OrganizationMember, member_id)
    if member is None or member.organization_id != org.id:
        raise NotFoundError("Member")
    return member


def _owner_count(s: "Session", org: Organization) -> int:
    return (
        s.query(OrganizationMember)
        .filter(OrganizationMember.organization_id == org.id, OrganizationMember.role == "owner")
        .count()
    )


def change_member_role(s: "Session", org: Organization, member: OrganizationMember, role: str, user: "User") -> OrganizationMember:
    if role not in MEMBER_ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(MEMBER_ROLES)}")
    old = member.role
    if old == role:
        return member
    if old == "owner" and _owner_count(s, org) <= 1:
        raise ConflictError("Cannot change the role of the last owner.")
    member.role = role
    sync_member_roles(s, member.user, role)
    record_event(
        s,
        actor=user,
        action="team.role_change",
        entity_type="OrganizationMember",
        entity_id=str(member.id),
        metadata={"user_id": member.user_id, "old": old, "new": role},
        organization_id=org.id,
    )
    return member


def remove_member(s: "Session", org: Organization, member: OrganizationMember, user: "User") -> None:
    if member.user_id == user.id:
        raise ConflictError("You cannot remove yourself from the organization.")
    if member.role == "owner" and _owner_count(s, org) <= 1:
        raise ConflictError("Cannot remove the last owner of the organization.")
    removed_user = member.user
    meta = {"user_id": member.user_id, "email": removed_user.email if removed_user else None, "role": member.role}
    member_id = member.id
    s.delete(member)
    if removed_user is not None:
        sync_member_roles(s, removed_user, None)
    record_event(
        s,
        actor=user,
        action="team.member_remove",
        entity_type="OrganizationMember",
        entity_id=str(member_id),
        metadata=meta,
        organization_id=org.id,
    )


# ---------- Invitations ----------
def _email_domain_allowed(org: Organization, email: str) -> bool:
    domains = org.allowed_email_domains or []
    if not domains:
        return True
    return email.rsplit("@", 1)[-1].strip().lower() in domains


def create_invitation(s: "Session", org: Organization, payload: dict, user: "User") -> Invitation:
    from app.irdesk.models import User as UserModel

    email = (clean_str(payload.get("email")) or "").lower()
    role = clean_str(payload.get("role")) or "member"
    errors = []
    if not email or "@" not in email:
        errors.append("A valid email is required.")
    if role not in MEMBER_ROLES or role == "owner":
        errors.append("Invalid role. Must be one of: admin, member, viewer")
    if email and "@" in email and not _email_domain_allowed(org, email):
        errors.append("Email domain is not allowed for this organization.")
    if errors:
        raise ValidationError(errors)

    existing_user = s.query(UserModel).filter(UserModel.email == email).one_or_none()
    if existing_user is not None:
        member = s.query(OrganizationMember).filter(OrganizationMember.user_id == existing_user.id).one_or_none()
        if member is not None:
            raise ConflictError("User is already a team member.")
    pending = (
        s.query(Invitation)
        .filter(Invitation.organization_id == org.id, Invitation.email == email, Invitation.status == "pending")
        .one_or_none()
    )
    if pending is not None:
        raise ConflictError("Invitation already sent to this email.")

    now = utcnow()
    inv = Invitation(
        organization_id=org.id,
        email=email,
        role=role,
        token=secrets.token_urlsafe(32),
        status="pending",
        invited_by_user_id=user.id,
        invited_at=now,
        expires_at=now + INVITATION_TTL,
    )
    s.add(inv)
    s.flush()
    record_event(
        s,
        actor=user,
        action="team.invite",
        entity_type="Invitation",
        entity_id=str(inv.id),
        metadata={"email": email, "role": role},
        organization_id=org.id,
    )
    return inv


def revoke_invitation(s: "Session", org: Organization, invitation_id: int, user: "User") -> Invitation:
    inv = s.get(Invitation, invitation_id)
    if inv is None or inv.organization_id != org.id:
        raise NotFoundError("Invitation")
    if inv.status != "pending":
        raise ConflictError(f"Invitation is already {inv.status}.")
    inv.status = "revoked"
    record_event(
        s,
        actor=user,
        action="team.invite_revoke",
        entity_type="Invitation",
        entity_id=str(inv.id),
        metadata={"email": inv.email},
        organization_id=org.id,
    )
    return inv


def accept_invitation(s: "Session", token: str, user: "User") -> OrganizationMember:
    inv = s.query(Invitation).filter(Invitation.token == (token or "")).one_or_none()
    if inv is None:
        raise NotFoundError("Invitation")
    if inv.status != "pending":
        raise ConflictError(f"Invitation is already {inv.status}.")
    if inv.expires_at < utcnow():
        raise ConflictError("Invitation has expired.")
    if inv.email.lower() != user.email.lower():
        raise ValidationError("Invitation was sent to a different email address.")
    org = s.get(Organization, inv.organization_id)
    if not _email_domain_allowed(org, user.email):
        raise ValidationError("Email domain is not allowed for this organization.")
    member = add_member(s, org, user, inv.role, actor=user)
    inv.status = "accepted"
    inv.accepted_at = utcnow()
    return member


def list_invitations(s: "Session", org: Organization, status: str | None = None) -> list[Invitation]:
    q = s.query(Invitation).filter(Invitation.organization_id == org.id)
    if status:
        if status not in INVITATION_STATUSES:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(INVITATION_STATUSES)}")
        q = q.filter(Invitation.status == status)
    return q.order_by(Invitation.invited_at.desc()).all()


# ---------- Insurance ----------
_INSURANCE_REQUIRED = ("provider", "policy_number", "coverage_type", "start_date", "end_date")
_INSURANCE_OPTIONAL = (
    "coverage_amount",
    "deductible",
    "contact_name",
    "contact_email",
    "contact_phone",
    "claims_contact",
    "claims_phone",
    "claims_email",
    "additional_notes",
)


def validate_insurance_payload(payload: dict, *, existing: InsurancePolicy | None = None) -> list[str]:
    errors = []
    for field in _INSURANCE_REQUIRED:
        present = clean_str(payload.get(field)) is not None
        if not present and (existing is None or field in payload):
            errors.append(f"{field} is required.")
    try:
        start = parse_date(payload.get("start_date")) or (existing.start_date if existing else None)
        end = parse_date(payload.get("end_date")) or (existing.end_date if existing else None)
    except ValidationError as e:
        errors.extend(e.errors)
        return errors
    if start and end and end <= start:
        errors.append("end_date must be after start_date.")
    return errors


def create_insurance_policy(s: "Session", org: Organization, payload: dict, user: "User") -> InsurancePolicy:
    errors = validate_insurance_payload(payload)
    if errors:
        raise ValidationError(errors)
    policy = InsurancePolicy(
        organization_id=org.id,
        provider=clean_str(payload.get("provider")),
        policy_number=clean_str(payload.get("policy_number")),
        coverage_type=clean_str(payload.get("coverage_type")),
        start_date=parse_date(payload.get("start_date")),
        end_date=parse_date(payload.get("end_date")),
        **{f: clean_str(payload.get(f)) for f in _INSURANCE_OPTIONAL},
    )
    s.add(policy)
    s.flush()
    record_event(
        s,
        actor=user,
        action="organization.insurance_create",
        entity_type="InsurancePolicy",
        entity_id=str(policy.id),
        metadata={"provider": policy.provider, "policy_number": policy.policy_number},
        organization_id=org.id,
    )
    return policy


def update_insurance_policy(s: "Session", policy: InsurancePolicy, payload: dict, user: "User") -> InsurancePolicy:
    errors = validate_insurance_payload(payload, existing=policy)
    if errors:
        raise ValidationError(errors)
    changes = {}
    for field in _INSURANCE_REQUIRED + _INSURANCE_OPTIONAL:
        if field not in payload:
            continue
        new = parse_date(payload.get(field)) if field.endswith("_date") else clean_str(payload.get(field))
        old = getattr(policy, field)
        if new != old:
            changes[field] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
            setattr(policy, field, new)
    record_event(
        s,
        actor=user,
        action="organization.insurance_update",
        entity_type="InsurancePolicy",
        entity_id=str(policy.id),
        metadata={"changes": changes},
        organization_id=policy.organization_id,
    )
    return policy


def get_insurance_policy(s: "Session", org: Organization, policy_id: int) -> InsurancePolicy:
    policy = s.get(InsurancePolicy, policy_id)
    if policy is None or policy.organization_id != org.id:
        raise NotFoundError("Insurance policy")
    return policy


def delete_insurance_policy(s: "Session", policy: InsurancePolicy, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="organization.insurance_delete",
        entity_type="InsurancePolicy",
        entity_id=str(policy.id),
        metadata={"provider": policy.provider, "policy_number": policy.policy_number},
        organization_id=policy.organization_id,
    )
    s.delete(policy)
