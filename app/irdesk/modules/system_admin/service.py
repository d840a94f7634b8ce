"""
Platform administration: organizations, users, licenses, settings and API keys.

Every function here is reached only through ``require_system_admin`` routes;
organization-level rules (last owner, quotas, role sync) are delegated to the
organizations service.
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import time
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select, text
from werkzeug.security import generate_password_hash

from app.irdesk.audit import record_event
from app.irdesk.auth import validate_password
from app.irdesk.errors import ConflictError, NotFoundError, ValidationError
from app.irdesk.models import AuditEvent, User
from app.irdesk.modules.exercises.models import ExerciseCompletion
from app.irdesk.modules.incidents.models import Incident
from app.irdesk.modules.licensing.features import LICENSE_TYPES, get_default_limits, get_features_for_license
from app.irdesk.modules.organizations.models import ORG_STATUSES, Organization, OrganizationMember
from app.irdesk.modules.organizations.service import add_member, provision_organization, sync_member_roles
from app.irdesk.modules.runbooks.models import RunbookExecution
from app.irdesk.modules.runbooks.service import ACTIVE_EXECUTION_STATUSES, delete_evidence_files
from app.irdesk.modules.system_admin.models import SETTING_CATEGORIES, SETTING_DATA_TYPES, SystemApiKey, SystemSetting
from app.irdesk.rbac import ensure_rbac
from app.irdesk.security import generate_temporary_password
from app.irdesk.tenancy import organization_state
from app.irdesk.utils import clean_str, parse_bool, parse_datetime, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

    from app.irdesk.storage import Storage

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "irk_"
_EMAIL_MAX = 320


# ---------- Organizations ----------
def list_organizations(s: "Session", args) -> "Query":
    q = s.query(Organization)
    status = clean_str(args.get("status"))
    if status:
        if status not in ORG_STATUSES:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(ORG_STATUSES)}")
        q = q.filter(Organization.status == status)
    license_type = clean_str(args.get("license_type"))
    if license_type:
        if license_type not in LICENSE_TYPES:
            raise ValidationError(f"Invalid license type. Must be one of: {', '.join(LICENSE_TYPES)}")
        q = q.filter(Organization.license_type == license_type)
    term = clean_str(args.get("q"))
    if term:
        like = f"%{term}%"
        q = q.filter(or_(Organization.name.ilike(like), Organization.industry.ilike(like)))
    return q.order_by(Organization.created_at.desc(), Organization.id.desc())


def member_counts(s: "Session", organization_ids: list[int]) -> dict[int, int]:
    if not organization_ids:
        return {}
    rows = (
        s.query(OrganizationMember.organization_id, func.count(OrganizationMember.id))
        .filter(OrganizationMember.organization_id.in_(organization_ids))
        .group_by(OrganizationMember.organization_id)
        .all()
    )
    return {org_id: int(n) for org_id, n in rows}


def get_organization(s: "Session", organization_id: int) -> Organization:
    org = s.get(Organization, organization_id)
    if org is None:
        raise NotFoundError("Organization")
    return org


def get_user(s: "Session", user_id: int) -> User:
    user = s.get(User, user_id)
    if user is None:
        raise NotFoundError("User")
    return user


def _validate_new_user(s: "Session", payload: dict) -> list[str]:
    errors = []
    email = (clean_str(payload.get("email")) or "").lower()
    if not email or "@" not in email or len(email) > _EMAIL_MAX:
        errors.append("A valid email is required.")
    elif s.query(User).filter(User.email == email).one_or_none() is not None:
        errors.append("A user with this email already exists.")
    password = payload.get("password")
    if password:
        errors.extend(validate_password(password))
    return errors


def _new_user(s: "Session", payload: dict) -> tuple[User, str | None]:
    """Returns (user, temporary_password); the password is generated when none is supplied."""
    password = payload.get("password") or None
    temporary = None
    if not password:
        temporary = password = generate_temporary_password()
    user = User(
        email=clean_str(payload.get("email")).lower(),
        name=clean_str(payload.get("name")),
        password_hash=generate_password_hash(password),
        is_active=True,
    )
    s.add(user)
    s.flush()
    return user, temporary


def create_organization(s: "Session", payload: dict, actor: User) -> tuple[Organization, dict | None]:
    """
    Provision an organization, optionally with its first owner.
    ``payload["admin"]`` may name an existing user (``user_id``) or new account details.
    """
    name = clean_str(payload.get("name"))
    if not name:
        raise ValidationError("Organization name is required.")
    license_type = clean_str(payload.get("license_type")) or "starter"
    if license_type not in LICENSE_TYPES:
        raise ValidationError(f"Invalid license type. Must be one of: {', '.join(LICENSE_TYPES)}")
    trial_days = parse_int(payload.get("trial_days"), field="trial_days")

    admin_payload = payload.get("admin")
    admin_user = None
    temporary = None
    if isinstance(admin_payload, dict):
        admin_id = parse_int(admin_payload.get("user_id"), field="user_id")
        if admin_id is not None:
            admin_user = get_user(s, admin_id)
        else:
            errors = _validate_new_user(s, admin_payload)
            if errors:
                raise ValidationError(errors)
            admin_user, temporary = _new_user(s, admin_payload)

    profile = {k: payload.get(k) for k in ("industry", "size", "address", "phone", "website", "allowed_email_domains") if k in payload}
    org = provision_organization(
        s,
        name=name,
        actor=actor,
        admin_user=admin_user,
        license_type=license_type,
        license_count=parse_int(payload.get("license_count"), field="license_count"),
        trial_days=trial_days if trial_days is not None else 30,
        profile=profile,
    )
    admin = None
    if admin_user is not None:
        admin = {"user": admin_user.to_dict(), "temporaryPassword": temporary}
    return org, admin


def delete_organization(s: "Session", org: Organization, actor: User, storage: "Storage") -> None:
    incidents = s.query(func.count(Incident.id)).filter(Incident.organization_id == org.id).scalar() or 0
    if incidents:
        raise ConflictError(f"Organization has {incidents} incident(s) and cannot be deleted.")
    execution_ids = [eid for (eid,) in s.query(RunbookExecution.id).filter(RunbookExecution.organization_id == org.id)]
    delete_evidence_files(s, storage, execution_ids)
    for member in list(org.members):
        if member.user is not None:
            sync_member_roles(s, member.user, None)
    meta = {"organization_id": org.id, "name": org.name, "members": len(org.members)}
    s.delete(org)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="organization.delete",
        entity_type="Organization",
        entity_id=str(meta["organization_id"]),
        metadata=meta,
    )
    logger.warning("Organization deleted id=%s by user=%s", meta["organization_id"], actor.id)


def add_user_to_organization(s: "Session", org: Organization, payload: dict, actor: User) -> tuple[OrganizationMember, str | None]:
    role = clean_str(payload.get("role")) or "member"
    user_id = parse_int(payload.get("user_id"), field="user_id")
    temporary = None
    if user_id is not None:
        user = get_user(s, user_id)
    else:
        email = (clean_str(payload.get("email")) or "").lower()
        user = s.query(User).filter(User.email == email).one_or_none() if email else None
        if user is None:
            errors = _validate_new_user(s, payload)
            if errors:
                raise ValidationError(errors)
            user, temporary = _new_user(s, payload)
    member = add_member(s, org, user, role, actor=actor)
    return member, temporary


def reset_password(s: "Session", user: User, actor: User) -> str:
    temporary = generate_temporary_password()
    user.password_hash = generate_password_hash(temporary)
    record_event(
        s,
        actor=actor,
        action="system.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": user.email},
    )
    return temporary


def organization_detail(s: "Session", org: Organization) -> dict:
    from app.irdesk.modules.licensing.service import quota_summary

    data = org.to_dict()
    data["effectiveStatus"] = organization_state(org)
    data["quotas"] = quota_summary(s, org)
    data["members"] = [m.to_dict() for m in org.members]
    return data


# ---------- Users ----------
def list_users(s: "Session", args) -> "Query":
    q = s.query(User)
    term = clean_str(args.get("q"))
    if term:
        like = f"%{term}%"
        q = q.filter(or_(User.email.ilike(like), User.name.ilike(like)))
    organization_id = parse_int(args.get("organization_id"), field="organization_id")
    if organization_id is not None:
        q = q.filter(
            User.id.in_(select(OrganizationMember.user_id).where(OrganizationMember.organization_id == organization_id))
        )
    admins_only = parse_bool(args.get("system_admin"))
    if admins_only is not None:
        from app.irdesk.models import Role, UserRole

        admin_ids = select(UserRole.user_id).join(Role, Role.id == UserRole.role_id).where(Role.key == "system_admin")
        q = q.filter(User.id.in_(admin_ids) if admins_only else User.id.not_in(admin_ids))
    return q.order_by(User.created_at.desc(), User.id.desc())


def user_detail(s: "Session", user: User) -> dict:
    data = user.to_dict()
    member = s.query(OrganizationMember).filter(OrganizationMember.user_id == user.id).one_or_none()
    data["organization"] = (
        {"id": member.organization_id, "name": member.organization.name, "role": member.role} if member else None
    )
    return data


def create_user(s: "Session", payload: dict, actor: User) -> tuple[User, str | None]:
    errors = _validate_new_user(s, payload)
    if errors:
        raise ValidationError(errors)
    user, temporary = _new_user(s, payload)
    if parse_bool(payload.get("system_admin")):
        user.roles.append(ensure_rbac(s)["system_admin"])
    organization_id = parse_int(payload.get("organization_id"), field="organization_id")
    if organization_id is not None:
        add_member(s, get_organization(s, organization_id), user, clean_str(payload.get("role")) or "member", actor=actor)
    record_event(
        s,
        actor=actor,
        action="system.user_create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": user.email, "organization_id": organization_id},
    )
    return user, temporary


def update_user(s: "Session", user: User, payload: dict, actor: User) -> User:
    changes: dict[str, Any] = {}
    if "name" in payload:
        name = clean_str(payload.get("name"))
        if name and len(name) > 100:
            raise ValidationError("Name must be 100 characters or fewer.")
        changes["name"] = name
    for field in ("title", "department", "phone"):
        if field in payload:
            changes[field] = clean_str(payload.get(field))
    if "is_active" in payload:
        active = parse_bool(payload.get("is_active"))
        if active is None:
            raise ValidationError("is_active must be a boolean.")
        if not active and user.id == actor.id:
            raise ConflictError("You cannot deactivate your own account.")
        changes["is_active"] = active
    old = {k: getattr(user, k) for k in changes}
    for k, v in changes.items():
        setattr(user, k, v)
    action = "system.user_update"
    if "is_active" in changes and old["is_active"] != changes["is_active"]:
        action = "system.user_activate" if changes["is_active"] else "system.user_deactivate"
    record_event(
        s,
        actor=actor,
        action=action,
        entity_type="User",
        entity_id=str(user.id),
        metadata={"old": old, "new": changes},
    )
    return user


def set_system_admin(s: "Session", user: User, grant: bool, actor: User) -> User:
    role = ensure_rbac(s)["system_admin"]
    if not grant and user.id == actor.id:
        raise ConflictError("You cannot revoke your own system administrator access.")
    if grant and role not in user.roles:
        user.roles.append(role)
    elif not grant and role in user.roles:
        user.roles.remove(role)
    else:
        return user
    record_event(
        s,
        actor=actor,
        action="system.admin_grant" if grant else "system.admin_revoke",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": user.email},
    )
    return user


# ---------- Licenses ----------
def license_overview(s: "Session") -> list[dict]:
    orgs = s.query(Organization).order_by(Organization.name.asc()).all()
    seats = member_counts(s, [o.id for o in orgs])
    now = utcnow()
    rows = []
    for org in orgs:
        used = seats.get(org.id, 0)
        expiry = org.expires_at or (org.trial_ends_at if org.status == "trial" else None)
        rows.append(
            {
                "organizationId": org.id,
                "organizationName": org.name,
                "licenseType": org.license_type,
                "seatsUsed": used,
                "seatsTotal": org.license_count,
                "seatsAvailable": max((org.license_count or 0) - used, 0),
                "expiresAt": expiry.isoformat() if expiry else None,
                "daysRemaining": (expiry - now).days if expiry else None,
                "status": organization_state(org),
            }
        )
    return rows


def license_distribution(rows: list[dict]) -> list[dict]:
    """
    Organizations per license type, split by effective status, with seat totals
    and the share of trial-or-active organizations that are already active.
    """
    out = []
    for license_type in LICENSE_TYPES:
        subset = [r for r in rows if r["licenseType"] == license_type]
        by_status = {status: 0 for status in ORG_STATUSES}
        for r in subset:
            by_status[r["status"]] = by_status.get(r["status"], 0) + 1
        active, trial = by_status["active"], by_status["trial"]
        features = get_features_for_license(license_type)
        out.append(
            {
                "licenseType": license_type,
                "organizations": len(subset),
                "byStatus": by_status,
                "seatsUsed": sum(r["seatsUsed"] for r in subset),
                "seatsTotal": sum(r["seatsTotal"] or 0 for r in subset),
                "conversionRate": round(active / (active + trial) * 100) if trial else 0,
                "defaultLimits": get_default_limits(license_type),
                "features": sorted(name for name, on in features.items() if on),
            }
        )
    return out


# ---------- Settings ----------
def _infer_data_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (dict, list)):
        return "json"
    return "string"


def _serialize_setting_value(value: Any, data_type: str) -> str:
    if data_type == "boolean":
        parsed = parse_bool(value)
        if parsed is None:
            raise ValidationError("Value must be a boolean.")
        return "true" if parsed else "false"
    if data_type == "number":
        if isinstance(value, bool):
            raise ValidationError("Value must be a number.")
        try:
            float(value)
        except (TypeError, ValueError) as e:
            raise ValidationError("Value must be a number.") from e
        return str(value)
    if data_type == "json":
        if isinstance(value, str):
            try:
                json.loads(value)
            except ValueError as e:
                raise ValidationError("Value must be valid JSON.") from e
            return value
        return json.dumps(value)
    return "" if value is None else str(value)


def list_settings(s: "Session", category: str | None = None, *, public_only: bool = False) -> list[SystemSetting]:
    q = s.query(SystemSetting)
    if category:
        q = q.filter(SystemSetting.category == category)
    if public_only:
        q = q.filter(SystemSetting.is_public.is_(True))
    return q.order_by(SystemSetting.category.asc(), SystemSetting.key.asc()).all()


def upsert_setting(s: "Session", key: str, value: Any, actor: User, *, attrs: dict | None = None) -> SystemSetting:
    key = clean_str(key) or ""
    if not key or len(key) > 100:
        raise ValidationError("Setting key is required (max 100 characters).")
    attrs = attrs or {}
    setting = s.query(SystemSetting).filter(SystemSetting.key == key).one_or_none()
    data_type = clean_str(attrs.get("data_type")) or (setting.data_type if setting else _infer_data_type(value))
    if data_type not in SETTING_DATA_TYPES:
        raise ValidationError(f"Invalid data type. Must be one of: {', '.join(SETTING_DATA_TYPES)}")
    category = clean_str(attrs.get("category"))
    if category and category not in SETTING_CATEGORIES:
        raise ValidationError(f"Invalid category. Must be one of: {', '.join(SETTING_CATEGORIES)}")

    stored = _serialize_setting_value(value, data_type)
    old = setting.typed_value if setting else None
    if setting is None:
        setting = SystemSetting(key=key, category=category or "general")
        s.add(setting)
    setting.value = stored
    setting.data_type = data_type
    if category:
        setting.category = category
    if "description" in attrs:
        setting.description = clean_str(attrs.get("description"))
    if "is_public" in attrs:
        setting.is_public = bool(parse_bool(attrs.get("is_public")))
    setting.updated_by_user_id = actor.id
    s.flush()
    record_event(
        s,
        actor=actor,
        action="system.settings_update",
        entity_type="SystemSetting",
        entity_id=key,
        metadata={"old": old, "new": setting.typed_value, "data_type": data_type},
    )
    return setting


def update_settings(s: "Session", values: Any, actor: User) -> list[SystemSetting]:
    """Bulk upsert from ``{key: value}``; a dict value with a ``value`` member carries attributes too."""
    if not isinstance(values, dict) or not values:
        raise ValidationError("settings must be a non-empty object.")
    updated = []
    for key, value in values.items():
        if isinstance(value, dict) and "value" in value:
            updated.append(upsert_setting(s, key, value["value"], actor, attrs=value))
        else:
            updated.append(upsert_setting(s, key, value, actor))
    return updated


def get_setting(s: "Session", key: str) -> SystemSetting:
    setting = s.query(SystemSetting).filter(SystemSetting.key == key).one_or_none()
    if setting is None:
        raise NotFoundError("Setting")
    return setting


def delete_setting(s: "Session", setting: SystemSetting, actor: User) -> None:
    key = setting.key
    s.delete(setting)
    record_event(s, actor=actor, action="system.settings_delete", entity_type="SystemSetting", entity_id=key)


# ---------- API keys ----------
def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def create_api_key(s: "Session", payload: dict, actor: User) -> tuple[SystemApiKey, str]:
    """Returns (record, raw_key). The raw key is not recoverable afterwards."""
    name = clean_str(payload.get("name"))
    if not name or len(name) > 100:
        raise ValidationError("Key name is required (max 100 characters).")
    permissions = payload.get("permissions") or []
    if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
        raise ValidationError("permissions must be a list of strings.")
    organization_id = parse_int(payload.get("organization_id"), field="organization_id")
    if organization_id is not None:
        get_organization(s, organization_id)
    expires_at = None
    if payload.get("expires_at"):
        expires_at = parse_datetime(payload.get("expires_at"))
    elif payload.get("expires_in_days") is not None:
        days = parse_int(payload.get("expires_in_days"), field="expires_in_days")
        if days is None or days < 1:
            raise ValidationError("expires_in_days must be at least 1.")
        expires_at = utcnow() + timedelta(days=days)

    raw = API_KEY_PREFIX + secrets.token_urlsafe(32)
    key = SystemApiKey(
        name=name,
        key_hash=hash_api_key(raw),
        key_prefix=raw[:12],
        permissions=permissions,
        organization_id=organization_id,
        created_by_user_id=actor.id,
        expires_at=expires_at,
        is_active=True,
    )
    s.add(key)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="system.api_key_create",
        entity_type="SystemApiKey",
        entity_id=str(key.id),
        metadata={"name": name, "prefix": key.key_prefix, "organization_id": organization_id},
    )
    return key, raw


def get_api_key(s: "Session", key_id: int) -> SystemApiKey:
    key = s.get(SystemApiKey, key_id)
    if key is None:
        raise NotFoundError("API key")
    return key


def revoke_api_key(s: "Session", key: SystemApiKey, actor: User) -> SystemApiKey:
    if not key.is_active:
        raise ConflictError("API key is already revoked.")
    key.is_active = False
    key.revoked_at = utcnow()
    record_event(
        s,
        actor=actor,
        action="system.api_key_revoke",
        entity_type="SystemApiKey",
        entity_id=str(key.id),
        metadata={"prefix": key.key_prefix},
    )
    return key


def verify_api_key(s: "Session", raw_key: str) -> SystemApiKey | None:
    """Active, unexpired key matching ``raw_key``; stamps ``last_used_at``."""
    if not raw_key or not raw_key.startswith(API_KEY_PREFIX):
        return None
    key = s.query(SystemApiKey).filter(SystemApiKey.key_hash == hash_api_key(raw_key)).one_or_none()
    if key is None or not key.is_active:
        return None
    now = utcnow()
    if key.expires_at is not None and key.expires_at <= now:
        return None
    key.last_used_at = now
    return key


# ---------- Monitoring ----------
def platform_stats(s: "Session") -> dict:
    by_status = dict(s.query(Organization.status, func.count(Organization.id)).group_by(Organization.status).all())
    total_users = s.query(func.count(User.id)).scalar() or 0
    active_users = s.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar() or 0
    total_incidents = s.query(func.count(Incident.id)).scalar() or 0
    open_incidents = s.query(func.count(Incident.id)).filter(Incident.status != "closed").scalar() or 0
    active_executions = (
        s.query(func.count(RunbookExecution.id)).filter(RunbookExecution.status.in_(ACTIVE_EXECUTION_STATUSES)).scalar() or 0
    )
    completed_exercises = s.query(func.count(ExerciseCompletion.id)).filter(ExerciseCompletion.completed_at.isnot(None)).scalar() or 0
    return {
        "organizations": {
            "total": int(sum(by_status.values())),
            "byStatus": {k: int(by_status.get(k, 0)) for k in ORG_STATUSES},
        },
        "users": {"total": int(total_users), "active": int(active_users)},
        "incidents": {"total": int(total_incidents), "open": int(open_incidents)},
        "activeExecutions": int(active_executions),
        "completedExercises": int(completed_exercises),
    }


def system_health(s: "Session", storage: "Storage", missing: list[str]) -> dict:
    started = time.monotonic()
    try:
        s.execute(text("SELECT 1"))
        db_ok = True
        db_error = None
    except Exception as e:  # reported, not raised: health must answer when the DB is down
        logger.exception("Health check database query failed")
        s.rollback()
        db_ok = False
        db_error = str(e)
    latency_ms = round((time.monotonic() - started) * 1000, 1)
    storage_info = storage.describe()
    status = "healthy" if db_ok and storage_info.get("configured") and not missing else "degraded"
    return {
        "status": status,
        "database": {"ok": db_ok, "latencyMs": latency_ms, "error": db_error},
        "storage": storage_info,
        "schema": {"ok": not missing, "missingTables": missing},
        "checkedAt": utcnow().isoformat(),
    }


def recent_platform_activity(s: "Session", limit: int = 50) -> list[dict]:
    events = s.query(AuditEvent).order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()
    org_ids = {e.organization_id for e in events if e.organization_id}
    names = dict(s.query(Organization.id, Organization.name).filter(Organization.id.in_(org_ids)).all()) if org_ids else {}
    rows = []
    for e in events:
        data = e.to_dict()
        data["organizationName"] = names.get(e.organization_id)
        rows.append(data)
    return rows
