from __future__ import annotations

from flask import Blueprint, current_app, request

from app.irdesk.audit import CATEGORIES, SEVERITIES
from app.irdesk.db import db_session, missing_tables
from app.irdesk.errors import ValidationError
from app.irdesk.modules.audit_trail.service import filtered_events
from app.irdesk.modules.organizations.service import (
    change_member_role,
    get_member,
    remove_member,
    set_organization_status,
    update_license,
    update_organization,
)
from app.irdesk.modules.system_admin.models import SETTING_CATEGORIES, SETTING_DATA_TYPES, SystemApiKey
from app.irdesk.modules.system_admin.service import (
    add_user_to_organization,
    create_api_key,
    create_organization,
    create_user,
    delete_organization,
    delete_setting,
    get_api_key,
    get_organization,
    get_setting,
    get_user,
    license_distribution,
    license_overview,
    list_organizations,
    list_settings,
    list_users,
    member_counts,
    organization_detail,
    platform_stats,
    recent_platform_activity,
    reset_password,
    revoke_api_key,
    set_system_admin,
    system_health,
    update_settings,
    update_user,
    upsert_setting,
    user_detail,
)
from app.irdesk.rbac import login_required, require_system_admin
from app.irdesk.storage import storage_from_config
from app.irdesk.tenancy import current_user
from app.irdesk.utils import clean_str, page_args, paginate, parse_bool, parse_int, request_payload

bp = Blueprint("system_admin", __name__)
# Settings any signed-in user may read
public_bp = Blueprint("public_settings", __name__)


# ---------- Organizations ----------
@bp.get("/organizations")
@require_system_admin
def organizations_list():
    s = db_session()
    q = list_organizations(s, request.args)
    page, per_page = page_args()
    data = paginate(q, key="organizations", serialize=lambda o: o.to_dict(), page=page, per_page=per_page)
    counts = member_counts(s, [o["id"] for o in data["organizations"]])
    for o in data["organizations"]:
        o["memberCount"] = counts.get(o["id"], 0)
    return data


@bp.post("/organizations")
@require_system_admin
def organizations_create():
    s = db_session()
    org, admin = create_organization(s, request_payload(), current_user())
    s.commit()
    data = organization_detail(s, org)
    data["admin"] = admin
    return data, 201


@bp.get("/organizations/<int:organization_id>")
@require_system_admin
def organizations_get(organization_id: int):
    s = db_session()
    data = organization_detail(s, get_organization(s, organization_id))
    s.commit()
    return data


@bp.put("/organizations/<int:organization_id>")
@require_system_admin
def organizations_update(organization_id: int):
    s = db_session()
    org = update_organization(s, get_organization(s, organization_id), request_payload(), current_user())
    s.commit()
    return org.to_dict()


@bp.put("/organizations/<int:organization_id>/status")
@require_system_admin
def organizations_status(organization_id: int):
    s = db_session()
    payload = request_payload()
    org = set_organization_status(
        s,
        get_organization(s, organization_id),
        clean_str(payload.get("status")) or "",
        current_user(),
        reason=clean_str(payload.get("reason")),
    )
    s.commit()
    return org.to_dict()


@bp.delete("/organizations/<int:organization_id>")
@require_system_admin
def organizations_delete(organization_id: int):
    s = db_session()
    delete_organization(s, get_organization(s, organization_id), current_user(), storage_from_config(current_app.config))
    s.commit()
    return {"success": True}


@bp.get("/organizations/<int:organization_id>/users")
@require_system_admin
def organization_users_list(organization_id: int):
    s = db_session()
    org = get_organization(s, organization_id)
    return {"organizationId": org.id, "members": [m.to_dict() for m in org.members]}


@bp.post("/organizations/<int:organization_id>/users")
@require_system_admin
def organization_users_add(organization_id: int):
    s = db_session()
    member, temporary = add_user_to_organization(s, get_organization(s, organization_id), request_payload(), current_user())
    s.commit()
    data = member.to_dict()
    data["temporaryPassword"] = temporary
    return data, 201


@bp.put("/organizations/<int:organization_id>/users/<int:member_id>")
@require_system_admin
def organization_users_role(organization_id: int, member_id: int):
    s = db_session()
    org = get_organization(s, organization_id)
    role = clean_str(request_payload().get("role")) or ""
    member = change_member_role(s, org, get_member(s, org, member_id), role, current_user())
    s.commit()
    return member.to_dict()


@bp.delete("/organizations/<int:organization_id>/users/<int:member_id>")
@require_system_admin
def organization_users_remove(organization_id: int, member_id: int):
    s = db_session()
    org = get_organization(s, organization_id)
    remove_member(s, org, get_member(s, org, member_id), current_user())
    s.commit()
    return {"success": True}


@bp.post("/organizations/<int:organization_id>/users/<int:member_id>/reset-password")
@require_system_admin
def organization_users_reset_password(organization_id: int, member_id: int):
    s = db_session()
    org = get_organization(s, organization_id)
    member = get_member(s, org, member_id)
    temporary = reset_password(s, member.user, current_user())
    s.commit()
    return {"userId": member.user_id, "temporaryPassword": temporary}


# ---------- Users ----------
@bp.get("/users")
@require_system_admin
def users_list():
    s = db_session()
    q = list_users(s, request.args)
    page, per_page = page_args()
    return paginate(q, key="users", serialize=lambda u: user_detail(s, u), page=page, per_page=per_page)


@bp.post("/users")
@require_system_admin
def users_create():
    s = db_session()
    user, temporary = create_user(s, request_payload(), current_user())
    s.commit()
    data = user_detail(s, user)
    data["temporaryPassword"] = temporary
    return data, 201


@bp.get("/users/<int:user_id>")
@require_system_admin
def users_get(user_id: int):
    s = db_session()
    return user_detail(s, get_user(s, user_id))


@bp.put("/users/<int:user_id>")
@require_system_admin
def users_update(user_id: int):
    s = db_session()
    user = update_user(s, get_user(s, user_id), request_payload(), current_user())
    s.commit()
    return user_detail(s, user)


@bp.post("/users/<int:user_id>/reset-password")
@require_system_admin
def users_reset_password(user_id: int):
    s = db_session()
    temporary = reset_password(s, get_user(s, user_id), current_user())
    s.commit()
    return {"userId": user_id, "temporaryPassword": temporary}


@bp.put("/users/<int:user_id>/system-admin")
@require_system_admin
def users_system_admin(user_id: int):
    s = db_session()
    grant = parse_bool(request_payload().get("grant"))
    if grant is None:
        raise ValidationError("grant must be a boolean.")
    user = set_system_admin(s, get_user(s, user_id), grant, current_user())
    s.commit()
    return user_detail(s, user)


# ---------- Licenses ----------
@bp.get("/licenses")
@require_system_admin
def licenses_overview():
    rows = license_overview(db_session())
    return {"licenses": rows, "distribution": license_distribution(rows)}


@bp.put("/licenses/<int:organization_id>")
@require_system_admin
def licenses_update(organization_id: int):
    s = db_session()
    payload = request_payload()
    org = update_license(
        s,
        get_organization(s, organization_id),
        current_user(),
        license_type=clean_str(payload.get("license_type")),
        license_count=payload.get("license_count"),
        expires_at=payload.get("expires_at") or None,
    )
    s.commit()
    return org.to_dict()


# ---------- Settings ----------
@bp.get("/settings")
@require_system_admin
def settings_list():
    category = clean_str(request.args.get("category"))
    settings = list_settings(db_session(), category)
    return {
        "settings": {st.key: st.to_dict() for st in settings},
        "categories": list(SETTING_CATEGORIES),
        "dataTypes": list(SETTING_DATA_TYPES),
    }


@bp.put("/settings")
@require_system_admin
def settings_update():
    s = db_session()
    updated = update_settings(s, request_payload().get("settings"), current_user())
    s.commit()
    return {"settings": {st.key: st.to_dict() for st in updated}}


@bp.put("/settings/<key>")
@require_system_admin
def settings_put(key: str):
    s = db_session()
    payload = request_payload()
    if "value" not in payload:
        raise ValidationError("value is required.")
    setting = upsert_setting(s, key, payload.get("value"), current_user(), attrs=payload)
    s.commit()
    return setting.to_dict()


@bp.delete("/settings/<key>")
@require_system_admin
def settings_delete(key: str):
    s = db_session()
    delete_setting(s, get_setting(s, key), current_user())
    s.commit()
    return {"success": True}


@public_bp.get("/public")
@login_required
def settings_public():
    return {"settings": {st.key: st.typed_value for st in list_settings(db_session(), public_only=True)}}


# ---------- API keys ----------
@bp.get("/api-keys")
@require_system_admin
def api_keys_list():
    s = db_session()
    q = s.query(SystemApiKey)
    organization_id = parse_int(request.args.get("organization_id"), field="organization_id")
    if organization_id is not None:
        q = q.filter(SystemApiKey.organization_id == organization_id)
    active = parse_bool(request.args.get("active"))
    if active is not None:
        q = q.filter(SystemApiKey.is_active.is_(active))
    keys = q.order_by(SystemApiKey.created_at.desc(), SystemApiKey.id.desc()).all()
    return {"apiKeys": [k.to_dict() for k in keys]}


@bp.post("/api-keys")
@require_system_admin
def api_keys_create():
    s = db_session()
    key, raw = create_api_key(s, request_payload(), current_user())
    s.commit()
    data = key.to_dict()
    # Shown once; only the hash is stored.
    data["key"] = raw
    return data, 201


@bp.delete("/api-keys/<int:key_id>")
@require_system_admin
def api_keys_revoke(key_id: int):
    s = db_session()
    key = revoke_api_key(s, get_api_key(s, key_id), current_user())
    s.commit()
    return key.to_dict()


# ---------- Monitoring ----------
@bp.get("/stats")
@require_system_admin
def stats():
    return platform_stats(db_session())


@bp.get("/health")
@require_system_admin
def health():
    s = db_session()
    return system_health(s, storage_from_config(current_app.config), missing_tables(current_app))


@bp.get("/activity")
@require_system_admin
def activity():
    limit = parse_int(request.args.get("limit"), field="limit") or 50
    return {"activity": recent_platform_activity(db_session(), limit=min(max(limit, 1), 200))}


@bp.get("/monitoring/audit")
@require_system_admin
def monitoring_audit():
    s = db_session()
    organization_id = parse_int(request.args.get("organization_id"), field="organization_id")
    q = filtered_events(s, request.args, organization_id=organization_id)
    page, per_page = page_args()
    data = paginate(q, key="logs", serialize=lambda e: e.to_dict(), page=page, per_page=per_page)
    data["categories"] = list(CATEGORIES)
    data["severities"] = list(SEVERITIES)
    return data
