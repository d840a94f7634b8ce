from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from sqlalchemy.orm import Session

from app.irdesk.models import Permission, Role, User

SYSTEM_ADMIN_PERMISSION = "system.admin"

PERMISSIONS: dict[str, str] = {
    "dashboard.view": "Dashboard: view",
    "organization.view": "Organization: view",
    "organization.manage": "Organization: manage profile, settings and insurance",
    "team.view": "Team: view members",
    "team.manage": "Team: invite, change roles, remove",
    "audit.view": "Audit log: view and export",
    "incidents.view": "Incidents: view",
    "incidents.create": "Incidents: create",
    "incidents.edit": "Incidents: edit and change status",
    "incidents.delete": "Incidents: delete",
    "assets.view": "Assets: view",
    "assets.create": "Assets: create and import",
    "assets.edit": "Assets: edit, tag and group",
    "assets.delete": "Assets: delete",
    "tags.view": "Tags: view",
    "tags.manage": "Tags: create, edit, merge, policies",
    "dropdowns.view": "Dropdowns: view",
    "dropdowns.manage": "Dropdowns: manage organization overrides",
    "templates.view": "Communication templates: view",
    "templates.manage": "Communication templates: create and edit",
    "communications.send": "Communications: send and log",
    "runbooks.view": "Runbooks: view",
    "runbooks.manage": "Runbooks: create and edit",
    "runbooks.execute": "Runbooks: execute",
    "exercises.view": "Exercises: view",
    "exercises.take": "Exercises: take and submit",
    SYSTEM_ADMIN_PERMISSION: "System: platform administration",
}

_VIEW_PERMISSIONS = tuple(k for k in PERMISSIONS if k.endswith(".view"))

ROLES: dict[str, tuple[str, tuple[str, ...]]] = {
    "org_admin": ("Organization Administrator", tuple(k for k in PERMISSIONS if k != SYSTEM_ADMIN_PERMISSION)),
    "responder": (
        "Incident Responder",
        tuple(p for p in _VIEW_PERMISSIONS if p != "audit.view")
        + (
            "incidents.create",
            "incidents.edit",
            "assets.create",
            "assets.edit",
            "communications.send",
            "runbooks.execute",
            "exercises.take",
        ),
    ),
    "viewer": ("Viewer", tuple(p for p in _VIEW_PERMISSIONS if p != "audit.view") + ("exercises.take",)),
    "system_admin": ("System Administrator", (SYSTEM_ADMIN_PERMISSION,)),
}

# Organization membership role -> RBAC role
MEMBER_ROLE_TO_RBAC = {
    "owner": "org_admin",
    "admin": "org_admin",
    "member": "responder",
    "viewer": "viewer",
}


def ensure_rbac(s: Session) -> dict[str, Role]:
    """Create missing permissions and roles and attach their grants. Idempotent."""
    perms: dict[str, Permission] = {p.key: p for p in s.query(Permission).all()}
    for key, name in PERMISSIONS.items():
        if key not in perms:
            perms[key] = Permission(key=key, name=name)
            s.add(perms[key])

    roles: dict[str, Role] = {r.key: r for r in s.query(Role).all()}
    for key, (name, grants) in ROLES.items():
        role = roles.get(key)
        if role is None:
            role = Role(key=key, name=name)
            s.add(role)
            roles[key] = role
        for perm_key in grants:
            if perms[perm_key] not in role.permissions:
                role.permissions.append(perms[perm_key])
    s.flush()
    return roles


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def login_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            abort(401)
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> 401 (API clients re-authenticate).
            if not user or not user.is_active:
                abort(401)
            # Authenticated but unauthorized -> 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_system_admin(fn: Callable[..., Any]) -> Callable[..., Any]:
    """
    Guard for the platform administration API.
    Authenticated callers without the permission are written to the audit trail.
    """

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            abort(401)
        if not user_has_permission(user, SYSTEM_ADMIN_PERMISSION):
            from flask import request

            from app.irdesk.audit import record_event
            from app.irdesk.db import db_session

            s = db_session()
            record_event(
                s,
                actor=user,
                action="system.unauthorized_access",
                entity_type="Route",
                entity_id=request.path,
                metadata={"method": request.method},
            )
            s.commit()
            g.missing_permission = SYSTEM_ADMIN_PERMISSION
            abort(403)
        return fn(*args, **kwargs)

    return wrapped
