from __future__ import annotations

from flask import Blueprint, g, request, session
from werkzeug.security import generate_password_hash

from app.irdesk.auth import validate_password
from app.irdesk.db import db_session
from app.irdesk.errors import ConflictError, NotFoundError, ValidationError
from app.irdesk.models import User
from app.irdesk.modules.licensing.service import organization_features
from app.irdesk.modules.organizations.models import InsurancePolicy, Invitation, OrganizationMember
from app.irdesk.modules.organizations.service import (
    accept_invitation,
    change_member_role,
    create_insurance_policy,
    create_invitation,
    delete_insurance_policy,
    get_insurance_policy,
    get_member,
    list_invitations,
    remove_member,
    revoke_invitation,
    update_insurance_policy,
    update_organization,
    update_settings,
)
from app.irdesk.rbac import require_permission
from app.irdesk.tenancy import current_member, current_organization, current_user
from app.irdesk.utils import clean_str, request_payload

bp = Blueprint("organizations", __name__)


# ---------- Profile ----------
@bp.get("")
@require_permission("organization.view")
def organization_get():
    org = current_organization()
    data = org.to_dict()
    data["features"] = organization_features(org)
    data["membershipRole"] = current_member().role
    return data


@bp.put("")
@require_permission("organization.manage")
def organization_put():
    s = db_session()
    org = current_organization()
    update_organization(s, org, request_payload(), current_user())
    s.commit()
    return org.to_dict()


@bp.get("/settings")
@require_permission("organization.view")
def settings_get():
    return {"settings": current_organization().settings or {}}


@bp.put("/settings")
@require_permission("organization.manage")
def settings_put():
    s = db_session()
    settings = update_settings(s, current_organization(), request_payload(), current_user())
    s.commit()
    return {"settings": settings}


# ---------- Team ----------
@bp.get("/team/members")
@require_permission("team.view")
def members_list():
    s = db_session()
    org = current_organization()
    members = (
        s.query(OrganizationMember)
        .filter(OrganizationMember.organization_id == org.id)
        .order_by(OrganizationMember.joined_at.asc())
        .all()
    )
    return {"members": [m.to_dict() for m in members], "totalCount": len(members)}


@bp.put("/team/members/<int:member_id>")
@require_permission("team.manage")
def member_update(member_id: int):
    s = db_session()
    org = current_organization()
    member = get_member(s, org, member_id)
    role = clean_str(request_payload().get("role"))
    if not role:
        raise ValidationError("role is required.")
    change_member_role(s, org, member, role, current_user())
    s.commit()
    return member.to_dict()


@bp.delete("/team/members/<int:member_id>")
@require_permission("team.manage")
def member_delete(member_id: int):
    s = db_session()
    org = current_organization()
    member = get_member(s, org, member_id)
    remove_member(s, org, member, current_user())
    s.commit()
    return {"success": True}


@bp.get("/team/invitations")
@require_permission("team.view")
def invitations_list():
    s = db_session()
    invitations = list_invitations(s, current_organization(), clean_str(request.args.get("status")))
    return {"invitations": [i.to_dict() for i in invitations]}


@bp.post("/team/invitations")
@require_permission("team.manage")
def invitations_create():
    s = db_session()
    inv = create_invitation(s, current_organization(), request_payload(), current_user())
    s.commit()
    # Delivery is out of band; the token goes back to the inviter.
    return inv.to_dict(include_token=True), 201


@bp.delete("/team/invitations/<int:invitation_id>")
@require_permission("team.manage")
def invitations_revoke(invitation_id: int):
    s = db_session()
    inv = revoke_invitation(s, current_organization(), invitation_id, current_user())
    s.commit()
    return inv.to_dict()


@bp.post("/team/invitations/accept")
def invitations_accept():
    """
    Logged-in users join with their account; anonymous callers register with
    the invited email and a password.
    """
    s = db_session()
    payload = request_payload()
    token = clean_str(payload.get("token"))
    if not token:
        raise ValidationError("token is required.")
    user: User | None = getattr(g, "current_user", None)
    if user is None:
        inv = s.query(Invitation).filter(Invitation.token == token).one_or_none()
        if inv is None:
            raise NotFoundError("Invitation")
        if s.query(User).filter(User.email == inv.email).one_or_none() is not None:
            raise ConflictError("An account already exists for this email; log in to accept.")
        password = payload.get("password") or ""
        errors = validate_password(password)
        if errors:
            raise ValidationError(errors)
        user = User(
            email=inv.email,
            name=clean_str(payload.get("name")),
            password_hash=generate_password_hash(password),
            is_active=True,
        )
        s.add(user)
        s.flush()
    member = accept_invitation(s, token, user)
    s.commit()
    session["user_id"] = user.id
    return member.to_dict(), 201


# ---------- Insurance ----------
@bp.get("/insurance")
@require_permission("organization.view")
def insurance_list():
    s = db_session()
    org = current_organization()
    policies = (
        s.query(InsurancePolicy)
        .filter(InsurancePolicy.organization_id == org.id)
        .order_by(InsurancePolicy.end_date.desc())
        .all()
    )
    return {"policies": [p.to_dict() for p in policies]}


@bp.post("/insurance")
@require_permission("organization.manage")
def insurance_create():
    s = db_session()
    policy = create_insurance_policy(s, current_organization(), request_payload(), current_user())
    s.commit()
    return policy.to_dict(), 201


@bp.get("/insurance/<int:policy_id>")
@require_permission("organization.view")
def insurance_get(policy_id: int):
    s = db_session()
    return get_insurance_policy(s, current_organization(), policy_id).to_dict()


@bp.put("/insurance/<int:policy_id>")
@require_permission("organization.manage")
def insurance_update(policy_id: int):
    s = db_session()
    policy = get_insurance_policy(s, current_organization(), policy_id)
    update_insurance_policy(s, policy, request_payload(), current_user())
    s.commit()
    return policy.to_dict()


@bp.delete("/insurance/<int:policy_id>")
@require_permission("organization.manage")
def insurance_delete(policy_id: int):
    s = db_session()
    policy = get_insurance_policy(s, current_organization(), policy_id)
    delete_insurance_policy(s, policy, current_user())
    s.commit()
    return {"success": True}
