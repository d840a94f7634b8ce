from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.irdesk.audit import record_event
from app.irdesk.db import db_session
from app.irdesk.errors import ApiError, ValidationError
from app.irdesk.models import User
from app.irdesk.rbac import login_required
from app.irdesk.security import ensure_csrf_token
from app.irdesk.utils import request_payload, utcnow

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

MIN_PASSWORD_LENGTH = 8


def _check_rate_limit(ip: str) -> bool:
    now = utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(utcnow())


def validate_password(password: str) -> list[str]:
    errors = []
    if len(password or "") < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return errors


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    g.current_org = None
    if request.path.startswith(("/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


def _session_payload(user: User) -> dict:
    from app.irdesk.tenancy import membership_for

    member = membership_for(user)
    return {
        "user": user.to_dict(),
        "permissions": user.permission_keys,
        "organization": member.organization.to_dict() if member else None,
        "membershipRole": member.role if member else None,
        "csrf_token": ensure_csrf_token(),
    }


@bp.post("/login")
def login():
    payload = request_payload()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        raise ApiError("Too many login attempts. Please wait 5 minutes.", code="TOO_MANY_ATTEMPTS", status_code=429)

    _record_attempt(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        current_app.logger.info("Failed login for %s from %s", email, ip)
        raise ApiError("Invalid credentials.", code="INVALID_CREDENTIALS", status_code=401)

    session.clear()
    session["user_id"] = user.id
    session.permanent = True
    _login_attempts[ip].clear()
    user.last_login_at = utcnow()
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return _session_payload(user)


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return {"ok": True}


@bp.get("/me")
@login_required
def me():
    return _session_payload(g.current_user)


@bp.get("/csrf")
def csrf():
    return {"csrf_token": ensure_csrf_token()}


@bp.post("/password")
@login_required
def change_password():
    payload = request_payload()
    user: User = g.current_user
    current = payload.get("current_password") or ""
    new = payload.get("new_password") or ""
    if not check_password_hash(user.password_hash, current):
        raise ValidationError("Current password is incorrect.")
    errors = validate_password(new)
    if new == current:
        errors.append("New password must differ from the current password.")
    if errors:
        raise ValidationError(errors)

    s = db_session()
    user.password_hash = generate_password_hash(new)
    record_event(s, actor=user, action="auth.password_change", entity_type="User", entity_id=str(user.id))
    s.commit()
    return {"ok": True}
