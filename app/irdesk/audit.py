import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.irdesk.models import AuditEvent, User

CATEGORY_BY_PREFIX = {
    "auth": "Authentication",
    "incident": "Incident",
    "asset": "Asset",
    "runbook": "Runbook",
    "team": "Team",
    "exercise": "Exercise",
    "evidence": "Evidence",
    "organization": "Organization",
    "system": "System",
    "communication": "Communication",
    "template": "Communication",
    "tag": "Asset",
}

CATEGORIES = (
    "Authentication",
    "Incident",
    "Asset",
    "Runbook",
    "Team",
    "Exercise",
    "Evidence",
    "Organization",
    "System",
    "Communication",
    "Other",
)
SEVERITIES = ("info", "warning", "critical")

_CRITICAL_ACTIONS = {
    "organization.delete",
    "organization.suspend",
    "system.user_delete",
    "auth.account_delete",
}
_WARNING_VERBS = ("delete", "remove", "revoke", "password", "role_change", "abandon", "login_failed")
_WARNING_ACTIONS = {"incident.create", "system.unauthorized_access", "organization.license_update"}


def categorize_action(action: str) -> tuple[str, str]:
    """Map an action key like ``incident.create`` to (category, severity)."""
    prefix, _, verb = (action or "").partition(".")
    category = CATEGORY_BY_PREFIX.get(prefix, "Other")
    if action in _CRITICAL_ACTIONS:
        return category, "critical"
    if action in _WARNING_ACTIONS or any(w in verb for w in _WARNING_VERBS):
        return category, "warning"
    return category, "info"


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
    organization_id: int | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.
    When organization_id is omitted the organization resolved for the current request is used.
    """
    rid = request_id
    client_ip = None
    if has_request_context():
        rid = rid or getattr(g, "request_id", None)
        client_ip = request.remote_addr
        if organization_id is None:
            org = getattr(g, "current_org", None)
            organization_id = org.id if org is not None else None
    category, severity = categorize_action(action)
    ev = AuditEvent(
        request_id=rid,
        organization_id=organization_id,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        category=category,
        severity=severity,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=client_ip,
    )
    s.add(ev)
    return ev
