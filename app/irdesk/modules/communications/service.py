from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.irdesk.audit import record_event
from app.irdesk.errors import ApiError, NotFoundError, ValidationError
from app.irdesk.modules.communications.models import (
    SEND_METHODS,
    TEMPLATE_CATEGORIES,
    CommunicationLog,
    CommunicationTemplate,
    TemplateVersion,
)
from app.irdesk.modules.communications.variables import build_variable_data, extract_variables, replace_variables
from app.irdesk.modules.licensing.service import enforce_quota
from app.irdesk.modules.tags.service import clear_entity_tags
from app.irdesk.utils import clean_str, parse_bool, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

    from app.irdesk.models import User
    from app.irdesk.modules.organizations.models import Organization

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[0-9 ()\-.]{6,20}$")
MAX_RECIPIENTS = 100


# ---------- Validation ----------
def validate_template_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "title" in payload:
        title = clean_str(payload.get("title"))
        if not title:
            errors.append("Title is required.")
        elif len(title) > 255:
            errors.append("Title must be 255 characters or fewer.")
    if not partial or "category" in payload:
        category = clean_str(payload.get("category"))
        if not category:
            errors.append("Category is required.")
        elif category not in TEMPLATE_CATEGORIES:
            errors.append(f"Invalid category. Must be one of: {', '.join(TEMPLATE_CATEGORIES)}")
    if not partial or "content" in payload:
        if not clean_str(payload.get("content")):
            errors.append("Content is required.")
    subject = clean_str(payload.get("subject"))
    if subject and len(subject) > 255:
        errors.append("Subject must be 255 characters or fewer.")
    tags = payload.get("tags")
    if tags is not None and (not isinstance(tags, list) or any(not isinstance(t, str) for t in tags)):
        errors.append("tags must be a list of strings.")
    return errors


def _clean_tags(tags: Any) -> list[str]:
    seen: list[str] = []
    for t in tags or []:
        t = t.strip()
        if t and t not in seen:
            seen.append(t)
    return seen


def _snapshot(s: "Session", template: CommunicationTemplate, user: "User | None", note: str | None = None) -> TemplateVersion:
    version = TemplateVersion(
        template_id=template.id,
        version=template.version,
        title=template.title,
        subject=template.subject,
        content=template.content,
        change_note=note,
        created_by_user_id=user.id if user else None,
    )
    s.add(version)
    return version


def _ensure_editable(org: "Organization", template: CommunicationTemplate) -> None:
    if template.is_global:
        raise ApiError("Global templates are read-only; clone it to make changes.", code="READ_ONLY", status_code=403)
    if template.organization_id != org.id:
        raise NotFoundError("Template")


# ---------- Templates ----------
def list_templates(s: "Session", org: "Organization", args) -> "Query":
    include_global = parse_bool(args.get("include_global"))
    if include_global is False:
        q = s.query(CommunicationTemplate).filter(CommunicationTemplate.organization_id == org.id)
    else:
        q = s.query(CommunicationTemplate).filter(
            or_(CommunicationTemplate.organization_id == org.id, CommunicationTemplate.organization_id.is_(None))
        )
    category = clean_str(args.get("category"))
    if category and category != "all":
        if category not in TEMPLATE_CATEGORIES:
            raise ValidationError(f"Invalid category. Must be one of: {', '.join(TEMPLATE_CATEGORIES)}")
        q = q.filter(CommunicationTemplate.category == category)
    search = clean_str(args.get("q"))
    if search:
        like = f"%{search}%"
        q = q.filter(or_(CommunicationTemplate.title.ilike(like), CommunicationTemplate.content.ilike(like)))
    return q.order_by(CommunicationTemplate.updated_at.desc(), CommunicationTemplate.title.asc())


def get_template(s: "Session", org: "Organization", template_id: int) -> CommunicationTemplate:
    template = s.get(CommunicationTemplate, template_id)
    if template is None or template.organization_id not in (None, org.id):
        raise NotFoundError("Template")
    return template


def create_template(s: "Session", org: "Organization", payload: dict, user: "User") -> CommunicationTemplate:
    errors = validate_template_payload(payload)
    if errors:
        raise ValidationError(errors)
    enforce_quota(s, org, "templates")
    template = CommunicationTemplate(
        organization_id=org.id,
        title=clean_str(payload.get("title")),
        category=clean_str(payload.get("category")),
        subject=clean_str(payload.get("subject")),
        content=str(payload.get("content")).strip(),
        tags=_clean_tags(payload.get("tags")),
        is_default=bool(parse_bool(payload.get("is_default"))),
        version=1,
        created_by_user_id=user.id,
    )
    s.add(template)
    s.flush()
    _snapshot(s, template, user, "Initial version")
    record_event(
        s,
        actor=user,
        action="template.create",
        entity_type="CommunicationTemplate",
        entity_id=str(template.id),
        metadata={"title": template.title, "category": template.category},
        organization_id=org.id,
    )
    return template


def update_template(
    s: "Session",
    org: "Organization",
    template: CommunicationTemplate,
    payload: dict,
    user: "User",
) -> CommunicationTemplate:
    _ensure_editable(org, template)
    errors = validate_template_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    versioned_change = False
    for field in ("title", "subject"):
        if field in payload:
            new = clean_str(payload.get(field))
            if field == "title" and not new:
                continue
            if new != getattr(template, field):
                setattr(template, field, new)
                versioned_change = True
    if "content" in payload:
        new_content = str(payload.get("content")).strip()
        if new_content != template.content:
            template.content = new_content
            versioned_change = True
    if "category" in payload:
        template.category = clean_str(payload.get("category"))
    if "tags" in payload:
        template.tags = _clean_tags(payload.get("tags"))
    if "is_default" in payload:
        template.is_default = bool(parse_bool(payload.get("is_default")))
    if versioned_change:
        template.version = (template.version or 1) + 1
        _snapshot(s, template, user, clean_str(payload.get("change_note")))
    template.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="template.update",
        entity_type="CommunicationTemplate",
        entity_id=str(template.id),
        metadata={"version": template.version, "content_changed": versioned_change},
        organization_id=org.id,
    )
    return template


def delete_template(s: "Session", org: "Organization", template: CommunicationTemplate, user: "User") -> None:
    _ensure_editable(org, template)
    clear_entity_tags(s, org, "communication", template.id)
    record_event(
        s,
        actor=user,
        action="template.delete",
        entity_type="CommunicationTemplate",
        entity_id=str(template.id),
        metadata={"title": template.title},
        organization_id=org.id,
    )
    s.delete(template)


def clone_template(s: "Session", org: "Organization", source: CommunicationTemplate, user: "User") -> CommunicationTemplate:
    """Copies are owned by the organization and never default."""
    enforce_quota(s, org, "templates")
    template = CommunicationTemplate(
        organization_id=org.id,
        title=f"{source.title} (Copy)"[:255],
        category=source.category,
        subject=source.subject,
        content=source.content,
        tags=list(source.tags or []),
        is_default=False,
        version=1,
        created_by_user_id=user.id,
    )
    s.add(template)
    s.flush()
    _snapshot(s, template, user, f"Cloned from template {source.id}")
    record_event(
        s,
        actor=user,
        action="template.clone",
        entity_type="CommunicationTemplate",
        entity_id=str(template.id),
        metadata={"source_id": source.id},
        organization_id=org.id,
    )
    return template


def template_versions(s: "Session", template: CommunicationTemplate) -> list[TemplateVersion]:
    return (
        s.query(TemplateVersion)
        .filter(TemplateVersion.template_id == template.id)
        .order_by(TemplateVersion.version.desc())
        .all()
    )


# ---------- Variables ----------
def resolve_variables(
    s: "Session",
    org: "Organization",
    user: "User",
    *,
    content: str | None,
    subject: str | None = None,
    incident_id: Any = None,
    asset_id: Any = None,
    custom_values: dict | None = None,
    with_examples: bool = False,
) -> dict[str, Any]:
    from app.irdesk.modules.assets.service import get_asset
    from app.irdesk.modules.incidents.service import get_incident

    if custom_values is not None and not isinstance(custom_values, dict):
        raise ValidationError("custom_values must be an object.")
    incident_pk = parse_int(incident_id, field="incident_id")
    asset_pk = parse_int(asset_id, field="asset_id")
    data = build_variable_data(
        incident=get_incident(s, org, incident_pk) if incident_pk is not None else None,
        organization=org,
        user=user,
        asset=get_asset(s, org, asset_pk) if asset_pk is not None else None,
        now=utcnow(),
        with_examples=with_examples,
    )
    rendered_content, missing_content = replace_variables(content, data, custom_values)
    rendered_subject, missing_subject = replace_variables(subject, data, custom_values)
    return {
        "processedContent": rendered_content,
        "processedSubject": rendered_subject if subject else None,
        "variables": extract_variables(content or "", subject),
        "missingVariables": sorted(set(missing_content) | set(missing_subject)),
    }


# ---------- Sending ----------
def _validate_recipients(method: str, recipients: Any) -> list[str]:
    if not isinstance(recipients, list) or not recipients:
        raise ValidationError("recipients must be a non-empty list.")
    if len(recipients) > MAX_RECIPIENTS:
        raise ValidationError(f"A single communication is limited to {MAX_RECIPIENTS} recipients.")
    cleaned = []
    errors = []
    for r in recipients:
        value = clean_str(r)
        if not value:
            errors.append("Recipients must not be blank.")
            continue
        if method == "email" and not _EMAIL_RE.match(value):
            errors.append(f"Invalid email recipient: {value}")
        elif method == "sms" and not _PHONE_RE.match(value):
            errors.append(f"Invalid phone recipient: {value}")
        cleaned.append(value)
    if errors:
        raise ValidationError(errors)
    return cleaned


def send_communication(s: "Session", org: "Organization", payload: dict, user: "User") -> CommunicationLog:
    """
    Renders the template against real record data and logs the communication.
    Delivery is out of scope; the log is the record of what was sent.
    """
    template_id = parse_int(payload.get("template_id"), field="template_id")
    if template_id is None:
        raise ValidationError("template_id is required.")
    template = get_template(s, org, template_id)
    method = clean_str(payload.get("method"))
    if method not in SEND_METHODS:
        raise ValidationError(f"Invalid method. Must be one of: {', '.join(SEND_METHODS)}")
    recipients = _validate_recipients(method, payload.get("recipients"))

    content = clean_str(payload.get("content")) or template.content
    subject = clean_str(payload.get("subject")) or template.subject
    resolved = resolve_variables(
        s,
        org,
        user,
        content=content,
        subject=subject,
        incident_id=payload.get("incident_id"),
        asset_id=payload.get("asset_id"),
        custom_values=payload.get("custom_values"),
    )
    log = CommunicationLog(
        organization_id=org.id,
        template_id=template.id,
        incident_id=parse_int(payload.get("incident_id"), field="incident_id"),
        method=method,
        recipients=recipients,
        subject=resolved["processedSubject"],
        content=resolved["processedContent"],
        notes=clean_str(payload.get("notes")),
        missing_variables=resolved["missingVariables"],
        status="logged",
        sent_by_user_id=user.id,
    )
    s.add(log)
    s.flush()
    record_event(
        s,
        actor=user,
        action="communication.send",
        entity_type="CommunicationLog",
        entity_id=str(log.id),
        metadata={
            "template_id": template.id,
            "incident_id": log.incident_id,
            "method": method,
            "recipient_count": len(recipients),
        },
        organization_id=org.id,
    )
    logger.info("Communication logged org=%s template=%s method=%s recipients=%s", org.id, template.id, method, len(recipients))
    return log


def list_logs(s: "Session", org: "Organization", args) -> "Query":
    q = s.query(CommunicationLog).filter(CommunicationLog.organization_id == org.id)
    for field in ("incident_id", "template_id"):
        value = parse_int(args.get(field), field=field)
        if value is not None:
            q = q.filter(getattr(CommunicationLog, field) == value)
    method = clean_str(args.get("method"))
    if method:
        if method not in SEND_METHODS:
            raise ValidationError(f"Invalid method. Must be one of: {', '.join(SEND_METHODS)}")
        q = q.filter(CommunicationLog.method == method)
    return q.order_by(CommunicationLog.sent_at.desc(), CommunicationLog.id.desc())


# ---------- Seed templates ----------
DEFAULT_TEMPLATES: list[dict] = [
    {
        "title": "Internal Incident Notification",
        "category": "internal",
        "subject": "[{{incident.severity}}] {{incident.referenceNumber}}: {{incident.title}}",
        "content": (
            "Team,\n\nA {{incident.severity}} incident was detected at {{incident.detectedAt}}.\n\n"
            "Summary: {{incident.description}}\nCurrent status: {{incident.status}}\n\n"
            "{{user.signature}}"
        ),
        "tags": ["notification", "internal"],
    },
    {
        "title": "Customer Data Breach Notice",
        "category": "customer",
        "subject": "Important security notice from {{organization.name}}",
        "content": (
            "Dear Customer,\n\nOn {{datetime.reportDate}} {{organization.name}} identified a security incident "
            "that may have affected your information.\n\nIf you have questions contact {{organization.contact}}.\n\n"
            "{{organization.name}}"
        ),
        "tags": ["breach", "customer"],
    },
    {
        "title": "Regulatory Notification",
        "category": "regulatory",
        "subject": "Incident notification: {{incident.referenceNumber}}",
        "content": (
            "{{organization.name}} is reporting incident {{incident.referenceNumber}} "
            "({{incident.type}}) detected at {{incident.detectedAt}}.\n\n"
            "Affected users: {{incident.affectedUsers}}\nCompliance officer: {{organization.complianceOfficer}}"
        ),
        "tags": ["regulatory", "compliance"],
    },
]


def seed_global_templates(s: "Session", user: "User | None") -> int:
    """Creates the global communication templates that do not exist yet. Idempotent."""
    created = 0
    for entry in DEFAULT_TEMPLATES:
        exists = (
            s.query(CommunicationTemplate.id)
            .filter(CommunicationTemplate.organization_id.is_(None), CommunicationTemplate.title == entry["title"])
            .first()
        )
        if exists:
            continue
        template = CommunicationTemplate(
            organization_id=None,
            title=entry["title"],
            category=entry["category"],
            subject=entry["subject"],
            content=entry["content"],
            tags=entry["tags"],
            is_default=True,
            version=1,
            created_by_user_id=user.id if user else None,
        )
        s.add(template)
        s.flush()
        _snapshot(s, template, user, "Initial version")
        created += 1
    return created
