from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.irdesk.audit import record_event
from app.irdesk.errors import ConflictError, NotFoundError, ValidationError
from app.irdesk.modules.communications.variables import extract_variables
from app.irdesk.modules.content.models import (
    DROPDOWN_CATEGORIES,
    TEMPLATE_CATEGORIES,
    USAGE_TYPES,
    DefaultTagSet,
    OrganizationDropdown,
    SystemDropdown,
    SystemTemplate,
    TemplateUsage,
)
from app.irdesk.modules.tags.models import DEFAULT_TAG_COLOR, TAG_CATEGORIES, TAGGABLE_TYPES, Tag
from app.irdesk.utils import clean_str, parse_bool, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.irdesk.models import User
    from app.irdesk.modules.organizations.models import Organization

logger = logging.getLogger(__name__)


# ---------- Options ----------
def validate_options(options: Any) -> list[str]:
    """Options are a non-empty list of {value, label, metadata?} with unique values."""
    if not isinstance(options, list) or not options:
        return ["options must be a non-empty list."]
    errors = []
    seen: set[str] = set()
    for i, opt in enumerate(options, start=1):
        if not isinstance(opt, dict):
            errors.append(f"Option {i} must be an object with value and label.")
            continue
        value = clean_str(opt.get("value"))
        label = clean_str(opt.get("label"))
        if not value:
            errors.append(f"Option {i}: value is required.")
        if not label:
            errors.append(f"Option {i}: label is required.")
        if value:
            if value in seen:
                errors.append(f"Duplicate option value: {value}")
            seen.add(value)
        if "metadata" in opt and opt["metadata"] is not None and not isinstance(opt["metadata"], dict):
            errors.append(f"Option {i}: metadata must be an object.")
    return errors


def _normalize_options(options: list[dict]) -> list[dict]:
    out = []
    for opt in options:
        item = {"value": clean_str(opt.get("value")), "label": clean_str(opt.get("label"))}
        if opt.get("metadata"):
            item["metadata"] = opt["metadata"]
        out.append(item)
    return out


def validate_dropdown_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    category = clean_str(payload.get("category"))
    name = clean_str(payload.get("name"))
    if not partial:
        if not category:
            errors.append("category is required.")
        if not name:
            errors.append("name is required.")
    if category and category not in DROPDOWN_CATEGORIES:
        errors.append(f"Invalid category. Must be one of: {', '.join(DROPDOWN_CATEGORIES)}")
    if name and len(name) > 100:
        errors.append("name must be 100 characters or fewer.")
    if not partial or "options" in payload:
        errors.extend(validate_options(payload.get("options")))
    return errors


def _apply_dropdown_fields(dropdown: SystemDropdown | OrganizationDropdown, payload: dict) -> None:
    for field in ("category", "name"):
        value = clean_str(payload.get(field))
        if value:
            setattr(dropdown, field, value)
    if "description" in payload:
        dropdown.description = clean_str(payload.get("description"))
    if "options" in payload:
        dropdown.options = _normalize_options(payload["options"])
    for field, key in (("is_active", "is_active"), ("allow_custom_values", "allow_custom_values")):
        value = parse_bool(payload.get(key))
        if value is not None:
            setattr(dropdown, field, value)
    if "sort_order" in payload:
        dropdown.sort_order = parse_int(payload.get("sort_order"), field="sort_order") or 0


# ---------- System dropdowns ----------
def list_system_dropdowns(s: "Session", *, category: str | None = None, q: str | None = None, active: bool | None = None):
    query = s.query(SystemDropdown)
    if category:
        query = query.filter(SystemDropdown.category == category)
    if active is not None:
        query = query.filter(SystemDropdown.is_active.is_(active))
    if q:
        like = f"%{q}%"
        query = query.filter(or_(SystemDropdown.name.ilike(like), SystemDropdown.description.ilike(like)))
    return query.order_by(SystemDropdown.category.asc(), SystemDropdown.sort_order.asc(), SystemDropdown.name.asc())


def get_system_dropdown(s: "Session", dropdown_id: int) -> SystemDropdown:
    dropdown = s.get(SystemDropdown, dropdown_id)
    if dropdown is None:
        raise NotFoundError("Dropdown")
    return dropdown


def _system_dropdown_exists(s: "Session", category: str, name: str, exclude_id: int | None = None) -> bool:
    q = s.query(SystemDropdown.id).filter(SystemDropdown.category == category, SystemDropdown.name == name)
    if exclude_id is not None:
        q = q.filter(SystemDropdown.id != exclude_id)
    return q.first() is not None


def create_system_dropdown(s: "Session", payload: dict, user: "User | None") -> SystemDropdown:
    errors = validate_dropdown_payload(payload)
    if errors:
        raise ValidationError(errors)
    category, name = clean_str(payload.get("category")), clean_str(payload.get("name"))
    if _system_dropdown_exists(s, category, name):
        raise ConflictError(f"Dropdown '{category}:{name}' already exists.")
    dropdown = SystemDropdown(category=category, name=name, created_by_user_id=user.id if user else None)
    _apply_dropdown_fields(dropdown, payload)
    s.add(dropdown)
    s.flush()
    record_event(
        s,
        actor=user,
        action="system.dropdown_create",
        entity_type="SystemDropdown",
        entity_id=str(dropdown.id),
        metadata={"category": category, "name": name},
    )
    return dropdown


def update_system_dropdown(s: "Session", dropdown: SystemDropdown, payload: dict, user: "User") -> SystemDropdown:
    errors = validate_dropdown_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    category = clean_str(payload.get("category")) or dropdown.category
    name = clean_str(payload.get("name")) or dropdown.name
    if _system_dropdown_exists(s, category, name, exclude_id=dropdown.id):
        raise ConflictError(f"Dropdown '{category}:{name}' already exists.")
    _apply_dropdown_fields(dropdown, payload)
    dropdown.updated_by_user_id = user.id
    dropdown.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="system.dropdown_update",
        entity_type="SystemDropdown",
        entity_id=str(dropdown.id),
        metadata={"fields": sorted(k for k in payload if k != "csrf_token")},
    )
    return dropdown


def delete_system_dropdown(s: "Session", dropdown: SystemDropdown, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="system.dropdown_delete",
        entity_type="SystemDropdown",
        entity_id=str(dropdown.id),
        metadata={"category": dropdown.category, "name": dropdown.name},
    )
    s.delete(dropdown)


# ---------- Organization overrides ----------
def list_organization_dropdowns(s: "Session", org: "Organization") -> list[OrganizationDropdown]:
    return (
        s.query(OrganizationDropdown)
        .filter(OrganizationDropdown.organization_id == org.id)
        .order_by(OrganizationDropdown.category.asc(), OrganizationDropdown.sort_order.asc(), OrganizationDropdown.name.asc())
        .all()
    )


def get_organization_dropdown(s: "Session", org: "Organization", dropdown_id: int) -> OrganizationDropdown:
    dropdown = s.get(OrganizationDropdown, dropdown_id)
    if dropdown is None or dropdown.organization_id != org.id:
        raise NotFoundError("Dropdown")
    return dropdown


def _org_dropdown_exists(s: "Session", org: "Organization", category: str, name: str, exclude_id: int | None = None) -> bool:
    q = s.query(OrganizationDropdown.id).filter(
        OrganizationDropdown.organization_id == org.id,
        OrganizationDropdown.category == category,
        OrganizationDropdown.name == name,
    )
    if exclude_id is not None:
        q = q.filter(OrganizationDropdown.id != exclude_id)
    return q.first() is not None


def create_organization_dropdown(s: "Session", org: "Organization", payload: dict, user: "User") -> OrganizationDropdown:
    errors = validate_dropdown_payload(payload)
    if errors:
        raise ValidationError(errors)
    category, name = clean_str(payload.get("category")), clean_str(payload.get("name"))
    if _org_dropdown_exists(s, org, category, name):
        raise ConflictError(f"Dropdown '{category}:{name}' is already customized.")
    system = (
        s.query(SystemDropdown)
        .filter(SystemDropdown.category == category, SystemDropdown.name == name)
        .one_or_none()
    )
    dropdown = OrganizationDropdown(
        organization_id=org.id,
        system_dropdown_id=system.id if system else None,
        category=category,
        name=name,
        created_by_user_id=user.id,
    )
    _apply_dropdown_fields(dropdown, payload)
    s.add(dropdown)
    s.flush()
    record_event(
        s,
        actor=user,
        action="organization.dropdown_create",
        entity_type="OrganizationDropdown",
        entity_id=str(dropdown.id),
        metadata={"category": category, "name": name, "overrides_system": system is not None},
        organization_id=org.id,
    )
    return dropdown


def update_organization_dropdown(
    s: "Session", org: "Organization", dropdown: OrganizationDropdown, payload: dict, user: "User"
) -> OrganizationDropdown:
    errors = validate_dropdown_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    category = clean_str(payload.get("category")) or dropdown.category
    name = clean_str(payload.get("name")) or dropdown.name
    if _org_dropdown_exists(s, org, category, name, exclude_id=dropdown.id):
        raise ConflictError(f"Dropdown '{category}:{name}' is already customized.")
    _apply_dropdown_fields(dropdown, payload)
    dropdown.updated_by_user_id = user.id
    dropdown.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="organization.dropdown_update",
        entity_type="OrganizationDropdown",
        entity_id=str(dropdown.id),
        metadata={"fields": sorted(k for k in payload if k != "csrf_token")},
        organization_id=org.id,
    )
    return dropdown


def delete_organization_dropdown(s: "Session", org: "Organization", dropdown: OrganizationDropdown, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="organization.dropdown_delete",
        entity_type="OrganizationDropdown",
        entity_id=str(dropdown.id),
        metadata={"category": dropdown.category, "name": dropdown.name},
        organization_id=org.id,
    )
    s.delete(dropdown)


def merged_dropdowns(s: "Session", org: "Organization", category: str | None = None) -> list[dict]:
    """Active system dropdowns with the organization's active overrides (keyed by category:name) on top."""
    system_q = s.query(SystemDropdown).filter(SystemDropdown.is_active.is_(True))
    org_q = s.query(OrganizationDropdown).filter(
        OrganizationDropdown.organization_id == org.id,
        OrganizationDropdown.is_active.is_(True),
    )
    if category:
        system_q = system_q.filter(SystemDropdown.category == category)
        org_q = org_q.filter(OrganizationDropdown.category == category)

    merged: dict[str, dict] = {}
    for d in system_q.order_by(SystemDropdown.sort_order.asc(), SystemDropdown.name.asc()).all():
        merged[f"{d.category}:{d.name}"] = d.to_dict()
    for d in org_q.order_by(OrganizationDropdown.sort_order.asc(), OrganizationDropdown.name.asc()).all():
        merged[f"{d.category}:{d.name}"] = d.to_dict()
    return list(merged.values())


# ---------- Default tag sets ----------
def validate_tag_set_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    name = clean_str(payload.get("name"))
    if not partial and not name:
        errors.append("name is required.")
    if not partial or "tags" in payload:
        tags = payload.get("tags")
        if not isinstance(tags, list) or not tags:
            errors.append("tags must be a non-empty list.")
        else:
            names: set[str] = set()
            for i, t in enumerate(tags, start=1):
                tag_name = clean_str(t.get("name")) if isinstance(t, dict) else None
                if not tag_name:
                    errors.append(f"Tag {i}: name is required.")
                    continue
                if tag_name.lower() in names:
                    errors.append(f"Duplicate tag name: {tag_name}")
                names.add(tag_name.lower())
                if t.get("category") and t["category"] not in TAG_CATEGORIES:
                    errors.append(f"Tag {i}: invalid category.")
    if not partial or "entity_types" in payload:
        entity_types = payload.get("entity_types")
        if not isinstance(entity_types, list) or not entity_types:
            errors.append("entity_types must be a non-empty list.")
        elif any(e not in TAGGABLE_TYPES for e in entity_types):
            errors.append(f"entity_types must be among: {', '.join(TAGGABLE_TYPES)}")
    return errors


def _normalize_tag_defs(tags: list[dict]) -> list[dict]:
    return [
        {
            "name": clean_str(t.get("name")),
            "category": clean_str(t.get("category")) or "custom",
            "color": clean_str(t.get("color")) or DEFAULT_TAG_COLOR,
            "description": clean_str(t.get("description")),
        }
        for t in tags
    ]


def _apply_tag_set_fields(tag_set: DefaultTagSet, payload: dict) -> None:
    name = clean_str(payload.get("name"))
    if name:
        tag_set.name = name
    if "description" in payload:
        tag_set.description = clean_str(payload.get("description"))
    if "tags" in payload:
        tag_set.tag_set = _normalize_tag_defs(payload["tags"])
    if "entity_types" in payload:
        tag_set.entity_types = list(dict.fromkeys(payload["entity_types"]))
    for field in ("is_active", "is_required"):
        value = parse_bool(payload.get(field))
        if value is not None:
            setattr(tag_set, field, value)
    if "sort_order" in payload:
        tag_set.sort_order = parse_int(payload.get("sort_order"), field="sort_order") or 0


def get_tag_set(s: "Session", tag_set_id: int) -> DefaultTagSet:
    tag_set = s.get(DefaultTagSet, tag_set_id)
    if tag_set is None:
        raise NotFoundError("Default tag set")
    return tag_set


def create_tag_set(s: "Session", payload: dict, user: "User | None") -> DefaultTagSet:
    errors = validate_tag_set_payload(payload)
    if errors:
        raise ValidationError(errors)
    tag_set = DefaultTagSet(name=clean_str(payload.get("name")), created_by_user_id=user.id if user else None)
    _apply_tag_set_fields(tag_set, payload)
    s.add(tag_set)
    s.flush()
    record_event(
        s,
        actor=user,
        action="system.default_tags_create",
        entity_type="DefaultTagSet",
        entity_id=str(tag_set.id),
        metadata={"name": tag_set.name, "tags": len(tag_set.tag_set or [])},
    )
    return tag_set


def update_tag_set(s: "Session", tag_set: DefaultTagSet, payload: dict, user: "User") -> DefaultTagSet:
    errors = validate_tag_set_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    _apply_tag_set_fields(tag_set, payload)
    tag_set.updated_by_user_id = user.id
    tag_set.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="system.default_tags_update",
        entity_type="DefaultTagSet",
        entity_id=str(tag_set.id),
        metadata={"fields": sorted(k for k in payload if k != "csrf_token")},
    )
    return tag_set


def delete_tag_set(s: "Session", tag_set: DefaultTagSet, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="system.default_tags_delete",
        entity_type="DefaultTagSet",
        entity_id=str(tag_set.id),
        metadata={"name": tag_set.name},
    )
    s.delete(tag_set)


def provision_default_tags(s: "Session", org: "Organization", *, created_by: "User | None" = None) -> list[Tag]:
    """Copy every active, required default tag set into the organization as system tags."""
    existing = {n.lower() for (n,) in s.query(Tag.name).filter(Tag.organization_id == org.id).all()}
    sets = (
        s.query(DefaultTagSet)
        .filter(DefaultTagSet.is_active.is_(True), DefaultTagSet.is_required.is_(True))
        .order_by(DefaultTagSet.sort_order.asc(), DefaultTagSet.id.asc())
        .all()
    )
    created: list[Tag] = []
    for tag_set in sets:
        for entry in tag_set.tag_set or []:
            name = clean_str(entry.get("name"))
            if not name or name.lower() in existing:
                continue
            existing.add(name.lower())
            tag = Tag(
                organization_id=org.id,
                name=name[:50],
                category=entry.get("category") if entry.get("category") in TAG_CATEGORIES else "custom",
                color=entry.get("color") or DEFAULT_TAG_COLOR,
                description=entry.get("description"),
                is_system=True,
                created_by_user_id=created_by.id if created_by else None,
            )
            s.add(tag)
            created.append(tag)
    s.flush()
    if created:
        logger.info("Provisioned %s default tags for organization id=%s", len(created), org.id)
    return created


# ---------- System templates ----------
def validate_system_template_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    title = clean_str(payload.get("title"))
    category = clean_str(payload.get("category"))
    content = clean_str(payload.get("content"))
    if not partial:
        if not title:
            errors.append("title is required.")
        if not category:
            errors.append("category is required.")
        if not content:
            errors.append("content is required.")
    if title and len(title) > 255:
        errors.append("title must be 255 characters or fewer.")
    if category and category not in TEMPLATE_CATEGORIES:
        errors.append(f"Invalid category. Must be one of: {', '.join(TEMPLATE_CATEGORIES)}")
    if "tags" in payload and not isinstance(payload.get("tags") or [], list):
        errors.append("tags must be a list.")
    return errors


def list_system_templates(s: "Session", *, category: str | None = None, q: str | None = None, active: bool | None = None):
    query = s.query(SystemTemplate)
    if category:
        query = query.filter(SystemTemplate.category == category)
    if active is not None:
        query = query.filter(SystemTemplate.is_active.is_(active))
    if q:
        like = f"%{q}%"
        query = query.filter(or_(SystemTemplate.title.ilike(like), SystemTemplate.description.ilike(like)))
    return query.order_by(SystemTemplate.sort_order.asc(), SystemTemplate.updated_at.desc())


def get_system_template(s: "Session", template_id: int, *, active_only: bool = False) -> SystemTemplate:
    template = s.get(SystemTemplate, template_id)
    if template is None or (active_only and not template.is_active):
        raise NotFoundError("Template")
    return template


def create_system_template(s: "Session", payload: dict, user: "User | None") -> SystemTemplate:
    errors = validate_system_template_payload(payload)
    if errors:
        raise ValidationError(errors)
    content = payload.get("content")
    template = SystemTemplate(
        title=clean_str(payload.get("title")),
        category=clean_str(payload.get("category")),
        description=clean_str(payload.get("description")),
        content=content,
        variables=extract_variables(content),
        tags=list(payload.get("tags") or []),
        is_active=parse_bool(payload.get("is_active")) is not False,
        sort_order=parse_int(payload.get("sort_order"), field="sort_order") or 0,
        version=clean_str(payload.get("version")) or "1.0",
        created_by_user_id=user.id if user else None,
    )
    s.add(template)
    s.flush()
    record_event(
        s,
        actor=user,
        action="system.template_create",
        entity_type="SystemTemplate",
        entity_id=str(template.id),
        metadata={"title": template.title, "category": template.category},
    )
    return template


def update_system_template(s: "Session", template: SystemTemplate, payload: dict, user: "User") -> SystemTemplate:
    errors = validate_system_template_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    for field in ("title", "category", "version"):
        value = clean_str(payload.get(field))
        if value:
            setattr(template, field, value)
    if "description" in payload:
        template.description = clean_str(payload.get("description"))
    if clean_str(payload.get("content")):
        template.content = payload["content"]
        template.variables = extract_variables(template.content)
    if "tags" in payload:
        template.tags = list(payload.get("tags") or [])
    is_active = parse_bool(payload.get("is_active"))
    if is_active is not None:
        template.is_active = is_active
    if "sort_order" in payload:
        template.sort_order = parse_int(payload.get("sort_order"), field="sort_order") or 0
    template.updated_by_user_id = user.id
    template.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="system.template_update",
        entity_type="SystemTemplate",
        entity_id=str(template.id),
        metadata={"fields": sorted(k for k in payload if k != "csrf_token")},
    )
    return template


def delete_system_template(s: "Session", template: SystemTemplate, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="system.template_delete",
        entity_type="SystemTemplate",
        entity_id=str(template.id),
        metadata={"title": template.title},
    )
    s.delete(template)


def record_template_usage(
    s: "Session",
    template: SystemTemplate,
    org: "Organization",
    user: "User",
    usage_type: str,
    metadata: dict | None = None,
) -> TemplateUsage:
    if usage_type not in USAGE_TYPES:
        raise ValidationError(f"Invalid usage type. Must be one of: {', '.join(USAGE_TYPES)}")
    usage = TemplateUsage(
        template_id=template.id,
        organization_id=org.id,
        user_id=user.id,
        usage_type=usage_type,
        metadata_json=metadata or {},
    )
    s.add(usage)
    s.flush()
    return usage


def template_usage_counts(s: "Session", template_ids: list[int]) -> dict[int, int]:
    if not template_ids:
        return {}
    rows = (
        s.query(TemplateUsage.template_id, func.count(TemplateUsage.id))
        .filter(TemplateUsage.template_id.in_(template_ids))
        .group_by(TemplateUsage.template_id)
        .all()
    )
    return {tid: int(n) for tid, n in rows}


# ---------- Seed data ----------
DEFAULT_DROPDOWNS: tuple[dict, ...] = (
    {
        "category": "asset_types",
        "name": "Asset Types",
        "options": [
            {"value": "hardware", "label": "Hardware"},
            {"value": "software", "label": "Software"},
            {"value": "service", "label": "Service"},
            {"value": "data", "label": "Data"},
            {"value": "personnel", "label": "Personnel"},
            {"value": "facility", "label": "Facility"},
            {"value": "vendor", "label": "Vendor"},
            {"value": "contract", "label": "Contract"},
        ],
    },
    {
        "category": "criticality_levels",
        "name": "Criticality Levels",
        "options": [
            {"value": "low", "label": "Low"},
            {"value": "medium", "label": "Medium"},
            {"value": "high", "label": "High"},
            {"value": "critical", "label": "Critical"},
        ],
    },
    {
        "category": "incident_classifications",
        "name": "Incident Classifications",
        "options": [
            {"value": "malware", "label": "Malware"},
            {"value": "phishing", "label": "Phishing"},
            {"value": "data_breach", "label": "Data Breach"},
            {"value": "ddos", "label": "DDoS"},
            {"value": "insider_threat", "label": "Insider Threat"},
            {"value": "ransomware", "label": "Ransomware"},
            {"value": "social_engineering", "label": "Social Engineering"},
            {"value": "supply_chain", "label": "Supply Chain"},
            {"value": "other", "label": "Other"},
        ],
    },
    {
        "category": "severity_levels",
        "name": "Severity Levels",
        "options": [
            {"value": "low", "label": "Low"},
            {"value": "medium", "label": "Medium"},
            {"value": "high", "label": "High"},
            {"value": "critical", "label": "Critical"},
        ],
    },
    {
        "category": "departments",
        "name": "Departments",
        "allow_custom_values": True,
        "options": [
            {"value": "it", "label": "IT"},
            {"value": "security", "label": "Security"},
            {"value": "legal", "label": "Legal"},
            {"value": "hr", "label": "Human Resources"},
            {"value": "finance", "label": "Finance"},
            {"value": "operations", "label": "Operations"},
        ],
    },
    {
        "category": "compliance_frameworks",
        "name": "Compliance Frameworks",
        "options": [
            {"value": "soc2", "label": "SOC 2"},
            {"value": "iso27001", "label": "ISO 27001"},
            {"value": "hipaa", "label": "HIPAA"},
            {"value": "pci_dss", "label": "PCI DSS"},
            {"value": "gdpr", "label": "GDPR"},
            {"value": "nist_csf", "label": "NIST CSF"},
        ],
    },
)

DEFAULT_TAG_SETS: tuple[dict, ...] = (
    {
        "name": "Criticality",
        "description": "Business criticality markers",
        "is_required": True,
        "entity_types": ["asset", "incident"],
        "tags": [
            {"name": "Business Critical", "category": "criticality", "color": "#DC2626"},
            {"name": "Customer Facing", "category": "criticality", "color": "#EA580C"},
            {"name": "Internal Only", "category": "criticality", "color": "#2563EB"},
        ],
    },
    {
        "name": "Compliance",
        "description": "Regulatory scope",
        "is_required": True,
        "entity_types": ["asset", "incident", "runbook"],
        "tags": [
            {"name": "PII", "category": "compliance", "color": "#7C3AED"},
            {"name": "PCI Scope", "category": "compliance", "color": "#9333EA"},
            {"name": "HIPAA", "category": "compliance", "color": "#C026D3"},
        ],
    },
    {
        "name": "Incident Types",
        "description": "Common incident labels",
        "is_required": False,
        "entity_types": ["incident", "runbook", "communication", "exercise"],
        "tags": [
            {"name": "Ransomware", "category": "incident_type", "color": "#B91C1C"},
            {"name": "Phishing", "category": "incident_type", "color": "#D97706"},
            {"name": "Data Exfiltration", "category": "incident_type", "color": "#0F766E"},
        ],
    },
)


def seed_default_content(s: "Session", user: "User | None") -> dict[str, int]:
    """Idempotent: creates the stock dropdowns and tag sets that are missing."""
    dropdowns = 0
    for entry in DEFAULT_DROPDOWNS:
        if not _system_dropdown_exists(s, entry["category"], entry["name"]):
            create_system_dropdown(s, dict(entry), user)
            dropdowns += 1
    tag_sets = 0
    existing_sets = {n for (n,) in s.query(DefaultTagSet.name).all()}
    for entry in DEFAULT_TAG_SETS:
        if entry["name"] not in existing_sets:
            create_tag_set(s, dict(entry), user)
            tag_sets += 1
    return {"dropdowns": dropdowns, "tagSets": tag_sets}
