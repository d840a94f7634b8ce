"""
Template variables.

Templates reference data as ``{{ category.field }}`` (e.g. ``{{incident.title}}``).
At send/preview time each placeholder is resolved from, in order: caller-supplied
custom values, then real record data overlaid on example defaults. Anything still
unresolved is left in the text and reported as missing.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from app.irdesk.models import User
    from app.irdesk.modules.assets.models import Asset
    from app.irdesk.modules.incidents.models import Incident
    from app.irdesk.modules.organizations.models import Organization

VARIABLE_CATEGORIES = ("incident", "organization", "user", "asset", "datetime")
MAX_VARIABLE_LENGTH = 50

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([^}\s]+(?:\.[^}\s]+)*)\s*\}\}")
_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9]*\.[a-zA-Z][a-zA-Z0-9]*$")

# Picker catalog: (key, label, example)
VARIABLE_CATALOG: dict[str, list[dict[str, str]]] = {
    "incident": [
        {"key": "incident.title", "label": "Incident Title", "example": "Unauthorized Database Access"},
        {"key": "incident.referenceNumber", "label": "Reference Number", "example": "INC-202401-0001"},
        {"key": "incident.severity", "label": "Severity", "example": "Critical"},
        {"key": "incident.status", "label": "Status", "example": "Contained"},
        {"key": "incident.type", "label": "Classification", "example": "Data Breach"},
        {"key": "incident.detectedAt", "label": "Detected At", "example": "2024-01-20 14:30 UTC"},
        {"key": "incident.containedAt", "label": "Contained At", "example": "2024-01-20 16:15 UTC"},
        {"key": "incident.description", "label": "Description", "example": "Unauthorized access detected."},
        {"key": "incident.impactLevel", "label": "Impact Level", "example": "High"},
        {"key": "incident.affectedUsers", "label": "Affected Users", "example": "1,247"},
        {"key": "incident.reportedBy", "label": "Reported By", "example": "Security Team"},
    ],
    "organization": [
        {"key": "organization.name", "label": "Organization Name", "example": "Acme Corporation"},
        {"key": "organization.contact", "label": "Security Contact", "example": "security@acme.com"},
        {"key": "organization.phone", "label": "Phone", "example": "+1-555-0100"},
        {"key": "organization.website", "label": "Website", "example": "https://acme.com"},
        {"key": "organization.address", "label": "Address", "example": "123 Business Ave, City, State 12345"},
        {"key": "organization.industry", "label": "Industry", "example": "Technology"},
        {"key": "organization.complianceOfficer", "label": "Compliance Officer", "example": "Jane Smith"},
    ],
    "user": [
        {"key": "user.name", "label": "Your Name", "example": "John Doe"},
        {"key": "user.email", "label": "Your Email", "example": "john.doe@acme.com"},
        {"key": "user.role", "label": "Your Role", "example": "Senior Security Analyst"},
        {"key": "user.department", "label": "Department", "example": "Information Security"},
        {"key": "user.phone", "label": "Phone", "example": "+1-555-0123"},
        {"key": "user.signature", "label": "Signature", "example": "Best regards,\nJohn Doe"},
    ],
    "asset": [
        {"key": "asset.name", "label": "Asset Name", "example": "Customer Database Server"},
        {"key": "asset.type", "label": "Asset Type", "example": "Database Server"},
        {"key": "asset.criticality", "label": "Criticality", "example": "Critical"},
        {"key": "asset.owner", "label": "Owner", "example": "Data Team"},
        {"key": "asset.location", "label": "Location", "example": "AWS US-East-1"},
        {"key": "asset.dataClassification", "label": "Data Classification", "example": "Confidential"},
        {"key": "asset.affectedRecords", "label": "Affected Records", "example": "15,000 customer records"},
    ],
    "datetime": [
        {"key": "datetime.current", "label": "Current Date & Time", "example": "2024-01-20 14:30:00 UTC"},
        {"key": "datetime.date", "label": "Current Date", "example": "2024-01-20"},
        {"key": "datetime.time", "label": "Current Time", "example": "14:30:00 UTC"},
        {"key": "datetime.timestamp", "label": "Unix Timestamp", "example": "1705761000"},
        {"key": "datetime.reportDate", "label": "Report Date", "example": "January 20, 2024"},
        {"key": "datetime.deadline", "label": "Notification Deadline", "example": "72 hours from detection"},
    ],
}


def is_valid_variable_name(name: str) -> bool:
    return bool(_NAME_RE.match(name or "")) and len(name) <= MAX_VARIABLE_LENGTH


def extract_variables(content: str | None, subject: str | None = None) -> list[str]:
    """Distinct, valid variable names found in content and subject, sorted."""
    text = f"{content or ''} {subject or ''}"
    found = {m.group(1).strip() for m in _PLACEHOLDER_RE.finditer(text)}
    return sorted(v for v in found if v and is_valid_variable_name(v))


def format_variable(name: str) -> str:
    return "{{" + name + "}}"


def variable_category(name: str) -> str | None:
    category, _, _ = (name or "").partition(".")
    return category or None


def variable_field(name: str) -> str | None:
    _, _, field = (name or "").partition(".")
    return field or None


def _blank(value: Any) -> bool:
    return value is None or value == ""


def replace_variables(
    content: str | None,
    data: dict[str, dict[str, Any]],
    custom_values: dict[str, Any] | None = None,
) -> tuple[str, list[str]]:
    """
    Returns (rendered_content, missing_variables).
    Custom values win over record data; empty values count as missing.
    """
    rendered = content or ""
    missing: list[str] = []
    custom_values = custom_values or {}
    for name in extract_variables(rendered):
        pattern = re.compile(r"\{\{\s*" + re.escape(name) + r"\s*\}\}")
        value = custom_values.get(name)
        if _blank(value):
            category, field = variable_category(name), variable_field(name)
            value = (data.get(category) or {}).get(field) if category and field else None
        if _blank(value):
            missing.append(name)
            continue
        replacement = str(value)
        rendered = pattern.sub(lambda _m: replacement, rendered)
    return rendered, missing


def default_variable_values(now: datetime) -> dict[str, dict[str, Any]]:
    """Example values so previews render before real data is attached."""
    data = {
        category: {item["key"].split(".", 1)[1]: item["example"] for item in items}
        for category, items in VARIABLE_CATALOG.items()
        if category != "datetime"
    }
    data["datetime"] = {
        "current": now.strftime("%Y-%m-%d %H:%M:%S") + " UTC",
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M:%S") + " UTC",
        "timestamp": str(int(now.timestamp())),
        "reportDate": now.strftime("%B %d, %Y").replace(" 0", " "),
        "deadline": "72 hours from detection",
    }
    return data


def _fmt_ts(value: datetime | None) -> str | None:
    return value.strftime("%Y-%m-%d %H:%M") + " UTC" if value else None


def _label(value: str | None) -> str | None:
    return value.replace("_", " ").title() if value else None


def _overlay(base: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    merged.update({k: v for k, v in values.items() if not _blank(v)})
    return merged


def build_variable_data(
    *,
    incident: "Incident | None" = None,
    organization: "Organization | None" = None,
    user: "User | None" = None,
    asset: "Asset | None" = None,
    now: datetime,
    with_examples: bool = True,
) -> dict[str, dict[str, Any]]:
    """
    Example defaults overlaid with whatever real records are supplied.
    Without examples only real record values (and the clock) are present, so
    unresolved variables surface as missing.
    """
    data = default_variable_values(now)
    if not with_examples:
        data = {category: ({} if category != "datetime" else values) for category, values in data.items()}
    if incident is not None:
        data["incident"] = _overlay(
            data["incident"],
            {
                "title": incident.title,
                "referenceNumber": incident.reference_number,
                "severity": _label(incident.severity),
                "status": _label(incident.status),
                "type": _label(incident.classification),
                "detectedAt": _fmt_ts(incident.detected_at),
                "containedAt": _fmt_ts(incident.contained_at),
                "description": incident.description,
                "impactLevel": _label(incident.impact_level),
                "affectedUsers": incident.affected_users,
                "reportedBy": incident.reporter.name if incident.reporter else None,
            },
        )
    if organization is not None:
        settings = organization.settings or {}
        data["organization"] = _overlay(
            data["organization"],
            {
                "name": organization.name,
                "contact": settings.get("securityContact"),
                "phone": organization.phone,
                "website": organization.website,
                "address": organization.address,
                "industry": organization.industry,
                "complianceOfficer": settings.get("complianceOfficer"),
            },
        )
    if user is not None:
        data["user"] = _overlay(
            data["user"],
            {
                "name": user.name,
                "email": user.email,
                "role": user.title,
                "department": user.department,
                "phone": user.phone,
                "signature": f"Best regards,\n{user.name}" + (f"\n{user.title}" if user.title else "") if user.name else None,
            },
        )
    if asset is not None:
        data["asset"] = _overlay(
            data["asset"],
            {
                "name": asset.name,
                "type": _label(asset.type),
                "criticality": _label(asset.criticality),
                "owner": asset.primary_contact_name,
                "location": asset.location,
            },
        )
    return data
