from __future__ import annotations

import csv
import io
import json
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.irdesk.audit import record_event
from app.irdesk.errors import ConflictError, NotFoundError, ValidationError
from app.irdesk.modules.incidents.models import (
    ASSET_IMPACT_STATUSES,
    CLASSIFICATIONS,
    IMPACT_LEVELS,
    SEVERITIES,
    STATUS_TIMESTAMPS,
    STATUSES,
    Incident,
    IncidentAsset,
    IncidentEvidence,
)
from app.irdesk.modules.licensing.service import add_storage_usage, enforce_quota
from app.irdesk.modules.runbooks.models import PHASES
from app.irdesk.modules.tags.service import clear_entity_tags, entity_ids_with_tag
from app.irdesk.storage import Storage, store_upload
from app.irdesk.utils import clean_str, parse_custom_fields, parse_datetime, parse_int, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.orm import Query, Session

    from app.irdesk.models import User
    from app.irdesk.modules.organizations.models import Organization

logger = logging.getLogger(__name__)

_TEXT_FIELDS = (
    "title",
    "description",
    "detection_details",
    "containment_details",
    "eradication_details",
    "recovery_details",
    "post_incident_notes",
    "stakeholder_comms",
    "estimated_impact",
    "lessons_learned",
)


# ---------- Reference numbers ----------
def next_reference_number(s: "Session", org: "Organization", now: "datetime | None" = None) -> str:
    """INC-YYYYMM-NNNN, counted per organization per UTC calendar month."""
    now = now or utcnow()
    prefix = f"INC-{now:%Y%m}-"
    existing = (
        s.query(Incident.reference_number)
        .filter(Incident.organization_id == org.id, Incident.reference_number.like(f"{prefix}%"))
        .all()
    )
    highest = 0
    for (ref,) in existing:
        tail = ref[len(prefix):]
        if tail.isdigit():
            highest = max(highest, int(tail))
    return f"{prefix}{highest + 1:04d}"


# ---------- Validation ----------
def _check_choice(errors: list[str], payload: dict, field: str, choices: tuple[str, ...], *, required: bool) -> None:
    value = clean_str(payload.get(field))
    if required and not value:
        errors.append(f"{field.capitalize()} is required.")
    elif value and value not in choices:
        errors.append(f"Invalid {field}. Must be one of: {', '.join(choices)}")


def validate_incident_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "title" in payload:
        title = clean_str(payload.get("title"))
        if not title:
            errors.append("Title is required.")
        elif len(title) > 255:
            errors.append("Title must be 255 characters or fewer.")
    _check_choice(errors, payload, "classification", CLASSIFICATIONS, required=not partial or "classification" in payload)
    _check_choice(errors, payload, "severity", SEVERITIES, required=not partial or "severity" in payload)
    if "status" in payload:
        _check_choice(errors, payload, "status", STATUSES, required=True)
    _check_choice(errors, payload, "impact_level", IMPACT_LEVELS, required=False)
    try:
        affected = parse_int(payload.get("affected_users"), field="affected_users")
        if affected is not None and affected < 0:
            errors.append("affected_users must not be negative.")
        parse_int(payload.get("assigned_to"), field="assigned_to")
        parse_int(payload.get("runbook_id"), field="runbook_id")
        parse_datetime(payload.get("detected_at"))
        parse_custom_fields(payload.get("metadata"))
    except ValidationError as e:
        errors.extend(e.errors)
    return errors


def _resolve_assignee(s: "Session", org: "Organization", raw: Any) -> int | None:
    from app.irdesk.modules.organizations.models import OrganizationMember

    user_id = parse_int(raw, field="assigned_to")
    if user_id is None:
        return None
    member = (
        s.query(OrganizationMember)
        .filter(OrganizationMember.organization_id == org.id, OrganizationMember.user_id == user_id)
        .one_or_none()
    )
    if member is None:
        raise ValidationError("Assignee must be a member of this organization.")
    return user_id


def _resolve_runbook(s: "Session", org: "Organization", raw: Any) -> int | None:
    from app.irdesk.modules.runbooks.models import Runbook

    runbook_id = parse_int(raw, field="runbook_id")
    if runbook_id is None:
        return None
    runbook = s.get(Runbook, runbook_id)
    if runbook is None or runbook.organization_id not in (None, org.id):
        raise ValidationError("Runbook not found.")
    return runbook_id


def _apply_incident_fields(s: "Session", org: "Organization", incident: Incident, payload: dict) -> dict[str, Any]:
    changes: dict[str, Any] = {}

    def _set(field: str, new: Any) -> None:
        old = getattr(incident, field)
        if new != old:
            changes[field] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
            setattr(incident, field, new)

    for field in _TEXT_FIELDS:
        if field in payload:
            new = clean_str(payload.get(field))
            if field == "title" and not new:
                continue
            _set(field, new)
    for field in ("classification", "severity", "impact_level"):
        if field in payload:
            new = clean_str(payload.get(field))
            if field != "impact_level" and not new:
                continue
            _set(field, new)
    if "affected_users" in payload:
        _set("affected_users", parse_int(payload.get("affected_users"), field="affected_users"))
    if "detected_at" in payload and clean_str(payload.get("detected_at")):
        _set("detected_at", parse_datetime(payload.get("detected_at")))
    if "assigned_to" in payload:
        _set("assigned_to_user_id", _resolve_assignee(s, org, payload.get("assigned_to")))
    if "runbook_id" in payload:
        _set("runbook_id", _resolve_runbook(s, org, payload.get("runbook_id")))
    if "metadata" in payload:
        incident.metadata_json = parse_custom_fields(payload.get("metadata"))
    return changes


# ---------- Queries ----------
def list_incidents(s: "Session", org: "Organization", args) -> "Query":
    q = s.query(Incident).filter(Incident.organization_id == org.id)
    for field, choices in (("status", STATUSES), ("severity", SEVERITIES), ("classification", CLASSIFICATIONS)):
        value = clean_str(args.get(field))
        if value:
            if value not in choices:
                raise ValidationError(f"Invalid {field}. Must be one of: {', '.join(choices)}")
            q = q.filter(getattr(Incident, field) == value)

    assigned_to = parse_int(args.get("assigned_to"), field="assigned_to")
    if assigned_to is not None:
        q = q.filter(Incident.assigned_to_user_id == assigned_to)

    search = clean_str(args.get("q"))
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Incident.title.ilike(like),
                Incident.description.ilike(like),
                Incident.reference_number.ilike(like),
            )
        )

    tag = clean_str(args.get("tag"))
    if tag:
        q = q.filter(Incident.id.in_(entity_ids_with_tag(s, org, "incident", tag) or [-1]))
    return q.order_by(Incident.detected_at.desc(), Incident.id.desc())


def get_incident(s: "Session", org: "Organization", incident_id: int) -> Incident:
    incident = s.get(Incident, incident_id)
    if incident is None or incident.organization_id != org.id:
        raise NotFoundError("Incident")
    return incident


def incident_counts(s: "Session", org: "Organization") -> dict[str, dict[str, int]]:
    base = Incident.organization_id == org.id
    by_status = dict(s.query(Incident.status, func.count(Incident.id)).filter(base).group_by(Incident.status).all())
    by_severity = dict(s.query(Incident.severity, func.count(Incident.id)).filter(base).group_by(Incident.severity).all())
    return {
        "byStatus": {k: int(by_status.get(k, 0)) for k in STATUSES},
        "bySeverity": {k: int(by_severity.get(k, 0)) for k in SEVERITIES},
    }


# ---------- CRUD ----------
def create_incident(s: "Session", org: "Organization", payload: dict, user: "User") -> Incident:
    errors = validate_incident_payload(payload)
    if errors:
        raise ValidationError(errors)
    enforce_quota(s, org, "incidents")
    incident = Incident(
        organization_id=org.id,
        reference_number=next_reference_number(s, org),
        reported_by_user_id=user.id,
        status="open",
        detected_at=utcnow(),
    )
    _apply_incident_fields(s, org, incident, payload)
    s.add(incident)
    s.flush()
    record_event(
        s,
        actor=user,
        action="incident.create",
        entity_type="Incident",
        entity_id=str(incident.id),
        metadata={
            "reference_number": incident.reference_number,
            "severity": incident.severity,
            "classification": incident.classification,
        },
        organization_id=org.id,
    )
    logger.info("Incident created org=%s ref=%s severity=%s", org.id, incident.reference_number, incident.severity)
    return incident


def update_incident(s: "Session", org: "Organization", incident: Incident, payload: dict, user: "User") -> Incident:
    errors = validate_incident_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    changes = _apply_incident_fields(s, org, incident, payload)
    incident.updated_at = utcnow()
    if changes:
        record_event(
            s,
            actor=user,
            action="incident.update",
            entity_type="Incident",
            entity_id=str(incident.id),
            metadata={"changes": changes},
            organization_id=org.id,
        )
    new_status = clean_str(payload.get("status"))
    if new_status and new_status != incident.status:
        change_status(s, org, incident, new_status, user)
    return incident


def change_status(
    s: "Session",
    org: "Organization",
    incident: Incident,
    status: str,
    user: "User",
    *,
    notes: str | None = None,
) -> Incident:
    if status not in STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(STATUSES)}")
    old = incident.status
    if status == old:
        return incident
    now = utcnow()
    incident.status = status
    stamp = STATUS_TIMESTAMPS.get(status)
    if stamp and getattr(incident, stamp) is None:
        setattr(incident, stamp, now)
    incident.updated_at = now
    record_event(
        s,
        actor=user,
        action="incident.close" if status == "closed" else "incident.status_change",
        entity_type="Incident",
        entity_id=str(incident.id),
        reason=notes,
        metadata={"from": old, "to": status, "reference_number": incident.reference_number},
        organization_id=org.id,
    )
    return incident


def delete_incident(s: "Session", org: "Organization", incident: Incident, user: "User", storage: Storage) -> None:
    freed = 0
    for ev in list(incident.evidence):
        storage.delete(ev.storage_key)
        freed += ev.size_bytes or 0
    if freed:
        add_storage_usage(s, org, -freed)
    clear_entity_tags(s, org, "incident", incident.id)
    record_event(
        s,
        actor=user,
        action="incident.delete",
        entity_type="Incident",
        entity_id=str(incident.id),
        metadata={"reference_number": incident.reference_number, "title": incident.title},
        organization_id=org.id,
    )
    s.delete(incident)


# ---------- Affected assets ----------
def link_asset(s: "Session", org: "Organization", incident: Incident, payload: dict, user: "User") -> IncidentAsset:
    from app.irdesk.modules.assets.service import get_asset

    asset_id = parse_int(payload.get("asset_id"), field="asset_id")
    if asset_id is None:
        raise ValidationError("asset_id is required.")
    asset = get_asset(s, org, asset_id)
    status = clean_str(payload.get("status")) or "affected"
    if status not in ASSET_IMPACT_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(ASSET_IMPACT_STATUSES)}")
    if any(link.asset_id == asset.id for link in incident.assets):
        raise ConflictError("Asset is already linked to this incident.")
    link = IncidentAsset(asset_id=asset.id, impact=clean_str(payload.get("impact")), status=status)
    incident.assets.append(link)
    s.flush()
    record_event(
        s,
        actor=user,
        action="incident.asset_link",
        entity_type="Incident",
        entity_id=str(incident.id),
        metadata={"asset_id": asset.id, "asset_name": asset.name, "status": status},
        organization_id=org.id,
    )
    return link


def unlink_asset(s: "Session", org: "Organization", incident: Incident, asset_id: int, user: "User") -> None:
    link = next((l for l in incident.assets if l.asset_id == asset_id), None)
    if link is None:
        raise NotFoundError("Incident asset")
    incident.assets.remove(link)
    record_event(
        s,
        actor=user,
        action="incident.asset_remove",
        entity_type="Incident",
        entity_id=str(incident.id),
        metadata={"asset_id": asset_id},
        organization_id=org.id,
    )


def affected_assets(s: "Session", incident: Incident) -> list[dict]:
    from app.irdesk.modules.assets.models import Asset

    ids = [link.asset_id for link in incident.assets]
    assets = {a.id: a for a in s.query(Asset).filter(Asset.id.in_(ids)).all()} if ids else {}
    out = []
    for link in incident.assets:
        d = link.to_dict()
        asset = assets.get(link.asset_id)
        d["asset"] = (
            {"id": asset.id, "name": asset.name, "type": asset.type, "criticality": asset.criticality}
            if asset
            else None
        )
        out.append(d)
    return out


# ---------- Evidence ----------
def check_upload_size(s: "Session", org: "Organization", size_bytes: int, max_mb: int) -> None:
    if size_bytes <= 0:
        raise ValidationError("Uploaded file is empty.")
    if size_bytes > max_mb * 1024 * 1024:
        raise ValidationError(f"File too large. Maximum size is {max_mb}MB.")
    enforce_quota(s, org, "storage", increment=size_bytes / (1024 * 1024))


def upload_evidence(
    s: "Session",
    org: "Organization",
    incident: Incident,
    file_bytes: bytes,
    filename: str,
    content_type: str,
    user: "User",
    storage: Storage,
    *,
    max_mb: int,
    phase: str | None = None,
    description: str | None = None,
) -> IncidentEvidence:
    if phase and phase not in PHASES:
        raise ValidationError(f"Invalid phase. Must be one of: {', '.join(PHASES)}")
    check_upload_size(s, org, len(file_bytes), max_mb)
    key, digest, size = store_upload(storage, "incidents", org.id, incident.id, file_bytes, filename, content_type)
    evidence = IncidentEvidence(
        phase=phase,
        file_name=filename,
        storage_key=key,
        size_bytes=size,
        content_type=content_type,
        sha256=digest,
        description=description,
        uploaded_by_user_id=user.id,
    )
    incident.evidence.append(evidence)
    add_storage_usage(s, org, size)
    s.flush()
    record_event(
        s,
        actor=user,
        action="evidence.upload",
        entity_type="IncidentEvidence",
        entity_id=str(evidence.id),
        metadata={"incident_id": incident.id, "filename": filename, "sha256": digest, "size_bytes": size},
        organization_id=org.id,
    )
    return evidence


def get_evidence(incident: Incident, evidence_id: int) -> IncidentEvidence:
    evidence = next((e for e in incident.evidence if e.id == evidence_id), None)
    if evidence is None:
        raise NotFoundError("Evidence")
    return evidence


def delete_evidence(
    s: "Session",
    org: "Organization",
    incident: Incident,
    evidence: IncidentEvidence,
    user: "User",
    storage: Storage,
) -> None:
    storage.delete(evidence.storage_key)
    add_storage_usage(s, org, -(evidence.size_bytes or 0))
    incident.evidence.remove(evidence)
    record_event(
        s,
        actor=user,
        action="evidence.delete",
        entity_type="IncidentEvidence",
        entity_id=str(evidence.id),
        metadata={"incident_id": incident.id, "filename": evidence.file_name},
        organization_id=org.id,
    )


# ---------- Export ----------
EXPORT_COLUMNS = (
    ("reference_number", "Reference"),
    ("title", "Title"),
    ("classification", "Classification"),
    ("severity", "Severity"),
    ("status", "Status"),
    ("detected_at", "Detected At"),
    ("contained_at", "Contained At"),
    ("closed_at", "Closed At"),
    ("impact_level", "Impact Level"),
    ("affected_users", "Affected Users"),
)


def export_incidents(incidents: list[Incident], fmt: str) -> tuple[bytes, str]:
    if fmt == "json":
        body = json.dumps([i.to_dict() for i in incidents], indent=2, default=str)
        return body.encode("utf-8"), "application/json"
    if fmt != "csv":
        raise ValidationError("Export format must be csv or json.")
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow([label for _, label in EXPORT_COLUMNS])
    for i in incidents:
        row = []
        for field, _ in EXPORT_COLUMNS:
            value = getattr(i, field)
            row.append(value.isoformat() if hasattr(value, "isoformat") else ("" if value is None else value))
        writer.writerow(row)
    return out.getvalue().encode("utf-8"), "text/csv"
