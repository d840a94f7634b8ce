from __future__ import annotations

import io

from flask import Blueprint, current_app, request, send_file

from app.irdesk.audit import record_event
from app.irdesk.db import db_session
from app.irdesk.errors import NotFoundError, ValidationError
from app.irdesk.modules.incidents.models import CLASSIFICATIONS, SEVERITIES, STATUSES
from app.irdesk.modules.incidents.service import (
    affected_assets,
    change_status,
    create_incident,
    delete_evidence,
    delete_incident,
    export_incidents,
    get_evidence,
    get_incident,
    link_asset,
    list_incidents,
    unlink_asset,
    update_incident,
    upload_evidence,
)
from app.irdesk.modules.tags.service import set_entity_tags, tags_for_entities, tags_for_entity
from app.irdesk.rbac import require_permission
from app.irdesk.storage import StorageError, storage_from_config
from app.irdesk.tenancy import current_organization, current_user
from app.irdesk.utils import clean_str, page_args, paginate, request_payload, utcnow

bp = Blueprint("incidents", __name__)


def _incident_detail(s, org, incident) -> dict:
    data = incident.to_dict()
    data["assets"] = affected_assets(s, incident)
    data["evidence"] = [e.to_dict() for e in incident.evidence]
    data["tags"] = [t.to_dict() for t in tags_for_entity(s, org, "incident", incident.id)]
    return data


@bp.get("")
@require_permission("incidents.view")
def incidents_list():
    s = db_session()
    org = current_organization()
    q = list_incidents(s, org, request.args)
    page, per_page = page_args()
    data = paginate(q, key="incidents", serialize=lambda i: i.to_dict(), page=page, per_page=per_page)
    tags = tags_for_entities(s, org, "incident", [i["id"] for i in data["incidents"]])
    for i in data["incidents"]:
        i["tags"] = [t.to_dict() for t in tags.get(i["id"], [])]
    data["filters"] = {
        "statuses": list(STATUSES),
        "severities": list(SEVERITIES),
        "classifications": list(CLASSIFICATIONS),
    }
    return data


@bp.post("")
@require_permission("incidents.create")
def incidents_create():
    s = db_session()
    org = current_organization()
    payload = request_payload()
    incident = create_incident(s, org, payload, current_user())
    if isinstance(payload.get("tag_ids"), list):
        set_entity_tags(s, org, "incident", incident.id, payload["tag_ids"])
    s.commit()
    return _incident_detail(s, org, incident), 201


@bp.get("/export")
@require_permission("incidents.view")
def incidents_export():
    s = db_session()
    org = current_organization()
    fmt = (request.args.get("format") or "csv").strip().lower()
    incidents = list_incidents(s, org, request.args).all()
    body, mimetype = export_incidents(incidents, fmt)
    record_event(
        s,
        actor=current_user(),
        action="incident.export",
        entity_type="Incident",
        entity_id="export",
        metadata={"format": fmt, "row_count": len(incidents)},
        organization_id=org.id,
    )
    s.commit()
    filename = f"incidents-{utcnow().date().isoformat()}.{fmt}"
    return send_file(io.BytesIO(body), mimetype=mimetype, as_attachment=True, download_name=filename, max_age=0)


@bp.get("/<int:incident_id>")
@require_permission("incidents.view")
def incidents_get(incident_id: int):
    s = db_session()
    org = current_organization()
    return _incident_detail(s, org, get_incident(s, org, incident_id))


@bp.put("/<int:incident_id>")
@require_permission("incidents.edit")
def incidents_update(incident_id: int):
    s = db_session()
    org = current_organization()
    payload = request_payload()
    incident = update_incident(s, org, get_incident(s, org, incident_id), payload, current_user())
    if isinstance(payload.get("tag_ids"), list):
        set_entity_tags(s, org, "incident", incident.id, payload["tag_ids"])
    s.commit()
    return _incident_detail(s, org, incident)


@bp.post("/<int:incident_id>/status")
@require_permission("incidents.edit")
def incidents_status(incident_id: int):
    s = db_session()
    org = current_organization()
    payload = request_payload()
    status = clean_str(payload.get("status"))
    if not status:
        raise ValidationError("status is required.")
    incident = change_status(
        s,
        org,
        get_incident(s, org, incident_id),
        status,
        current_user(),
        notes=clean_str(payload.get("notes")),
    )
    s.commit()
    return incident.to_dict()


@bp.delete("/<int:incident_id>")
@require_permission("incidents.delete")
def incidents_delete(incident_id: int):
    s = db_session()
    org = current_organization()
    storage = storage_from_config(current_app.config)
    delete_incident(s, org, get_incident(s, org, incident_id), current_user(), storage)
    s.commit()
    return {"success": True}


# ---------- Affected assets ----------
@bp.post("/<int:incident_id>/assets")
@require_permission("incidents.edit")
def incidents_link_asset(incident_id: int):
    s = db_session()
    org = current_organization()
    link = link_asset(s, org, get_incident(s, org, incident_id), request_payload(), current_user())
    s.commit()
    return link.to_dict(), 201


@bp.delete("/<int:incident_id>/assets/<int:asset_id>")
@require_permission("incidents.edit")
def incidents_unlink_asset(incident_id: int, asset_id: int):
    s = db_session()
    org = current_organization()
    unlink_asset(s, org, get_incident(s, org, incident_id), asset_id, current_user())
    s.commit()
    return {"success": True}


# ---------- Evidence ----------
@bp.post("/<int:incident_id>/evidence")
@require_permission("incidents.edit")
def incidents_upload_evidence(incident_id: int):
    s = db_session()
    org = current_organization()
    incident = get_incident(s, org, incident_id)

    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("Please select a file to upload.")
    content_type = (f.mimetype or "application/octet-stream").strip()

    evidence = upload_evidence(
        s,
        org,
        incident,
        f.read(),
        f.filename,
        content_type,
        current_user(),
        storage_from_config(current_app.config),
        max_mb=int(current_app.config.get("MAX_EVIDENCE_MB") or 25),
        phase=clean_str(request.form.get("phase")),
        description=clean_str(request.form.get("description")),
    )
    s.commit()
    return evidence.to_dict(), 201


@bp.get("/<int:incident_id>/evidence/<int:evidence_id>/download")
@require_permission("incidents.view")
def incidents_download_evidence(incident_id: int, evidence_id: int):
    s = db_session()
    org = current_organization()
    evidence = get_evidence(get_incident(s, org, incident_id), evidence_id)
    try:
        fobj = storage_from_config(current_app.config).open(evidence.storage_key)
    except StorageError as e:
        current_app.logger.error("Evidence object missing: key=%s", evidence.storage_key)
        raise NotFoundError("Evidence file") from e
    record_event(
        s,
        actor=current_user(),
        action="evidence.download",
        entity_type="IncidentEvidence",
        entity_id=str(evidence.id),
        metadata={"incident_id": incident_id, "filename": evidence.file_name},
        organization_id=org.id,
    )
    s.commit()
    return send_file(
        fobj,
        mimetype=evidence.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=evidence.file_name,
        max_age=0,
    )


@bp.delete("/<int:incident_id>/evidence/<int:evidence_id>")
@require_permission("incidents.edit")
def incidents_delete_evidence(incident_id: int, evidence_id: int):
    s = db_session()
    org = current_organization()
    incident = get_incident(s, org, incident_id)
    storage = storage_from_config(current_app.config)
    delete_evidence(s, org, incident, get_evidence(incident, evidence_id), current_user(), storage)
    s.commit()
    return {"success": True}
