from __future__ import annotations

from flask import Blueprint, current_app, request, send_file

from app.irdesk.db import db_session
from app.irdesk.errors import NotFoundError, ValidationError
from app.irdesk.modules.runbooks.models import PHASES
from app.irdesk.modules.runbooks.service import (
    abandon_execution,
    clone_runbook,
    complete_execution,
    create_runbook,
    create_version,
    delete_runbook,
    execution_detail,
    execution_report,
    get_execution,
    get_execution_evidence,
    get_runbook,
    list_executions,
    list_runbooks,
    pause_execution,
    resume_execution,
    runbook_detail,
    start_execution,
    step_evidence,
    update_runbook,
    update_step,
    upload_step_evidence,
)
from app.irdesk.modules.tags.service import set_entity_tags, tags_for_entity
from app.irdesk.rbac import require_permission
from app.irdesk.storage import StorageError, storage_from_config
from app.irdesk.tenancy import current_organization, current_user
from app.irdesk.utils import clean_str, page_args, paginate, request_payload

bp = Blueprint("runbooks", __name__)


def _detail(s, org, runbook) -> dict:
    data = runbook_detail(runbook)
    data["tags"] = [t.to_dict() for t in tags_for_entity(s, org, "runbook", runbook.id)] if runbook.organization_id else []
    return data


@bp.get("")
@require_permission("runbooks.view")
def runbooks_list():
    s = db_session()
    q = list_runbooks(s, current_organization(), request.args)
    page, per_page = page_args()
    data = paginate(q, key="runbooks", serialize=lambda r: r.to_dict(), page=page, per_page=per_page)
    data["phases"] = list(PHASES)
    return data


@bp.post("")
@require_permission("runbooks.manage")
def runbooks_create():
    s = db_session()
    org = current_organization()
    payload = request_payload()
    runbook = create_runbook(s, org, payload, current_user())
    if isinstance(payload.get("tag_ids"), list):
        set_entity_tags(s, org, "runbook", runbook.id, payload["tag_ids"])
    s.commit()
    return _detail(s, org, runbook), 201


@bp.get("/<int:runbook_id>")
@require_permission("runbooks.view")
def runbooks_get(runbook_id: int):
    s = db_session()
    org = current_organization()
    return _detail(s, org, get_runbook(s, org, runbook_id))


@bp.put("/<int:runbook_id>")
@require_permission("runbooks.manage")
def runbooks_update(runbook_id: int):
    s = db_session()
    org = current_organization()
    payload = request_payload()
    runbook = update_runbook(s, org, get_runbook(s, org, runbook_id), payload, current_user())
    if isinstance(payload.get("tag_ids"), list):
        set_entity_tags(s, org, "runbook", runbook.id, payload["tag_ids"])
    s.commit()
    return _detail(s, org, runbook)


@bp.delete("/<int:runbook_id>")
@require_permission("runbooks.manage")
def runbooks_delete(runbook_id: int):
    s = db_session()
    org = current_organization()
    delete_runbook(s, org, get_runbook(s, org, runbook_id), current_user(), storage_from_config(current_app.config))
    s.commit()
    return {"success": True}


@bp.post("/<int:runbook_id>/clone")
@require_permission("runbooks.manage")
def runbooks_clone(runbook_id: int):
    s = db_session()
    org = current_organization()
    title = clean_str(request_payload().get("title"))
    runbook = clone_runbook(s, org, get_runbook(s, org, runbook_id), current_user(), title=title)
    s.commit()
    return _detail(s, org, runbook), 201


@bp.post("/<int:runbook_id>/versions")
@require_permission("runbooks.manage")
def runbooks_version(runbook_id: int):
    s = db_session()
    org = current_organization()
    runbook = create_version(s, org, get_runbook(s, org, runbook_id), request_payload().get("version"), current_user())
    s.commit()
    return _detail(s, org, runbook), 201


# ---------- Executions ----------
@bp.post("/<int:runbook_id>/executions")
@require_permission("runbooks.execute")
def executions_start(runbook_id: int):
    s = db_session()
    org = current_organization()
    payload = request_payload()
    execution = start_execution(
        s,
        org,
        get_runbook(s, org, runbook_id),
        current_user(),
        incident_id=payload.get("incident_id"),
    )
    s.commit()
    return execution_detail(execution), 201


@bp.get("/executions")
@require_permission("runbooks.view")
def executions_list():
    s = db_session()
    q = list_executions(s, current_organization(), request.args)
    page, per_page = page_args()
    return paginate(q, key="executions", serialize=lambda e: e.to_dict(), page=page, per_page=per_page)


@bp.get("/executions/<int:execution_id>")
@require_permission("runbooks.view")
def executions_get(execution_id: int):
    s = db_session()
    return execution_detail(get_execution(s, current_organization(), execution_id))


@bp.put("/executions/<int:execution_id>/steps/<int:step_index>")
@require_permission("runbooks.execute")
def executions_update_step(execution_id: int, step_index: int):
    s = db_session()
    org = current_organization()
    payload = request_payload()
    execution = get_execution(s, org, execution_id)
    update_step(
        s,
        org,
        execution,
        step_index,
        clean_str(payload.get("status")),
        current_user(),
        notes=clean_str(payload.get("notes")),
    )
    s.commit()
    return execution_detail(execution)


@bp.post("/executions/<int:execution_id>/pause")
@require_permission("runbooks.execute")
def executions_pause(execution_id: int):
    s = db_session()
    org = current_organization()
    execution = pause_execution(s, org, get_execution(s, org, execution_id), current_user())
    s.commit()
    return execution_detail(execution)


@bp.post("/executions/<int:execution_id>/resume")
@require_permission("runbooks.execute")
def executions_resume(execution_id: int):
    s = db_session()
    org = current_organization()
    execution = resume_execution(s, org, get_execution(s, org, execution_id), current_user())
    s.commit()
    return execution_detail(execution)


@bp.post("/executions/<int:execution_id>/complete")
@require_permission("runbooks.execute")
def executions_complete(execution_id: int):
    s = db_session()
    org = current_organization()
    notes = clean_str(request_payload().get("notes"))
    execution = complete_execution(s, org, get_execution(s, org, execution_id), current_user(), notes=notes)
    s.commit()
    return execution_detail(execution)


@bp.post("/executions/<int:execution_id>/abandon")
@require_permission("runbooks.execute")
def executions_abandon(execution_id: int):
    s = db_session()
    org = current_organization()
    notes = clean_str(request_payload().get("notes"))
    execution = abandon_execution(s, org, get_execution(s, org, execution_id), current_user(), notes=notes)
    s.commit()
    return execution_detail(execution)


@bp.get("/executions/<int:execution_id>/report")
@require_permission("runbooks.view")
def executions_report(execution_id: int):
    s = db_session()
    return execution_report(s, get_execution(s, current_organization(), execution_id))


@bp.get("/executions/<int:execution_id>/steps/<int:step_index>/evidence")
@require_permission("runbooks.view")
def executions_step_evidence(execution_id: int, step_index: int):
    s = db_session()
    execution = get_execution(s, current_organization(), execution_id)
    return {"evidence": [e.to_dict() for e in step_evidence(s, execution, step_index)]}


@bp.post("/executions/<int:execution_id>/steps/<int:step_index>/evidence")
@require_permission("runbooks.execute")
def executions_upload_evidence(execution_id: int, step_index: int):
    s = db_session()
    org = current_organization()
    execution = get_execution(s, org, execution_id)
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("Please select a file to upload.")
    evidence = upload_step_evidence(
        s,
        org,
        execution,
        step_index,
        f.read(),
        f.filename,
        (f.mimetype or "application/octet-stream").strip(),
        current_user(),
        storage_from_config(current_app.config),
        max_mb=int(current_app.config.get("MAX_EVIDENCE_MB") or 25),
        description=clean_str(request.form.get("description")),
    )
    s.commit()
    return evidence.to_dict(), 201


@bp.get("/executions/<int:execution_id>/evidence/<int:evidence_id>/download")
@require_permission("runbooks.view")
def executions_download_evidence(execution_id: int, evidence_id: int):
    s = db_session()
    execution = get_execution(s, current_organization(), execution_id)
    evidence = get_execution_evidence(s, execution, evidence_id)
    try:
        fobj = storage_from_config(current_app.config).open(evidence.storage_key)
    except StorageError as e:
        current_app.logger.error("Evidence object missing: key=%s", evidence.storage_key)
        raise NotFoundError("Evidence file") from e
    return send_file(
        fobj,
        mimetype=evidence.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=evidence.file_name,
        max_age=0,
    )
