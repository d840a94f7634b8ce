from __future__ import annotations

from flask import Blueprint, request

from app.irdesk.db import db_session
from app.irdesk.errors import ValidationError
from app.irdesk.modules.communications.models import SEND_METHODS, TEMPLATE_CATEGORIES
from app.irdesk.modules.communications.service import (
    clone_template,
    create_template,
    delete_template,
    get_template,
    list_logs,
    list_templates,
    resolve_variables,
    send_communication,
    template_versions,
    update_template,
)
from app.irdesk.modules.communications.variables import VARIABLE_CATALOG, VARIABLE_CATEGORIES
from app.irdesk.modules.tags.service import set_entity_tags, tags_for_entity
from app.irdesk.rbac import require_permission
from app.irdesk.tenancy import current_organization, current_user
from app.irdesk.utils import page_args, paginate, parse_bool, request_payload

bp = Blueprint("communications", __name__)


def _detail(s, org, template) -> dict:
    data = template.to_dict()
    data["entityTags"] = [t.to_dict() for t in tags_for_entity(s, org, "communication", template.id)] if not template.is_global else []
    return data


@bp.get("/templates")
@require_permission("templates.view")
def templates_list():
    s = db_session()
    q = list_templates(s, current_organization(), request.args)
    page, per_page = page_args()
    data = paginate(q, key="templates", serialize=lambda t: t.to_dict(), page=page, per_page=per_page)
    data["categories"] = list(TEMPLATE_CATEGORIES)
    return data


@bp.post("/templates")
@require_permission("templates.manage")
def templates_create():
    s = db_session()
    org = current_organization()
    payload = request_payload()
    template = create_template(s, org, payload, current_user())
    if isinstance(payload.get("tag_ids"), list):
        set_entity_tags(s, org, "communication", template.id, payload["tag_ids"])
    s.commit()
    return _detail(s, org, template), 201


@bp.get("/templates/<int:template_id>")
@require_permission("templates.view")
def templates_get(template_id: int):
    s = db_session()
    org = current_organization()
    return _detail(s, org, get_template(s, org, template_id))


@bp.put("/templates/<int:template_id>")
@require_permission("templates.manage")
def templates_update(template_id: int):
    s = db_session()
    org = current_organization()
    payload = request_payload()
    template = update_template(s, org, get_template(s, org, template_id), payload, current_user())
    if isinstance(payload.get("tag_ids"), list):
        set_entity_tags(s, org, "communication", template.id, payload["tag_ids"])
    s.commit()
    return _detail(s, org, template)


@bp.delete("/templates/<int:template_id>")
@require_permission("templates.manage")
def templates_delete(template_id: int):
    s = db_session()
    org = current_organization()
    delete_template(s, org, get_template(s, org, template_id), current_user())
    s.commit()
    return {"success": True}


@bp.post("/templates/<int:template_id>/clone")
@require_permission("templates.manage")
def templates_clone(template_id: int):
    s = db_session()
    org = current_organization()
    template = clone_template(s, org, get_template(s, org, template_id), current_user())
    s.commit()
    return _detail(s, org, template), 201


@bp.get("/templates/<int:template_id>/versions")
@require_permission("templates.view")
def templates_versions(template_id: int):
    s = db_session()
    template = get_template(s, current_organization(), template_id)
    return {"templateId": template.id, "currentVersion": template.version, "versions": [v.to_dict() for v in template_versions(s, template)]}


@bp.post("/templates/<int:template_id>/preview")
@require_permission("templates.view")
def templates_preview(template_id: int):
    s = db_session()
    org = current_organization()
    payload = request_payload()
    template = get_template(s, org, template_id)
    use_examples = parse_bool(payload.get("use_examples"))
    return resolve_variables(
        s,
        org,
        current_user(),
        content=template.content,
        subject=template.subject,
        incident_id=payload.get("incident_id"),
        asset_id=payload.get("asset_id"),
        custom_values=payload.get("custom_values"),
        with_examples=True if use_examples is None else use_examples,
    )


@bp.get("/variables")
@require_permission("templates.view")
def variables_catalog():
    return {"categories": list(VARIABLE_CATEGORIES), "variables": VARIABLE_CATALOG}


@bp.post("/variables")
@require_permission("templates.view")
def variables_resolve():
    s = db_session()
    payload = request_payload()
    template = payload.get("template")
    if not isinstance(template, str) or not template.strip():
        raise ValidationError("Template content required.")
    return resolve_variables(
        s,
        current_organization(),
        current_user(),
        content=template,
        subject=payload.get("subject") if isinstance(payload.get("subject"), str) else None,
        incident_id=payload.get("incident_id"),
        asset_id=payload.get("asset_id"),
        custom_values=payload.get("custom_values"),
    )


@bp.post("/send")
@require_permission("communications.send")
def communications_send():
    s = db_session()
    log = send_communication(s, current_organization(), request_payload(), current_user())
    s.commit()
    return {"message": "Communication logged", "log": log.to_dict()}, 201


@bp.get("/logs")
@require_permission("templates.view")
def communications_logs():
    s = db_session()
    q = list_logs(s, current_organization(), request.args)
    page, per_page = page_args()
    data = paginate(q, key="logs", serialize=lambda l: l.to_dict(), page=page, per_page=per_page)
    data["methods"] = list(SEND_METHODS)
    return data
