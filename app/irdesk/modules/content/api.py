from __future__ import annotations

from flask import Blueprint, request

from app.irdesk.db import db_session
from app.irdesk.errors import ValidationError
from app.irdesk.modules.content.models import DROPDOWN_CATEGORIES, TEMPLATE_CATEGORIES, DefaultTagSet
from app.irdesk.modules.content.service import (
    create_organization_dropdown,
    create_system_dropdown,
    create_system_template,
    create_tag_set,
    delete_organization_dropdown,
    delete_system_dropdown,
    delete_system_template,
    delete_tag_set,
    get_organization_dropdown,
    get_system_dropdown,
    get_system_template,
    get_tag_set,
    list_organization_dropdowns,
    list_system_dropdowns,
    list_system_templates,
    merged_dropdowns,
    record_template_usage,
    template_usage_counts,
    update_organization_dropdown,
    update_system_dropdown,
    update_system_template,
    update_tag_set,
)
from app.irdesk.rbac import require_permission, require_system_admin
from app.irdesk.tenancy import current_organization, current_user
from app.irdesk.utils import clean_str, page_args, paginate, parse_bool, request_payload

# Organization-facing content
bp = Blueprint("content", __name__)
# Platform content administration
admin_bp = Blueprint("content_admin", __name__)


def _category_arg(allowed: tuple[str, ...]) -> str | None:
    category = clean_str(request.args.get("category"))
    if category and category not in allowed:
        raise ValidationError(f"Invalid category. Must be one of: {', '.join(allowed)}")
    return category


@bp.get("/dropdowns")
@require_permission("dropdowns.view")
def dropdowns_merged():
    s = db_session()
    return {"dropdowns": merged_dropdowns(s, current_organization(), _category_arg(DROPDOWN_CATEGORIES))}


@bp.get("/dropdowns/<category>")
@require_permission("dropdowns.view")
def dropdowns_by_category(category: str):
    if category not in DROPDOWN_CATEGORIES:
        raise ValidationError(f"Invalid category. Must be one of: {', '.join(DROPDOWN_CATEGORIES)}")
    s = db_session()
    return {"category": category, "dropdowns": merged_dropdowns(s, current_organization(), category)}


@bp.get("/organization/dropdowns")
@require_permission("dropdowns.view")
def org_dropdowns_list():
    s = db_session()
    return {"dropdowns": [d.to_dict() for d in list_organization_dropdowns(s, current_organization())]}


@bp.post("/organization/dropdowns")
@require_permission("dropdowns.manage")
def org_dropdowns_create():
    s = db_session()
    dropdown = create_organization_dropdown(s, current_organization(), request_payload(), current_user())
    s.commit()
    return dropdown.to_dict(), 201


@bp.put("/organization/dropdowns/<int:dropdown_id>")
@require_permission("dropdowns.manage")
def org_dropdowns_update(dropdown_id: int):
    s = db_session()
    org = current_organization()
    dropdown = get_organization_dropdown(s, org, dropdown_id)
    update_organization_dropdown(s, org, dropdown, request_payload(), current_user())
    s.commit()
    return dropdown.to_dict()


@bp.delete("/organization/dropdowns/<int:dropdown_id>")
@require_permission("dropdowns.manage")
def org_dropdowns_delete(dropdown_id: int):
    s = db_session()
    org = current_organization()
    delete_organization_dropdown(s, org, get_organization_dropdown(s, org, dropdown_id), current_user())
    s.commit()
    return {"success": True}


@bp.get("/content/templates")
@require_permission("templates.view")
def content_templates_list():
    s = db_session()
    current_organization()
    q = list_system_templates(
        s,
        category=_category_arg(TEMPLATE_CATEGORIES),
        q=clean_str(request.args.get("q")),
        active=True,
    )
    return {"templates": [t.to_dict() for t in q.all()]}


@bp.get("/content/templates/<int:template_id>")
@require_permission("templates.view")
def content_templates_get(template_id: int):
    s = db_session()
    org = current_organization()
    template = get_system_template(s, template_id, active_only=True)
    record_template_usage(s, template, org, current_user(), "viewed")
    s.commit()
    return template.to_dict()


@bp.post("/content/templates/<int:template_id>/usage")
@require_permission("templates.view")
def content_templates_usage(template_id: int):
    s = db_session()
    org = current_organization()
    payload = request_payload()
    template = get_system_template(s, template_id, active_only=True)
    usage = record_template_usage(
        s,
        template,
        org,
        current_user(),
        clean_str(payload.get("usage_type")) or "viewed",
        payload.get("metadata") if isinstance(payload.get("metadata"), dict) else None,
    )
    s.commit()
    return usage.to_dict(), 201


# ---------- System administration ----------
@admin_bp.get("/dropdowns")
@require_system_admin
def admin_dropdowns_list():
    s = db_session()
    q = list_system_dropdowns(
        s,
        category=_category_arg(DROPDOWN_CATEGORIES),
        q=clean_str(request.args.get("q")),
        active=parse_bool(request.args.get("active")),
    )
    page, per_page = page_args()
    data = paginate(q, key="dropdowns", serialize=lambda d: d.to_dict(), page=page, per_page=per_page)
    data["categories"] = list(DROPDOWN_CATEGORIES)
    return data


@admin_bp.post("/dropdowns")
@require_system_admin
def admin_dropdowns_create():
    s = db_session()
    dropdown = create_system_dropdown(s, request_payload(), current_user())
    s.commit()
    return dropdown.to_dict(), 201


@admin_bp.get("/dropdowns/<int:dropdown_id>")
@require_system_admin
def admin_dropdowns_get(dropdown_id: int):
    return get_system_dropdown(db_session(), dropdown_id).to_dict()


@admin_bp.put("/dropdowns/<int:dropdown_id>")
@require_system_admin
def admin_dropdowns_update(dropdown_id: int):
    s = db_session()
    dropdown = update_system_dropdown(s, get_system_dropdown(s, dropdown_id), request_payload(), current_user())
    s.commit()
    return dropdown.to_dict()


@admin_bp.delete("/dropdowns/<int:dropdown_id>")
@require_system_admin
def admin_dropdowns_delete(dropdown_id: int):
    s = db_session()
    delete_system_dropdown(s, get_system_dropdown(s, dropdown_id), current_user())
    s.commit()
    return {"success": True}


@admin_bp.get("/tags/defaults")
@require_system_admin
def admin_tag_sets_list():
    s = db_session()
    sets = s.query(DefaultTagSet).order_by(DefaultTagSet.sort_order.asc(), DefaultTagSet.name.asc()).all()
    return {"tagSets": [t.to_dict() for t in sets]}


@admin_bp.post("/tags/defaults")
@require_system_admin
def admin_tag_sets_create():
    s = db_session()
    tag_set = create_tag_set(s, request_payload(), current_user())
    s.commit()
    return tag_set.to_dict(), 201


@admin_bp.put("/tags/defaults/<int:tag_set_id>")
@require_system_admin
def admin_tag_sets_update(tag_set_id: int):
    s = db_session()
    tag_set = update_tag_set(s, get_tag_set(s, tag_set_id), request_payload(), current_user())
    s.commit()
    return tag_set.to_dict()


@admin_bp.delete("/tags/defaults/<int:tag_set_id>")
@require_system_admin
def admin_tag_sets_delete(tag_set_id: int):
    s = db_session()
    delete_tag_set(s, get_tag_set(s, tag_set_id), current_user())
    s.commit()
    return {"success": True}


@admin_bp.get("/content/templates")
@require_system_admin
def admin_templates_list():
    s = db_session()
    q = list_system_templates(
        s,
        category=_category_arg(TEMPLATE_CATEGORIES),
        q=clean_str(request.args.get("q")),
        active=parse_bool(request.args.get("active")),
    )
    page, per_page = page_args()
    data = paginate(q, key="templates", serialize=lambda t: t.to_dict(), page=page, per_page=per_page)
    counts = template_usage_counts(s, [t["id"] for t in data["templates"]])
    for t in data["templates"]:
        t["usageCount"] = counts.get(t["id"], 0)
    data["categories"] = list(TEMPLATE_CATEGORIES)
    return data


@admin_bp.post("/content/templates")
@require_system_admin
def admin_templates_create():
    s = db_session()
    template = create_system_template(s, request_payload(), current_user())
    s.commit()
    return template.to_dict(), 201


@admin_bp.get("/content/templates/<int:template_id>")
@require_system_admin
def admin_templates_get(template_id: int):
    s = db_session()
    template = get_system_template(s, template_id)
    data = template.to_dict()
    data["usageCount"] = template_usage_counts(s, [template.id]).get(template.id, 0)
    return data


@admin_bp.put("/content/templates/<int:template_id>")
@require_system_admin
def admin_templates_update(template_id: int):
    s = db_session()
    template = update_system_template(s, get_system_template(s, template_id), request_payload(), current_user())
    s.commit()
    return template.to_dict()


@admin_bp.delete("/content/templates/<int:template_id>")
@require_system_admin
def admin_templates_delete(template_id: int):
    s = db_session()
    delete_system_template(s, get_system_template(s, template_id), current_user())
    s.commit()
    return {"success": True}
