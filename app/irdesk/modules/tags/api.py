from __future__ import annotations

from flask import Blueprint, request

from app.irdesk.db import db_session
from app.irdesk.errors import ValidationError
from app.irdesk.modules.tags.models import TAG_CATEGORIES, TagPolicy
from app.irdesk.modules.tags.service import (
    check_policy_compliance,
    create_policy,
    create_tag,
    delete_tag,
    effective_tags,
    ensure_entity,
    get_tag,
    list_tags,
    merge_tags,
    popular_tags,
    set_entity_tags,
    tag_entity,
    tag_statistics,
    tags_for_entity,
    untag_entity,
    update_tag,
)
from app.irdesk.rbac import require_permission
from app.irdesk.tenancy import current_organization, current_user
from app.irdesk.utils import clean_str, parse_int, request_payload

bp = Blueprint("tags", __name__)


@bp.get("")
@require_permission("tags.view")
def tags_list():
    s = db_session()
    tags = list_tags(
        s,
        current_organization(),
        category=clean_str(request.args.get("category")),
        q=clean_str(request.args.get("q")),
    )
    grouped: dict[str, list[dict]] = {}
    for t in tags:
        grouped.setdefault(t.category, []).append(t.to_dict())
    return {"tags": [t.to_dict() for t in tags], "byCategory": grouped, "categories": list(TAG_CATEGORIES)}


@bp.post("")
@require_permission("tags.manage")
def tags_create():
    s = db_session()
    tag = create_tag(s, current_organization(), request_payload(), current_user())
    s.commit()
    return tag.to_dict(), 201


@bp.get("/popular")
@require_permission("tags.view")
def tags_popular():
    s = db_session()
    limit = min(parse_int(request.args.get("limit"), field="limit") or 10, 50)
    return {"tags": [t.to_dict() for t in popular_tags(s, current_organization(), limit)]}


@bp.get("/statistics")
@require_permission("tags.view")
def tags_statistics():
    return tag_statistics(db_session(), current_organization())


@bp.get("/effective")
@require_permission("tags.view")
def tags_effective():
    s = db_session()
    return {"tags": effective_tags(s, current_organization(), clean_str(request.args.get("entity_type")))}


@bp.put("/<int:tag_id>")
@require_permission("tags.manage")
def tags_update(tag_id: int):
    s = db_session()
    org = current_organization()
    tag = update_tag(s, org, get_tag(s, org, tag_id), request_payload(), current_user())
    s.commit()
    return tag.to_dict()


@bp.delete("/<int:tag_id>")
@require_permission("tags.manage")
def tags_delete(tag_id: int):
    s = db_session()
    org = current_organization()
    delete_tag(s, org, get_tag(s, org, tag_id), current_user())
    s.commit()
    return {"success": True}


@bp.post("/merge")
@require_permission("tags.manage")
def tags_merge():
    s = db_session()
    org = current_organization()
    payload = request_payload()
    target_id = parse_int(payload.get("target_id"), field="target_id")
    source_ids = payload.get("source_ids") or []
    if target_id is None or not isinstance(source_ids, list):
        raise ValidationError("target_id and a list of source_ids are required.")
    source_ids = [parse_int(i, field="source_ids") for i in source_ids]
    if any(i is None for i in source_ids):
        raise ValidationError("source_ids must contain only tag ids.")
    target = merge_tags(s, org, source_ids, get_tag(s, org, target_id), current_user())
    s.commit()
    return target.to_dict()


# ---------- Entity tagging ----------
@bp.get("/entity/<entity_type>/<int:entity_id>")
@require_permission("tags.view")
def entity_tags(entity_type: str, entity_id: int):
    s = db_session()
    org = current_organization()
    ensure_entity(s, org, entity_type, entity_id)
    return {"tags": [t.to_dict() for t in tags_for_entity(s, org, entity_type, entity_id)]}


@bp.post("/entity/<entity_type>/<int:entity_id>")
@require_permission("tags.view")
def entity_tag_add(entity_type: str, entity_id: int):
    s = db_session()
    org = current_organization()
    ensure_entity(s, org, entity_type, entity_id)
    tag_id = parse_int(request_payload().get("tag_id"), field="tag_id")
    if tag_id is None:
        raise ValidationError("tag_id is required.")
    added = tag_entity(s, org, get_tag(s, org, tag_id), entity_type, entity_id)
    s.commit()
    return {"added": added, "tags": [t.to_dict() for t in tags_for_entity(s, org, entity_type, entity_id)]}


@bp.put("/entity/<entity_type>/<int:entity_id>")
@require_permission("tags.view")
def entity_tags_set(entity_type: str, entity_id: int):
    s = db_session()
    org = current_organization()
    ensure_entity(s, org, entity_type, entity_id)
    tag_ids = request_payload().get("tag_ids")
    if not isinstance(tag_ids, list):
        raise ValidationError("tag_ids must be a list.")
    tags = set_entity_tags(s, org, entity_type, entity_id, tag_ids)
    s.commit()
    return {"tags": [t.to_dict() for t in tags]}


@bp.delete("/entity/<entity_type>/<int:entity_id>/<int:tag_id>")
@require_permission("tags.view")
def entity_tag_remove(entity_type: str, entity_id: int, tag_id: int):
    s = db_session()
    org = current_organization()
    ensure_entity(s, org, entity_type, entity_id)
    removed = untag_entity(s, org, get_tag(s, org, tag_id), entity_type, entity_id)
    s.commit()
    return {"removed": removed}


# ---------- Policies ----------
@bp.get("/policies")
@require_permission("tags.view")
def policies_list():
    s = db_session()
    org = current_organization()
    policies = s.query(TagPolicy).filter(TagPolicy.organization_id == org.id).order_by(TagPolicy.entity_type.asc()).all()
    return {"policies": [p.to_dict() for p in policies]}


@bp.post("/policies")
@require_permission("tags.manage")
def policies_create():
    s = db_session()
    policy = create_policy(s, current_organization(), request_payload(), current_user())
    s.commit()
    return policy.to_dict(), 201


@bp.get("/compliance/<entity_type>/<int:entity_id>")
@require_permission("tags.view")
def policies_compliance(entity_type: str, entity_id: int):
    s = db_session()
    org = current_organization()
    ensure_entity(s, org, entity_type, entity_id)
    return check_policy_compliance(s, org, entity_type, entity_id)
