from __future__ import annotations

import io

from flask import Blueprint, request, send_file

from app.irdesk.audit import record_event
from app.irdesk.db import db_session
from app.irdesk.errors import ValidationError
from app.irdesk.modules.assets.models import ASSET_TYPES, CRITICALITY_LEVELS, GROUP_TYPES
from app.irdesk.modules.assets.service import (
    apply_dynamic_rules,
    asset_statistics,
    bulk_add_to_group,
    bulk_delete_assets,
    bulk_tag_assets,
    create_asset,
    create_group,
    delete_asset,
    delete_group,
    export_assets,
    get_asset,
    get_group,
    group_path,
    group_tree,
    groups_for_asset,
    import_assets,
    list_assets,
    move_assets,
    parse_import_file,
    serialize_assets,
    update_asset,
    update_group,
)
from app.irdesk.modules.licensing.service import feature_required
from app.irdesk.modules.tags.service import set_entity_tags, tags_for_entity
from app.irdesk.rbac import require_permission
from app.irdesk.tenancy import current_organization, current_user
from app.irdesk.utils import page_args, paginate, parse_int, request_payload, utcnow

bp = Blueprint("assets", __name__)


def _asset_detail(s, org, asset) -> dict:
    data = asset.to_dict()
    data["tags"] = [t.to_dict() for t in tags_for_entity(s, org, "asset", asset.id)]
    data["groups"] = [{"id": g.id, "name": g.name} for g in groups_for_asset(s, asset)]
    return data


@bp.get("")
@require_permission("assets.view")
def assets_list():
    s = db_session()
    org = current_organization()
    q = list_assets(s, org, request.args)
    page, per_page = page_args()
    data = paginate(q, key="assets", serialize=lambda a: a, page=page, per_page=per_page)
    data["assets"] = serialize_assets(s, org, data["assets"])
    data["types"] = list(ASSET_TYPES)
    data["criticalityLevels"] = list(CRITICALITY_LEVELS)
    return data


@bp.post("")
@require_permission("assets.create")
def assets_create():
    s = db_session()
    org = current_organization()
    payload = request_payload()
    asset = create_asset(s, org, payload, current_user())
    if isinstance(payload.get("tag_ids"), list):
        set_entity_tags(s, org, "asset", asset.id, payload["tag_ids"])
    s.commit()
    return _asset_detail(s, org, asset), 201


@bp.get("/statistics")
@require_permission("assets.view")
def assets_statistics():
    return asset_statistics(db_session(), current_organization())


@bp.get("/export")
@require_permission("assets.view")
def assets_export():
    s = db_session()
    org = current_organization()
    fmt = (request.args.get("format") or "csv").strip().lower()
    assets = list_assets(s, org, request.args).all()
    body, mimetype = export_assets(assets, fmt)
    record_event(
        s,
        actor=current_user(),
        action="asset.export",
        entity_type="Asset",
        entity_id="export",
        metadata={"format": fmt, "row_count": len(assets)},
        organization_id=org.id,
    )
    s.commit()
    filename = f"assets-{utcnow().date().isoformat()}.{fmt}"
    return send_file(io.BytesIO(body), mimetype=mimetype, as_attachment=True, download_name=filename, max_age=0)


@bp.post("/import")
@require_permission("assets.create")
def assets_import():
    s = db_session()
    org = current_organization()
    f = request.files.get("file")
    if f is not None and f.filename:
        fmt = "json" if f.filename.lower().endswith(".json") else "csv"
        rows = parse_import_file(f.read(), fmt)
    else:
        rows = request_payload().get("rows")
        if not isinstance(rows, list) or any(not isinstance(r, dict) for r in rows):
            raise ValidationError("Provide a CSV/JSON file or a 'rows' list of objects.")
    result = import_assets(s, org, rows, current_user())
    s.commit()
    return result, 201 if result["created"] else 200


# ---------- Bulk ----------
@bp.post("/bulk/delete")
@require_permission("assets.delete")
@feature_required("bulkOperations")
def assets_bulk_delete():
    s = db_session()
    count = bulk_delete_assets(s, current_organization(), request_payload().get("asset_ids"), current_user())
    s.commit()
    return {"deleted": count}


@bp.post("/bulk/tag")
@require_permission("assets.edit")
@feature_required("bulkOperations")
def assets_bulk_tag():
    s = db_session()
    payload = request_payload()
    added = bulk_tag_assets(s, current_organization(), payload.get("asset_ids"), payload.get("tag_ids"), current_user())
    s.commit()
    return {"added": added}


@bp.post("/bulk/group")
@require_permission("assets.edit")
@feature_required("bulkOperations")
def assets_bulk_group():
    s = db_session()
    org = current_organization()
    payload = request_payload()
    group_id = parse_int(payload.get("group_id"), field="group_id")
    if group_id is None:
        raise ValidationError("group_id is required.")
    added = bulk_add_to_group(s, org, payload.get("asset_ids"), get_group(s, org, group_id), current_user())
    s.commit()
    return {"added": added}


# ---------- Single asset ----------
@bp.get("/<int:asset_id>")
@require_permission("assets.view")
def assets_get(asset_id: int):
    s = db_session()
    org = current_organization()
    return _asset_detail(s, org, get_asset(s, org, asset_id))


@bp.put("/<int:asset_id>")
@require_permission("assets.edit")
def assets_update(asset_id: int):
    s = db_session()
    org = current_organization()
    payload = request_payload()
    asset = update_asset(s, org, get_asset(s, org, asset_id), payload, current_user())
    if isinstance(payload.get("tag_ids"), list):
        set_entity_tags(s, org, "asset", asset.id, payload["tag_ids"])
    s.commit()
    return _asset_detail(s, org, asset)


@bp.delete("/<int:asset_id>")
@require_permission("assets.delete")
def assets_delete(asset_id: int):
    s = db_session()
    org = current_organization()
    delete_asset(s, org, get_asset(s, org, asset_id), current_user())
    s.commit()
    return {"success": True}


# ---------- Groups ----------
@bp.get("/groups")
@require_permission("assets.view")
def groups_list():
    s = db_session()
    return {"groups": group_tree(s, current_organization()), "types": list(GROUP_TYPES)}


@bp.post("/groups")
@require_permission("assets.edit")
def groups_create():
    s = db_session()
    group = create_group(s, current_organization(), request_payload(), current_user())
    s.commit()
    return group.to_dict(), 201


@bp.post("/groups/move")
@require_permission("assets.edit")
def groups_move():
    s = db_session()
    org = current_organization()
    payload = request_payload()
    to_id = parse_int(payload.get("to_group_id"), field="to_group_id")
    if to_id is None:
        raise ValidationError("to_group_id is required.")
    from_id = parse_int(payload.get("from_group_id"), field="from_group_id")
    from_group = get_group(s, org, from_id) if from_id is not None else None
    moved = move_assets(s, org, payload.get("asset_ids"), from_group, get_group(s, org, to_id), current_user())
    s.commit()
    return {"moved": moved}


@bp.get("/groups/<int:group_id>")
@require_permission("assets.view")
def groups_get(group_id: int):
    s = db_session()
    org = current_organization()
    group = get_group(s, org, group_id)
    members = list_assets(s, org, {"group": group.id}).all()
    data = group.to_dict()
    data["path"] = [{"id": g.id, "name": g.name} for g in group_path(s, org, group)]
    data["assets"] = serialize_assets(s, org, members)
    return data


@bp.get("/groups/<int:group_id>/path")
@require_permission("assets.view")
def groups_path(group_id: int):
    s = db_session()
    org = current_organization()
    return {"path": [g.to_dict() for g in group_path(s, org, get_group(s, org, group_id))]}


@bp.put("/groups/<int:group_id>")
@require_permission("assets.edit")
def groups_update(group_id: int):
    s = db_session()
    org = current_organization()
    group = update_group(s, org, get_group(s, org, group_id), request_payload(), current_user())
    s.commit()
    return group.to_dict()


@bp.delete("/groups/<int:group_id>")
@require_permission("assets.edit")
def groups_delete(group_id: int):
    s = db_session()
    org = current_organization()
    delete_group(s, org, get_group(s, org, group_id), current_user())
    s.commit()
    return {"success": True}


@bp.post("/groups/<int:group_id>/apply-rules")
@require_permission("assets.edit")
def groups_apply_rules(group_id: int):
    s = db_session()
    org = current_organization()
    group = get_group(s, org, group_id)
    members = apply_dynamic_rules(s, org, group, current_user())
    s.commit()
    return {"members": members, "group": group.to_dict()}
