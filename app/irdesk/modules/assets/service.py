from __future__ import annotations

import csv
import io
import json
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Query

from app.irdesk.audit import record_event
from app.irdesk.errors import ConflictError, NotFoundError, ValidationError
from app.irdesk.modules.assets.models import (
    ASSET_TYPES,
    CRITICALITY_LEVELS,
    GROUP_TYPES,
    Asset,
    AssetGroup,
    AssetGroupMember,
)
from app.irdesk.modules.licensing.service import enforce_quota
from app.irdesk.modules.tags.service import entity_ids_with_tag, get_tag, tag_entity, tags_for_entities
from app.irdesk.utils import clean_str, parse_bool, parse_custom_fields, parse_date, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.irdesk.models import User
    from app.irdesk.modules.organizations.models import Organization

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

_TEXT_FIELDS = (
    "name",
    "description",
    "identifier",
    "primary_contact_name",
    "primary_contact_email",
    "primary_contact_phone",
    "secondary_contact_name",
    "secondary_contact_email",
    "secondary_contact_phone",
    "vendor",
    "value",
    "location",
)
EXPIRY_WINDOW_DAYS = 30
MAX_IMPORT_ROWS = 1000


# ---------- Validation ----------
def validate_asset_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    name = clean_str(payload.get("name"))
    asset_type = clean_str(payload.get("type"))
    if not partial or "name" in payload:
        if not name:
            errors.append("Asset name is required.")
    if name and len(name) > 255:
        errors.append("Asset name must be 255 characters or fewer.")
    if not partial or "type" in payload:
        if not asset_type:
            errors.append("Asset type is required.")
    if asset_type and asset_type not in ASSET_TYPES:
        errors.append(f"Invalid type. Must be one of: {', '.join(ASSET_TYPES)}")
    criticality = clean_str(payload.get("criticality"))
    if criticality and criticality not in CRITICALITY_LEVELS:
        errors.append(f"Invalid criticality. Must be one of: {', '.join(CRITICALITY_LEVELS)}")
    for field in ("primary_contact_email", "secondary_contact_email"):
        email = clean_str(payload.get(field))
        if email and not _EMAIL_RE.match(email):
            errors.append(f"{field} is not a valid email address.")
    try:
        purchase = parse_date(payload.get("purchase_date"))
        expiry = parse_date(payload.get("expiry_date"))
    except ValidationError as e:
        errors.extend(e.errors)
    else:
        if purchase and expiry and expiry < purchase:
            errors.append("expiry_date must not be before purchase_date.")
    try:
        parse_custom_fields(payload.get("metadata"))
    except ValidationError as e:
        errors.extend(e.errors)
    return errors


def _apply_asset_fields(asset: Asset, payload: dict) -> dict[str, Any]:
    """Copy present payload fields onto the asset; returns {field: {old, new}}."""
    changes: dict[str, Any] = {}

    def _set(field: str, new: Any) -> None:
        old = getattr(asset, field)
        if new != old:
            changes[field] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
            setattr(asset, field, new)

    for field in _TEXT_FIELDS:
        if field in payload:
            new = clean_str(payload.get(field))
            if field == "name" and not new:
                continue
            _set(field, new)
    for field in ("type", "criticality"):
        if field in payload:
            new = clean_str(payload.get(field))
            if field == "type" and not new:
                continue
            _set(field, new)
    for field in ("purchase_date", "expiry_date"):
        if field in payload:
            _set(field, parse_date(payload.get(field)))
    if "must_contact" in payload:
        _set("must_contact", bool(parse_bool(payload.get("must_contact"))))
    if "metadata" in payload:
        asset.metadata_json = parse_custom_fields(payload.get("metadata"))
    return changes


# ---------- Queries ----------
def list_assets(s: "Session", org: "Organization", args) -> Query:
    q = s.query(Asset).filter(Asset.organization_id == org.id, Asset.deleted_at.is_(None))

    asset_type = clean_str(args.get("type"))
    if asset_type:
        if asset_type not in ASSET_TYPES:
            raise ValidationError(f"Invalid type. Must be one of: {', '.join(ASSET_TYPES)}")
        q = q.filter(Asset.type == asset_type)

    criticality = clean_str(args.get("criticality"))
    if criticality:
        if criticality not in CRITICALITY_LEVELS:
            raise ValidationError(f"Invalid criticality. Must be one of: {', '.join(CRITICALITY_LEVELS)}")
        q = q.filter(Asset.criticality == criticality)

    must_contact = parse_bool(args.get("must_contact"))
    if must_contact is not None:
        q = q.filter(Asset.must_contact.is_(must_contact))

    search = clean_str(args.get("q"))
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Asset.name.ilike(like),
                Asset.description.ilike(like),
                Asset.identifier.ilike(like),
                Asset.vendor.ilike(like),
                Asset.location.ilike(like),
            )
        )

    tag = clean_str(args.get("tag"))
    if tag:
        q = q.filter(Asset.id.in_(entity_ids_with_tag(s, org, "asset", tag) or [-1]))

    group_id = parse_int(args.get("group"), field="group")
    if group_id is not None:
        get_group(s, org, group_id)
        q = q.filter(
            Asset.id.in_(select(AssetGroupMember.asset_id).where(AssetGroupMember.asset_group_id == group_id))
        )
    return q.order_by(Asset.name.asc(), Asset.id.asc())


def get_asset(s: "Session", org: "Organization", asset_id: int) -> Asset:
    asset = s.get(Asset, asset_id)
    if asset is None or asset.organization_id != org.id or asset.deleted_at is not None:
        raise NotFoundError("Asset")
    return asset


def _assets_by_ids(s: "Session", org: "Organization", asset_ids: list[Any]) -> list[Asset]:
    if not isinstance(asset_ids, list) or not asset_ids:
        raise ValidationError("asset_ids must be a non-empty list.")
    ids = {parse_int(i, field="asset_ids") for i in asset_ids}
    assets = (
        s.query(Asset)
        .filter(Asset.organization_id == org.id, Asset.deleted_at.is_(None), Asset.id.in_(ids))
        .all()
    )
    if len(assets) != len(ids):
        raise NotFoundError("One or more assets")
    return assets


def serialize_assets(s: "Session", org: "Organization", assets: list[Asset]) -> list[dict]:
    tags = tags_for_entities(s, org, "asset", [a.id for a in assets])
    out = []
    for a in assets:
        d = a.to_dict()
        d["tags"] = [t.to_dict() for t in tags.get(a.id, [])]
        out.append(d)
    return out


def groups_for_asset(s: "Session", asset: Asset) -> list[AssetGroup]:
    return (
        s.query(AssetGroup)
        .join(AssetGroupMember, AssetGroupMember.asset_group_id == AssetGroup.id)
        .filter(AssetGroupMember.asset_id == asset.id)
        .order_by(AssetGroup.name.asc())
        .all()
    )


# ---------- CRUD ----------
def create_asset(s: "Session", org: "Organization", payload: dict, user: "User", *, check_quota: bool = True) -> Asset:
    errors = validate_asset_payload(payload)
    if errors:
        raise ValidationError(errors)
    if check_quota:
        enforce_quota(s, org, "assets")
    asset = Asset(organization_id=org.id, created_by_user_id=user.id)
    _apply_asset_fields(asset, payload)
    s.add(asset)
    s.flush()
    record_event(
        s,
        actor=user,
        action="asset.create",
        entity_type="Asset",
        entity_id=str(asset.id),
        metadata={"name": asset.name, "type": asset.type},
        organization_id=org.id,
    )
    return asset


def update_asset(s: "Session", org: "Organization", asset: Asset, payload: dict, user: "User") -> Asset:
    errors = validate_asset_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    changes = _apply_asset_fields(asset, payload)
    asset.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="asset.update",
        entity_type="Asset",
        entity_id=str(asset.id),
        metadata={"changes": changes},
        organization_id=org.id,
    )
    return asset


def _drop_memberships(s: "Session", asset_ids: list[int]) -> None:
    group_ids = {
        gid
        for (gid,) in s.query(AssetGroupMember.asset_group_id).filter(AssetGroupMember.asset_id.in_(asset_ids)).all()
    }
    s.query(AssetGroupMember).filter(AssetGroupMember.asset_id.in_(asset_ids)).delete(synchronize_session=False)
    for gid in group_ids:
        refresh_member_count(s, s.get(AssetGroup, gid))


def delete_asset(s: "Session", org: "Organization", asset: Asset, user: "User") -> None:
    """Soft delete; the row stays for incident history."""
    asset.deleted_at = utcnow()
    _drop_memberships(s, [asset.id])
    record_event(
        s,
        actor=user,
        action="asset.delete",
        entity_type="Asset",
        entity_id=str(asset.id),
        metadata={"name": asset.name},
        organization_id=org.id,
    )


# ---------- Bulk operations ----------
def bulk_delete_assets(s: "Session", org: "Organization", asset_ids: list[Any], user: "User") -> int:
    assets = _assets_by_ids(s, org, asset_ids)
    now = utcnow()
    for a in assets:
        a.deleted_at = now
    _drop_memberships(s, [a.id for a in assets])
    record_event(
        s,
        actor=user,
        action="asset.bulk_delete",
        entity_type="Asset",
        entity_id="bulk",
        metadata={"asset_ids": sorted(a.id for a in assets)},
        organization_id=org.id,
    )
    return len(assets)


def bulk_tag_assets(s: "Session", org: "Organization", asset_ids: list[Any], tag_ids: list[Any], user: "User") -> int:
    assets = _assets_by_ids(s, org, asset_ids)
    if not isinstance(tag_ids, list) or not tag_ids:
        raise ValidationError("tag_ids must be a non-empty list.")
    tags = [get_tag(s, org, parse_int(t, field="tag_ids")) for t in tag_ids]
    added = 0
    for a in assets:
        for t in tags:
            if tag_entity(s, org, t, "asset", a.id):
                added += 1
    record_event(
        s,
        actor=user,
        action="asset.bulk_tag",
        entity_type="Asset",
        entity_id="bulk",
        metadata={"asset_ids": sorted(a.id for a in assets), "tags": [t.name for t in tags], "added": added},
        organization_id=org.id,
    )
    return added


def _add_members(s: "Session", group: AssetGroup, asset_ids: list[int], user: "User | None") -> int:
    existing = {
        aid
        for (aid,) in s.query(AssetGroupMember.asset_id)
        .filter(AssetGroupMember.asset_group_id == group.id, AssetGroupMember.asset_id.in_(asset_ids))
        .all()
    }
    added = 0
    for aid in asset_ids:
        if aid in existing:
            continue
        s.add(AssetGroupMember(asset_group_id=group.id, asset_id=aid, added_by_user_id=user.id if user else None))
        added += 1
    s.flush()
    refresh_member_count(s, group)
    return added


def bulk_add_to_group(s: "Session", org: "Organization", asset_ids: list[Any], group: AssetGroup, user: "User") -> int:
    assets = _assets_by_ids(s, org, asset_ids)
    if group.is_dynamic:
        raise ConflictError("Dynamic group membership is managed by its rules.")
    added = _add_members(s, group, [a.id for a in assets], user)
    record_event(
        s,
        actor=user,
        action="asset.group_add",
        entity_type="AssetGroup",
        entity_id=str(group.id),
        metadata={"asset_ids": sorted(a.id for a in assets), "added": added},
        organization_id=org.id,
    )
    return added


# ---------- Export / import ----------
EXPORT_COLUMNS = (
    ("name", "Name"),
    ("type", "Type"),
    ("description", "Description"),
    ("identifier", "Identifier"),
    ("criticality", "Criticality"),
    ("must_contact", "Must Contact"),
    ("primary_contact_name", "Primary Contact"),
    ("primary_contact_email", "Primary Contact Email"),
    ("primary_contact_phone", "Primary Contact Phone"),
    ("secondary_contact_name", "Secondary Contact"),
    ("secondary_contact_email", "Secondary Contact Email"),
    ("secondary_contact_phone", "Secondary Contact Phone"),
    ("vendor", "Vendor"),
    ("location", "Location"),
    ("purchase_date", "Purchase Date"),
    ("expiry_date", "Expiry Date"),
    ("value", "Value"),
)
EXPORT_FORMATS = {
    "csv": "text/csv",
    "json": "application/json",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def _export_row(asset: Asset) -> list[Any]:
    row = []
    for field, _ in EXPORT_COLUMNS:
        value = getattr(asset, field)
        if field == "must_contact":
            value = "yes" if value else "no"
        elif field.endswith("_date"):
            value = value.isoformat() if value else ""
        row.append("" if value is None else value)
    return row


def export_assets(assets: list[Asset], fmt: str) -> tuple[bytes, str]:
    """Returns (body, mimetype)."""
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"format must be one of: {', '.join(EXPORT_FORMATS)}")
    if fmt == "json":
        return json.dumps([a.to_dict() for a in assets], indent=2, default=str).encode("utf-8"), EXPORT_FORMATS[fmt]
    headers = [label for _, label in EXPORT_COLUMNS]
    if fmt == "xlsx":
        import openpyxl

        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Assets"
        ws.append(headers)
        for a in assets:
            ws.append(_export_row(a))
        buf = io.BytesIO()
        wb.save(buf)
        return buf.getvalue(), EXPORT_FORMATS[fmt]
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(headers)
    for a in assets:
        writer.writerow(_export_row(a))
    return out.getvalue().encode("utf-8"), EXPORT_FORMATS[fmt]


@dataclass(frozen=True)
class ImportRowError:
    row_number: int
    message: str


# field -> accepted header spellings
_IMPORT_HEADERS: dict[str, tuple[str, ...]] = {
    field: (field, label, label.lower()) for field, label in EXPORT_COLUMNS
}


def _get(row: dict[str, Any], *names: str) -> Any:
    for n in names:
        if n in row and row[n] is not None:
            return row[n]
    return None


def _row_to_payload(raw: dict[str, Any]) -> dict[str, Any]:
    payload = {}
    for field, names in _IMPORT_HEADERS.items():
        value = _get(raw, *names)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        if isinstance(value, str):
            value = value.strip()
        if field in ("type", "criticality") and isinstance(value, str):
            value = value.lower()
        payload[field] = value
    if isinstance(raw.get("metadata"), dict):
        payload["metadata"] = raw["metadata"]
    return payload


def parse_import_file(file_bytes: bytes, fmt: str) -> list[dict]:
    """CSV (header row) or a JSON array of objects."""
    text = file_bytes.decode("utf-8-sig", errors="replace")
    if fmt == "json":
        try:
            rows = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Import file is not valid JSON: {e}") from e
        if not isinstance(rows, list) or any(not isinstance(r, dict) for r in rows):
            raise ValidationError("JSON import must be an array of objects.")
        return rows
    if fmt != "csv":
        raise ValidationError("Import format must be csv or json.")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValidationError("CSV has no header row.")
    return [r for r in reader if r and any((v or "").strip() for v in r.values() if isinstance(v, str))]


def import_assets(s: "Session", org: "Organization", rows: list[dict], user: "User") -> dict[str, Any]:
    """
    Validates every row first; valid rows are created together after a single
    quota check for the whole batch. Invalid rows are reported, not created.
    """
    if not rows:
        raise ValidationError("No rows to import.")
    if len(rows) > MAX_IMPORT_ROWS:
        raise ValidationError(f"Imports are limited to {MAX_IMPORT_ROWS} rows.")

    valid: list[tuple[int, dict]] = []
    errors: list[ImportRowError] = []
    for idx, raw in enumerate(rows, start=1):
        payload = _row_to_payload(raw)
        row_errors = validate_asset_payload(payload)
        if row_errors:
            errors.append(ImportRowError(idx, "; ".join(row_errors)))
            continue
        valid.append((idx, payload))

    created: list[Asset] = []
    if valid:
        enforce_quota(s, org, "assets", increment=len(valid))
        for _, payload in valid:
            asset = Asset(organization_id=org.id, created_by_user_id=user.id)
            _apply_asset_fields(asset, payload)
            s.add(asset)
            created.append(asset)
        s.flush()

    record_event(
        s,
        actor=user,
        action="asset.import",
        entity_type="Asset",
        entity_id="import",
        metadata={"rows": len(rows), "created": len(created), "errors": len(errors)},
        organization_id=org.id,
    )
    logger.info("Asset import org=%s rows=%s created=%s errors=%s", org.id, len(rows), len(created), len(errors))
    return {
        "created": len(created),
        "assetIds": [a.id for a in created],
        "errors": [{"row": e.row_number, "message": e.message} for e in errors],
    }


# ---------- Statistics ----------
def asset_statistics(s: "Session", org: "Organization") -> dict[str, Any]:
    base = (Asset.organization_id == org.id, Asset.deleted_at.is_(None))
    total = s.query(func.count(Asset.id)).filter(*base).scalar() or 0
    by_type = s.query(Asset.type, func.count(Asset.id)).filter(*base).group_by(Asset.type).all()
    by_criticality = s.query(Asset.criticality, func.count(Asset.id)).filter(*base).group_by(Asset.criticality).all()
    must_contact = s.query(func.count(Asset.id)).filter(*base, Asset.must_contact.is_(True)).scalar() or 0
    today = utcnow().date()
    expiring = (
        s.query(func.count(Asset.id))
        .filter(*base, Asset.expiry_date.isnot(None), Asset.expiry_date >= today)
        .filter(Asset.expiry_date <= today + timedelta(days=EXPIRY_WINDOW_DAYS))
        .scalar()
        or 0
    )
    return {
        "total": int(total),
        "byType": {t: int(n) for t, n in by_type},
        "byCriticality": {(c or "unset"): int(n) for c, n in by_criticality},
        "mustContact": int(must_contact),
        "expiringSoon": int(expiring),
    }


# ---------- Groups ----------
_RULE_BOOL_WORDS = ("1", "0", "true", "false", "yes", "no", "on", "off")


def _normalize_rules(rules: dict | None) -> dict | None:
    if not rules:
        return None
    rules = dict(rules)
    if "must_contact" in rules:
        rules["must_contact"] = parse_bool(rules["must_contact"])
    return rules


def validate_group_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    name = clean_str(payload.get("name"))
    if not partial and not name:
        errors.append("Group name is required.")
    if name and len(name) > 100:
        errors.append("Group name must be 100 characters or fewer.")
    group_type = clean_str(payload.get("type"))
    if group_type and group_type not in GROUP_TYPES:
        errors.append(f"Invalid group type. Must be one of: {', '.join(GROUP_TYPES)}")
    color = clean_str(payload.get("color"))
    if color and not _COLOR_RE.match(color):
        errors.append("Color must be a hex value like #1A2B3C.")
    rules = payload.get("rules")
    if rules is not None and not isinstance(rules, dict):
        errors.append("rules must be a JSON object.")
    elif rules:
        if rules.get("type") and rules["type"] not in ASSET_TYPES:
            errors.append("rules.type is not a valid asset type.")
        if rules.get("criticality") and rules["criticality"] not in CRITICALITY_LEVELS:
            errors.append("rules.criticality is not a valid criticality.")
        if "tags" in rules and not isinstance(rules["tags"], list):
            errors.append("rules.tags must be a list of tag names.")
        must_contact = rules.get("must_contact")
        if must_contact not in (None, "") and not isinstance(must_contact, bool):
            if str(must_contact).strip().lower() not in _RULE_BOOL_WORDS:
                errors.append("rules.must_contact must be true or false.")
    return errors


def get_group(s: "Session", org: "Organization", group_id: int) -> AssetGroup:
    group = s.get(AssetGroup, group_id)
    if group is None or group.organization_id != org.id:
        raise NotFoundError("Asset group")
    return group


def _group_name_taken(s: "Session", org: "Organization", name: str, exclude_id: int | None = None) -> bool:
    q = s.query(AssetGroup.id).filter(AssetGroup.organization_id == org.id, func.lower(AssetGroup.name) == name.lower())
    if exclude_id is not None:
        q = q.filter(AssetGroup.id != exclude_id)
    return q.first() is not None


def refresh_member_count(s: "Session", group: AssetGroup | None) -> None:
    if group is None:
        return
    s.flush()
    group.member_count = (
        s.query(func.count(AssetGroupMember.id)).filter(AssetGroupMember.asset_group_id == group.id).scalar() or 0
    )


def group_path(s: "Session", org: "Organization", group: AssetGroup) -> list[AssetGroup]:
    """Root-first breadcrumb ending at ``group``."""
    path: list[AssetGroup] = []
    seen: set[int] = set()
    current: AssetGroup | None = group
    while current is not None and current.id not in seen:
        seen.add(current.id)
        path.insert(0, current)
        current = get_group(s, org, current.parent_group_id) if current.parent_group_id else None
    return path


def _resolve_parent(s: "Session", org: "Organization", raw: Any, group: AssetGroup | None = None) -> int | None:
    parent_id = parse_int(raw, field="parent_group_id")
    if parent_id is None:
        return None
    parent = get_group(s, org, parent_id)
    if group is not None and any(g.id == group.id for g in group_path(s, org, parent)):
        raise ValidationError("A group cannot be nested under itself or one of its descendants.")
    return parent.id


def create_group(s: "Session", org: "Organization", payload: dict, user: "User") -> AssetGroup:
    errors = validate_group_payload(payload)
    if errors:
        raise ValidationError(errors)
    name = clean_str(payload.get("name"))
    if _group_name_taken(s, org, name):
        raise ConflictError(f"Group '{name}' already exists.")
    group_type = clean_str(payload.get("type")) or "custom"
    is_dynamic = bool(parse_bool(payload.get("is_dynamic"))) or group_type == "dynamic"
    group = AssetGroup(
        organization_id=org.id,
        name=name,
        description=clean_str(payload.get("description")),
        type=group_type,
        parent_group_id=_resolve_parent(s, org, payload.get("parent_group_id")),
        rules=_normalize_rules(payload.get("rules")),
        is_dynamic=is_dynamic,
        icon=clean_str(payload.get("icon")),
        color=clean_str(payload.get("color")),
        sort_order=parse_int(payload.get("sort_order"), field="sort_order") or 0,
    )
    s.add(group)
    s.flush()
    if group.is_dynamic and group.rules:
        apply_dynamic_rules(s, org, group, user, audit=False)
    record_event(
        s,
        actor=user,
        action="asset.group_create",
        entity_type="AssetGroup",
        entity_id=str(group.id),
        metadata={"name": group.name, "type": group.type, "dynamic": group.is_dynamic},
        organization_id=org.id,
    )
    return group


def update_group(s: "Session", org: "Organization", group: AssetGroup, payload: dict, user: "User") -> AssetGroup:
    errors = validate_group_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    name = clean_str(payload.get("name"))
    if name and name != group.name:
        if _group_name_taken(s, org, name, exclude_id=group.id):
            raise ConflictError(f"Group '{name}' already exists.")
        group.name = name
    for field in ("description", "icon", "color"):
        if field in payload:
            setattr(group, field, clean_str(payload.get(field)))
    if clean_str(payload.get("type")):
        group.type = clean_str(payload.get("type"))
    if "parent_group_id" in payload:
        group.parent_group_id = _resolve_parent(s, org, payload.get("parent_group_id"), group)
    if "rules" in payload:
        group.rules = _normalize_rules(payload.get("rules"))
    is_dynamic = parse_bool(payload.get("is_dynamic"))
    if is_dynamic is not None:
        group.is_dynamic = is_dynamic
    if "sort_order" in payload:
        group.sort_order = parse_int(payload.get("sort_order"), field="sort_order") or 0
    group.updated_at = utcnow()
    if group.is_dynamic and group.rules and ("rules" in payload or is_dynamic):
        apply_dynamic_rules(s, org, group, user, audit=False)
    record_event(
        s,
        actor=user,
        action="asset.group_update",
        entity_type="AssetGroup",
        entity_id=str(group.id),
        metadata={"fields": sorted(k for k in payload if k != "csrf_token")},
        organization_id=org.id,
    )
    return group


def delete_group(s: "Session", org: "Organization", group: AssetGroup, user: "User") -> None:
    """Children move up to the deleted group's parent; memberships go with the group."""
    children = s.query(AssetGroup).filter(AssetGroup.parent_group_id == group.id).all()
    for child in children:
        child.parent_group_id = group.parent_group_id
    s.query(AssetGroupMember).filter(AssetGroupMember.asset_group_id == group.id).delete(synchronize_session=False)
    record_event(
        s,
        actor=user,
        action="asset.group_delete",
        entity_type="AssetGroup",
        entity_id=str(group.id),
        metadata={"name": group.name, "reparented_children": [c.id for c in children]},
        organization_id=org.id,
    )
    s.flush()
    s.delete(group)


def group_tree(s: "Session", org: "Organization") -> list[dict]:
    groups = (
        s.query(AssetGroup)
        .filter(AssetGroup.organization_id == org.id)
        .order_by(AssetGroup.sort_order.asc(), AssetGroup.name.asc())
        .all()
    )
    nodes = {g.id: dict(g.to_dict(), children=[]) for g in groups}
    roots = []
    for g in groups:
        node = nodes[g.id]
        parent = nodes.get(g.parent_group_id) if g.parent_group_id else None
        if parent is None:
            roots.append(node)
        else:
            parent["children"].append(node)
    return roots


def move_assets(
    s: "Session",
    org: "Organization",
    asset_ids: list[Any],
    from_group: AssetGroup | None,
    to_group: AssetGroup,
    user: "User",
) -> int:
    assets = _assets_by_ids(s, org, asset_ids)
    if to_group.is_dynamic or (from_group is not None and from_group.is_dynamic):
        raise ConflictError("Dynamic group membership is managed by its rules.")
    ids = [a.id for a in assets]
    if from_group is not None:
        s.query(AssetGroupMember).filter(
            AssetGroupMember.asset_group_id == from_group.id,
            AssetGroupMember.asset_id.in_(ids),
        ).delete(synchronize_session=False)
        refresh_member_count(s, from_group)
    moved = _add_members(s, to_group, ids, user)
    record_event(
        s,
        actor=user,
        action="asset.group_move",
        entity_type="AssetGroup",
        entity_id=str(to_group.id),
        metadata={"asset_ids": ids, "from": from_group.id if from_group else None, "to": to_group.id},
        organization_id=org.id,
    )
    return moved


def apply_dynamic_rules(s: "Session", org: "Organization", group: AssetGroup, user: "User | None", *, audit: bool = True) -> int:
    """
    Rebuild membership from rules: type, criticality, location (substring),
    must_contact, and tags (asset must carry every listed tag name).
    """
    if not group.is_dynamic:
        raise ConflictError("Only dynamic groups have rules to apply.")
    rules = group.rules or {}
    q = s.query(Asset.id).filter(Asset.organization_id == org.id, Asset.deleted_at.is_(None))
    if rules.get("type"):
        q = q.filter(Asset.type == rules["type"])
    if rules.get("criticality"):
        q = q.filter(Asset.criticality == rules["criticality"])
    if rules.get("location"):
        q = q.filter(Asset.location.ilike(f"%{rules['location']}%"))
    must_contact = parse_bool(rules.get("must_contact"))
    if must_contact is not None:
        q = q.filter(Asset.must_contact.is_(must_contact))
    matching = {aid for (aid,) in q.all()}
    for tag_name in rules.get("tags") or []:
        matching &= set(entity_ids_with_tag(s, org, "asset", str(tag_name)))

    s.query(AssetGroupMember).filter(AssetGroupMember.asset_group_id == group.id).delete(synchronize_session=False)
    for aid in sorted(matching):
        s.add(AssetGroupMember(asset_group_id=group.id, asset_id=aid, added_by_user_id=user.id if user else None))
    refresh_member_count(s, group)
    if audit:
        record_event(
            s,
            actor=user,
            action="asset.group_rules_apply",
            entity_type="AssetGroup",
            entity_id=str(group.id),
            metadata={"rules": rules, "members": len(matching)},
            organization_id=org.id,
        )
    return len(matching)
