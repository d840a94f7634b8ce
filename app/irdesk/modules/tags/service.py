from __future__ import annotations

import re
from typing import TYPE_CHECKING

from sqlalchemy import func, or_

from app.irdesk.audit import record_event
from app.irdesk.errors import ConflictError, NotFoundError, ValidationError
from app.irdesk.modules.tags.models import (
    DEFAULT_TAG_COLOR,
    TAG_CATEGORIES,
    TAGGABLE_TYPES,
    Tag,
    Taggable,
    TagPolicy,
)
from app.irdesk.utils import clean_str, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.irdesk.models import User
    from app.irdesk.modules.organizations.models import Organization

_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


def validate_tag_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    name = clean_str(payload.get("name"))
    if not partial and not name:
        errors.append("Tag name is required.")
    if name and len(name) > 50:
        errors.append("Tag name must be 50 characters or fewer.")
    category = clean_str(payload.get("category"))
    if category and category not in TAG_CATEGORIES:
        errors.append(f"Invalid category. Must be one of: {', '.join(TAG_CATEGORIES)}")
    color = clean_str(payload.get("color"))
    if color and not _COLOR_RE.match(color):
        errors.append("Color must be a hex value like #1A2B3C.")
    return errors


def _check_entity_type(entity_type: str) -> None:
    if entity_type not in TAGGABLE_TYPES:
        raise ValidationError(f"Invalid entity type. Must be one of: {', '.join(TAGGABLE_TYPES)}")


def list_tags(s: "Session", org: "Organization", *, category: str | None = None, q: str | None = None) -> list[Tag]:
    query = s.query(Tag).filter(Tag.organization_id == org.id)
    if category:
        query = query.filter(Tag.category == category)
    if q:
        like = f"%{q}%"
        query = query.filter(or_(Tag.name.ilike(like), Tag.description.ilike(like)))
    return query.order_by(Tag.category.asc(), Tag.name.asc()).all()


def get_tag(s: "Session", org: "Organization", tag_id: int) -> Tag:
    tag = s.get(Tag, tag_id)
    if tag is None or tag.organization_id != org.id:
        raise NotFoundError("Tag")
    return tag


def _name_taken(s: "Session", org: "Organization", name: str, exclude_id: int | None = None) -> bool:
    q = s.query(Tag.id).filter(Tag.organization_id == org.id, func.lower(Tag.name) == name.lower())
    if exclude_id is not None:
        q = q.filter(Tag.id != exclude_id)
    return q.first() is not None


def create_tag(s: "Session", org: "Organization", payload: dict, user: "User | None", *, is_system: bool = False) -> Tag:
    errors = validate_tag_payload(payload)
    if errors:
        raise ValidationError(errors)
    name = clean_str(payload.get("name"))
    if _name_taken(s, org, name):
        raise ConflictError(f"Tag '{name}' already exists.")
    tag = Tag(
        organization_id=org.id,
        name=name,
        category=clean_str(payload.get("category")) or "custom",
        color=clean_str(payload.get("color")) or DEFAULT_TAG_COLOR,
        description=clean_str(payload.get("description")),
        is_system=is_system,
        created_by_user_id=user.id if user else None,
    )
    s.add(tag)
    s.flush()
    record_event(
        s,
        actor=user,
        action="tag.create",
        entity_type="Tag",
        entity_id=str(tag.id),
        metadata={"name": tag.name, "category": tag.category},
        organization_id=org.id,
    )
    return tag


def update_tag(s: "Session", org: "Organization", tag: Tag, payload: dict, user: "User") -> Tag:
    errors = validate_tag_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    changes = {}
    name = clean_str(payload.get("name"))
    if name and name != tag.name:
        if tag.is_system:
            raise ConflictError("System tags cannot be renamed.")
        if _name_taken(s, org, name, exclude_id=tag.id):
            raise ConflictError(f"Tag '{name}' already exists.")
        changes["name"] = {"old": tag.name, "new": name}
        tag.name = name
    for field in ("category", "color", "description"):
        if field in payload:
            new = clean_str(payload.get(field))
            if field != "description" and not new:
                continue
            if new != getattr(tag, field):
                changes[field] = {"old": getattr(tag, field), "new": new}
                setattr(tag, field, new)
    tag.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="tag.update",
        entity_type="Tag",
        entity_id=str(tag.id),
        metadata={"changes": changes},
        organization_id=org.id,
    )
    return tag


def delete_tag(s: "Session", org: "Organization", tag: Tag, user: "User") -> None:
    if tag.is_system:
        raise ConflictError("System tags cannot be deleted.")
    s.query(Taggable).filter(Taggable.tag_id == tag.id).delete(synchronize_session=False)
    record_event(
        s,
        actor=user,
        action="tag.delete",
        entity_type="Tag",
        entity_id=str(tag.id),
        metadata={"name": tag.name},
        organization_id=org.id,
    )
    s.delete(tag)


# ---------- Tagging ----------
def tag_entity(s: "Session", org: "Organization", tag: Tag, entity_type: str, entity_id: int) -> bool:
    """Returns False when the entity already carries the tag."""
    _check_entity_type(entity_type)
    exists = (
        s.query(Taggable.id)
        .filter(Taggable.tag_id == tag.id, Taggable.taggable_type == entity_type, Taggable.taggable_id == entity_id)
        .first()
    )
    if exists:
        return False
    s.add(Taggable(tag_id=tag.id, taggable_type=entity_type, taggable_id=entity_id, organization_id=org.id))
    tag.usage_count = (tag.usage_count or 0) + 1
    s.flush()
    return True


def untag_entity(s: "Session", org: "Organization", tag: Tag, entity_type: str, entity_id: int) -> bool:
    _check_entity_type(entity_type)
    link = (
        s.query(Taggable)
        .filter(
            Taggable.tag_id == tag.id,
            Taggable.taggable_type == entity_type,
            Taggable.taggable_id == entity_id,
            Taggable.organization_id == org.id,
        )
        .one_or_none()
    )
    if link is None:
        return False
    s.delete(link)
    tag.usage_count = max((tag.usage_count or 0) - 1, 0)
    s.flush()
    return True


def set_entity_tags(s: "Session", org: "Organization", entity_type: str, entity_id: int, tag_ids: list[int]) -> list[Tag]:
    """Make the entity's tags exactly ``tag_ids``."""
    try:
        wanted = {int(t) for t in tag_ids}
    except (TypeError, ValueError) as e:
        raise ValidationError("tag_ids must be integers.") from e
    current = {t.id: t for t in tags_for_entity(s, org, entity_type, entity_id)}
    for tag_id in set(current) - wanted:
        untag_entity(s, org, current[tag_id], entity_type, entity_id)
    for tag_id in wanted - set(current):
        tag_entity(s, org, get_tag(s, org, tag_id), entity_type, entity_id)
    return tags_for_entity(s, org, entity_type, entity_id)


def clear_entity_tags(s: "Session", org: "Organization", entity_type: str, entity_id: int) -> None:
    for tag in tags_for_entity(s, org, entity_type, entity_id):
        untag_entity(s, org, tag, entity_type, entity_id)


def tags_for_entity(s: "Session", org: "Organization", entity_type: str, entity_id: int) -> list[Tag]:
    _check_entity_type(entity_type)
    return (
        s.query(Tag)
        .join(Taggable, Taggable.tag_id == Tag.id)
        .filter(
            Taggable.taggable_type == entity_type,
            Taggable.taggable_id == entity_id,
            Taggable.organization_id == org.id,
        )
        .order_by(Tag.name.asc())
        .all()
    )


def tags_for_entities(s: "Session", org: "Organization", entity_type: str, entity_ids: list[int]) -> dict[int, list[Tag]]:
    """Batch variant for list endpoints."""
    out: dict[int, list[Tag]] = {i: [] for i in entity_ids}
    if not entity_ids:
        return out
    rows = (
        s.query(Taggable.taggable_id, Tag)
        .join(Tag, Taggable.tag_id == Tag.id)
        .filter(
            Taggable.taggable_type == entity_type,
            Taggable.taggable_id.in_(entity_ids),
            Taggable.organization_id == org.id,
        )
        .order_by(Tag.name.asc())
        .all()
    )
    for entity_id, tag in rows:
        out[entity_id].append(tag)
    return out


def entity_ids_with_tag(s: "Session", org: "Organization", entity_type: str, tag_ref: str) -> list[int]:
    """``tag_ref`` may be a tag id or a tag name."""
    q = s.query(Taggable.taggable_id).join(Tag, Taggable.tag_id == Tag.id).filter(
        Taggable.taggable_type == entity_type,
        Taggable.organization_id == org.id,
    )
    if str(tag_ref).isdigit():
        q = q.filter(Tag.id == int(tag_ref))
    else:
        q = q.filter(func.lower(Tag.name) == str(tag_ref).lower())
    return [r[0] for r in q.all()]


# ---------- Reporting ----------
def popular_tags(s: "Session", org: "Organization", limit: int = 10) -> list[Tag]:
    return (
        s.query(Tag)
        .filter(Tag.organization_id == org.id)
        .order_by(Tag.usage_count.desc(), Tag.name.asc())
        .limit(limit)
        .all()
    )


def tag_statistics(s: "Session", org: "Organization") -> dict:
    total = s.query(func.count(Tag.id)).filter(Tag.organization_id == org.id).scalar() or 0
    taggings = s.query(func.count(Taggable.id)).filter(Taggable.organization_id == org.id).scalar() or 0
    by_category = (
        s.query(Tag.category, func.count(Tag.id))
        .filter(Tag.organization_id == org.id)
        .group_by(Tag.category)
        .all()
    )
    by_entity = (
        s.query(Taggable.taggable_type, func.count(Taggable.id))
        .filter(Taggable.organization_id == org.id)
        .group_by(Taggable.taggable_type)
        .all()
    )
    unused = s.query(Tag).filter(Tag.organization_id == org.id, Tag.usage_count == 0).order_by(Tag.name.asc()).all()
    return {
        "total": int(total),
        "totalTaggings": int(taggings),
        "byCategory": [{"category": c, "count": int(n)} for c, n in by_category],
        "byEntityType": [{"entityType": t, "count": int(n)} for t, n in by_entity],
        "unused": [t.to_dict() for t in unused],
        "popular": [t.to_dict() for t in popular_tags(s, org, 5)],
    }


def merge_tags(s: "Session", org: "Organization", source_ids: list[int], target: Tag, user: "User") -> Tag:
    """
    Re-point every tagging of the sources at ``target``, drop links the target
    already had, then delete the sources.
    """
    sources = [get_tag(s, org, i) for i in dict.fromkeys(source_ids) if i != target.id]
    if not sources:
        raise ValidationError("At least one source tag different from the target is required.")
    for src in sources:
        if src.is_system:
            raise ConflictError(f"System tag '{src.name}' cannot be merged away.")
    merged = 0
    for src in sources:
        for link in s.query(Taggable).filter(Taggable.tag_id == src.id).all():
            duplicate = (
                s.query(Taggable.id)
                .filter(
                    Taggable.tag_id == target.id,
                    Taggable.taggable_type == link.taggable_type,
                    Taggable.taggable_id == link.taggable_id,
                )
                .first()
            )
            if duplicate:
                s.delete(link)
            else:
                link.tag_id = target.id
                merged += 1
        s.flush()
        s.delete(src)
    s.flush()
    target.usage_count = s.query(func.count(Taggable.id)).filter(Taggable.tag_id == target.id).scalar() or 0
    record_event(
        s,
        actor=user,
        action="tag.merge",
        entity_type="Tag",
        entity_id=str(target.id),
        metadata={"sources": [t.name for t in sources], "moved": merged},
        organization_id=org.id,
    )
    return target


# ---------- Policies ----------
def create_policy(s: "Session", org: "Organization", payload: dict, user: "User") -> TagPolicy:
    entity_type = clean_str(payload.get("entity_type") or payload.get("entityType"))
    required = payload.get("required_tags") or payload.get("requiredTags") or []
    errors = []
    if entity_type not in TAGGABLE_TYPES:
        errors.append(f"Invalid entity type. Must be one of: {', '.join(TAGGABLE_TYPES)}")
    if not isinstance(required, list) or not required:
        errors.append("required_tags must be a non-empty list of tag categories.")
    elif any(c not in TAG_CATEGORIES for c in required):
        errors.append(f"Required tag categories must be among: {', '.join(TAG_CATEGORIES)}")
    if errors:
        raise ValidationError(errors)
    is_active = payload.get("is_active", payload.get("isActive", True))
    policy = TagPolicy(
        organization_id=org.id,
        entity_type=entity_type,
        required_tags=sorted(set(required)),
        is_active=bool(is_active),
    )
    s.add(policy)
    s.flush()
    record_event(
        s,
        actor=user,
        action="tag.policy_create",
        entity_type="TagPolicy",
        entity_id=str(policy.id),
        metadata={"entity_type": entity_type, "required_tags": policy.required_tags},
        organization_id=org.id,
    )
    return policy


def check_policy_compliance(s: "Session", org: "Organization", entity_type: str, entity_id: int) -> dict:
    """Missing required categories across all active policies for the entity type."""
    _check_entity_type(entity_type)
    policies = (
        s.query(TagPolicy)
        .filter(TagPolicy.organization_id == org.id, TagPolicy.entity_type == entity_type, TagPolicy.is_active.is_(True))
        .all()
    )
    required = sorted({c for p in policies for c in (p.required_tags or [])})
    present = {t.category for t in tags_for_entity(s, org, entity_type, entity_id)}
    missing = [c for c in required if c not in present]
    return {"compliant": not missing, "requiredCategories": required, "missingCategories": missing}


def effective_tags(s: "Session", org: "Organization", entity_type: str | None = None) -> list[dict]:
    """Organization tags plus suggestions from active default tag sets not yet present."""
    from app.irdesk.modules.content.models import DefaultTagSet

    result = [dict(t.to_dict(), source="organization") for t in list_tags(s, org)]
    seen = {t["name"].lower() for t in result}
    sets = s.query(DefaultTagSet).filter(DefaultTagSet.is_active.is_(True)).order_by(DefaultTagSet.name.asc()).all()
    for tag_set in sets:
        if entity_type and tag_set.entity_types and entity_type not in tag_set.entity_types:
            continue
        for entry in tag_set.tag_set or []:
            name = (entry.get("name") or "").strip()
            if not name or name.lower() in seen:
                continue
            seen.add(name.lower())
            result.append(
                {
                    "id": None,
                    "name": name,
                    "category": entry.get("category") or "custom",
                    "color": entry.get("color") or DEFAULT_TAG_COLOR,
                    "description": entry.get("description"),
                    "isSystem": True,
                    "usageCount": 0,
                    "source": f"default:{tag_set.name}",
                }
            )
    return result


def ensure_entity(s: "Session", org: "Organization", entity_type: str, entity_id: int) -> None:
    """Tagging targets must exist and be visible to the organization."""
    from app.irdesk.modules.assets.models import Asset
    from app.irdesk.modules.communications.models import CommunicationTemplate
    from app.irdesk.modules.exercises.models import TabletopExercise
    from app.irdesk.modules.incidents.models import Incident
    from app.irdesk.modules.runbooks.models import Runbook

    _check_entity_type(entity_type)
    model = {
        "asset": Asset,
        "incident": Incident,
        "runbook": Runbook,
        "communication": CommunicationTemplate,
        "exercise": TabletopExercise,
    }[entity_type]
    obj = s.get(model, entity_id)
    owner = getattr(obj, "organization_id", None) if obj is not None else None
    if obj is None or (owner is not None and owner != org.id) or getattr(obj, "deleted_at", None) is not None:
        raise NotFoundError(entity_type.capitalize())
