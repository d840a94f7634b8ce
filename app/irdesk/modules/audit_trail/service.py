from __future__ import annotations

import csv
import io
import json
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import or_
from sqlalchemy.orm import Query

from app.irdesk.audit import CATEGORIES, SEVERITIES
from app.irdesk.errors import ValidationError
from app.irdesk.models import AuditEvent
from app.irdesk.utils import clean_str, parse_date, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

EXPORT_COLUMNS = (
    "id",
    "timestamp",
    "organizationId",
    "userEmail",
    "action",
    "category",
    "severity",
    "entityType",
    "entityId",
    "reason",
    "ipAddress",
)


def filtered_events(s: "Session", args, *, organization_id: int | None = None) -> Query:
    """
    Newest-first audit query. ``args`` is a mapping of query-string filters:
    category, severity, from, to (YYYY-MM-DD, inclusive), q, action, user_id.
    """
    q = s.query(AuditEvent)
    if organization_id is not None:
        q = q.filter(AuditEvent.organization_id == organization_id)

    category = clean_str(args.get("category"))
    if category:
        if category not in CATEGORIES:
            raise ValidationError(f"Invalid category. Must be one of: {', '.join(CATEGORIES)}")
        q = q.filter(AuditEvent.category == category)

    severity = clean_str(args.get("severity"))
    if severity:
        if severity not in SEVERITIES:
            raise ValidationError(f"Invalid severity. Must be one of: {', '.join(SEVERITIES)}")
        q = q.filter(AuditEvent.severity == severity)

    action = clean_str(args.get("action"))
    if action:
        q = q.filter(AuditEvent.action == action)

    user_id = parse_int(args.get("user_id"), field="user_id")
    if user_id is not None:
        q = q.filter(AuditEvent.actor_user_id == user_id)

    start = parse_date(args.get("from"))
    if start:
        q = q.filter(AuditEvent.created_at >= start)
    end = parse_date(args.get("to"))
    if end:
        q = q.filter(AuditEvent.created_at < end + timedelta(days=1))

    search = clean_str(args.get("q"))
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                AuditEvent.action.ilike(like),
                AuditEvent.actor_user_email.ilike(like),
                AuditEvent.entity_type.ilike(like),
                AuditEvent.reason.ilike(like),
            )
        )
    return q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())


def export_events(events: list[AuditEvent], fmt: str) -> tuple[str, str]:
    """Returns (body, mimetype)."""
    rows = [e.to_dict() for e in events]
    if fmt == "json":
        return json.dumps(rows, indent=2, default=str), "application/json"
    if fmt != "csv":
        raise ValidationError("format must be csv or json.")
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue(), "text/csv"
