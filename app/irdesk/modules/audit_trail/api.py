from __future__ import annotations

from flask import Blueprint, Response, request

from app.irdesk.audit import CATEGORIES, SEVERITIES
from app.irdesk.db import db_session
from app.irdesk.modules.audit_trail.service import export_events, filtered_events
from app.irdesk.modules.licensing.service import feature_required
from app.irdesk.rbac import require_permission
from app.irdesk.tenancy import current_organization
from app.irdesk.utils import page_args, paginate, utcnow

bp = Blueprint("audit_trail", __name__)

EXPORT_LIMIT = 10000


@bp.get("")
@require_permission("audit.view")
@feature_required("auditLogs")
def audit_list():
    s = db_session()
    org = current_organization()
    q = filtered_events(s, request.args, organization_id=org.id)
    page, per_page = page_args()
    data = paginate(q, key="logs", serialize=lambda e: e.to_dict(), page=page, per_page=per_page)
    data["categories"] = list(CATEGORIES)
    data["severities"] = list(SEVERITIES)
    return data


@bp.get("/export")
@require_permission("audit.view")
@feature_required("auditLogs")
def audit_export():
    s = db_session()
    org = current_organization()
    fmt = (request.args.get("format") or "csv").strip().lower()
    events = filtered_events(s, request.args, organization_id=org.id).limit(EXPORT_LIMIT).all()
    body, mimetype = export_events(events, fmt)
    filename = f"audit-log-{utcnow().date().isoformat()}.{fmt}"
    return Response(body, mimetype=mimetype, headers={"Content-Disposition": f'attachment; filename="{filename}"'})
