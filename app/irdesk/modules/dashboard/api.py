from __future__ import annotations

from flask import Blueprint

from app.irdesk.db import db_session
from app.irdesk.modules.dashboard.service import dashboard_summary
from app.irdesk.rbac import require_permission
from app.irdesk.tenancy import current_organization

bp = Blueprint("dashboard", __name__)


@bp.get("")
@require_permission("dashboard.view")
def dashboard_get():
    s = db_session()
    data = dashboard_summary(s, current_organization())
    # Limits may be created lazily on first read.
    s.commit()
    return data
