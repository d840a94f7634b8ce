from __future__ import annotations

from flask import Blueprint

from app.irdesk.db import db_session
from app.irdesk.modules.licensing.features import normalize_license, unavailable_features, upgrade_recommendation
from app.irdesk.modules.licensing.service import (
    check_rate_limit,
    ensure_limits,
    format_storage,
    organization_features,
    quota_summary,
)
from app.irdesk.rbac import require_permission
from app.irdesk.tenancy import current_organization
from app.irdesk.utils import iso

bp = Blueprint("licensing", __name__)


@bp.get("/limits")
@require_permission("organization.view")
def limits_get():
    s = db_session()
    org = current_organization()
    limits = ensure_limits(s, org)
    s.commit()
    data = limits.to_dict()
    data["licenseType"] = normalize_license(org.license_type)
    data["licenseCount"] = org.license_count
    data["features"] = organization_features(org)
    data["unavailableFeatures"] = unavailable_features(org.license_type)
    data["maxStorage"] = format_storage(limits.max_storage_mb)
    return data


@bp.get("/usage")
@require_permission("organization.view")
def usage_get():
    s = db_session()
    org = current_organization()
    summary = quota_summary(s, org)
    rate = check_rate_limit(s, org)
    s.commit()
    summary["rateLimit"] = {
        "current": rate["current"],
        "limit": rate["limit"],
        "remaining": rate["remaining"],
        "resetAt": iso(rate["resetAt"]),
    }
    summary["storage"] = format_storage(summary["usage"]["storageMb"])
    summary["upgrade"] = upgrade_recommendation(org.license_type)
    return summary
