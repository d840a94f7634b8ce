from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.irdesk.models import AuditEvent
from app.irdesk.modules.assets.service import asset_statistics
from app.irdesk.modules.incidents.models import Incident
from app.irdesk.modules.incidents.service import incident_counts
from app.irdesk.modules.licensing.service import quota_summary
from app.irdesk.modules.runbooks.models import RunbookExecution
from app.irdesk.modules.runbooks.service import ACTIVE_EXECUTION_STATUSES
from app.irdesk.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.irdesk.modules.organizations.models import Organization

# Statuses counted as "open" on the dashboard.
OPEN_INCIDENT_STATUSES = ("open", "contained", "eradicated", "recovered")
RECENT_INCIDENTS = 5
RECENT_EVENTS = 10


def incident_summary(s: "Session", org: "Organization") -> dict[str, Any]:
    counts = incident_counts(s, org)
    recent = (
        s.query(Incident)
        .filter(Incident.organization_id == org.id)
        .order_by(Incident.created_at.desc(), Incident.id.desc())
        .limit(RECENT_INCIDENTS)
        .all()
    )
    return {
        "total": sum(counts["byStatus"].values()),
        "open": sum(counts["byStatus"][k] for k in OPEN_INCIDENT_STATUSES),
        "critical": (
            s.query(func.count(Incident.id))
            .filter(
                Incident.organization_id == org.id,
                Incident.severity == "critical",
                Incident.status.in_(OPEN_INCIDENT_STATUSES),
            )
            .scalar()
            or 0
        ),
        "byStatus": counts["byStatus"],
        "bySeverity": counts["bySeverity"],
        "recent": [i.to_dict() for i in recent],
    }


def runbook_activity(s: "Session", org: "Organization", *, now: datetime | None = None) -> dict[str, int]:
    now = now or utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    base = RunbookExecution.organization_id == org.id
    active = s.query(func.count(RunbookExecution.id)).filter(base, RunbookExecution.status.in_(ACTIVE_EXECUTION_STATUSES)).scalar()
    completed = (
        s.query(func.count(RunbookExecution.id))
        .filter(base, RunbookExecution.status == "completed", RunbookExecution.completed_at >= month_start)
        .scalar()
    )
    return {"activeExecutions": int(active or 0), "completedThisMonth": int(completed or 0)}


def recent_activity(s: "Session", org: "Organization", limit: int = RECENT_EVENTS) -> list[dict]:
    events = (
        s.query(AuditEvent)
        .filter(AuditEvent.organization_id == org.id)
        .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        .limit(limit)
        .all()
    )
    return [e.to_dict() for e in events]


def dashboard_summary(s: "Session", org: "Organization", *, now: datetime | None = None) -> dict[str, Any]:
    quotas = quota_summary(s, org)
    return {
        "organization": {"id": org.id, "name": org.name, "licenseType": org.license_type, "status": org.status},
        "incidents": incident_summary(s, org),
        "assets": asset_statistics(s, org),
        "runbooks": runbook_activity(s, org, now=now),
        "teamActivity": recent_activity(s, org),
        "quotaWarnings": quotas["warnings"],
        "generatedAt": (now or utcnow()).isoformat(),
    }
