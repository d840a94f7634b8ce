"""Tests for the organization dashboard summary."""
from datetime import datetime

from app.irdesk.db import session_scope
from app.irdesk.modules.dashboard.service import runbook_activity
from app.irdesk.modules.organizations.models import Organization
from app.irdesk.modules.runbooks.models import Runbook, RunbookExecution


def test_empty_dashboard(owner_client):
    r = owner_client.get("/api/dashboard")
    assert r.status_code == 200
    data = r.json
    assert data["organization"]["name"] == "Acme Corp"
    assert data["organization"]["licenseType"] == "starter"
    assert data["incidents"]["total"] == 0
    assert data["assets"]["total"] == 0
    assert data["runbooks"] == {"activeExecutions": 0, "completedThisMonth": 0}
    assert data["quotaWarnings"] == []


def test_dashboard_counts(owner_client):
    for title, severity in (("Wiper on DC", "critical"), ("Spam wave", "low"), ("Old thing", "critical")):
        owner_client.post("/api/incidents", json={"title": title, "classification": "other", "severity": severity})
    old = owner_client.get("/api/incidents?q=Old").json["incidents"][0]
    owner_client.post(f"/api/incidents/{old['id']}/status", json={"status": "closed"})
    owner_client.post("/api/assets", json={"name": "DC01", "type": "hardware", "criticality": "critical"})

    data = owner_client.get("/api/dashboard").json
    assert data["incidents"]["total"] == 3
    assert data["incidents"]["open"] == 2
    assert data["incidents"]["critical"] == 1
    assert data["incidents"]["byStatus"]["closed"] == 1
    assert data["incidents"]["recent"][0]["title"] == "Old thing"
    assert data["assets"]["total"] == 1
    assert data["assets"]["byCriticality"] == {"critical": 1}
    assert any(e["action"] == "incident.create" for e in data["teamActivity"])


def test_quota_warnings(owner_client, add_member):
    for i in range(4):
        add_member(owner_client.org_id, f"user{i}@acme.test")
    warnings = owner_client.get("/api/dashboard").json["quotaWarnings"]
    assert warnings == [{"resource": "users", "percentage": 100, "message": "users usage is at 100%"}]


def test_runbook_activity_uses_calendar_month(app, make_org):
    org_id, owner_id = make_org()
    with session_scope(app) as s:
        rb = Runbook(organization_id=org_id, title="R", created_by_user_id=owner_id)
        s.add(rb)
        s.flush()
        for status, completed_at in (
            ("completed", datetime(2026, 4, 2)),
            ("completed", datetime(2026, 3, 30)),
            ("in_progress", None),
            ("paused", None),
        ):
            s.add(
                RunbookExecution(
                    runbook_id=rb.id,
                    organization_id=org_id,
                    executor_user_id=owner_id,
                    status=status,
                    started_at=datetime(2026, 3, 29),
                    completed_at=completed_at,
                    total_steps=1,
                    completed_steps=0,
                )
            )
    with session_scope(app) as s:
        org = s.get(Organization, org_id)
        assert runbook_activity(s, org, now=datetime(2026, 4, 15)) == {"activeExecutions": 2, "completedThisMonth": 1}


def test_viewer_sees_dashboard(owner_client, add_member, login):
    add_member(owner_client.org_id, "vic@acme.test", role="viewer")
    assert login("vic@acme.test").get("/api/dashboard").status_code == 200
