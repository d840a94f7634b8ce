import csv
import io

from app.irdesk.audit import categorize_action


def test_categorize_action():
    assert categorize_action("incident.update") == ("Incident", "info")
    assert categorize_action("incident.create") == ("Incident", "warning")
    assert categorize_action("asset.delete") == ("Asset", "warning")
    assert categorize_action("organization.suspend") == ("Organization", "critical")
    assert categorize_action("mystery") == ("Other", "info")


def test_audit_log_is_scoped_and_filterable(make_org, login):
    make_org()
    make_org("Initech", owner_email="owner@initech.test")
    acme = login("owner@acme.test")
    initech = login("owner@initech.test")

    acme.post("/api/incidents", json={"title": "Phish", "classification": "phishing", "severity": "high"})
    initech.post("/api/incidents", json={"title": "DDoS", "classification": "ddos", "severity": "low"})

    r = acme.get("/api/organization/audit?category=Incident")
    assert r.status_code == 200
    logs = r.json["logs"]
    assert [e["action"] for e in logs] == ["incident.create"]
    assert logs[0]["userEmail"] == "owner@acme.test"
    assert logs[0]["metadata"]["severity"] == "high"
    assert "Incident" in r.json["categories"]

    r = acme.get("/api/organization/audit?severity=warning")
    assert all(e["severity"] == "warning" for e in r.json["logs"])

    r = acme.get("/api/organization/audit?q=incident")
    assert r.json["totalCount"] == 1

    assert acme.get("/api/organization/audit?category=Nope").status_code == 400


def test_audit_export(owner_client):
    owner_client.post("/api/incidents", json={"title": "Phish", "classification": "phishing", "severity": "high"})

    r = owner_client.get("/api/organization/audit/export?format=csv")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert "attachment" in r.headers["Content-Disposition"]
    rows = list(csv.DictReader(io.StringIO(r.get_data(as_text=True))))
    assert any(row["action"] == "incident.create" for row in rows)

    r = owner_client.get("/api/organization/audit/export?format=json")
    assert r.mimetype == "application/json"
    assert owner_client.get("/api/organization/audit/export?format=xml").status_code == 400


def test_responders_cannot_read_audit(make_org, add_member, login):
    org_id, _ = make_org()
    add_member(org_id, "resp@acme.test", role="member")
    c = login("resp@acme.test")
    assert c.get("/api/organization/audit").status_code == 403
