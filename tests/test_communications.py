"""Tests for communication templates, variable resolution and the send log."""
import json

from app.irdesk.db import session_scope
from app.irdesk.modules.communications.service import seed_global_templates
from app.irdesk.modules.communications.variables import extract_variables, replace_variables


def _template(c, **extra):
    body = {
        "title": "Exec update",
        "category": "internal",
        "subject": "{{incident.referenceNumber}} update",
        "content": "Hi all, {{organization.name}} is handling {{incident.title}}. {{user.name}}",
    }
    body.update(extra)
    r = c.post("/api/communications/templates", json=body)
    assert r.status_code == 201, r.json
    return r.json


def test_extract_and_replace_variables():
    text = "{{ incident.title }} / {{incident.title}} / {{bogus}} / {{user.name}}"
    assert extract_variables(text) == ["incident.title", "user.name"]

    rendered, missing = replace_variables(text, {"incident": {"title": "Outage"}, "user": {}}, {"user.name": "Sam"})
    assert rendered == "Outage / Outage / {{bogus}} / Sam"
    assert missing == []

    _, missing = replace_variables("{{user.name}}", {"user": {"name": ""}})
    assert missing == ["user.name"]


def test_template_validation(owner_client):
    r = owner_client.post("/api/communications/templates", json={"category": "press"})
    assert r.status_code == 400
    assert r.json["errors"] == [
        "Title is required.",
        "Invalid category. Must be one of: internal, customer, regulatory, media, vendor, other",
        "Content is required.",
    ]


def test_edits_are_versioned(owner_client):
    t = _template(owner_client)
    assert t["version"] == 1
    assert t["isGlobal"] is False

    r = owner_client.put(f"/api/communications/templates/{t['id']}", json={"tags": ["exec"]})
    assert r.json["version"] == 1

    r = owner_client.put(
        f"/api/communications/templates/{t['id']}",
        json={"content": "Short update: {{incident.status}}", "change_note": "Trimmed"},
    )
    assert r.json["version"] == 2

    versions = owner_client.get(f"/api/communications/templates/{t['id']}/versions").json
    assert versions["currentVersion"] == 2
    assert [v["version"] for v in versions["versions"]] == [2, 1]
    assert versions["versions"][0]["changeNote"] == "Trimmed"


def test_global_templates_are_read_only_but_cloneable(app, owner_client):
    with session_scope(app) as s:
        assert seed_global_templates(s, None) == 3
    with session_scope(app) as s:
        assert seed_global_templates(s, None) == 0

    listed = owner_client.get("/api/communications/templates?category=regulatory").json["templates"]
    assert len(listed) == 1 and listed[0]["isGlobal"] is True
    global_id = listed[0]["id"]

    r = owner_client.put(f"/api/communications/templates/{global_id}", json={"title": "Mine now"})
    assert r.status_code == 403
    assert r.json["error"] == "READ_ONLY"

    r = owner_client.post(f"/api/communications/templates/{global_id}/clone")
    assert r.status_code == 201
    assert r.json["title"] == "Regulatory Notification (Copy)"
    assert r.json["organizationId"] == owner_client.org_id
    assert r.json["isDefault"] is False

    own = owner_client.get("/api/communications/templates?include_global=false").json
    assert own["totalCount"] == 1


def test_preview_uses_real_records(owner_client):
    incident = owner_client.post(
        "/api/incidents", json={"title": "VPN compromise", "classification": "malware", "severity": "high"}
    ).json
    t = _template(owner_client)

    r = owner_client.post(f"/api/communications/templates/{t['id']}/preview", json={"incident_id": incident["id"]})
    assert r.status_code == 200
    assert r.json["processedContent"] == "Hi all, Acme Corp is handling VPN compromise. Olivia Owner"
    assert r.json["processedSubject"] == f"{incident['referenceNumber']} update"
    assert r.json["missingVariables"] == []

    r = owner_client.post(
        "/api/communications/variables",
        json={"template": "{{incident.title}} for {{organization.name}}"},
    )
    assert r.json["processedContent"] == "{{incident.title}} for Acme Corp"
    assert r.json["missingVariables"] == ["incident.title"]

    assert owner_client.post("/api/communications/variables", json={"template": " "}).status_code == 400
    assert "incident" in owner_client.get("/api/communications/variables").json["categories"]


def test_send_logs_rendered_content(app, owner_client):
    incident = owner_client.post(
        "/api/incidents", json={"title": "Lost laptop", "classification": "data_breach", "severity": "medium"}
    ).json
    t = _template(owner_client)

    r = owner_client.post(
        "/api/communications/send",
        json={"template_id": t["id"], "method": "email", "recipients": ["ciso@acme.test", "nope"]},
    )
    assert r.status_code == 400
    assert r.json["errors"] == ["Invalid email recipient: nope"]

    r = owner_client.post(
        "/api/communications/send",
        json={
            "template_id": t["id"],
            "method": "email",
            "recipients": ["ciso@acme.test"],
            "incident_id": incident["id"],
        },
    )
    assert r.status_code == 201
    log = r.json["log"]
    assert log["content"] == "Hi all, Acme Corp is handling Lost laptop. Olivia Owner"
    assert log["incidentId"] == incident["id"]

    logs = owner_client.get(f"/api/communications/logs?incident_id={incident['id']}").json
    assert logs["totalCount"] == 1
    assert owner_client.get("/api/communications/logs?method=pigeon").status_code == 400

    from app.irdesk.models import AuditEvent

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "communication.send").one()
        assert json.loads(ev.metadata_json)["recipient_count"] == 1


def test_viewer_cannot_send(owner_client, add_member, login):
    t = _template(owner_client)
    add_member(owner_client.org_id, "vera@acme.test", role="viewer")
    c = login("vera@acme.test")
    assert c.get(f"/api/communications/templates/{t['id']}").status_code == 200
    r = c.post("/api/communications/send", json={"template_id": t["id"], "method": "manual", "recipients": ["x"]})
    assert r.status_code == 403
