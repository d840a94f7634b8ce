"""Tests for platform dropdowns, default tag sets and the template library."""
from app.irdesk.db import session_scope
from app.irdesk.modules.content.service import seed_default_content


def test_seed_is_idempotent(app):
    with session_scope(app) as s:
        first = seed_default_content(s, None)
    with session_scope(app) as s:
        second = seed_default_content(s, None)
    assert first["dropdowns"] > 0
    assert second == {"dropdowns": 0, "tagSets": 0}


def test_system_dropdown_admin(admin_client):
    r = admin_client.post("/api/system-admin/dropdowns", json={"category": "locations", "name": "Sites", "options": []})
    assert r.status_code == 400

    r = admin_client.post(
        "/api/system-admin/dropdowns",
        json={
            "category": "locations",
            "name": "Sites",
            "options": [{"value": "hq", "label": "Headquarters"}, {"value": "hq", "label": "Dup"}],
        },
    )
    assert r.status_code == 400
    assert "Duplicate option value: hq" in r.json["errors"]

    r = admin_client.post(
        "/api/system-admin/dropdowns",
        json={"category": "locations", "name": "Sites", "options": [{"value": "hq", "label": "Headquarters"}]},
    )
    assert r.status_code == 201
    dropdown_id = r.json["id"]
    assert admin_client.get("/api/system-admin/dropdowns?category=locations").json["totalCount"] == 1

    r = admin_client.put(f"/api/system-admin/dropdowns/{dropdown_id}", json={"is_active": False})
    assert r.json["isActive"] is False
    assert admin_client.delete(f"/api/system-admin/dropdowns/{dropdown_id}").status_code == 200


def test_org_override_wins(admin_client, owner_client):
    admin_client.post(
        "/api/system-admin/dropdowns",
        json={"category": "departments", "name": "Departments", "options": [{"value": "it", "label": "IT"}]},
    )
    r = owner_client.get("/api/dropdowns/departments")
    assert r.json["dropdowns"][0]["source"] == "system"

    r = owner_client.post(
        "/api/organization/dropdowns",
        json={
            "category": "departments",
            "name": "Departments",
            "options": [{"value": "it", "label": "IT"}, {"value": "soc", "label": "Security Operations"}],
        },
    )
    assert r.status_code == 201
    assert r.json["systemDropdownId"] is not None
    override_id = r.json["id"]

    merged = owner_client.get("/api/dropdowns/departments").json["dropdowns"]
    assert len(merged) == 1
    assert merged[0]["source"] == "organization"
    assert [o["value"] for o in merged[0]["options"]] == ["it", "soc"]

    r = owner_client.post(
        "/api/organization/dropdowns",
        json={"category": "departments", "name": "Departments", "options": [{"value": "x", "label": "X"}]},
    )
    assert r.status_code == 409

    owner_client.delete(f"/api/organization/dropdowns/{override_id}")
    assert owner_client.get("/api/dropdowns/departments").json["dropdowns"][0]["source"] == "system"
    assert owner_client.get("/api/dropdowns/flavours").status_code == 400


def test_default_tag_sets_admin(admin_client, make_org, login):
    r = admin_client.post(
        "/api/system-admin/tags/defaults",
        json={
            "name": "Baseline",
            "is_required": True,
            "entity_types": ["asset"],
            "tags": [{"name": "Crown Jewel", "category": "criticality", "color": "#DC2626"}],
        },
    )
    assert r.status_code == 201
    assert admin_client.get("/api/system-admin/tags/defaults").json["tagSets"][0]["name"] == "Baseline"

    make_org()
    c = login("owner@acme.test")
    assert [t["name"] for t in c.get("/api/tags").json["tags"]] == ["Crown Jewel"]


def test_template_library(admin_client, owner_client):
    r = admin_client.post(
        "/api/system-admin/content/templates",
        json={
            "title": "Board briefing",
            "category": "communication",
            "content": "Incident {{incident.title}} affects {{organization.name}}.",
        },
    )
    assert r.status_code == 201
    template = r.json
    assert template["variables"] == ["incident.title", "organization.name"]

    listed = owner_client.get("/api/content/templates?category=communication").json["templates"]
    assert [t["title"] for t in listed] == ["Board briefing"]

    assert owner_client.get(f"/api/content/templates/{template['id']}").status_code == 200
    r = owner_client.post(f"/api/content/templates/{template['id']}/usage", json={"usage_type": "copied"})
    assert r.status_code == 201
    assert owner_client.post(f"/api/content/templates/{template['id']}/usage", json={"usage_type": "eaten"}).status_code == 400

    assert admin_client.get(f"/api/system-admin/content/templates/{template['id']}").json["usageCount"] == 2

    admin_client.put(f"/api/system-admin/content/templates/{template['id']}", json={"is_active": False})
    assert owner_client.get(f"/api/content/templates/{template['id']}").status_code == 404


def test_org_users_cannot_reach_platform_admin(app, owner_client):
    r = owner_client.get("/api/system-admin/dropdowns")
    assert r.status_code == 403
    assert r.json["missingPermission"] == "system.admin"

    from app.irdesk.models import AuditEvent

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "system.unauthorized_access").one()
        assert ev.entity_id == "/api/system-admin/dropdowns"
