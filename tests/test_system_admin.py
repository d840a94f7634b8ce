"""Tests for platform administration: organizations, users, licenses, settings and API keys."""
import io
from datetime import timedelta

from app.irdesk.db import session_scope
from app.irdesk.models import AuditEvent, User
from app.irdesk.modules.runbooks.models import ExecutionEvidence
from app.irdesk.modules.system_admin.models import SystemApiKey
from app.irdesk.modules.system_admin.service import verify_api_key
from app.irdesk.storage import storage_from_config
from app.irdesk.utils import utcnow


def _admin_id(app) -> int:
    with session_scope(app) as s:
        return s.query(User).filter(User.email == "root@irdesk.test").one().id


def test_create_organization_with_new_owner(admin_client, login):
    r = admin_client.post(
        "/api/system-admin/organizations",
        json={"name": "Newco", "industry": "Retail", "admin": {"email": "Boss@Newco.test", "name": "Bo Boss"}},
    )
    assert r.status_code == 201, r.json
    org = r.json
    assert org["status"] == "trial"
    assert org["effectiveStatus"] == "trial"
    assert org["admin"]["user"]["email"] == "boss@newco.test"
    temporary = org["admin"]["temporaryPassword"]
    assert temporary
    assert [m["role"] for m in org["members"]] == ["owner"]

    boss = login("boss@newco.test", temporary)
    assert boss.get("/api/organization").json["name"] == "Newco"

    listed = admin_client.get("/api/system-admin/organizations?q=newco").json
    assert listed["totalCount"] == 1
    assert listed["organizations"][0]["memberCount"] == 1
    assert admin_client.get("/api/system-admin/organizations?status=zombie").status_code == 400

    r = admin_client.post(
        "/api/system-admin/organizations",
        json={"name": "Dupe", "admin": {"email": "boss@newco.test"}},
    )
    assert r.status_code == 400
    assert r.json["errors"] == ["A user with this email already exists."]


def test_suspend_and_reactivate(admin_client, owner_client):
    org_id = owner_client.org_id
    r = admin_client.put(f"/api/system-admin/organizations/{org_id}/status", json={"status": "suspended"})
    assert r.status_code == 400

    r = admin_client.put(
        f"/api/system-admin/organizations/{org_id}/status", json={"status": "suspended", "reason": "Unpaid invoice"}
    )
    assert r.json["status"] == "suspended"

    r = owner_client.get("/api/dashboard")
    assert r.status_code == 403
    assert r.json["error"] == "ORGANIZATION_INACTIVE"
    assert r.json["status"] == "suspended"

    admin_client.put(f"/api/system-admin/organizations/{org_id}/status", json={"status": "active"})
    assert owner_client.get("/api/dashboard").status_code == 200


def test_license_update_unlocks_features(admin_client, owner_client):
    org_id = owner_client.org_id
    assert owner_client.get("/api/exercises").status_code == 403

    r = admin_client.put(f"/api/system-admin/licenses/{org_id}", json={"license_type": "enterprise", "license_count": 0})
    assert r.status_code == 400

    r = admin_client.put(f"/api/system-admin/licenses/{org_id}", json={"license_type": "professional", "license_count": 25})
    assert r.json["licenseType"] == "professional"
    assert r.json["status"] == "active"
    assert r.json["trialEndsAt"] is None
    assert owner_client.get("/api/exercises").status_code == 200

    body = admin_client.get("/api/system-admin/licenses").json
    row = next(o for o in body["licenses"] if o["organizationId"] == org_id)
    assert row["seatsUsed"] == 1
    assert row["seatsTotal"] == 25
    assert row["seatsAvailable"] == 24

    distribution = {d["licenseType"]: d for d in body["distribution"]}
    assert list(distribution) == ["starter", "professional", "enterprise"]
    assert distribution["starter"]["organizations"] == 0
    professional = distribution["professional"]
    assert professional["organizations"] == 1
    assert professional["byStatus"]["active"] == 1
    assert professional["seatsTotal"] == 25
    assert "exercises" in professional["features"]
    assert "exercises" not in distribution["starter"]["features"]


def test_manage_members_across_organizations(admin_client, owner_client, login):
    org_id = owner_client.org_id
    r = admin_client.post(
        f"/api/system-admin/organizations/{org_id}/users", json={"email": "newhire@acme.test", "role": "viewer"}
    )
    assert r.status_code == 201
    member = r.json
    assert member["role"] == "viewer"
    assert member["temporaryPassword"]

    r = admin_client.put(f"/api/system-admin/organizations/{org_id}/users/{member['id']}", json={"role": "admin"})
    assert r.json["role"] == "admin"

    r = admin_client.post(f"/api/system-admin/organizations/{org_id}/users/{member['id']}/reset-password")
    new_password = r.json["temporaryPassword"]
    assert new_password != member["temporaryPassword"]
    assert login("newhire@acme.test", new_password).get("/api/organization/team/members").status_code == 200

    assert admin_client.delete(f"/api/system-admin/organizations/{org_id}/users/{member['id']}").status_code == 200
    members = admin_client.get(f"/api/system-admin/organizations/{org_id}/users").json["members"]
    assert [m["email"] for m in members] == ["owner@acme.test"]


def test_delete_organization(admin_client, owner_client):
    org_id = owner_client.org_id
    owner_client.post("/api/incidents", json={"title": "Keep me", "classification": "other", "severity": "low"})
    r = admin_client.delete(f"/api/system-admin/organizations/{org_id}")
    assert r.status_code == 409

    r = admin_client.post("/api/system-admin/organizations", json={"name": "Shortlived"})
    empty_id = r.json["id"]
    assert admin_client.delete(f"/api/system-admin/organizations/{empty_id}").status_code == 200
    assert admin_client.get(f"/api/system-admin/organizations/{empty_id}").status_code == 404


def test_delete_organization_removes_evidence_files(admin_client, owner_client):
    rb = owner_client.post(
        "/api/runbooks",
        json={"title": "Triage", "steps": [{"phase": "detection", "title": "Collect logs"}]},
    ).json
    ex = owner_client.post(f"/api/runbooks/{rb['id']}/executions", json={}).json
    r = owner_client.post(
        f"/api/runbooks/executions/{ex['id']}/steps/0/evidence",
        data={"file": (io.BytesIO(b"log lines"), "auth.log")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    app = owner_client.application
    with session_scope(app) as s:
        key = s.get(ExecutionEvidence, r.json["id"]).storage_key
    storage = storage_from_config(app.config)
    assert storage.exists(key)

    assert admin_client.delete(f"/api/system-admin/organizations/{owner_client.org_id}").status_code == 200
    assert not storage.exists(key)


def test_user_administration(app, admin_client, owner_client):
    r = admin_client.post("/api/system-admin/users", json={"email": "ops@irdesk.test", "system_admin": True})
    assert r.status_code == 201
    ops = r.json
    assert ops["isSystemAdmin"] is True
    assert ops["organization"] is None

    admins = admin_client.get("/api/system-admin/users?system_admin=true").json
    assert {u["email"] for u in admins["users"]} == {"root@irdesk.test", "ops@irdesk.test"}
    members = admin_client.get(f"/api/system-admin/users?organization_id={owner_client.org_id}").json
    assert [u["organization"]["role"] for u in members["users"]] == ["owner"]

    r = admin_client.put(f"/api/system-admin/users/{ops['id']}", json={"is_active": False})
    assert r.json["isActive"] is False

    root_id = _admin_id(app)
    assert admin_client.put(f"/api/system-admin/users/{root_id}", json={"is_active": False}).status_code == 409
    assert admin_client.put(f"/api/system-admin/users/{root_id}/system-admin", json={"grant": False}).status_code == 409

    r = admin_client.put(f"/api/system-admin/users/{ops['id']}/system-admin", json={"grant": False})
    assert r.json["isSystemAdmin"] is False

    with session_scope(app) as s:
        actions = {e.action for e in s.query(AuditEvent).filter(AuditEvent.entity_type == "User")}
    assert {"system.user_create", "system.user_deactivate", "system.admin_revoke"} <= actions


def test_settings(admin_client, owner_client):
    r = admin_client.put(
        "/api/system-admin/settings/maintenance_mode",
        json={"value": True, "is_public": True, "category": "general", "description": "Read-only banner"},
    )
    assert r.status_code == 200
    assert r.json["dataType"] == "boolean"
    assert r.json["value"] is True

    r = admin_client.put(
        "/api/system-admin/settings",
        json={"settings": {"max_upload_mb": 50, "banner": {"value": {"text": "Hi"}, "is_public": True}}},
    )
    assert {st["dataType"] for st in r.json["settings"].values()} == {"number", "json"}

    assert admin_client.put("/api/system-admin/settings/max_upload_mb", json={"value": "lots"}).status_code == 400
    assert admin_client.put("/api/system-admin/settings/x", json={"value": 1, "category": "misc"}).status_code == 400

    public = owner_client.get("/api/settings/public").json["settings"]
    assert public == {"banner": {"text": "Hi"}, "maintenance_mode": True}

    assert admin_client.delete("/api/system-admin/settings/banner").status_code == 200
    assert admin_client.delete("/api/system-admin/settings/banner").status_code == 404


def test_api_keys(app, admin_client, owner_client):
    r = admin_client.post(
        "/api/system-admin/api-keys",
        json={"name": "SIEM export", "permissions": ["incidents.view"], "organization_id": owner_client.org_id},
    )
    assert r.status_code == 201
    raw = r.json["key"]
    key_id = r.json["id"]
    assert raw.startswith("irk_")
    assert r.json["keyPrefix"] == raw[:12]

    listed = admin_client.get("/api/system-admin/api-keys").json["apiKeys"]
    assert "key" not in listed[0]

    with session_scope(app) as s:
        key = verify_api_key(s, raw)
        assert key is not None and key.last_used_at is not None
        assert verify_api_key(s, raw + "x") is None
        assert verify_api_key(s, "not-a-key") is None

    assert admin_client.delete(f"/api/system-admin/api-keys/{key_id}").json["isActive"] is False
    assert admin_client.delete(f"/api/system-admin/api-keys/{key_id}").status_code == 409
    with session_scope(app) as s:
        assert verify_api_key(s, raw) is None

    r = admin_client.post("/api/system-admin/api-keys", json={"name": "Short", "expires_in_days": 0})
    assert r.status_code == 400


def test_expired_api_key_is_rejected(app, admin_client):
    r = admin_client.post("/api/system-admin/api-keys", json={"name": "Temp", "expires_in_days": 1})
    raw = r.json["key"]
    with session_scope(app) as s:
        key = s.get(SystemApiKey, r.json["id"])
        key.expires_at = utcnow() - timedelta(minutes=1)
    with session_scope(app) as s:
        assert verify_api_key(s, raw) is None


def test_monitoring(admin_client, owner_client):
    owner_client.post("/api/incidents", json={"title": "Phishing report", "classification": "other", "severity": "low"})

    stats = admin_client.get("/api/system-admin/stats").json
    assert stats["organizations"]["total"] == 1
    assert stats["organizations"]["byStatus"]["trial"] == 1
    assert stats["incidents"] == {"total": 1, "open": 1}

    health = admin_client.get("/api/system-admin/health").json
    assert health["status"] == "healthy"
    assert health["database"]["ok"] is True
    assert health["storage"]["backend"] == "local"
    assert health["schema"]["missingTables"] == []

    activity = admin_client.get("/api/system-admin/activity?limit=5").json["activity"]
    incident_event = next(a for a in activity if a["action"] == "incident.create")
    assert incident_event["organizationName"] == "Acme Corp"

    logs = admin_client.get(f"/api/system-admin/monitoring/audit?organization_id={owner_client.org_id}").json
    assert logs["totalCount"] >= 1
    assert all(e["organizationId"] == owner_client.org_id for e in logs["logs"])


def test_non_admin_is_rejected_and_audited(app, owner_client):
    r = owner_client.get("/api/system-admin/stats")
    assert r.status_code == 403
    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "system.unauthorized_access").one()
        assert ev.severity == "warning"
