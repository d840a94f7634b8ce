"""Tests for the organization profile, team and insurance endpoints."""
from app.irdesk.db import session_scope
from app.irdesk.models import AuditEvent, User


def test_profile_and_settings(owner_client):
    r = owner_client.get("/api/organization")
    assert r.status_code == 200
    assert r.json["status"] == "trial"
    assert r.json["membershipRole"] == "owner"
    assert r.json["features"]["incidents"] is True
    assert r.json["features"]["exercises"] is False

    r = owner_client.put("/api/organization", json={"website": "ftp://nope"})
    assert r.status_code == 400
    assert r.json["error"] == "VALIDATION_ERROR"

    r = owner_client.put("/api/organization", json={"industry": "Finance", "size": "medium"})
    assert r.status_code == 200
    assert r.json["industry"] == "Finance"

    r = owner_client.put("/api/organization/settings", json={"timezone": "UTC", "theme": "dark"})
    assert r.json["settings"] == {"timezone": "UTC", "theme": "dark"}
    r = owner_client.put("/api/organization/settings", json={"theme": None})
    assert r.json["settings"] == {"timezone": "UTC"}


def test_viewer_cannot_manage(app, make_org, add_member, login):
    org_id, _ = make_org()
    add_member(org_id, "val@acme.test", role="viewer")
    c = login("val@acme.test")
    assert c.get("/api/organization").status_code == 200
    r = c.put("/api/organization", json={"industry": "Retail"})
    assert r.status_code == 403
    assert r.json["missingPermission"] == "organization.manage"


def test_invitation_flow(app, owner_client):
    r = owner_client.post("/api/organization/team/invitations", json={"email": "New.Hire@acme.test", "role": "member"})
    assert r.status_code == 201
    token = r.json["token"]
    assert r.json["email"] == "new.hire@acme.test"

    # Same address twice is a conflict
    r = owner_client.post("/api/organization/team/invitations", json={"email": "new.hire@acme.test"})
    assert r.status_code == 409

    anon = app.test_client()
    csrf = anon.get("/auth/csrf").json["csrf_token"]
    r = anon.post(
        "/api/organization/team/invitations/accept",
        json={"token": token, "password": "newhire-password", "name": "New Hire"},
        headers={"X-CSRF-Token": csrf},
    )
    assert r.status_code == 201
    assert r.json["role"] == "member"

    members = owner_client.get("/api/organization/team/members").json
    assert members["totalCount"] == 2
    invitations = owner_client.get("/api/organization/team/invitations?status=accepted").json["invitations"]
    assert [i["email"] for i in invitations] == ["new.hire@acme.test"]


def test_member_role_changes_and_last_owner(app, make_org, add_member, login):
    org_id, owner_id = make_org()
    user_id = add_member(org_id, "rick@acme.test", role="member")
    c = login("owner@acme.test")
    members = {m["userId"]: m for m in c.get("/api/organization/team/members").json["members"]}

    r = c.put(f"/api/organization/team/members/{members[user_id]['id']}", json={"role": "admin"})
    assert r.status_code == 200
    with session_scope(app) as s:
        assert "org_admin" in s.get(User, user_id).role_keys

    r = c.put(f"/api/organization/team/members/{members[owner_id]['id']}", json={"role": "member"})
    assert r.status_code == 409

    r = c.delete(f"/api/organization/team/members/{members[owner_id]['id']}")
    assert r.status_code == 409

    r = c.delete(f"/api/organization/team/members/{members[user_id]['id']}")
    assert r.status_code == 200
    with session_scope(app) as s:
        assert s.get(User, user_id).role_keys == []
        assert s.query(AuditEvent).filter(AuditEvent.action == "team.member_remove").count() == 1


def test_seat_quota_blocks_invitation_acceptance(app, make_org, add_member, make_user, login):
    org_id, _ = make_org()
    for n in range(4):
        add_member(org_id, f"seat{n}@acme.test")
    c = login("owner@acme.test")
    token = c.post("/api/organization/team/invitations", json={"email": "sixth@acme.test"}).json["token"]

    make_user("sixth@acme.test")
    joiner = login("sixth@acme.test")
    r = joiner.post("/api/organization/team/invitations/accept", json={"token": token})
    assert r.status_code == 402
    assert r.json["resourceType"] == "users"
    assert r.json["limit"] == 5


def test_insurance_crud(owner_client):
    r = owner_client.post("/api/organization/insurance", json={"provider": "Cyber Mutual"})
    assert r.status_code == 400

    payload = {
        "provider": "Cyber Mutual",
        "policy_number": "CM-1001",
        "coverage_type": "first-party",
        "start_date": "2026-01-01",
        "end_date": "2027-01-01",
        "claims_phone": "+1 555 0100",
    }
    r = owner_client.post("/api/organization/insurance", json=payload)
    assert r.status_code == 201
    policy_id = r.json["id"]

    r = owner_client.put(f"/api/organization/insurance/{policy_id}", json={"end_date": "2025-06-01"})
    assert r.status_code == 400

    r = owner_client.put(f"/api/organization/insurance/{policy_id}", json={"deductible": "10000"})
    assert r.json["deductible"] == "10000"

    assert len(owner_client.get("/api/organization/insurance").json["policies"]) == 1
    assert owner_client.delete(f"/api/organization/insurance/{policy_id}").status_code == 200
    assert owner_client.get(f"/api/organization/insurance/{policy_id}").status_code == 404


def test_tenant_isolation(make_org, login):
    make_org()
    make_org("Initech", owner_email="owner@initech.test")
    acme = login("owner@acme.test")
    initech = login("owner@initech.test")

    r = acme.post("/api/incidents", json={"title": "Phish", "classification": "phishing", "severity": "high"})
    incident_id = r.json["id"]
    assert initech.get(f"/api/incidents/{incident_id}").status_code == 404
    assert initech.get("/api/incidents").json["totalCount"] == 0


def test_allowed_email_domains_on_invite_and_accept(app, owner_client, make_user, login):
    r = owner_client.put("/api/organization", json={"allowed_email_domains": ["Acme.test", "@partner.test"]})
    assert r.status_code == 200
    r = owner_client.post("/api/organization/team/invitations", json={"email": "mallory@outside.test"})
    assert r.status_code == 400
    assert r.json["errors"] == ["Email domain is not allowed for this organization."]
    assert owner_client.post("/api/organization/team/invitations", json={"email": "pat@partner.test"}).status_code == 201

    # Invited while unrestricted, then the organization tightened its domains
    owner_client.put("/api/organization", json={"allowed_email_domains": []})
    token = owner_client.post("/api/organization/team/invitations", json={"email": "eve@outside.test"}).json["token"]
    owner_client.put("/api/organization", json={"allowed_email_domains": ["acme.test"]})

    make_user("eve@outside.test")
    eve = login("eve@outside.test")
    r = eve.post("/api/organization/team/invitations/accept", json={"token": token})
    assert r.status_code == 400
    assert r.json["message"] == "Email domain is not allowed for this organization."
    assert owner_client.get("/api/organization/team/members").json["totalCount"] == 1
    pending = owner_client.get("/api/organization/team/invitations?status=pending").json["invitations"]
    assert "eve@outside.test" in [i["email"] for i in pending]
