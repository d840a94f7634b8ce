def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200


def test_login_and_session(client, make_org):
    make_org()
    # Anonymous API access is rejected
    r = client.get("/api/incidents")
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "owner@acme.test", "password": "correct-horse-1"})
    assert r.status_code == 200
    assert r.json["organization"]["name"] == "Acme Corp"
    assert r.json["membershipRole"] == "owner"
    assert "incidents.create" in r.json["permissions"]
    token = r.json["csrf_token"]

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["email"] == "owner@acme.test"

    # Writes without the CSRF token are refused
    r = client.post("/api/incidents", json={"title": "x", "classification": "malware", "severity": "low"})
    assert r.status_code == 400
    assert r.json["error"] == "CSRF_FAILED"

    r = client.post(
        "/api/incidents",
        json={"title": "Beaconing host", "classification": "malware", "severity": "low"},
        headers={"X-CSRF-Token": token},
    )
    assert r.status_code == 201


def test_bad_credentials_are_audited(app, client, make_org):
    make_org()
    r = client.post("/auth/login", json={"email": "owner@acme.test", "password": "wrong"})
    assert r.status_code == 401
    assert r.json["error"] == "INVALID_CREDENTIALS"

    from app.irdesk.db import session_scope
    from app.irdesk.models import AuditEvent

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").one()
        assert ev.entity_id == "owner@acme.test"
        assert ev.severity == "warning"


def test_login_rate_limit(client, make_org):
    make_org()
    for _ in range(5):
        client.post("/auth/login", json={"email": "owner@acme.test", "password": "nope"})
    r = client.post("/auth/login", json={"email": "owner@acme.test", "password": "correct-horse-1"})
    assert r.status_code == 429


def test_change_password(make_org, login):
    make_org()
    c = login("owner@acme.test")
    r = c.post("/auth/password", json={"current_password": "correct-horse-1", "new_password": "short"})
    assert r.status_code == 400
    r = c.post("/auth/password", json={"current_password": "correct-horse-1", "new_password": "a-much-longer-one"})
    assert r.status_code == 200
    login("owner@acme.test", "a-much-longer-one")


def test_user_without_organization(make_user, login):
    make_user("loner@example.com")
    c = login("loner@example.com")
    r = c.get("/auth/me")
    assert r.json["organization"] is None


def test_request_size_limit_message(app, owner_client):
    import io

    app.config["MAX_CONTENT_LENGTH"] = 1024 * 1024
    inc = owner_client.post("/api/incidents", json={"title": "Exfil", "classification": "data_breach", "severity": "high"}).json
    r = owner_client.post(
        f"/api/incidents/{inc['id']}/evidence",
        data={"file": (io.BytesIO(b"x" * (2 * 1024 * 1024)), "dump.bin"), "phase": "detection"},
        content_type="multipart/form-data",
    )
    assert r.status_code == 413
    assert r.json == {"error": "PAYLOAD_TOO_LARGE", "message": "File too large. Maximum size is 1MB."}
