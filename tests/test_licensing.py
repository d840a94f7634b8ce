"""Tests for license tiers, quotas and the API rate limit."""
from datetime import timedelta

import pytest

from app.irdesk.db import session_scope
from app.irdesk.errors import QuotaExceededError, RateLimitExceededError
from app.irdesk.modules.licensing.features import (
    get_default_limits,
    get_features_for_license,
    get_required_license_for_feature,
    normalize_license,
    unavailable_features,
    upgrade_recommendation,
)
from app.irdesk.modules.licensing.service import (
    check_rate_limit,
    enforce_quota,
    enforce_rate_limit,
    ensure_limits,
    format_storage,
    quota_status,
)
from app.irdesk.modules.organizations.models import Organization
from app.irdesk.utils import utcnow


def test_feature_matrix():
    assert get_features_for_license("starter")["exercises"] is False
    assert get_features_for_license("professional")["exercises"] is True
    assert get_features_for_license("enterprise")["whitelabeling"] is True
    # Unknown tiers fall back to starter
    assert normalize_license("platinum") == "starter"
    assert get_required_license_for_feature("bulkOperations") == "professional"
    assert get_required_license_for_feature("ssoAuthentication") == "enterprise"
    assert get_default_limits("enterprise")["max_incidents"] is None

    missing = {f["feature"]: f["requiredLicense"] for f in unavailable_features("starter")}
    assert missing["exercises"] == "professional"
    assert "incidents" not in missing

    rec = upgrade_recommendation("starter", ["exercises", "incidents"])
    assert rec["recommendedTier"] == "professional"
    assert rec["blockedFeatures"] == ["exercises"]


def test_quota_status_thresholds():
    assert quota_status(10, 100) == "healthy"
    assert quota_status(80, 100) == "warning"
    assert quota_status(95, 100) == "critical"
    assert quota_status(100, 100) == "exceeded"
    assert quota_status(5000, None) == "healthy"


def test_format_storage():
    assert format_storage(512) == "512 MB"
    assert format_storage(2048) == "2.0 GB"


def test_limits_and_usage_endpoints(owner_client):
    r = owner_client.get("/api/organization/limits")
    assert r.status_code == 200
    assert r.json["licenseType"] == "starter"
    assert r.json["maxUsers"] == 5
    assert r.json["maxIncidents"] == 100
    assert r.json["maxStorage"] == "1.0 GB"
    assert any(f["feature"] == "exercises" for f in r.json["unavailableFeatures"])

    r = owner_client.get("/api/organization/usage")
    assert r.status_code == 200
    assert r.json["usage"]["users"] == 1
    assert r.json["statuses"]["users"] == "healthy"
    assert r.json["rateLimit"]["limit"] == 1000
    assert r.json["upgrade"]["recommendedTier"] == "professional"


def test_feature_gate_on_starter(owner_client):
    r = owner_client.get("/api/exercises")
    assert r.status_code == 403
    assert r.json["error"] == "FEATURE_NOT_AVAILABLE"
    assert r.json["requiredLicense"] == "professional"
    assert r.json["currentLicense"] == "starter"


def test_incident_quota(app, make_org):
    org_id, _ = make_org()
    with session_scope(app) as s:
        org = s.get(Organization, org_id)
        ensure_limits(s, org).max_incidents = 0
    with session_scope(app) as s:
        with pytest.raises(QuotaExceededError) as exc:
            enforce_quota(s, s.get(Organization, org_id), "incidents")
        assert exc.value.limit == 0
        with pytest.raises(ValueError):
            enforce_quota(s, s.get(Organization, org_id), "widgets")


def test_incident_quota_over_http(app, make_org, login):
    org_id, _ = make_org()
    with session_scope(app) as s:
        ensure_limits(s, s.get(Organization, org_id)).max_incidents = 1
    c = login("owner@acme.test")
    body = {"title": "One", "classification": "malware", "severity": "low"}
    assert c.post("/api/incidents", json=body).status_code == 201
    r = c.post("/api/incidents", json=body)
    assert r.status_code == 402
    assert r.json["error"] == "QUOTA_EXCEEDED"
    assert r.json["upgradeUrl"] == "/pricing?upgrade=incidents"


def test_rate_limit_window(app, make_org):
    org_id, _ = make_org()
    now = utcnow()
    with session_scope(app) as s:
        org = s.get(Organization, org_id)
        limits = ensure_limits(s, org)
        limits.api_rate_limit = 2
        enforce_rate_limit(s, org, now=now)
        enforce_rate_limit(s, org, now=now)
        with pytest.raises(RateLimitExceededError):
            enforce_rate_limit(s, org, now=now)
        # A new hour resets the counter
        later = now + timedelta(hours=1, minutes=1)
        assert check_rate_limit(s, org, now=later)["remaining"] == 2


def test_rate_limit_over_http(app, make_org, login):
    org_id, _ = make_org()
    c = login("owner@acme.test")
    with session_scope(app) as s:
        ensure_limits(s, s.get(Organization, org_id)).api_rate_limit = 1
    assert c.get("/api/incidents").status_code == 200
    r = c.get("/api/incidents")
    assert r.status_code == 429
    assert r.json["error"] == "RATE_LIMIT_EXCEEDED"


def test_expired_trial_blocks_access(app, make_org, login):
    org_id, _ = make_org()
    with session_scope(app) as s:
        s.get(Organization, org_id).trial_ends_at = utcnow() - timedelta(days=1)
    c = login("owner@acme.test")
    r = c.get("/api/incidents")
    assert r.status_code == 403
    assert r.json["error"] == "ORGANIZATION_INACTIVE"
    assert r.json["status"] == "expired"
