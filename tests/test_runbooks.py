"""Tests for runbooks, guided execution and step evidence."""
import io
from datetime import datetime, timedelta

from app.irdesk.db import session_scope
from app.irdesk.models import User
from app.irdesk.modules.licensing.models import OrganizationLimits
from app.irdesk.modules.organizations.models import Organization
from app.irdesk.modules.runbooks.models import ExecutionEvidence, Runbook
from app.irdesk.modules.runbooks.service import (
    _build_steps,
    elapsed_seconds,
    pause_execution,
    resume_execution,
    seed_runbook_templates,
    start_execution,
)
from app.irdesk.storage import storage_from_config

STEPS = [
    {"phase": "containment", "title": "Isolate host", "is_critical": True, "estimated_duration": 15},
    {"phase": "detection", "title": "Confirm alert", "estimated_duration": 10},
    {"phase": "detection", "title": "Scope affected hosts"},
    {"phase": "recovery", "title": "Restore from backup", "is_critical": True, "estimated_duration": 60},
]


def _runbook(c, **extra):
    body = {"title": "Malware playbook", "classification": "malware", "steps": STEPS}
    body.update(extra)
    r = c.post("/api/runbooks", json=body)
    assert r.status_code == 201, r.json
    return r.json


def test_create_orders_steps_by_phase(owner_client):
    rb = _runbook(owner_client)
    assert [(st["phase"], st["stepNumber"]) for st in rb["steps"]] == [
        ("detection", 1),
        ("detection", 2),
        ("containment", 1),
        ("recovery", 1),
    ]
    assert rb["estimatedTotalMinutes"] == 15 + 10 + 30 + 60
    assert len(rb["stepsByPhase"]["detection"]) == 2
    assert rb["stepsByPhase"]["eradication"] == []
    assert rb["version"] == "1.0"


def test_step_validation(owner_client):
    r = owner_client.post(
        "/api/runbooks",
        json={"title": "Bad", "steps": [{"phase": "panic", "title": ""}, {"phase": "detection", "title": "x", "step_number": 0}]},
    )
    assert r.status_code == 400
    assert r.json["errors"] == [
        "Step 1: phase must be one of: detection, containment, eradication, recovery, post_incident",
        "Step 1: title is required.",
        "Step 2: step_number must be at least 1.",
    ]


def test_global_templates_clone_and_version(app, owner_client):
    with session_scope(app) as s:
        assert seed_runbook_templates(s, None) == 2
        assert seed_runbook_templates(s, None) == 0

    templates = owner_client.get("/api/runbooks?template=true").json["runbooks"]
    ransomware = next(t for t in templates if t["title"] == "Ransomware Response")
    assert ransomware["organizationId"] is None

    r = owner_client.put(f"/api/runbooks/{ransomware['id']}", json={"title": "Mine"})
    assert r.status_code == 403
    assert r.json["error"] == "READ_ONLY"

    r = owner_client.post(f"/api/runbooks/{ransomware['id']}/clone", json={"title": "Acme ransomware"})
    assert r.status_code == 201
    clone = r.json
    assert clone["organizationId"] == owner_client.org_id
    assert clone["isTemplate"] is False
    assert clone["stepCount"] == ransomware["stepCount"]

    assert owner_client.post(f"/api/runbooks/{clone['id']}/versions", json={"version": "1.0"}).status_code == 400
    r = owner_client.post(f"/api/runbooks/{clone['id']}/versions", json={"version": "2.0"})
    assert r.status_code == 201
    assert r.json["version"] == "2.0"
    assert r.json["id"] != clone["id"]


def test_guided_execution(owner_client):
    incident = owner_client.post(
        "/api/incidents", json={"title": "Beaconing", "classification": "malware", "severity": "high"}
    ).json
    rb = _runbook(owner_client)

    r = owner_client.post(f"/api/runbooks/{rb['id']}/executions", json={"incident_id": incident["id"]})
    assert r.status_code == 201
    ex = r.json
    assert ex["status"] == "in_progress"
    assert ex["totalSteps"] == 4
    assert ex["currentStepIndex"] == 0
    assert [st["status"] for st in ex["steps"]] == ["in_progress", "pending", "pending", "pending"]

    r = owner_client.put(f"/api/runbooks/executions/{ex['id']}/steps/0", json={"status": "completed", "notes": "EDR alert real"})
    assert r.json["currentStepIndex"] == 1
    assert r.json["completedSteps"] == 1

    r = owner_client.put(f"/api/runbooks/executions/{ex['id']}/steps/1", json={"status": "skipped"})
    detection = next(p for p in r.json["phases"] if p["phase"] == "detection")
    assert detection["status"] == "completed"
    assert detection["skippedSteps"] == 1
    assert r.json["completedSteps"] == 1

    assert owner_client.put(f"/api/runbooks/executions/{ex['id']}/steps/9", json={"status": "completed"}).status_code == 404
    assert owner_client.put(f"/api/runbooks/executions/{ex['id']}/steps/2", json={"status": "done"}).status_code == 400

    r = owner_client.post(f"/api/runbooks/executions/{ex['id']}/pause")
    assert r.json["status"] == "paused"
    assert owner_client.put(f"/api/runbooks/executions/{ex['id']}/steps/2", json={"status": "completed"}).status_code == 409
    assert owner_client.post(f"/api/runbooks/executions/{ex['id']}/pause").status_code == 409
    assert owner_client.post(f"/api/runbooks/executions/{ex['id']}/resume").json["status"] == "in_progress"

    assert owner_client.delete(f"/api/runbooks/{rb['id']}").status_code == 409

    r = owner_client.post(f"/api/runbooks/executions/{ex['id']}/complete", json={"notes": "Contained"})
    assert r.json["status"] == "completed"
    assert r.json["totalDuration"] is not None
    assert owner_client.post(f"/api/runbooks/executions/{ex['id']}/abandon").status_code == 409

    report = owner_client.get(f"/api/runbooks/executions/{ex['id']}/report").json
    assert report["summary"]["completedSteps"] == 1
    assert report["summary"]["skippedSteps"] == 1
    # Isolate host and Restore from backup were never finished
    assert report["summary"]["criticalStepsMissed"] == 2

    listed = owner_client.get(f"/api/runbooks/executions?incident_id={incident['id']}").json
    assert listed["totalCount"] == 1
    assert owner_client.get("/api/runbooks/executions?status=running").status_code == 400


def test_paused_time_is_excluded(app, make_org):
    org_id, owner_id = make_org()
    t0 = datetime(2026, 3, 1, 9, 0, 0)
    with session_scope(app) as s:
        org = s.get(Organization, org_id)
        user = s.get(User, owner_id)
        rb = Runbook(organization_id=org_id, title="Timed", version="1.0", created_by_user_id=owner_id)
        s.add(rb)
        s.flush()
        rb.steps = _build_steps([{"phase": "detection", "title": "Look"}])
        s.flush()
        ex = start_execution(s, org, rb, user, now=t0)
        pause_execution(s, org, ex, user, now=t0 + timedelta(minutes=10))
        assert elapsed_seconds(ex, now=t0 + timedelta(minutes=25)) == 600
        resume_execution(s, org, ex, user, now=t0 + timedelta(minutes=30))
        assert ex.paused_duration == 1200
        assert elapsed_seconds(ex, now=t0 + timedelta(minutes=40)) == 1200


def test_empty_runbook_cannot_start(owner_client):
    rb = _runbook(owner_client, steps=[])
    r = owner_client.post(f"/api/runbooks/{rb['id']}/executions", json={})
    assert r.status_code == 400


def test_step_evidence(owner_client):
    rb = _runbook(owner_client)
    ex = owner_client.post(f"/api/runbooks/{rb['id']}/executions", json={}).json

    r = owner_client.post(
        f"/api/runbooks/executions/{ex['id']}/steps/0/evidence",
        data={"file": (io.BytesIO(b"alert export"), "alert.json"), "description": "SIEM export"},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    evidence = r.json
    assert evidence["sizeBytes"] == len(b"alert export")

    listed = owner_client.get(f"/api/runbooks/executions/{ex['id']}/steps/0/evidence").json["evidence"]
    assert [e["id"] for e in listed] == [evidence["id"]]
    assert owner_client.get(f"/api/runbooks/executions/{ex['id']}/steps/1/evidence").json["evidence"] == []

    r = owner_client.get(f"/api/runbooks/executions/{ex['id']}/evidence/{evidence['id']}/download")
    assert r.status_code == 200
    assert r.data == b"alert export"

    r = owner_client.post(f"/api/runbooks/executions/{ex['id']}/steps/0/evidence", data={}, content_type="multipart/form-data")
    assert r.status_code == 400


def test_steps_are_locked_once_executed(owner_client):
    rb = _runbook(owner_client)
    ex = owner_client.post(f"/api/runbooks/{rb['id']}/executions", json={}).json

    r = owner_client.put(f"/api/runbooks/{rb['id']}", json={"steps": [{"phase": "detection", "title": "Only step"}]})
    assert r.status_code == 409
    # Metadata edits are still allowed
    assert owner_client.put(f"/api/runbooks/{rb['id']}", json={"title": "Malware playbook v1"}).status_code == 200

    owner_client.post(f"/api/runbooks/executions/{ex['id']}/complete", json={})
    r = owner_client.put(f"/api/runbooks/{rb['id']}", json={"steps": [{"phase": "detection", "title": "Only step"}]})
    assert r.status_code == 409

    detail = owner_client.get(f"/api/runbooks/executions/{ex['id']}").json
    assert [p["phase"] for p in detail["phases"] if p["totalSteps"]] == ["detection", "containment", "recovery"]
    report = owner_client.get(f"/api/runbooks/executions/{ex['id']}/report").json
    assert report["summary"]["criticalStepsMissed"] == 2

    # A runbook that has never run can still be restructured
    fresh = _runbook(owner_client, title="Draft")
    r = owner_client.put(f"/api/runbooks/{fresh['id']}", json={"steps": [{"phase": "detection", "title": "Only step"}]})
    assert r.status_code == 200
    assert r.json["stepCount"] == 1


def test_delete_runbook_frees_evidence_storage(owner_client):
    app = owner_client.application
    rb = _runbook(owner_client)
    ex = owner_client.post(f"/api/runbooks/{rb['id']}/executions", json={}).json
    payload = b"x" * 4096
    r = owner_client.post(
        f"/api/runbooks/executions/{ex['id']}/steps/0/evidence",
        data={"file": (io.BytesIO(payload), "capture.pcap")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201

    with session_scope(app) as s:
        key = s.get(ExecutionEvidence, r.json["id"]).storage_key
        limits = s.query(OrganizationLimits).filter(OrganizationLimits.organization_id == owner_client.org_id).one()
        assert limits.current_storage_bytes == len(payload)
    storage = storage_from_config(app.config)
    assert storage.exists(key)

    owner_client.post(f"/api/runbooks/executions/{ex['id']}/complete", json={})
    assert owner_client.delete(f"/api/runbooks/{rb['id']}").status_code == 200

    assert not storage.exists(key)
    with session_scope(app) as s:
        limits = s.query(OrganizationLimits).filter(OrganizationLimits.organization_id == owner_client.org_id).one()
        assert limits.current_storage_bytes == 0
