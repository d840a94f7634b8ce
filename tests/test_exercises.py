"""Tests for tabletop exercises: authoring, attempts, scoring and the leaderboard."""
from datetime import datetime

from app.irdesk.db import session_scope
from app.irdesk.modules.exercises.models import ExerciseCompletion, TabletopExercise
from app.irdesk.modules.exercises.service import leaderboard, seed_exercises
from app.irdesk.modules.organizations.models import Organization

EXERCISE = {
    "title": "Lost backup tapes",
    "scenario": "A courier reports a box of backup tapes missing in transit.",
    "difficulty": "intermediate",
    "estimated_duration": 20,
    "objectives": ["Assess exposure", "Decide on notification"],
    "questions": [
        {
            "question": "Were the tapes encrypted?",
            "options": [{"id": "a", "text": "Check the key escrow"}, {"id": "b", "text": "Assume yes"}],
            "correct_answer": "a",
            "points": 2,
        },
        {
            "question": "Who owns the notification decision?",
            "options": [{"id": "a", "text": "Courier"}, {"id": "b", "text": "Legal"}],
            "correct_answer": "b",
        },
        {
            "question": "What is logged?",
            "options": [{"id": "a", "text": "Nothing"}, {"id": "b", "text": "Chain of custody"}],
            "correct_answer": "b",
        },
    ],
}


def _exercise(admin_client) -> dict:
    r = admin_client.post("/api/system-admin/exercises", json=EXERCISE)
    assert r.status_code == 201, r.json
    return r.json


def _answers(exercise: dict, picks: list[str]) -> dict:
    return {str(q["id"]): pick for q, pick in zip(exercise["questions"], picks)}


def test_authoring_validation(admin_client):
    r = admin_client.post(
        "/api/system-admin/exercises",
        json={
            "title": "Broken",
            "scenario": "x",
            "difficulty": "legendary",
            "questions": [{"question": "?", "options": [{"id": "a", "text": "A"}], "correct_answer": "a"}],
        },
    )
    assert r.status_code == 400
    assert r.json["errors"] == [
        "Difficulty must be one of: beginner, intermediate, advanced",
        "Question 1: at least two options are required.",
    ]

    r = admin_client.post(
        "/api/system-admin/exercises",
        json={
            "title": "Wrong key",
            "scenario": "x",
            "questions": [
                {"question": "?", "options": [{"id": "a", "text": "A"}, {"id": "b", "text": "B"}], "correct_answer": "z"}
            ],
        },
    )
    assert r.json["errors"] == ["Question 1: correct_answer must match one of the option ids."]


def test_answers_are_hidden_until_submitted(admin_client, pro_client):
    ex = _exercise(admin_client)
    assert ex["totalPoints"] == 4
    assert "correctAnswer" not in ex["questions"][0]

    admin_view = admin_client.get(f"/api/system-admin/exercises/{ex['id']}").json
    assert admin_view["questions"][0]["correctAnswer"] == "a"

    detail = pro_client.get(f"/api/exercises/{ex['id']}").json
    assert "correctAnswer" not in detail["questions"][0]
    assert detail["userStatus"]["status"] == "not_started"
    assert detail["stats"] == {"completionCount": 0, "averageScore": 0, "successRate": 0}


def test_attempt_lifecycle(admin_client, pro_client):
    ex = _exercise(admin_client)

    r = pro_client.post(f"/api/exercises/{ex['id']}/start")
    assert r.status_code == 201
    session_id = r.json["session"]["id"]
    assert r.json["resumed"] is False

    r = pro_client.post(f"/api/exercises/{ex['id']}/start")
    assert r.status_code == 200
    assert r.json["resumed"] is True
    assert r.json["session"]["id"] == session_id

    r = pro_client.put(
        f"/api/exercises/sessions/{session_id}/progress",
        json={"answers": {str(ex["questions"][0]["id"]): "c"}},
    )
    assert r.status_code == 400
    assert r.json["errors"] == ["Question 1: unknown option c"]

    r = pro_client.put(
        f"/api/exercises/sessions/{session_id}/progress",
        json={"answers": _answers(ex, ["a"]), "current_question": 2, "time_remaining": 900},
    )
    assert r.json["progress"]["answered"] == 1
    assert r.json["progress"]["currentQuestion"] == 2

    listing = pro_client.get("/api/exercises").json
    assert listing["exercises"][0]["userStatus"] == {"status": "in_progress", "bestPercentage": None, "sessionId": session_id}

    assert pro_client.get(f"/api/exercises/sessions/{session_id}/results").status_code == 409

    # Saved answers are scored when the submission carries none
    r = pro_client.post(f"/api/exercises/sessions/{session_id}/submit", json={})
    assert r.json["score"] == 2
    assert r.json["percentage"] == 50.0
    assert r.json["passed"] is False
    assert r.json["certificateId"] is None

    assert pro_client.post(f"/api/exercises/sessions/{session_id}/submit", json={}).status_code == 409
    assert pro_client.get(f"/api/exercises/sessions/{session_id}/certificate").status_code == 409

    results = pro_client.get(f"/api/exercises/sessions/{session_id}/results").json
    assert [q["isCorrect"] for q in results["questions"]] == [True, False, False]
    assert results["questions"][1]["correctAnswer"] == "b"


def test_passing_attempt_earns_certificate(admin_client, pro_client):
    ex = _exercise(admin_client)
    session_id = pro_client.post(f"/api/exercises/{ex['id']}/start").json["session"]["id"]

    r = pro_client.post(f"/api/exercises/sessions/{session_id}/submit", json={"answers": _answers(ex, ["a", "b", "a"])})
    assert r.json["percentage"] == 75.0
    assert r.json["passed"] is True
    assert r.json["certificateId"] == f"CERT-{session_id:06d}"

    cert = pro_client.get(f"/api/exercises/sessions/{session_id}/certificate").json
    assert cert["organizationName"] == "Globex"
    assert cert["exerciseTitle"] == "Lost backup tapes"
    assert cert["percentage"] == 75.0

    history = pro_client.get("/api/exercises/history?status=completed").json
    assert history["totalCount"] == 1
    assert pro_client.get("/api/exercises/history?status=stale").status_code == 400


def test_sessions_are_private(admin_client, pro_client, add_member, login):
    ex = _exercise(admin_client)
    session_id = pro_client.post(f"/api/exercises/{ex['id']}/start").json["session"]["id"]

    add_member(pro_client.org_id, "mallory@globex.test")
    other = login("mallory@globex.test")
    assert other.get(f"/api/exercises/sessions/{session_id}/results").status_code == 404
    assert other.post(f"/api/exercises/sessions/{session_id}/submit", json={}).status_code == 404


def test_leaderboard_counts_best_attempt(admin_client, pro_client, add_member, login):
    ex = _exercise(admin_client)
    add_member(pro_client.org_id, "sam@globex.test")
    sam = login("sam@globex.test")

    for picks in (["b", "b", "b"], ["a", "b", "b"]):
        sid = pro_client.post(f"/api/exercises/{ex['id']}/start").json["session"]["id"]
        pro_client.post(f"/api/exercises/sessions/{sid}/submit", json={"answers": _answers(ex, picks)})
    sid = sam.post(f"/api/exercises/{ex['id']}/start").json["session"]["id"]
    sam.post(f"/api/exercises/sessions/{sid}/submit", json={"answers": _answers(ex, ["a", "a", "a"])})

    board = pro_client.get("/api/exercises/leaderboard").json
    assert [(row["email"], row["totalPoints"], row["rank"]) for row in board["leaderboard"]] == [
        ("owner@globex.test", 4, 1),
        ("sam@globex.test", 2, 2),
    ]
    assert board["leaderboard"][0]["certificates"] == 1
    assert pro_client.get("/api/exercises/leaderboard?period=decade").status_code == 400

    stats = pro_client.get(f"/api/exercises/{ex['id']}").json["stats"]
    assert stats["completionCount"] == 3


def test_leaderboard_period_window(app, make_org, make_user):
    org_id, owner_id = make_org("Initech", owner_email="owner@initech.test", license_type="professional")
    with session_scope(app) as s:
        seed_exercises(s, None)
    with session_scope(app) as s:
        exercise = s.query(TabletopExercise).order_by(TabletopExercise.id).first()
        s.add(
            ExerciseCompletion(
                exercise_id=exercise.id,
                user_id=owner_id,
                organization_id=org_id,
                started_at=datetime(2026, 1, 1, 9, 0),
                completed_at=datetime(2026, 1, 1, 9, 30),
                score=exercise.total_points,
                total_score=exercise.total_points,
            )
        )
    with session_scope(app) as s:
        org = s.get(Organization, org_id)
        assert len(leaderboard(s, org, "all", now=datetime(2026, 3, 1))) == 1
        assert leaderboard(s, org, "month", now=datetime(2026, 3, 1)) == []
        assert len(leaderboard(s, org, "week", now=datetime(2026, 1, 5))) == 1


def test_starter_cannot_take_exercises(admin_client, owner_client):
    ex = _exercise(admin_client)
    r = owner_client.post(f"/api/exercises/{ex['id']}/start")
    assert r.status_code == 403
    assert r.json["error"] == "FEATURE_NOT_AVAILABLE"
