from __future__ import annotations

from flask import Blueprint, request

from app.irdesk.db import db_session
from app.irdesk.modules.exercises.models import DIFFICULTIES, TabletopExercise
from app.irdesk.modules.exercises.service import (
    LEADERBOARD_PERIODS,
    certificate,
    create_exercise,
    exercise_detail,
    exercise_history,
    exercise_results,
    exercise_stats,
    get_exercise,
    get_session,
    leaderboard,
    list_exercises,
    save_progress,
    start_exercise,
    submit_exercise,
    update_exercise,
    user_exercise_status,
)
from app.irdesk.modules.licensing.service import feature_required
from app.irdesk.rbac import require_permission, require_system_admin
from app.irdesk.tenancy import current_organization, current_user
from app.irdesk.utils import clean_str, page_args, paginate, parse_bool, parse_int, request_payload

bp = Blueprint("exercises", __name__)
# Exercise authoring lives under /api/system-admin/exercises
admin_bp = Blueprint("exercises_admin", __name__)


@bp.get("")
@require_permission("exercises.view")
@feature_required("exercises")
def exercises_list():
    s = db_session()
    org = current_organization()
    q = list_exercises(s, request.args)
    page, per_page = page_args()
    data = paginate(q, key="exercises", serialize=lambda e: e.to_dict(), page=page, per_page=per_page)
    status = user_exercise_status(s, org, current_user(), [e["id"] for e in data["exercises"]])
    for e in data["exercises"]:
        e["userStatus"] = status[e["id"]]
    data["difficulties"] = list(DIFFICULTIES)
    return data


@bp.get("/history")
@require_permission("exercises.view")
@feature_required("exercises")
def exercises_history():
    s = db_session()
    q = exercise_history(s, current_organization(), current_user(), clean_str(request.args.get("status")))
    page, per_page = page_args()
    return paginate(q, key="history", serialize=lambda c: c.to_dict(), page=page, per_page=per_page)


@bp.get("/leaderboard")
@require_permission("exercises.view")
@feature_required("exercises")
def exercises_leaderboard():
    s = db_session()
    period = clean_str(request.args.get("period")) or "all"
    limit = parse_int(request.args.get("limit"), field="limit") or 50
    return {
        "period": period,
        "periods": list(LEADERBOARD_PERIODS),
        "leaderboard": leaderboard(s, current_organization(), period, limit=min(max(limit, 1), 200)),
    }


@bp.get("/<int:exercise_id>")
@require_permission("exercises.view")
@feature_required("exercises")
def exercises_get(exercise_id: int):
    s = db_session()
    org = current_organization()
    exercise = get_exercise(s, exercise_id)
    data = exercise_detail(exercise)
    data["stats"] = exercise_stats(s, org, exercise)
    data["userStatus"] = user_exercise_status(s, org, current_user(), [exercise.id])[exercise.id]
    return data


@bp.post("/<int:exercise_id>/start")
@require_permission("exercises.take")
@feature_required("exercises")
def exercises_start(exercise_id: int):
    s = db_session()
    completion, created = start_exercise(s, current_organization(), get_exercise(s, exercise_id), current_user())
    s.commit()
    return {"session": completion.to_dict(), "resumed": not created}, 201 if created else 200


@bp.put("/sessions/<int:session_id>/progress")
@require_permission("exercises.take")
@feature_required("exercises")
def sessions_progress(session_id: int):
    s = db_session()
    payload = request_payload()
    completion = get_session(s, current_organization(), current_user(), session_id)
    save_progress(
        s,
        completion,
        payload.get("answers"),
        current_question=parse_int(payload.get("current_question"), field="current_question"),
        time_remaining=parse_int(payload.get("time_remaining"), field="time_remaining"),
    )
    s.commit()
    return completion.to_dict()


@bp.post("/sessions/<int:session_id>/submit")
@require_permission("exercises.take")
@feature_required("exercises")
def sessions_submit(session_id: int):
    s = db_session()
    org = current_organization()
    user = current_user()
    payload = request_payload()
    result = submit_exercise(s, org, get_session(s, org, user, session_id), payload.get("answers"), user)
    s.commit()
    return result


@bp.get("/sessions/<int:session_id>/results")
@require_permission("exercises.view")
@feature_required("exercises")
def sessions_results(session_id: int):
    s = db_session()
    org = current_organization()
    return exercise_results(get_session(s, org, current_user(), session_id))


@bp.get("/sessions/<int:session_id>/certificate")
@require_permission("exercises.view")
@feature_required("exercises")
def sessions_certificate(session_id: int):
    s = db_session()
    org = current_organization()
    return certificate(org, get_session(s, org, current_user(), session_id))


# ---------- Authoring ----------
@admin_bp.get("/exercises")
@require_system_admin
def admin_exercises_list():
    s = db_session()
    q = s.query(TabletopExercise)
    active = parse_bool(request.args.get("active"))
    if active is not None:
        q = q.filter(TabletopExercise.is_active.is_(active))
    q = q.order_by(TabletopExercise.created_at.desc(), TabletopExercise.id.desc())
    page, per_page = page_args()
    return paginate(q, key="exercises", serialize=lambda e: e.to_dict(), page=page, per_page=per_page)


@admin_bp.post("/exercises")
@require_system_admin
def admin_exercises_create():
    s = db_session()
    exercise = create_exercise(s, request_payload(), current_user())
    s.commit()
    return exercise_detail(exercise), 201


@admin_bp.get("/exercises/<int:exercise_id>")
@require_system_admin
def admin_exercises_get(exercise_id: int):
    exercise = get_exercise(db_session(), exercise_id, active_only=False)
    data = exercise_detail(exercise)
    data["questions"] = [q.to_dict(include_answer=True) for q in exercise.questions]
    return data


@admin_bp.put("/exercises/<int:exercise_id>")
@require_system_admin
def admin_exercises_update(exercise_id: int):
    s = db_session()
    exercise = update_exercise(s, get_exercise(s, exercise_id, active_only=False), request_payload(), current_user())
    s.commit()
    return exercise_detail(exercise)
