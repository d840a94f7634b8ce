"""
Tabletop exercises.

Exercises and their questions are platform content managed by system
administrators. Attempts (ExerciseCompletion) belong to the taker's
organization; a user has at most one open attempt per exercise.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, or_

from app.irdesk.audit import record_event
from app.irdesk.errors import ConflictError, NotFoundError, ValidationError
from app.irdesk.modules.exercises.models import (
    DIFFICULTIES,
    PASSING_PERCENTAGE,
    ExerciseCompletion,
    ExerciseQuestion,
    TabletopExercise,
)
from app.irdesk.utils import clean_str, parse_bool, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

    from app.irdesk.models import User
    from app.irdesk.modules.organizations.models import Organization

logger = logging.getLogger(__name__)

LEADERBOARD_PERIODS = {"all": None, "month": timedelta(days=30), "week": timedelta(days=7)}
SORTS = ("newest", "popular", "difficulty-asc", "difficulty-desc", "duration")


def certificate_id_for(completion: ExerciseCompletion) -> str:
    return f"CERT-{completion.id:06d}"


# ---------- Validation ----------
def validate_questions(questions: Any) -> list[str]:
    if not isinstance(questions, list) or not questions:
        return ["At least one question is required."]
    errors: list[str] = []
    for idx, raw in enumerate(questions, start=1):
        if not isinstance(raw, dict):
            errors.append(f"Question {idx}: must be an object.")
            continue
        if not clean_str(raw.get("question")):
            errors.append(f"Question {idx}: question text is required.")
        options = raw.get("options")
        if not isinstance(options, list) or len(options) < 2:
            errors.append(f"Question {idx}: at least two options are required.")
            continue
        option_ids = []
        for opt in options:
            if not isinstance(opt, dict) or not clean_str(opt.get("id")) or not clean_str(opt.get("text")):
                errors.append(f"Question {idx}: each option needs an id and text.")
                break
            option_ids.append(clean_str(opt.get("id")))
        if len(set(option_ids)) != len(option_ids):
            errors.append(f"Question {idx}: option ids must be unique.")
        if clean_str(raw.get("correct_answer")) not in option_ids:
            errors.append(f"Question {idx}: correct_answer must match one of the option ids.")
        try:
            points = parse_int(raw.get("points"), field="points")
        except ValidationError as e:
            errors.append(f"Question {idx}: {e.message}")
            continue
        if points is not None and points < 1:
            errors.append(f"Question {idx}: points must be at least 1.")
    return errors


def validate_exercise_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "title" in payload:
        title = clean_str(payload.get("title"))
        if not title:
            errors.append("Title is required.")
        elif len(title) > 255:
            errors.append("Title must be 255 characters or fewer.")
    if not partial or "scenario" in payload:
        if not clean_str(payload.get("scenario")):
            errors.append("Scenario is required.")
    if "difficulty" in payload or not partial:
        difficulty = clean_str(payload.get("difficulty")) or "beginner"
        if difficulty not in DIFFICULTIES:
            errors.append(f"Difficulty must be one of: {', '.join(DIFFICULTIES)}")
    if "estimated_duration" in payload:
        try:
            duration = parse_int(payload.get("estimated_duration"), field="estimated_duration")
        except ValidationError as e:
            errors.append(e.message)
        else:
            if duration is not None and duration < 1:
                errors.append("estimated_duration must be at least 1 minute.")
    objectives = payload.get("objectives")
    if objectives is not None and (not isinstance(objectives, list) or not all(isinstance(o, str) for o in objectives)):
        errors.append("objectives must be a list of strings.")
    if not partial or "questions" in payload:
        errors.extend(validate_questions(payload.get("questions")))
    return errors


def _build_questions(raw_questions: list[dict]) -> list[ExerciseQuestion]:
    return [
        ExerciseQuestion(
            question_number=parse_int(raw.get("question_number"), field="question_number") or idx,
            question=clean_str(raw.get("question")),
            options=[{"id": clean_str(o.get("id")), "text": clean_str(o.get("text"))} for o in raw["options"]],
            correct_answer=clean_str(raw.get("correct_answer")),
            explanation=clean_str(raw.get("explanation")),
            points=parse_int(raw.get("points"), field="points") or 1,
        )
        for idx, raw in enumerate(raw_questions, start=1)
    ]


def _apply_exercise_fields(exercise: TabletopExercise, payload: dict) -> None:
    for field in ("title", "description", "scenario", "category"):
        if field in payload:
            setattr(exercise, field, clean_str(payload.get(field)))
    if "difficulty" in payload:
        exercise.difficulty = clean_str(payload.get("difficulty")) or "beginner"
    if "estimated_duration" in payload:
        exercise.estimated_duration = parse_int(payload.get("estimated_duration"), field="estimated_duration") or 30
    if "objectives" in payload:
        exercise.objectives = [o.strip() for o in payload.get("objectives") or [] if o.strip()]
    if "is_active" in payload:
        exercise.is_active = bool(parse_bool(payload.get("is_active")))


# ---------- Administration ----------
def create_exercise(s: "Session", payload: dict, user: "User") -> TabletopExercise:
    errors = validate_exercise_payload(payload)
    if errors:
        raise ValidationError(errors)
    exercise = TabletopExercise(created_by_user_id=user.id if user else None, difficulty="beginner")
    _apply_exercise_fields(exercise, payload)
    exercise.questions = _build_questions(payload["questions"])
    s.add(exercise)
    s.flush()
    record_event(
        s,
        actor=user,
        action="exercise.create",
        entity_type="Exercise",
        entity_id=str(exercise.id),
        metadata={"title": exercise.title, "questions": len(exercise.questions)},
    )
    return exercise


def update_exercise(s: "Session", exercise: TabletopExercise, payload: dict, user: "User") -> TabletopExercise:
    errors = validate_exercise_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    _apply_exercise_fields(exercise, payload)
    if "questions" in payload:
        open_attempts = (
            s.query(func.count(ExerciseCompletion.id))
            .filter(ExerciseCompletion.exercise_id == exercise.id, ExerciseCompletion.completed_at.is_(None))
            .scalar()
        )
        if open_attempts:
            raise ConflictError("Questions cannot be replaced while attempts are in progress.")
        # Old rows go first; question numbers are unique per exercise.
        exercise.questions.clear()
        s.flush()
        exercise.questions = _build_questions(payload["questions"])
    s.flush()
    record_event(
        s,
        actor=user,
        action="exercise.update",
        entity_type="Exercise",
        entity_id=str(exercise.id),
        metadata={"fields": sorted(k for k in payload if k != "questions"), "questions_replaced": "questions" in payload},
    )
    return exercise


def get_exercise(s: "Session", exercise_id: int, *, active_only: bool = True) -> TabletopExercise:
    exercise = s.get(TabletopExercise, exercise_id)
    if exercise is None or (active_only and not exercise.is_active):
        raise NotFoundError("Exercise")
    return exercise


# ---------- Catalog ----------
def list_exercises(s: "Session", args) -> "Query":
    difficulty = clean_str(args.get("difficulty"))
    if difficulty and difficulty not in DIFFICULTIES:
        raise ValidationError(f"Invalid difficulty. Must be one of: {', '.join(DIFFICULTIES)}")
    sort = clean_str(args.get("sort")) or "newest"
    if sort not in SORTS:
        raise ValidationError(f"Invalid sort. Must be one of: {', '.join(SORTS)}")

    q = s.query(TabletopExercise).filter(TabletopExercise.is_active.is_(True))
    if difficulty:
        q = q.filter(TabletopExercise.difficulty == difficulty)
    category = clean_str(args.get("category"))
    if category:
        q = q.filter(TabletopExercise.category == category)
    term = clean_str(args.get("q"))
    if term:
        like = f"%{term}%"
        q = q.filter(or_(TabletopExercise.title.ilike(like), TabletopExercise.description.ilike(like)))

    if sort == "popular":
        popularity = (
            s.query(func.count(ExerciseCompletion.id))
            .filter(ExerciseCompletion.exercise_id == TabletopExercise.id, ExerciseCompletion.completed_at.isnot(None))
            .correlate(TabletopExercise)
            .scalar_subquery()
        )
        return q.order_by(popularity.desc(), TabletopExercise.id.desc())
    if sort in ("difficulty-asc", "difficulty-desc"):
        rank = case({d: i for i, d in enumerate(DIFFICULTIES, start=1)}, value=TabletopExercise.difficulty, else_=99)
        return q.order_by(rank.asc() if sort == "difficulty-asc" else rank.desc(), TabletopExercise.id.asc())
    if sort == "duration":
        return q.order_by(TabletopExercise.estimated_duration.asc(), TabletopExercise.id.asc())
    return q.order_by(TabletopExercise.created_at.desc(), TabletopExercise.id.desc())


def user_exercise_status(s: "Session", org: "Organization", user: "User", exercise_ids: list[int]) -> dict[int, dict]:
    """Per exercise: ``not_started``, ``in_progress`` (open attempt) or ``completed`` with the best score."""
    status: dict[int, dict] = {eid: {"status": "not_started", "bestPercentage": None, "sessionId": None} for eid in exercise_ids}
    if not exercise_ids:
        return status
    attempts = (
        s.query(ExerciseCompletion)
        .filter(
            ExerciseCompletion.organization_id == org.id,
            ExerciseCompletion.user_id == user.id,
            ExerciseCompletion.exercise_id.in_(exercise_ids),
        )
        .all()
    )
    for a in attempts:
        entry = status[a.exercise_id]
        if a.completed_at is None:
            entry["sessionId"] = a.id
            if entry["status"] == "not_started":
                entry["status"] = "in_progress"
            continue
        entry["status"] = "completed"
        if entry["bestPercentage"] is None or a.percentage > entry["bestPercentage"]:
            entry["bestPercentage"] = a.percentage
    return status


def exercise_stats(s: "Session", org: "Organization", exercise: TabletopExercise) -> dict:
    finished = (
        s.query(ExerciseCompletion)
        .filter(
            ExerciseCompletion.organization_id == org.id,
            ExerciseCompletion.exercise_id == exercise.id,
            ExerciseCompletion.completed_at.isnot(None),
        )
        .all()
    )
    if not finished:
        return {"completionCount": 0, "averageScore": 0, "successRate": 0}
    return {
        "completionCount": len(finished),
        "averageScore": round(sum(c.percentage for c in finished) / len(finished), 1),
        "successRate": round(sum(1 for c in finished if c.passed) / len(finished) * 100, 1),
    }


def exercise_detail(exercise: TabletopExercise) -> dict:
    """Exercise with its questions; correct answers and explanations are withheld."""
    data = exercise.to_dict()
    data["questions"] = [q.to_dict() for q in exercise.questions]
    return data


# ---------- Attempts ----------
def start_exercise(s: "Session", org: "Organization", exercise: TabletopExercise, user: "User") -> tuple[ExerciseCompletion, bool]:
    """Returns (attempt, created); an unfinished attempt is resumed instead of opening a new one."""
    existing = (
        s.query(ExerciseCompletion)
        .filter(
            ExerciseCompletion.organization_id == org.id,
            ExerciseCompletion.user_id == user.id,
            ExerciseCompletion.exercise_id == exercise.id,
            ExerciseCompletion.completed_at.is_(None),
        )
        .order_by(ExerciseCompletion.started_at.desc())
        .first()
    )
    if existing is not None:
        return existing, False
    if not exercise.questions:
        raise ValidationError("This exercise has no questions.")

    completion = ExerciseCompletion(
        exercise_id=exercise.id,
        user_id=user.id,
        organization_id=org.id,
        started_at=utcnow(),
        score=0,
        total_score=exercise.total_points,
        answers={},
        progress={},
    )
    s.add(completion)
    s.flush()
    record_event(
        s,
        actor=user,
        action="exercise.start",
        entity_type="Exercise",
        entity_id=str(exercise.id),
        metadata={"session_id": completion.id},
        organization_id=org.id,
    )
    return completion, True


def get_session(s: "Session", org: "Organization", user: "User", session_id: int) -> ExerciseCompletion:
    completion = s.get(ExerciseCompletion, session_id)
    # Other users' attempts are indistinguishable from missing ones.
    if completion is None or completion.organization_id != org.id or completion.user_id != user.id:
        raise NotFoundError("Exercise session")
    return completion


def _normalize_answers(exercise: TabletopExercise, answers: Any) -> dict[str, str]:
    if answers is None:
        return {}
    if not isinstance(answers, dict):
        raise ValidationError("answers must be an object mapping question ids to option ids.")
    questions = {str(q.id): q for q in exercise.questions}
    errors: list[str] = []
    normalized: dict[str, str] = {}
    for key, value in answers.items():
        question = questions.get(str(key))
        if question is None:
            errors.append(f"Unknown question: {key}")
            continue
        if value is None or value == "":
            continue
        option = str(value)
        if option not in {str(o.get("id")) for o in question.options or []}:
            errors.append(f"Question {question.question_number}: unknown option {option}")
            continue
        normalized[str(question.id)] = option
    if errors:
        raise ValidationError(errors)
    return normalized


def save_progress(
    s: "Session",
    completion: ExerciseCompletion,
    answers: Any,
    *,
    current_question: int | None = None,
    time_remaining: int | None = None,
) -> ExerciseCompletion:
    if completion.completed_at is not None:
        raise ConflictError("This exercise session has already been submitted.")
    completion.answers = _normalize_answers(completion.exercise, answers)
    completion.progress = {
        "currentQuestion": current_question,
        "timeRemaining": time_remaining,
        "answered": len(completion.answers),
        "lastSaved": utcnow().isoformat(),
    }
    s.flush()
    return completion


def score_answers(exercise: TabletopExercise, answers: dict[str, str]) -> tuple[int, int]:
    """Returns (score, correct_count)."""
    score = correct = 0
    for q in exercise.questions:
        if answers.get(str(q.id)) == q.correct_answer:
            score += q.points or 1
            correct += 1
    return score, correct


def submit_exercise(
    s: "Session",
    org: "Organization",
    completion: ExerciseCompletion,
    answers: Any,
    user: "User",
    *,
    now: datetime | None = None,
) -> dict:
    if completion.completed_at is not None:
        raise ConflictError("This exercise session has already been submitted.")
    exercise = completion.exercise
    final = _normalize_answers(exercise, answers if answers is not None else completion.answers)
    score, correct = score_answers(exercise, final)

    completion.answers = final
    completion.score = score
    # Questions may have been edited since the attempt opened.
    completion.total_score = exercise.total_points
    completion.completed_at = now or utcnow()
    completion.progress = dict(completion.progress or {}, answered=len(final))
    if completion.passed:
        completion.certificate_id = certificate_id_for(completion)
    s.flush()

    record_event(
        s,
        actor=user,
        action="exercise.submit",
        entity_type="Exercise",
        entity_id=str(exercise.id),
        metadata={
            "session_id": completion.id,
            "score": score,
            "total_score": completion.total_score,
            "passed": completion.passed,
        },
        organization_id=org.id,
    )
    logger.info("Exercise %s submitted by user %s: %s/%s", exercise.id, user.id, score, completion.total_score)
    return {
        "sessionId": completion.id,
        "score": score,
        "totalScore": completion.total_score,
        "percentage": completion.percentage,
        "passed": completion.passed,
        "correctAnswers": correct,
        "totalQuestions": len(exercise.questions),
        "certificateId": completion.certificate_id,
    }


def exercise_results(completion: ExerciseCompletion) -> dict:
    if completion.completed_at is None:
        raise ConflictError("Results are available after the exercise is submitted.")
    answers = completion.answers or {}
    questions = []
    correct = 0
    for q in completion.exercise.questions:
        selected = answers.get(str(q.id))
        is_correct = selected == q.correct_answer
        correct += 1 if is_correct else 0
        item = q.to_dict(include_answer=True)
        item["selectedAnswer"] = selected
        item["isCorrect"] = is_correct
        questions.append(item)
    data = completion.to_dict()
    data["exercise"] = completion.exercise.to_dict()
    data["questions"] = questions
    data["correctAnswers"] = correct
    data["totalQuestions"] = len(questions)
    data["timeTakenMinutes"] = round((completion.completed_at - completion.started_at).total_seconds() / 60)
    return data


def exercise_history(s: "Session", org: "Organization", user: "User", status: str | None = None) -> "Query":
    q = s.query(ExerciseCompletion).filter(
        ExerciseCompletion.organization_id == org.id,
        ExerciseCompletion.user_id == user.id,
    )
    if status == "completed":
        q = q.filter(ExerciseCompletion.completed_at.isnot(None))
    elif status == "in_progress":
        q = q.filter(ExerciseCompletion.completed_at.is_(None))
    elif status not in (None, "all"):
        raise ValidationError("status must be one of: all, completed, in_progress")
    return q.order_by(ExerciseCompletion.started_at.desc(), ExerciseCompletion.id.desc())


def leaderboard(s: "Session", org: "Organization", period: str = "all", *, limit: int = 50, now: datetime | None = None) -> list[dict]:
    """
    Ranks organization members by the sum of their best score on each exercise.
    Only attempts completed within the period count.
    """
    if period not in LEADERBOARD_PERIODS:
        raise ValidationError(f"period must be one of: {', '.join(LEADERBOARD_PERIODS)}")
    q = s.query(ExerciseCompletion).filter(
        ExerciseCompletion.organization_id == org.id,
        ExerciseCompletion.completed_at.isnot(None),
    )
    window = LEADERBOARD_PERIODS[period]
    if window is not None:
        q = q.filter(ExerciseCompletion.completed_at >= (now or utcnow()) - window)

    best: dict[int, dict[int, ExerciseCompletion]] = {}
    for c in q.all():
        per_user = best.setdefault(c.user_id, {})
        current = per_user.get(c.exercise_id)
        if current is None or (c.score, c.percentage) > (current.score, current.percentage):
            per_user[c.exercise_id] = c

    rows = []
    for user_id, attempts in best.items():
        user = next(iter(attempts.values())).user
        percentages = [a.percentage for a in attempts.values()]
        rows.append(
            {
                "userId": user_id,
                "name": (user.name or user.email) if user else None,
                "email": user.email if user else None,
                "totalPoints": sum(a.score for a in attempts.values()),
                "exercisesCompleted": len(attempts),
                "averageScore": round(sum(percentages) / len(percentages), 1),
                "certificates": sum(1 for a in attempts.values() if a.passed),
            }
        )
    rows.sort(key=lambda r: (-r["totalPoints"], -r["averageScore"], r["name"] or ""))
    for rank, row in enumerate(rows, start=1):
        row["rank"] = rank
    return rows[:limit]


def certificate(org: "Organization", completion: ExerciseCompletion) -> dict:
    if not completion.passed:
        raise ConflictError(f"A certificate is issued only for passed exercises ({PASSING_PERCENTAGE}% or higher).")
    user = completion.user
    return {
        "certificateId": completion.certificate_id or certificate_id_for(completion),
        "recipientName": (user.name or user.email) if user else None,
        "recipientEmail": user.email if user else None,
        "organizationName": org.name,
        "exerciseTitle": completion.exercise.title,
        "difficulty": completion.exercise.difficulty,
        "score": completion.score,
        "totalScore": completion.total_score,
        "percentage": completion.percentage,
        "completedAt": completion.completed_at.isoformat(),
    }


# ---------- Seeding ----------
DEFAULT_EXERCISES: list[dict] = [
    {
        "title": "Ransomware at Month End",
        "description": "Finance file shares are encrypted during the month-end close.",
        "scenario": (
            "At 07:45 the finance team reports that shared drives show files with a .locked extension "
            "and a ransom note demanding payment within 72 hours. Backups ran overnight."
        ),
        "difficulty": "intermediate",
        "estimated_duration": 30,
        "category": "ransomware",
        "objectives": [
            "Prioritize containment over investigation",
            "Identify stakeholders who must be notified",
            "Validate backup integrity before recovery",
        ],
        "questions": [
            {
                "question": "What is the first action once ransomware is confirmed on the file server?",
                "options": [
                    {"id": "a", "text": "Pay the ransom to limit downtime"},
                    {"id": "b", "text": "Isolate affected hosts from the network"},
                    {"id": "c", "text": "Restore from last night's backup immediately"},
                    {"id": "d", "text": "Reboot the file server"},
                ],
                "correct_answer": "b",
                "explanation": "Isolation stops further encryption and lateral movement while evidence is preserved.",
                "points": 2,
            },
            {
                "question": "Before restoring from backup, what must be confirmed?",
                "options": [
                    {"id": "a", "text": "The backup predates the initial compromise and is clean"},
                    {"id": "b", "text": "The attacker has confirmed the decryption key works"},
                    {"id": "c", "text": "All users have changed their passwords"},
                ],
                "correct_answer": "a",
                "explanation": "Restoring an infected backup reintroduces the attacker.",
            },
            {
                "question": "Who should be involved when deciding on regulatory notification?",
                "options": [
                    {"id": "a", "text": "Only the IT team"},
                    {"id": "b", "text": "Legal counsel and the incident commander"},
                    {"id": "c", "text": "The attacker's negotiator"},
                ],
                "correct_answer": "b",
                "explanation": "Notification obligations are legal decisions informed by the technical facts.",
            },
        ],
    },
    {
        "title": "Credential Phishing Campaign",
        "description": "Several employees entered credentials on a spoofed login page.",
        "scenario": (
            "The service desk receives reports of an email asking staff to re-validate their mailbox. "
            "Proxy logs show twelve users visited the linked page."
        ),
        "difficulty": "beginner",
        "estimated_duration": 15,
        "category": "phishing",
        "objectives": ["Contain compromised accounts", "Remove the message from all mailboxes"],
        "questions": [
            {
                "question": "Which accounts should have their sessions revoked first?",
                "options": [
                    {"id": "a", "text": "Users who visited the page and submitted credentials"},
                    {"id": "b", "text": "All executives"},
                    {"id": "c", "text": "Nobody until the investigation is finished"},
                ],
                "correct_answer": "a",
                "explanation": "Start with confirmed exposures, then widen the scope as evidence emerges.",
            },
            {
                "question": "What stops other employees from falling for the same message?",
                "options": [
                    {"id": "a", "text": "Purging the message from all mailboxes and blocking the sender domain"},
                    {"id": "b", "text": "Waiting for users to report it"},
                ],
                "correct_answer": "a",
                "explanation": "Purge and block removes the lure from inboxes that have not opened it yet.",
            },
        ],
    },
]


def seed_exercises(s: "Session", user: "User | None" = None) -> int:
    """Insert default exercises that are missing (matched by title). Idempotent."""
    existing = {t for (t,) in s.query(TabletopExercise.title).all()}
    created = 0
    for entry in DEFAULT_EXERCISES:
        if entry["title"] in existing:
            continue
        exercise = TabletopExercise(created_by_user_id=user.id if user else None, difficulty="beginner")
        _apply_exercise_fields(exercise, entry)
        exercise.questions = _build_questions(entry["questions"])
        s.add(exercise)
        created += 1
    s.flush()
    return created
