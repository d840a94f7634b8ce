"""
Runbooks and their executions.

An execution snapshots the runbook's steps (ordered by phase, then step number)
into StepExecution rows. Time spent paused is accumulated in
``paused_duration`` so elapsed and total durations exclude it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.irdesk.audit import record_event
from app.irdesk.errors import ApiError, ConflictError, NotFoundError, ValidationError
from app.irdesk.modules.licensing.service import add_storage_usage, enforce_quota
from app.irdesk.modules.runbooks.models import (
    EXECUTION_STATUSES,
    PHASES,
    STEP_STATUSES,
    ExecutionEvidence,
    Runbook,
    RunbookExecution,
    RunbookStep,
    StepExecution,
)
from app.irdesk.modules.tags.service import clear_entity_tags
from app.irdesk.storage import Storage, store_upload
from app.irdesk.utils import clean_str, parse_bool, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

    from app.irdesk.models import User
    from app.irdesk.modules.organizations.models import Organization

logger = logging.getLogger(__name__)

ACTIVE_EXECUTION_STATUSES = ("in_progress", "paused")
_FINISHED_STEP_STATUSES = ("completed", "skipped", "failed")
_STEP_FIELDS = ("phase", "step_number", "title", "description", "responsible_role", "estimated_duration", "is_critical", "tools", "notes")


# ---------- Validation ----------
def validate_steps(steps: Any) -> list[str]:
    if not isinstance(steps, list):
        return ["steps must be a list."]
    errors: list[str] = []
    for idx, step in enumerate(steps, start=1):
        if not isinstance(step, dict):
            errors.append(f"Step {idx}: must be an object.")
            continue
        phase = clean_str(step.get("phase"))
        if phase not in PHASES:
            errors.append(f"Step {idx}: phase must be one of: {', '.join(PHASES)}")
        if not clean_str(step.get("title")):
            errors.append(f"Step {idx}: title is required.")
        for field in ("step_number", "estimated_duration"):
            try:
                value = parse_int(step.get(field), field=field)
            except ValidationError as e:
                errors.append(f"Step {idx}: {e.message}")
                continue
            if value is not None and value < 1:
                errors.append(f"Step {idx}: {field} must be at least 1.")
    return errors


def validate_runbook_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "title" in payload:
        title = clean_str(payload.get("title"))
        if not title:
            errors.append("Title is required.")
        elif len(title) > 255:
            errors.append("Title must be 255 characters or fewer.")
    version = clean_str(payload.get("version"))
    if version and len(version) > 20:
        errors.append("Version must be 20 characters or fewer.")
    if "steps" in payload:
        errors.extend(validate_steps(payload.get("steps")))
    return errors


def _build_steps(raw_steps: list[dict]) -> list[RunbookStep]:
    """Missing step numbers continue the sequence within their phase."""
    counters: dict[str, int] = {}
    steps = []
    for raw in raw_steps:
        phase = clean_str(raw.get("phase"))
        number = parse_int(raw.get("step_number"), field="step_number")
        if number is None:
            number = counters.get(phase, 0) + 1
        counters[phase] = max(counters.get(phase, 0), number)
        duration = parse_int(raw.get("estimated_duration"), field="estimated_duration")
        steps.append(
            RunbookStep(
                phase=phase,
                step_number=number,
                title=clean_str(raw.get("title")),
                description=clean_str(raw.get("description")),
                responsible_role=clean_str(raw.get("responsible_role")),
                assigned_to_user_id=parse_int(raw.get("assigned_to"), field="assigned_to"),
                estimated_duration=duration or 30,
                is_critical=bool(parse_bool(raw.get("is_critical"))),
                tools=clean_str(raw.get("tools")),
                notes=clean_str(raw.get("notes")),
            )
        )
    return steps


def _copy_steps(runbook: Runbook) -> list[RunbookStep]:
    return [
        RunbookStep(**{f: getattr(st, f) for f in _STEP_FIELDS}, assigned_to_user_id=st.assigned_to_user_id)
        for st in runbook.ordered_steps()
    ]


# ---------- Runbooks ----------
def list_runbooks(s: "Session", org: "Organization", args) -> "Query":
    q = s.query(Runbook).filter(
        or_(Runbook.organization_id == org.id, Runbook.organization_id.is_(None)),
        Runbook.is_active.is_(True),
    )
    search = clean_str(args.get("q"))
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Runbook.title.ilike(like), Runbook.description.ilike(like)))
    classification = clean_str(args.get("classification"))
    if classification:
        q = q.filter(Runbook.classification == classification)
    template = parse_bool(args.get("template"))
    if template is not None:
        q = q.filter(Runbook.is_template.is_(template))
    return q.order_by(Runbook.is_template.desc(), Runbook.title.asc(), Runbook.id.asc())


def get_runbook(s: "Session", org: "Organization", runbook_id: int) -> Runbook:
    runbook = s.get(Runbook, runbook_id)
    if runbook is None or runbook.organization_id not in (None, org.id):
        raise NotFoundError("Runbook")
    return runbook


def steps_by_phase(runbook: Runbook) -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {p: [] for p in PHASES}
    for st in runbook.ordered_steps():
        grouped.setdefault(st.phase, []).append(st.to_dict())
    return grouped


def runbook_detail(runbook: Runbook) -> dict:
    data = runbook.to_dict(include_steps=True)
    data["stepsByPhase"] = steps_by_phase(runbook)
    data["estimatedTotalMinutes"] = sum(st.estimated_duration or 0 for st in runbook.steps)
    return data


def _ensure_owned(org: "Organization", runbook: Runbook) -> None:
    if runbook.organization_id is None:
        raise ApiError("Global runbook templates are read-only; clone it first.", code="READ_ONLY", status_code=403)
    if runbook.organization_id != org.id:
        raise NotFoundError("Runbook")


def create_runbook(s: "Session", org: "Organization", payload: dict, user: "User") -> Runbook:
    errors = validate_runbook_payload(payload)
    if errors:
        raise ValidationError(errors)
    enforce_quota(s, org, "runbooks")
    runbook = Runbook(
        organization_id=org.id,
        title=clean_str(payload.get("title")),
        description=clean_str(payload.get("description")),
        classification=clean_str(payload.get("classification")),
        is_template=bool(parse_bool(payload.get("is_template"))),
        version=clean_str(payload.get("version")) or "1.0",
        created_by_user_id=user.id,
    )
    runbook.steps = _build_steps(payload.get("steps") or [])
    s.add(runbook)
    s.flush()
    record_event(
        s,
        actor=user,
        action="runbook.create",
        entity_type="Runbook",
        entity_id=str(runbook.id),
        metadata={"title": runbook.title, "steps": len(runbook.steps)},
        organization_id=org.id,
    )
    return runbook


def update_runbook(s: "Session", org: "Organization", runbook: Runbook, payload: dict, user: "User") -> Runbook:
    _ensure_owned(org, runbook)
    errors = validate_runbook_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    changed = []
    if clean_str(payload.get("title")):
        runbook.title = clean_str(payload.get("title"))
        changed.append("title")
    for field in ("description", "classification"):
        if field in payload:
            setattr(runbook, field, clean_str(payload.get(field)))
            changed.append(field)
    if clean_str(payload.get("version")):
        runbook.version = clean_str(payload.get("version"))
        changed.append("version")
    for field in ("is_template", "is_active"):
        if field in payload:
            setattr(runbook, field, bool(parse_bool(payload.get(field))))
            changed.append(field)
    if "steps" in payload:
        # Step executions reference step rows; replacing them would orphan execution history
        if _execution_count(s, runbook):
            raise ConflictError("Runbook has executions; create a new version to change its steps.")
        runbook.steps = _build_steps(payload.get("steps") or [])
        changed.append("steps")
    runbook.updated_at = utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="runbook.update",
        entity_type="Runbook",
        entity_id=str(runbook.id),
        metadata={"fields": changed},
        organization_id=org.id,
    )
    return runbook


def _execution_count(s: "Session", runbook: Runbook, statuses: tuple[str, ...] | None = None) -> int:
    q = s.query(func.count(RunbookExecution.id)).filter(RunbookExecution.runbook_id == runbook.id)
    if statuses:
        q = q.filter(RunbookExecution.status.in_(statuses))
    return q.scalar() or 0


def delete_evidence_files(s: "Session", storage: Storage, execution_ids) -> int:
    """Removes stored step evidence for the given executions; returns the bytes freed."""
    freed = 0
    if not execution_ids:
        return freed
    for ev in s.query(ExecutionEvidence).filter(ExecutionEvidence.execution_id.in_(list(execution_ids))).all():
        storage.delete(ev.storage_key)
        freed += ev.size_bytes or 0
    return freed


def delete_runbook(s: "Session", org: "Organization", runbook: Runbook, user: "User", storage: Storage) -> None:
    _ensure_owned(org, runbook)
    if _execution_count(s, runbook, ACTIVE_EXECUTION_STATUSES):
        raise ConflictError("Runbook has an execution in progress.")
    execution_ids = [eid for (eid,) in s.query(RunbookExecution.id).filter(RunbookExecution.runbook_id == runbook.id)]
    freed = delete_evidence_files(s, storage, execution_ids)
    if freed:
        add_storage_usage(s, org, -freed)
    clear_entity_tags(s, org, "runbook", runbook.id)
    record_event(
        s,
        actor=user,
        action="runbook.delete",
        entity_type="Runbook",
        entity_id=str(runbook.id),
        metadata={"title": runbook.title},
        organization_id=org.id,
    )
    s.delete(runbook)


def clone_runbook(s: "Session", org: "Organization", source: Runbook, user: "User", *, title: str | None = None) -> Runbook:
    """Copies a template (global or the organization's own) into an editable organization runbook."""
    enforce_quota(s, org, "runbooks")
    runbook = Runbook(
        organization_id=org.id,
        title=title or source.title,
        description=source.description,
        classification=source.classification,
        is_template=False,
        version="1.0",
        created_by_user_id=user.id,
    )
    runbook.steps = _copy_steps(source)
    s.add(runbook)
    s.flush()
    record_event(
        s,
        actor=user,
        action="runbook.clone",
        entity_type="Runbook",
        entity_id=str(runbook.id),
        metadata={"source_id": source.id, "title": runbook.title},
        organization_id=org.id,
    )
    return runbook


def create_version(s: "Session", org: "Organization", source: Runbook, version: str | None, user: "User") -> Runbook:
    version = clean_str(version)
    if not version:
        raise ValidationError("version is required.")
    if version == source.version:
        raise ValidationError("New version must differ from the current version.")
    enforce_quota(s, org, "runbooks")
    runbook = Runbook(
        organization_id=org.id,
        title=source.title,
        description=source.description,
        classification=source.classification,
        is_template=source.is_template,
        version=version,
        created_by_user_id=user.id,
    )
    runbook.steps = _copy_steps(source)
    s.add(runbook)
    s.flush()
    record_event(
        s,
        actor=user,
        action="runbook.version",
        entity_type="Runbook",
        entity_id=str(runbook.id),
        metadata={"source_id": source.id, "version": version},
        organization_id=org.id,
    )
    return runbook


# ---------- Executions ----------
def list_executions(s: "Session", org: "Organization", args) -> "Query":
    q = s.query(RunbookExecution).filter(RunbookExecution.organization_id == org.id)
    status = clean_str(args.get("status"))
    if status:
        if status not in EXECUTION_STATUSES:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(EXECUTION_STATUSES)}")
        q = q.filter(RunbookExecution.status == status)
    runbook_id = parse_int(args.get("runbook_id"), field="runbook_id")
    if runbook_id is not None:
        q = q.filter(RunbookExecution.runbook_id == runbook_id)
    incident_id = parse_int(args.get("incident_id"), field="incident_id")
    if incident_id is not None:
        q = q.filter(RunbookExecution.incident_id == incident_id)
    return q.order_by(RunbookExecution.started_at.desc(), RunbookExecution.id.desc())


def get_execution(s: "Session", org: "Organization", execution_id: int) -> RunbookExecution:
    execution = s.get(RunbookExecution, execution_id)
    if execution is None or execution.organization_id != org.id:
        raise NotFoundError("Execution")
    return execution


def start_execution(
    s: "Session",
    org: "Organization",
    runbook: Runbook,
    user: "User",
    *,
    incident_id: Any = None,
    now: datetime | None = None,
) -> RunbookExecution:
    steps = runbook.ordered_steps()
    if not steps:
        raise ValidationError("Runbook has no steps to execute.")
    incident_pk = parse_int(incident_id, field="incident_id")
    if incident_pk is not None:
        from app.irdesk.modules.incidents.service import get_incident

        get_incident(s, org, incident_pk)
    now = now or utcnow()
    execution = RunbookExecution(
        runbook_id=runbook.id,
        incident_id=incident_pk,
        organization_id=org.id,
        executor_user_id=user.id,
        status="in_progress",
        started_at=now,
        total_steps=len(steps),
        completed_steps=0,
    )
    execution.step_executions = [
        StepExecution(
            step_id=st.id,
            step_index=idx,
            status="in_progress" if idx == 0 else "pending",
            started_at=now if idx == 0 else None,
        )
        for idx, st in enumerate(steps)
    ]
    s.add(execution)
    s.flush()
    record_event(
        s,
        actor=user,
        action="runbook.execution_start",
        entity_type="RunbookExecution",
        entity_id=str(execution.id),
        metadata={"runbook_id": runbook.id, "incident_id": incident_pk, "total_steps": len(steps)},
        organization_id=org.id,
    )
    return execution


def _require_running(execution: RunbookExecution) -> None:
    if execution.status == "paused":
        raise ConflictError("Execution is paused; resume it first.")
    if execution.status != "in_progress":
        raise ConflictError(f"Execution is {execution.status}.")


def get_step_execution(execution: RunbookExecution, step_index: int) -> StepExecution:
    step = next((se for se in execution.step_executions if se.step_index == step_index), None)
    if step is None:
        raise NotFoundError("Step")
    return step


def update_step(
    s: "Session",
    org: "Organization",
    execution: RunbookExecution,
    step_index: int,
    status: str | None,
    user: "User",
    *,
    notes: str | None = None,
    now: datetime | None = None,
) -> StepExecution:
    if status not in STEP_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(STEP_STATUSES)}")
    _require_running(execution)
    step = get_step_execution(execution, step_index)
    now = now or utcnow()
    old = step.status
    step.status = status
    if status == "in_progress":
        step.started_at = step.started_at or now
        step.completed_at = None
        step.executed_by_user_id = user.id
    elif status in _FINISHED_STEP_STATUSES:
        step.completed_at = now
        step.executed_by_user_id = user.id
        if step.started_at is not None:
            step.duration = int((now - step.started_at).total_seconds())
    else:
        step.started_at = None
        step.completed_at = None
        step.duration = None
    if notes:
        step.notes = notes

    if status in ("completed", "skipped"):
        following = sorted(
            (se for se in execution.step_executions if se.step_index > step_index and se.status == "pending"),
            key=lambda se: se.step_index,
        )
        if following:
            following[0].status = "in_progress"
            following[0].started_at = now

    execution.completed_steps = sum(1 for se in execution.step_executions if se.status == "completed")
    execution.updated_at = now
    record_event(
        s,
        actor=user,
        action="runbook.step_update",
        entity_type="RunbookExecution",
        entity_id=str(execution.id),
        metadata={"step_index": step_index, "from": old, "to": status},
        organization_id=org.id,
    )
    return step


def pause_execution(s: "Session", org: "Organization", execution: RunbookExecution, user: "User", *, now: datetime | None = None) -> RunbookExecution:
    if execution.status == "paused":
        raise ConflictError("Execution is already paused.")
    _require_running(execution)
    now = now or utcnow()
    execution.status = "paused"
    execution.paused_at = now
    execution.updated_at = now
    record_event(
        s,
        actor=user,
        action="runbook.execution_pause",
        entity_type="RunbookExecution",
        entity_id=str(execution.id),
        organization_id=org.id,
    )
    return execution


def _fold_pause(execution: RunbookExecution, now: datetime) -> None:
    if execution.paused_at is not None:
        execution.paused_duration = (execution.paused_duration or 0) + int((now - execution.paused_at).total_seconds())
        execution.paused_at = None


def resume_execution(s: "Session", org: "Organization", execution: RunbookExecution, user: "User", *, now: datetime | None = None) -> RunbookExecution:
    if execution.status != "paused":
        raise ConflictError("Execution is not paused.")
    now = now or utcnow()
    _fold_pause(execution, now)
    execution.status = "in_progress"
    execution.resumed_at = now
    execution.updated_at = now
    record_event(
        s,
        actor=user,
        action="runbook.execution_resume",
        entity_type="RunbookExecution",
        entity_id=str(execution.id),
        metadata={"paused_duration": execution.paused_duration},
        organization_id=org.id,
    )
    return execution


def _finish(execution: RunbookExecution, status: str, now: datetime, notes: str | None) -> None:
    if execution.status not in ACTIVE_EXECUTION_STATUSES:
        raise ConflictError(f"Execution is already {execution.status}.")
    _fold_pause(execution, now)
    execution.status = status
    execution.completed_at = now
    execution.total_duration = max(int((now - execution.started_at).total_seconds()) - (execution.paused_duration or 0), 0)
    if notes:
        execution.notes = notes
    execution.updated_at = now


def complete_execution(
    s: "Session",
    org: "Organization",
    execution: RunbookExecution,
    user: "User",
    *,
    notes: str | None = None,
    now: datetime | None = None,
) -> RunbookExecution:
    _finish(execution, "completed", now or utcnow(), notes)
    record_event(
        s,
        actor=user,
        action="runbook.execution_complete",
        entity_type="RunbookExecution",
        entity_id=str(execution.id),
        metadata={"total_duration": execution.total_duration, "completed_steps": execution.completed_steps},
        organization_id=org.id,
    )
    logger.info("Runbook execution completed id=%s duration=%ss", execution.id, execution.total_duration)
    return execution


def abandon_execution(
    s: "Session",
    org: "Organization",
    execution: RunbookExecution,
    user: "User",
    *,
    notes: str | None = None,
    now: datetime | None = None,
) -> RunbookExecution:
    _finish(execution, "abandoned", now or utcnow(), notes)
    record_event(
        s,
        actor=user,
        action="runbook.execution_abandon",
        entity_type="RunbookExecution",
        entity_id=str(execution.id),
        reason=notes,
        organization_id=org.id,
    )
    return execution


def elapsed_seconds(execution: RunbookExecution, now: datetime | None = None) -> int:
    """Working time so far; time spent paused is excluded."""
    if execution.total_duration is not None and execution.status not in ACTIVE_EXECUTION_STATUSES:
        return execution.total_duration
    now = now or utcnow()
    paused = execution.paused_duration or 0
    if execution.status == "paused" and execution.paused_at is not None:
        paused += int((now - execution.paused_at).total_seconds())
    return max(int((now - execution.started_at).total_seconds()) - paused, 0)


def phase_progress(execution: RunbookExecution) -> list[dict]:
    out = []
    for phase in PHASES:
        steps = [se for se in execution.step_executions if se.step and se.step.phase == phase]
        if not steps:
            continue
        done = sum(1 for se in steps if se.status in ("completed", "skipped"))
        if done == len(steps):
            state = "completed"
        elif any(se.status != "pending" for se in steps):
            state = "in_progress"
        else:
            state = "pending"
        out.append(
            {
                "phase": phase,
                "totalSteps": len(steps),
                "completedSteps": sum(1 for se in steps if se.status == "completed"),
                "skippedSteps": sum(1 for se in steps if se.status == "skipped"),
                "failedSteps": sum(1 for se in steps if se.status == "failed"),
                "percentage": round(done / len(steps) * 100),
                "status": state,
            }
        )
    return out


def execution_detail(execution: RunbookExecution, now: datetime | None = None) -> dict:
    data = execution.to_dict()
    data["steps"] = [se.to_dict() for se in execution.step_executions]
    data["elapsedSeconds"] = elapsed_seconds(execution, now)
    data["phases"] = phase_progress(execution)
    current = next((se for se in execution.step_executions if se.status == "in_progress"), None)
    data["currentStepIndex"] = current.step_index if current else None
    return data


def execution_report(s: "Session", execution: RunbookExecution) -> dict:
    evidence = (
        s.query(ExecutionEvidence)
        .filter(ExecutionEvidence.execution_id == execution.id)
        .order_by(ExecutionEvidence.uploaded_at.asc())
        .all()
    )
    steps = execution.step_executions
    return {
        "execution": execution.to_dict(),
        "steps": [se.to_dict() for se in steps],
        "phases": phase_progress(execution),
        "evidence": [e.to_dict() for e in evidence],
        "summary": {
            "totalSteps": len(steps),
            "completedSteps": sum(1 for se in steps if se.status == "completed"),
            "skippedSteps": sum(1 for se in steps if se.status == "skipped"),
            "failedSteps": sum(1 for se in steps if se.status == "failed"),
            "criticalStepsMissed": sum(
                1 for se in steps if se.step and se.step.is_critical and se.status != "completed"
            ),
            "totalDuration": execution.total_duration,
            "pausedDuration": execution.paused_duration,
            "evidenceCount": len(evidence),
        },
    }


# ---------- Evidence ----------
def upload_step_evidence(
    s: "Session",
    org: "Organization",
    execution: RunbookExecution,
    step_index: int,
    file_bytes: bytes,
    filename: str,
    content_type: str,
    user: "User",
    storage: Storage,
    *,
    max_mb: int,
    description: str | None = None,
) -> ExecutionEvidence:
    from app.irdesk.modules.incidents.service import check_upload_size

    step = get_step_execution(execution, step_index)
    check_upload_size(s, org, len(file_bytes), max_mb)
    key, digest, size = store_upload(storage, "executions", org.id, execution.id, file_bytes, filename, content_type)
    evidence = ExecutionEvidence(
        execution_id=execution.id,
        step_id=step.step_id,
        file_name=filename,
        storage_key=key,
        size_bytes=size,
        content_type=content_type,
        sha256=digest,
        description=description,
        uploaded_by_user_id=user.id,
    )
    s.add(evidence)
    add_storage_usage(s, org, size)
    s.flush()
    record_event(
        s,
        actor=user,
        action="evidence.upload",
        entity_type="ExecutionEvidence",
        entity_id=str(evidence.id),
        metadata={"execution_id": execution.id, "step_index": step_index, "filename": filename, "sha256": digest},
        organization_id=org.id,
    )
    return evidence


def step_evidence(s: "Session", execution: RunbookExecution, step_index: int) -> list[ExecutionEvidence]:
    step = get_step_execution(execution, step_index)
    return (
        s.query(ExecutionEvidence)
        .filter(ExecutionEvidence.execution_id == execution.id, ExecutionEvidence.step_id == step.step_id)
        .order_by(ExecutionEvidence.uploaded_at.desc())
        .all()
    )


def get_execution_evidence(s: "Session", execution: RunbookExecution, evidence_id: int) -> ExecutionEvidence:
    evidence = s.get(ExecutionEvidence, evidence_id)
    if evidence is None or evidence.execution_id != execution.id:
        raise NotFoundError("Evidence")
    return evidence


# ---------- Seed templates ----------
DEFAULT_RUNBOOK_TEMPLATES: list[dict] = [
    {
        "title": "Ransomware Response",
        "classification": "ransomware",
        "description": "Contain, eradicate and recover from a ransomware infection.",
        "steps": [
            {"phase": "detection", "title": "Confirm encryption activity and ransom note", "is_critical": True, "estimated_duration": 15},
            {"phase": "detection", "title": "Identify patient zero and affected hosts", "estimated_duration": 30},
            {"phase": "containment", "title": "Isolate affected hosts from the network", "is_critical": True, "estimated_duration": 15},
            {"phase": "containment", "title": "Disable compromised accounts", "is_critical": True, "estimated_duration": 20},
            {"phase": "eradication", "title": "Remove malware and persistence mechanisms", "estimated_duration": 120},
            {"phase": "recovery", "title": "Restore systems from verified clean backups", "is_critical": True, "estimated_duration": 240},
            {"phase": "post_incident", "title": "Hold lessons-learned review", "estimated_duration": 60},
        ],
    },
    {
        "title": "Phishing Response",
        "classification": "phishing",
        "description": "Triage a reported phishing message and limit credential exposure.",
        "steps": [
            {"phase": "detection", "title": "Collect the reported message and headers", "estimated_duration": 10},
            {"phase": "containment", "title": "Purge the message from all mailboxes", "is_critical": True, "estimated_duration": 20},
            {"phase": "containment", "title": "Block sender domain and malicious URLs", "estimated_duration": 15},
            {"phase": "eradication", "title": "Reset credentials for users who clicked", "is_critical": True, "estimated_duration": 30},
            {"phase": "recovery", "title": "Monitor affected accounts for misuse", "estimated_duration": 60},
            {"phase": "post_incident", "title": "Schedule targeted awareness training", "estimated_duration": 30},
        ],
    },
]


def seed_runbook_templates(s: "Session", user: "User | None") -> int:
    """Creates the platform runbook templates that do not exist yet. Idempotent."""
    created = 0
    for entry in DEFAULT_RUNBOOK_TEMPLATES:
        exists = (
            s.query(Runbook.id)
            .filter(Runbook.organization_id.is_(None), Runbook.title == entry["title"])
            .first()
        )
        if exists:
            continue
        runbook = Runbook(
            organization_id=None,
            title=entry["title"],
            description=entry["description"],
            classification=entry["classification"],
            is_template=True,
            created_by_user_id=user.id if user else None,
        )
        runbook.steps = _build_steps(entry["steps"])
        s.add(runbook)
        created += 1
    s.flush()
    return created
