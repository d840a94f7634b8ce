from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.irdesk.models import Base
from app.irdesk.utils import iso, utcnow

if TYPE_CHECKING:
    from app.irdesk.models import User

# Ordered; steps and progress are always reported in this order.
PHASES = ("detection", "containment", "eradication", "recovery", "post_incident")
EXECUTION_STATUSES = ("in_progress", "paused", "completed", "abandoned")
STEP_STATUSES = ("pending", "in_progress", "completed", "skipped", "failed")


class Runbook(Base):
    """Organization runbook, or a platform template when organization_id is null."""

    __tablename__ = "runbooks"
    __table_args__ = (Index("idx_runbooks_org", "organization_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int | None] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    classification: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_template: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[str] = mapped_column(String(20), nullable=False, default="1.0")

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    steps: Mapped[list["RunbookStep"]] = relationship(
        back_populates="runbook",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def ordered_steps(self) -> list["RunbookStep"]:
        return sorted(self.steps, key=lambda st: (PHASES.index(st.phase) if st.phase in PHASES else len(PHASES), st.step_number))

    def to_dict(self, *, include_steps: bool = False) -> dict:
        data = {
            "id": self.id,
            "organizationId": self.organization_id,
            "title": self.title,
            "description": self.description,
            "classification": self.classification,
            "isTemplate": self.is_template,
            "isActive": self.is_active,
            "version": self.version,
            "stepCount": len(self.steps),
            "createdBy": self.created_by_user_id,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }
        if include_steps:
            data["steps"] = [st.to_dict() for st in self.ordered_steps()]
        return data


class RunbookStep(Base):
    __tablename__ = "runbook_steps"
    __table_args__ = (Index("idx_runbook_steps_runbook", "runbook_id", "phase", "step_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    runbook_id: Mapped[int] = mapped_column(ForeignKey("runbooks.id", ondelete="CASCADE"), nullable=False)
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    responsible_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    assigned_to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    estimated_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=30)  # minutes
    is_critical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tools: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    runbook: Mapped[Runbook] = relationship(back_populates="steps")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "runbookId": self.runbook_id,
            "phase": self.phase,
            "stepNumber": self.step_number,
            "title": self.title,
            "description": self.description,
            "responsibleRole": self.responsible_role,
            "assignedTo": self.assigned_to_user_id,
            "estimatedDuration": self.estimated_duration,
            "isCritical": self.is_critical,
            "tools": self.tools,
            "notes": self.notes,
        }


class RunbookExecution(Base):
    __tablename__ = "runbook_executions"
    __table_args__ = (
        Index("idx_runbook_executions_org_status", "organization_id", "status"),
        Index("idx_runbook_executions_runbook", "runbook_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    runbook_id: Mapped[int] = mapped_column(ForeignKey("runbooks.id", ondelete="CASCADE"), nullable=False)
    incident_id: Mapped[int | None] = mapped_column(ForeignKey("incidents.id", ondelete="SET NULL"), nullable=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    executor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="in_progress")

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    resumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    paused_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # seconds
    total_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # seconds, excludes pauses

    total_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    runbook: Mapped[Runbook] = relationship(lazy="joined")
    executor: Mapped["User"] = relationship("User", lazy="joined")
    step_executions: Mapped[list["StepExecution"]] = relationship(
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="StepExecution.step_index",
        lazy="selectin",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "runbookId": self.runbook_id,
            "runbookTitle": self.runbook.title if self.runbook else None,
            "incidentId": self.incident_id,
            "organizationId": self.organization_id,
            "executorId": self.executor_user_id,
            "executorName": self.executor.name if self.executor else None,
            "status": self.status,
            "startedAt": iso(self.started_at),
            "pausedAt": iso(self.paused_at),
            "resumedAt": iso(self.resumed_at),
            "completedAt": iso(self.completed_at),
            "pausedDuration": self.paused_duration,
            "totalDuration": self.total_duration,
            "totalSteps": self.total_steps,
            "completedSteps": self.completed_steps,
            "notes": self.notes,
        }


class StepExecution(Base):
    __tablename__ = "step_executions"
    __table_args__ = (Index("idx_step_executions_execution", "execution_id", "step_index"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    execution_id: Mapped[int] = mapped_column(ForeignKey("runbook_executions.id", ondelete="CASCADE"), nullable=False)
    step_id: Mapped[int | None] = mapped_column(ForeignKey("runbook_steps.id", ondelete="SET NULL"), nullable=True)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # seconds
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    execution: Mapped[RunbookExecution] = relationship(back_populates="step_executions")
    step: Mapped[RunbookStep] = relationship(lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "executionId": self.execution_id,
            "stepId": self.step_id,
            "stepIndex": self.step_index,
            "phase": self.step.phase if self.step else None,
            "title": self.step.title if self.step else None,
            "isCritical": self.step.is_critical if self.step else False,
            "estimatedDuration": self.step.estimated_duration if self.step else None,
            "status": self.status,
            "startedAt": iso(self.started_at),
            "completedAt": iso(self.completed_at),
            "duration": self.duration,
            "notes": self.notes,
            "executedBy": self.executed_by_user_id,
        }


class ExecutionEvidence(Base):
    __tablename__ = "execution_evidence"
    __table_args__ = (Index("idx_execution_evidence_step", "execution_id", "step_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    execution_id: Mapped[int] = mapped_column(ForeignKey("runbook_executions.id", ondelete="CASCADE"), nullable=False)
    step_id: Mapped[int | None] = mapped_column(ForeignKey("runbook_steps.id", ondelete="SET NULL"), nullable=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "executionId": self.execution_id,
            "stepId": self.step_id,
            "fileName": self.file_name,
            "sizeBytes": self.size_bytes,
            "contentType": self.content_type,
            "sha256": self.sha256,
            "description": self.description,
            "uploadedBy": self.uploaded_by_user_id,
            "uploadedAt": iso(self.uploaded_at),
        }
