from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.irdesk.models import Base
from app.irdesk.utils import iso, utcnow

if TYPE_CHECKING:
    from app.irdesk.models import User

CLASSIFICATIONS = (
    "malware",
    "phishing",
    "data_breach",
    "ddos",
    "insider_threat",
    "ransomware",
    "social_engineering",
    "supply_chain",
    "other",
)
SEVERITIES = ("low", "medium", "high", "critical")
STATUSES = ("open", "contained", "eradicated", "recovered", "closed", "post_incident")
IMPACT_LEVELS = ("none", "low", "medium", "high", "critical")
ASSET_IMPACT_STATUSES = ("affected", "isolated", "recovered")

# status -> timestamp column stamped the first time the incident enters it
STATUS_TIMESTAMPS = {
    "contained": "contained_at",
    "eradicated": "eradicated_at",
    "recovered": "recovered_at",
    "closed": "closed_at",
}


class Incident(Base):
    __tablename__ = "incidents"
    __table_args__ = (
        UniqueConstraint("organization_id", "reference_number", name="uq_incidents_org_reference"),
        Index("idx_incidents_org_status", "organization_id", "status"),
        Index("idx_incidents_severity", "severity"),
        Index("idx_incidents_detected", "detected_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    reference_number: Mapped[str] = mapped_column(String(50), nullable=False)  # INC-YYYYMM-NNNN
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    classification: Mapped[str] = mapped_column(String(30), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")

    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    contained_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    eradicated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    recovered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    detection_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    containment_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    eradication_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    recovery_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    post_incident_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    stakeholder_comms: Mapped[str | None] = mapped_column(Text, nullable=True)

    reported_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    runbook_id: Mapped[int | None] = mapped_column(ForeignKey("runbooks.id", ondelete="SET NULL"), nullable=True)

    estimated_impact: Mapped[str | None] = mapped_column(Text, nullable=True)
    impact_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    affected_users: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lessons_learned: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    reporter: Mapped["User"] = relationship("User", foreign_keys=[reported_by_user_id], lazy="selectin")
    assignee: Mapped["User"] = relationship("User", foreign_keys=[assigned_to_user_id], lazy="selectin")
    assets: Mapped[list["IncidentAsset"]] = relationship(
        back_populates="incident",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    evidence: Mapped[list["IncidentEvidence"]] = relationship(
        back_populates="incident",
        cascade="all, delete-orphan",
        order_by="IncidentEvidence.uploaded_at",
        lazy="selectin",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "referenceNumber": self.reference_number,
            "title": self.title,
            "description": self.description,
            "classification": self.classification,
            "severity": self.severity,
            "status": self.status,
            "detectedAt": iso(self.detected_at),
            "containedAt": iso(self.contained_at),
            "eradicatedAt": iso(self.eradicated_at),
            "recoveredAt": iso(self.recovered_at),
            "closedAt": iso(self.closed_at),
            "detectionDetails": self.detection_details,
            "containmentDetails": self.containment_details,
            "eradicationDetails": self.eradication_details,
            "recoveryDetails": self.recovery_details,
            "postIncidentNotes": self.post_incident_notes,
            "stakeholderComms": self.stakeholder_comms,
            "reportedBy": self.reported_by_user_id,
            "reporterName": self.reporter.name if self.reporter else None,
            "assignedTo": self.assigned_to_user_id,
            "assigneeName": self.assignee.name if self.assignee else None,
            "runbookId": self.runbook_id,
            "estimatedImpact": self.estimated_impact,
            "impactLevel": self.impact_level,
            "affectedUsers": self.affected_users,
            "lessonsLearned": self.lessons_learned,
            "metadata": self.metadata_json or {},
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class IncidentAsset(Base):
    __tablename__ = "incident_assets"
    __table_args__ = (UniqueConstraint("incident_id", "asset_id", name="uq_incident_assets"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    incident_id: Mapped[int] = mapped_column(ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    affected_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    impact: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="affected")

    incident: Mapped[Incident] = relationship(back_populates="assets")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "incidentId": self.incident_id,
            "assetId": self.asset_id,
            "affectedAt": iso(self.affected_at),
            "impact": self.impact,
            "status": self.status,
        }


class IncidentEvidence(Base):
    __tablename__ = "incident_evidence"
    __table_args__ = (Index("idx_incident_evidence_incident", "incident_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    incident_id: Mapped[int] = mapped_column(ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False)
    phase: Mapped[str | None] = mapped_column(String(20), nullable=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    incident: Mapped[Incident] = relationship(back_populates="evidence")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "incidentId": self.incident_id,
            "phase": self.phase,
            "fileName": self.file_name,
            "sizeBytes": self.size_bytes,
            "contentType": self.content_type,
            "sha256": self.sha256,
            "description": self.description,
            "uploadedBy": self.uploaded_by_user_id,
            "uploadedAt": iso(self.uploaded_at),
        }
