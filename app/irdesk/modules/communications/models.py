from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.irdesk.models import Base
from app.irdesk.utils import iso, utcnow

TEMPLATE_CATEGORIES = ("internal", "customer", "regulatory", "media", "vendor", "other")
SEND_METHODS = ("email", "sms", "manual")
LOG_STATUSES = ("logged", "sent", "failed")


class CommunicationTemplate(Base):
    """Organization template, or a global one (organization_id null) every organization can read."""

    __tablename__ = "communication_templates"
    __table_args__ = (Index("idx_communication_templates_org_category", "organization_id", "category"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int | None] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_global(self) -> bool:
        return self.organization_id is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "title": self.title,
            "category": self.category,
            "tags": self.tags or [],
            "subject": self.subject,
            "content": self.content,
            "isDefault": self.is_default,
            "isGlobal": self.is_global,
            "version": self.version,
            "createdBy": self.created_by_user_id,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class TemplateVersion(Base):
    __tablename__ = "communication_template_versions"
    __table_args__ = (UniqueConstraint("template_id", "version", name="uq_template_versions"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(ForeignKey("communication_templates.id", ondelete="CASCADE"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    change_note: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "templateId": self.template_id,
            "version": self.version,
            "title": self.title,
            "subject": self.subject,
            "content": self.content,
            "changeNote": self.change_note,
            "createdBy": self.created_by_user_id,
            "createdAt": iso(self.created_at),
        }


class CommunicationLog(Base):
    __tablename__ = "communication_logs"
    __table_args__ = (Index("idx_communication_logs_org_sent", "organization_id", "sent_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    template_id: Mapped[int | None] = mapped_column(ForeignKey("communication_templates.id", ondelete="SET NULL"), nullable=True)
    incident_id: Mapped[int | None] = mapped_column(ForeignKey("incidents.id", ondelete="SET NULL"), nullable=True)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    recipients: Mapped[list] = mapped_column(JSON, nullable=False)
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    missing_variables: Mapped[list | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="logged")
    sent_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "templateId": self.template_id,
            "incidentId": self.incident_id,
            "method": self.method,
            "recipients": self.recipients or [],
            "subject": self.subject,
            "content": self.content,
            "notes": self.notes,
            "missingVariables": self.missing_variables or [],
            "status": self.status,
            "sentBy": self.sent_by_user_id,
            "sentAt": iso(self.sent_at),
        }
