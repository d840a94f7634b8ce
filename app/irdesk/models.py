from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.irdesk.utils import iso, utcnow


class Base(DeclarativeBase):
    pass


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)


class RolePermission(Base):
    __tablename__ = "role_permissions"
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    permission_id: Mapped[int] = mapped_column(ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    title: Mapped[str | None] = mapped_column(String(100), nullable=True)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)

    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    roles: Mapped[list["Role"]] = relationship(
        secondary="user_roles",
        back_populates="users",
        lazy="selectin",
    )

    @property
    def role_keys(self) -> list[str]:
        return sorted({r.key for r in self.roles or []})

    @property
    def permission_keys(self) -> list[str]:
        return sorted({p.key for r in self.roles or [] for p in r.permissions or []})

    @property
    def is_system_admin(self) -> bool:
        return "system.admin" in self.permission_keys

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "isActive": self.is_active,
            "phone": self.phone,
            "title": self.title,
            "department": self.department,
            "isSystemAdmin": self.is_system_admin,
            "roles": self.role_keys,
            "lastLoginAt": iso(self.last_login_at),
            "createdAt": iso(self.created_at),
        }


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "org_admin"
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    users: Mapped[list[User]] = relationship(secondary="user_roles", back_populates="roles", lazy="selectin")
    permissions: Mapped[list["Permission"]] = relationship(
        secondary="role_permissions",
        back_populates="roles",
        lazy="selectin",
    )


class Permission(Base):
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)  # e.g. "incidents.view"
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    roles: Mapped[list[Role]] = relationship(secondary="role_permissions", back_populates="permissions", lazy="selectin")


class AuditEvent(Base):
    """
    Append-only audit trail event.
    Organization-scoped events carry organization_id; platform events leave it null.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_org_created", "organization_id", "created_at"),
        Index("ix_audit_events_action", "action"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    organization_id: Mapped[int | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "incident.create"
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="Other")
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="info")
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": iso(self.created_at),
            "requestId": self.request_id,
            "organizationId": self.organization_id,
            "userId": self.actor_user_id,
            "userEmail": self.actor_user_email,
            "action": self.action,
            "category": self.category,
            "severity": self.severity,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "reason": self.reason,
            "metadata": json.loads(self.metadata_json) if self.metadata_json else None,
            "ipAddress": self.client_ip,
        }


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.irdesk.modules.organizations.models import (  # noqa: E402,F401
    InsurancePolicy,
    Invitation,
    Organization,
    OrganizationMember,
)
from app.irdesk.modules.licensing.models import OrganizationLimits  # noqa: E402,F401
from app.irdesk.modules.tags.models import Tag, Taggable, TagPolicy  # noqa: E402,F401
from app.irdesk.modules.assets.models import Asset, AssetGroup, AssetGroupMember  # noqa: E402,F401
from app.irdesk.modules.runbooks.models import (  # noqa: E402,F401
    ExecutionEvidence,
    Runbook,
    RunbookExecution,
    RunbookStep,
    StepExecution,
)
from app.irdesk.modules.incidents.models import Incident, IncidentAsset, IncidentEvidence  # noqa: E402,F401
from app.irdesk.modules.communications.models import (  # noqa: E402,F401
    CommunicationLog,
    CommunicationTemplate,
    TemplateVersion,
)
from app.irdesk.modules.content.models import (  # noqa: E402,F401
    DefaultTagSet,
    OrganizationDropdown,
    SystemDropdown,
    SystemTemplate,
    TemplateUsage,
)
from app.irdesk.modules.exercises.models import (  # noqa: E402,F401
    ExerciseCompletion,
    ExerciseQuestion,
    TabletopExercise,
)
from app.irdesk.modules.system_admin.models import SystemApiKey, SystemSetting  # noqa: E402,F401
