from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.irdesk.models import Base
from app.irdesk.utils import iso, utcnow

DROPDOWN_CATEGORIES = (
    "asset_types",
    "criticality_levels",
    "incident_classifications",
    "severity_levels",
    "departments",
    "locations",
    "vendor_types",
    "compliance_frameworks",
    "custom",
)
TEMPLATE_CATEGORIES = ("incident_response", "communication", "runbook", "training", "compliance", "custom")
USAGE_TYPES = ("viewed", "copied", "instantiated")


class SystemDropdown(Base):
    __tablename__ = "system_dropdowns"
    __table_args__ = (
        UniqueConstraint("category", "name", name="uq_system_dropdowns_category_name"),
        Index("idx_system_dropdowns_category", "category"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    options: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # [{value, label, metadata?}]
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allow_custom_values: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "name": self.name,
            "description": self.description,
            "options": self.options or [],
            "isActive": self.is_active,
            "allowCustomValues": self.allow_custom_values,
            "sortOrder": self.sort_order,
            "source": "system",
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class OrganizationDropdown(Base):
    __tablename__ = "organization_dropdowns"
    __table_args__ = (
        UniqueConstraint("organization_id", "category", "name", name="uq_org_dropdowns_org_category_name"),
        Index("idx_org_dropdowns_org", "organization_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    system_dropdown_id: Mapped[int | None] = mapped_column(
        ForeignKey("system_dropdowns.id", ondelete="SET NULL"),
        nullable=True,
    )
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    options: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allow_custom_values: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "systemDropdownId": self.system_dropdown_id,
            "category": self.category,
            "name": self.name,
            "description": self.description,
            "options": self.options or [],
            "isActive": self.is_active,
            "allowCustomValues": self.allow_custom_values,
            "sortOrder": self.sort_order,
            "source": "organization",
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class DefaultTagSet(Base):
    """Platform tag bundle; required sets are copied into every new organization."""

    __tablename__ = "default_tag_sets"
    __table_args__ = (
        Index("idx_default_tag_sets_active", "is_active"),
        Index("idx_default_tag_sets_required", "is_required"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tag_set: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # [{name, category, color, description}]
    entity_types: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "tags": self.tag_set or [],
            "entityTypes": self.entity_types or [],
            "isActive": self.is_active,
            "isRequired": self.is_required,
            "sortOrder": self.sort_order,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class SystemTemplate(Base):
    __tablename__ = "system_templates"
    __table_args__ = (
        Index("idx_system_templates_category", "category"),
        Index("idx_system_templates_active", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    variables: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[str] = mapped_column(String(20), nullable=False, default="1.0")
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "description": self.description,
            "content": self.content,
            "variables": self.variables or [],
            "tags": self.tags or [],
            "isActive": self.is_active,
            "sortOrder": self.sort_order,
            "version": self.version,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class TemplateUsage(Base):
    __tablename__ = "template_usage"
    __table_args__ = (
        Index("idx_template_usage_template", "template_id"),
        Index("idx_template_usage_org", "organization_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(ForeignKey("system_templates.id", ondelete="CASCADE"), nullable=False)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    usage_type: Mapped[str] = mapped_column(String(50), nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "templateId": self.template_id,
            "organizationId": self.organization_id,
            "userId": self.user_id,
            "usageType": self.usage_type,
            "metadata": self.metadata_json or {},
            "usedAt": iso(self.used_at),
        }
