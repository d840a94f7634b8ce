from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.irdesk.models import Base
from app.irdesk.utils import iso, utcnow

TAG_CATEGORIES = ("location", "department", "criticality", "compliance", "incident_type", "skill", "custom")
TAGGABLE_TYPES = ("asset", "incident", "runbook", "communication", "exercise")
DEFAULT_TAG_COLOR = "#6B7280"


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_tags_org_name"),
        Index("idx_tags_category", "category"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="custom")
    color: Mapped[str] = mapped_column(String(7), nullable=False, default=DEFAULT_TAG_COLOR)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)  # system tags can't be deleted
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "name": self.name,
            "category": self.category,
            "color": self.color,
            "description": self.description,
            "isSystem": self.is_system,
            "usageCount": self.usage_count,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class Taggable(Base):
    """Polymorphic link: (taggable_type, taggable_id) points at an asset, incident, runbook, ..."""

    __tablename__ = "taggables"
    __table_args__ = (
        UniqueConstraint("tag_id", "taggable_type", "taggable_id", name="uq_taggables_tag_entity"),
        Index("idx_taggables_entity", "taggable_type", "taggable_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tag_id: Mapped[int] = mapped_column(ForeignKey("tags.id", ondelete="CASCADE"), nullable=False)
    taggable_type: Mapped[str] = mapped_column(String(50), nullable=False)
    taggable_id: Mapped[int] = mapped_column(Integer, nullable=False)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class TagPolicy(Base):
    __tablename__ = "tag_policies"
    __table_args__ = (
        Index("idx_tag_policies_org_entity", "organization_id", "entity_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    required_tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # required tag categories
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "entityType": self.entity_type,
            "requiredTags": self.required_tags or [],
            "isActive": self.is_active,
            "createdAt": iso(self.created_at),
        }
