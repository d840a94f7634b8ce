from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.irdesk.models import Base
from app.irdesk.utils import iso, utcnow

ASSET_TYPES = ("hardware", "software", "service", "data", "personnel", "facility", "vendor", "contract")
CRITICALITY_LEVELS = ("low", "medium", "high", "critical")
GROUP_TYPES = ("logical", "location", "department", "compliance", "custom", "dynamic")


class Asset(Base):
    __tablename__ = "assets"
    __table_args__ = (
        Index("idx_assets_org_deleted", "organization_id", "deleted_at"),
        Index("idx_assets_type", "type"),
        Index("idx_assets_criticality", "criticality"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    identifier: Mapped[str | None] = mapped_column(String(255), nullable=True)  # serial number, license key, ...

    primary_contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    primary_contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    primary_contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    secondary_contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    secondary_contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    secondary_contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    vendor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    purchase_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    value: Mapped[str | None] = mapped_column(String(50), nullable=True)

    must_contact: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    criticality: Mapped[str | None] = mapped_column(String(20), nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "identifier": self.identifier,
            "primaryContactName": self.primary_contact_name,
            "primaryContactEmail": self.primary_contact_email,
            "primaryContactPhone": self.primary_contact_phone,
            "secondaryContactName": self.secondary_contact_name,
            "secondaryContactEmail": self.secondary_contact_email,
            "secondaryContactPhone": self.secondary_contact_phone,
            "vendor": self.vendor,
            "purchaseDate": iso(self.purchase_date),
            "expiryDate": iso(self.expiry_date),
            "value": self.value,
            "mustContact": self.must_contact,
            "criticality": self.criticality,
            "location": self.location,
            "metadata": self.metadata_json or {},
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class AssetGroup(Base):
    __tablename__ = "asset_groups"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_asset_groups_org_name"),
        Index("idx_asset_groups_parent", "parent_group_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="custom")
    parent_group_id: Mapped[int | None] = mapped_column(ForeignKey("asset_groups.id", ondelete="SET NULL"), nullable=True)

    # e.g. {"type": "hardware", "criticality": "high", "tags": ["production"]}
    rules: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    is_dynamic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    icon: Mapped[str | None] = mapped_column(String(50), nullable=True)
    color: Mapped[str | None] = mapped_column(String(7), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "parentGroupId": self.parent_group_id,
            "rules": self.rules,
            "isDynamic": self.is_dynamic,
            "icon": self.icon,
            "color": self.color,
            "sortOrder": self.sort_order,
            "memberCount": self.member_count,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class AssetGroupMember(Base):
    __tablename__ = "asset_group_members"
    __table_args__ = (
        UniqueConstraint("asset_group_id", "asset_id", name="uq_asset_group_members"),
        Index("idx_asset_group_members_asset", "asset_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    asset_group_id: Mapped[int] = mapped_column(ForeignKey("asset_groups.id", ondelete="CASCADE"), nullable=False)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    added_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
