from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.irdesk.models import Base
from app.irdesk.utils import iso, utcnow

SETTING_DATA_TYPES = ("string", "number", "boolean", "json")
SETTING_CATEGORIES = ("general", "security", "features", "limits", "notifications")


class SystemSetting(Base):
    """Platform setting; ``value`` is stored as text and parsed by ``data_type`` on read."""

    __tablename__ = "system_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    data_type: Mapped[str] = mapped_column(String(20), nullable=False, default="string")
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")

    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def typed_value(self):
        if self.data_type == "boolean":
            return self.value.strip().lower() in ("true", "1", "yes", "on")
        if self.data_type == "number":
            try:
                number = float(self.value)
            except ValueError:
                return None
            return int(number) if number.is_integer() else number
        if self.data_type == "json":
            try:
                return json.loads(self.value)
            except ValueError:
                return self.value
        return self.value

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.typed_value,
            "description": self.description,
            "isPublic": self.is_public,
            "dataType": self.data_type,
            "category": self.category,
            "updatedBy": self.updated_by_user_id,
            "updatedAt": iso(self.updated_at),
        }


class SystemApiKey(Base):
    """Integration key. Only the sha256 digest and a short display prefix are stored."""

    __tablename__ = "system_api_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    key_prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    permissions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # Null for platform-wide keys
    organization_id: Mapped[int | None] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "keyPrefix": self.key_prefix,
            "permissions": self.permissions or [],
            "organizationId": self.organization_id,
            "createdBy": self.created_by_user_id,
            "lastUsedAt": iso(self.last_used_at),
            "expiresAt": iso(self.expires_at),
            "isActive": self.is_active,
            "createdAt": iso(self.created_at),
            "revokedAt": iso(self.revoked_at),
        }
