from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from app.irdesk.models import Base
from app.irdesk.utils import iso, utcnow


class OrganizationLimits(Base):
    """Per-organization quota ceilings; NULL entity limits mean unlimited."""

    __tablename__ = "organization_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    max_users: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    max_storage_mb: Mapped[int] = mapped_column(Integer, nullable=False, default=1024)
    current_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    max_incidents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_assets: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_runbooks: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_templates: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # requests per hour
    api_rate_limit: Mapped[int | None] = mapped_column(Integer, nullable=True, default=1000)
    api_calls_this_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    api_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def current_storage_mb(self) -> float:
        return round((self.current_storage_bytes or 0) / (1024 * 1024), 2)

    def to_dict(self) -> dict:
        return {
            "organizationId": self.organization_id,
            "maxUsers": self.max_users,
            "maxIncidents": self.max_incidents,
            "maxAssets": self.max_assets,
            "maxRunbooks": self.max_runbooks,
            "maxTemplates": self.max_templates,
            "maxStorageMb": self.max_storage_mb,
            "currentStorageMb": self.current_storage_mb,
            "apiRateLimit": self.api_rate_limit,
            "apiCallsThisHour": self.api_calls_this_hour,
            "apiResetAt": iso(self.api_reset_at),
        }
