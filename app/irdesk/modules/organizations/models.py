from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.irdesk.models import Base
from app.irdesk.utils import iso, utcnow

if TYPE_CHECKING:
    from app.irdesk.models import User


ORG_STATUSES = ("active", "suspended", "trial", "expired")
ORG_SIZES = ("small", "medium", "large", "enterprise")
MEMBER_ROLES = ("owner", "admin", "member", "viewer")
INVITATION_STATUSES = ("pending", "accepted", "revoked")


class Organization(Base):
    __tablename__ = "organizations"
    __table_args__ = (
        Index("idx_organizations_status", "status"),
        Index("idx_organizations_license_type", "license_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Profile
    industry: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    website: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Licensing
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    license_type: Mapped[str] = mapped_column(String(50), nullable=False, default="starter")
    license_count: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    custom_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    allowed_email_domains: Mapped[list | None] = mapped_column(JSON, nullable=True)
    features: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    settings: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    members: Mapped[list["OrganizationMember"]] = relationship(
        "OrganizationMember",
        back_populates="organization",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "industry": self.industry,
            "size": self.size,
            "address": self.address,
            "phone": self.phone,
            "website": self.website,
            "status": self.status,
            "licenseType": self.license_type,
            "licenseCount": self.license_count,
            "expiresAt": iso(self.expires_at),
            "trialEndsAt": iso(self.trial_ends_at),
            "customDomain": self.custom_domain,
            "allowedEmailDomains": self.allowed_email_domains or [],
            "features": self.features or {},
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class OrganizationMember(Base):
    __tablename__ = "organization_members"
    __table_args__ = (
        # One organization per user.
        UniqueConstraint("user_id", name="uq_organization_members_user"),
        Index("idx_organization_members_org", "organization_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="member")
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    organization: Mapped[Organization] = relationship("Organization", back_populates="members", lazy="selectin")
    user: Mapped["User"] = relationship("User", lazy="selectin")

    def to_dict(self) -> dict:
        u = self.user
        return {
            "id": self.id,
            "userId": self.user_id,
            "organizationId": self.organization_id,
            "role": self.role,
            "joinedAt": iso(self.joined_at),
            "name": u.name if u else None,
            "email": u.email if u else None,
            "title": u.title if u else None,
            "department": u.department if u else None,
            "isActive": u.is_active if u else None,
            "lastLoginAt": iso(u.last_login_at) if u else None,
        }


class Invitation(Base):
    __tablename__ = "invitations"
    __table_args__ = (
        Index("idx_invitations_org_status", "organization_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="member")
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    invited_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    invited_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_dict(self, *, include_token: bool = False) -> dict:
        d = {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "invitedBy": self.invited_by_user_id,
            "invitedAt": iso(self.invited_at),
            "expiresAt": iso(self.expires_at),
            "acceptedAt": iso(self.accepted_at),
        }
        if include_token:
            d["token"] = self.token
        return d


class InsurancePolicy(Base):
    __tablename__ = "insurance_policies"
    __table_args__ = (
        Index("idx_insurance_policies_org", "organization_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    provider: Mapped[str] = mapped_column(String(255), nullable=False)
    policy_number: Mapped[str] = mapped_column(String(100), nullable=False)
    coverage_type: Mapped[str] = mapped_column(String(100), nullable=False)
    coverage_amount: Mapped[str | None] = mapped_column(String(50), nullable=True)
    deductible: Mapped[str | None] = mapped_column(String(50), nullable=True)

    contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    claims_contact: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claims_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    claims_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    additional_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "provider": self.provider,
            "policyNumber": self.policy_number,
            "coverageType": self.coverage_type,
            "coverageAmount": self.coverage_amount,
            "deductible": self.deductible,
            "contactName": self.contact_name,
            "contactEmail": self.contact_email,
            "contactPhone": self.contact_phone,
            "startDate": iso(self.start_date),
            "endDate": iso(self.end_date),
            "claimsContact": self.claims_contact,
            "claimsPhone": self.claims_phone,
            "claimsEmail": self.claims_email,
            "additionalNotes": self.additional_notes,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }
