from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum
import uuid

from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Column, JSON, Index, text


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_request_id() -> str:
    return f"zcr_{uuid.uuid4().hex}"


# ============================================================
# ENUMS
# ============================================================
class ZipChangeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ResolveDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class ProfileEditActor(str, Enum):
    INTERNAL_PREVIEW = "internal_preview"
    PORTAL_USER = "portal_user"


# ============================================================
# ORGANIZATION MODEL (one per client portal)
# ============================================================
class Organization(SQLModel, table=True):
    __tablename__ = "organization"

    portal_key: str = Field(primary_key=True, max_length=120)
    name: str = Field(max_length=200)

    # Territory & lead routing
    service_areas: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    target_zip_codes: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    lead_delivery_phones: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    lead_delivery_emails: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    # Billing terms
    billing_email: Optional[str] = Field(default=None, max_length=255)
    billing_model: Optional[str] = Field(default=None, max_length=50)
    lead_unit_price_cents: Optional[int] = None
    lead_charge_threshold: Optional[int] = None
    prepaid_lead_credits: Optional[int] = None
    lead_commitment_total: Optional[int] = None
    initial_charge_cents: Optional[int] = None

    # Stripe
    stripe_customer_id: Optional[str] = Field(default=None, index=True, max_length=255)
    stripe_subscription_id: Optional[str] = Field(default=None, max_length=255)
    stripe_subscription_item_id: Optional[str] = Field(default=None, max_length=255)

    # Lead generation activation
    is_active: bool = Field(default=False)
    leadgen_paid: bool = Field(default=False)
    leadgen_paid_at: Optional[datetime] = None
    leadgen_checkout_session_id: Optional[str] = Field(default=None, max_length=255)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    # Relationships
    portal_users: List["PortalUser"] = Relationship(back_populates="organization")
    zip_change_requests: List["ZipChangeRequest"] = Relationship(back_populates="organization")
    profile_edits: List["PortalProfileEdit"] = Relationship(back_populates="organization")


# ============================================================
# PORTAL USER MODEL
# ============================================================
class PortalUser(SQLModel, table=True):
    __tablename__ = "portal_user"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True, max_length=255)
    full_name: Optional[str] = Field(default=None, max_length=100)
    password_hash: str
    portal_key: str = Field(foreign_key="organization.portal_key", index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    organization: Optional[Organization] = Relationship(back_populates="portal_users")


# ============================================================
# ZIP CHANGE REQUEST MODEL (append-only audit trail)
# ============================================================
class ZipChangeRequest(SQLModel, table=True):
    __tablename__ = "zip_change_request"
    __table_args__ = (
        # One pending request per portal
        Index(
            "uq_zip_change_request_pending_portal",
            "portal_key",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    request_id: str = Field(default_factory=generate_request_id, primary_key=True, max_length=64)
    portal_key: str = Field(foreign_key="organization.portal_key", index=True)

    requested_zip_codes: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    added_zip_codes: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    removed_zip_codes: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    status: str = Field(default=ZipChangeStatus.PENDING.value, max_length=20, index=True)
    reason: Optional[str] = Field(default=None, max_length=500)
    resolution_notes: Optional[str] = Field(default=None, max_length=1000)

    requested_by: Optional[str] = Field(default=None, max_length=255)
    requested_by_email: Optional[str] = Field(default=None, max_length=255)
    resolved_by: Optional[str] = Field(default=None, max_length=255)

    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    organization: Optional[Organization] = Relationship(back_populates="zip_change_requests")

    @property
    def is_pending(self) -> bool:
        return self.status == ZipChangeStatus.PENDING.value


# ============================================================
# PORTAL PROFILE EDIT MODEL (audit of operator edits)
# ============================================================
class PortalProfileEdit(SQLModel, table=True):
    __tablename__ = "portal_profile_edit"

    id: Optional[int] = Field(default=None, primary_key=True)
    portal_key: str = Field(foreign_key="organization.portal_key", index=True)
    actor_type: str = Field(default=ProfileEditActor.INTERNAL_PREVIEW.value, max_length=30)
    actor_label: Optional[str] = Field(default=None, max_length=255)
    changed_keys: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    added_zip_codes: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    removed_zip_codes: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)

    organization: Optional[Organization] = Relationship(back_populates="profile_edits")
