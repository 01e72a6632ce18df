"""
shared/models/models.py
All SQLAlchemy ORM models for the roadside dispatch core.
UUID primary keys throughout; JSON columns map to JSONB on PostgreSQL.
"""

import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base
from shared.utils.clock import as_utc

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ── Enumerations ──────────────────────────────────────────────

class MembershipPlan(str, PyEnum):
    NONE = "NONE"
    FREE = "FREE"
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"


class SubscriptionStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"


class VehicleClass(str, PyEnum):
    TWO_WHEELER = "2W"
    THREE_WHEELER = "3W"
    FOUR_WHEELER = "4W"
    ELECTRIC = "EV"


class IssueCategory(str, PyEnum):
    BATTERY = "BATTERY"
    TIRE = "TIRE"
    TOWING = "TOWING"
    FUEL_DELIVERY = "FUEL_DELIVERY"
    LOCK_OUT = "LOCK_OUT"
    JUMP_START = "JUMP_START"
    FLAT_TIRE = "FLAT_TIRE"
    ENGINE = "ENGINE"
    OTHER = "OTHER"


class RequestStatus(str, PyEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentMode(str, PyEnum):
    CASH = "CASH"
    UPI = "UPI"
    CARD = "CARD"
    PENDING = "PENDING"


class SenderRole(str, PyEnum):
    REQUESTER = "REQUESTER"
    PROVIDER = "PROVIDER"


class AuditAction(str, PyEnum):
    CREATE = "CREATE"
    ASSIGN = "ASSIGN"
    STATUS_CHANGE = "STATUS_CHANGE"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class Requester(TimestampMixin, Base):
    """
    Vehicle owner account. The membership columns are written by the
    payment collaborator (plan, expiry, reset) and by admission (requests_used).
    """
    __tablename__ = "requesters"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Membership
    plan: Mapped[MembershipPlan] = mapped_column(
        Enum(MembershipPlan), default=MembershipPlan.FREE, nullable=False
    )
    requests_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_requests: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    membership_expiry: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_reset_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    vehicles: Mapped[List["Vehicle"]] = relationship(back_populates="requester")

    __table_args__ = (
        Index("ix_requesters_membership_expiry", "membership_expiry"),
    )

    def __repr__(self) -> str:
        return f"<Requester {self.email} ({self.plan})>"


class Vehicle(TimestampMixin, Base):
    """A requester's vehicle. Only ownership and class matter to dispatch."""
    __tablename__ = "vehicles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    requester_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("requesters.id", ondelete="CASCADE"), nullable=False
    )
    vehicle_class: Mapped[VehicleClass] = mapped_column(Enum(VehicleClass), nullable=False)
    brand: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    registration_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    requester: Mapped["Requester"] = relationship(back_populates="vehicles")

    __table_args__ = (Index("ix_vehicles_requester_active", "requester_id", "is_active"),)


class Provider(TimestampMixin, Base):
    """
    Repair workshop. Subscription columns are owned by the payment
    collaborator; rating is denormalized for ranking.
    """
    __tablename__ = "providers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)

    # Location
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Capabilities, e.g. ["2W", "4W"] and ["BATTERY", "TOWING"]
    vehicle_classes: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    service_categories: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)

    is_online: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Subscription
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.INACTIVE, nullable=False
    )
    subscription_expiry: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Rating (denormalized for query performance)
    rating_avg: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    rating_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_sponsored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_providers_online_subscription", "is_online", "subscription_status", "subscription_expiry"),
        Index("ix_providers_lat_lng", "latitude", "longitude"),
    )

    def has_active_subscription(self, now: datetime) -> bool:
        expiry = as_utc(self.subscription_expiry)
        return (
            self.subscription_status == SubscriptionStatus.ACTIVE
            and expiry is not None
            and expiry > now
        )

    def supports(self, vehicle_class: VehicleClass) -> bool:
        return vehicle_class.value in (self.vehicle_classes or [])

    def __repr__(self) -> str:
        return f"<Provider {self.name} ({self.subscription_status})>"


class ServiceRequest(TimestampMixin, Base):
    """
    Core dispatch entity.
    Status transitions: PENDING → ACCEPTED → IN_PROGRESS → COMPLETED,
    and PENDING | ACCEPTED | IN_PROGRESS → CANCELLED.
    assigned_provider_id is set only once the request leaves PENDING.
    """
    __tablename__ = "service_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    requester_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("requesters.id"), nullable=False
    )
    vehicle_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("vehicles.id"), nullable=False
    )

    issue_category: Mapped[IssueCategory] = mapped_column(Enum(IssueCategory), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    attachments: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)

    # Where the vehicle is
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False)

    # Status / assignment
    status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus), nullable=False, default=RequestStatus.PENDING
    )
    assigned_provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=True
    )
    assigned_mechanic: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    # e.g. {"name": "Ravi", "phone": "9876543210", "photo": "https://..."}
    eta: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Pricing / payment
    pricing_estimate: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    # e.g. {"labor": 300, "parts": 1200, "travel": 100, "total": 1600, "notes": "..."}
    payment_mode: Mapped[PaymentMode] = mapped_column(
        Enum(PaymentMode), default=PaymentMode.PENDING, nullable=False
    )
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Timestamps
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Last chat sequence number handed out
    chat_seq: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    candidates: Mapped[List["RequestCandidate"]] = relationship(
        back_populates="request",
        lazy="selectin",
        order_by="RequestCandidate.rank",
    )

    __table_args__ = (
        Index("ix_service_requests_requester_status", "requester_id", "status", "created_at"),
        Index("ix_service_requests_provider_status", "assigned_provider_id", "status"),
        Index("ix_service_requests_status_created", "status", "created_at"),
    )

    @property
    def notified_provider_ids(self) -> List[uuid.UUID]:
        return [c.provider_id for c in self.candidates]

    def is_candidate(self, provider_id: uuid.UUID) -> bool:
        return any(c.provider_id == provider_id for c in self.candidates)


class RequestCandidate(Base):
    """
    Providers notified when the request was created. Written once in the
    creating transaction and never updated.
    """
    __tablename__ = "request_candidates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=False
    )
    distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)

    request: Mapped["ServiceRequest"] = relationship(back_populates="candidates")

    __table_args__ = (
        UniqueConstraint("request_id", "provider_id", name="uq_request_candidate"),
        Index("ix_request_candidates_provider", "provider_id"),
    )


class ChatMessage(Base):
    """Append-only chat log entry. seq is monotonic per request."""
    __tablename__ = "chat_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    sender_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    sender_role: Mapped[SenderRole] = mapped_column(Enum(SenderRole), nullable=False)
    sender_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("request_id", "seq", name="uq_chat_request_seq"),
    )


class RequestAuditLog(Base):
    """Immutable log of request creation, assignment and status changes."""
    __tablename__ = "request_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.id"), nullable=False
    )
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Validated against shared.schemas.schemas.AuditMeta before write
    audit_metadata: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (Index("ix_request_audit_request_id", "request_id", "created_at"),)
