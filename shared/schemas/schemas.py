"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the dispatch API.
"""

import uuid
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from shared.models.models import (
    IssueCategory,
    MembershipPlan,
    PaymentMode,
    RequestStatus,
    SenderRole,
    SubscriptionStatus,
    VehicleClass,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Service Request ───────────────────────────────────────────

class LocationSchema(BaseSchema):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: str = Field(..., min_length=1, max_length=500)


class ServiceRequestCreate(BaseSchema):
    vehicle_id: uuid.UUID
    issue_category: IssueCategory
    description: str = Field(..., min_length=5, max_length=2000)
    location: LocationSchema
    attachments: List[str] = Field(default_factory=list, max_length=5)


class MechanicDetails(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9]{10,15}$")
    photo: Optional[str] = None


class PricingEstimate(BaseSchema):
    labor: float = Field(default=0, ge=0)
    parts: float = Field(default=0, ge=0)
    travel: float = Field(default=0, ge=0)
    total: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def default_total(self) -> "PricingEstimate":
        if self.total is None:
            self.total = self.labor + self.parts + self.travel
        return self


class AcceptRequest(BaseSchema):
    mechanic: Optional[MechanicDetails] = None
    eta: Optional[datetime] = None


class StatusUpdateRequest(BaseSchema):
    status: RequestStatus
    eta: Optional[datetime] = None
    pricing_estimate: Optional[PricingEstimate] = None
    payment_mode: Optional[PaymentMode] = None
    cancellation_reason: Optional[str] = Field(None, max_length=500)


class ServiceRequestResponse(BaseSchema):
    id: uuid.UUID
    requester_id: uuid.UUID
    vehicle_id: uuid.UUID
    issue_category: IssueCategory
    description: str
    attachments: List[str] = []
    latitude: float
    longitude: float
    address: str
    status: RequestStatus
    assigned_provider_id: Optional[uuid.UUID]
    assigned_mechanic: Optional[Dict[str, Any]]
    eta: Optional[datetime]
    pricing_estimate: Optional[Dict[str, Any]]
    payment_mode: PaymentMode
    is_paid: bool
    paid_at: Optional[datetime]
    accepted_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    notified_provider_ids: List[uuid.UUID] = []
    created_at: datetime
    updated_at: datetime


class CreateRequestResponse(BaseSchema):
    request: ServiceRequestResponse
    notified_providers: int


class PaginatedRequests(PaginatedResponse):
    items: List[ServiceRequestResponse]


# ── Provider ──────────────────────────────────────────────────

class ProviderSummary(BaseSchema):
    id: uuid.UUID
    name: str
    phone: Optional[str]
    address: Optional[str]
    latitude: float
    longitude: float
    vehicle_classes: List[str]
    service_categories: List[str]
    rating_avg: float
    rating_count: int
    is_sponsored: bool


class NearbyProviderResponse(BaseSchema):
    provider: ProviderSummary
    distance_km: float


class ProviderQueueItem(BaseSchema):
    request: ServiceRequestResponse
    distance_km: float


class ProviderLocationUpdate(BaseSchema):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class ProviderLocationBroadcast(BaseSchema):
    request_id: uuid.UUID
    provider_id: uuid.UUID
    latitude: float
    longitude: float
    timestamp: datetime


# ── Chat ──────────────────────────────────────────────────────

class ChatMessageCreate(BaseSchema):
    text: str = Field(..., min_length=1)

    @field_validator("text")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Message text must not be blank")
        return v


class ChatMessageResponse(BaseSchema):
    id: uuid.UUID
    request_id: uuid.UUID
    seq: int
    sender_id: uuid.UUID
    sender_role: SenderRole
    sender_name: Optional[str]
    text: str
    created_at: datetime


class ChatHistoryResponse(BaseSchema):
    items: List[ChatMessageResponse]
    next_cursor: Optional[int] = None  # pass as after_seq; None when exhausted


# ── Membership (payment collaborator) ─────────────────────────

class MembershipActivate(BaseSchema):
    plan: MembershipPlan
    billing_cycle: str = Field(default="monthly", pattern="^(monthly|yearly)$")


class MembershipResponse(BaseSchema):
    id: uuid.UUID
    plan: MembershipPlan
    requests_used: int
    max_requests: int
    membership_expiry: Optional[datetime]
    last_reset_date: Optional[datetime]


class SubscriptionActivate(BaseSchema):
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_cycle: str = Field(default="monthly", pattern="^(monthly|yearly)$")


class SubscriptionResponse(BaseSchema):
    id: uuid.UUID
    subscription_status: SubscriptionStatus
    subscription_expiry: Optional[datetime]


# ── Audit metadata ────────────────────────────────────────────

class CreatedMeta(BaseSchema):
    kind: Literal["created"] = "created"
    vehicle_class: VehicleClass
    candidate_count: int


class AssignedMeta(BaseSchema):
    kind: Literal["assigned"] = "assigned"
    provider_id: uuid.UUID
    eta: Optional[datetime] = None
    mechanic_name: Optional[str] = None


class StatusChangeMeta(BaseSchema):
    kind: Literal["status_change"] = "status_change"
    payment_mode: Optional[PaymentMode] = None
    cancellation_reason: Optional[str] = None


class OpaqueMeta(BaseSchema):
    """Escape hatch for callers that need to attach arbitrary context.
    `data` is unstructured and never read back by the core."""
    kind: Literal["opaque"] = "opaque"
    data: Dict[str, Any] = {}


AuditMeta = Annotated[
    Union[CreatedMeta, AssignedMeta, StatusChangeMeta, OpaqueMeta],
    Field(discriminator="kind"),
]

audit_meta_adapter = TypeAdapter(AuditMeta)


# ── Generic ───────────────────────────────────────────────────

class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
    reason: Optional[str] = None
