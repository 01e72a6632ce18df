"""
services/request/coordinator.py
Service request lifecycle: creation, the accept race, status transitions.

States: PENDING → ACCEPTED → IN_PROGRESS → COMPLETED
        PENDING | ACCEPTED | IN_PROGRESS → CANCELLED

Every state-changing write is a single conditional UPDATE keyed on the
status that was read, so concurrent callers across processes cannot both
win. Fan-out happens after commit and never fails the operation.
"""

import asyncio
import logging
import math
import uuid
from typing import List, Optional, Tuple

from fastapi import Depends
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.admission.controller import AdmissionController, admission_controller
from services.fanout.publisher import (
    Fanout,
    FanoutEvent,
    fan_out,
    get_fanout,
    provider_channel,
    request_channel,
    requester_channel,
)
from services.matching.selector import Candidate, CandidateSelector, candidate_selector
from shared.middleware.auth import (
    Principal,
    ProviderPrincipal,
    RequesterPrincipal,
    principal_type_name,
)
from shared.models.models import (
    AuditAction,
    IssueCategory,
    PaymentMode,
    Provider,
    RequestAuditLog,
    RequestCandidate,
    RequestStatus,
    Requester,
    ServiceRequest,
    Vehicle,
    VehicleClass,
)
from shared.schemas.schemas import (
    AcceptRequest,
    AssignedMeta,
    CreatedMeta,
    ProviderLocationBroadcast,
    ProviderLocationUpdate,
    ProviderSummary,
    ServiceRequestCreate,
    ServiceRequestResponse,
    StatusChangeMeta,
    StatusUpdateRequest,
    audit_meta_adapter,
)
from shared.utils.clock import as_utc, utcnow
from shared.utils.errors import Conflict, Forbidden, Internal, NotFound, ValidationError
from shared.utils.geo import haversine_km

logger = logging.getLogger(__name__)

# PENDING → ACCEPTED is reserved for accept_request.
# Same-status entries allow an eta / pricing refresh.
ALLOWED_TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.CANCELLED},
    RequestStatus.ACCEPTED: {
        RequestStatus.ACCEPTED,
        RequestStatus.IN_PROGRESS,
        RequestStatus.CANCELLED,
    },
    RequestStatus.IN_PROGRESS: {
        RequestStatus.IN_PROGRESS,
        RequestStatus.COMPLETED,
        RequestStatus.CANCELLED,
    },
    RequestStatus.COMPLETED: set(),
    RequestStatus.CANCELLED: set(),
}


def is_legal_transition(current: RequestStatus, new: RequestStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


TRACKABLE_STATUSES = (RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS)


# ── Helpers ───────────────────────────────────────────────────

async def load_request(db: AsyncSession, request_id: uuid.UUID) -> Optional[ServiceRequest]:
    """Fetch a request, overwriting any stale copy in the session."""
    result = await db.execute(
        select(ServiceRequest)
        .where(ServiceRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_request_or_404(db: AsyncSession, request_id: uuid.UUID) -> ServiceRequest:
    request = await load_request(db, request_id)
    if not request:
        raise NotFound("Service request not found")
    return request


def _log_audit(
    db: AsyncSession,
    request_id: uuid.UUID,
    action: AuditAction,
    from_status: Optional[RequestStatus],
    to_status: RequestStatus,
    principal: Principal,
    meta,
) -> None:
    """Append an immutable audit entry for every lifecycle write."""
    db.add(
        RequestAuditLog(
            request_id=request_id,
            action=action,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            actor_id=principal.id,
            actor_type=principal_type_name(principal),
            audit_metadata=audit_meta_adapter.dump_python(meta, mode="json"),
        )
    )


def _serialize(request: ServiceRequest) -> dict:
    return ServiceRequestResponse.model_validate(request).model_dump(mode="json")


async def _commit(db: AsyncSession, request_id: uuid.UUID) -> None:
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(f"Failed to persist request {request_id}")
        raise Internal("Could not save the service request")


class DispatchCoordinator:
    """Owns every write to a service request except chat."""

    def __init__(
        self,
        fanout: Fanout,
        admission: Optional[AdmissionController] = None,
        selector: Optional[CandidateSelector] = None,
    ):
        self.fanout = fanout
        self.admission = admission or admission_controller
        self.selector = selector or candidate_selector

    # ── Create ────────────────────────────────────────────────

    async def create_request(
        self,
        db: AsyncSession,
        principal: Principal,
        data: ServiceRequestCreate,
    ) -> Tuple[ServiceRequest, List[Candidate]]:
        if not isinstance(principal, RequesterPrincipal):
            raise Forbidden("Only requesters can create service requests")

        requester = await db.get(Requester, principal.id)
        if not requester:
            raise NotFound("Requester not found")
        if not requester.is_active:
            raise Forbidden("Account is deactivated")

        now = utcnow()
        self.admission.ensure_can_create(requester, now)

        vehicle_result = await db.execute(
            select(Vehicle).where(
                Vehicle.id == data.vehicle_id,
                Vehicle.requester_id == requester.id,
                Vehicle.is_active.is_(True),
            )
        )
        vehicle = vehicle_result.scalar_one_or_none()
        if not vehicle:
            raise NotFound("Vehicle not found")

        await self.admission.increment_request_count(db, requester, now)

        vehicle_class = VehicleClass(vehicle.vehicle_class)
        candidates = await self.selector.select_candidates(
            db,
            vehicle_class,
            data.location.latitude,
            data.location.longitude,
            now=now,
        )

        request = ServiceRequest(
            requester_id=requester.id,
            vehicle_id=vehicle.id,
            issue_category=IssueCategory(data.issue_category),
            description=data.description,
            attachments=list(data.attachments),
            latitude=data.location.latitude,
            longitude=data.location.longitude,
            address=data.location.address,
            status=RequestStatus.PENDING,
            created_at=now,
            updated_at=now,
            candidates=[
                RequestCandidate(
                    provider_id=c.provider.id,
                    distance_km=c.distance_km,
                    rank=rank,
                )
                for rank, c in enumerate(candidates)
            ],
        )
        db.add(request)
        await db.flush()

        _log_audit(
            db,
            request.id,
            AuditAction.CREATE,
            None,
            RequestStatus.PENDING,
            principal,
            CreatedMeta(vehicle_class=vehicle_class, candidate_count=len(candidates)),
        )
        await _commit(db, request.id)

        request = await get_request_or_404(db, request.id)
        logger.info(
            f"Request {request.id} created by requester {requester.id}, "
            f"{len(candidates)} providers notified"
        )

        payload = _serialize(request)
        await asyncio.gather(
            *(
                fan_out(
                    self.fanout,
                    provider_channel(c.provider.id),
                    FanoutEvent.NEW_REQUEST,
                    {"request": payload, "distance_km": c.distance_km},
                )
                for c in candidates
            )
        )
        return request, candidates

    # ── Accept race ───────────────────────────────────────────

    async def accept_request(
        self,
        db: AsyncSession,
        principal: Principal,
        request_id: uuid.UUID,
        data: Optional[AcceptRequest] = None,
    ) -> ServiceRequest:
        if not isinstance(principal, ProviderPrincipal):
            raise Forbidden("Only providers can accept requests")
        data = data or AcceptRequest()

        request = await get_request_or_404(db, request_id)
        if request.status != RequestStatus.PENDING:
            raise Conflict()
        if not request.is_candidate(principal.id):
            raise Forbidden("Provider was not notified of this request")

        now = utcnow()
        provider = await db.get(Provider, principal.id)
        if not provider or not provider.has_active_subscription(now):
            raise Forbidden("Provider subscription is not active")

        mechanic = data.mechanic.model_dump() if data.mechanic else None
        eta = as_utc(data.eta)
        values = {
            "status": RequestStatus.ACCEPTED,
            "assigned_provider_id": provider.id,
            "eta": eta,
            "accepted_at": now,
            "updated_at": now,
        }
        if mechanic is not None:
            values["assigned_mechanic"] = mechanic

        # The race is decided here: only one UPDATE can see PENDING.
        result = await db.execute(
            update(ServiceRequest)
            .where(
                ServiceRequest.id == request_id,
                ServiceRequest.status == RequestStatus.PENDING,
                ServiceRequest.assigned_provider_id.is_(None),
            )
            .values(**values)
            .returning(ServiceRequest.id)
            .execution_options(synchronize_session=False)
        )
        if result.scalar_one_or_none() is None:
            logger.info(f"Provider {provider.id} lost accept race for request {request_id}")
            raise Conflict()

        _log_audit(
            db,
            request_id,
            AuditAction.ASSIGN,
            RequestStatus.PENDING,
            RequestStatus.ACCEPTED,
            principal,
            AssignedMeta(
                provider_id=provider.id,
                eta=eta,
                mechanic_name=mechanic["name"] if mechanic else None,
            ),
        )
        await _commit(db, request_id)

        request = await get_request_or_404(db, request_id)
        logger.info(f"Request {request_id} accepted by provider {provider.id}")

        await fan_out(
            self.fanout,
            requester_channel(request.requester_id),
            FanoutEvent.REQUEST_ACCEPTED,
            {
                "request_id": request.id,
                "provider": ProviderSummary.model_validate(provider).model_dump(mode="json"),
                "mechanic": mechanic,
                "eta": request.eta,
            },
        )
        return request

    # ── Status transitions ────────────────────────────────────

    async def update_status(
        self,
        db: AsyncSession,
        principal: Principal,
        request_id: uuid.UUID,
        data: StatusUpdateRequest,
    ) -> ServiceRequest:
        request = await get_request_or_404(db, request_id)

        if isinstance(principal, RequesterPrincipal):
            authorized = request.requester_id == principal.id
        elif isinstance(principal, ProviderPrincipal):
            authorized = request.assigned_provider_id == principal.id
        else:
            authorized = False
        if not authorized:
            raise Forbidden("Not authorized to update this request")

        current = RequestStatus(request.status)
        new_status = RequestStatus(data.status)
        if not is_legal_transition(current, new_status):
            raise ValidationError(
                f"Cannot change status from {current.value} to {new_status.value}"
            )

        now = utcnow()
        payment_mode = PaymentMode(data.payment_mode) if data.payment_mode else None
        values = {"status": new_status, "updated_at": now}
        if data.eta is not None:
            values["eta"] = as_utc(data.eta)
        if data.pricing_estimate is not None:
            values["pricing_estimate"] = data.pricing_estimate.model_dump(mode="json")
        if payment_mode is not None:
            values["payment_mode"] = payment_mode

        if new_status == RequestStatus.COMPLETED:
            values["completed_at"] = now
            if payment_mode is not None and payment_mode != PaymentMode.PENDING:
                values["is_paid"] = True
                values["paid_at"] = now
        elif new_status == RequestStatus.CANCELLED:
            values["cancelled_at"] = now
            values["cancellation_reason"] = data.cancellation_reason

        result = await db.execute(
            update(ServiceRequest)
            .where(
                ServiceRequest.id == request_id,
                ServiceRequest.status == current,
            )
            .values(**values)
            .returning(ServiceRequest.id)
            .execution_options(synchronize_session=False)
        )
        if result.scalar_one_or_none() is None:
            raise Conflict("Request status changed concurrently")

        _log_audit(
            db,
            request_id,
            AuditAction.STATUS_CHANGE,
            current,
            new_status,
            principal,
            StatusChangeMeta(
                payment_mode=payment_mode,
                cancellation_reason=data.cancellation_reason,
            ),
        )
        await _commit(db, request_id)

        request = await get_request_or_404(db, request_id)
        logger.info(f"Request {request_id}: {current.value} → {new_status.value}")

        await fan_out(
            self.fanout,
            request_channel(request.id),
            FanoutEvent.REQUEST_STATUS_UPDATED,
            {
                "request_id": request.id,
                "status": request.status,
                "eta": request.eta,
                "pricing_estimate": request.pricing_estimate,
            },
        )
        return request

    # ── Live tracking ─────────────────────────────────────────

    async def share_location(
        self,
        db: AsyncSession,
        principal: Principal,
        request_id: uuid.UUID,
        data: ProviderLocationUpdate,
    ) -> ProviderLocationBroadcast:
        """
        Relay the assigned provider's position to request:{id} subscribers.
        Nothing is stored; the provider's registered location used for
        matching is left alone.
        """
        request = await get_request_or_404(db, request_id)
        if not (
            isinstance(principal, ProviderPrincipal)
            and request.assigned_provider_id is not None
            and request.assigned_provider_id == principal.id
        ):
            raise Forbidden("Only the assigned provider can share its location")
        if request.status not in TRACKABLE_STATUSES:
            raise ValidationError(
                f"Location sharing is closed for {RequestStatus(request.status).value} requests"
            )

        broadcast = ProviderLocationBroadcast(
            request_id=request.id,
            provider_id=principal.id,
            latitude=data.latitude,
            longitude=data.longitude,
            timestamp=utcnow(),
        )
        await fan_out(
            self.fanout,
            request_channel(request.id),
            FanoutEvent.PROVIDER_LOCATION,
            broadcast.model_dump(mode="json"),
        )
        return broadcast

    # ── Reads ─────────────────────────────────────────────────

    async def get_request(
        self,
        db: AsyncSession,
        principal: Principal,
        request_id: uuid.UUID,
    ) -> ServiceRequest:
        request = await get_request_or_404(db, request_id)
        if isinstance(principal, RequesterPrincipal):
            allowed = request.requester_id == principal.id
        elif isinstance(principal, ProviderPrincipal):
            allowed = (
                request.assigned_provider_id == principal.id
                or request.is_candidate(principal.id)
            )
        else:
            allowed = False
        if not allowed:
            raise Forbidden("Not authorized to view this request")
        return request

    async def list_requester_requests(
        self,
        db: AsyncSession,
        principal: Principal,
        status: Optional[RequestStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[ServiceRequest], int]:
        if not isinstance(principal, RequesterPrincipal):
            raise Forbidden("Only requesters have a request history")

        query = select(ServiceRequest).where(ServiceRequest.requester_id == principal.id)
        if status is not None:
            query = query.where(ServiceRequest.status == status)

        total = await db.scalar(select(func.count()).select_from(query.subquery()))
        result = await db.execute(
            query.order_by(ServiceRequest.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total or 0

    async def provider_queue(
        self,
        db: AsyncSession,
        principal: Principal,
        status: RequestStatus = RequestStatus.PENDING,
    ) -> List[Tuple[ServiceRequest, float]]:
        """
        PENDING: open requests this provider was notified of.
        Any other status: requests assigned to this provider in that status.
        """
        if not isinstance(principal, ProviderPrincipal):
            raise Forbidden("Only providers have a request queue")

        provider = await db.get(Provider, principal.id)
        if not provider:
            raise NotFound("Provider not found")

        query = select(ServiceRequest).where(ServiceRequest.status == status)
        if status == RequestStatus.PENDING:
            query = query.join(
                RequestCandidate, RequestCandidate.request_id == ServiceRequest.id
            ).where(RequestCandidate.provider_id == provider.id)
        else:
            query = query.where(ServiceRequest.assigned_provider_id == provider.id)

        result = await db.execute(
            query.order_by(ServiceRequest.created_at.desc()).limit(settings.PROVIDER_QUEUE_LIMIT)
        )
        return [
            (
                request,
                round(
                    haversine_km(
                        provider.latitude, provider.longitude,
                        request.latitude, request.longitude,
                    ),
                    2,
                ),
            )
            for request in result.scalars().all()
        ]


def total_pages(total: int, page_size: int) -> int:
    return max(1, math.ceil(total / page_size))


# ── Dependency ────────────────────────────────────────────────

def get_coordinator(fanout: Fanout = Depends(get_fanout)) -> DispatchCoordinator:
    return DispatchCoordinator(fanout)
