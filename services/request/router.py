"""
services/request/router.py
Service request endpoints: create, list, detail, status, accept, live location.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_optional_redis
from config.settings import settings
from services.request.coordinator import DispatchCoordinator, get_coordinator, total_pages
from shared.middleware.auth import (
    Principal,
    RequesterPrincipal,
    get_principal,
    require_provider,
    require_requester,
)
from shared.models.models import RequestStatus
from shared.schemas.schemas import (
    AcceptRequest,
    CreateRequestResponse,
    ErrorResponse,
    PaginatedRequests,
    ProviderLocationBroadcast,
    ProviderLocationUpdate,
    ServiceRequestCreate,
    ServiceRequestResponse,
    StatusUpdateRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/requests", tags=["Requests"])


CREATE_WINDOW_SECONDS = 3600


def _create_limit_key(principal: RequesterPrincipal) -> str:
    return f"rate:create:{principal.id}"


async def _enforce_create_rate_limit(principal: RequesterPrincipal) -> None:
    """
    Per-requester hourly creation limit. Only successful creations count,
    so quota denials and bad vehicles do not burn the budget.
    Skipped when Redis is down.
    """
    client = get_optional_redis()
    if client is None:
        return
    try:
        used = await RedisCache(client).hit_count(_create_limit_key(principal))
    except Exception as e:
        logger.error(f"Create rate limit check failed: {str(e)}")
        return
    if used >= settings.REQUEST_CREATE_LIMIT_PER_HOUR:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many service requests. Please try again later.",
            headers={"Retry-After": str(CREATE_WINDOW_SECONDS)},
        )


async def _record_create(principal: RequesterPrincipal) -> None:
    client = get_optional_redis()
    if client is None:
        return
    try:
        await RedisCache(client).record_hit(
            _create_limit_key(principal), window_seconds=CREATE_WINDOW_SECONDS
        )
    except Exception as e:
        logger.error(f"Create rate limit update failed: {str(e)}")


# ── Create ────────────────────────────────────────────────────

@router.post(
    "",
    response_model=CreateRequestResponse,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def create_request(
    body: ServiceRequestCreate,
    principal: RequesterPrincipal = Depends(require_requester),
    db: AsyncSession = Depends(get_db),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    """
    Create a PENDING request and notify matching providers.
    Consumes one request from the requester's membership allowance.
    """
    await _enforce_create_rate_limit(principal)
    request, candidates = await coordinator.create_request(db, principal, body)
    await _record_create(principal)
    return CreateRequestResponse(
        request=ServiceRequestResponse.model_validate(request),
        notified_providers=len(candidates),
    )


# ── Read ──────────────────────────────────────────────────────

@router.get("/my", response_model=PaginatedRequests)
async def list_my_requests(
    status_filter: Optional[RequestStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    principal: RequesterPrincipal = Depends(require_requester),
    db: AsyncSession = Depends(get_db),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    """Requester's own requests, newest first."""
    items, total = await coordinator.list_requester_requests(
        db, principal, status=status_filter, page=page, page_size=page_size
    )
    return PaginatedRequests(
        items=[ServiceRequestResponse.model_validate(r) for r in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=total_pages(total, page_size),
    )


@router.get("/{request_id}", response_model=ServiceRequestResponse)
async def get_request(
    request_id: UUID,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    request = await coordinator.get_request(db, principal, request_id)
    return ServiceRequestResponse.model_validate(request)


# ── Lifecycle ─────────────────────────────────────────────────

@router.patch("/{request_id}/status", response_model=ServiceRequestResponse)
async def update_request_status(
    request_id: UUID,
    body: StatusUpdateRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    """Requester or assigned provider moves the request along its lifecycle."""
    request = await coordinator.update_status(db, principal, request_id, body)
    return ServiceRequestResponse.model_validate(request)


@router.post(
    "/{request_id}/accept",
    response_model=ServiceRequestResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def accept_request(
    request_id: UUID,
    body: Optional[AcceptRequest] = Body(None),
    principal: Principal = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    """
    A notified provider claims the request. Exactly one concurrent accept
    wins; the rest get 409 "Request is no longer available".
    """
    request = await coordinator.accept_request(db, principal, request_id, body)
    return ServiceRequestResponse.model_validate(request)


# ── Live tracking ─────────────────────────────────────────────

@router.post(
    "/{request_id}/location",
    response_model=ProviderLocationBroadcast,
    status_code=status.HTTP_202_ACCEPTED,
)
async def share_location(
    request_id: UUID,
    body: ProviderLocationUpdate,
    principal: Principal = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    """Assigned provider's live position, relayed on the request channel."""
    return await coordinator.share_location(db, principal, request_id, body)
