"""
services/provider/router.py
Provider-facing reads: diagnostic nearby search and the request queue.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.matching.selector import candidate_selector
from services.request.coordinator import DispatchCoordinator, get_coordinator
from shared.middleware.auth import ProviderPrincipal, require_provider
from shared.models.models import RequestStatus, VehicleClass
from shared.schemas.schemas import (
    NearbyProviderResponse,
    ProviderQueueItem,
    ProviderSummary,
    ServiceRequestResponse,
)

router = APIRouter(prefix="/providers", tags=["Providers"])


@router.get("/nearby", response_model=List[NearbyProviderResponse])
async def nearby_providers(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    vehicle_class: Optional[VehicleClass] = Query(None),
    radius_km: float = Query(settings.MATCHING_RADIUS_KM, gt=0, le=100),
    limit: int = Query(settings.MATCHING_MAX_CANDIDATES, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """
    Ranked eligible providers around a point, same rules as dispatch.
    Without vehicle_class every capability is accepted.
    """
    candidates = await candidate_selector.select_candidates(
        db, vehicle_class, lat, lng, radius_km=radius_km, limit=limit
    )
    return [
        NearbyProviderResponse(
            provider=ProviderSummary.model_validate(c.provider),
            distance_km=c.distance_km,
        )
        for c in candidates
    ]


@router.get("/me/requests", response_model=List[ProviderQueueItem])
async def my_request_queue(
    status_filter: RequestStatus = Query(RequestStatus.PENDING, alias="status"),
    principal: ProviderPrincipal = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    """
    status=PENDING lists open requests this provider was notified of;
    any other status lists requests assigned to this provider.
    """
    queue = await coordinator.provider_queue(db, principal, status_filter)
    return [
        ProviderQueueItem(
            request=ServiceRequestResponse.model_validate(request),
            distance_km=distance,
        )
        for request, distance in queue
    ]
