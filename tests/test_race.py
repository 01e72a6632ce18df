"""
tests/test_race.py
Concurrency tests: the accept race and the quota increment, each attempt
on its own database session as separate server processes would be.
"""

import asyncio
import uuid

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import AsyncSessionLocal
from services.request.coordinator import DispatchCoordinator
from shared.middleware.auth import ProviderPrincipal, RequesterPrincipal
from shared.models.models import (
    AuditAction,
    RequestAuditLog,
    RequestStatus,
    ServiceRequest,
)
from shared.schemas.schemas import LocationSchema, ServiceRequestCreate
from shared.utils.errors import Conflict, QuotaExceeded, QuotaReason
from tests.conftest import ORIGIN, make_provider, make_requester, make_vehicle, north_of


def _create_body(vehicle_id: uuid.UUID) -> ServiceRequestCreate:
    return ServiceRequestCreate(
        vehicle_id=vehicle_id,
        issue_category="TOWING",
        description="Engine seized on the ring road",
        location=LocationSchema(latitude=ORIGIN[0], longitude=ORIGIN[1], address="Ring Road"),
    )


@pytest.mark.asyncio
async def test_exactly_one_concurrent_accept_wins(db: AsyncSession, fanout):
    providers = [
        await make_provider(db, north_of(ORIGIN, 0.5 + i), name=f"Garage {i}")
        for i in range(5)
    ]
    requester = await make_requester(db)
    vehicle = await make_vehicle(db, requester)

    async with AsyncSessionLocal() as session:
        request, candidates = await DispatchCoordinator(fanout).create_request(
            session, RequesterPrincipal(requester.id), _create_body(vehicle.id)
        )
    assert len(candidates) == 5

    async def attempt(provider_id: uuid.UUID) -> str:
        async with AsyncSessionLocal() as session:
            try:
                await DispatchCoordinator(fanout).accept_request(
                    session, ProviderPrincipal(provider_id), request.id
                )
                return "won"
            except Conflict:
                await session.rollback()
                return "conflict"

    results = await asyncio.gather(*(attempt(p.id) for p in providers))

    assert results.count("won") == 1
    assert results.count("conflict") == 4

    stored = (
        await db.execute(
            select(ServiceRequest)
            .where(ServiceRequest.id == request.id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    winner = providers[results.index("won")]
    assert stored.status == RequestStatus.ACCEPTED
    assert stored.assigned_provider_id == winner.id

    assigns = await db.scalar(
        select(func.count()).select_from(RequestAuditLog).where(
            RequestAuditLog.request_id == request.id,
            RequestAuditLog.action == AuditAction.ASSIGN,
        )
    )
    assert assigns == 1
    assert len(fanout.named("request_accepted")) == 1


@pytest.mark.asyncio
async def test_concurrent_creations_cannot_overrun_quota(db: AsyncSession, fanout):
    """Two creations at max_requests - 1: one passes, one is refused."""
    requester = await make_requester(db, requests_used=4, max_requests=5)
    vehicle = await make_vehicle(db, requester)

    async def attempt() -> str:
        async with AsyncSessionLocal() as session:
            try:
                await DispatchCoordinator(fanout).create_request(
                    session, RequesterPrincipal(requester.id), _create_body(vehicle.id)
                )
                return "created"
            except QuotaExceeded as exc:
                await session.rollback()
                assert exc.reason == QuotaReason.TRIAL_EXHAUSTED
                return "refused"

    results = await asyncio.gather(attempt(), attempt())

    assert sorted(results) == ["created", "refused"]
    await db.refresh(requester)
    assert requester.requests_used == 5
    count = await db.scalar(
        select(func.count()).select_from(ServiceRequest).where(
            ServiceRequest.requester_id == requester.id
        )
    )
    assert count == 1
