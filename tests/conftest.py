"""
tests/conftest.py
Shared fixtures: a throwaway SQLite database, an HTTP client bound to the
app, a recording fan-out, and factories for requesters, vehicles and
providers. Environment is set before any application module is imported.
"""

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="dispatch-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key"
os.environ["INTERNAL_API_TOKEN"] = "test-internal-token"
os.environ["APP_ENV"] = "test"
os.environ["LOG_JSON"] = "false"

import json
import math
import uuid
from datetime import timedelta
from typing import List, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import AsyncSessionLocal, Base, engine
from services.fanout.publisher import Fanout, encode_envelope, get_fanout
from shared.models.models import (
    MembershipPlan,
    Provider,
    Requester,
    SubscriptionStatus,
    Vehicle,
    VehicleClass,
)
from shared.utils.clock import utcnow
from shared.utils.security import create_access_token

# Nagpur city centre; NEAR is ~1.38 km away
ORIGIN = (21.1458, 79.0882)
NEAR = (21.1565, 79.0950)

KM_PER_DEGREE_LAT = 6371.0 * math.pi / 180


def north_of(origin: Tuple[float, float], km: float) -> Tuple[float, float]:
    """A point exactly km kilometres due north along the meridian."""
    return origin[0] + km / KM_PER_DEGREE_LAT, origin[1]


# ── Fan-out double ─────────────────────────────────────────────

class RecordingFanout(Fanout):
    """Keeps every published event in memory instead of sending it."""

    def __init__(self):
        self.events: List[Tuple[str, str, dict]] = []

    async def publish(self, channel: str, event: str, payload: dict) -> int:
        # Round-trip through the wire format so tests see what subscribers see
        envelope = json.loads(encode_envelope(event, payload))
        self.events.append((channel, envelope["event"], envelope["data"]))
        return 1

    def on(self, channel: str) -> List[Tuple[str, str, dict]]:
        return [e for e in self.events if e[0] == channel]

    def named(self, event: str) -> List[Tuple[str, str, dict]]:
        return [e for e in self.events if e[1] == event]


# ── Database ───────────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def fanout() -> RecordingFanout:
    return RecordingFanout()


@pytest_asyncio.fixture
async def client(fanout: RecordingFanout):
    from main import app

    app.dependency_overrides[get_fanout] = lambda: fanout
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Auth ───────────────────────────────────────────────────────

def auth_headers(entity) -> dict:
    """Bearer header for a Requester or Provider row."""
    principal_type = "provider" if isinstance(entity, Provider) else "requester"
    token, _ = create_access_token(str(entity.id), principal_type)
    return {"Authorization": f"Bearer {token}"}


# ── Factories ──────────────────────────────────────────────────

async def make_requester(db: AsyncSession, **overrides) -> Requester:
    now = utcnow()
    fields = dict(
        id=uuid.uuid4(),
        name="Asha Verma",
        email=f"asha-{uuid.uuid4().hex[:8]}@example.com",
        is_active=True,
        plan=MembershipPlan.FREE,
        requests_used=0,
        max_requests=5,
        membership_expiry=now + timedelta(days=365),
        last_reset_date=now,
    )
    fields.update(overrides)
    requester = Requester(**fields)
    db.add(requester)
    await db.commit()
    return requester


async def make_vehicle(
    db: AsyncSession,
    requester: Requester,
    vehicle_class: VehicleClass = VehicleClass.FOUR_WHEELER,
    **overrides,
) -> Vehicle:
    fields = dict(
        id=uuid.uuid4(),
        requester_id=requester.id,
        vehicle_class=vehicle_class,
        brand="Maruti",
        model="Swift",
        registration_number=f"MH31-{uuid.uuid4().hex[:6].upper()}",
        is_active=True,
    )
    fields.update(overrides)
    vehicle = Vehicle(**fields)
    db.add(vehicle)
    await db.commit()
    return vehicle


async def make_provider(
    db: AsyncSession,
    location: Tuple[float, float] = NEAR,
    **overrides,
) -> Provider:
    fields = dict(
        id=uuid.uuid4(),
        name=f"Workshop {uuid.uuid4().hex[:4]}",
        phone="9876543210",
        latitude=location[0],
        longitude=location[1],
        address="Sitabuldi, Nagpur",
        vehicle_classes=["2W", "4W"],
        service_categories=["BATTERY", "TIRE", "TOWING"],
        is_online=True,
        subscription_status=SubscriptionStatus.ACTIVE,
        subscription_expiry=utcnow() + timedelta(days=30),
        rating_avg=4.0,
        rating_count=10,
        is_sponsored=False,
    )
    fields.update(overrides)
    provider = Provider(**fields)
    db.add(provider)
    await db.commit()
    return provider


def request_payload(vehicle: Vehicle, location: Tuple[float, float] = ORIGIN, **overrides) -> dict:
    payload = {
        "vehicle_id": str(vehicle.id),
        "issue_category": "BATTERY",
        "description": "Car will not start, battery seems dead",
        "location": {
            "latitude": location[0],
            "longitude": location[1],
            "address": "Zero Mile, Nagpur",
        },
    }
    payload.update(overrides)
    return payload


async def create_request(client: AsyncClient, requester: Requester, vehicle: Vehicle, **overrides) -> dict:
    response = await client.post(
        "/requests", headers=auth_headers(requester), json=request_payload(vehicle, **overrides)
    )
    assert response.status_code == 201, response.text
    return response.json()


async def accept(client: AsyncClient, provider: Provider, request_id: str, body: dict = None):
    return await client.post(
        f"/requests/{request_id}/accept", headers=auth_headers(provider), json=body
    )


# ── Entity fixtures ────────────────────────────────────────────

@pytest_asyncio.fixture
async def requester(db: AsyncSession) -> Requester:
    return await make_requester(db)


@pytest_asyncio.fixture
async def vehicle(db: AsyncSession, requester: Requester) -> Vehicle:
    return await make_vehicle(db, requester)


@pytest_asyncio.fixture
async def provider(db: AsyncSession) -> Provider:
    return await make_provider(db, name="Sharma Auto Works")
