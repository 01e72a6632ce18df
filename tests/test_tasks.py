"""
tests/test_tasks.py
Tests for the membership beat tasks, run against the test database
through the same sync session the Celery worker uses.
"""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import MembershipPlan, SubscriptionStatus
from shared.utils.clock import utcnow
from tasks.membership_tasks import (
    _get_sync_session,
    expire_lapsed_subscriptions,
    reset_monthly_quotas,
    sync_database_url,
)
from tests.conftest import make_provider, make_requester


def test_sync_database_url():
    assert (
        sync_database_url("postgresql+asyncpg://u:p@db/roadside")
        == "postgresql+psycopg2://u:p@db/roadside"
    )
    assert sync_database_url("sqlite+aiosqlite:///./x.db") == "sqlite:///./x.db"


@pytest.mark.asyncio
async def test_expire_lapsed_subscriptions(db: AsyncSession):
    lapsed = await make_provider(db, subscription_expiry=utcnow() - timedelta(hours=1))
    current = await make_provider(db, subscription_expiry=utcnow() + timedelta(days=3))

    assert expire_lapsed_subscriptions() == 1
    # Idempotent
    assert expire_lapsed_subscriptions() == 0

    await db.refresh(lapsed)
    await db.refresh(current)
    assert lapsed.subscription_status == SubscriptionStatus.EXPIRED
    assert current.subscription_status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_reset_monthly_quotas(db: AsyncSession):
    now = utcnow()
    due = await make_requester(
        db,
        plan=MembershipPlan.BASIC,
        requests_used=15,
        max_requests=15,
        membership_expiry=now + timedelta(days=300),
        last_reset_date=now - timedelta(days=31),
    )
    recent = await make_requester(
        db,
        plan=MembershipPlan.PREMIUM,
        requests_used=7,
        max_requests=25,
        membership_expiry=now + timedelta(days=300),
        last_reset_date=now - timedelta(days=3),
    )
    expired = await make_requester(
        db,
        plan=MembershipPlan.BASIC,
        requests_used=15,
        max_requests=15,
        membership_expiry=now - timedelta(days=1),
        last_reset_date=now - timedelta(days=60),
    )
    trial = await make_requester(
        db,
        requests_used=5,
        last_reset_date=now - timedelta(days=60),
    )

    assert reset_monthly_quotas() == 1

    for requester in (due, recent, expired, trial):
        await db.refresh(requester)
    assert due.requests_used == 0
    assert recent.requests_used == 7
    assert expired.requests_used == 15
    assert trial.requests_used == 5


def test_sync_session_targets_test_database():
    session = _get_sync_session()
    try:
        assert str(session.get_bind().url).startswith("sqlite:///")
    finally:
        session.close()
