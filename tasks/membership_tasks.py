"""
tasks/membership_tasks.py
Celery beat tasks keeping membership and subscription state current:
- provider subscriptions past their expiry become EXPIRED
- paid requester memberships get their monthly allowance back

Both are single bulk UPDATEs and idempotent.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import create_engine, or_, update
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings
from shared.models.models import MembershipPlan, Provider, Requester, SubscriptionStatus
from shared.utils.clock import utcnow
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Helpers ────────────────────────────────────────────────────────────────────

def sync_database_url(url: str) -> str:
    """Map the async driver in DATABASE_URL to its sync counterpart."""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


def _get_sync_session() -> Session:
    """Create a synchronous SQLAlchemy session (Celery runs sync by default)."""
    sync_url = sync_database_url(settings.DATABASE_URL)
    if settings.is_sqlite:
        engine = create_engine(sync_url)
    else:
        engine = create_engine(sync_url, pool_pre_ping=True, pool_size=5)
    return sessionmaker(bind=engine)()


def expire_subscriptions(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = db.execute(
        update(Provider)
        .where(
            Provider.subscription_status == SubscriptionStatus.ACTIVE,
            Provider.subscription_expiry <= now,
        )
        .values(subscription_status=SubscriptionStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def reset_quotas(db: Session, now: Optional[datetime] = None) -> int:
    """
    Zero requests_used on unexpired BASIC/PREMIUM memberships whose last
    reset is older than QUOTA_RESET_INTERVAL_DAYS. FREE is a lifetime
    trial and is never reset.
    """
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.QUOTA_RESET_INTERVAL_DAYS)
    result = db.execute(
        update(Requester)
        .where(
            Requester.plan.in_([MembershipPlan.BASIC, MembershipPlan.PREMIUM]),
            Requester.membership_expiry > now,
            or_(Requester.last_reset_date.is_(None), Requester.last_reset_date <= cutoff),
        )
        .values(requests_used=0, last_reset_date=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ── Beat Tasks ─────────────────────────────────────────────────────────────────

@celery_app.task
def expire_lapsed_subscriptions():
    """Beat task: runs every 15 minutes."""
    db = _get_sync_session()
    try:
        count = expire_subscriptions(db)
        db.commit()
        logger.info(f"expire_lapsed_subscriptions: {count} subscriptions expired")
        return count
    except Exception as e:
        db.rollback()
        logger.exception(f"expire_lapsed_subscriptions failed: {e}")
    finally:
        db.close()


@celery_app.task
def reset_monthly_quotas():
    """Beat task: runs nightly."""
    db = _get_sync_session()
    try:
        count = reset_quotas(db)
        db.commit()
        logger.info(f"reset_monthly_quotas: {count} memberships reset")
        return count
    except Exception as e:
        db.rollback()
        logger.exception(f"reset_monthly_quotas failed: {e}")
    finally:
        db.close()
