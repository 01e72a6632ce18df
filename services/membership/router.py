"""
services/membership/router.py
Internal endpoints for the payment collaborator, the only writer of
membership and subscription activation fields. Hidden from the public
schema and guarded by X-Internal-Token.
"""

import logging
from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from shared.middleware.auth import require_internal_token
from shared.models.models import MembershipPlan, Provider, Requester, SubscriptionStatus
from shared.schemas.schemas import (
    MembershipActivate,
    MembershipResponse,
    SubscriptionActivate,
    SubscriptionResponse,
)
from shared.utils.clock import utcnow
from shared.utils.errors import NotFound

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal",
    tags=["Internal"],
    include_in_schema=False,
    dependencies=[Depends(require_internal_token)],
)


def plan_allowance(plan: MembershipPlan) -> int:
    return {
        MembershipPlan.NONE: 0,
        MembershipPlan.FREE: settings.FREE_PLAN_MAX_REQUESTS,
        MembershipPlan.BASIC: settings.BASIC_PLAN_MAX_REQUESTS,
        MembershipPlan.PREMIUM: settings.PREMIUM_PLAN_MAX_REQUESTS,
    }[plan]


def billing_period(billing_cycle: str) -> timedelta:
    if billing_cycle == "yearly":
        return timedelta(days=settings.BILLING_CYCLE_DAYS_YEARLY)
    return timedelta(days=settings.BILLING_CYCLE_DAYS_MONTHLY)


@router.put("/requesters/{requester_id}/membership", response_model=MembershipResponse)
async def activate_membership(
    requester_id: UUID,
    body: MembershipActivate,
    db: AsyncSession = Depends(get_db),
):
    """Called after a captured membership payment. Resets the usage counter."""
    requester = await db.get(Requester, requester_id)
    if not requester:
        raise NotFound("Requester not found")

    now = utcnow()
    plan = MembershipPlan(body.plan)
    requester.plan = plan
    requester.requests_used = 0
    requester.max_requests = plan_allowance(plan)
    requester.membership_expiry = (
        now + timedelta(days=settings.FREE_PLAN_VALIDITY_DAYS)
        if plan == MembershipPlan.FREE
        else now + billing_period(body.billing_cycle)
    )
    requester.last_reset_date = now
    await db.commit()

    logger.info(f"Requester {requester_id} membership activated: {plan.value}")
    return MembershipResponse.model_validate(requester)


@router.put("/providers/{provider_id}/subscription", response_model=SubscriptionResponse)
async def activate_subscription(
    provider_id: UUID,
    body: SubscriptionActivate,
    db: AsyncSession = Depends(get_db),
):
    """Called after a captured provider subscription payment, or to deactivate one."""
    provider = await db.get(Provider, provider_id)
    if not provider:
        raise NotFound("Provider not found")

    new_status = SubscriptionStatus(body.status)
    provider.subscription_status = new_status
    if new_status == SubscriptionStatus.ACTIVE:
        provider.subscription_expiry = utcnow() + billing_period(body.billing_cycle)
    await db.commit()

    logger.info(f"Provider {provider_id} subscription set to {new_status.value}")
    return SubscriptionResponse.model_validate(provider)
