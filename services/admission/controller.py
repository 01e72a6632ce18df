"""
services/admission/controller.py
Membership quota gate for request creation.

FREE is a lifetime trial counter (expiry ignored), NONE never admits,
paid plans admit while unexpired and under their request allowance.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from shared.models.models import MembershipPlan, Requester
from shared.utils.clock import as_utc, utcnow
from shared.utils.errors import QuotaExceeded, QuotaReason

logger = logging.getLogger(__name__)

PAID_PLANS = (MembershipPlan.BASIC, MembershipPlan.PREMIUM)


class AdmissionController:

    def can_create_request(self, requester: Requester, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if requester.plan == MembershipPlan.NONE:
            return False
        if requester.requests_used >= requester.max_requests:
            return False
        if requester.plan == MembershipPlan.FREE:
            return True
        expiry = as_utc(requester.membership_expiry)
        return expiry is not None and now <= expiry

    def denial_reason(self, requester: Requester) -> QuotaReason:
        if (
            requester.plan == MembershipPlan.FREE
            and requester.requests_used >= requester.max_requests
        ):
            return QuotaReason.TRIAL_EXHAUSTED
        return QuotaReason.NO_ACTIVE_PLAN

    def ensure_can_create(self, requester: Requester, now: Optional[datetime] = None) -> None:
        if not self.can_create_request(requester, now):
            reason = self.denial_reason(requester)
            logger.info("Admission denied for requester %s: %s", requester.id, reason.value)
            raise QuotaExceeded(reason)

    def _plan_clause(self, now: datetime):
        return or_(
            Requester.plan == MembershipPlan.FREE,
            and_(
                Requester.plan.in_(PAID_PLANS),
                Requester.membership_expiry.is_not(None),
                Requester.membership_expiry >= now,
            ),
        )

    async def increment_request_count(
        self,
        db: AsyncSession,
        requester: Requester,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Consume one request from the requester's allowance.

        The quota check and the increment are one conditional UPDATE, so two
        concurrent creations at max_requests - 1 cannot both pass. Runs in the
        caller's transaction; a failed creation rolls the increment back.
        """
        now = now or utcnow()
        result = await db.execute(
            update(Requester)
            .where(
                Requester.id == requester.id,
                Requester.requests_used < Requester.max_requests,
                self._plan_clause(now),
            )
            .values(requests_used=Requester.requests_used + 1)
            .returning(Requester.requests_used)
            .execution_options(synchronize_session=False)
        )
        used = result.scalar_one_or_none()
        if used is None:
            await db.refresh(requester)
            raise QuotaExceeded(self.denial_reason(requester))

        set_committed_value(requester, "requests_used", used)
        return used


admission_controller = AdmissionController()
