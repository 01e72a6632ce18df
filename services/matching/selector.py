"""
services/matching/selector.py
Candidate selection: eligible providers near a point, ranked.

Ranking, highest priority first:
  1. sponsored providers before the rest
  2. providers within MATCHING_TIE_WINDOW_KM of each other are tied on
     distance and ordered by rating, best first
  3. otherwise nearer first
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import cmp_to_key
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import Provider, SubscriptionStatus, VehicleClass
from shared.utils.clock import utcnow
from shared.utils.geo import bounding_box, haversine_km

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    provider: Provider
    distance_km: float


def compare_candidates(a: Candidate, b: Candidate, tie_window_km: float) -> int:
    if a.provider.is_sponsored != b.provider.is_sponsored:
        return -1 if a.provider.is_sponsored else 1
    if abs(a.distance_km - b.distance_km) <= tie_window_km:
        if a.provider.rating_avg == b.provider.rating_avg:
            return 0
        return -1 if a.provider.rating_avg > b.provider.rating_avg else 1
    return -1 if a.distance_km < b.distance_km else 1


def rank_candidates(
    candidates: List[Candidate],
    tie_window_km: Optional[float] = None,
) -> List[Candidate]:
    """
    Sort candidates by the ranking rules above.

    The tie window is not transitive, so the input is first put in
    (distance, id) order; the stable sort then gives the same output for
    the same snapshot every time.
    """
    window = settings.MATCHING_TIE_WINDOW_KM if tie_window_km is None else tie_window_km
    ordered = sorted(candidates, key=lambda c: (c.distance_km, str(c.provider.id)))
    return sorted(ordered, key=cmp_to_key(lambda a, b: compare_candidates(a, b, window)))


class CandidateSelector:

    async def select_candidates(
        self,
        db: AsyncSession,
        vehicle_class: Optional[VehicleClass],
        lat: float,
        lng: float,
        radius_km: Optional[float] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Candidate]:
        """
        Eligible = online, subscription ACTIVE with a future expiry, and
        supporting vehicle_class. vehicle_class None skips the capability
        check (diagnostic nearby query).
        """
        radius_km = settings.MATCHING_RADIUS_KM if radius_km is None else radius_km
        limit = settings.MATCHING_MAX_CANDIDATES if limit is None else limit
        now = now or utcnow()

        min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_km)
        result = await db.execute(
            select(Provider).where(
                Provider.is_online.is_(True),
                Provider.subscription_status == SubscriptionStatus.ACTIVE,
                Provider.subscription_expiry > now,
                Provider.latitude.between(min_lat, max_lat),
                Provider.longitude.between(min_lng, max_lng),
            )
        )
        providers = result.scalars().all()

        candidates = []
        for provider in providers:
            if vehicle_class is not None and not provider.supports(vehicle_class):
                continue
            distance = round(haversine_km(lat, lng, provider.latitude, provider.longitude), 2)
            if distance > radius_km:
                continue
            candidates.append(Candidate(provider=provider, distance_km=distance))

        ranked = rank_candidates(candidates)[:limit]
        logger.info(
            "Found %d matching providers within %skm (class=%s)",
            len(ranked),
            radius_km,
            vehicle_class.value if vehicle_class else "any",
        )
        return ranked


candidate_selector = CandidateSelector()
