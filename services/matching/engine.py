"""
services/matching/engine.py
Partner matching: category + availability + KYC filter in SQL, haversine
radius check and distance ranking in Python. Read-only; never touches
the booking.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking.transitions import ACTIVE_WORK_STATUSES
from shared.exceptions import NotFound, ValidationFailure
from shared.models.models import (
    AssociationStatus,
    AvailabilityStatus,
    Booking,
    KYCStatus,
    PartnerAssociation,
    Service,
    ServicePartner,
)
from shared.utils.geo import haversine_km

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    partner: ServicePartner
    distance_km: float


class MatchingEngine:
    def __init__(self, db: AsyncSession, max_candidates: Optional[int] = None):
        self.db = db
        self.max_candidates = max_candidates or settings.MATCHING_MAX_CANDIDATES

    async def find_candidates(self, booking: Booking) -> List[Candidate]:
        """
        Rank eligible partners by distance from the service address.
        Busy partners (an active booking elsewhere) and partners who already
        rejected this booking are left out.
        """
        if not booking.items:
            raise ValidationFailure("Booking has no service item", booking_id=str(booking.id))
        if booking.service_latitude is None or booking.service_longitude is None:
            raise ValidationFailure("Booking has no service coordinates", booking_id=str(booking.id))

        service = await self.db.get(Service, booking.items[0].service_id)
        if not service:
            raise NotFound("Service for booking not found", booking_id=str(booking.id))

        busy = (
            select(Booking.id)
            .where(
                Booking.partner_id == ServicePartner.id,
                Booking.status.in_(list(ACTIVE_WORK_STATUSES)),
            )
            .correlate(ServicePartner)
            .exists()
        )

        query = select(ServicePartner).where(
            ServicePartner.availability_status == AvailabilityStatus.AVAILABLE,
            ServicePartner.kyc_status == KYCStatus.APPROVED,
            ServicePartner.category_id == service.category_id,
            ServicePartner.current_latitude.is_not(None),
            ServicePartner.current_longitude.is_not(None),
            ~busy,
        )

        if booking.business_partner_id:
            query = query.join(
                PartnerAssociation,
                and_(
                    PartnerAssociation.service_partner_id == ServicePartner.id,
                    PartnerAssociation.business_partner_id == booking.business_partner_id,
                    PartnerAssociation.status == AssociationStatus.ACTIVE,
                ),
            )

        rejected = {str(pid) for pid in (booking.rejected_partner_ids or [])}
        if rejected:
            query = query.where(ServicePartner.id.not_in([UUID(pid) for pid in rejected]))

        result = await self.db.execute(query)
        partners = result.scalars().all()

        candidates = []
        for partner in partners:
            distance = haversine_km(
                booking.service_latitude,
                booking.service_longitude,
                partner.current_latitude,
                partner.current_longitude,
            )
            radius = partner.service_radius_km or settings.DEFAULT_SERVICE_RADIUS_KM
            if distance <= radius:
                candidates.append(Candidate(partner=partner, distance_km=round(distance, 3)))

        candidates.sort(key=lambda c: c.distance_km)
        logger.info(
            f"Matching for booking {booking.booking_number}: "
            f"{len(candidates)} candidate(s) of {len(partners)} eligible"
        )
        return candidates[: self.max_candidates]
