"""
services/partner/router.py
Service partner self-service: profile, availability, live location and the
nearby open-job feed.
"""

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking.repository import BookingRepository
from services.booking.router import to_response
from shared.exceptions import NotFound, PreconditionMissing, Unauthorized, ValidationFailure
from shared.middleware.auth import require_partner
from shared.models.models import AvailabilityStatus, KYCStatus, ServicePartner, User
from shared.schemas.schemas import (
    AvailabilityUpdateRequest,
    LocationRequest,
    NearbyJobResponse,
    PartnerProfileResponse,
)
from shared.utils.clock import utcnow
from shared.utils.geo import haversine_km, is_valid_coordinate

router = APIRouter(prefix="/partners/me", tags=["Partners"])


async def _get_my_profile(user: User, db: AsyncSession) -> ServicePartner:
    partner = await db.scalar(select(ServicePartner).where(ServicePartner.user_id == user.id))
    if not partner:
        raise NotFound("Partner profile not found", user_id=str(user.id))
    return partner


@router.get("", response_model=PartnerProfileResponse)
async def get_my_profile(
    current_user: User = Depends(require_partner),
    db: AsyncSession = Depends(get_db),
):
    return PartnerProfileResponse.model_validate(await _get_my_profile(current_user, db))


@router.patch("/availability", response_model=PartnerProfileResponse)
async def update_availability(
    data: AvailabilityUpdateRequest,
    current_user: User = Depends(require_partner),
    db: AsyncSession = Depends(get_db),
):
    """Go online or offline. Only KYC-approved partners may go AVAILABLE."""
    partner = await _get_my_profile(current_user, db)
    target = AvailabilityStatus(data.availability_status)
    if target == AvailabilityStatus.AVAILABLE and partner.kyc_status != KYCStatus.APPROVED:
        raise Unauthorized("KYC must be approved before going online", kyc_status=partner.kyc_status.value)

    partner.availability_status = target
    await db.commit()
    return PartnerProfileResponse.model_validate(partner)


@router.post("/location", response_model=PartnerProfileResponse)
async def update_location(
    data: LocationRequest,
    current_user: User = Depends(require_partner),
    db: AsyncSession = Depends(get_db),
):
    if not is_valid_coordinate(data.latitude, data.longitude):
        raise ValidationFailure("Invalid coordinates", latitude=data.latitude, longitude=data.longitude)

    partner = await _get_my_profile(current_user, db)
    partner.current_latitude = data.latitude
    partner.current_longitude = data.longitude
    partner.location_updated_at = utcnow()
    await db.commit()
    return PartnerProfileResponse.model_validate(partner)


@router.get("/jobs", response_model=List[NearbyJobResponse])
async def nearby_jobs(
    limit: int = Query(20, ge=1, le=50),
    current_user: User = Depends(require_partner),
    db: AsyncSession = Depends(get_db),
):
    """
    Open jobs in the partner's category within their service radius,
    nearest first. Requires a reported location.
    """
    partner = await _get_my_profile(current_user, db)
    if partner.current_latitude is None or partner.current_longitude is None:
        raise PreconditionMissing("Update your location to see nearby jobs")

    radius = partner.service_radius_km or settings.DEFAULT_SERVICE_RADIUS_KM
    jobs = []
    for booking in await BookingRepository(db).find_claimable_near(partner):
        distance = haversine_km(
            partner.current_latitude,
            partner.current_longitude,
            booking.service_latitude,
            booking.service_longitude,
        )
        if distance <= radius:
            jobs.append(NearbyJobResponse(booking=to_response(booking), distance_km=round(distance, 3)))

    jobs.sort(key=lambda j: j.distance_km)
    return jobs[:limit]
