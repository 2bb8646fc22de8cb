"""
services/booking/router.py
HTTP surface of the booking lifecycle. Every route delegates to
BookingStateMachine; domain errors are rendered by the app-level handler.
States: PENDING → SEARCHING_PARTNER | PENDING_ASSIGNMENT → PARTNER_ASSIGNED
        → PARTNER_ACCEPTED → ARRIVED → IN_PROGRESS → COMPLETED → RATED
"""

import math
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import get_db, get_session_factory
from services.booking.service import BookingStateMachine, dispatch_matching_in_background
from services.booking.transitions import allowed_operations
from services.payment.provider import PaymentProvider, get_payment_provider
from shared.middleware.auth import (
    get_current_user,
    require_admin,
    require_assigner,
    require_customer,
    require_partner,
)
from shared.models.models import Booking, BookingStatus, User
from shared.notifier import Notifier, get_notifier
from shared.schemas.schemas import (
    AssignPartnerRequest,
    BookingCreateRequest,
    BookingHistoryResponse,
    BookingListResponse,
    BookingResponse,
    CancelBookingRequest,
    CandidateResponse,
    CompleteBookingRequest,
    ConfirmPaymentRequest,
    LocationRequest,
    OTPResponse,
    PhotoUploadRequest,
    RateBookingRequest,
    RejectBookingRequest,
    StartServiceRequest,
    VerifyCompletionRequest,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Dependencies ──────────────────────────────────────────────

def get_booking_service(
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    payment_provider: PaymentProvider = Depends(get_payment_provider),
) -> BookingStateMachine:
    return BookingStateMachine(db, notifier=notifier, payment_provider=payment_provider)


def to_response(booking: Booking) -> BookingResponse:
    response = BookingResponse.model_validate(booking)
    response.allowed_operations = allowed_operations(booking.status)
    return response


# ── Creation & Queries ────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_customer),
    service: BookingStateMachine = Depends(get_booking_service),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Create a booking. Open-pool bookings go to SEARCHING_PARTNER and partner
    matching runs after the response is sent; business-partner bookings
    wait in PENDING_ASSIGNMENT for the business to assign a technician.
    """
    booking = await service.create_booking(
        current_user,
        service_id=data.service_id,
        scheduled_at=data.scheduled_at,
        service_address=data.service_address,
        latitude=data.latitude,
        longitude=data.longitude,
        payment_method=data.payment_method,
        quantity=data.quantity,
        business_partner_id=data.business_partner_id,
        special_instructions=data.special_instructions,
    )
    if booking.status == BookingStatus.SEARCHING_PARTNER:
        background_tasks.add_task(
            dispatch_matching_in_background, session_factory, service.notifier, booking.id
        )
    return to_response(booking)


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    customer_id: Optional[UUID] = Query(None),
    partner_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    service: BookingStateMachine = Depends(get_booking_service),
):
    """List bookings visible to the caller, newest scheduled first."""
    items, total = await service.list_bookings(
        current_user,
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        customer_id=customer_id,
        partner_id=partner_id,
        page=page,
        page_size=page_size,
    )
    return BookingListResponse(
        items=[to_response(b) for b in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    service: BookingStateMachine = Depends(get_booking_service),
):
    return to_response(await service.get_booking(booking_id, current_user))


@router.get("/{booking_id}/history", response_model=List[BookingHistoryResponse])
async def booking_history(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    service: BookingStateMachine = Depends(get_booking_service),
):
    return [BookingHistoryResponse.model_validate(h) for h in await service.history(booking_id, current_user)]


# ── Assignment ────────────────────────────────────────────────

@router.get("/{booking_id}/candidates", response_model=List[CandidateResponse])
async def suggest_partners(
    booking_id: UUID,
    current_user: User = Depends(require_assigner),
    service: BookingStateMachine = Depends(get_booking_service),
):
    """Nearest eligible partners for a booking awaiting assignment."""
    candidates = await service.suggest_partners(booking_id, current_user)
    return [
        CandidateResponse(
            partner_id=c.partner.id,
            user_id=c.partner.user_id,
            distance_km=c.distance_km,
            avg_rating=c.partner.avg_rating,
            completed_bookings=c.partner.completed_bookings,
        )
        for c in candidates
    ]


@router.post("/{booking_id}/assign", response_model=BookingResponse)
async def assign_partner(
    booking_id: UUID,
    data: AssignPartnerRequest,
    current_user: User = Depends(require_assigner),
    service: BookingStateMachine = Depends(get_booking_service),
):
    """Admin or owning business partner assigns a specific technician."""
    return to_response(await service.assign_partner(booking_id, data.partner_id, current_user))


@router.post("/{booking_id}/claim", response_model=BookingResponse)
async def claim_booking(
    booking_id: UUID,
    current_user: User = Depends(require_partner),
    service: BookingStateMachine = Depends(get_booking_service),
):
    """First partner to claim an open job wins; everyone else gets 409 already_claimed."""
    return to_response(await service.claim_booking(booking_id, current_user))


@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: UUID,
    current_user: User = Depends(require_partner),
    service: BookingStateMachine = Depends(get_booking_service),
):
    return to_response(await service.accept_booking(booking_id, current_user))


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: UUID,
    data: RejectBookingRequest,
    current_user: User = Depends(require_partner),
    service: BookingStateMachine = Depends(get_booking_service),
):
    return to_response(await service.reject_booking(booking_id, current_user, data.reason))


# ── Field Work ────────────────────────────────────────────────

@router.post("/{booking_id}/arrive", response_model=BookingResponse)
async def arrive(
    booking_id: UUID,
    data: LocationRequest,
    current_user: User = Depends(require_partner),
    service: BookingStateMachine = Depends(get_booking_service),
):
    """Mark arrival. Must be within the geofence of the service address."""
    return to_response(
        await service.arrive(booking_id, current_user, data.latitude, data.longitude)
    )


@router.post("/{booking_id}/photos/before", response_model=BookingResponse)
async def upload_before_photos(
    booking_id: UUID,
    data: PhotoUploadRequest,
    current_user: User = Depends(require_partner),
    service: BookingStateMachine = Depends(get_booking_service),
):
    return to_response(await service.upload_before_photos(booking_id, current_user, data.urls))


@router.post("/{booking_id}/photos/after", response_model=BookingResponse)
async def upload_after_photos(
    booking_id: UUID,
    data: PhotoUploadRequest,
    current_user: User = Depends(require_partner),
    service: BookingStateMachine = Depends(get_booking_service),
):
    return to_response(await service.upload_after_photos(booking_id, current_user, data.urls))


@router.post("/{booking_id}/start-otp", response_model=OTPResponse)
async def generate_start_otp(
    booking_id: UUID,
    current_user: User = Depends(require_customer),
    service: BookingStateMachine = Depends(get_booking_service),
):
    """Customer generates the 4-digit code the partner enters to start work."""
    booking, otp = await service.generate_start_otp(booking_id, current_user)
    return OTPResponse(booking_id=booking.id, otp=otp)


@router.post("/{booking_id}/start", response_model=BookingResponse)
async def start_service(
    booking_id: UUID,
    data: StartServiceRequest,
    current_user: User = Depends(require_partner),
    service: BookingStateMachine = Depends(get_booking_service),
):
    return to_response(await service.start_service(booking_id, current_user, data.otp))


@router.post("/{booking_id}/completion-otp", response_model=OTPResponse)
async def generate_completion_otp(
    booking_id: UUID,
    current_user: User = Depends(require_customer),
    service: BookingStateMachine = Depends(get_booking_service),
):
    booking, otp = await service.generate_completion_otp(booking_id, current_user)
    return OTPResponse(booking_id=booking.id, otp=otp)


# ── Completion ────────────────────────────────────────────────

@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    data: CompleteBookingRequest,
    current_user: User = Depends(require_partner),
    service: BookingStateMachine = Depends(get_booking_service),
):
    """Complete without OTP. Settles earnings and issues the invoice."""
    return to_response(await service.complete_booking(booking_id, current_user, data.notes))


@router.post("/{booking_id}/verify-completion", response_model=BookingResponse)
async def verify_completion(
    booking_id: UUID,
    data: VerifyCompletionRequest,
    current_user: User = Depends(require_partner),
    service: BookingStateMachine = Depends(get_booking_service),
):
    """Complete with the customer's 6-digit OTP; photos before and after are required."""
    return to_response(
        await service.verify_completion_otp(booking_id, current_user, data.otp, data.notes)
    )


# ── Cancellation & Rating ─────────────────────────────────────

@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: CancelBookingRequest,
    current_user: User = Depends(get_current_user),
    service: BookingStateMachine = Depends(get_booking_service),
):
    """
    Customer or assigned partner cancels. Paid bookings are refunded:
    >24h before schedule 90%, 2–24h 50%, under 2h nothing.
    """
    return to_response(await service.cancel_booking(booking_id, current_user, data.reason))


@router.post("/{booking_id}/rate", response_model=BookingResponse)
async def rate_booking(
    booking_id: UUID,
    data: RateBookingRequest,
    current_user: User = Depends(require_customer),
    service: BookingStateMachine = Depends(get_booking_service),
):
    return to_response(
        await service.rate_booking(booking_id, current_user, data.rating, data.review)
    )


# ── Payment ───────────────────────────────────────────────────

@router.post("/{booking_id}/payment/confirm", response_model=BookingResponse)
async def confirm_payment(
    booking_id: UUID,
    data: ConfirmPaymentRequest,
    current_user: User = Depends(require_admin),
    service: BookingStateMachine = Depends(get_booking_service),
):
    """Record a payment already captured by the gateway."""
    return to_response(await service.confirm_payment(booking_id, current_user, data.reference))


@router.post("/{booking_id}/payment/wallet", response_model=BookingResponse)
async def pay_from_wallet(
    booking_id: UUID,
    current_user: User = Depends(require_customer),
    service: BookingStateMachine = Depends(get_booking_service),
):
    return to_response(await service.pay_from_wallet(booking_id, current_user))
