"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the marketplace API.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from shared.models.models import (
    AvailabilityStatus,
    BookingStatus,
    PaymentMethod,
    WithdrawalStatus,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: EmailStr
    full_name: str
    phone_number: Optional[str]
    role: str
    created_at: datetime


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    service_id: uuid.UUID
    scheduled_at: datetime
    service_address: str = Field(..., min_length=5, max_length=1000)
    latitude: float
    longitude: float
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    quantity: int = Field(1, ge=1, le=20)
    business_partner_id: Optional[uuid.UUID] = None
    special_instructions: Optional[str] = Field(None, max_length=1000)


class BookingItemResponse(BaseSchema):
    service_id: uuid.UUID
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class BookingResponse(BaseSchema):
    id: uuid.UUID
    booking_number: str
    customer_id: uuid.UUID
    partner_id: Optional[uuid.UUID]
    business_partner_id: Optional[uuid.UUID]
    status: str
    scheduled_at: datetime
    service_address: str
    service_latitude: float
    service_longitude: float
    special_instructions: Optional[str]
    payment_method: str
    payment_status: str
    pricing_multiplier: float
    total_amount: Decimal
    advance_amount: Decimal
    remaining_amount: Decimal
    overtime_charge: Decimal
    platform_fee: Decimal
    commission_amount: Decimal
    refund_amount: Decimal
    estimated_duration_minutes: Optional[int]
    actual_duration_minutes: Optional[int]
    before_images: List[str]
    after_images: List[str]
    service_notes: Optional[str]
    cancellation_reason: Optional[str]
    assigned_at: Optional[datetime]
    accepted_at: Optional[datetime]
    arrived_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime
    items: List[BookingItemResponse] = []
    # Derived
    allowed_operations: List[str] = []


class BookingListResponse(BaseSchema):
    items: List[BookingResponse]
    total: int
    page: int
    page_size: int
    pages: int


class BookingHistoryResponse(BaseSchema):
    status: str
    changed_by: Optional[uuid.UUID]
    notes: Optional[str]
    created_at: datetime


class AssignPartnerRequest(BaseSchema):
    partner_id: uuid.UUID


class RejectBookingRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class LocationRequest(BaseSchema):
    latitude: float
    longitude: float


class PhotoUploadRequest(BaseSchema):
    urls: List[str] = Field(..., min_length=1, max_length=10)


class StartServiceRequest(BaseSchema):
    otp: Optional[str] = None


class OTPResponse(BaseSchema):
    booking_id: uuid.UUID
    otp: str


class CompleteBookingRequest(BaseSchema):
    notes: Optional[str] = Field(None, max_length=2000)


class VerifyCompletionRequest(BaseSchema):
    otp: str
    notes: Optional[str] = Field(None, max_length=2000)


class CancelBookingRequest(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=500)


class RateBookingRequest(BaseSchema):
    # Range is checked by the booking service so the error carries its code
    rating: int
    review: Optional[str] = Field(None, max_length=2000)


class ConfirmPaymentRequest(BaseSchema):
    reference: str = Field(..., min_length=3, max_length=100)


class CandidateResponse(BaseSchema):
    partner_id: uuid.UUID
    user_id: uuid.UUID
    distance_km: float
    avg_rating: float
    completed_bookings: int


# ── Partner ───────────────────────────────────────────────────

class PartnerProfileResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    business_partner_id: Optional[uuid.UUID]
    category_id: Optional[uuid.UUID]
    availability_status: str
    current_latitude: Optional[float]
    current_longitude: Optional[float]
    location_updated_at: Optional[datetime]
    service_radius_km: Optional[float]
    kyc_status: str
    avg_rating: float
    total_ratings: int
    total_bookings: int
    completed_bookings: int
    completion_rate: float


class AvailabilityUpdateRequest(BaseSchema):
    availability_status: AvailabilityStatus


class NearbyJobResponse(BaseSchema):
    booking: BookingResponse
    distance_km: float


# ── Wallet ────────────────────────────────────────────────────

class WalletBalanceResponse(BaseSchema):
    balance: Decimal
    locked_balance: Decimal
    available_balance: Decimal


class TransactionResponse(BaseSchema):
    id: uuid.UUID
    type: str
    category: str
    amount: Decimal
    description: str
    balance_before: Decimal
    balance_after: Decimal
    booking_id: Optional[uuid.UUID]
    reference: Optional[str]
    created_at: datetime


class TransactionListResponse(BaseSchema):
    items: List[TransactionResponse]
    total: int
    page: int
    page_size: int
    pages: int


class TopUpRequest(BaseSchema):
    amount: Decimal = Field(..., gt=0, le=100000, decimal_places=2)
    reference: str = Field(..., min_length=3, max_length=100)


class WithdrawalCreateRequest(BaseSchema):
    amount: Decimal = Field(..., gt=0, decimal_places=2)


class WithdrawalProcessRequest(BaseSchema):
    status: WithdrawalStatus
    notes: Optional[str] = Field(None, max_length=1000)


class WithdrawalResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    amount: Decimal
    status: str
    processed_by: Optional[uuid.UUID]
    processed_at: Optional[datetime]
    notes: Optional[str]
    created_at: datetime


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    message: str
    data: Optional[Dict[str, Any]]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class UnreadCountResponse(BaseSchema):
    unread_count: int


class ErrorResponse(BaseSchema):
    detail: str
    error_code: Optional[str] = None
