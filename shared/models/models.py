"""
shared/models/models.py
All SQLAlchemy ORM models for the HomeServe marketplace.
UUID primary keys throughout; money is Numeric(12, 2).
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base
from shared.utils.clock import utcnow

Money = Numeric(12, 2)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CUSTOMER = "CUSTOMER"
    SERVICE_PARTNER = "SERVICE_PARTNER"
    BUSINESS_PARTNER = "BUSINESS_PARTNER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class BookingStatus(str, PyEnum):
    PENDING = "PENDING"
    PENDING_ASSIGNMENT = "PENDING_ASSIGNMENT"
    SEARCHING_PARTNER = "SEARCHING_PARTNER"
    PARTNER_ASSIGNED = "PARTNER_ASSIGNED"
    PARTNER_ACCEPTED = "PARTNER_ACCEPTED"
    ARRIVED = "ARRIVED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    RATED = "RATED"
    CANCELLED = "CANCELLED"
    PARTNER_NOT_FOUND = "PARTNER_NOT_FOUND"


class PaymentMethod(str, PyEnum):
    CASH = "CASH"
    ONLINE = "ONLINE"
    WALLET = "WALLET"


class PaymentStatus(str, PyEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class AvailabilityStatus(str, PyEnum):
    AVAILABLE = "AVAILABLE"
    OFFLINE = "OFFLINE"
    BUSY = "BUSY"


class KYCStatus(str, PyEnum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class AssociationStatus(str, PyEnum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    LEFT = "LEFT"


class TransactionType(str, PyEnum):
    WALLET_TOPUP = "WALLET_TOPUP"
    BOOKING_PAYMENT = "BOOKING_PAYMENT"
    PARTNER_EARNING = "PARTNER_EARNING"
    COMMISSION = "COMMISSION"
    REFUND = "REFUND"
    PAYOUT = "PAYOUT"


class TransactionCategory(str, PyEnum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"


class WithdrawalStatus(str, PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"


class NotificationType(str, PyEnum):
    BOOKING_CREATED = "BOOKING_CREATED"
    NEW_JOB_AVAILABLE = "NEW_JOB_AVAILABLE"
    BOOKING_ASSIGNED = "BOOKING_ASSIGNED"
    BOOKING_ACCEPTED = "BOOKING_ACCEPTED"
    PARTNER_REJECTED = "PARTNER_REJECTED"
    PARTNER_ARRIVED = "PARTNER_ARRIVED"
    SERVICE_STARTED = "SERVICE_STARTED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    PARTNER_NOT_FOUND = "PARTNER_NOT_FOUND"
    RATING_RECEIVED = "RATING_RECEIVED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    REFUND_ISSUED = "REFUND_ISSUED"
    WALLET_CREDITED = "WALLET_CREDITED"
    WITHDRAWAL_UPDATED = "WITHDRAWAL_UPDATED"
    GENERAL = "GENERAL"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ── Accounts ──────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Platform account. The role decides which booking actions are open to it."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.CUSTOMER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    fcm_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Push notification token

    __table_args__ = (Index("ix_users_role", "role"),)

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.SUPER_ADMIN)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


# ── Catalogue ─────────────────────────────────────────────────

class ServiceCategory(TimestampMixin, Base):
    __tablename__ = "service_categories"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Service(TimestampMixin, Base):
    """A bookable service. surge_multiplier is the admin-controlled dynamic price factor."""
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_categories.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    surge_multiplier: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (Index("ix_services_category_id", "category_id"),)


# ── Partners ──────────────────────────────────────────────────

class BusinessPartner(TimestampMixin, Base):
    """A business that runs its own team of technicians on the platform."""
    __tablename__ = "business_partners"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    commission_rate: Mapped[float] = mapped_column(Float, default=0.15, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 1", name="ck_bp_commission_rate"
        ),
    )


class ServicePartner(TimestampMixin, Base):
    """
    Technician profile. Aggregate stats are only ever changed through
    single UPDATE statements so concurrent completions never lose an increment.
    """
    __tablename__ = "service_partners"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    business_partner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("business_partners.id"), nullable=True
    )
    category_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("service_categories.id"), nullable=True
    )

    availability_status: Mapped[AvailabilityStatus] = mapped_column(
        Enum(AvailabilityStatus), default=AvailabilityStatus.OFFLINE, nullable=False
    )
    current_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    current_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    service_radius_km: Mapped[Optional[float]] = mapped_column(Float, default=10.0)

    kyc_status: Mapped[KYCStatus] = mapped_column(
        Enum(KYCStatus), default=KYCStatus.PENDING, nullable=False
    )

    # Aggregates (denormalized, atomic updates only)
    avg_rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_ratings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_bookings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_bookings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completion_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    # Bank details for payouts
    bank_account_holder: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bank_account_number: Mapped[Optional[str]] = mapped_column(String(34), nullable=True)
    bank_ifsc: Mapped[Optional[str]] = mapped_column(String(11), nullable=True)

    __table_args__ = (
        Index("ix_service_partners_matching", "category_id", "availability_status", "kyc_status"),
    )


class PartnerAssociation(TimestampMixin, Base):
    """Team membership of a service partner in a business partner."""
    __tablename__ = "partner_associations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_partner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("business_partners.id", ondelete="CASCADE"), nullable=False
    )
    service_partner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_partners.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[AssociationStatus] = mapped_column(
        Enum(AssociationStatus), default=AssociationStatus.PENDING, nullable=False
    )
    role: Mapped[str] = mapped_column(String(50), default="TECHNICIAN", nullable=False)
    commission_split: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    __table_args__ = (
        UniqueConstraint("business_partner_id", "service_partner_id", name="uq_partner_association"),
    )


# ── Bookings ──────────────────────────────────────────────────

class Booking(TimestampMixin, Base):
    """
    Core booking aggregate. Status only changes through the booking state machine.
    PENDING → SEARCHING_PARTNER | PENDING_ASSIGNMENT → PARTNER_ASSIGNED →
    PARTNER_ACCEPTED → ARRIVED → IN_PROGRESS → COMPLETED → RATED,
    with CANCELLED and PARTNER_NOT_FOUND as side exits.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    partner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("service_partners.id"), nullable=True
    )
    business_partner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("business_partners.id"), nullable=True
    )

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )

    # Schedule & location
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    service_address: Mapped[str] = mapped_column(Text, nullable=False)
    service_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    service_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    special_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Payment
    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod), default=PaymentMethod.ONLINE, nullable=False
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Pricing
    pricing_multiplier: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    advance_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    overtime_charge: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    refund_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)

    # Field work
    estimated_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    actual_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    start_otp: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    completion_otp: Mapped[Optional[str]] = mapped_column(String(6), nullable=True)
    before_images: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    after_images: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    service_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejected_partner_ids: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)

    # Cancellation
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Transition timestamps
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    arrived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    items: Mapped[List["BookingItem"]] = relationship(
        back_populates="booking", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_bookings_customer_id", "customer_id"),
        Index("ix_bookings_partner_id", "partner_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_scheduled_at", "scheduled_at"),
    )


class BookingItem(Base):
    """Denormalized line item, written once at booking time."""
    __tablename__ = "booking_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("services.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Money, nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="items")


class BookingStatusHistory(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_status_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    status: Mapped[BookingStatus] = mapped_column(Enum(BookingStatus), nullable=False)
    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)  # None = system
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_status_history_booking_id", "booking_id"),)


class Rating(TimestampMixin, Base):
    """Post-completion rating. One per booking (enforced by unique constraint)."""
    __tablename__ = "ratings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    rater_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    rated_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    partner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_partners.id"), nullable=False
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    review: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_rating_range"),
        Index("ix_ratings_partner_id", "partner_id"),
    )


class Invoice(TimestampMixin, Base):
    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)


# ── Wallet ────────────────────────────────────────────────────

class Wallet(TimestampMixin, Base):
    """One per user. Only the wallet ledger writes to it."""
    __tablename__ = "wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    locked_balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)

    __table_args__ = (
        CheckConstraint("locked_balance >= 0", name="ck_wallet_locked_non_negative"),
        CheckConstraint("locked_balance <= balance", name="ck_wallet_locked_within_balance"),
    )

    @property
    def available_balance(self) -> Decimal:
        return Decimal(self.balance) - Decimal(self.locked_balance)


class Transaction(Base):
    """Append-only ledger entry for every wallet movement."""
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    type: Mapped[TransactionType] = mapped_column(Enum(TransactionType), nullable=False)
    category: Mapped[TransactionCategory] = mapped_column(
        Enum(TransactionCategory), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=True
    )
    reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_transactions_user_id", "user_id"),
        Index("ix_transactions_booking_id", "booking_id"),
    )


class WithdrawalRequest(TimestampMixin, Base):
    __tablename__ = "withdrawal_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(
        Enum(WithdrawalStatus), default=WithdrawalStatus.PENDING, nullable=False
    )
    processed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# ── Notifications ─────────────────────────────────────────────

class Notification(TimestampMixin, Base):
    """In-app notification log. Push delivery is attempted separately."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)
