"""
services/booking/service.py
Booking lifecycle state machine.

Every operation follows the same shape: load → authorize → validate
against the transition table → compare-and-set UPDATE + history row →
commit → best-effort notifications. Matching, settlement, the wallet
ledger and the refund gateway are injected collaborators.
"""

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from config.settings import settings
from services.booking.repository import BookingRepository, claimable_or_assigned
from services.booking.transitions import (
    CLAIMABLE_STATUSES,
    BookingOperation as Op,
    ensure_allowed,
)
from services.matching.engine import Candidate, MatchingEngine
from services.payment.provider import PaymentProvider
from services.settlement.engine import SettlementEngine
from services.settlement.pricing import (
    booking_amounts,
    duration_minutes,
    invoice_amounts,
    money,
    overtime_charge,
    refund_amount,
)
from services.wallet.ledger import WalletLedger
from shared.exceptions import (
    ConflictAlreadyClaimed,
    DomainError,
    GeofenceViolation,
    InvalidState,
    NotFound,
    PreconditionMissing,
    RefundFailed,
    SettlementError,
    Unauthorized,
    ValidationFailure,
)
from shared.models.models import (
    AvailabilityStatus,
    Booking,
    BookingItem,
    BookingStatus,
    BookingStatusHistory,
    Invoice,
    KYCStatus,
    NotificationType,
    PaymentMethod,
    PaymentStatus,
    Rating,
    ServicePartner,
    TransactionType,
    User,
    UserRole,
)
from shared.notifier import Notice, Notifier, booking_data, emit_side_effects
from shared.utils.clock import as_utc, utcnow
from shared.utils.geo import haversine_km, is_valid_coordinate

logger = logging.getLogger(__name__)


def generate_reference(prefix: str, now: Optional[datetime] = None) -> str:
    """Sortable public identifier: prefix + UTC timestamp + random hex, e.g. BK20261019143005A1B2C3."""
    now = now or utcnow()
    return f"{prefix}{now:%Y%m%d%H%M%S}{secrets.token_hex(3).upper()}"


def _otp(digits: int) -> str:
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


def _check_otp_format(otp: Optional[str], digits: int) -> str:
    if otp is None or len(otp) != digits or not otp.isdigit():
        raise ValidationFailure(f"OTP must be exactly {digits} digits")
    return otp


class BookingStateMachine:
    def __init__(
        self,
        db: AsyncSession,
        notifier: Notifier,
        payment_provider: Optional[PaymentProvider] = None,
        matching: Optional[MatchingEngine] = None,
        settlement: Optional[SettlementEngine] = None,
        ledger: Optional[WalletLedger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if notifier is None:
            raise TypeError("BookingStateMachine needs a Notifier")
        self.db = db
        self.repo = BookingRepository(db)
        self.notifier = notifier
        self.payment_provider = payment_provider
        self.ledger = ledger or WalletLedger(db)
        self.matching = matching or MatchingEngine(db)
        self.settlement = settlement or SettlementEngine(db, self.ledger)
        self.clock = clock

    # ── Plumbing ──────────────────────────────────────────────

    @asynccontextmanager
    async def _unit_of_work(self):
        try:
            yield
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def _transition(
        self,
        booking: Booking,
        op: Op,
        actor_id: Optional[UUID],
        notes: Optional[str] = None,
        extra_conditions: Sequence = (),
        **values,
    ) -> Booking:
        """Apply op to booking with a compare-and-set on its current status."""
        transition = ensure_allowed(op, booking.status)
        expected = booking.status
        if transition.target is not None:
            values["status"] = transition.target
        values["updated_at"] = self.clock()

        if not await self.repo.compare_and_set(booking.id, expected, values, extra_conditions):
            current = await self.repo.current_status(booking.id)
            raise InvalidState(
                f"Booking was modified concurrently and is now '{current.value}'",
                current_status=current.value,
                operation=op.value,
            )

        for key, value in values.items():
            set_committed_value(booking, key, value)

        if transition.target is not None:
            self.repo.add_history(
                booking.id, transition.target, actor_id, notes, created_at=values["updated_at"]
            )
            logger.info(
                f"Booking {booking.booking_number}: {expected.value} → {transition.target.value} "
                f"({op.value}) by {actor_id or 'system'}"
            )
        return booking

    async def _emit(self, notices: List[Notice]) -> None:
        await emit_side_effects(self.notifier, notices)

    async def _partner_for(self, actor: User) -> ServicePartner:
        partner = await self.repo.find_partner_by_user(actor.id)
        if not partner:
            raise Unauthorized("Only service partners can perform this action")
        return partner

    async def _assigned_partner(self, booking: Booking, actor: User) -> ServicePartner:
        partner = await self._partner_for(actor)
        if booking.partner_id != partner.id:
            raise Unauthorized("This booking is not assigned to you")
        return partner

    @staticmethod
    def _ensure_customer(booking: Booking, actor: User) -> None:
        if booking.customer_id != actor.id:
            raise Unauthorized("Only the customer who made this booking can do this")

    async def _partner_user_id(self, booking: Booking) -> Optional[UUID]:
        if not booking.partner_id:
            return None
        partner = await self.repo.find_partner(booking.partner_id)
        return partner.user_id if partner else None

    # ── Creation & matching ───────────────────────────────────

    async def create_booking(
        self,
        customer: User,
        service_id: UUID,
        scheduled_at: datetime,
        service_address: str,
        latitude: float,
        longitude: float,
        payment_method: PaymentMethod = PaymentMethod.ONLINE,
        quantity: int = 1,
        business_partner_id: Optional[UUID] = None,
        special_instructions: Optional[str] = None,
    ) -> Booking:
        """
        Price and persist a new booking, then move it straight to
        SEARCHING_PARTNER (open pool) or PENDING_ASSIGNMENT (business-partner
        booking). Matching is dispatched by the caller once this returns.
        """
        if customer.role != UserRole.CUSTOMER:
            raise Unauthorized("Only customers can create bookings")
        if not is_valid_coordinate(latitude, longitude):
            raise ValidationFailure("Invalid service coordinates", latitude=latitude, longitude=longitude)
        if quantity < 1:
            raise ValidationFailure("Quantity must be at least 1")
        if not service_address or not service_address.strip():
            raise ValidationFailure("Service address is required")

        now = self.clock()
        scheduled_at = as_utc(scheduled_at)
        if scheduled_at <= now:
            raise ValidationFailure("Scheduled time must be in the future")

        service = await self.repo.find_service(service_id)
        if not service or not service.is_active:
            raise NotFound("Service not found", service_id=str(service_id))

        business = None
        if business_partner_id:
            business = await self.repo.find_business_partner(business_partner_id)
            if not business or not business.is_active:
                raise NotFound("Business partner not found", business_partner_id=str(business_partner_id))

        amounts = booking_amounts(service.base_price, quantity, service.surge_multiplier)

        async with self._unit_of_work():
            booking = Booking(
                booking_number=generate_reference("BK", now),
                customer_id=customer.id,
                business_partner_id=business_partner_id,
                status=BookingStatus.PENDING,
                scheduled_at=scheduled_at,
                service_address=service_address.strip(),
                service_latitude=latitude,
                service_longitude=longitude,
                special_instructions=special_instructions,
                payment_method=payment_method,
                payment_status=PaymentStatus.PENDING,
                pricing_multiplier=service.surge_multiplier,
                total_amount=amounts.total_amount,
                advance_amount=amounts.advance_amount,
                remaining_amount=amounts.remaining_amount,
                overtime_charge=Decimal("0"),
                platform_fee=Decimal("0"),
                commission_amount=Decimal("0"),
                refund_amount=Decimal("0"),
                estimated_duration_minutes=service.duration_minutes * quantity,
                before_images=[],
                after_images=[],
                rejected_partner_ids=[],
                created_at=now,
                updated_at=now,
            )
            booking.items = [
                BookingItem(
                    service_id=service.id,
                    quantity=quantity,
                    unit_price=amounts.unit_price,
                    total_price=amounts.line_total,
                )
            ]
            self.db.add(booking)
            await self.db.flush()
            self.repo.add_history(
                booking.id, BookingStatus.PENDING, customer.id, "Booking created", created_at=now
            )

            op = Op.ROUTE_TO_BUSINESS if business else Op.OPEN_SEARCH
            await self._transition(booking, op, customer.id)

        notices = [
            Notice(
                customer.id,
                NotificationType.BOOKING_CREATED,
                "Booking created",
                f"Your booking {booking.booking_number} for {service.name} has been created.",
                booking_data(booking),
            )
        ]
        if business:
            notices.append(
                Notice(
                    business.user_id,
                    NotificationType.BOOKING_CREATED,
                    "New booking for your team",
                    f"Booking {booking.booking_number} is waiting for a technician assignment.",
                    booking_data(booking),
                )
            )
        await self._emit(notices)
        return booking

    async def dispatch_matching(self, booking_id: UUID, raise_errors: bool = False) -> List[Candidate]:
        """
        Run the matching engine for a searching booking and notify the
        ranked candidates. No candidates moves the booking to
        PARTNER_NOT_FOUND. Engine failures are logged and swallowed unless
        raise_errors is set (used by the retrying Celery task).
        """
        try:
            booking = await self.repo.get(booking_id)
            if booking.status != BookingStatus.SEARCHING_PARTNER or booking.partner_id:
                return []
            candidates = await self.matching.find_candidates(booking)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Partner matching failed for booking {booking_id}: {e}", exc_info=True)
            if raise_errors:
                raise
            return []

        if not candidates:
            try:
                async with self._unit_of_work():
                    await self._transition(
                        booking, Op.MARK_NOT_FOUND, None,
                        notes="No available partners within range",
                        extra_conditions=[Booking.partner_id.is_(None)],
                    )
            except InvalidState:
                # Claimed or cancelled while we were searching
                return []
            await self._emit([
                Notice(
                    booking.customer_id,
                    NotificationType.PARTNER_NOT_FOUND,
                    "No partner available",
                    f"We could not find a partner near you for booking {booking.booking_number}.",
                    booking_data(booking),
                )
            ])
            return []

        await self._emit([
            Notice(
                c.partner.user_id,
                NotificationType.NEW_JOB_AVAILABLE,
                "New job near you",
                f"A new job is available {c.distance_km:.1f} km away. Claim it before someone else does.",
                booking_data(booking, distance_km=c.distance_km),
            )
            for c in candidates
        ])
        return candidates

    async def suggest_partners(self, booking_id: UUID, actor: User) -> List[Candidate]:
        """Ranked team members for a business-partner booking awaiting assignment."""
        booking = await self.repo.get(booking_id)
        await self._ensure_can_assign(booking, actor)
        ensure_allowed(Op.ASSIGN, booking.status)
        return await self.matching.find_candidates(booking)

    # ── Assignment ────────────────────────────────────────────

    async def _ensure_can_assign(self, booking: Booking, actor: User) -> None:
        if actor.is_admin:
            return
        if booking.business_partner_id:
            business = await self.repo.find_business_partner(booking.business_partner_id)
            if business and business.user_id == actor.id:
                return
        raise Unauthorized("Only an admin or the booking's business partner can assign partners")

    async def assign_partner(self, booking_id: UUID, partner_id: UUID, actor: User) -> Booking:
        booking = await self.repo.get(booking_id)
        await self._ensure_can_assign(booking, actor)
        ensure_allowed(Op.ASSIGN, booking.status)

        partner = await self.repo.find_partner(partner_id)
        if not partner:
            raise NotFound("Service partner not found", partner_id=str(partner_id))
        if booking.business_partner_id and not await self.repo.is_active_team_member(
            booking.business_partner_id, partner.id
        ):
            raise ValidationFailure("Partner is not an active member of this business's team")
        if partner.availability_status != AvailabilityStatus.AVAILABLE:
            raise ValidationFailure(
                "Partner is not available",
                availability_status=partner.availability_status.value,
            )
        if partner.kyc_status != KYCStatus.APPROVED:
            raise ValidationFailure("Partner KYC is not approved")

        now = self.clock()
        async with self._unit_of_work():
            await self._transition(
                booking, Op.ASSIGN, actor.id,
                notes=f"Assigned to partner {partner.id}",
                extra_conditions=[Booking.partner_id.is_(None)],
                partner_id=partner.id,
                assigned_at=now,
            )

        await self._emit([
            Notice(
                partner.user_id,
                NotificationType.BOOKING_ASSIGNED,
                "New booking assigned",
                f"Booking {booking.booking_number} has been assigned to you.",
                booking_data(booking),
            ),
            Notice(
                booking.customer_id,
                NotificationType.BOOKING_ASSIGNED,
                "Partner assigned",
                f"A partner has been assigned to booking {booking.booking_number}.",
                booking_data(booking),
            ),
        ])
        return booking

    async def claim_booking(self, booking_id: UUID, actor: User) -> Booking:
        """
        First-come-first-served claim of an open booking. The UPDATE is
        guarded by partner_id IS NULL, so of N concurrent claimers exactly
        one changes the row and the rest get ConflictAlreadyClaimed.
        """
        partner = await self._partner_for(actor)
        if partner.kyc_status != KYCStatus.APPROVED:
            raise Unauthorized("Complete KYC verification before accepting jobs")

        booking = await self.repo.get(booking_id)
        if booking.partner_id is not None:
            raise ConflictAlreadyClaimed(current_status=booking.status.value)
        ensure_allowed(Op.CLAIM, booking.status)

        now = self.clock()
        try:
            async with self._unit_of_work():
                await self._transition(
                    booking, Op.CLAIM, actor.id,
                    notes="Claimed by partner",
                    extra_conditions=[Booking.partner_id.is_(None)],
                    partner_id=partner.id,
                    assigned_at=now,
                    accepted_at=now,
                )
        except InvalidState:
            booking = await self.repo.get(booking_id)
            if booking.partner_id is not None:
                raise ConflictAlreadyClaimed(current_status=booking.status.value)
            raise

        await self._emit([
            Notice(
                booking.customer_id,
                NotificationType.BOOKING_ACCEPTED,
                "Partner on the way",
                f"A partner has accepted booking {booking.booking_number}.",
                booking_data(booking),
            )
        ])
        return booking

    async def accept_booking(self, booking_id: UUID, actor: User) -> Booking:
        booking = await self.repo.get(booking_id)
        partner = await self._assigned_partner(booking, actor)
        ensure_allowed(Op.ACCEPT, booking.status)

        async with self._unit_of_work():
            await self._transition(
                booking, Op.ACCEPT, actor.id,
                extra_conditions=[Booking.partner_id == partner.id],
                accepted_at=self.clock(),
            )

        await self._emit([
            Notice(
                booking.customer_id,
                NotificationType.BOOKING_ACCEPTED,
                "Booking accepted",
                f"Your partner accepted booking {booking.booking_number}.",
                booking_data(booking),
            )
        ])
        return booking

    async def reject_booking(
        self, booking_id: UUID, actor: User, reason: Optional[str] = None
    ) -> Booking:
        """
        Release the booking from the assigned partner. Open-pool bookings go
        back to SEARCHING_PARTNER and matching runs again without the
        rejecting partner; business bookings return to PENDING_ASSIGNMENT.
        """
        booking = await self.repo.get(booking_id)
        partner = await self._assigned_partner(booking, actor)
        op = Op.RETURN_TO_BUSINESS if booking.business_partner_id else Op.REJECT
        ensure_allowed(op, booking.status)

        rejected = list(booking.rejected_partner_ids or [])
        if str(partner.id) not in rejected:
            rejected.append(str(partner.id))

        async with self._unit_of_work():
            await self._transition(
                booking, op, actor.id,
                notes=reason or "Rejected by partner",
                extra_conditions=[Booking.partner_id == partner.id],
                partner_id=None,
                assigned_at=None,
                accepted_at=None,
                rejected_partner_ids=rejected,
            )

        notices = [
            Notice(
                booking.customer_id,
                NotificationType.PARTNER_REJECTED,
                "Finding you another partner",
                f"Your partner could not take booking {booking.booking_number}. We are finding another.",
                booking_data(booking),
            )
        ]
        if booking.business_partner_id:
            business = await self.repo.find_business_partner(booking.business_partner_id)
            if business:
                notices.append(
                    Notice(
                        business.user_id,
                        NotificationType.PARTNER_REJECTED,
                        "Booking needs reassignment",
                        f"A technician declined booking {booking.booking_number}.",
                        booking_data(booking, reason=reason or ""),
                    )
                )
        await self._emit(notices)

        if op == Op.REJECT:
            await self.dispatch_matching(booking_id)
            booking = await self.repo.get(booking_id)
        return booking

    # ── Field work ────────────────────────────────────────────

    async def arrive(self, booking_id: UUID, actor: User, latitude: float, longitude: float) -> Booking:
        if not is_valid_coordinate(latitude, longitude):
            raise ValidationFailure("Invalid coordinates", latitude=latitude, longitude=longitude)

        booking = await self.repo.get(booking_id)
        partner = await self._assigned_partner(booking, actor)
        ensure_allowed(Op.ARRIVE, booking.status)

        distance = haversine_km(latitude, longitude, booking.service_latitude, booking.service_longitude)
        if distance > settings.ARRIVAL_GEOFENCE_KM:
            raise GeofenceViolation(
                f"You are {distance:.2f} km from the service location. "
                f"Please move within {settings.ARRIVAL_GEOFENCE_KM} km to mark arrival.",
                distance_km=round(distance, 3),
                allowed_km=settings.ARRIVAL_GEOFENCE_KM,
            )

        async with self._unit_of_work():
            await self.repo.update_partner_location(partner.id, latitude, longitude)
            await self._transition(
                booking, Op.ARRIVE, actor.id,
                notes=f"Arrived {distance * 1000:.0f} m from the address",
                arrived_at=self.clock(),
            )

        await self._emit([
            Notice(
                booking.customer_id,
                NotificationType.PARTNER_ARRIVED,
                "Partner has arrived",
                f"Your partner has arrived for booking {booking.booking_number}.",
                booking_data(booking),
            )
        ])
        return booking

    async def _upload_photos(self, booking_id: UUID, actor: User, urls: List[str], op: Op, field: str) -> Booking:
        urls = [u.strip() for u in urls if u and u.strip()]
        if not urls:
            raise ValidationFailure("At least one photo is required")

        booking = await self.repo.get(booking_id)
        await self._assigned_partner(booking, actor)
        ensure_allowed(op, booking.status)

        images = list(getattr(booking, field) or []) + urls
        async with self._unit_of_work():
            await self._transition(booking, op, actor.id, **{field: images})
        return booking

    async def upload_before_photos(self, booking_id: UUID, actor: User, urls: List[str]) -> Booking:
        return await self._upload_photos(booking_id, actor, urls, Op.UPLOAD_BEFORE_PHOTOS, "before_images")

    async def upload_after_photos(self, booking_id: UUID, actor: User, urls: List[str]) -> Booking:
        return await self._upload_photos(booking_id, actor, urls, Op.UPLOAD_AFTER_PHOTOS, "after_images")

    async def generate_start_otp(self, booking_id: UUID, actor: User) -> Tuple[Booking, str]:
        booking = await self.repo.get(booking_id)
        self._ensure_customer(booking, actor)
        otp = _otp(4)
        async with self._unit_of_work():
            await self._transition(booking, Op.ISSUE_START_OTP, actor.id, start_otp=otp)
        return booking, otp

    async def start_service(self, booking_id: UUID, actor: User, otp: Optional[str] = None) -> Booking:
        booking = await self.repo.get(booking_id)
        await self._assigned_partner(booking, actor)
        ensure_allowed(Op.START, booking.status)

        if booking.start_otp:
            _check_otp_format(otp, 4)
            if not secrets.compare_digest(otp, booking.start_otp):
                raise PreconditionMissing("Invalid start OTP")

        async with self._unit_of_work():
            await self._transition(booking, Op.START, actor.id, started_at=self.clock())

        await self._emit([
            Notice(
                booking.customer_id,
                NotificationType.SERVICE_STARTED,
                "Service started",
                f"Work on booking {booking.booking_number} has started.",
                booking_data(booking),
            )
        ])
        return booking

    async def generate_completion_otp(self, booking_id: UUID, actor: User) -> Tuple[Booking, str]:
        booking = await self.repo.get(booking_id)
        self._ensure_customer(booking, actor)
        otp = _otp(6)
        async with self._unit_of_work():
            await self._transition(booking, Op.ISSUE_COMPLETION_OTP, actor.id, completion_otp=otp)
        return booking, otp

    # ── Completion & settlement ───────────────────────────────

    async def complete_booking(self, booking_id: UUID, actor: User, notes: Optional[str] = None) -> Booking:
        booking = await self.repo.get(booking_id)
        await self._assigned_partner(booking, actor)
        ensure_allowed(Op.COMPLETE, booking.status)
        if booking.completion_otp:
            raise PreconditionMissing("A completion OTP was issued; verify it to complete this booking")
        return await self._complete(booking, actor.id, notes)

    async def verify_completion_otp(
        self, booking_id: UUID, actor: User, otp: str, notes: Optional[str] = None
    ) -> Booking:
        _check_otp_format(otp, 6)
        booking = await self.repo.get(booking_id)
        await self._assigned_partner(booking, actor)
        ensure_allowed(Op.COMPLETE, booking.status)

        if not booking.completion_otp:
            raise PreconditionMissing("Completion OTP has not been generated by the customer")
        if not secrets.compare_digest(otp, booking.completion_otp):
            raise PreconditionMissing("Invalid completion OTP")
        if not booking.before_images:
            raise PreconditionMissing("Upload before-service photos first")
        if not booking.after_images:
            raise PreconditionMissing("Upload after-service photos first")

        return await self._complete(booking, actor.id, notes)

    async def _complete(self, booking: Booking, actor_id: UUID, notes: Optional[str]) -> Booking:
        """
        IN_PROGRESS → COMPLETED in one database transaction: overtime,
        settlement postings, partner stats and the invoice either all land
        or none do.
        """
        if not booking.items:
            raise SettlementError("Booking has no priced service item", booking_id=str(booking.id))

        now = self.clock()
        started_at = as_utc(booking.started_at) or now
        actual = duration_minutes(started_at, now)
        overtime = overtime_charge(actual, booking.estimated_duration_minutes, booking.items[0].unit_price)
        total = money(booking.total_amount) + overtime
        remaining = money(booking.remaining_amount) + overtime

        async with self._unit_of_work():
            await self._transition(
                booking, Op.COMPLETE, actor_id,
                notes=notes or "Service completed",
                completed_at=now,
                actual_duration_minutes=actual,
                overtime_charge=overtime,
                total_amount=total,
                remaining_amount=remaining,
                service_notes=notes,
            )

            result = await self.settlement.settle(booking)
            await self.repo.compare_and_set(
                booking.id,
                BookingStatus.COMPLETED,
                {"platform_fee": result.platform_fee, "commission_amount": result.partner_earnings},
            )
            set_committed_value(booking, "platform_fee", result.platform_fee)
            set_committed_value(booking, "commission_amount", result.partner_earnings)

            await self.repo.increment_completion_stats(booking.partner_id)

            amounts = invoice_amounts(total)
            self.db.add(
                Invoice(
                    invoice_number=generate_reference("INV", now),
                    booking_id=booking.id,
                    subtotal=amounts.subtotal,
                    tax_amount=amounts.tax_amount,
                    discount_amount=Decimal("0"),
                    total_amount=amounts.total_amount,
                )
            )

        partner_user_id = result.earnings_user_id
        await self._emit([
            Notice(
                booking.customer_id,
                NotificationType.BOOKING_COMPLETED,
                "Service completed",
                f"Booking {booking.booking_number} is complete. Total ₹{total}. Please rate your partner.",
                booking_data(booking, total_amount=total),
            ),
            Notice(
                partner_user_id,
                NotificationType.WALLET_CREDITED,
                "Earnings credited",
                f"₹{result.partner_earnings} credited for booking {booking.booking_number}.",
                booking_data(booking, amount=result.partner_earnings),
            ),
        ])
        return booking

    # ── Cancellation ──────────────────────────────────────────

    async def cancel_booking(
        self, booking_id: UUID, actor: Optional[User], reason: Optional[str] = None
    ) -> Booking:
        """
        Cancel from any open status. actor=None is the system (housekeeping).
        The status flip is claimed first, so only one caller ever refunds. A
        paid booking is then refunded by tier in the same transaction; if the
        gateway refund fails the flip is rolled back and the booking stays open.
        """
        booking = await self.repo.get(booking_id)
        partner_user_id = await self._partner_user_id(booking)

        if actor is not None:
            is_customer = booking.customer_id == actor.id
            is_partner = partner_user_id is not None and partner_user_id == actor.id
            if not (is_customer or is_partner):
                raise Unauthorized("Only the customer or the assigned partner can cancel this booking")
        ensure_allowed(Op.CANCEL, booking.status)

        now = self.clock()
        refund = Decimal("0")
        payment_status = booking.payment_status
        if booking.payment_status == PaymentStatus.COMPLETED:
            hours_left = (as_utc(booking.scheduled_at) - now).total_seconds() / 3600
            refund = refund_amount(booking.total_amount, hours_left)
            if refund > 0:
                payment_status = (
                    PaymentStatus.REFUNDED
                    if refund >= money(booking.total_amount)
                    else PaymentStatus.PARTIALLY_REFUNDED
                )

        reason = reason or "Cancelled"
        actor_id = actor.id if actor else None

        async with self._unit_of_work():
            await self._transition(
                booking, Op.CANCEL, actor_id,
                notes=reason,
                cancelled_at=now,
                cancelled_by=actor_id,
                cancellation_reason=reason,
                refund_amount=refund,
                payment_status=payment_status,
            )

            if refund > 0:
                if booking.payment_method == PaymentMethod.WALLET:
                    await self.ledger.credit(
                        booking.customer_id,
                        refund,
                        f"Refund for cancelled booking {booking.booking_number}",
                        type=TransactionType.REFUND,
                        booking_id=booking.id,
                    )
                else:
                    await self._gateway_refund(booking, refund, reason)

        notices = []
        for user_id in (booking.customer_id, partner_user_id):
            if user_id and user_id != actor_id:
                notices.append(
                    Notice(
                        user_id,
                        NotificationType.BOOKING_CANCELLED,
                        "Booking cancelled",
                        f"Booking {booking.booking_number} has been cancelled. Reason: {reason}",
                        booking_data(booking),
                    )
                )
        if refund > 0:
            notices.append(
                Notice(
                    booking.customer_id,
                    NotificationType.REFUND_ISSUED,
                    "Refund issued",
                    f"₹{refund} will be refunded for booking {booking.booking_number}.",
                    booking_data(booking, amount=refund),
                )
            )
        await self._emit(notices)
        return booking

    async def _gateway_refund(self, booking: Booking, amount: Decimal, reason: str) -> None:
        if self.payment_provider is None:
            raise RefundFailed("No payment provider configured", booking_id=str(booking.id))
        try:
            await self.payment_provider.refund(
                booking.id, amount, reason, payment_reference=booking.payment_reference
            )
        except RefundFailed:
            raise
        except Exception as e:
            raise RefundFailed(f"Refund failed: {e}", booking_id=str(booking.id))

    # ── Rating ────────────────────────────────────────────────

    async def rate_booking(
        self, booking_id: UUID, actor: User, rating: int, review: Optional[str] = None
    ) -> Booking:
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationFailure("Rating must be between 1 and 5", rating=rating)

        booking = await self.repo.get(booking_id)
        self._ensure_customer(booking, actor)
        ensure_allowed(Op.RATE, booking.status)
        if booking.partner_id is None:
            raise InvalidState("Booking has no partner to rate", current_status=booking.status.value)
        if await self.repo.has_rating(booking.id):
            raise InvalidState("Booking has already been rated", current_status=booking.status.value)

        partner = await self.repo.find_partner(booking.partner_id)
        if not partner:
            raise NotFound("Service partner not found")

        async with self._unit_of_work():
            self.db.add(
                Rating(
                    booking_id=booking.id,
                    rater_id=actor.id,
                    rated_id=partner.user_id,
                    partner_id=partner.id,
                    rating=rating,
                    review=review,
                )
            )
            await self.repo.apply_rating(partner.id, rating)
            await self._transition(booking, Op.RATE, actor.id, notes=f"Rated {rating}/5")

        await self._emit([
            Notice(
                partner.user_id,
                NotificationType.RATING_RECEIVED,
                "New rating",
                f"You received {rating}★ for booking {booking.booking_number}.",
                booking_data(booking, rating=rating),
            )
        ])
        return booking

    # ── Payments ──────────────────────────────────────────────

    async def confirm_payment(self, booking_id: UUID, actor: User, reference: str) -> Booking:
        """Record a gateway-confirmed payment (admin or payment webhook)."""
        if not actor.is_admin:
            raise Unauthorized("Only admins can confirm payments")
        if not reference or not reference.strip():
            raise ValidationFailure("Payment reference is required")

        booking = await self.repo.get(booking_id)
        ensure_allowed(Op.RECORD_PAYMENT, booking.status)
        if booking.payment_status == PaymentStatus.COMPLETED:
            raise InvalidState("Booking is already paid", current_status=booking.status.value)

        async with self._unit_of_work():
            await self._transition(
                booking, Op.RECORD_PAYMENT, actor.id,
                extra_conditions=[Booking.payment_status != PaymentStatus.COMPLETED],
                payment_status=PaymentStatus.COMPLETED,
                payment_reference=reference.strip(),
            )

        await self._emit([
            Notice(
                booking.customer_id,
                NotificationType.PAYMENT_RECEIVED,
                "Payment received",
                f"Payment for booking {booking.booking_number} has been received.",
                booking_data(booking),
            )
        ])
        return booking

    async def pay_from_wallet(self, booking_id: UUID, actor: User) -> Booking:
        booking = await self.repo.get(booking_id)
        self._ensure_customer(booking, actor)
        ensure_allowed(Op.RECORD_PAYMENT, booking.status)
        if booking.payment_status == PaymentStatus.COMPLETED:
            raise InvalidState("Booking is already paid", current_status=booking.status.value)

        async with self._unit_of_work():
            await self.ledger.debit(
                actor.id,
                booking.total_amount,
                f"Payment for booking {booking.booking_number}",
                type=TransactionType.BOOKING_PAYMENT,
                booking_id=booking.id,
            )
            await self._transition(
                booking, Op.RECORD_PAYMENT, actor.id,
                extra_conditions=[Booking.payment_status != PaymentStatus.COMPLETED],
                payment_status=PaymentStatus.COMPLETED,
                payment_method=PaymentMethod.WALLET,
                payment_reference=f"WALLET-{booking.booking_number}",
            )

        await self._emit([
            Notice(
                actor.id,
                NotificationType.PAYMENT_RECEIVED,
                "Payment successful",
                f"₹{booking.total_amount} paid from your wallet for booking {booking.booking_number}.",
                booking_data(booking),
            )
        ])
        return booking

    # ── Queries ───────────────────────────────────────────────

    async def _visibility(self, actor: User):
        if actor.is_admin:
            return None
        if actor.role == UserRole.CUSTOMER:
            return Booking.customer_id == actor.id
        if actor.role == UserRole.SERVICE_PARTNER:
            partner = await self._partner_for(actor)
            return claimable_or_assigned(partner.id)
        if actor.role == UserRole.BUSINESS_PARTNER:
            business = await self.repo.find_business_partner_by_user(actor.id)
            if business:
                return Booking.business_partner_id == business.id
        raise Unauthorized("You are not allowed to view bookings")

    async def _ensure_visible(self, booking: Booking, actor: User) -> None:
        if actor.is_admin or booking.customer_id == actor.id:
            return
        if actor.role == UserRole.SERVICE_PARTNER:
            partner = await self.repo.find_partner_by_user(actor.id)
            if partner and (
                booking.partner_id == partner.id
                or (booking.partner_id is None and booking.status in CLAIMABLE_STATUSES)
            ):
                return
        if actor.role == UserRole.BUSINESS_PARTNER and booking.business_partner_id:
            business = await self.repo.find_business_partner(booking.business_partner_id)
            if business and business.user_id == actor.id:
                return
        raise Unauthorized("You are not allowed to view this booking")

    async def get_booking(self, booking_id: UUID, actor: User) -> Booking:
        booking = await self.repo.get(booking_id)
        await self._ensure_visible(booking, actor)
        return booking

    async def list_bookings(
        self,
        actor: User,
        status: Optional[BookingStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        customer_id: Optional[UUID] = None,
        partner_id: Optional[UUID] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Booking], int]:
        visibility = await self._visibility(actor)
        return await self.repo.list_bookings(
            visibility=visibility,
            status=status,
            date_from=date_from,
            date_to=date_to,
            customer_id=customer_id,
            partner_id=partner_id,
            page=page,
            page_size=page_size,
        )

    async def history(self, booking_id: UUID, actor: User) -> List[BookingStatusHistory]:
        await self.get_booking(booking_id, actor)
        return await self.repo.history(booking_id)

    # ── Housekeeping ──────────────────────────────────────────

    async def cancel_abandoned_bookings(self, now: Optional[datetime] = None) -> int:
        """Cancel unassigned, unpaid online/wallet bookings older than the inactivity window."""
        now = now or self.clock()
        cutoff = now - timedelta(minutes=settings.ABANDONED_BOOKING_MINUTES)
        abandoned = [b.id for b in await self.repo.find_abandoned(cutoff)]
        await self.db.commit()

        cancelled = 0
        for booking_id in abandoned:
            try:
                await self.cancel_booking(
                    booking_id, None,
                    reason="Automatically cancelled: payment not completed in time",
                )
                cancelled += 1
            except DomainError as e:
                logger.warning(f"Could not auto-cancel booking {booking_id}: {e.message}")
        if cancelled:
            logger.info(f"Cancelled {cancelled} abandoned booking(s)")
        return cancelled

    async def retrigger_stale_matching(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        cutoff = now - timedelta(minutes=settings.STALE_SEARCH_MINUTES)
        stale = [b.id for b in await self.repo.find_stale_searches(cutoff)]
        await self.db.commit()

        for booking_id in stale:
            await self.dispatch_matching(booking_id)
        if stale:
            logger.info(f"Re-ran matching for {len(stale)} stale booking(s)")
        return len(stale)


async def dispatch_matching_in_background(
    session_factory: async_sessionmaker, notifier: Notifier, booking_id: UUID
) -> None:
    """Entry point for FastAPI BackgroundTasks: the request session is gone by now."""
    async with session_factory() as session:
        machine = BookingStateMachine(session, notifier)
        await machine.dispatch_matching(booking_id)
