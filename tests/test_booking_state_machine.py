"""
tests/test_booking_state_machine.py
Booking lifecycle driven directly through BookingStateMachine:
create → match → claim → arrive → start → complete (settle + invoice) → rate,
plus the concurrency, cancellation, OTP and housekeeping paths.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.service import BookingStateMachine
from services.payment.provider import RefundResult
from services.wallet.ledger import WalletLedger
from shared.exceptions import (
    ConflictAlreadyClaimed,
    GeofenceViolation,
    InsufficientFunds,
    InvalidState,
    PreconditionMissing,
    RefundFailed,
    Unauthorized,
    ValidationFailure,
)
from shared.models.models import (
    Booking,
    BookingStatus,
    Invoice,
    KYCStatus,
    NotificationType,
    PaymentMethod,
    PaymentStatus,
    Service,
    ServicePartner,
    TransactionType,
    User,
)
from tests.conftest import KM_IN_LAT, SERVICE_LAT, SERVICE_LNG, make_booking


async def _create(machine: BookingStateMachine, customer: User, service: Service, **kwargs) -> Booking:
    return await machine.create_booking(
        customer,
        service_id=service.id,
        scheduled_at=machine.clock() + timedelta(days=1),
        service_address="12 MG Road, Bengaluru",
        latitude=SERVICE_LAT,
        longitude=SERVICE_LNG,
        **kwargs,
    )


async def _history_statuses(db: AsyncSession, machine: BookingStateMachine, booking_id):
    return {h.status for h in await machine.repo.history(booking_id)}


# ── Creation ───────────────────────────────────────────────────────────────────

def test_state_machine_requires_notifier(db: AsyncSession):
    with pytest.raises(TypeError):
        BookingStateMachine(db, None)


@pytest.mark.asyncio
async def test_create_opens_search_with_advance_split(
    db: AsyncSession, machine: BookingStateMachine, notifier, customer: User, service: Service
):
    booking = await _create(machine, customer, service)

    assert booking.status == BookingStatus.SEARCHING_PARTNER
    assert booking.booking_number.startswith("BK")
    assert booking.total_amount == Decimal("1000.00")
    assert booking.advance_amount == Decimal("300.00")
    assert booking.remaining_amount == Decimal("700.00")
    assert booking.estimated_duration_minutes == 60
    assert await _history_statuses(db, machine, booking.id) == {
        BookingStatus.PENDING,
        BookingStatus.SEARCHING_PARTNER,
    }
    assert notifier.to(customer.id, NotificationType.BOOKING_CREATED)


@pytest.mark.asyncio
async def test_surge_multiplier_priced_in(
    db: AsyncSession, machine: BookingStateMachine, customer: User, service: Service
):
    service.surge_multiplier = 1.25
    await db.commit()

    booking = await _create(machine, customer, service, quantity=2)

    assert booking.pricing_multiplier == 1.25
    assert booking.total_amount == Decimal("2500.00")
    assert booking.advance_amount == Decimal("750.00")
    assert booking.estimated_duration_minutes == 120


@pytest.mark.asyncio
async def test_business_booking_waits_for_assignment(
    machine: BookingStateMachine, notifier, customer: User, service: Service, business, business_user: User
):
    booking = await _create(machine, customer, service, business_partner_id=business.id)

    assert booking.status == BookingStatus.PENDING_ASSIGNMENT
    assert notifier.to(business_user.id, NotificationType.BOOKING_CREATED)


@pytest.mark.asyncio
async def test_create_rejects_past_schedule_and_bad_coordinates(
    machine: BookingStateMachine, customer: User, service: Service
):
    with pytest.raises(ValidationFailure):
        await machine.create_booking(
            customer, service.id, machine.clock() - timedelta(hours=1),
            "12 MG Road, Bengaluru", SERVICE_LAT, SERVICE_LNG,
        )
    with pytest.raises(ValidationFailure):
        await machine.create_booking(
            customer, service.id, machine.clock() + timedelta(days=1),
            "12 MG Road, Bengaluru", 123.0, SERVICE_LNG,
        )


@pytest.mark.asyncio
async def test_only_customers_create_bookings(
    machine: BookingStateMachine, partner_user: User, service: Service
):
    with pytest.raises(Unauthorized):
        await _create(machine, partner_user, service)


# ── Full lifecycle ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_full_lifecycle_settles_and_invoices(
    db: AsyncSession,
    machine: BookingStateMachine,
    notifier,
    clock,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
    second_partner: ServicePartner,
    second_partner_user: User,
    super_admin: User,
):
    booking = await _create(machine, customer, service)

    candidates = await machine.dispatch_matching(booking.id)
    assert [c.partner.id for c in candidates] == [partner.id, second_partner.id]
    assert notifier.to(second_partner_user.id, NotificationType.NEW_JOB_AVAILABLE)

    booking = await machine.claim_booking(booking.id, partner_user)
    assert booking.status == BookingStatus.PARTNER_ACCEPTED
    assert booking.partner_id == partner.id

    booking = await machine.arrive(booking.id, partner_user, SERVICE_LAT + 0.003, SERVICE_LNG)
    assert booking.status == BookingStatus.ARRIVED

    booking = await machine.start_service(booking.id, partner_user)
    assert booking.status == BookingStatus.IN_PROGRESS

    clock.advance(minutes=80)
    booking = await machine.complete_booking(booking.id, partner_user, notes="Replaced washer")

    assert booking.status == BookingStatus.COMPLETED
    assert booking.actual_duration_minutes == 80
    assert booking.overtime_charge == Decimal("200.00")
    assert booking.total_amount == Decimal("1200.00")
    assert booking.remaining_amount == Decimal("900.00")
    assert booking.platform_fee == Decimal("180.00")
    assert booking.commission_amount == Decimal("1020.00")

    ledger = WalletLedger(db)
    assert (await ledger.get_balance(partner_user.id)).balance == Decimal("1020.00")
    assert (await ledger.get_balance(super_admin.id)).balance == Decimal("180.00")

    invoice = await db.scalar(select(Invoice).where(Invoice.booking_id == booking.id))
    assert invoice.invoice_number.startswith("INV")
    assert invoice.subtotal == Decimal("1200.00")
    assert invoice.tax_amount == Decimal("216.00")
    assert invoice.total_amount == Decimal("1416.00")

    await db.refresh(partner)
    assert partner.completed_bookings == 1
    assert partner.total_bookings == 1
    assert partner.completion_rate == pytest.approx(100.0)

    booking = await machine.rate_booking(booking.id, customer, 5, "Quick and tidy")
    assert booking.status == BookingStatus.RATED
    await db.refresh(partner)
    assert partner.avg_rating == pytest.approx(5.0)
    assert partner.total_ratings == 1

    assert await _history_statuses(db, machine, booking.id) == {
        BookingStatus.PENDING,
        BookingStatus.SEARCHING_PARTNER,
        BookingStatus.PARTNER_ACCEPTED,
        BookingStatus.ARRIVED,
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED,
        BookingStatus.RATED,
    }
    assert notifier.to(partner_user.id, NotificationType.WALLET_CREDITED)


@pytest.mark.asyncio
async def test_second_completion_is_refused(
    db: AsyncSession,
    machine: BookingStateMachine,
    clock,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
    super_admin: User,
):
    booking = await make_booking(
        db, customer, service,
        status=BookingStatus.IN_PROGRESS,
        partner_id=partner.id,
        started_at=clock() - timedelta(minutes=45),
    )
    await machine.complete_booking(booking.id, partner_user)

    with pytest.raises(InvalidState):
        await machine.complete_booking(booking.id, partner_user)

    earnings, total = await WalletLedger(db).list_transactions(
        partner_user.id, type=TransactionType.PARTNER_EARNING
    )
    assert total == 1
    assert earnings[0].amount == Decimal("850.00")


# ── Claiming ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(
    db: AsyncSession,
    session_factory,
    notifier,
    clock,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
    second_partner: ServicePartner,
    second_partner_user: User,
):
    booking = await make_booking(db, customer, service, status=BookingStatus.SEARCHING_PARTNER)
    booking_id = booking.id

    async with session_factory() as s1, session_factory() as s2:
        results = await asyncio.gather(
            BookingStateMachine(s1, notifier, clock=clock).claim_booking(booking_id, partner_user),
            BookingStateMachine(s2, notifier, clock=clock).claim_booking(booking_id, second_partner_user),
            return_exceptions=True,
        )

    winners = [r for r in results if isinstance(r, Booking)]
    losers = [r for r in results if isinstance(r, ConflictAlreadyClaimed)]
    assert len(winners) == 1
    assert len(losers) == 1

    stored = await db.get(Booking, booking_id, populate_existing=True)
    assert stored.status == BookingStatus.PARTNER_ACCEPTED
    assert stored.partner_id == winners[0].partner_id


@pytest.mark.asyncio
async def test_claim_after_claim_conflicts(
    db: AsyncSession,
    machine: BookingStateMachine,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
    second_partner: ServicePartner,
    second_partner_user: User,
):
    booking = await make_booking(db, customer, service, status=BookingStatus.SEARCHING_PARTNER)
    await machine.claim_booking(booking.id, partner_user)

    with pytest.raises(ConflictAlreadyClaimed) as exc:
        await machine.claim_booking(booking.id, second_partner_user)
    assert exc.value.status_code == 409


@pytest.mark.asyncio
async def test_claim_requires_approved_kyc(
    db: AsyncSession,
    machine: BookingStateMachine,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
):
    partner.kyc_status = KYCStatus.SUBMITTED
    await db.commit()
    booking = await make_booking(db, customer, service, status=BookingStatus.SEARCHING_PARTNER)

    with pytest.raises(Unauthorized):
        await machine.claim_booking(booking.id, partner_user)


# ── Matching outcomes ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_no_candidates_marks_partner_not_found(
    db: AsyncSession, machine: BookingStateMachine, notifier, customer: User, service: Service
):
    booking = await _create(machine, customer, service)

    assert await machine.dispatch_matching(booking.id) == []

    assert booking.status == BookingStatus.PARTNER_NOT_FOUND
    assert notifier.to(customer.id, NotificationType.PARTNER_NOT_FOUND)


@pytest.mark.asyncio
async def test_reject_rematches_without_rejecting_partner(
    db: AsyncSession,
    machine: BookingStateMachine,
    notifier,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
    second_partner: ServicePartner,
    second_partner_user: User,
):
    booking = await _create(machine, customer, service)
    await machine.claim_booking(booking.id, partner_user)

    booking = await machine.reject_booking(booking.id, partner_user, "Van broke down")

    assert booking.status == BookingStatus.SEARCHING_PARTNER
    assert booking.partner_id is None
    assert str(partner.id) in booking.rejected_partner_ids
    assert notifier.to(second_partner_user.id, NotificationType.NEW_JOB_AVAILABLE)
    assert not notifier.to(partner_user.id, NotificationType.NEW_JOB_AVAILABLE)
    assert notifier.to(customer.id, NotificationType.PARTNER_REJECTED)


@pytest.mark.asyncio
async def test_reject_by_only_partner_ends_search(
    machine: BookingStateMachine,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
):
    booking = await _create(machine, customer, service)
    await machine.claim_booking(booking.id, partner_user)

    booking = await machine.reject_booking(booking.id, partner_user)

    assert booking.status == BookingStatus.PARTNER_NOT_FOUND


# ── Business assignment ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_business_owner_assigns_team_member(
    machine: BookingStateMachine,
    notifier,
    customer: User,
    service: Service,
    business,
    business_user: User,
    team_partner: ServicePartner,
    team_partner_user: User,
    partner: ServicePartner,
):
    booking = await _create(machine, customer, service, business_partner_id=business.id)

    with pytest.raises(Unauthorized):
        await machine.assign_partner(booking.id, team_partner.id, customer)
    with pytest.raises(ValidationFailure):
        await machine.assign_partner(booking.id, partner.id, business_user)

    suggested = await machine.suggest_partners(booking.id, business_user)
    assert [c.partner.id for c in suggested] == [team_partner.id]

    booking = await machine.assign_partner(booking.id, team_partner.id, business_user)
    assert booking.status == BookingStatus.PARTNER_ASSIGNED
    assert notifier.to(team_partner_user.id, NotificationType.BOOKING_ASSIGNED)

    booking = await machine.accept_booking(booking.id, team_partner_user)
    assert booking.status == BookingStatus.PARTNER_ACCEPTED


@pytest.mark.asyncio
async def test_team_member_reject_returns_to_business(
    machine: BookingStateMachine,
    notifier,
    customer: User,
    service: Service,
    business,
    business_user: User,
    team_partner: ServicePartner,
    team_partner_user: User,
):
    booking = await _create(machine, customer, service, business_partner_id=business.id)
    await machine.assign_partner(booking.id, team_partner.id, business_user)

    booking = await machine.reject_booking(booking.id, team_partner_user, "Double booked")

    assert booking.status == BookingStatus.PENDING_ASSIGNMENT
    assert booking.partner_id is None
    assert notifier.to(business_user.id, NotificationType.PARTNER_REJECTED)


@pytest.mark.asyncio
async def test_only_assigned_partner_can_accept(
    machine: BookingStateMachine,
    customer: User,
    service: Service,
    admin: User,
    partner: ServicePartner,
    second_partner: ServicePartner,
    second_partner_user: User,
):
    booking = await _create(machine, customer, service)
    await machine.assign_partner(booking.id, partner.id, admin)

    with pytest.raises(Unauthorized):
        await machine.accept_booking(booking.id, second_partner_user)


# ── Field work ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_arrival_outside_geofence_rejected(
    db: AsyncSession,
    machine: BookingStateMachine,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
):
    booking = await make_booking(
        db, customer, service, status=BookingStatus.PARTNER_ACCEPTED, partner_id=partner.id
    )

    with pytest.raises(GeofenceViolation) as exc:
        await machine.arrive(booking.id, partner_user, SERVICE_LAT + KM_IN_LAT, SERVICE_LNG)
    assert exc.value.context["distance_km"] == pytest.approx(1.0, abs=0.01)

    stored = await machine.repo.get(booking.id)
    assert stored.status == BookingStatus.PARTNER_ACCEPTED


@pytest.mark.asyncio
async def test_start_otp_must_match(
    db: AsyncSession,
    machine: BookingStateMachine,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
):
    booking = await make_booking(
        db, customer, service, status=BookingStatus.ARRIVED, partner_id=partner.id
    )
    _, otp = await machine.generate_start_otp(booking.id, customer)
    assert len(otp) == 4 and otp.isdigit()

    with pytest.raises(ValidationFailure):
        await machine.start_service(booking.id, partner_user)
    with pytest.raises(PreconditionMissing):
        await machine.start_service(booking.id, partner_user, "1111" if otp != "1111" else "2222")

    booking = await machine.start_service(booking.id, partner_user, otp)
    assert booking.status == BookingStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_completion_otp_requires_photos(
    db: AsyncSession,
    machine: BookingStateMachine,
    clock,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
    super_admin: User,
):
    booking = await make_booking(
        db, customer, service,
        status=BookingStatus.IN_PROGRESS,
        partner_id=partner.id,
        started_at=clock() - timedelta(minutes=30),
    )
    _, otp = await machine.generate_completion_otp(booking.id, customer)
    assert len(otp) == 6

    with pytest.raises(PreconditionMissing):
        await machine.complete_booking(booking.id, partner_user)
    with pytest.raises(PreconditionMissing):
        await machine.verify_completion_otp(booking.id, partner_user, otp)

    await machine.upload_before_photos(booking.id, partner_user, ["https://cdn.homeserve.in/b1.jpg"])
    await machine.upload_after_photos(booking.id, partner_user, ["https://cdn.homeserve.in/a1.jpg"])

    wrong = "111111" if otp != "111111" else "222222"
    with pytest.raises(PreconditionMissing):
        await machine.verify_completion_otp(booking.id, partner_user, wrong)

    booking = await machine.verify_completion_otp(booking.id, partner_user, otp)
    assert booking.status == BookingStatus.COMPLETED
    assert booking.overtime_charge == Decimal("0.00")
    assert booking.before_images == ["https://cdn.homeserve.in/b1.jpg"]


@pytest.mark.asyncio
async def test_after_photos_only_while_in_progress(
    db: AsyncSession,
    machine: BookingStateMachine,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
):
    booking = await make_booking(
        db, customer, service, status=BookingStatus.ARRIVED, partner_id=partner.id
    )
    with pytest.raises(InvalidState):
        await machine.upload_after_photos(booking.id, partner_user, ["https://cdn.homeserve.in/a1.jpg"])
    with pytest.raises(ValidationFailure):
        await machine.upload_before_photos(booking.id, partner_user, ["  "])


# ── Cancellation ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize(
    "hours_ahead, refund, payment_status",
    [
        (30, "900.00", PaymentStatus.PARTIALLY_REFUNDED),
        (10, "500.00", PaymentStatus.PARTIALLY_REFUNDED),
        (1, "0.00", PaymentStatus.COMPLETED),
    ],
)
async def test_cancellation_refund_tiers(
    db: AsyncSession,
    machine: BookingStateMachine,
    payment_provider,
    clock,
    customer: User,
    service: Service,
    hours_ahead,
    refund,
    payment_status,
):
    booking = await make_booking(
        db, customer, service,
        status=BookingStatus.SEARCHING_PARTNER,
        scheduled_at=clock() + timedelta(hours=hours_ahead),
        payment_status=PaymentStatus.COMPLETED,
        payment_reference="pay_N1x2",
    )

    booking = await machine.cancel_booking(booking.id, customer, "Plans changed")

    assert booking.status == BookingStatus.CANCELLED
    assert booking.refund_amount == Decimal(refund)
    assert booking.payment_status == payment_status
    assert booking.cancelled_by == customer.id
    assert payment_provider.refund.await_count == (1 if Decimal(refund) > 0 else 0)


@pytest.mark.asyncio
async def test_wallet_booking_refunded_to_wallet(
    db: AsyncSession,
    machine: BookingStateMachine,
    payment_provider,
    clock,
    customer: User,
    service: Service,
):
    booking = await make_booking(
        db, customer, service,
        status=BookingStatus.SEARCHING_PARTNER,
        scheduled_at=clock() + timedelta(hours=30),
        payment_method=PaymentMethod.WALLET,
        payment_status=PaymentStatus.COMPLETED,
    )

    await machine.cancel_booking(booking.id, customer, "Plans changed")

    balance = await WalletLedger(db).get_balance(customer.id)
    assert balance.balance == Decimal("900.00")
    refunds, _ = await WalletLedger(db).list_transactions(customer.id, type=TransactionType.REFUND)
    assert refunds[0].booking_id == booking.id
    payment_provider.refund.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_gateway_refund_keeps_booking_open(
    db: AsyncSession,
    machine: BookingStateMachine,
    payment_provider,
    clock,
    customer: User,
    service: Service,
):
    booking = await make_booking(
        db, customer, service,
        status=BookingStatus.SEARCHING_PARTNER,
        scheduled_at=clock() + timedelta(hours=30),
        payment_status=PaymentStatus.COMPLETED,
        payment_reference="pay_N1x2",
    )
    booking_id = booking.id
    payment_provider.refund.side_effect = RuntimeError("gateway timeout")

    with pytest.raises(RefundFailed):
        await machine.cancel_booking(booking_id, customer, "Plans changed")

    stored = await machine.repo.get(booking_id)
    assert stored.status == BookingStatus.SEARCHING_PARTNER
    assert stored.payment_status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_concurrent_cancellations_refund_once(
    db: AsyncSession,
    session_factory,
    notifier,
    payment_provider,
    clock,
    customer: User,
    service: Service,
):
    booking = await make_booking(
        db, customer, service,
        status=BookingStatus.SEARCHING_PARTNER,
        scheduled_at=clock() + timedelta(hours=30),
        payment_status=PaymentStatus.COMPLETED,
        payment_reference="pay_N1x2",
    )
    booking_id = booking.id

    async def slow_refund(booking_id, amount, reason, payment_reference=None):
        await asyncio.sleep(0.2)
        return RefundResult(refund_id="rfnd_slow", amount=amount, status="processed")

    payment_provider.refund.side_effect = slow_refund

    async with session_factory() as s1, session_factory() as s2:
        results = await asyncio.gather(
            BookingStateMachine(s1, notifier, payment_provider, clock=clock).cancel_booking(
                booking_id, customer, "Plans changed"
            ),
            BookingStateMachine(s2, notifier, payment_provider, clock=clock).cancel_booking(
                booking_id, customer, "Plans changed"
            ),
            return_exceptions=True,
        )

    assert len([r for r in results if isinstance(r, Booking)]) == 1
    assert len([r for r in results if isinstance(r, InvalidState)]) == 1
    assert payment_provider.refund.await_count == 1

    stored = await db.get(Booking, booking_id, populate_existing=True)
    assert stored.status == BookingStatus.CANCELLED
    assert stored.refund_amount == Decimal("900.00")


@pytest.mark.asyncio
async def test_cancel_by_stranger_refused(
    db: AsyncSession,
    machine: BookingStateMachine,
    customer: User,
    other_customer: User,
    service: Service,
):
    booking = await make_booking(db, customer, service, status=BookingStatus.SEARCHING_PARTNER)

    with pytest.raises(Unauthorized):
        await machine.cancel_booking(booking.id, other_customer, "Not mine")


@pytest.mark.asyncio
async def test_assigned_partner_can_cancel(
    db: AsyncSession,
    machine: BookingStateMachine,
    notifier,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
):
    booking = await make_booking(
        db, customer, service, status=BookingStatus.PARTNER_ACCEPTED, partner_id=partner.id
    )

    booking = await machine.cancel_booking(booking.id, partner_user, "Customer unreachable")

    assert booking.status == BookingStatus.CANCELLED
    assert notifier.to(customer.id, NotificationType.BOOKING_CANCELLED)
    assert not notifier.to(partner_user.id, NotificationType.BOOKING_CANCELLED)


@pytest.mark.asyncio
async def test_completed_booking_cannot_be_cancelled(
    db: AsyncSession, machine: BookingStateMachine, customer: User, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED)

    with pytest.raises(InvalidState):
        await machine.cancel_booking(booking.id, customer, "Too late")


# ── Rating ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rating_updates_running_average(
    db: AsyncSession,
    machine: BookingStateMachine,
    customer: User,
    service: Service,
    partner: ServicePartner,
):
    partner.avg_rating = 4.0
    partner.total_ratings = 9
    await db.commit()
    booking = await make_booking(db, customer, service, partner_id=partner.id)

    await machine.rate_booking(booking.id, customer, 5)

    await db.refresh(partner)
    assert partner.avg_rating == pytest.approx(4.1)
    assert partner.total_ratings == 10

    with pytest.raises(InvalidState):
        await machine.rate_booking(booking.id, customer, 4)


@pytest.mark.asyncio
async def test_rating_out_of_range_refused(
    db: AsyncSession,
    machine: BookingStateMachine,
    customer: User,
    service: Service,
    partner: ServicePartner,
):
    booking = await make_booking(db, customer, service, partner_id=partner.id)

    with pytest.raises(ValidationFailure):
        await machine.rate_booking(booking.id, customer, 6)


# ── Payments ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_pay_from_wallet_debits_total(
    db: AsyncSession, machine: BookingStateMachine, customer: User, service: Service
):
    await WalletLedger(db).credit(customer.id, Decimal("1500"), "Top-up", reference="pay_top")
    await db.commit()
    booking = await make_booking(db, customer, service, status=BookingStatus.SEARCHING_PARTNER)

    booking = await machine.pay_from_wallet(booking.id, customer)

    assert booking.payment_status == PaymentStatus.COMPLETED
    assert booking.payment_method == PaymentMethod.WALLET
    assert (await WalletLedger(db).get_balance(customer.id)).balance == Decimal("500.00")

    with pytest.raises(InvalidState):
        await machine.pay_from_wallet(booking.id, customer)


@pytest.mark.asyncio
async def test_pay_from_wallet_without_funds(
    db: AsyncSession, machine: BookingStateMachine, customer: User, service: Service
):
    customer_id = customer.id
    booking = await make_booking(db, customer, service, status=BookingStatus.SEARCHING_PARTNER)
    booking_id = booking.id

    with pytest.raises(InsufficientFunds):
        await machine.pay_from_wallet(booking_id, customer)

    stored = await machine.repo.get(booking_id)
    assert stored.payment_status == PaymentStatus.PENDING
    assert (await WalletLedger(db).get_balance(customer_id)).balance == Decimal("0.00")


@pytest.mark.asyncio
async def test_admin_confirms_gateway_payment_once(
    db: AsyncSession, machine: BookingStateMachine, customer: User, admin: User, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.SEARCHING_PARTNER)

    with pytest.raises(Unauthorized):
        await machine.confirm_payment(booking.id, customer, "pay_ABC123")

    booking = await machine.confirm_payment(booking.id, admin, "pay_ABC123")
    assert booking.payment_status == PaymentStatus.COMPLETED
    assert booking.payment_reference == "pay_ABC123"

    with pytest.raises(InvalidState):
        await machine.confirm_payment(booking.id, admin, "pay_ABC123")


# ── Housekeeping ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_abandoned_unpaid_bookings_cancelled(
    db: AsyncSession,
    machine: BookingStateMachine,
    clock,
    customer: User,
    service: Service,
):
    online = await _create(machine, customer, service)
    cash = await _create(machine, customer, service, payment_method=PaymentMethod.CASH)

    clock.advance(minutes=30)
    assert await machine.cancel_abandoned_bookings() == 0

    clock.advance(minutes=31)
    assert await machine.cancel_abandoned_bookings() == 1

    assert (await machine.repo.get(online.id)).status == BookingStatus.CANCELLED
    assert (await machine.repo.get(cash.id)).status == BookingStatus.SEARCHING_PARTNER


@pytest.mark.asyncio
async def test_stale_searches_renotified(
    db: AsyncSession,
    machine: BookingStateMachine,
    notifier,
    clock,
    customer: User,
    service: Service,
    partner: ServicePartner,
    partner_user: User,
):
    booking = await _create(machine, customer, service)
    await machine.dispatch_matching(booking.id)
    assert len(notifier.to(partner_user.id, NotificationType.NEW_JOB_AVAILABLE)) == 1

    clock.advance(minutes=11)
    assert await machine.retrigger_stale_matching() == 1
    assert len(notifier.to(partner_user.id, NotificationType.NEW_JOB_AVAILABLE)) == 2
