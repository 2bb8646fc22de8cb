"""
services/settlement/engine.py
Revenue split for a completed booking.

Business-partner bookings pay the business's own commission_rate to the
platform and credit the remainder to the business owner's wallet.
Independent bookings pay PLATFORM_COMMISSION_PERCENT and credit the rest
to the technician. The platform share lands in the platform wallet.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.settlement.pricing import money, percent_of
from services.wallet.ledger import WalletLedger
from shared.exceptions import SettlementError
from shared.models.models import (
    Booking,
    BusinessPartner,
    ServicePartner,
    Transaction,
    TransactionType,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    platform_fee: Decimal
    partner_earnings: Decimal
    earnings_user_id: UUID
    platform_user_id: UUID


class SettlementEngine:
    def __init__(self, db: AsyncSession, ledger: Optional[WalletLedger] = None):
        self.db = db
        self.ledger = ledger or WalletLedger(db)

    async def settle(self, booking: Booking) -> SettlementResult:
        """
        Post the platform/partner split for booking.total_amount.
        Runs inside the caller's transaction; raises SettlementError if the
        booking was already settled or the money cannot be routed.
        """
        if booking.partner_id is None:
            raise SettlementError("Booking has no assigned partner", booking_id=str(booking.id))
        if booking.total_amount is None or money(booking.total_amount) <= 0:
            raise SettlementError("Booking has no billable total", booking_id=str(booking.id))

        if await self._already_settled(booking.id):
            raise SettlementError("Booking has already been settled", booking_id=str(booking.id))

        total = money(booking.total_amount)

        if booking.business_partner_id:
            business = await self.db.get(BusinessPartner, booking.business_partner_id)
            if not business:
                raise SettlementError(
                    "Business partner for booking not found", booking_id=str(booking.id)
                )
            platform_fee = percent_of(total, Decimal(str(business.commission_rate)) * 100)
            earnings_user_id = business.user_id
        else:
            partner = await self.db.get(ServicePartner, booking.partner_id)
            if not partner:
                raise SettlementError("Assigned partner not found", booking_id=str(booking.id))
            platform_fee = percent_of(total, settings.PLATFORM_COMMISSION_PERCENT)
            earnings_user_id = partner.user_id

        partner_earnings = total - platform_fee
        platform_user_id = await self._platform_user_id()

        if partner_earnings > 0:
            await self.ledger.credit(
                earnings_user_id,
                partner_earnings,
                f"Earnings for booking {booking.booking_number}",
                type=TransactionType.PARTNER_EARNING,
                booking_id=booking.id,
            )
        if platform_fee > 0:
            await self.ledger.credit(
                platform_user_id,
                platform_fee,
                f"Platform commission for booking {booking.booking_number}",
                type=TransactionType.COMMISSION,
                booking_id=booking.id,
            )

        logger.info(
            f"Settled booking {booking.booking_number}: "
            f"platform ₹{platform_fee}, partner ₹{partner_earnings}"
        )
        return SettlementResult(
            platform_fee=platform_fee,
            partner_earnings=partner_earnings,
            earnings_user_id=earnings_user_id,
            platform_user_id=platform_user_id,
        )

    async def _already_settled(self, booking_id: UUID) -> bool:
        result = await self.db.execute(
            select(Transaction.id)
            .where(
                Transaction.booking_id == booking_id,
                Transaction.type.in_(
                    [TransactionType.COMMISSION, TransactionType.PARTNER_EARNING]
                ),
            )
            .limit(1)
        )
        return result.first() is not None

    async def _platform_user_id(self) -> UUID:
        if settings.PLATFORM_WALLET_USER_ID:
            return UUID(settings.PLATFORM_WALLET_USER_ID)

        result = await self.db.execute(
            select(User.id)
            .where(User.role == UserRole.SUPER_ADMIN, User.is_active == True)  # noqa: E712
            .order_by(User.created_at)
            .limit(1)
        )
        user_id = result.scalar_one_or_none()
        if user_id is None:
            raise SettlementError("No platform wallet is configured")
        return user_id
