"""
services/settlement/pricing.py
Money math for bookings: creation amounts, overtime, invoice totals and
cancellation refund tiers. All amounts are Decimal rounded half-up to paise.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from config.settings import settings

PAISE = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(PAISE, rounding=ROUND_HALF_UP)


def percent_of(amount, percent) -> Decimal:
    return money(Decimal(str(amount)) * Decimal(str(percent)) / Decimal("100"))


@dataclass(frozen=True)
class BookingAmounts:
    unit_price: Decimal
    line_total: Decimal
    total_amount: Decimal
    advance_amount: Decimal
    remaining_amount: Decimal


def booking_amounts(base_price, quantity: int = 1, multiplier: float = 1.0) -> BookingAmounts:
    unit_price = money(base_price)
    line_total = money(unit_price * quantity)
    total = money(line_total * Decimal(str(multiplier)))
    advance = percent_of(total, settings.ADVANCE_PAYMENT_PERCENT)
    return BookingAmounts(
        unit_price=unit_price,
        line_total=line_total,
        total_amount=total,
        advance_amount=advance,
        remaining_amount=total - advance,
    )


def duration_minutes(started_at: datetime, completed_at: datetime) -> int:
    """Elapsed minutes, rounded up."""
    seconds = (completed_at - started_at).total_seconds()
    return max(0, math.ceil(seconds / 60))


def overtime_charge(actual_minutes: int, estimated_minutes: Optional[int], base_price) -> Decimal:
    """One surcharge per started overtime block, each a share of the base price."""
    if not estimated_minutes or actual_minutes <= estimated_minutes:
        return money(0)
    overtime = actual_minutes - estimated_minutes
    blocks = math.ceil(overtime / settings.OVERTIME_BLOCK_MINUTES)
    return money(blocks * percent_of(base_price, settings.OVERTIME_BLOCK_PERCENT))


@dataclass(frozen=True)
class InvoiceAmounts:
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal


def invoice_amounts(subtotal) -> InvoiceAmounts:
    subtotal = money(subtotal)
    tax = percent_of(subtotal, settings.GST_PERCENT)
    return InvoiceAmounts(subtotal=subtotal, tax_amount=tax, total_amount=subtotal + tax)


def refund_percent(hours_until_service: float) -> float:
    if hours_until_service > settings.REFUND_FULL_WINDOW_HOURS:
        return settings.REFUND_EARLY_PERCENT
    if hours_until_service >= settings.REFUND_PARTIAL_WINDOW_HOURS:
        return settings.REFUND_LATE_PERCENT
    return 0.0


def refund_amount(total_amount, hours_until_service: float) -> Decimal:
    return percent_of(total_amount, refund_percent(hours_until_service))
