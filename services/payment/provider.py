"""
services/payment/provider.py
Refund gateway used by booking cancellation.
Razorpay calls are synchronous, so they run in a worker thread behind a
circuit breaker, with a short exponential retry for transient failures.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol
from uuid import UUID

from pybreaker import CircuitBreaker, CircuitBreakerError
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings
from shared.exceptions import RefundFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    amount: Decimal
    status: str


class PaymentProvider(Protocol):
    async def refund(
        self,
        booking_id: UUID,
        amount: Decimal,
        reason: str,
        payment_reference: Optional[str] = None,
    ) -> RefundResult:
        ...


razorpay_breaker = CircuitBreaker(
    fail_max=settings.RAZORPAY_FAIL_MAX,
    reset_timeout=settings.RAZORPAY_RESET_TIMEOUT,
    name="razorpay",
)


class RazorpayPaymentProvider:
    def __init__(self, client=None, breaker: CircuitBreaker = razorpay_breaker):
        self._client = client
        self.breaker = breaker

    @property
    def client(self):
        if self._client is None:
            import razorpay
            self._client = razorpay.Client(
                auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)
            )
        return self._client

    async def refund(
        self,
        booking_id: UUID,
        amount: Decimal,
        reason: str,
        payment_reference: Optional[str] = None,
    ) -> RefundResult:
        if not payment_reference:
            raise RefundFailed("No gateway payment on record for this booking", booking_id=str(booking_id))

        amount_paise = int(Decimal(str(amount)) * 100)
        payload = {
            "amount": amount_paise,
            "notes": {"booking_id": str(booking_id), "reason": reason[:250]},
        }

        try:
            refund = await self._call_gateway(payment_reference, payload)
        except CircuitBreakerError:
            logger.error(f"Razorpay circuit open, refund for booking {booking_id} not attempted")
            raise RefundFailed("Payment gateway temporarily unavailable", booking_id=str(booking_id))
        except Exception as e:
            logger.error(f"Refund for booking {booking_id} failed: {e}")
            raise RefundFailed(f"Refund failed: {e}", booking_id=str(booking_id))

        logger.info(f"Refund {refund.get('id')} of ₹{amount} issued for booking {booking_id}")
        return RefundResult(
            refund_id=refund.get("id", ""),
            amount=Decimal(refund.get("amount", amount_paise)) / 100,
            status=refund.get("status", "processed"),
        )

    @retry(
        retry=retry_if_not_exception_type(CircuitBreakerError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    async def _call_gateway(self, payment_id: str, payload: dict) -> dict:
        return await asyncio.to_thread(
            self.breaker.call, self.client.payment.refund, payment_id, payload
        )


def get_payment_provider() -> PaymentProvider:
    """FastAPI dependency: the Razorpay-backed provider."""
    return RazorpayPaymentProvider()
