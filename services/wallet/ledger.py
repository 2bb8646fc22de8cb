"""
services/wallet/ledger.py
Wallet ledger: credit, debit, lock and unlock.

Every operation is one conditional UPDATE on the wallet row plus one
Transaction row, flushed in the caller's transaction. The caller commits,
so a settlement that credits several wallets lands all or nothing.
The WHERE clause carries the balance check, which keeps
locked_balance <= balance and available >= 0 under concurrent writers.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.settlement.pricing import money
from shared.exceptions import InsufficientFunds, InvalidState, NotFound, ValidationFailure
from shared.models.models import (
    Transaction,
    TransactionCategory,
    TransactionType,
    Wallet,
    WithdrawalRequest,
    WithdrawalStatus,
)
from shared.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletBalance:
    balance: Decimal
    locked_balance: Decimal

    @property
    def available_balance(self) -> Decimal:
        return self.balance - self.locked_balance


class WalletLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Reads ─────────────────────────────────────────────────

    async def get_or_create(self, user_id: UUID) -> Wallet:
        result = await self.db.execute(
            select(Wallet)
            .where(Wallet.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if wallet:
            return wallet

        # wallets.user_id is unique: a concurrent create fails this flush
        wallet = Wallet(user_id=user_id, balance=Decimal("0"), locked_balance=Decimal("0"))
        self.db.add(wallet)
        await self.db.flush()
        return wallet

    async def get_balance(self, user_id: UUID) -> WalletBalance:
        wallet = await self.get_or_create(user_id)
        return WalletBalance(money(wallet.balance), money(wallet.locked_balance))

    async def list_transactions(
        self, user_id: UUID, page: int = 1, page_size: int = 20, type: Optional[TransactionType] = None
    ) -> Tuple[List[Transaction], int]:
        query = select(Transaction).where(Transaction.user_id == user_id)
        if type:
            query = query.where(Transaction.type == type)
        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(Transaction.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars()), total or 0

    # ── Postings ──────────────────────────────────────────────

    async def credit(
        self,
        user_id: UUID,
        amount,
        description: str,
        type: TransactionType = TransactionType.WALLET_TOPUP,
        booking_id: Optional[UUID] = None,
        reference: Optional[str] = None,
    ) -> Transaction:
        amount = self._positive(amount)
        await self.get_or_create(user_id)
        row = await self._apply(
            user_id,
            values={"balance": Wallet.balance + amount},
        )
        balance_after = money(row.balance)
        return await self._record(
            user_id, type, TransactionCategory.CREDIT, amount, description,
            balance_before=balance_after - amount, balance_after=balance_after,
            booking_id=booking_id, reference=reference,
        )

    async def debit(
        self,
        user_id: UUID,
        amount,
        description: str,
        type: TransactionType = TransactionType.BOOKING_PAYMENT,
        booking_id: Optional[UUID] = None,
        reference: Optional[str] = None,
    ) -> Transaction:
        amount = self._positive(amount)
        await self.get_or_create(user_id)
        row = await self._apply(
            user_id,
            values={"balance": Wallet.balance - amount},
            condition=(Wallet.balance - Wallet.locked_balance) >= amount,
        )
        if row is None:
            await self._insufficient(user_id, amount)
        balance_after = money(row.balance)
        return await self._record(
            user_id, type, TransactionCategory.DEBIT, amount, description,
            balance_before=balance_after + amount, balance_after=balance_after,
            booking_id=booking_id, reference=reference,
        )

    async def lock(
        self, user_id: UUID, amount, description: str, reference: Optional[str] = None
    ) -> Transaction:
        """Move available funds into locked_balance. The total balance is unchanged."""
        amount = self._positive(amount)
        await self.get_or_create(user_id)
        row = await self._apply(
            user_id,
            values={"locked_balance": Wallet.locked_balance + amount},
            condition=(Wallet.balance - Wallet.locked_balance) >= amount,
        )
        if row is None:
            await self._insufficient(user_id, amount)
        balance = money(row.balance)
        return await self._record(
            user_id, TransactionType.PAYOUT, TransactionCategory.LOCK, amount, description,
            balance_before=balance, balance_after=balance, reference=reference,
        )

    async def unlock(
        self, user_id: UUID, amount, description: str, reference: Optional[str] = None
    ) -> Transaction:
        amount = self._positive(amount)
        await self.get_or_create(user_id)
        row = await self._apply(
            user_id,
            values={"locked_balance": Wallet.locked_balance - amount},
            condition=Wallet.locked_balance >= amount,
        )
        if row is None:
            raise ValidationFailure("Cannot unlock more than the locked balance", requested=str(amount))
        balance = money(row.balance)
        return await self._record(
            user_id, TransactionType.PAYOUT, TransactionCategory.UNLOCK, amount, description,
            balance_before=balance, balance_after=balance, reference=reference,
        )

    async def debit_locked(
        self, user_id: UUID, amount, description: str, reference: Optional[str] = None
    ) -> Transaction:
        """Pay out funds that were locked earlier: balance and locked_balance both drop."""
        amount = self._positive(amount)
        await self.get_or_create(user_id)
        row = await self._apply(
            user_id,
            values={
                "balance": Wallet.balance - amount,
                "locked_balance": Wallet.locked_balance - amount,
            },
            condition=Wallet.locked_balance >= amount,
        )
        if row is None:
            raise ValidationFailure("Locked balance does not cover the payout", requested=str(amount))
        balance_after = money(row.balance)
        return await self._record(
            user_id, TransactionType.PAYOUT, TransactionCategory.DEBIT, amount, description,
            balance_before=balance_after + amount, balance_after=balance_after, reference=reference,
        )

    # ── Withdrawals ───────────────────────────────────────────

    async def request_withdrawal(self, user_id: UUID, amount) -> WithdrawalRequest:
        amount = self._positive(amount)
        request = WithdrawalRequest(user_id=user_id, amount=amount, status=WithdrawalStatus.PENDING)
        self.db.add(request)
        await self.db.flush()
        await self.lock(
            user_id, amount, f"Withdrawal request of ₹{amount} (pending)", reference=str(request.id)
        )
        logger.info(f"Withdrawal {request.id} of ₹{amount} requested by {user_id}")
        return request

    async def process_withdrawal(
        self,
        request_id: UUID,
        processed_by: UUID,
        status: WithdrawalStatus,
        notes: Optional[str] = None,
    ) -> WithdrawalRequest:
        request = await self.db.get(WithdrawalRequest, request_id, populate_existing=True)
        if not request:
            raise NotFound("Withdrawal request not found")

        if request.status in (WithdrawalStatus.REJECTED, WithdrawalStatus.COMPLETED):
            raise InvalidState("Withdrawal request is already closed", current_status=request.status.value)
        if request.status == WithdrawalStatus.APPROVED and status != WithdrawalStatus.COMPLETED:
            raise InvalidState("Approved requests can only be completed", current_status=request.status.value)
        if request.status == WithdrawalStatus.PENDING and status == WithdrawalStatus.COMPLETED:
            raise InvalidState("Request must be approved before completion", current_status=request.status.value)
        if status == WithdrawalStatus.PENDING:
            raise ValidationFailure("Withdrawal cannot be moved back to PENDING")

        if status == WithdrawalStatus.REJECTED:
            await self.unlock(
                request.user_id, request.amount, "Withdrawal rejected, funds released",
                reference=str(request.id),
            )
        elif status == WithdrawalStatus.COMPLETED:
            await self.debit_locked(
                request.user_id, request.amount, "Withdrawal paid out", reference=str(request.id)
            )

        request.status = status
        request.processed_by = processed_by
        request.processed_at = utcnow()
        request.notes = notes
        await self.db.flush()
        logger.info(f"Withdrawal {request.id} moved to {status.value} by {processed_by}")
        return request

    # ── Internals ─────────────────────────────────────────────

    @staticmethod
    def _positive(amount) -> Decimal:
        value = money(amount)
        if value <= 0:
            raise ValidationFailure("Amount must be greater than zero", amount=str(value))
        return value

    async def _apply(self, user_id: UUID, values: dict, condition=None):
        stmt = update(Wallet).where(Wallet.user_id == user_id)
        if condition is not None:
            stmt = stmt.where(condition)
        stmt = (
            stmt.values(**values, updated_at=utcnow())
            .returning(Wallet.balance, Wallet.locked_balance)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.one_or_none()

    async def _insufficient(self, user_id: UUID, requested: Decimal):
        wallet = await self.get_or_create(user_id)
        raise InsufficientFunds(
            available_balance=str(money(wallet.available_balance)),
            requested=str(requested),
        )

    async def _record(
        self,
        user_id: UUID,
        type: TransactionType,
        category: TransactionCategory,
        amount: Decimal,
        description: str,
        balance_before: Decimal,
        balance_after: Decimal,
        booking_id: Optional[UUID] = None,
        reference: Optional[str] = None,
    ) -> Transaction:
        tx = Transaction(
            user_id=user_id,
            type=type,
            category=category,
            amount=amount,
            description=description,
            balance_before=balance_before,
            balance_after=balance_after,
            booking_id=booking_id,
            reference=reference,
        )
        self.db.add(tx)
        await self.db.flush()
        return tx
