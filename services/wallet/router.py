"""
services/wallet/router.py
Wallet balance, transaction history, top-ups and withdrawal requests.
Admins process withdrawals: APPROVED → COMPLETED pays out the locked funds,
REJECTED releases them.
"""

import logging
import math
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.wallet.ledger import WalletLedger
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import (
    NotificationType,
    TransactionType,
    User,
    WithdrawalRequest,
    WithdrawalStatus,
)
from shared.notifier import Notice, Notifier, emit_side_effects, get_notifier, stringify
from shared.schemas.schemas import (
    TopUpRequest,
    TransactionListResponse,
    TransactionResponse,
    WalletBalanceResponse,
    WithdrawalCreateRequest,
    WithdrawalProcessRequest,
    WithdrawalResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet", tags=["Wallet"])


def _balance_response(wallet) -> WalletBalanceResponse:
    return WalletBalanceResponse(
        balance=wallet.balance,
        locked_balance=wallet.locked_balance,
        available_balance=wallet.available_balance,
    )


# ── Balance & History ─────────────────────────────────────────

@router.get("/balance", response_model=WalletBalanceResponse)
async def get_balance(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Current balance. The wallet is created empty on first access."""
    balance = await WalletLedger(db).get_balance(current_user.id)
    await db.commit()
    return _balance_response(balance)


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    type: Optional[TransactionType] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    items, total = await WalletLedger(db).list_transactions(
        current_user.id, page=page, page_size=page_size, type=type
    )
    return TransactionListResponse(
        items=[TransactionResponse.model_validate(t) for t in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )


# ── Top-up ────────────────────────────────────────────────────

@router.post("/topup", response_model=WalletBalanceResponse)
async def top_up(
    data: TopUpRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Credit funds already captured by the payment gateway under `reference`."""
    ledger = WalletLedger(db)
    tx = await ledger.credit(
        current_user.id,
        data.amount,
        "Wallet top-up",
        type=TransactionType.WALLET_TOPUP,
        reference=data.reference,
    )
    await db.commit()
    logger.info(f"Wallet top-up of ₹{tx.amount} for {current_user.id} ({data.reference})")

    await emit_side_effects(notifier, [
        Notice(
            current_user.id,
            NotificationType.WALLET_CREDITED,
            "Wallet topped up",
            f"₹{tx.amount} has been added to your wallet.",
            stringify({"amount": tx.amount, "balance": tx.balance_after}),
        )
    ])
    return _balance_response(await ledger.get_balance(current_user.id))


# ── Withdrawals ───────────────────────────────────────────────

@router.post("/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED)
async def request_withdrawal(
    data: WithdrawalCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Lock the requested amount until an admin processes the request."""
    request = await WalletLedger(db).request_withdrawal(current_user.id, data.amount)
    await db.commit()
    return WithdrawalResponse.model_validate(request)


@router.get("/withdrawals", response_model=List[WithdrawalResponse])
async def list_withdrawals(
    status_filter: Optional[WithdrawalStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Withdrawal queue, oldest first."""
    query = select(WithdrawalRequest).order_by(WithdrawalRequest.created_at)
    if status_filter:
        query = query.where(WithdrawalRequest.status == status_filter)
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return [WithdrawalResponse.model_validate(w) for w in result.scalars()]


@router.post("/withdrawals/{request_id}/process", response_model=WithdrawalResponse)
async def process_withdrawal(
    request_id: UUID,
    data: WithdrawalProcessRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    request = await WalletLedger(db).process_withdrawal(
        request_id,
        processed_by=current_user.id,
        status=WithdrawalStatus(data.status),
        notes=data.notes,
    )
    await db.commit()

    await emit_side_effects(notifier, [
        Notice(
            request.user_id,
            NotificationType.WITHDRAWAL_UPDATED,
            "Withdrawal update",
            f"Your withdrawal of ₹{request.amount} is now {request.status.value}.",
            stringify({"withdrawal_id": request.id, "status": request.status.value}),
        )
    ])
    return WithdrawalResponse.model_validate(request)
