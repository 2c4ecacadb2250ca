"""
Wallet API Endpoints.

Balance, history, top-ups and provider withdrawal requests. All balance
changes go through the Wallet Ledger.
"""

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.app.db.session import get_db
from consultpay.app.core.dependencies import get_current_user, account_ref
from consultpay.app.core.guards import require_role
from consultpay.app.domain.billing.wallet_ledger import WalletLedger
from consultpay.app.models.enums import UserRole
from consultpay.app.schemas.wallet import (
    WalletBalanceResponse,
    WalletAmountRequest,
    TopUpRequest,
    WalletTransactionResponse,
)
from consultpay.app.services.audit import log_event, AuditAction
from consultpay.app.services.events import event_bus

router = APIRouter(prefix="/wallet", tags=["Wallet"])


@router.get("/balance", response_model=WalletBalanceResponse)
async def get_balance(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    ref = account_ref(current_user)
    balance = await WalletLedger.get_balance(db, ref)
    return WalletBalanceResponse(owner_id=ref.id, owner_kind=ref.kind, balance=balance)


@router.get("/transactions", response_model=List[WalletTransactionResponse])
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Ledger entries for the caller, most recent first."""
    return await WalletLedger.list_transactions(db, account_ref(current_user), limit=limit, offset=offset)


@router.post("/top-up", response_model=WalletTransactionResponse, status_code=201)
async def top_up(
    request: TopUpRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Credit the caller's wallet once the payment gateway confirmed the charge.
    Repeating the same idempotency key returns the original entry.
    """
    ref = account_ref(current_user)
    txn = await WalletLedger.credit(db, ref, request.amount, f"topup:{ref}:{request.idempotency_key}")
    await log_event(
        db,
        AuditAction.WALLET_TOPPED_UP,
        actor_id=ref.id,
        actor_username=current_user.get("sub"),
        transaction_id=txn.id,
        metadata={"owner": str(ref), "amount": request.amount},
    )
    await db.commit()
    await event_bus.dispatch_pending(db)
    return txn


@router.post("/withdraw", response_model=WalletTransactionResponse, status_code=201)
async def withdraw(
    request: WalletAmountRequest,
    current_user: dict = Depends(require_role([UserRole.PROVIDER])),
    db: AsyncSession = Depends(get_db)
):
    """
    Provider payout request. The amount is held from the wallet at once and
    the entry stays pending until an admin approves or rejects it. Fails with
    400 below the minimum and 402 when the balance is short.
    """
    ref = account_ref(current_user)
    txn = await WalletLedger.withdraw(db, ref, request.amount, f"withdraw:{ref}:{request.idempotency_key}")
    await log_event(
        db,
        AuditAction.WALLET_WITHDRAWAL,
        actor_id=ref.id,
        actor_username=current_user.get("sub"),
        transaction_id=txn.id,
        metadata={"amount": request.amount},
    )
    await db.commit()
    await event_bus.dispatch_pending(db)
    return txn
