"""
Admin Billing API Endpoints.

Operator corrections (reversals, forced termination) and the withdrawal
review queue.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Body, Query
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.app.db.session import get_db
from consultpay.app.core.guards import require_role
from consultpay.app.domain.billing.wallet_ledger import WalletLedger
from consultpay.app.domain.consultation.state_machine import ConsultationService
from consultpay.app.models.billing_enums import TransactionStatus
from consultpay.app.models.enums import UserRole
from consultpay.app.schemas.admin import ReverseTransactionRequest, TerminateConsultationRequest
from consultpay.app.schemas.consultation import ConsultationResponse
from consultpay.app.schemas.wallet import RejectWithdrawalRequest, WalletTransactionResponse
from consultpay.app.services.events import event_bus

router = APIRouter(prefix="/admin", tags=["Admin - Billing"])


@router.post("/transactions/{transaction_id}/reverse", response_model=WalletTransactionResponse)
async def reverse_transaction(
    transaction_id: int = Path(..., description="Transaction ID"),
    request: ReverseTransactionRequest = Body(...),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Append the inverse of a completed transaction. The original is marked
    CANCELLED; nothing is deleted. Reversing twice returns the first reversal.
    """
    reversal = await WalletLedger.reverse(
        db,
        transaction_id,
        request.reason,
        actor_id=current_user["account_id"],
        actor_username=current_user.get("sub"),
    )
    await db.commit()
    await event_bus.dispatch_pending(db)
    return reversal


@router.post("/consultations/{consultation_id}/terminate", response_model=ConsultationResponse)
async def terminate_consultation(
    consultation_id: int = Path(..., description="Consultation ID"),
    request: TerminateConsultationRequest = Body(...),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Close a pending or ongoing consultation as CANCELLED or MISSED with zero charge."""
    consultation = await ConsultationService.admin_terminate(
        db,
        consultation_id,
        request.status,
        admin_id=current_user["account_id"],
        admin_username=current_user.get("sub"),
        note=request.note,
    )
    await event_bus.dispatch_pending(db)
    return consultation


@router.get("/withdrawals", response_model=List[WalletTransactionResponse])
async def list_withdrawals(
    status: Optional[TransactionStatus] = Query(TransactionStatus.PENDING),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Withdrawal review queue, oldest first."""
    return await WalletLedger.list_withdrawals(db, status=status, limit=limit, offset=offset)


@router.post("/withdrawals/{transaction_id}/approve", response_model=WalletTransactionResponse)
async def approve_withdrawal(
    transaction_id: int = Path(..., description="Withdrawal transaction ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Confirm the payout of a pending withdrawal."""
    txn = await WalletLedger.approve_withdrawal(
        db,
        transaction_id,
        actor_id=current_user["account_id"],
        actor_username=current_user.get("sub"),
    )
    await db.commit()
    return txn


@router.post("/withdrawals/{transaction_id}/reject", response_model=WalletTransactionResponse)
async def reject_withdrawal(
    transaction_id: int = Path(..., description="Withdrawal transaction ID"),
    request: RejectWithdrawalRequest = Body(...),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Return the held funds to the provider. Responds with the refund entry."""
    refund = await WalletLedger.reject_withdrawal(
        db,
        transaction_id,
        request.reason,
        actor_id=current_user["account_id"],
        actor_username=current_user.get("sub"),
    )
    await db.commit()
    await event_bus.dispatch_pending(db)
    return refund
