"""
Wallet API Schema Definitions.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional
from consultpay.app.core.config import settings
from consultpay.app.models.billing_enums import TransactionType, TransactionStatus
from consultpay.app.models.enums import OwnerKind


class WalletBalanceResponse(BaseModel):
    owner_id: int
    owner_kind: OwnerKind
    balance: Decimal


class WalletAmountRequest(BaseModel):
    """Withdrawal request. The key makes client retries safe."""
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    idempotency_key: str = Field(..., min_length=8, max_length=100)


class TopUpRequest(WalletAmountRequest):
    """Top-up request, capped per charge."""
    amount: Decimal = Field(..., gt=0, le=settings.max_topup_amount, max_digits=12, decimal_places=2)


class RejectWithdrawalRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=200, description="Reason shown to the provider")


class WalletTransactionResponse(BaseModel):
    """Schema for displaying a ledger entry."""
    id: int
    owner_id: int
    owner_kind: OwnerKind
    type: TransactionType
    status: TransactionStatus
    amount: Decimal
    balance_after: Decimal
    consultation_id: Optional[int] = None
    reversal_of_id: Optional[int] = None
    description: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
