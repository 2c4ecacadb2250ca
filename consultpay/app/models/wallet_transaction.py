"""
Wallet Transaction database model.

Immutable ledger entries. Corrections are appended as reversal entries.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, Numeric, JSON, Index
from consultpay.app.db.session import Base
from consultpay.app.core.clock import utcnow
from consultpay.app.models.enums import OwnerKind
from consultpay.app.models.billing_enums import TransactionType, TransactionStatus


class WalletTransaction(Base):
    """
    Wallet transaction model.

    `amount` is the signed delta applied to the owner's wallet (negative for
    payments, debits and withdrawals). `balance_after` is the wallet balance
    right after the entry was applied. `idempotency_key` is unique: it is the
    database-level guard against applying the same settlement twice.

    The only field ever updated after insert is `status`: COMPLETED -> CANCELLED
    when a reversal entry is appended, and PENDING -> COMPLETED or CANCELLED
    when a withdrawal is reviewed.
    """
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        Index("ix_wallet_transactions_owner", "owner_kind", "owner_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Owner
    owner_id = Column(Integer, nullable=False)
    owner_kind = Column(Enum(OwnerKind), default=OwnerKind.USER, nullable=False)

    type = Column(Enum(TransactionType), nullable=False, index=True)
    status = Column(Enum(TransactionStatus), default=TransactionStatus.COMPLETED, nullable=False, index=True)

    # Financials
    amount = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)

    # Linkage
    consultation_id = Column(Integer, nullable=True, index=True)
    reversal_of_id = Column(Integer, ForeignKey("wallet_transactions.id"), nullable=True)
    idempotency_key = Column(String(120), unique=True, nullable=False)

    description = Column(String(255), nullable=True)
    meta_data = Column(JSON, nullable=True)

    # Timestamps (Immutable - no updated_at)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<WalletTransaction(id={self.id}, type='{self.type.value}', amount={self.amount})>"
