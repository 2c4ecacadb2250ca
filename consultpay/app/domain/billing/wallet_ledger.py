"""
Wallet Ledger (Domain Logic).

The only writer of wallet balances. Every balance change is a conditional
UPDATE on the owner row paired with an append-only WalletTransaction that
records the signed delta and the resulting balance.

Guarantees:
- Debits never take a wallet below zero (`UPDATE ... WHERE balance >= amount`).
- Each settlement is applied at most once per consultation
  (pre-check plus the unique idempotency key).
- History is never edited: a reversal (or a rejected withdrawal) appends the
  inverse entry and marks the original CANCELLED.
- Withdrawals hold their funds while PENDING, until an admin approves or
  rejects them.

Methods flush; the caller owns the transaction.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.app.core.config import settings
from consultpay.app.core.exceptions import (
    AlreadySettledError,
    InsufficientFundsError,
    IntegrityViolationError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from consultpay.app.domain.billing.calculator import round2, split_commission, ZERO
from consultpay.app.models.billing_enums import TransactionType, TransactionStatus, POSTED_STATUSES
from consultpay.app.models.enums import OwnerKind
from consultpay.app.models.guest import Guest
from consultpay.app.models.user import User
from consultpay.app.models.wallet_transaction import WalletTransaction
from consultpay.app.services.audit import log_event, AuditAction
from consultpay.app.services.events import EventName, record_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountRef:
    """Points at a wallet owner."""
    kind: OwnerKind
    id: int

    @property
    def model(self):
        return Guest if self.kind == OwnerKind.GUEST else User

    def __str__(self):
        return f"{self.kind.value}:{self.id}"


@dataclass
class SettlementResult:
    consultation_id: int
    amount: Decimal
    client_transaction: Optional[WalletTransaction] = None
    provider_transaction: Optional[WalletTransaction] = None

    @property
    def provider_share(self) -> Decimal:
        if self.provider_transaction is None:
            return ZERO
        return self.provider_transaction.amount

    @property
    def platform_share(self) -> Decimal:
        return self.amount - self.provider_share


def payment_key(consultation_id: int) -> str:
    return f"settle:{consultation_id}:payment"


def earning_key(consultation_id: int) -> str:
    return f"settle:{consultation_id}:earning"


def reversal_key(transaction_id: int) -> str:
    return f"reverse:{transaction_id}"


def compensation_key(consultation_id: int) -> str:
    return f"compensate:{consultation_id}"


def withdrawal_refund_key(transaction_id: int) -> str:
    return f"withdraw-reject:{transaction_id}"


class WalletLedger:

    # Balance primitives

    @staticmethod
    async def get_account(db: AsyncSession, ref: AccountRef):
        account = await db.get(ref.model, ref.id)
        if not account:
            raise ResourceNotFoundError("Wallet owner", str(ref))
        return account

    @staticmethod
    async def get_balance(db: AsyncSession, ref: AccountRef) -> Decimal:
        model = ref.model
        result = await db.execute(select(model.wallet_balance).where(model.id == ref.id))
        balance = result.scalar_one_or_none()
        if balance is None:
            raise ResourceNotFoundError("Wallet owner", str(ref))
        return round2(balance)

    @staticmethod
    async def _apply_delta(db: AsyncSession, ref: AccountRef, delta: Decimal) -> Optional[Decimal]:
        """
        Atomically add `delta` to the wallet.

        Negative deltas only apply while the balance covers them.

        Returns:
            New balance, or None if the row was not updated
        """
        model = ref.model
        stmt = (
            update(model)
            .where(model.id == ref.id)
            .values(wallet_balance=model.wallet_balance + delta)
            .returning(model.wallet_balance)
            .execution_options(synchronize_session=False)
        )
        if delta < 0:
            stmt = stmt.where(model.wallet_balance >= -delta)

        result = await db.execute(stmt)
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            return None

        # Keep an already-loaded owner in step with the row
        account = db.identity_map.get(db.identity_key(model, ref.id))
        if account is not None:
            await db.refresh(account, attribute_names=["wallet_balance"])
        return round2(new_balance)

    @staticmethod
    async def _debit(db: AsyncSession, ref: AccountRef, amount: Decimal) -> Decimal:
        new_balance = await WalletLedger._apply_delta(db, ref, -amount)
        if new_balance is None:
            available = await WalletLedger.get_balance(db, ref)
            raise InsufficientFundsError(required=amount, available=available)
        return new_balance

    @staticmethod
    async def _credit(db: AsyncSession, ref: AccountRef, amount: Decimal) -> Decimal:
        new_balance = await WalletLedger._apply_delta(db, ref, amount)
        if new_balance is None:
            raise ResourceNotFoundError("Wallet owner", str(ref))
        return new_balance

    @staticmethod
    async def _append(
        db: AsyncSession,
        ref: AccountRef,
        type: TransactionType,
        delta: Decimal,
        balance_after: Decimal,
        idempotency_key: str,
        consultation_id: Optional[int] = None,
        description: Optional[str] = None,
        reversal_of_id: Optional[int] = None,
        metadata: Optional[dict] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> WalletTransaction:
        txn = WalletTransaction(
            owner_id=ref.id,
            owner_kind=ref.kind,
            type=type,
            status=status,
            amount=delta,
            balance_after=balance_after,
            consultation_id=consultation_id,
            reversal_of_id=reversal_of_id,
            idempotency_key=idempotency_key,
            description=description,
            meta_data=metadata,
        )
        db.add(txn)
        await db.flush()

        event = EventName.WALLET_CREDITED if delta > 0 else EventName.WALLET_DEBITED
        await record_event(
            db,
            event,
            {
                "owner": str(ref),
                "transaction_id": txn.id,
                "type": type.value,
                "amount": abs(delta),
                "balance": balance_after,
            },
            consultation_id=consultation_id,
        )
        return txn

    @staticmethod
    async def find_by_key(db: AsyncSession, idempotency_key: str) -> Optional[WalletTransaction]:
        result = await db.execute(
            select(WalletTransaction).where(WalletTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    # Settlement

    @staticmethod
    async def find_settlement(db: AsyncSession, consultation_id: int) -> Optional[SettlementResult]:
        payment = await WalletLedger.find_by_key(db, payment_key(consultation_id))
        if payment is None:
            return None
        earning = await WalletLedger.find_by_key(db, earning_key(consultation_id))
        return SettlementResult(
            consultation_id=consultation_id,
            amount=-round2(payment.amount),
            client_transaction=payment,
            provider_transaction=earning,
        )

    @staticmethod
    async def settle(
        db: AsyncSession,
        consultation_id: int,
        client: AccountRef,
        provider: AccountRef,
        amount,
        commission_rate=None,
    ) -> SettlementResult:
        """
        Charge the client and pay the provider for one consultation.

        Flow:
        1. Idempotency check (existing client payment -> AlreadySettledError)
        2. Conditional debit of the client wallet
        3. Credit the provider with amount x (1 - commission)
        4. Append PAYMENT and EARNING entries

        Args:
            db: Database session (caller commits)
            consultation_id: Consultation being settled
            client: Paying wallet
            provider: Earning wallet
            amount: Total charge; 0 settles nothing
            commission_rate: Platform share, defaults to settings

        Raises:
            AlreadySettledError: carries the existing SettlementResult
            InsufficientFundsError: client balance below amount, nothing applied
            IntegrityViolationError: an earning exists without its payment
        """
        amount = round2(amount)
        if amount < 0:
            raise ValidationFailedError("Settlement amount cannot be negative", {"amount": str(amount)})
        if commission_rate is None:
            commission_rate = settings.platform_commission_rate

        existing = await WalletLedger.find_settlement(db, consultation_id)
        if existing is not None:
            raise AlreadySettledError(consultation_id, existing)

        ghost = await WalletLedger.find_by_key(db, earning_key(consultation_id))
        if ghost is not None:
            raise IntegrityViolationError(
                f"Consultation {consultation_id} has a provider earning but no client payment",
                {"consultation_id": consultation_id, "transaction_id": ghost.id},
            )

        if amount == 0:
            return SettlementResult(consultation_id=consultation_id, amount=ZERO)

        provider_share, platform_share = split_commission(amount, commission_rate)

        client_balance = await WalletLedger._debit(db, client, amount)
        payment = await WalletLedger._append(
            db,
            client,
            TransactionType.PAYMENT,
            -amount,
            client_balance,
            payment_key(consultation_id),
            consultation_id=consultation_id,
            description=f"Consultation {consultation_id}",
        )

        earning = None
        if provider_share > 0:
            provider_balance = await WalletLedger._credit(db, provider, provider_share)
            earning = await WalletLedger._append(
                db,
                provider,
                TransactionType.EARNING,
                provider_share,
                provider_balance,
                earning_key(consultation_id),
                consultation_id=consultation_id,
                description=f"Earning from consultation {consultation_id}",
                metadata={"gross": str(amount), "commission": str(platform_share)},
            )

        logger.info(
            "Settled consultation %s: client %s paid %s, provider %s earned %s, platform %s",
            consultation_id, client, amount, provider, provider_share, platform_share,
        )
        return SettlementResult(
            consultation_id=consultation_id,
            amount=amount,
            client_transaction=payment,
            provider_transaction=earning,
        )

    @staticmethod
    async def compensate_provider(
        db: AsyncSession,
        consultation_id: int,
        provider: AccountRef,
        amount,
        commission_rate=None,
    ) -> Optional[WalletTransaction]:
        """
        Pay the provider's share from platform funds when the client could not.

        Recorded as a CREDIT, not an EARNING, so it never looks like a
        consultation payment. Idempotent per consultation.
        """
        if commission_rate is None:
            commission_rate = settings.platform_commission_rate
        provider_share, _ = split_commission(amount, commission_rate)
        if provider_share <= 0:
            return None

        key = compensation_key(consultation_id)
        existing = await WalletLedger.find_by_key(db, key)
        if existing:
            return existing

        balance = await WalletLedger._credit(db, provider, provider_share)
        txn = await WalletLedger._append(
            db,
            provider,
            TransactionType.CREDIT,
            provider_share,
            balance,
            key,
            consultation_id=consultation_id,
            description=f"Platform compensation for consultation {consultation_id}",
            metadata={"policy": "platform_compensates", "uncollected": str(round2(amount))},
        )
        await log_event(
            db,
            AuditAction.PROVIDER_COMPENSATED,
            actor_username="system",
            consultation_id=consultation_id,
            transaction_id=txn.id,
            metadata={"amount": provider_share},
        )
        logger.warning("Provider %s compensated %s for consultation %s", provider, provider_share, consultation_id)
        return txn

    # Reversal

    @staticmethod
    async def reverse(
        db: AsyncSession,
        transaction_id: int,
        reason: str,
        actor_id: Optional[int] = None,
        actor_username: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Append the inverse of a completed transaction and cancel the original.

        Reversing the same transaction twice returns the first reversal.

        Raises:
            ResourceNotFoundError: unknown transaction
            ValidationFailedError: transaction is pending or is itself a reversal
            InsufficientFundsError: the wallet no longer holds the money to take back
        """
        original = await db.get(WalletTransaction, transaction_id)
        if not original:
            raise ResourceNotFoundError("Transaction", transaction_id)

        existing = await WalletLedger.find_by_key(db, reversal_key(transaction_id))
        if existing:
            return existing

        if original.reversal_of_id is not None:
            raise ValidationFailedError("A reversal entry cannot itself be reversed")
        if original.status != TransactionStatus.COMPLETED:
            raise ValidationFailedError(
                f"Only completed transactions can be reversed (status: {original.status.value})"
            )

        ref = AccountRef(original.owner_kind, original.owner_id)
        delta = -round2(original.amount)
        if delta > 0:
            balance = await WalletLedger._credit(db, ref, delta)
            txn_type = TransactionType.REFUND
        else:
            balance = await WalletLedger._debit(db, ref, -delta)
            txn_type = TransactionType.DEBIT

        reversal = await WalletLedger._append(
            db,
            ref,
            txn_type,
            delta,
            balance,
            reversal_key(transaction_id),
            consultation_id=original.consultation_id,
            description=f"Reversal of transaction {transaction_id}: {reason}",
            reversal_of_id=original.id,
            metadata={"reason": reason},
        )
        original.status = TransactionStatus.CANCELLED

        await log_event(
            db,
            AuditAction.TRANSACTION_REVERSED,
            actor_id=actor_id,
            actor_username=actor_username,
            consultation_id=original.consultation_id,
            transaction_id=original.id,
            metadata={"reversal_id": reversal.id, "amount": delta, "reason": reason},
        )
        await db.flush()

        logger.info("Reversed transaction %s with %s (%s)", transaction_id, reversal.id, reason)
        return reversal

    # Top-ups and payouts

    @staticmethod
    async def credit(
        db: AsyncSession,
        ref: AccountRef,
        amount,
        idempotency_key: str,
        description: Optional[str] = None,
    ) -> WalletTransaction:
        """Add money to a wallet (top-up). Idempotent on `idempotency_key`."""
        amount = round2(amount)
        if amount <= 0:
            raise ValidationFailedError("Credit amount must be positive", {"amount": str(amount)})

        existing = await WalletLedger.find_by_key(db, idempotency_key)
        if existing:
            return existing

        balance = await WalletLedger._credit(db, ref, amount)
        return await WalletLedger._append(
            db, ref, TransactionType.CREDIT, amount, balance, idempotency_key,
            description=description or "Wallet top-up",
        )

    @staticmethod
    async def withdraw(
        db: AsyncSession,
        ref: AccountRef,
        amount,
        idempotency_key: str,
    ) -> WalletTransaction:
        """
        Request a payout. The funds leave the wallet now and the entry stays
        PENDING until an admin approves or rejects it.

        Raises:
            ValidationFailedError: amount below `min_withdrawal_amount`
            InsufficientFundsError: balance below amount, nothing applied
        """
        amount = round2(amount)
        if amount <= 0:
            raise ValidationFailedError("Withdrawal amount must be positive", {"amount": str(amount)})

        existing = await WalletLedger.find_by_key(db, idempotency_key)
        if existing:
            return existing

        minimum = round2(settings.min_withdrawal_amount)
        if amount < minimum:
            raise ValidationFailedError(
                f"Minimum withdrawal amount is {minimum}", {"amount": str(amount), "minimum": str(minimum)}
            )

        balance = await WalletLedger._debit(db, ref, amount)
        txn = await WalletLedger._append(
            db, ref, TransactionType.WITHDRAWAL, -amount, balance, idempotency_key,
            description="Withdrawal",
            status=TransactionStatus.PENDING,
        )
        logger.info("Withdrawal %s of %s requested by %s", txn.id, amount, ref)
        return txn

    @staticmethod
    async def _get_withdrawal(db: AsyncSession, transaction_id: int) -> WalletTransaction:
        txn = await db.get(WalletTransaction, transaction_id, populate_existing=True)
        if not txn or txn.type != TransactionType.WITHDRAWAL:
            raise ResourceNotFoundError("Withdrawal", transaction_id)
        return txn

    @staticmethod
    async def _close_withdrawal(db: AsyncSession, txn: WalletTransaction, status: TransactionStatus) -> bool:
        """PENDING -> `status`, only for the first caller."""
        result = await db.execute(
            update(WalletTransaction)
            .where(WalletTransaction.id == txn.id, WalletTransaction.status == TransactionStatus.PENDING)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(txn)
        return result.rowcount == 1

    @staticmethod
    async def approve_withdrawal(
        db: AsyncSession,
        transaction_id: int,
        actor_id: Optional[int] = None,
        actor_username: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Mark a pending withdrawal as paid out. Approving twice is a no-op.

        Raises:
            ResourceNotFoundError: not a withdrawal
            ValidationFailedError: the withdrawal was rejected
        """
        txn = await WalletLedger._get_withdrawal(db, transaction_id)
        if txn.status == TransactionStatus.COMPLETED:
            return txn

        if not await WalletLedger._close_withdrawal(db, txn, TransactionStatus.COMPLETED):
            if txn.status == TransactionStatus.COMPLETED:
                return txn
            raise ValidationFailedError(
                f"Withdrawal {transaction_id} is {txn.status.value} and cannot be approved"
            )

        await log_event(
            db,
            AuditAction.WITHDRAWAL_APPROVED,
            actor_id=actor_id,
            actor_username=actor_username,
            transaction_id=txn.id,
            metadata={"owner": f"{txn.owner_kind.value}:{txn.owner_id}", "amount": -round2(txn.amount)},
        )
        logger.info("Withdrawal %s approved by %s", txn.id, actor_username)
        return txn

    @staticmethod
    async def reject_withdrawal(
        db: AsyncSession,
        transaction_id: int,
        reason: str,
        actor_id: Optional[int] = None,
        actor_username: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Return the held funds of a pending withdrawal.

        The withdrawal is marked CANCELLED and a REFUND entry is appended.
        Rejecting twice returns the first refund.

        Raises:
            ResourceNotFoundError: not a withdrawal
            ValidationFailedError: the withdrawal was already approved
        """
        txn = await WalletLedger._get_withdrawal(db, transaction_id)
        existing = await WalletLedger.find_by_key(db, withdrawal_refund_key(transaction_id))
        if existing:
            return existing

        if not await WalletLedger._close_withdrawal(db, txn, TransactionStatus.CANCELLED):
            raise ValidationFailedError(
                f"Withdrawal {transaction_id} is {txn.status.value} and cannot be rejected"
            )

        ref = AccountRef(txn.owner_kind, txn.owner_id)
        amount = -round2(txn.amount)
        balance = await WalletLedger._credit(db, ref, amount)
        refund = await WalletLedger._append(
            db,
            ref,
            TransactionType.REFUND,
            amount,
            balance,
            withdrawal_refund_key(transaction_id),
            description=f"Withdrawal {transaction_id} rejected: {reason}",
            reversal_of_id=txn.id,
            metadata={"reason": reason},
        )
        await log_event(
            db,
            AuditAction.WITHDRAWAL_REJECTED,
            actor_id=actor_id,
            actor_username=actor_username,
            transaction_id=txn.id,
            metadata={"refund_id": refund.id, "amount": amount, "reason": reason},
        )
        logger.info("Withdrawal %s rejected by %s (%s), refunded %s", txn.id, actor_username, reason, amount)
        return refund

    @staticmethod
    async def list_withdrawals(
        db: AsyncSession,
        status: Optional[TransactionStatus] = TransactionStatus.PENDING,
        limit: int = 50,
        offset: int = 0,
    ) -> List[WalletTransaction]:
        """Withdrawals for the review queue, oldest first."""
        query = select(WalletTransaction).where(WalletTransaction.type == TransactionType.WITHDRAWAL)
        if status is not None:
            query = query.where(WalletTransaction.status == status)
        result = await db.execute(
            query.order_by(WalletTransaction.created_at, WalletTransaction.id).offset(offset).limit(limit)
        )
        return result.scalars().all()

    @staticmethod
    async def list_transactions(
        db: AsyncSession,
        ref: AccountRef,
        limit: int = 50,
        offset: int = 0,
    ) -> List[WalletTransaction]:
        result = await db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.owner_kind == ref.kind, WalletTransaction.owner_id == ref.id)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return result.scalars().all()

    # Drift

    @staticmethod
    async def compute_ledger_balance(db: AsyncSession, ref: AccountRef) -> Decimal:
        """Sum of posted deltas for the owner."""
        result = await db.execute(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.owner_kind == ref.kind,
                WalletTransaction.owner_id == ref.id,
                WalletTransaction.status.in_(POSTED_STATUSES),
            )
        )
        return round2(result.scalar_one())

    @staticmethod
    async def find_drift(db: AsyncSession, ref: AccountRef) -> Optional[Decimal]:
        """balance - ledger sum, or None when they agree."""
        balance = await WalletLedger.get_balance(db, ref)
        ledger = await WalletLedger.compute_ledger_balance(db, ref)
        drift = balance - ledger
        return drift if drift != 0 else None

    @staticmethod
    async def find_drifting_wallets(db: AsyncSession) -> List[Tuple[AccountRef, Decimal, Decimal]]:
        """(owner, balance, ledger sum) for every wallet that disagrees with its history."""
        sums = {}
        result = await db.execute(
            select(
                WalletTransaction.owner_kind,
                WalletTransaction.owner_id,
                func.sum(WalletTransaction.amount),
            )
            .where(WalletTransaction.status.in_(POSTED_STATUSES))
            .group_by(WalletTransaction.owner_kind, WalletTransaction.owner_id)
        )
        for kind, owner_id, total in result.all():
            sums[AccountRef(kind, owner_id)] = round2(total)

        drifting = []
        for kind, model in ((OwnerKind.USER, User), (OwnerKind.GUEST, Guest)):
            rows = await db.execute(select(model.id, model.wallet_balance))
            for owner_id, balance in rows.all():
                ref = AccountRef(kind, owner_id)
                balance = round2(balance)
                ledger = sums.get(ref, ZERO)
                if balance != ledger:
                    drifting.append((ref, balance, ledger))
        return drifting
