"""
Reconciliation Sweep.

Periodic detection and audited repair of consultations and wallets the
state machine left inconsistent (crashes, dropped events, partitions).

Repairs (each goes through the state machine and writes an audit row):
- PENDING, or ONGOING without a billing start, past the accept timeout -> NO_ANSWER
- ONGOING past the stuck threshold with no recent heartbeat from either party
  -> COMPLETED (`stuck_call`), billed up to now

Detections (operator incidents, never auto-fixed):
- Billable terminal consultation without a client payment
- Client payment on a consultation with no recorded charge
- Provider earning without a client payment (ghost earning)
- Transaction for an unknown consultation
- Wallet balance that differs from its posted history
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, and_, or_, exists, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from consultpay.app.core.clock import utcnow
from consultpay.app.core.config import settings
from consultpay.app.domain.consultation.state_machine import ConsultationService
from consultpay.app.models.billing_enums import IncidentKind, TransactionType, POSTED_STATUSES
from consultpay.app.models.consultation import Consultation
from consultpay.app.models.consultation_enums import ConsultationStatus, EndReason, TERMINAL_STATUSES
from consultpay.app.models.wallet_transaction import WalletTransaction
from consultpay.app.domain.billing.wallet_ledger import WalletLedger
from consultpay.app.services.audit import AuditAction
from consultpay.app.services.incidents import IncidentService

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    started_at: datetime
    expired_pending: List[int] = field(default_factory=list)
    closed_stuck: List[int] = field(default_factory=list)
    integrity_violations: List[int] = field(default_factory=list)
    unbilled_payments: List[int] = field(default_factory=list)
    ghost_earnings: List[int] = field(default_factory=list)
    orphan_transactions: List[int] = field(default_factory=list)
    drifting_wallets: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def repairs(self) -> int:
        return len(self.expired_pending) + len(self.closed_stuck)

    @property
    def detections(self) -> int:
        return (
            len(self.integrity_violations)
            + len(self.unbilled_payments)
            + len(self.ghost_earnings)
            + len(self.orphan_transactions)
            + len(self.drifting_wallets)
        )


def _payment_exists():
    return exists().where(
        WalletTransaction.consultation_id == Consultation.id,
        WalletTransaction.type == TransactionType.PAYMENT,
        WalletTransaction.status.in_(POSTED_STATUSES),
    )


async def _expire_stale_pending(db: AsyncSession, now: datetime, report: ReconciliationReport) -> None:
    cutoff = now - timedelta(minutes=settings.pending_accept_timeout_minutes)
    result = await db.execute(
        select(Consultation.id).where(
            Consultation.created_at < cutoff,
            or_(
                Consultation.status == ConsultationStatus.PENDING,
                and_(
                    Consultation.status == ConsultationStatus.ONGOING,
                    Consultation.billing_started_at.is_(None),
                ),
            ),
        )
    )
    for consultation_id in result.scalars().all():
        try:
            consultation = await ConsultationService.expire_pending(
                db, consultation_id, now, audit_action=AuditAction.RECONCILIATION_NO_ANSWER
            )
        except Exception as e:
            await db.rollback()
            logger.exception("Failed to expire consultation %s", consultation_id)
            report.errors.append(f"expire:{consultation_id}: {e}")
            continue
        if consultation.status == ConsultationStatus.NO_ANSWER:
            report.expired_pending.append(consultation_id)


async def _close_stuck_calls(db: AsyncSession, now: datetime, report: ReconciliationReport) -> None:
    stuck_before = now - timedelta(minutes=settings.stuck_call_threshold_minutes)
    heartbeat_cutoff = now - timedelta(seconds=2 * settings.balance_check_interval_seconds)
    # The balance monitor stamps last_balance_check_at on every ongoing call,
    # so only party heartbeats count as liveness here.
    last_seen = func.coalesce(Consultation.last_heartbeat_at, Consultation.billing_started_at)
    result = await db.execute(
        select(Consultation.id).where(
            Consultation.status == ConsultationStatus.ONGOING,
            Consultation.billing_started_at.is_not(None),
            Consultation.billing_started_at < stuck_before,
            last_seen < heartbeat_cutoff,
        )
    )
    for consultation_id in result.scalars().all():
        try:
            consultation = await ConsultationService.terminate(
                db,
                consultation_id,
                EndReason.STUCK_CALL,
                now,
                audit_action=AuditAction.RECONCILIATION_STUCK_CALL_CLOSED,
            )
        except Exception as e:
            await db.rollback()
            logger.exception("Failed to close stuck consultation %s", consultation_id)
            report.errors.append(f"stuck:{consultation_id}: {e}")
            continue
        if consultation.is_terminal:
            report.closed_stuck.append(consultation_id)


async def _detect_missing_payments(db: AsyncSession, report: ReconciliationReport) -> None:
    result = await db.execute(
        select(Consultation.id, Consultation.total_amount).where(
            Consultation.status.in_(TERMINAL_STATUSES),
            Consultation.total_amount > 0,
            ~_payment_exists(),
        )
    )
    for consultation_id, total in result.all():
        await IncidentService.raise_incident(
            db,
            IncidentKind.INTEGRITY_VIOLATION,
            f"consultation:{consultation_id}",
            f"Consultation {consultation_id} was charged {total} but has no client payment",
            consultation_id=consultation_id,
            details={"total_amount": total},
        )
        report.integrity_violations.append(consultation_id)

    result = await db.execute(
        select(Consultation.id).where(
            Consultation.status.in_(TERMINAL_STATUSES),
            or_(Consultation.total_amount.is_(None), Consultation.total_amount == 0),
            _payment_exists(),
        )
    )
    for consultation_id in result.scalars().all():
        await IncidentService.raise_incident(
            db,
            IncidentKind.INTEGRITY_VIOLATION,
            f"consultation:{consultation_id}:unbilled",
            f"Consultation {consultation_id} has a client payment but no recorded charge",
            consultation_id=consultation_id,
        )
        report.unbilled_payments.append(consultation_id)


async def _detect_ghost_earnings(db: AsyncSession, report: ReconciliationReport) -> None:
    payment = aliased(WalletTransaction)
    result = await db.execute(
        select(WalletTransaction.id, WalletTransaction.consultation_id, WalletTransaction.amount).where(
            WalletTransaction.type == TransactionType.EARNING,
            WalletTransaction.consultation_id.is_not(None),
            ~exists().where(
                payment.consultation_id == WalletTransaction.consultation_id,
                payment.type == TransactionType.PAYMENT,
            ),
        )
    )
    for transaction_id, consultation_id, amount in result.all():
        await IncidentService.raise_incident(
            db,
            IncidentKind.GHOST_EARNING,
            f"transaction:{transaction_id}",
            f"Provider earning {transaction_id} ({amount}) has no client payment for consultation {consultation_id}",
            consultation_id=consultation_id,
            details={"transaction_id": transaction_id, "amount": amount},
        )
        report.ghost_earnings.append(transaction_id)


async def _detect_orphans(db: AsyncSession, report: ReconciliationReport) -> None:
    result = await db.execute(
        select(WalletTransaction.id, WalletTransaction.consultation_id).where(
            WalletTransaction.consultation_id.is_not(None),
            ~exists().where(Consultation.id == WalletTransaction.consultation_id),
        )
    )
    for transaction_id, consultation_id in result.all():
        await IncidentService.raise_incident(
            db,
            IncidentKind.ORPHAN_TRANSACTION,
            f"transaction:{transaction_id}",
            f"Transaction {transaction_id} references unknown consultation {consultation_id}",
            details={"transaction_id": transaction_id, "consultation_id": consultation_id},
        )
        report.orphan_transactions.append(transaction_id)


async def _detect_drift(db: AsyncSession, report: ReconciliationReport) -> None:
    for ref, balance, ledger in await WalletLedger.find_drifting_wallets(db):
        await IncidentService.raise_incident(
            db,
            IncidentKind.LEDGER_DRIFT,
            f"wallet:{ref}",
            f"Wallet {ref} balance {balance} differs from ledger total {ledger}",
            details={"balance": balance, "ledger": ledger, "drift": balance - ledger},
        )
        report.drifting_wallets.append(str(ref))


async def run_reconciliation(db: AsyncSession, now: Optional[datetime] = None) -> ReconciliationReport:
    """
    Run one full sweep.

    Repairs commit one consultation at a time; a failure on one
    consultation is logged and the sweep moves on.
    """
    now = now or utcnow()
    report = ReconciliationReport(started_at=now)

    await _expire_stale_pending(db, now, report)
    await _close_stuck_calls(db, now, report)

    await _detect_missing_payments(db, report)
    await _detect_ghost_earnings(db, report)
    await _detect_orphans(db, report)
    await _detect_drift(db, report)
    await db.commit()

    if report.repairs or report.detections or report.errors:
        logger.warning(
            "Reconciliation: %s expired, %s stuck closed, %s detections, %s errors",
            len(report.expired_pending), len(report.closed_stuck), report.detections, len(report.errors),
        )
    else:
        logger.info("Reconciliation: nothing to repair")
    return report
