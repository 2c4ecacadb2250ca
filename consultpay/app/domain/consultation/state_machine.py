"""
Consultation State Machine (Domain Logic).

Owns every lifecycle transition:

    PENDING -> ONGOING -> {COMPLETED | CANCELLED | NO_ANSWER | MISSED}

Terminal states are absorbing. Events arriving for a terminal consultation
are logged as rejected transitions and the current state is returned.

Every transition is a conditional UPDATE on the current status, so only one
writer can move a consultation out of a given state. Termination of an
ongoing consultation additionally holds the Redis settlement lock and settles
through the Wallet Ledger in the same database transaction as the status
change. Operations commit their own transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.app.core.clock import utcnow
from consultpay.app.core.config import settings
from consultpay.app.core.exceptions import (
    AppException,
    AlreadySettledError,
    InsufficientFundsError,
    RateNotConfiguredError,
    ResourceNotFoundError,
    StateTransitionRejectedError,
    ValidationFailedError,
)
from consultpay.app.core.reliability import RetriesExhaustedError, retry_async
from consultpay.app.domain.billing.calculator import (
    ZERO,
    billing_increment,
    compute_billing,
    max_talk_minutes,
    round2,
)
from consultpay.app.domain.billing.rate_resolver import log_rate_conflicts, resolve_rate, resolve_rate_strict
from consultpay.app.domain.billing.wallet_ledger import AccountRef, WalletLedger
from consultpay.app.models.billing_enums import IncidentKind
from consultpay.app.models.consultation import Consultation
from consultpay.app.models.consultation_enums import ConsultationStatus, ConsultationType, EndReason
from consultpay.app.models.enums import OwnerKind, UserRole
from consultpay.app.models.user import User
from consultpay.app.services.audit import log_event, AuditAction
from consultpay.app.services.events import EventName, record_event
from consultpay.app.services.incidents import IncidentService
from consultpay.app.services.settlement_lock import SettlementLock

logger = logging.getLogger(__name__)

FREE_TRIAL_TYPES = (ConsultationType.AUDIO, ConsultationType.VIDEO)


@dataclass
class Affordability:
    rate: Decimal
    rate_configured: bool
    balance: Decimal
    can_afford: bool
    free_trial_eligible: bool
    max_minutes: Optional[int]


@dataclass
class BalanceCheck:
    consultation: Consultation
    accrued: Decimal
    remaining: Optional[Decimal]
    low_balance: bool = False
    forced_end: bool = False


class ConsultationService:

    # Lookups

    @staticmethod
    async def get(db: AsyncSession, consultation_id: int) -> Consultation:
        consultation = await db.get(Consultation, consultation_id, populate_existing=True)
        if not consultation:
            raise ResourceNotFoundError("Consultation", consultation_id)
        return consultation

    @staticmethod
    def client_ref(consultation: Consultation) -> AccountRef:
        return AccountRef(consultation.client_kind, consultation.client_id)

    @staticmethod
    def provider_ref(consultation: Consultation) -> AccountRef:
        return AccountRef(OwnerKind.USER, consultation.provider_id)

    @staticmethod
    async def _get_provider(db: AsyncSession, provider_id: int) -> User:
        provider = await db.get(User, provider_id)
        if not provider or provider.role != UserRole.PROVIDER or not provider.is_active:
            raise ResourceNotFoundError("Provider", provider_id)
        return provider

    @staticmethod
    def _free_trial_eligible(account, consultation_type: ConsultationType, rate: Decimal) -> bool:
        """One-time free call: audio/video only, paid providers only, never used before."""
        return (
            settings.free_trial_enabled
            and consultation_type in FREE_TRIAL_TYPES
            and rate > 0
            and account.free_trial_used_at is None
        )

    @staticmethod
    def _rejected(consultation: Consultation, attempted: str) -> None:
        error = StateTransitionRejectedError(consultation.id, consultation.status.value, attempted)
        logger.info(error.message)

    @staticmethod
    async def _update_if(
        db: AsyncSession,
        consultation: Consultation,
        from_statuses,
        *criteria,
        **values,
    ) -> bool:
        """
        Apply `values` only while the consultation is still in `from_statuses`.

        Returns:
            True if this call won the transition
        """
        await db.flush()
        values.setdefault("updated_at", utcnow())
        result = await db.execute(
            update(Consultation)
            .where(
                Consultation.id == consultation.id,
                Consultation.status.in_(from_statuses),
                *criteria,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(consultation)
        return result.rowcount == 1

    @staticmethod
    async def _record_ended(db: AsyncSession, consultation: Consultation) -> None:
        await record_event(
            db,
            EventName.CONSULTATION_ENDED,
            {
                "consultation_id": consultation.id,
                "status": consultation.status.value,
                "reason": consultation.end_reason.value if consultation.end_reason else None,
                "amount": consultation.total_amount or ZERO,
                "duration": consultation.duration_minutes,
                "duration_seconds": consultation.duration_seconds,
            },
            consultation_id=consultation.id,
        )

    # Creation

    @staticmethod
    async def check_affordability(
        db: AsyncSession,
        client: AccountRef,
        provider_id: int,
        consultation_type,
    ) -> Affordability:
        """
        Can the client start a consultation with this provider?

        A paid consultation needs at least one minute of balance unless the
        client's free trial covers it.
        """
        consultation_type = ConsultationType(consultation_type)
        provider = await ConsultationService._get_provider(db, provider_id)
        account = await WalletLedger.get_account(db, client)

        try:
            rate = resolve_rate_strict(provider, consultation_type)
            rate_configured = True
        except RateNotConfiguredError as e:
            logger.info(e.message)
            rate, rate_configured = ZERO, False
        log_rate_conflicts(provider, consultation_type)

        balance = round2(account.wallet_balance)
        free_trial = ConsultationService._free_trial_eligible(account, consultation_type, rate)

        return Affordability(
            rate=rate,
            rate_configured=rate_configured,
            balance=balance,
            can_afford=rate == 0 or free_trial or balance >= rate,
            free_trial_eligible=free_trial,
            max_minutes=None if free_trial else max_talk_minutes(balance, rate),
        )

    @staticmethod
    async def create_consultation(
        db: AsyncSession,
        client: AccountRef,
        provider_id: int,
        consultation_type,
        now: Optional[datetime] = None,
    ) -> Consultation:
        """
        Create a PENDING consultation after the affordability check.

        Raises:
            ResourceNotFoundError: provider missing, inactive or not a provider
            ValidationFailedError: client tried to consult themselves
            InsufficientFundsError: balance below one minute of the rate
        """
        now = now or utcnow()
        consultation_type = ConsultationType(consultation_type)

        if client.kind == OwnerKind.USER and client.id == provider_id:
            raise ValidationFailedError("Cannot start a consultation with yourself")

        affordability = await ConsultationService.check_affordability(db, client, provider_id, consultation_type)
        if not affordability.can_afford:
            raise InsufficientFundsError(
                required=affordability.rate,
                available=affordability.balance,
                message="At least one minute of balance is required to start this consultation",
            )

        consultation = Consultation(
            type=consultation_type,
            client_id=client.id,
            client_kind=client.kind,
            provider_id=provider_id,
            status=ConsultationStatus.PENDING,
            rate=affordability.rate,  # Quote; snapshotted again when billing starts
            created_at=now,
            updated_at=now,
        )
        db.add(consultation)
        await db.flush()

        await record_event(
            db,
            EventName.CONSULTATION_CREATED,
            {
                "consultation_id": consultation.id,
                "reference": consultation.reference,
                "type": consultation_type.value,
                "client": str(client),
                "provider_id": provider_id,
                "rate": affordability.rate,
            },
            consultation_id=consultation.id,
        )
        await db.commit()

        logger.info("Consultation %s created (%s, client %s, provider %s)", consultation.id, consultation_type.value, client, provider_id)
        return consultation

    # Acceptance

    @staticmethod
    async def client_accepted(db: AsyncSession, consultation_id: int, now: Optional[datetime] = None) -> Consultation:
        return await ConsultationService._accept(db, consultation_id, "client", now or utcnow())

    @staticmethod
    async def provider_accepted(db: AsyncSession, consultation_id: int, now: Optional[datetime] = None) -> Consultation:
        return await ConsultationService._accept(db, consultation_id, "provider", now or utcnow())

    @staticmethod
    async def _accept(db: AsyncSession, consultation_id: int, party: str, now: datetime) -> Consultation:
        consultation = await ConsultationService.get(db, consultation_id)

        if consultation.status != ConsultationStatus.PENDING:
            if consultation.is_terminal:
                ConsultationService._rejected(consultation, f"{party} accept")
            return consultation

        field = "client_accepted_at" if party == "client" else "provider_accepted_at"
        if getattr(consultation, field) is None:
            recorded = await ConsultationService._update_if(
                db, consultation, (ConsultationStatus.PENDING,), **{field: now}
            )
            if not recorded:
                await db.commit()
                return consultation

        if consultation.client_accepted_at and consultation.provider_accepted_at:
            await ConsultationService._start(db, consultation, now)

        await db.commit()
        return consultation

    @staticmethod
    async def _start(db: AsyncSession, consultation: Consultation, now: datetime) -> None:
        """PENDING -> ONGOING: snapshot the rate and start the billing clock."""
        provider = await db.get(User, consultation.provider_id)
        rate = resolve_rate(provider, consultation.type)
        log_rate_conflicts(provider, consultation.type)

        account = await WalletLedger.get_account(db, ConsultationService.client_ref(consultation))
        free_trial = ConsultationService._free_trial_eligible(account, consultation.type, rate)

        if rate > 0 and not free_trial and round2(account.wallet_balance) < rate:
            won = await ConsultationService._update_if(
                db, consultation, (ConsultationStatus.PENDING,),
                status=ConsultationStatus.CANCELLED,
                end_reason=EndReason.INSUFFICIENT_FUNDS,
                ended_at=now,
                total_amount=ZERO,
            )
            if won:
                logger.info("Consultation %s cancelled at start: balance below one minute", consultation.id)
                await ConsultationService._record_ended(db, consultation)
            return

        won = await ConsultationService._update_if(
            db, consultation, (ConsultationStatus.PENDING,),
            status=ConsultationStatus.ONGOING,
            billing_started_at=now,
            last_heartbeat_at=now,
            rate=rate,
            is_free_trial=free_trial,
        )
        if not won:
            return

        if free_trial:
            account.free_trial_used_at = now
            account.free_trial_consultation_id = consultation.id

        await record_event(
            db,
            EventName.CONSULTATION_STARTED,
            {
                "consultation_id": consultation.id,
                "rate": rate,
                "billing_started_at": now,
                "is_free_trial": free_trial,
            },
            consultation_id=consultation.id,
        )
        logger.info("Consultation %s started at %s/min%s", consultation.id, rate, " (free trial)" if free_trial else "")

    # Ending

    @staticmethod
    async def request_end(
        db: AsyncSession,
        consultation_id: int,
        ended_by: str = "client",
        now: Optional[datetime] = None,
    ) -> Consultation:
        """Either party hung up."""
        reason = EndReason.PROVIDER_ENDED if ended_by == "provider" else EndReason.CLIENT_ENDED
        return await ConsultationService._end(db, consultation_id, reason, EndReason.CALLER_CANCELLED, now or utcnow())

    @staticmethod
    async def connection_lost(db: AsyncSession, consultation_id: int, now: Optional[datetime] = None) -> Consultation:
        """Transport dropped. Billed exactly like an explicit end."""
        return await ConsultationService._end(
            db, consultation_id, EndReason.CONNECTION_LOST, EndReason.CONNECTION_LOST, now or utcnow()
        )

    @staticmethod
    async def _end(
        db: AsyncSession,
        consultation_id: int,
        reason: EndReason,
        pending_reason: EndReason,
        now: datetime,
    ) -> Consultation:
        consultation = await ConsultationService.get(db, consultation_id)

        if consultation.is_terminal:
            ConsultationService._rejected(consultation, "end")
            return consultation

        if consultation.status == ConsultationStatus.PENDING:
            if await ConsultationService._close_unbilled(
                db, consultation, ConsultationStatus.CANCELLED, pending_reason, now
            ):
                return consultation
            if consultation.status != ConsultationStatus.ONGOING:
                return consultation

        return await ConsultationService.terminate(db, consultation_id, reason, now)

    @staticmethod
    async def _close_unbilled(
        db: AsyncSession,
        consultation: Consultation,
        status: ConsultationStatus,
        reason: EndReason,
        now: datetime,
        from_statuses=(ConsultationStatus.PENDING,),
        *criteria,
        audit_action: Optional[str] = None,
    ) -> bool:
        """Terminal transition with zero charge for a consultation that never billed."""
        won = await ConsultationService._update_if(
            db, consultation, from_statuses, *criteria,
            status=status,
            end_reason=reason,
            ended_at=now,
            total_amount=ZERO,
        )
        if won:
            await ConsultationService._record_ended(db, consultation)
            if audit_action:
                await log_event(
                    db, audit_action, actor_username="reconciliation",
                    consultation_id=consultation.id, metadata={"reason": reason.value},
                )
            logger.info("Consultation %s closed as %s (%s)", consultation.id, status.value, reason.value)
        await db.commit()
        return won

    @staticmethod
    async def terminate(
        db: AsyncSession,
        consultation_id: int,
        reason: EndReason,
        now: Optional[datetime] = None,
        audit_action: Optional[str] = None,
    ) -> Consultation:
        """
        ONGOING -> COMPLETED with exactly one settlement.

        Concurrent callers serialize on the settlement lock; the loser finds
        the consultation already terminal and gets the winner's result.
        Transient database errors are retried with the idempotency guard intact.
        If settlement keeps failing, or fails with an application error, the
        call still ends with a zero charge,
        `billing_failed` and an operator incident.
        """
        now = now or utcnow()

        async with SettlementLock(consultation_id):

            async def attempt():
                return await ConsultationService._settle_once(db, consultation_id, reason, now, audit_action)

            async def rollback(attempt_no, exc):
                await db.rollback()

            try:
                return await retry_async(
                    attempt,
                    attempts=settings.settlement_max_retries,
                    delay_seconds=settings.settlement_retry_delay_seconds,
                    on_retry=rollback,
                )
            except (RetriesExhaustedError, SQLAlchemyError, AppException) as e:
                await db.rollback()
                logger.error("Settlement of consultation %s failed: %s", consultation_id, e)
                return await ConsultationService._fail_settlement(db, consultation_id, now, e)

    @staticmethod
    async def _settle_once(
        db: AsyncSession,
        consultation_id: int,
        reason: EndReason,
        now: datetime,
        audit_action: Optional[str] = None,
    ) -> Consultation:
        consultation = await ConsultationService.get(db, consultation_id)
        if consultation.status != ConsultationStatus.ONGOING:
            ConsultationService._rejected(consultation, "end")
            return consultation

        billing = compute_billing(consultation.billing_started_at, now, consultation.rate or ZERO)
        charge = ZERO if consultation.is_free_trial else billing.amount

        won = await ConsultationService._update_if(
            db, consultation, (ConsultationStatus.ONGOING,),
            status=ConsultationStatus.COMPLETED,
            end_reason=reason,
            ended_at=now,
            duration_seconds=max(billing.duration_seconds, consultation.duration_seconds or 0),
            duration_minutes=max(billing.duration_minutes, round2(consultation.duration_minutes)),
        )
        if not won:
            ConsultationService._rejected(consultation, "end")
            return consultation

        total = ZERO
        end_reason = reason
        if charge > 0:
            client = ConsultationService.client_ref(consultation)
            provider = ConsultationService.provider_ref(consultation)
            try:
                settlement = await WalletLedger.settle(db, consultation.id, client, provider, charge)
                total = settlement.amount
            except AlreadySettledError as e:
                logger.warning("Consultation %s already had a settlement, keeping it", consultation.id)
                total = e.settlement.amount
            except InsufficientFundsError as e:
                logger.warning("Consultation %s could not be collected: %s", consultation.id, e.message)
                end_reason = EndReason.INSUFFICIENT_FUNDS
                if settings.insufficient_funds_policy == "platform_compensates":
                    await WalletLedger.compensate_provider(db, consultation.id, provider, charge)

        consultation.total_amount = total
        consultation.end_reason = end_reason
        await db.flush()

        await ConsultationService._record_ended(db, consultation)
        if audit_action:
            await log_event(
                db, audit_action, actor_username="reconciliation",
                consultation_id=consultation.id,
                metadata={"amount": total, "duration_seconds": consultation.duration_seconds},
            )
        await db.commit()

        logger.info(
            "Consultation %s completed (%s): %ss, charged %s",
            consultation.id, end_reason.value, consultation.duration_seconds, total,
        )
        return consultation

    @staticmethod
    async def _fail_settlement(
        db: AsyncSession,
        consultation_id: int,
        now: datetime,
        error: Exception,
    ) -> Consultation:
        consultation = await ConsultationService.get(db, consultation_id)
        if consultation.status != ConsultationStatus.ONGOING:
            return consultation

        billing = compute_billing(consultation.billing_started_at, now, consultation.rate or ZERO)
        won = await ConsultationService._update_if(
            db, consultation, (ConsultationStatus.ONGOING,),
            status=ConsultationStatus.COMPLETED,
            end_reason=EndReason.BILLING_FAILED,
            ended_at=now,
            total_amount=ZERO,
            duration_seconds=billing.duration_seconds,
            duration_minutes=billing.duration_minutes,
        )
        if won:
            await ConsultationService._record_ended(db, consultation)
            await IncidentService.raise_incident(
                db,
                IncidentKind.SETTLEMENT_FAILED,
                f"consultation:{consultation_id}",
                f"Settlement of consultation {consultation_id} failed; ended with zero charge",
                consultation_id=consultation_id,
                details={"error": str(error), "uncollected": billing.amount},
            )
        await db.commit()
        return consultation

    # Real-time protection

    @staticmethod
    async def check_balance(
        db: AsyncSession,
        consultation_id: int,
        now: Optional[datetime] = None,
        heartbeat: bool = False,
    ) -> BalanceCheck:
        """
        Periodic wallet check while a consultation is ongoing.

        Records a checkpoint and the running duration. If the balance left
        after what has accrued so far cannot cover one more check interval,
        the consultation is ended and billed (`balance_exhausted`).

        `heartbeat` marks a check sent by one of the parties. Only those
        count as liveness for the stuck-call repair; the server's own
        balance monitor passes False.
        """
        now = now or utcnow()
        consultation = await ConsultationService.get(db, consultation_id)
        if consultation.status != ConsultationStatus.ONGOING or consultation.billing_started_at is None:
            return BalanceCheck(consultation, accrued=ZERO, remaining=None)

        billing = compute_billing(consultation.billing_started_at, now, consultation.rate or ZERO)
        checkpoint = {"last_balance_check_at": now}
        if heartbeat:
            checkpoint["last_heartbeat_at"] = now
        checkpointed = await ConsultationService._update_if(
            db, consultation, (ConsultationStatus.ONGOING,),
            duration_seconds=max(billing.duration_seconds, consultation.duration_seconds or 0),
            duration_minutes=max(billing.duration_minutes, round2(consultation.duration_minutes)),
            **checkpoint,
        )
        if not checkpointed:
            await db.commit()
            return BalanceCheck(consultation, accrued=ZERO, remaining=None)

        rate = round2(consultation.rate)
        if consultation.is_free_trial or rate <= 0:
            await db.commit()
            return BalanceCheck(consultation, accrued=ZERO, remaining=None)

        balance = await WalletLedger.get_balance(db, ConsultationService.client_ref(consultation))
        remaining = balance - billing.amount
        increment = billing_increment(rate, settings.balance_check_interval_seconds)

        if remaining < increment:
            await db.commit()
            logger.warning(
                "Consultation %s: balance %s cannot cover next %s after %s accrued, ending",
                consultation.id, balance, increment, billing.amount,
            )
            ended = await ConsultationService.terminate(db, consultation.id, EndReason.BALANCE_EXHAUSTED, now)
            return BalanceCheck(ended, accrued=billing.amount, remaining=remaining, low_balance=True, forced_end=True)

        low_balance = remaining < increment * settings.low_balance_warning_increments
        if low_balance:
            await record_event(
                db,
                EventName.WALLET_LOW_BALANCE,
                {
                    "consultation_id": consultation.id,
                    "owner": str(ConsultationService.client_ref(consultation)),
                    "remaining": remaining,
                    "minutes_left": max_talk_minutes(remaining, rate),
                },
                consultation_id=consultation.id,
            )
        await db.commit()
        return BalanceCheck(consultation, accrued=billing.amount, remaining=remaining, low_balance=low_balance)

    # Timeouts and operator actions

    @staticmethod
    async def expire_pending(
        db: AsyncSession,
        consultation_id: int,
        now: Optional[datetime] = None,
        audit_action: Optional[str] = None,
    ) -> Consultation:
        """PENDING (or ONGOING without a billing start) past the accept timeout -> NO_ANSWER."""
        now = now or utcnow()
        consultation = await ConsultationService.get(db, consultation_id)

        never_started = consultation.status == ConsultationStatus.PENDING or (
            consultation.status == ConsultationStatus.ONGOING and consultation.billing_started_at is None
        )
        timeout = timedelta(minutes=settings.pending_accept_timeout_minutes)
        if not never_started or now - consultation.created_at < timeout:
            return consultation

        await ConsultationService._close_unbilled(
            db, consultation, ConsultationStatus.NO_ANSWER, EndReason.NO_ANSWER, now,
            (ConsultationStatus.PENDING, ConsultationStatus.ONGOING),
            Consultation.billing_started_at.is_(None),
            audit_action=audit_action,
        )
        return consultation

    @staticmethod
    async def admin_terminate(
        db: AsyncSession,
        consultation_id: int,
        status: ConsultationStatus,
        admin_id: int,
        admin_username: str,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Consultation:
        """
        Operator closes a consultation as CANCELLED or MISSED with zero charge.

        Raises:
            ValidationFailedError: status is not CANCELLED or MISSED
            StateTransitionRejectedError: consultation already terminal
        """
        now = now or utcnow()
        status = ConsultationStatus(status)
        if status not in (ConsultationStatus.CANCELLED, ConsultationStatus.MISSED):
            raise ValidationFailedError("Admin termination must be CANCELLED or MISSED", {"status": status.value})

        consultation = await ConsultationService.get(db, consultation_id)
        if consultation.is_terminal:
            raise StateTransitionRejectedError(consultation.id, consultation.status.value, "terminate")

        async with SettlementLock(consultation_id):
            billing = compute_billing(consultation.billing_started_at, now, consultation.rate or ZERO)
            won = await ConsultationService._update_if(
                db, consultation, (ConsultationStatus.PENDING, ConsultationStatus.ONGOING),
                status=status,
                end_reason=EndReason.ADMIN_TERMINATED,
                ended_at=now,
                total_amount=ZERO,
                duration_seconds=billing.duration_seconds,
                duration_minutes=billing.duration_minutes,
            )
            if not won:
                raise StateTransitionRejectedError(consultation.id, consultation.status.value, "terminate")

            await ConsultationService._record_ended(db, consultation)
            await log_event(
                db,
                AuditAction.CONSULTATION_TERMINATED,
                actor_id=admin_id,
                actor_username=admin_username,
                consultation_id=consultation.id,
                metadata={"status": status.value, "note": note, "unbilled": billing.amount},
            )
            await db.commit()

        logger.info("Consultation %s terminated by admin %s as %s", consultation.id, admin_id, status.value)
        return consultation
