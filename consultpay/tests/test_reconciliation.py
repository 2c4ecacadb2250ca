"""
Reconciliation Sweep Tests.

Audited repairs of stale and stuck consultations, and detection of ledger
inconsistencies as de-duplicated operator incidents.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from consultpay.app.core.clock import utcnow
from consultpay.app.domain.billing.wallet_ledger import AccountRef, WalletLedger
from consultpay.app.domain.consultation.state_machine import ConsultationService
from consultpay.app.domain.reconciliation.sweep import run_reconciliation
from consultpay.app.services.background_jobs import run_balance_checks
from consultpay.app.models.audit_log import AuditLog
from consultpay.app.models.billing_enums import IncidentKind, TransactionType
from consultpay.app.models.billing_incident import BillingIncident
from consultpay.app.models.consultation import Consultation
from consultpay.app.models.consultation_enums import ConsultationStatus, ConsultationType, EndReason
from consultpay.app.models.enums import OwnerKind, UserRole
from consultpay.app.models.user import User
from consultpay.app.models.wallet_transaction import WalletTransaction

T0 = utcnow().replace(microsecond=0)


@pytest.fixture
async def parties(make_user):
    client = await make_user(balance="200")
    provider = await make_user(UserRole.PROVIDER, audio_rate=Decimal("3.00"))
    return AccountRef(OwnerKind.USER, client.id), provider


async def start(db, client_ref, provider, at=T0):
    c = await ConsultationService.create_consultation(db, client_ref, provider.id, "audio", now=at)
    await ConsultationService.client_accepted(db, c.id, now=at)
    return await ConsultationService.provider_accepted(db, c.id, now=at)


async def incidents(db, kind=None):
    query = select(BillingIncident)
    if kind:
        query = query.where(BillingIncident.kind == kind)
    return (await db.execute(query)).scalars().all()


async def add_consultation(db, provider, client_ref, **fields):
    consultation = Consultation(
        type=ConsultationType.AUDIO,
        client_id=client_ref.id,
        client_kind=client_ref.kind,
        provider_id=provider.id,
        created_at=T0,
        **fields,
    )
    db.add(consultation)
    await db.commit()
    return consultation


@pytest.mark.asyncio
async def test_clean_system_has_nothing_to_report(db_session, parties):
    client_ref, provider = parties
    c = await start(db_session, client_ref, provider)
    await ConsultationService.request_end(db_session, c.id, now=T0 + timedelta(seconds=90))

    report = await run_reconciliation(db_session, now=T0 + timedelta(minutes=10))

    assert report.repairs == 0
    assert report.detections == 0
    assert report.errors == []
    assert await incidents(db_session) == []


@pytest.mark.asyncio
async def test_stale_pending_becomes_no_answer(db_session, parties):
    client_ref, provider = parties
    stale = await ConsultationService.create_consultation(db_session, client_ref, provider.id, "audio", now=T0)
    fresh = await ConsultationService.create_consultation(
        db_session, client_ref, provider.id, "audio", now=T0 + timedelta(minutes=3)
    )

    report = await run_reconciliation(db_session, now=T0 + timedelta(minutes=6))

    assert report.expired_pending == [stale.id]
    assert (await ConsultationService.get(db_session, stale.id)).status == ConsultationStatus.NO_ANSWER
    assert (await ConsultationService.get(db_session, fresh.id)).status == ConsultationStatus.PENDING

    audit = (await db_session.execute(select(AuditLog).where(AuditLog.consultation_id == stale.id))).scalars().all()
    assert [a.action for a in audit] == ["RECONCILIATION_NO_ANSWER"]
    assert audit[0].actor_username == "reconciliation"


@pytest.mark.asyncio
async def test_stuck_call_is_closed_and_billed(db_session, parties):
    client_ref, provider = parties
    c = await start(db_session, client_ref, provider)

    report = await run_reconciliation(db_session, now=T0 + timedelta(minutes=61))

    assert report.closed_stuck == [c.id]
    closed = await ConsultationService.get(db_session, c.id)
    assert closed.status == ConsultationStatus.COMPLETED
    assert closed.end_reason == EndReason.STUCK_CALL
    assert closed.total_amount == Decimal("183.00")
    assert await WalletLedger.get_balance(db_session, client_ref) == Decimal("17.00")

    audit = (await db_session.execute(select(AuditLog).where(AuditLog.consultation_id == c.id))).scalars().all()
    assert [a.action for a in audit] == ["RECONCILIATION_STUCK_CALL_CLOSED"]


@pytest.mark.asyncio
async def test_recent_heartbeat_keeps_long_call_open(db_session, parties):
    client_ref, provider = parties
    c = await start(db_session, client_ref, provider)
    await ConsultationService.check_balance(db_session, c.id, now=T0 + timedelta(minutes=60), heartbeat=True)

    report = await run_reconciliation(db_session, now=T0 + timedelta(minutes=61))

    assert report.closed_stuck == []
    consultation = await ConsultationService.get(db_session, c.id)
    assert consultation.status == ConsultationStatus.ONGOING
    assert consultation.last_heartbeat_at == T0 + timedelta(minutes=60)


@pytest.mark.asyncio
async def test_balance_monitor_does_not_keep_stuck_call_alive(db_session, make_user):
    client = await make_user(balance="10000")
    provider = await make_user(UserRole.PROVIDER, audio_rate=Decimal("3.00"))
    client_ref = AccountRef(OwnerKind.USER, client.id)
    c = await start(db_session, client_ref, provider)

    for minute in range(1, 301):
        now = T0 + timedelta(minutes=minute)
        await run_balance_checks(db_session, now=now)
        if minute % 2 == 0:
            await run_reconciliation(db_session, now=now)
        if (await ConsultationService.get(db_session, c.id)).is_terminal:
            break

    closed = await ConsultationService.get(db_session, c.id)
    assert closed.status == ConsultationStatus.COMPLETED
    assert closed.end_reason == EndReason.STUCK_CALL
    assert closed.ended_at == T0 + timedelta(minutes=62)
    assert closed.total_amount == Decimal("186.00")
    assert closed.last_heartbeat_at == T0
    assert await WalletLedger.get_balance(db_session, client_ref) == Decimal("9814.00")


@pytest.mark.asyncio
async def test_missing_payment_is_reported_once(db_session, parties):
    client_ref, provider = parties
    broken = await add_consultation(
        db_session, provider, client_ref,
        status=ConsultationStatus.COMPLETED,
        end_reason=EndReason.CLIENT_ENDED,
        billing_started_at=T0,
        ended_at=T0 + timedelta(minutes=2),
        rate=Decimal("3.00"),
        total_amount=Decimal("6.00"),
    )

    first = await run_reconciliation(db_session, now=T0 + timedelta(minutes=10))
    second = await run_reconciliation(db_session, now=T0 + timedelta(minutes=20))

    assert first.integrity_violations == [broken.id]
    assert second.integrity_violations == [broken.id]
    found = await incidents(db_session, IncidentKind.INTEGRITY_VIOLATION)
    assert len(found) == 1
    assert found[0].consultation_id == broken.id
    assert found[0].subject_key == f"consultation:{broken.id}"


@pytest.mark.asyncio
async def test_ghost_earning_and_orphan_are_detected(db_session, parties):
    client_ref, provider = parties
    provider_ref = AccountRef(OwnerKind.USER, provider.id)
    ended = await add_consultation(
        db_session, provider, client_ref,
        status=ConsultationStatus.COMPLETED,
        end_reason=EndReason.CLIENT_ENDED,
        total_amount=Decimal("0.00"),
    )

    # Wallet balances are kept in step so only the ledger rows are suspicious
    for consultation_id, key in ((ended.id, "ghost"), (987654, "orphan")):
        db_session.add(WalletTransaction(
            owner_id=provider.id,
            owner_kind=OwnerKind.USER,
            type=TransactionType.EARNING,
            amount=Decimal("2.00"),
            balance_after=Decimal("2.00"),
            consultation_id=consultation_id,
            idempotency_key=f"manual:{key}",
        ))
    await db_session.execute(update(User).where(User.id == provider.id).values(wallet_balance=Decimal("4.00")))
    await db_session.commit()

    report = await run_reconciliation(db_session, now=T0 + timedelta(minutes=10))

    ghost, orphan = (await db_session.execute(
        select(WalletTransaction.id).where(WalletTransaction.idempotency_key.in_(["manual:ghost", "manual:orphan"]))
        .order_by(WalletTransaction.id)
    )).scalars().all()
    assert report.ghost_earnings == [ghost, orphan]
    assert report.orphan_transactions == [orphan]
    assert report.drifting_wallets == []
    assert await WalletLedger.find_drift(db_session, provider_ref) is None
    assert len(await incidents(db_session, IncidentKind.GHOST_EARNING)) == 2
    assert len(await incidents(db_session, IncidentKind.ORPHAN_TRANSACTION)) == 1


@pytest.mark.asyncio
async def test_wallet_drift_is_detected(db_session, parties):
    client_ref, _ = parties
    await db_session.execute(update(User).where(User.id == client_ref.id).values(wallet_balance=Decimal("250.00")))
    await db_session.commit()

    report = await run_reconciliation(db_session, now=T0)

    assert report.drifting_wallets == [str(client_ref)]
    found = await incidents(db_session, IncidentKind.LEDGER_DRIFT)
    assert len(found) == 1
    assert found[0].details["drift"] == "50.00"
    assert found[0].subject_key == f"wallet:{client_ref}"
