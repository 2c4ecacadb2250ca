"""
Failure Injection Tests.

Transient database errors during settlement, permanent settlement failure,
and event handlers that blow up.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, OperationalError

from consultpay.app.core.clock import utcnow
from consultpay.app.core.config import settings
from consultpay.app.core.reliability import RetriesExhaustedError, retry_async
from consultpay.app.domain.billing.wallet_ledger import AccountRef, WalletLedger
from consultpay.app.domain.consultation.state_machine import ConsultationService
from consultpay.app.models.billing_enums import IncidentKind
from consultpay.app.models.billing_incident import BillingIncident
from consultpay.app.models.consultation_enums import ConsultationStatus, EndReason
from consultpay.app.models.enums import OwnerKind, UserRole
from consultpay.app.models.outbox_event import OutboxEvent
from consultpay.app.models.wallet_transaction import WalletTransaction
from consultpay.app.services.events import event_bus

T0 = utcnow().replace(microsecond=0)


@pytest.fixture(autouse=True)
def no_retry_delay(monkeypatch):
    monkeypatch.setattr(settings, "settlement_retry_delay_seconds", 0)


@pytest.fixture
async def ongoing(db_session, make_user):
    client = await make_user(balance="10")
    provider = await make_user(UserRole.PROVIDER, audio_rate=Decimal("3.00"))
    client_ref = AccountRef(OwnerKind.USER, client.id)

    c = await ConsultationService.create_consultation(db_session, client_ref, provider.id, "audio", now=T0)
    await ConsultationService.client_accepted(db_session, c.id, now=T0)
    await ConsultationService.provider_accepted(db_session, c.id, now=T0)
    return c.id, client_ref


def db_error():
    return OperationalError("UPDATE users", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_transient_error_is_retried(db_session, ongoing, mocker):
    consultation_id, client_ref = ongoing
    original = WalletLedger.settle
    calls = []

    async def flaky(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise db_error()
        return await original(*args, **kwargs)

    mocker.patch.object(WalletLedger, "settle", new=staticmethod(flaky))

    ended = await ConsultationService.request_end(db_session, consultation_id, now=T0 + timedelta(seconds=60))

    assert len(calls) == 2
    assert ended.status == ConsultationStatus.COMPLETED
    assert ended.end_reason == EndReason.CLIENT_ENDED
    assert ended.total_amount == Decimal("3.00")
    assert await WalletLedger.get_balance(db_session, client_ref) == Decimal("7.00")

    count = await db_session.execute(
        select(func.count(WalletTransaction.id)).where(WalletTransaction.consultation_id == consultation_id)
    )
    assert count.scalar_one() == 2


@pytest.mark.asyncio
async def test_exhausted_retries_end_call_as_billing_failed(db_session, ongoing, mocker):
    consultation_id, client_ref = ongoing

    async def broken(*args, **kwargs):
        raise db_error()

    settle = mocker.patch.object(WalletLedger, "settle", new=mocker.AsyncMock(side_effect=broken))

    ended = await ConsultationService.request_end(db_session, consultation_id, now=T0 + timedelta(seconds=60))

    assert settle.await_count == settings.settlement_max_retries
    assert ended.status == ConsultationStatus.COMPLETED
    assert ended.end_reason == EndReason.BILLING_FAILED
    assert ended.total_amount == Decimal("0.00")
    assert ended.duration_seconds == 60
    assert await WalletLedger.get_balance(db_session, client_ref) == Decimal("10.00")

    incidents = (await db_session.execute(select(BillingIncident))).scalars().all()
    assert len(incidents) == 1
    assert incidents[0].kind == IncidentKind.SETTLEMENT_FAILED
    assert incidents[0].consultation_id == consultation_id
    assert incidents[0].details["uncollected"] == "3.00"


@pytest.mark.asyncio
async def test_non_transient_error_fails_without_retry(db_session, ongoing, mocker):
    consultation_id, _ = ongoing
    settle = mocker.patch.object(
        WalletLedger, "settle",
        new=mocker.AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("constraint"))),
    )

    ended = await ConsultationService.request_end(db_session, consultation_id, now=T0 + timedelta(seconds=30))

    assert settle.await_count == 1
    assert ended.end_reason == EndReason.BILLING_FAILED


@pytest.mark.asyncio
async def test_redis_outage_falls_back_to_database_guard(db_session, ongoing, mocker):
    from redis.exceptions import ConnectionError as RedisConnectionError
    from consultpay.app.core import redis_client

    consultation_id, client_ref = ongoing
    mocker.patch.object(redis_client.redis_client, "set", side_effect=RedisConnectionError("down"))

    ended = await ConsultationService.request_end(db_session, consultation_id, now=T0 + timedelta(seconds=60))

    assert ended.total_amount == Decimal("3.00")
    assert await WalletLedger.get_balance(db_session, client_ref) == Decimal("7.00")


@pytest.mark.asyncio
async def test_retry_async_gives_up():
    attempts = []

    async def always_locked():
        attempts.append(1)
        raise db_error()

    with pytest.raises(RetriesExhaustedError) as exc_info:
        await retry_async(always_locked, attempts=3, delay_seconds=0)

    assert len(attempts) == 3
    assert isinstance(exc_info.value.last_error, OperationalError)


@pytest.mark.asyncio
async def test_retry_async_propagates_programming_errors():
    async def bug():
        raise ValueError("not a database problem")

    with pytest.raises(ValueError):
        await retry_async(bug, attempts=3, delay_seconds=0)


@pytest.mark.asyncio
async def test_failing_event_handler_keeps_event_pending(db_session, ongoing):
    delivered = []

    async def broken(event):
        raise RuntimeError("push gateway down")

    async def recorder(event):
        delivered.append(event.name)

    event_bus.subscribe("consultation.created", broken)
    await event_bus.dispatch_pending(db_session)

    stuck = (await db_session.execute(
        select(OutboxEvent).where(OutboxEvent.name == "consultation.created")
    )).scalar_one()
    assert stuck.dispatched_at is None

    event_bus.clear()
    event_bus.subscribe("consultation.started", recorder)
    assert await event_bus.dispatch_pending(db_session) > 0
    assert delivered == ["consultation.started"]

    remaining = await db_session.execute(
        select(func.count(OutboxEvent.id)).where(OutboxEvent.dispatched_at.is_(None))
    )
    assert remaining.scalar_one() == 0


@pytest.mark.asyncio
async def test_ledger_inconsistency_ends_call_as_billing_failed(db_session, ongoing):
    consultation_id, client_ref = ongoing
    provider_id = (await ConsultationService.get(db_session, consultation_id)).provider_id
    await WalletLedger.credit(
        db_session, AccountRef(OwnerKind.USER, provider_id), Decimal("2.85"), f"settle:{consultation_id}:earning"
    )
    await db_session.commit()

    ended = await ConsultationService.request_end(db_session, consultation_id, now=T0 + timedelta(seconds=60))

    assert ended.end_reason == EndReason.BILLING_FAILED
    assert ended.total_amount == Decimal("0.00")
    assert await WalletLedger.get_balance(db_session, client_ref) == Decimal("10.00")
    assert [i.kind for i in await db_session.scalars(select(BillingIncident))] == [IncidentKind.SETTLEMENT_FAILED]


@pytest.mark.asyncio
async def test_missing_client_wallet_ends_call_as_billing_failed(db_session, make_guest, make_user):
    guest = await make_guest(balance="10")
    provider = await make_user(UserRole.PROVIDER, audio_rate=Decimal("3.00"))
    guest_ref = AccountRef(OwnerKind.GUEST, guest.id)
    c = await ConsultationService.create_consultation(db_session, guest_ref, provider.id, "audio", now=T0)
    await ConsultationService.client_accepted(db_session, c.id, now=T0)
    await ConsultationService.provider_accepted(db_session, c.id, now=T0)

    await db_session.delete(guest)
    await db_session.commit()

    ended = await ConsultationService.request_end(db_session, c.id, now=T0 + timedelta(seconds=90))

    assert ended.status == ConsultationStatus.COMPLETED
    assert ended.end_reason == EndReason.BILLING_FAILED
    assert ended.total_amount == Decimal("0.00")
    assert await WalletLedger.get_balance(db_session, AccountRef(OwnerKind.USER, provider.id)) == Decimal("0.00")

    incident = (await db_session.execute(select(BillingIncident))).scalar_one()
    assert incident.kind == IncidentKind.SETTLEMENT_FAILED
    assert incident.consultation_id == c.id
    assert incident.details["uncollected"] == "4.50"

    # Later end events see a terminal call instead of failing again
    again = await ConsultationService.request_end(db_session, c.id, now=T0 + timedelta(seconds=120))
    assert again.end_reason == EndReason.BILLING_FAILED
