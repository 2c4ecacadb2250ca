"""
Concurrency Tests.

Two terminators racing on the same consultation must produce exactly one
settlement, and both must see the same outcome.
"""

import asyncio
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from consultpay.app.core.clock import utcnow
from consultpay.app.db.session import Base
from consultpay.app.domain.billing.wallet_ledger import AccountRef, WalletLedger
from consultpay.app.domain.consultation.state_machine import ConsultationService
from consultpay.app.models.billing_enums import TransactionType
from consultpay.app.models.consultation_enums import ConsultationStatus, EndReason
from consultpay.app.models.enums import OwnerKind, UserRole
from consultpay.app.models.user import User
from consultpay.app.models.wallet_transaction import WalletTransaction
from consultpay.app.services.settlement_lock import SettlementLock

T0 = utcnow().replace(microsecond=0)


@pytest.fixture
async def file_sessions(tmp_path):
    """Session factory on a file database so two sessions use two connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


async def ongoing_call(sessions, balance="4.50"):
    async with sessions() as db:
        client = User(email=f"client-{uuid.uuid4().hex[:6]}@example.com", full_name="Client", role=UserRole.CLIENT)
        provider = User(
            email=f"provider-{uuid.uuid4().hex[:6]}@example.com", full_name="Provider",
            role=UserRole.PROVIDER, audio_rate=Decimal("3.00"),
        )
        db.add_all([client, provider])
        await db.commit()

        client_ref = AccountRef(OwnerKind.USER, client.id)
        await WalletLedger.credit(db, client_ref, Decimal(balance), "race-fund")
        await db.commit()

        consultation = await ConsultationService.create_consultation(db, client_ref, provider.id, "audio", now=T0)
        await ConsultationService.client_accepted(db, consultation.id, now=T0)
        await ConsultationService.provider_accepted(db, consultation.id, now=T0)
        return consultation.id, client_ref, AccountRef(OwnerKind.USER, provider.id)


@pytest.mark.asyncio
async def test_simultaneous_end_settles_once(file_sessions):
    consultation_id, client_ref, provider_ref = await ongoing_call(file_sessions)
    end_at = T0 + timedelta(seconds=90)

    async def end(ended_by):
        async with file_sessions() as db:
            c = await ConsultationService.request_end(db, consultation_id, ended_by, now=end_at)
            return c.status, c.end_reason, c.total_amount

    first, second = await asyncio.gather(end("client"), end("provider"))

    assert first[0] == second[0] == ConsultationStatus.COMPLETED
    assert first[1] == second[1]
    assert first[1] in (EndReason.CLIENT_ENDED, EndReason.PROVIDER_ENDED)
    assert first[2] == second[2] == Decimal("4.50")

    async with file_sessions() as db:
        txns = (await db.execute(
            select(WalletTransaction).where(WalletTransaction.consultation_id == consultation_id)
        )).scalars().all()
        assert sorted(t.type.value for t in txns) == [TransactionType.EARNING.value, TransactionType.PAYMENT.value]
        assert await WalletLedger.get_balance(db, client_ref) == Decimal("0.00")
        assert await WalletLedger.get_balance(db, provider_ref) == Decimal("4.28")


@pytest.mark.asyncio
async def test_end_and_connection_loss_race(file_sessions):
    consultation_id, client_ref, _ = await ongoing_call(file_sessions, balance="10")
    end_at = T0 + timedelta(seconds=60)

    async def end():
        async with file_sessions() as db:
            return (await ConsultationService.request_end(db, consultation_id, now=end_at)).total_amount

    async def lost():
        async with file_sessions() as db:
            return (await ConsultationService.connection_lost(db, consultation_id, now=end_at)).total_amount

    totals = await asyncio.gather(end(), lost())

    assert totals == [Decimal("3.00"), Decimal("3.00")]
    async with file_sessions() as db:
        assert await WalletLedger.get_balance(db, client_ref) == Decimal("7.00")
        payments = (await db.execute(
            select(WalletTransaction).where(
                WalletTransaction.consultation_id == consultation_id,
                WalletTransaction.type == TransactionType.PAYMENT,
            )
        )).scalars().all()
        assert len(payments) == 1


@pytest.mark.asyncio
async def test_sequential_terminate_is_idempotent(db_session, make_user):
    client = await make_user(balance="10")
    provider = await make_user(UserRole.PROVIDER, audio_rate=Decimal("3.00"))
    client_ref = AccountRef(OwnerKind.USER, client.id)

    c = await ConsultationService.create_consultation(db_session, client_ref, provider.id, "audio", now=T0)
    await ConsultationService.client_accepted(db_session, c.id, now=T0)
    await ConsultationService.provider_accepted(db_session, c.id, now=T0)

    first = await ConsultationService.terminate(db_session, c.id, EndReason.CLIENT_ENDED, now=T0 + timedelta(seconds=60))
    assert first.total_amount == Decimal("3.00")
    second = await ConsultationService.terminate(db_session, c.id, EndReason.CONNECTION_LOST, now=T0 + timedelta(seconds=600))
    assert second.total_amount == Decimal("3.00")
    assert second.end_reason == EndReason.CLIENT_ENDED
    assert await WalletLedger.get_balance(db_session, client_ref) == Decimal("7.00")


@pytest.mark.asyncio
async def test_settlement_lock_is_exclusive(redis_mock):
    holder = SettlementLock(42, wait_seconds=0)
    assert await holder.acquire() is True

    contender = SettlementLock(42, wait_seconds=0)
    assert await contender.acquire() is False

    # Releasing a lock we never held leaves the holder's key alone
    await contender.release()
    assert await redis_mock.get("settlement:lock:42") == holder.token

    await holder.release()
    assert await redis_mock.get("settlement:lock:42") is None

    async with SettlementLock(42, wait_seconds=0) as lock:
        assert lock.acquired is True
    assert lock.acquired is False


@pytest.mark.asyncio
async def test_lock_taken_over_after_expiry_is_not_deleted(redis_mock):
    lock = SettlementLock(7, wait_seconds=0)
    await lock.acquire()

    # TTL elapsed and another worker took the key
    await redis_mock.set("settlement:lock:7", "someone-else")
    await lock.release()

    assert await redis_mock.get("settlement:lock:7") == "someone-else"
