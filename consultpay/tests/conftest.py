"""
Centralized Test Configuration.
"""

import os

# Must be set before the app (and its engine) is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BACKGROUND_JOBS_ENABLED", "false")

import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from consultpay.app.main import app
from consultpay.app.db.session import get_db, Base
from consultpay.app.core.jwt import create_access_token
from consultpay.app.core.redis_client import get_redis
import consultpay.app.core.redis_client as redis_client_module
from consultpay.app.domain.billing.wallet_ledger import AccountRef, WalletLedger
from consultpay.app.models.enums import OwnerKind, UserRole
from consultpay.app.models.guest import Guest
from consultpay.app.models.user import User
from consultpay.app.services.events import event_bus

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if self._closed:
            return False
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


mock_redis = MockRedis()


@pytest.fixture(scope="session", autouse=True)
def apply_overrides():
    """Apply overrides once for the session."""
    # Patch the global redis client used by the settlement lock
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = mock_redis

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return mock_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    yield

    # Restore and clear
    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await mock_redis.flushdb()
    event_bus.clear()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def redis_mock():
    return mock_redis


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


async def fund(db: AsyncSession, ref: AccountRef, amount) -> None:
    """Top up through the ledger so balances always match history."""
    await WalletLedger.credit(db, ref, Decimal(str(amount)), f"test-fund:{ref}:{uuid.uuid4().hex}")
    await db.commit()


def user_ref(user: User) -> AccountRef:
    return AccountRef(OwnerKind.USER, user.id)


def guest_ref(guest: Guest) -> AccountRef:
    return AccountRef(OwnerKind.GUEST, guest.id)


@pytest.fixture
def make_user(db_session):
    """Factory: create a user, optionally funded through the ledger."""
    async def _make(role: UserRole = UserRole.CLIENT, balance=0, **fields) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            email=fields.pop("email", f"{role.value.lower()}-{suffix}@example.com"),
            full_name=fields.pop("full_name", f"Test {role.value.title()} {suffix}"),
            role=role,
            wallet_balance=Decimal("0"),
            **fields,
        )
        db_session.add(user)
        await db_session.commit()
        if balance:
            await fund(db_session, user_ref(user), balance)
            await db_session.refresh(user)
        return user
    return _make


@pytest.fixture
def make_guest(db_session):
    async def _make(balance=0) -> Guest:
        guest = Guest(display_name="Guest " + uuid.uuid4().hex[:6], wallet_balance=Decimal("0"))
        db_session.add(guest)
        await db_session.commit()
        if balance:
            await fund(db_session, guest_ref(guest), balance)
            await db_session.refresh(guest)
        return guest
    return _make


def auth_headers(account, kind: OwnerKind = OwnerKind.USER) -> dict:
    if kind == OwnerKind.GUEST:
        token = create_access_token({"sub": account.display_name, "account_id": account.id, "kind": "GUEST", "role": "CLIENT"})
    else:
        token = create_access_token({
            "sub": account.email, "account_id": account.id, "kind": "USER", "role": account.role.value
        })
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(name="fund")
def fund_fixture():
    return fund


@pytest.fixture(name="auth_headers")
def auth_headers_fixture():
    return auth_headers
