"""
Database seeding script for development accounts.

Creates an ADMIN, a PROVIDER with rates for every consultation type, and a
CLIENT with a funded wallet. Wallets are funded through the ledger so the
balance always matches the transaction history.
Run this script after the database is set up but before first use.
"""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from consultpay.app.db.session import AsyncSessionLocal, engine, Base
from consultpay.app.domain.billing.wallet_ledger import AccountRef, WalletLedger
from consultpay.app.models.enums import OwnerKind, UserRole
from consultpay.app.models.user import User
import consultpay.app.main  # noqa: F401  registers every model with Base


async def seed_accounts():
    """
    Seed development accounts.

    Creates:
    - 1 ADMIN
    - 1 PROVIDER (chat 2.00/min, audio 3.00/min, video 10.00/min)
    - 1 CLIENT with 100.00 in the wallet
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting account seeding...")

        result = await db.execute(select(User).where(User.email == "admin@consultpay.dev"))
        if result.scalar_one_or_none():
            print("ℹ️  Accounts already exist, skipping seeding")
            return

        admin = User(email="admin@consultpay.dev", full_name="Platform Admin", role=UserRole.ADMIN)
        provider = User(
            email="provider@consultpay.dev",
            full_name="Dr. Demo Provider",
            role=UserRole.PROVIDER,
            chat_rate=Decimal("2.00"),
            audio_rate=Decimal("3.00"),
            video_rate=Decimal("10.00"),
        )
        client = User(email="client@consultpay.dev", full_name="Demo Client", role=UserRole.CLIENT)
        db.add_all([admin, provider, client])
        await db.commit()

        await WalletLedger.credit(
            db, AccountRef(OwnerKind.USER, client.id), Decimal("100.00"), "seed:client-opening-balance",
            description="Opening balance",
        )
        await db.commit()

        print("\n🎉 Account seeding completed successfully!")
        print("\nSeeded accounts:")
        print(f"  - ADMIN:    {admin.email} (id {admin.id})")
        print(f"  - PROVIDER: {provider.email} (id {provider.id})")
        print(f"  - CLIENT:   {client.email} (id {client.id}, balance 100.00)")
        print("\nNote: tokens are issued by the auth service; sign one with SECRET_KEY for local use")


if __name__ == "__main__":
    asyncio.run(seed_accounts())
