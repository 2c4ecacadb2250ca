"""
User database model.

Registered clients, providers and operators. Carries the wallet balance
and, for providers, the per-type consultation rates.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum, Numeric, JSON, CheckConstraint
from consultpay.app.db.session import Base
from consultpay.app.core.clock import utcnow
from consultpay.app.models.enums import UserRole


class User(Base):
    """
    User model.

    `wallet_balance` is written only by the wallet ledger.

    Rates: `chat_rate`, `audio_rate` and `video_rate` are the canonical
    per-minute prices. `legacy_rates` keeps the old nested `rates` document
    (rates.audio, rates.video, rates.audioVideo, rates.perMinute.*) read-only
    for providers that have not been migrated yet.
    """
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("wallet_balance >= 0", name="ck_users_wallet_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(150), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    role = Column(Enum(UserRole), default=UserRole.CLIENT, nullable=False, index=True)

    # Wallet
    wallet_balance = Column(Numeric(12, 2), default=0, nullable=False)

    # Provider rates (per minute)
    chat_rate = Column(Numeric(10, 2), nullable=True)
    audio_rate = Column(Numeric(10, 2), nullable=True)
    video_rate = Column(Numeric(10, 2), nullable=True)
    legacy_rates = Column(JSON, nullable=True)

    # One-time free trial
    free_trial_used_at = Column(DateTime, nullable=True)
    free_trial_consultation_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role.value}')>"
