"""
Guest database model.

Guests book consultations without registering. They only ever act as clients.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, CheckConstraint
from consultpay.app.db.session import Base
from consultpay.app.core.clock import utcnow


class Guest(Base):
    __tablename__ = "guests"
    __table_args__ = (
        CheckConstraint("wallet_balance >= 0", name="ck_guests_wallet_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    display_name = Column(String(150), nullable=False)
    device_id = Column(String(255), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    wallet_balance = Column(Numeric(12, 2), default=0, nullable=False)

    free_trial_used_at = Column(DateTime, nullable=True)
    free_trial_consultation_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Guest(id={self.id}, name='{self.display_name}')>"
