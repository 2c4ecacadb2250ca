"""
Outbox Event model.

Domain events written in the same transaction as the state change they
describe, then handed to subscribers (notification layer) after commit.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from consultpay.app.db.session import Base
from consultpay.app.core.clock import utcnow


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    consultation_id = Column(Integer, nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    dispatched_at = Column(DateTime, nullable=True, index=True)

    def __repr__(self):
        return f"<OutboxEvent(id={self.id}, name='{self.name}')>"
