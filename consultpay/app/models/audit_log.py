"""
Audit Log Database Model.

Tracks admin actions and reconciliation repairs.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from consultpay.app.db.session import Base
from consultpay.app.core.clock import utcnow


class AuditLog(Base):
    """
    Audit log model.

    Events logged:
    - TRANSACTION_REVERSED
    - CONSULTATION_TERMINATED (admin)
    - RECONCILIATION_* repairs
    - INCIDENT_RESOLVED
    - WITHDRAWAL_APPROVED / WITHDRAWAL_REJECTED
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)
    actor_username = Column(String(100), nullable=True)

    action = Column(String(100), nullable=False, index=True)

    # What the action touched
    consultation_id = Column(Integer, index=True, nullable=True)
    transaction_id = Column(Integer, index=True, nullable=True)

    meta_data = Column(JSON, nullable=True)

    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor_username})>"
