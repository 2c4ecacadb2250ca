"""
Billing Incident model.

Operator queue for billing problems that must not be silently auto-fixed.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum
from consultpay.app.db.session import Base
from consultpay.app.core.clock import utcnow
from consultpay.app.models.billing_enums import IncidentKind, IncidentStatus


class BillingIncident(Base):
    """
    Billing incident table.

    Written by settlement (give-up after retries) and by the reconciliation
    sweep. `subject_key` identifies what the incident is about
    (e.g. "consultation:42", "wallet:USER:7") so an open incident is not
    raised twice.
    """
    __tablename__ = "billing_incidents"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    kind = Column(Enum(IncidentKind), nullable=False, index=True)
    status = Column(Enum(IncidentStatus), default=IncidentStatus.OPEN, nullable=False, index=True)
    subject_key = Column(String(100), nullable=False, index=True)
    consultation_id = Column(Integer, nullable=True, index=True)

    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by_admin_id = Column(Integer, nullable=True)
    resolution_note = Column(String(255), nullable=True)

    def __repr__(self):
        return f"<BillingIncident(id={self.id}, kind='{self.kind.value}', status='{self.status.value}')>"
