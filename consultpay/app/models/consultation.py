"""
Consultation database model.

One chat/audio/video session between a client (user or guest) and a provider.
"""

import uuid
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Enum, Numeric, Index
from consultpay.app.db.session import Base
from consultpay.app.core.clock import utcnow
from consultpay.app.models.enums import OwnerKind
from consultpay.app.models.consultation_enums import (
    ConsultationType, ConsultationStatus, EndReason, TERMINAL_STATUSES
)


def _new_reference() -> str:
    return f"CON-{uuid.uuid4().hex[:8].upper()}"


class Consultation(Base):
    """
    Consultation model.

    Lifecycle: PENDING -> ONGOING -> {COMPLETED | CANCELLED | NO_ANSWER | MISSED}.
    Terminal states are absorbing. `rate` is snapshotted when billing starts
    and `total_amount` is written exactly once, on the terminal transition.
    """
    __tablename__ = "consultations"
    __table_args__ = (
        Index("ix_consultations_status_created", "status", "created_at"),
        Index("ix_consultations_client", "client_kind", "client_id"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reference = Column(String(20), unique=True, nullable=False, default=_new_reference)

    type = Column(Enum(ConsultationType), nullable=False)

    # Parties
    client_id = Column(Integer, nullable=False)
    client_kind = Column(Enum(OwnerKind), default=OwnerKind.USER, nullable=False)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Lifecycle
    status = Column(Enum(ConsultationStatus), default=ConsultationStatus.PENDING, nullable=False, index=True)
    end_reason = Column(Enum(EndReason), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    client_accepted_at = Column(DateTime, nullable=True)
    provider_accepted_at = Column(DateTime, nullable=True)
    billing_started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)

    # Billing
    rate = Column(Numeric(10, 2), nullable=True)  # Snapshot, immutable once billing starts
    is_free_trial = Column(Boolean, default=False, nullable=False)
    duration_seconds = Column(Integer, default=0, nullable=False)
    duration_minutes = Column(Numeric(10, 2), default=0, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=True)  # Set once, at the terminal transition
    last_balance_check_at = Column(DateTime, nullable=True)
    last_heartbeat_at = Column(DateTime, nullable=True)  # Party-driven liveness only

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Consultation(id={self.id}, type='{self.type.value}', status='{self.status.value}')>"
