"""
Consultation-related enumerations.
"""

import enum


class ConsultationType(str, enum.Enum):
    """Consultation channel."""
    CHAT = "chat"
    AUDIO = "audio"
    VIDEO = "video"


class ConsultationStatus(str, enum.Enum):
    """Consultation lifecycle state."""
    PENDING = "pending"  # Created, waiting for both parties to accept
    ONGOING = "ongoing"  # Both accepted, billing running
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_ANSWER = "no_answer"
    MISSED = "missed"


TERMINAL_STATUSES = frozenset({
    ConsultationStatus.COMPLETED,
    ConsultationStatus.CANCELLED,
    ConsultationStatus.NO_ANSWER,
    ConsultationStatus.MISSED,
})


class EndReason(str, enum.Enum):
    """Why a consultation reached its terminal state."""
    CLIENT_ENDED = "client_ended"
    PROVIDER_ENDED = "provider_ended"
    CONNECTION_LOST = "connection_lost"
    BALANCE_EXHAUSTED = "balance_exhausted"  # Forced end by the real-time check, billed
    INSUFFICIENT_FUNDS = "insufficient_funds"  # Settlement could not be collected, zero charge
    BILLING_FAILED = "billing_failed"  # Settlement subsystem failure, zero charge
    NO_ANSWER = "no_answer"
    CALLER_CANCELLED = "caller_cancelled"
    STUCK_CALL = "stuck_call"  # Closed by reconciliation
    ADMIN_TERMINATED = "admin_terminated"
