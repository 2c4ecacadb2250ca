"""
Consultation API Schema Definitions.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional
from consultpay.app.models.consultation_enums import ConsultationType, ConsultationStatus, EndReason
from consultpay.app.models.enums import OwnerKind


class ConsultationCreate(BaseModel):
    """Schema for starting a consultation (caller is the client)."""
    provider_id: int = Field(..., gt=0)
    type: ConsultationType


class ConsultationEndRequest(BaseModel):
    """Optional context for an end request."""
    reason: Optional[str] = Field(None, max_length=255)


class ConsultationResponse(BaseModel):
    """Schema for displaying a consultation."""
    id: int
    reference: str
    type: ConsultationType
    status: ConsultationStatus
    end_reason: Optional[EndReason] = None

    client_id: int
    client_kind: OwnerKind
    provider_id: int

    rate: Optional[Decimal] = None
    is_free_trial: bool
    duration_seconds: int
    duration_minutes: Decimal
    total_amount: Optional[Decimal] = None

    created_at: datetime
    client_accepted_at: Optional[datetime] = None
    provider_accepted_at: Optional[datetime] = None
    billing_started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    last_balance_check_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AffordabilityResponse(BaseModel):
    """Pre-call check of the caller's wallet against the provider's rate."""
    provider_id: int
    type: ConsultationType
    rate: Decimal
    rate_configured: bool
    balance: Decimal
    can_afford: bool
    free_trial_eligible: bool
    max_minutes: Optional[int] = None


class HeartbeatResponse(BaseModel):
    """Result of a real-time balance check."""
    consultation: ConsultationResponse
    accrued: Decimal
    remaining: Optional[Decimal] = None
    low_balance: bool
    forced_end: bool
