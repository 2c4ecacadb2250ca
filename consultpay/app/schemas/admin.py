"""
Admin API Schema Definitions.

Pydantic schemas for admin billing and reconciliation endpoints.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any
from consultpay.app.models.billing_enums import IncidentKind, IncidentStatus
from consultpay.app.models.consultation_enums import ConsultationStatus


class ReverseTransactionRequest(BaseModel):
    """Schema for reversing a transaction."""
    reason: str = Field(..., min_length=3, max_length=200, description="Reason for reversal (for audit log)")


class TerminateConsultationRequest(BaseModel):
    """Schema for an operator closing a consultation."""
    status: ConsultationStatus = ConsultationStatus.CANCELLED
    note: Optional[str] = Field(None, max_length=255)


class IncidentResponse(BaseModel):
    """Schema for a billing incident."""
    id: int
    kind: IncidentKind
    status: IncidentStatus
    subject_key: str
    consultation_id: Optional[int] = None
    message: str
    details: Optional[Dict[str, Any]] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by_admin_id: Optional[int] = None
    resolution_note: Optional[str] = None

    class Config:
        from_attributes = True


class ResolveIncidentRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=255)


class ReconciliationReportResponse(BaseModel):
    """Summary of one reconciliation sweep."""
    started_at: datetime
    expired_pending: List[int]
    closed_stuck: List[int]
    integrity_violations: List[int]
    unbilled_payments: List[int]
    ghost_earnings: List[int]
    orphan_transactions: List[int]
    drifting_wallets: List[str]
    errors: List[str]
    repairs: int
    detections: int


class AuditLogResponse(BaseModel):
    """Schema for an audit trail entry."""
    id: int
    action: str
    actor_id: Optional[int] = None
    actor_username: Optional[str] = None
    consultation_id: Optional[int] = None
    transaction_id: Optional[int] = None
    meta_data: Optional[Dict[str, Any]] = None
    timestamp: datetime

    class Config:
        from_attributes = True
