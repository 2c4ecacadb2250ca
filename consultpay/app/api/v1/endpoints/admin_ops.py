"""
Admin Operations API Endpoints.

Reconciliation and the operator views (incident queue, audit trails).
"""

from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Body, Query
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.app.db.session import get_db
from consultpay.app.core.guards import require_role
from consultpay.app.domain.consultation.state_machine import ConsultationService
from consultpay.app.domain.reconciliation.sweep import run_reconciliation
from consultpay.app.models.billing_enums import IncidentKind, IncidentStatus
from consultpay.app.models.enums import UserRole
from consultpay.app.schemas.admin import (
    AuditLogResponse,
    IncidentResponse,
    ResolveIncidentRequest,
    ReconciliationReportResponse,
)
from consultpay.app.services.audit import log_event, get_audit_trail, AuditAction
from consultpay.app.services.events import event_bus
from consultpay.app.services.incidents import IncidentService

router = APIRouter(prefix="/admin", tags=["Admin - Ops"])


@router.post("/reconciliation/run", response_model=ReconciliationReportResponse)
async def trigger_reconciliation(
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Run one reconciliation sweep now instead of waiting for the timer."""
    await log_event(
        db,
        AuditAction.RECONCILIATION_TRIGGERED,
        actor_id=current_user["account_id"],
        actor_username=current_user.get("sub"),
    )
    await db.commit()

    report = await run_reconciliation(db)
    await event_bus.dispatch_pending(db)
    return ReconciliationReportResponse(**asdict(report), repairs=report.repairs, detections=report.detections)


@router.get("/incidents", response_model=List[IncidentResponse])
async def list_incidents(
    status: Optional[IncidentStatus] = Query(None),
    kind: Optional[IncidentKind] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    return await IncidentService.list_incidents(db, status=status, kind=kind, limit=limit)


@router.post("/incidents/{incident_id}/resolve", response_model=IncidentResponse)
async def resolve_incident(
    incident_id: int = Path(..., description="Incident ID"),
    request: Optional[ResolveIncidentRequest] = Body(None),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Mark an incident resolved after the operator handled it."""
    note = request.note if request else None
    incident = await IncidentService.resolve(db, incident_id, current_user["account_id"], note)
    await log_event(
        db,
        AuditAction.INCIDENT_RESOLVED,
        actor_id=current_user["account_id"],
        actor_username=current_user.get("sub"),
        consultation_id=incident.consultation_id,
        metadata={"incident_id": incident.id, "kind": incident.kind.value, "note": note},
    )
    await db.commit()
    return incident


@router.get("/consultations/{consultation_id}/audit", response_model=List[AuditLogResponse])
async def consultation_audit_trail(
    consultation_id: int = Path(..., description="Consultation ID"),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Operator actions and automated repairs that touched a consultation, newest first."""
    await ConsultationService.get(db, consultation_id)
    return await get_audit_trail(db, consultation_id=consultation_id, action=action, limit=limit)
