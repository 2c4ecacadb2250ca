"""
Consultation API Endpoints.

Inbound lifecycle events from the real-time transport layer. Lifecycle
endpoints never fail because a consultation already ended: they return
its current state.
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.app.db.session import get_db
from consultpay.app.core.dependencies import get_current_user, account_ref
from consultpay.app.core.guards import require_role, consultation_party
from consultpay.app.domain.consultation.state_machine import ConsultationService
from consultpay.app.models.consultation_enums import ConsultationType
from consultpay.app.models.enums import UserRole
from consultpay.app.schemas.consultation import (
    ConsultationCreate,
    ConsultationResponse,
    AffordabilityResponse,
    HeartbeatResponse,
)
from consultpay.app.services.events import event_bus

router = APIRouter(prefix="/consultations", tags=["Consultations"])


@router.post("", response_model=ConsultationResponse, status_code=201)
async def create_consultation(
    request: ConsultationCreate,
    current_user: dict = Depends(require_role([UserRole.CLIENT, UserRole.PROVIDER, UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Start a consultation with a provider. The caller is the client and is
    counted as having accepted.
    """
    consultation = await ConsultationService.create_consultation(
        db, account_ref(current_user), request.provider_id, request.type
    )
    consultation = await ConsultationService.client_accepted(db, consultation.id)
    await event_bus.dispatch_pending(db)
    return consultation


@router.get("/affordability", response_model=AffordabilityResponse)
async def check_affordability(
    provider_id: int = Query(..., gt=0),
    type: ConsultationType = Query(...),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Can the caller afford at least one minute with this provider?"""
    result = await ConsultationService.check_affordability(db, account_ref(current_user), provider_id, type)
    return AffordabilityResponse(
        provider_id=provider_id,
        type=type,
        rate=result.rate,
        rate_configured=result.rate_configured,
        balance=result.balance,
        can_afford=result.can_afford,
        free_trial_eligible=result.free_trial_eligible,
        max_minutes=result.max_minutes,
    )


@router.get("/{consultation_id}", response_model=ConsultationResponse)
async def get_consultation(
    consultation_id: int = Path(..., description="Consultation ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    consultation = await ConsultationService.get(db, consultation_id)
    consultation_party(consultation, current_user)
    return consultation


@router.post("/{consultation_id}/accept", response_model=ConsultationResponse)
async def accept_consultation(
    consultation_id: int = Path(..., description="Consultation ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Record acceptance by the calling party. Billing starts once both have accepted."""
    consultation = await ConsultationService.get(db, consultation_id)
    party = consultation_party(consultation, current_user)

    if party == "provider":
        consultation = await ConsultationService.provider_accepted(db, consultation_id)
    else:
        consultation = await ConsultationService.client_accepted(db, consultation_id)

    await event_bus.dispatch_pending(db)
    return consultation


@router.post("/{consultation_id}/end", response_model=ConsultationResponse)
async def end_consultation(
    consultation_id: int = Path(..., description="Consultation ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Either party hangs up. Safe to call more than once."""
    consultation = await ConsultationService.get(db, consultation_id)
    party = consultation_party(consultation, current_user)

    consultation = await ConsultationService.request_end(db, consultation_id, ended_by=party)
    await event_bus.dispatch_pending(db)
    return consultation


@router.post("/{consultation_id}/connection-lost", response_model=ConsultationResponse)
async def report_connection_lost(
    consultation_id: int = Path(..., description="Consultation ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    consultation = await ConsultationService.get(db, consultation_id)
    consultation_party(consultation, current_user)

    consultation = await ConsultationService.connection_lost(db, consultation_id)
    await event_bus.dispatch_pending(db)
    return consultation


@router.post("/{consultation_id}/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    consultation_id: int = Path(..., description="Consultation ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Real-time balance check driven by the call client. Counts as liveness
    for the stuck-call repair, and ends the call when the wallet cannot
    cover the next interval.
    """
    consultation = await ConsultationService.get(db, consultation_id)
    consultation_party(consultation, current_user)

    check = await ConsultationService.check_balance(db, consultation_id, heartbeat=True)
    await event_bus.dispatch_pending(db)
    return HeartbeatResponse(
        consultation=ConsultationResponse.model_validate(check.consultation),
        accrued=check.accrued,
        remaining=check.remaining,
        low_balance=check.low_balance,
        forced_end=check.forced_end,
    )
