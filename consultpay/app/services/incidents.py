"""
Billing Incident Service.

Operator queue for billing problems. Incidents are raised, never auto-fixed,
and an open incident for the same subject is not raised twice.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.app.core.clock import utcnow
from consultpay.app.core.exceptions import ResourceNotFoundError, ValidationFailedError
from consultpay.app.models.billing_enums import IncidentKind, IncidentStatus
from consultpay.app.models.billing_incident import BillingIncident
from consultpay.app.services.events import EventName, record_event, to_payload

logger = logging.getLogger(__name__)


class IncidentService:

    @staticmethod
    async def raise_incident(
        db: AsyncSession,
        kind: IncidentKind,
        subject_key: str,
        message: str,
        consultation_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> BillingIncident:
        """
        Open an incident unless one is already open for (kind, subject_key).

        Returns the existing open incident in that case. Caller commits.
        """
        result = await db.execute(
            select(BillingIncident).where(
                BillingIncident.kind == kind,
                BillingIncident.subject_key == subject_key,
                BillingIncident.status != IncidentStatus.RESOLVED,
            )
        )
        existing = result.scalars().first()
        if existing:
            return existing

        incident = BillingIncident(
            kind=kind,
            subject_key=subject_key,
            consultation_id=consultation_id,
            message=message,
            details=to_payload(details or {}),
        )
        db.add(incident)
        await db.flush()

        logger.critical(
            "Billing incident %s opened: %s",
            kind.value,
            message,
            extra={"incident_id": incident.id, "subject": subject_key},
        )
        await record_event(
            db,
            EventName.BILLING_INCIDENT,
            {"incident_id": incident.id, "kind": kind.value, "subject": subject_key},
            consultation_id=consultation_id,
        )
        return incident

    @staticmethod
    async def list_incidents(
        db: AsyncSession,
        status: Optional[IncidentStatus] = None,
        kind: Optional[IncidentKind] = None,
        limit: int = 100,
    ) -> List[BillingIncident]:
        query = select(BillingIncident).order_by(desc(BillingIncident.created_at), desc(BillingIncident.id))
        if status:
            query = query.where(BillingIncident.status == status)
        if kind:
            query = query.where(BillingIncident.kind == kind)
        result = await db.execute(query.limit(limit))
        return result.scalars().all()

    @staticmethod
    async def resolve(
        db: AsyncSession,
        incident_id: int,
        admin_id: int,
        note: Optional[str] = None,
    ) -> BillingIncident:
        incident = await db.get(BillingIncident, incident_id)
        if not incident:
            raise ResourceNotFoundError("Incident", incident_id)
        if incident.status == IncidentStatus.RESOLVED:
            raise ValidationFailedError(f"Incident {incident_id} is already resolved")

        incident.status = IncidentStatus.RESOLVED
        incident.resolved_at = utcnow()
        incident.resolved_by_admin_id = admin_id
        incident.resolution_note = note
        await db.flush()
        return incident
