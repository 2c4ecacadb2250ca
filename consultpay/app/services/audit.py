"""
Audit logging service for admin actions and reconciliation repairs.

Every operator action and every automated repair leaves one row here.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from consultpay.app.models.audit_log import AuditLog
from consultpay.app.services.events import to_payload


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    # Admin
    TRANSACTION_REVERSED = "TRANSACTION_REVERSED"
    CONSULTATION_TERMINATED = "CONSULTATION_TERMINATED"
    INCIDENT_RESOLVED = "INCIDENT_RESOLVED"
    RECONCILIATION_TRIGGERED = "RECONCILIATION_TRIGGERED"

    # Reconciliation repairs
    RECONCILIATION_NO_ANSWER = "RECONCILIATION_NO_ANSWER"
    RECONCILIATION_STUCK_CALL_CLOSED = "RECONCILIATION_STUCK_CALL_CLOSED"

    # Wallet
    WALLET_TOPPED_UP = "WALLET_TOPPED_UP"
    WALLET_WITHDRAWAL = "WALLET_WITHDRAWAL"
    WITHDRAWAL_APPROVED = "WITHDRAWAL_APPROVED"
    WITHDRAWAL_REJECTED = "WITHDRAWAL_REJECTED"
    PROVIDER_COMPENSATED = "PROVIDER_COMPENSATED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    actor_username: Optional[str] = None,
    consultation_id: Optional[int] = None,
    transaction_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Log an admin or system event to the audit log.

    Flushes only: the audit row commits (or rolls back) with the change it
    describes.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action (None for system jobs)
        actor_username: Email/name of actor, or the job name
        consultation_id: Consultation the action touched
        transaction_id: Wallet transaction the action touched
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_username=actor_username,
        action=action,
        consultation_id=consultation_id,
        transaction_id=transaction_id,
        meta_data=to_payload(metadata) if metadata else None,
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    consultation_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if consultation_id:
        query = query.where(AuditLog.consultation_id == consultation_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
