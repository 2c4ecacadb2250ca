"""
Domain Event Outbox.

Events are written to the outbox in the same transaction as the state change
they describe. After commit, `EventBus.dispatch_pending` hands them to the
in-process subscribers (the notification layer registers here) and stamps
them as dispatched. The billing core never calls delivery APIs itself.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.app.core.clock import utcnow
from consultpay.app.models.outbox_event import OutboxEvent

logger = logging.getLogger(__name__)

Handler = Callable[[OutboxEvent], Awaitable[None]]


class EventName:
    """Outbound domain event names."""
    CONSULTATION_CREATED = "consultation.created"
    CONSULTATION_STARTED = "consultation.started"
    CONSULTATION_ENDED = "consultation.ended"
    WALLET_DEBITED = "wallet.debited"
    WALLET_CREDITED = "wallet.credited"
    WALLET_LOW_BALANCE = "wallet.lowBalanceWarning"
    BILLING_INCIDENT = "billing.incident"


def to_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of `data`. Money stays exact as strings."""
    return jsonable_encoder(data, custom_encoder={Decimal: str})


async def record_event(
    db: AsyncSession,
    name: str,
    payload: Dict[str, Any],
    consultation_id: Optional[int] = None,
) -> OutboxEvent:
    """Append an event to the outbox. Caller commits."""
    event = OutboxEvent(name=name, payload=to_payload(payload), consultation_id=consultation_id)
    db.add(event)
    await db.flush()
    return event


class EventBus:
    """In-process subscriber registry for outbox events."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers[name].append(handler)

    def clear(self) -> None:
        self._handlers.clear()

    async def dispatch_pending(self, db: AsyncSession, limit: int = 100) -> int:
        """
        Deliver undispatched events in creation order.

        A failing handler leaves the event pending so the next run retries it.

        Returns:
            Number of events marked dispatched
        """
        result = await db.execute(
            select(OutboxEvent)
            .where(OutboxEvent.dispatched_at.is_(None))
            .order_by(OutboxEvent.id)
            .limit(limit)
        )
        events = result.scalars().all()

        dispatched = 0
        for event in events:
            try:
                for handler in self._handlers.get(event.name, []):
                    await handler(event)
            except Exception:
                logger.exception("Event handler failed for %s (event %s)", event.name, event.id)
                break
            event.dispatched_at = utcnow()
            dispatched += 1

        if dispatched:
            await db.commit()
        return dispatched


event_bus = EventBus()
