"""
Background Jobs.

Two asyncio loops started from the application lifespan:
- balance monitor: runs the real-time balance check for every paid ongoing
  consultation each `balance_check_interval_seconds`
- reconciliation: runs the sweep each `reconciliation_interval_seconds`

Both dispatch pending outbox events after their work commits.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.app.core.clock import utcnow
from consultpay.app.core.config import settings
from consultpay.app.db.session import AsyncSessionLocal
from consultpay.app.domain.consultation.state_machine import ConsultationService
from consultpay.app.domain.reconciliation.sweep import run_reconciliation
from consultpay.app.models.consultation import Consultation
from consultpay.app.models.consultation_enums import ConsultationStatus
from consultpay.app.services.events import event_bus

logger = logging.getLogger(__name__)


async def run_balance_checks(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Check every paid, ongoing consultation once.

    Returns:
        Number of consultations force-ended for exhausted balance
    """
    now = now or utcnow()
    result = await db.execute(
        select(Consultation.id).where(
            Consultation.status == ConsultationStatus.ONGOING,
            Consultation.billing_started_at.is_not(None),
            Consultation.is_free_trial == False,
            Consultation.rate > 0,
        )
    )
    ended = 0
    for consultation_id in result.scalars().all():
        try:
            check = await ConsultationService.check_balance(db, consultation_id, now)
        except Exception:
            await db.rollback()
            logger.exception("Balance check failed for consultation %s", consultation_id)
            continue
        if check.forced_end:
            ended += 1
    return ended


async def _loop(name: str, interval_seconds: float, job: Callable, session_factory) -> None:
    logger.info("Background job %s started (every %ss)", name, interval_seconds)
    while True:
        try:
            async with session_factory() as db:
                await job(db)
                await event_bus.dispatch_pending(db)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background job %s failed", name)
        await asyncio.sleep(interval_seconds)


class BackgroundJobs:
    """Owns the asyncio tasks for the periodic jobs."""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory
        self._tasks: List[asyncio.Task] = []

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                _loop("balance-monitor", settings.balance_check_interval_seconds, run_balance_checks, self.session_factory)
            ),
            asyncio.create_task(
                _loop("reconciliation", settings.reconciliation_interval_seconds, run_reconciliation, self.session_factory)
            ),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Background jobs stopped")
