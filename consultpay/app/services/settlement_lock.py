"""
Settlement Lock.

Redis single-writer lock around consultation termination. The database
conditional update is the authoritative guard; this lock keeps concurrent
terminators from doing redundant work and serializes them in order.

If the lock cannot be acquired within the wait budget (or Redis is down)
the caller proceeds and relies on the database guard.
"""

import asyncio
import logging
import time
import uuid

from redis.exceptions import RedisError

from consultpay.app.core import redis_client
from consultpay.app.core.config import settings

logger = logging.getLogger(__name__)

LOCK_PREFIX = "settlement:lock"


class SettlementLock:
    """
    Async context manager.

    Usage:
        async with SettlementLock(consultation_id):
            ...
    """

    def __init__(
        self,
        consultation_id: int,
        ttl_seconds: int = None,
        wait_seconds: float = None,
        poll_interval: float = 0.05,
    ):
        self.key = f"{LOCK_PREFIX}:{consultation_id}"
        self.token = uuid.uuid4().hex
        self.ttl_seconds = ttl_seconds or settings.settlement_lock_ttl_seconds
        self.wait_seconds = settings.settlement_lock_wait_seconds if wait_seconds is None else wait_seconds
        self.poll_interval = poll_interval
        self.acquired = False

    async def acquire(self) -> bool:
        client = await redis_client.get_redis()
        deadline = time.monotonic() + self.wait_seconds

        while True:
            try:
                if await client.set(self.key, self.token, nx=True, ex=self.ttl_seconds):
                    self.acquired = True
                    return True
            except RedisError as e:
                logger.warning("Settlement lock unavailable for %s: %s", self.key, e)
                return False

            if time.monotonic() >= deadline:
                logger.warning("Timed out waiting for %s, continuing on database guard", self.key)
                return False
            await asyncio.sleep(self.poll_interval)

    async def release(self) -> None:
        if not self.acquired:
            return
        client = await redis_client.get_redis()
        try:
            current = await client.get(self.key)
            if isinstance(current, bytes):
                current = current.decode()
            # Only delete our own lock; it may have expired and been taken over
            if current == self.token:
                await client.delete(self.key)
        except RedisError as e:
            logger.warning("Failed to release %s (expires in %ss): %s", self.key, self.ttl_seconds, e)
        finally:
            self.acquired = False

    async def __aenter__(self) -> "SettlementLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
