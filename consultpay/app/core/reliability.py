"""
Reliability utilities.

Bounded retries for operations that are safe to repeat (settlement is
guarded by its idempotency key, so a retried attempt cannot double-bill).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Tuple, Type

from sqlalchemy.exc import DBAPIError, OperationalError

logger = logging.getLogger(__name__)

TRANSIENT_DB_ERRORS: Tuple[Type[BaseException], ...] = (OperationalError,)


class RetriesExhaustedError(Exception):
    """Raised when every attempt of a retried operation failed transiently."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


def is_transient(exc: BaseException) -> bool:
    """Connection drops, lock timeouts and serialization failures are worth retrying."""
    if isinstance(exc, TRANSIENT_DB_ERRORS):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    attempts: int = 3,
    delay_seconds: float = 0.2,
    on_retry: Callable[[int, BaseException], Awaitable[None]] = None,
) -> Any:
    """
    Run `func` up to `attempts` times while it fails with a transient error.

    Non-transient errors propagate immediately. `on_retry` runs between
    attempts (e.g. to roll back the session).
    """
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except Exception as exc:
            if not is_transient(exc):
                raise
            last_error = exc
            logger.warning("Transient failure (attempt %s/%s): %s", attempt, attempts, exc)
            if on_retry is not None:
                await on_retry(attempt, exc)
            if attempt < attempts:
                await asyncio.sleep(delay_seconds * attempt)
    raise RetriesExhaustedError(attempts, last_error)
