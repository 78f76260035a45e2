"""
Serializable unit of work with bounded retry.

Ledger writes (commission event creation, tier upgrade, plan reassignment)
are each a single read-modify-write over one or two rows. They run inside a
fresh session whose transaction uses the store's strongest isolation, and
are retried when the store reports a serialization conflict.

Usage:

    async def _work(session: AsyncSession) -> CommissionEvent:
        ...
        return event

    event = await run_serializable(_work, session_factory, description="record commission")

The callable may run more than once, so it must not have side effects
outside the session it is given.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.exceptions import TransientDatabaseError
from app.database import serializable_session_factory

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected
SERIALIZATION_FAILURE_SQLSTATES = {"40001", "40P01"}

SERIALIZATION_FAILURE_MESSAGES = (
    "could not serialize access",
    "deadlock detected",
    "database is locked",
)


def is_serialization_failure(exc: DBAPIError) -> bool:
    """True when the driver error means 'retry the whole transaction'."""
    if isinstance(exc, IntegrityError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in SERIALIZATION_FAILURE_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in SERIALIZATION_FAILURE_MESSAGES)


def retry_delay(attempt: int) -> float:
    """Exponential backoff for the given (1-based) failed attempt."""
    delay = settings.SERIALIZABLE_RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1))
    return min(delay, settings.SERIALIZABLE_RETRY_BACKOFF_MAX_SECONDS)


async def _run_once(session: AsyncSession, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
    result = await work(session)
    await session.commit()
    return result


async def run_serializable(
    work: Callable[[AsyncSession], Awaitable[T]],
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    description: str = "unit of work",
    max_attempts: Optional[int] = None,
) -> T:
    """
    Run `work(session)` in its own serializable transaction and commit it.

    IntegrityError is not retried; it propagates so callers can resolve
    idempotency conflicts by re-reading the winning row. Serialization
    failures and per-attempt timeouts are retried with backoff, and raise
    TransientDatabaseError once attempts are exhausted.
    """
    factory = session_factory or serializable_session_factory
    attempts = max_attempts or settings.SERIALIZABLE_MAX_ATTEMPTS
    last_reason = ""

    for attempt in range(1, attempts + 1):
        async with factory() as session:
            try:
                return await asyncio.wait_for(
                    _run_once(session, work),
                    timeout=settings.SERIALIZABLE_TIMEOUT_SECONDS,
                )
            except IntegrityError:
                await session.rollback()
                raise
            except DBAPIError as e:
                await session.rollback()
                if not is_serialization_failure(e):
                    logger.error(f"{description} failed with a non-retryable database error: {e.orig}")
                    raise
                last_reason = str(e.orig)
            except asyncio.TimeoutError:
                # Session close releases the connection and discards the transaction
                last_reason = f"timed out after {settings.SERIALIZABLE_TIMEOUT_SECONDS}s"

        if attempt < attempts:
            delay = retry_delay(attempt)
            logger.warning(
                f"{description} conflict on attempt {attempt}/{attempts} ({last_reason}); "
                f"retrying in {delay:.3f}s"
            )
            await asyncio.sleep(delay)

    logger.error(f"{description} gave up after {attempts} attempts: {last_reason}")
    raise TransientDatabaseError(
        f"{description} could not be serialized after {attempts} attempts: {last_reason}",
        attempts=attempts,
    )
