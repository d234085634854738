from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import logger
from app.services.errors import StorageError


@asynccontextmanager
async def storage_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    operation: str,
) -> AsyncIterator[AsyncSession]:
    """Open a session with a single transaction around ``operation``.

    The transaction commits when the block exits normally and rolls back on
    any error. Driver and ORM failures are re-raised as :class:`StorageError`
    so callers can retry using their idempotency keys; domain errors raised
    inside the block pass through untouched.

    Args:
        session_factory: Session factory bound to the engine.
        operation: Short label used in logs and in the error message.

    Yields:
        The session with an active transaction.
    """

    try:
        async with session_factory() as session:
            async with session.begin():
                yield session
    except SQLAlchemyError as exc:
        logger.warning("Storage operation %s failed", operation, exc_info=True)
        raise StorageError(
            f"Storage operation '{operation}' failed: {exc.__class__.__name__}",
            details={"operation": operation},
        ) from exc
