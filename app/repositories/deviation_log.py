from __future__ import annotations

"""Append-only protocol deviation log."""

from abc import ABC, abstractmethod

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.utils import storage_transaction
from app.models.protocol_deviation import ProtocolDeviation


class DeviationLog(ABC):
    @abstractmethod
    async def list_for_visit(self, visit_id: str) -> list[ProtocolDeviation]:
        """Return the deviations recorded for a visit, oldest first."""

    @abstractmethod
    async def append(self, deviation: ProtocolDeviation) -> bool:
        """Append a deviation.

        Returns:
            ``True`` if stored, ``False`` if a deviation of the same kind was
            already recorded for the visit (nothing is written then).
        """


class SqlDeviationLog(DeviationLog):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_for_visit(self, visit_id: str) -> list[ProtocolDeviation]:
        stmt = (
            select(ProtocolDeviation)
            .where(ProtocolDeviation.visit_id == visit_id)
            .order_by(ProtocolDeviation.detected_at)
        )
        async with storage_transaction(
            self._session_factory, operation="deviation.list_for_visit"
        ) as db:
            return list((await db.execute(stmt)).scalars().all())

    async def append(self, deviation: ProtocolDeviation) -> bool:
        stmt = (
            pg_insert(ProtocolDeviation)
            .values(
                deviation_id=deviation.deviation_id,
                visit_id=deviation.visit_id,
                severity=deviation.severity,
                kind=deviation.kind,
                detected_at=deviation.detected_at,
                description=deviation.description,
            )
            .on_conflict_do_nothing(constraint="uq_deviation_visit_kind")
        )
        async with storage_transaction(self._session_factory, operation="deviation.append") as db:
            result = await db.execute(stmt)
            return result.rowcount == 1
