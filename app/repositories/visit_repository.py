from __future__ import annotations

"""Visit persistence contract and its SQLAlchemy implementation."""

from abc import ABC, abstractmethod
from datetime import date
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.utils import storage_transaction
from app.models.visit import Visit

# Statuses from which a visit can still become ``missed``.
OPEN_STATUSES: tuple[str, ...] = ("scheduled", "in_progress", "rescheduled")


class VisitRepository(ABC):
    """Repository interface for visits."""

    @abstractmethod
    async def get(self, visit_id: str) -> Visit | None:
        """Return a visit by id, or ``None``."""

    @abstractmethod
    async def list_for_survey(self, survey_id: str) -> list[Visit]:
        """Return all visits of a survey ordered by visit number."""

    @abstractmethod
    async def list_open_past_window(self, today: date) -> list[Visit]:
        """Return open visits whose window ended before ``today``."""

    @abstractmethod
    async def add_all(self, visits: Sequence[Visit]) -> None:
        """Persist new visits all-or-nothing.

        Either every visit is stored or none is; a failure part-way leaves
        no partial visit set behind.
        """

    @abstractmethod
    async def save(self, visit: Visit) -> Visit:
        """Persist changes to an existing visit."""


class SqlVisitRepository(VisitRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, visit_id: str) -> Visit | None:
        async with storage_transaction(self._session_factory, operation="visit.get") as db:
            return await db.get(Visit, visit_id)

    async def list_for_survey(self, survey_id: str) -> list[Visit]:
        stmt = (
            select(Visit)
            .where(Visit.survey_id == survey_id)
            .order_by(Visit.visit_number)
        )
        async with storage_transaction(
            self._session_factory, operation="visit.list_for_survey"
        ) as db:
            return list((await db.execute(stmt)).scalars().all())

    async def list_open_past_window(self, today: date) -> list[Visit]:
        stmt = (
            select(Visit)
            .where(Visit.status.in_(OPEN_STATUSES), Visit.window_end_date < today)
            .order_by(Visit.window_end_date, Visit.visit_id)
        )
        async with storage_transaction(
            self._session_factory, operation="visit.list_open_past_window"
        ) as db:
            return list((await db.execute(stmt)).scalars().all())

    async def add_all(self, visits: Sequence[Visit]) -> None:
        # One transaction: a failing insert rolls back every visit of the batch.
        async with storage_transaction(self._session_factory, operation="visit.add_all") as db:
            db.add_all(list(visits))
            await db.flush()

    async def save(self, visit: Visit) -> Visit:
        async with storage_transaction(self._session_factory, operation="visit.save") as db:
            return await db.merge(visit)
