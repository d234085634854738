from __future__ import annotations

"""Per-examination-type stores and the registry that dispatches to them.

Each examination type (VAS, lens inspection, ...) has its own independently
addressable store. The core never branches on examination identity: it looks
the store up in an :class:`ExaminationStoreRegistry` built once at startup.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping, TypeAlias

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.utils import storage_transaction
from app.models.examination_record import ExaminationRecord

EYESIDES: tuple[str, ...] = ("right", "left")

# {"right": {...}, "left": {...}}; either side may be absent
EyeData: TypeAlias = dict[str, dict[str, Any]]


class ExaminationStore(ABC):
    """Capability interface of one examination type's storage."""

    examination_id: str

    @abstractmethod
    async def save_both_eyes(
        self,
        visit_id: str,
        right: dict[str, Any] | None = None,
        left: dict[str, Any] | None = None,
    ) -> EyeData:
        """Persist the given eye sides, keyed by ``(visit_id, eyeside)``.

        Sides that already have a stored record are left untouched so a
        retried submission never rewrites accepted data.

        Returns:
            The stored data for both eyes after the write.
        """

    @abstractmethod
    async def get_both_eyes(self, visit_id: str) -> EyeData:
        """Return the stored eye data of one visit (empty dict if none)."""

    @abstractmethod
    async def compare_across_visits(self, visit_ids: Iterable[str]) -> dict[str, EyeData]:
        """Return stored eye data per visit for longitudinal comparison."""


class SqlExaminationStore(ExaminationStore):
    """Examination store backed by the shared ``examination_records`` table."""

    def __init__(
        self,
        examination_id: str,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.examination_id = examination_id
        self._session_factory = session_factory

    async def save_both_eyes(
        self,
        visit_id: str,
        right: dict[str, Any] | None = None,
        left: dict[str, Any] | None = None,
    ) -> EyeData:
        incoming = {"right": right, "left": left}
        async with storage_transaction(
            self._session_factory, operation=f"examination.{self.examination_id}.save"
        ) as db:
            existing = await self._load(db, [visit_id])
            stored = existing.get(visit_id, {})
            for side in EYESIDES:
                data = incoming[side]
                if not data or side in stored:
                    continue
                db.add(
                    ExaminationRecord(
                        visit_id=visit_id,
                        examination_id=self.examination_id,
                        eyeside=side,
                        data=data,
                    )
                )
                stored[side] = data
            return stored

    async def get_both_eyes(self, visit_id: str) -> EyeData:
        async with storage_transaction(
            self._session_factory, operation=f"examination.{self.examination_id}.get"
        ) as db:
            return (await self._load(db, [visit_id])).get(visit_id, {})

    async def compare_across_visits(self, visit_ids: Iterable[str]) -> dict[str, EyeData]:
        ids = list(visit_ids)
        if not ids:
            return {}
        async with storage_transaction(
            self._session_factory, operation=f"examination.{self.examination_id}.compare"
        ) as db:
            loaded = await self._load(db, ids)
        return {visit_id: loaded.get(visit_id, {}) for visit_id in ids}

    async def _load(self, db: AsyncSession, visit_ids: list[str]) -> dict[str, EyeData]:
        stmt = select(ExaminationRecord).where(
            ExaminationRecord.examination_id == self.examination_id,
            ExaminationRecord.visit_id.in_(visit_ids),
        )
        result: dict[str, EyeData] = {}
        for record in (await db.execute(stmt)).scalars().all():
            result.setdefault(record.visit_id, {})[record.eyeside] = record.data
        return result


class ExaminationStoreRegistry:
    """Lookup table from examination id to its store."""

    def __init__(self, stores: Mapping[str, ExaminationStore]) -> None:
        self._stores = dict(stores)

    def get(self, examination_id: str) -> ExaminationStore | None:
        return self._stores.get(examination_id)

    def __contains__(self, examination_id: object) -> bool:
        return examination_id in self._stores


def build_examination_registry(
    examination_ids: Iterable[str],
    session_factory: async_sessionmaker[AsyncSession],
) -> ExaminationStoreRegistry:
    return ExaminationStoreRegistry(
        {
            exam_id: SqlExaminationStore(exam_id, session_factory)
            for exam_id in examination_ids
        }
    )
