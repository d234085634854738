from __future__ import annotations

"""Versioned draft store contract and its SQLAlchemy implementation.

The store owns the ``version`` counter: every successful write stores
``previous version + 1`` (or ``1`` for a new draft). ``compare_and_set``
only writes when the stored version still equals the caller's expected
version, which is the whole optimistic-concurrency mechanism; no lock is
held between requests.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.utils import storage_transaction
from app.models.draft import VisitDraft


class DraftRepository(ABC):
    @abstractmethod
    async def get(self, visit_id: str) -> VisitDraft | None:
        """Return the stored draft of a visit, or ``None``."""

    @abstractmethod
    async def replace(self, draft: VisitDraft) -> VisitDraft:
        """Store ``draft`` unconditionally and return it with its new version."""

    @abstractmethod
    async def compare_and_set(
        self, draft: VisitDraft, expected_version: int
    ) -> VisitDraft | None:
        """Store ``draft`` only if the stored version equals ``expected_version``.

        Returns:
            The stored draft with its new version, or ``None`` when the
            stored draft is missing or has moved on.
        """

    @abstractmethod
    async def delete(self, visit_id: str) -> None:
        """Remove the draft of a visit (no-op when absent)."""

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        """Remove every draft whose ``expires_at`` is at or before ``now``.

        Returns:
            Number of drafts removed.
        """


def _draft_values(draft: VisitDraft) -> dict[str, Any]:
    return {
        "visit_id": draft.visit_id,
        "form_data": draft.form_data,
        "current_step": draft.current_step,
        "total_steps": draft.total_steps,
        "completed_steps": draft.completed_steps,
        "examination_order": draft.examination_order,
        "last_saved_at": draft.last_saved_at,
        "auto_saved": draft.auto_saved,
        "expires_at": draft.expires_at,
    }


class SqlDraftRepository(DraftRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, visit_id: str) -> VisitDraft | None:
        async with storage_transaction(self._session_factory, operation="draft.get") as db:
            return await db.get(VisitDraft, visit_id)

    async def replace(self, draft: VisitDraft) -> VisitDraft:
        values = _draft_values(draft)
        updates = {k: v for k, v in values.items() if k != "visit_id"}
        updates["version"] = VisitDraft.__table__.c.version + 1
        updates["updated_at"] = datetime.now(timezone.utc)
        stmt = (
            pg_insert(VisitDraft)
            .values(**values, version=1)
            .on_conflict_do_update(index_elements=["visit_id"], set_=updates)
            .returning(VisitDraft)
        )
        async with storage_transaction(self._session_factory, operation="draft.replace") as db:
            result = await db.scalars(
                stmt, execution_options={"populate_existing": True}
            )
            return result.one()

    async def compare_and_set(
        self, draft: VisitDraft, expected_version: int
    ) -> VisitDraft | None:
        values = _draft_values(draft)
        values.pop("visit_id")
        stmt = (
            update(VisitDraft)
            .where(
                VisitDraft.visit_id == draft.visit_id,
                VisitDraft.version == expected_version,
            )
            .values(**values, version=expected_version + 1)
            .returning(VisitDraft)
            .execution_options(synchronize_session=False)
        )
        async with storage_transaction(
            self._session_factory, operation="draft.compare_and_set"
        ) as db:
            return (await db.scalars(stmt)).first()

    async def delete(self, visit_id: str) -> None:
        async with storage_transaction(self._session_factory, operation="draft.delete") as db:
            await db.execute(delete(VisitDraft).where(VisitDraft.visit_id == visit_id))

    async def delete_expired(self, now: datetime) -> int:
        stmt = delete(VisitDraft).where(
            VisitDraft.expires_at.is_not(None), VisitDraft.expires_at <= now
        )
        async with storage_transaction(
            self._session_factory, operation="draft.delete_expired"
        ) as db:
            result = await db.execute(stmt)
            return result.rowcount or 0
