from __future__ import annotations

"""Study and survey store contracts.

The visit core reads study templates and survey baselines and writes back
only survey aggregates (expected completion date, progress counters).
"""

from abc import ABC, abstractmethod

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.utils import storage_transaction
from app.models.clinical_study import ClinicalStudy, VisitTemplateEntry
from app.models.survey import Survey


class StudyRepository(ABC):
    @abstractmethod
    async def get(self, clinical_study_id: str) -> ClinicalStudy | None:
        """Return a study by id, or ``None``."""

    @abstractmethod
    async def get_visit_template(self, clinical_study_id: str) -> list[VisitTemplateEntry]:
        """Return the study's template entries ordered by visit number."""


class SurveyRepository(ABC):
    @abstractmethod
    async def get(self, survey_id: str) -> Survey | None:
        """Return a survey by id, or ``None``."""

    @abstractmethod
    async def save(self, survey: Survey) -> Survey:
        """Persist survey aggregate changes."""


class SqlStudyRepository(StudyRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, clinical_study_id: str) -> ClinicalStudy | None:
        async with storage_transaction(self._session_factory, operation="study.get") as db:
            return await db.get(ClinicalStudy, clinical_study_id)

    async def get_visit_template(self, clinical_study_id: str) -> list[VisitTemplateEntry]:
        stmt = (
            select(VisitTemplateEntry)
            .where(VisitTemplateEntry.clinical_study_id == clinical_study_id)
            .order_by(VisitTemplateEntry.visit_number)
        )
        async with storage_transaction(
            self._session_factory, operation="study.get_visit_template"
        ) as db:
            return list((await db.execute(stmt)).scalars().all())


class SqlSurveyRepository(SurveyRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, survey_id: str) -> Survey | None:
        async with storage_transaction(self._session_factory, operation="survey.get") as db:
            return await db.get(Survey, survey_id)

    async def save(self, survey: Survey) -> Survey:
        async with storage_transaction(self._session_factory, operation="survey.save") as db:
            return await db.merge(survey)
