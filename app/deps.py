from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, TypeAlias

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, utc_now
from app.repositories.deviation_log import DeviationLog, SqlDeviationLog
from app.repositories.draft_repository import DraftRepository, SqlDraftRepository
from app.repositories.examination_store import (
    ExaminationStoreRegistry,
    build_examination_registry,
)
from app.repositories.study_repository import (
    SqlStudyRepository,
    SqlSurveyRepository,
    StudyRepository,
    SurveyRepository,
)
from app.repositories.visit_repository import SqlVisitRepository, VisitRepository
from app.services.activity_log_service import ActivityLogAuditSink, AuditSink
from app.services.draft_synchronizer import DraftSynchronizer
from app.services.examination_progress import ExaminationProgressTracker, bilateral_unless
from app.services.protocol_compliance import ProtocolComplianceEvaluator
from core.settings import Settings, get_settings
from db.session import AsyncSessionLocal


@dataclass
class VisitServices:
    """Repositories and services of the visit core, wired once per process."""

    study_repository: StudyRepository
    survey_repository: SurveyRepository
    visit_repository: VisitRepository
    draft_repository: DraftRepository
    deviation_log: DeviationLog
    registry: ExaminationStoreRegistry
    tracker: ExaminationProgressTracker
    evaluator: ProtocolComplianceEvaluator
    synchronizer: DraftSynchronizer
    audit: AuditSink | None
    clock: Clock


def assemble_services(
    *,
    study_repository: StudyRepository,
    survey_repository: SurveyRepository,
    visit_repository: VisitRepository,
    draft_repository: DraftRepository,
    deviation_log: DeviationLog,
    registry: ExaminationStoreRegistry,
    audit: AuditSink | None,
    settings: Settings,
    clock: Clock = utc_now,
) -> VisitServices:
    tracker = ExaminationProgressTracker(
        registry, bilateral_unless(settings.single_eye_examinations)
    )
    evaluator = ProtocolComplianceEvaluator(
        visit_repository, deviation_log, audit=audit, clock=clock
    )
    synchronizer = DraftSynchronizer(
        visit_repository,
        draft_repository,
        registry,
        tracker,
        evaluator,
        audit=audit,
        clock=clock,
        draft_ttl_days=settings.draft_ttl_days,
    )
    return VisitServices(
        study_repository=study_repository,
        survey_repository=survey_repository,
        visit_repository=visit_repository,
        draft_repository=draft_repository,
        deviation_log=deviation_log,
        registry=registry,
        tracker=tracker,
        evaluator=evaluator,
        synchronizer=synchronizer,
        audit=audit,
        clock=clock,
    )


def build_sql_services(
    session_factory: async_sessionmaker[AsyncSession], settings: Settings
) -> VisitServices:
    return assemble_services(
        study_repository=SqlStudyRepository(session_factory),
        survey_repository=SqlSurveyRepository(session_factory),
        visit_repository=SqlVisitRepository(session_factory),
        draft_repository=SqlDraftRepository(session_factory),
        deviation_log=SqlDeviationLog(session_factory),
        registry=build_examination_registry(settings.examination_types, session_factory),
        audit=ActivityLogAuditSink(session_factory),
        settings=settings,
    )


_services: VisitServices | None = None


def get_services() -> VisitServices:
    # Built lazily so importing the app does not require a database
    global _services
    if _services is None:
        _services = build_sql_services(AsyncSessionLocal, get_settings())
    return _services


def get_actor(x_actor: Annotated[str | None, Header()] = None) -> str | None:
    return x_actor


ServicesDep: TypeAlias = Annotated[VisitServices, Depends(get_services)]
ActorDep: TypeAlias = Annotated[str | None, Depends(get_actor)]
