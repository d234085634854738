from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, status

from app.deps import ActorDep, ServicesDep
from app.schemas.visit import (
    DeviationRead,
    ExaminationComparisonEntryRead,
    ExaminationComparisonRead,
    ExaminationConfigurationRead,
    ExaminationProgressRead,
    RescheduleRead,
    SurveyProgressRead,
    SurveyWithdraw,
    SurveyWithdrawalRead,
    VisitCancel,
    VisitComplianceRead,
    VisitGenerationRead,
    VisitRead,
    VisitReschedule,
    VisitStatisticsRead,
)
from app.services.errors import StudyNotFoundError, SurveyNotFoundError
from app.services.protocol_compliance import ComplianceEvaluation
from app.services.survey_progress_service import (
    compare_examination_across_visits,
    examination_configuration,
    next_visit_due,
    refresh_survey_progress,
    visit_statistics,
    withdraw_survey,
)
from app.services.visit_template_expansion import generate_visits_for_survey


router = APIRouter()


def _compliance_read(evaluation: ComplianceEvaluation) -> VisitComplianceRead:
    base = VisitRead.model_validate(evaluation.visit)
    return VisitComplianceRead(**base.model_dump(), timing=evaluation.timing.value)


@router.post(
    "/surveys/{survey_id}/visits",
    response_model=VisitGenerationRead,
    status_code=status.HTTP_201_CREATED,
)
async def generate_survey_visits(
    survey_id: str, services: ServicesDep, actor: ActorDep
) -> VisitGenerationRead:
    """Expand the study's visit template into the survey's visits."""

    survey = await services.survey_repository.get(survey_id)
    if survey is None:
        raise SurveyNotFoundError(survey_id)
    study = await services.study_repository.get(survey.clinical_study_id)
    if study is None:
        raise StudyNotFoundError(survey.clinical_study_id)
    entries = await services.study_repository.get_visit_template(study.clinical_study_id)

    visits = await generate_visits_for_survey(
        survey,
        entries,
        visit_repository=services.visit_repository,
        survey_repository=services.survey_repository,
        audit=services.audit,
        actor=actor,
    )
    return VisitGenerationRead(
        survey_id=survey_id,
        expected_completion_date=survey.expected_completion_date,
        visits=[VisitRead.model_validate(v) for v in visits],
    )


@router.get("/surveys/{survey_id}/visits", response_model=list[VisitComplianceRead])
async def list_survey_visits(
    survey_id: str, services: ServicesDep
) -> list[VisitComplianceRead]:
    """List a survey's visits, reclassifying any whose window has ended."""

    if await services.survey_repository.get(survey_id) is None:
        raise SurveyNotFoundError(survey_id)
    visits = await services.visit_repository.list_for_survey(survey_id)
    evaluations = await services.evaluator.evaluate_many(visits)
    return [_compliance_read(e) for e in evaluations]


@router.get("/surveys/{survey_id}/progress", response_model=SurveyProgressRead)
async def get_survey_progress(survey_id: str, services: ServicesDep) -> SurveyProgressRead:
    visits = await services.visit_repository.list_for_survey(survey_id)
    await services.evaluator.evaluate_many(visits)
    survey = await refresh_survey_progress(
        survey_id,
        visit_repository=services.visit_repository,
        survey_repository=services.survey_repository,
    )
    visits = await services.visit_repository.list_for_survey(survey_id)
    upcoming = next_visit_due(visits, services.evaluator.today())
    return SurveyProgressRead(
        survey_id=survey.survey_id,
        status=survey.status,
        total_visits=survey.total_visits,
        completed_visits=survey.completed_visits,
        completion_percentage=survey.completion_percentage,
        expected_completion_date=survey.expected_completion_date,
        next_visit=VisitRead.model_validate(upcoming) if upcoming else None,
        statistics=VisitStatisticsRead.model_validate(visit_statistics(visits)),
    )


@router.post("/surveys/{survey_id}/withdraw", response_model=SurveyWithdrawalRead)
async def withdraw_survey_route(
    survey_id: str, payload: SurveyWithdraw, services: ServicesDep, actor: ActorDep
) -> SurveyWithdrawalRead:
    """Withdraw the patient and cancel the survey's open visits."""

    withdrawal = await withdraw_survey(
        survey_id,
        evaluator=services.evaluator,
        survey_repository=services.survey_repository,
        reason=payload.reason,
        audit=services.audit,
        actor=actor,
    )
    survey = withdrawal.survey
    return SurveyWithdrawalRead(
        survey_id=survey.survey_id,
        status=survey.status,
        total_visits=survey.total_visits,
        completed_visits=survey.completed_visits,
        completion_percentage=survey.completion_percentage,
        cancelled_visits=withdrawal.cancelled_visits,
    )


@router.get(
    "/surveys/{survey_id}/examinations/{examination_id}/comparison",
    response_model=ExaminationComparisonRead,
)
async def compare_survey_examination(
    survey_id: str,
    examination_id: str,
    services: ServicesDep,
    eyeside: Literal["right", "left"] | None = None,
) -> ExaminationComparisonRead:
    """Stored results of one examination across the survey's visits."""

    entries = await compare_examination_across_visits(
        survey_id,
        examination_id,
        visit_repository=services.visit_repository,
        survey_repository=services.survey_repository,
        registry=services.registry,
        eyeside=eyeside,
    )
    return ExaminationComparisonRead(
        survey_id=survey_id,
        examination_id=examination_id,
        visits=[ExaminationComparisonEntryRead.model_validate(e) for e in entries],
    )


@router.get("/visits/{visit_id}", response_model=VisitComplianceRead)
async def get_visit(visit_id: str, services: ServicesDep) -> VisitComplianceRead:
    return _compliance_read(await services.evaluator.evaluate_by_id(visit_id))


@router.get("/visits/{visit_id}/deviations", response_model=list[DeviationRead])
async def list_visit_deviations(visit_id: str, services: ServicesDep) -> list[DeviationRead]:
    await services.evaluator.evaluate_by_id(visit_id)
    deviations = await services.deviation_log.list_for_visit(visit_id)
    return [DeviationRead.model_validate(d) for d in deviations]


@router.get(
    "/visits/{visit_id}/examinations", response_model=ExaminationConfigurationRead
)
async def get_visit_examinations(
    visit_id: str, services: ServicesDep
) -> ExaminationConfigurationRead:
    visit = await services.evaluator.get_visit(visit_id)
    return ExaminationConfigurationRead.model_validate(examination_configuration(visit))


@router.post(
    "/visits/{visit_id}/examinations/{examination_id}/skip",
    response_model=ExaminationProgressRead,
)
async def skip_visit_examination(
    visit_id: str, examination_id: str, services: ServicesDep, actor: ActorDep
) -> ExaminationProgressRead:
    """Skip an optional examination of a visit."""

    progress = await services.synchronizer.skip_examination(
        visit_id, examination_id, actor=actor
    )
    return ExaminationProgressRead(
        visit_id=visit_id,
        completion_percentage=progress.completion_percentage,
        completed_examinations=progress.completed_examinations,
        remaining_required=progress.remaining_required,
    )


@router.post("/visits/{visit_id}/cancel", response_model=VisitRead)
async def cancel_visit(
    visit_id: str, payload: VisitCancel, services: ServicesDep, actor: ActorDep
) -> VisitRead:
    visit = await services.evaluator.cancel_visit(
        visit_id, reason=payload.reason, actor=actor
    )
    await refresh_survey_progress(
        visit.survey_id,
        visit_repository=services.visit_repository,
        survey_repository=services.survey_repository,
    )
    return VisitRead.model_validate(visit)


@router.post("/visits/{visit_id}/reschedule", response_model=RescheduleRead)
async def reschedule_visit(
    visit_id: str, payload: VisitReschedule, services: ServicesDep, actor: ActorDep
) -> RescheduleRead:
    visit, compliant = await services.evaluator.reschedule_visit(
        visit_id, payload.new_date, reason=payload.reason, actor=actor
    )
    return RescheduleRead(
        visit=VisitRead.model_validate(visit), protocol_compliant=compliant
    )
