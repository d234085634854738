"""Survey-level aggregates derived from a survey's visits.

Aggregates are recomputed by re-reading all visits of a survey; no lock is
held across visits.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Sequence

from app.core.logging import logger
from app.models.survey import Survey
from app.models.visit import Visit
from app.repositories.examination_store import EYESIDES, ExaminationStoreRegistry
from app.repositories.study_repository import SurveyRepository
from app.repositories.visit_repository import VisitRepository
from app.services.activity_log_service import AuditSink, emit_audit
from app.services.errors import (
    SurveyNotActiveError,
    SurveyNotFoundError,
    UnknownExaminationError,
)
from app.services.examination_progress import round_half_up
from app.services.protocol_compliance import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    ProtocolComplianceEvaluator,
    VisitStatusCode,
    transition_visit,
)


@dataclass(frozen=True)
class VisitStatistics:
    total_visits: int
    by_status: dict[str, int]
    average_completion: int
    total_examinations: int
    completed_examinations: int
    skipped_examinations: int
    examination_completion_rate: int
    deviation_count: int


@dataclass(frozen=True)
class ExaminationConfiguration:
    visit_id: str
    examination_order: list[str]
    required_examinations: list[str]
    optional_examinations: list[str]
    completed_examinations: list[str]
    skipped_examinations: list[str]
    remaining_examinations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExaminationComparisonEntry:
    visit_id: str
    visit_number: int
    visit_name: str | None
    scheduled_date: date
    actual_date: date | None
    right: dict[str, Any] | None = None
    left: dict[str, Any] | None = None


@dataclass(frozen=True)
class SurveyWithdrawal:
    survey: Survey
    cancelled_visits: list[str]


def visit_statistics(visits: Sequence[Visit]) -> VisitStatistics:
    by_status = Counter(v.status for v in visits)
    total_exams = sum(len(v.examination_order or []) for v in visits)
    completed = sum(len(v.completed_examinations or []) for v in visits)
    skipped = sum(len(v.skipped_examinations or []) for v in visits)
    average = (
        round_half_up(sum(v.completion_percentage or 0 for v in visits) / len(visits))
        if visits
        else 0
    )
    return VisitStatistics(
        total_visits=len(visits),
        by_status={status.value: by_status.get(status.value, 0) for status in VisitStatusCode},
        average_completion=average,
        total_examinations=total_exams,
        completed_examinations=completed,
        skipped_examinations=skipped,
        examination_completion_rate=(
            round_half_up(100 * completed / total_exams) if total_exams else 0
        ),
        deviation_count=sum(len(v.protocol_deviations or []) for v in visits),
    )


def next_visit_due(visits: Sequence[Visit], today: date) -> Visit | None:
    """Return the earliest open visit whose window has not ended yet."""

    candidates = [
        v
        for v in visits
        if v.status not in TERMINAL_STATUSES and v.window_end_date >= today
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda v: (v.scheduled_date, v.visit_number))


def examination_configuration(visit: Visit) -> ExaminationConfiguration:
    done = set(visit.completed_examinations or []) | set(visit.skipped_examinations or [])
    return ExaminationConfiguration(
        visit_id=visit.visit_id,
        examination_order=list(visit.examination_order or []),
        required_examinations=list(visit.required_examinations or []),
        optional_examinations=list(visit.optional_examinations or []),
        completed_examinations=list(visit.completed_examinations or []),
        skipped_examinations=list(visit.skipped_examinations or []),
        remaining_examinations=[e for e in visit.examination_order or [] if e not in done],
    )


async def refresh_survey_progress(
    survey_id: str,
    *,
    visit_repository: VisitRepository,
    survey_repository: SurveyRepository,
) -> Survey:
    """Recompute and store the progress counters of a survey.

    The survey is marked completed once every visit is terminal and at least
    one of them was completed. Withdrawn surveys keep their status.

    Raises:
        SurveyNotFoundError: If the survey does not exist.
    """

    survey = await survey_repository.get(survey_id)
    if survey is None:
        raise SurveyNotFoundError(survey_id)

    visits = await visit_repository.list_for_survey(survey_id)
    completed = sum(1 for v in visits if v.status == VisitStatusCode.COMPLETED)
    survey.total_visits = len(visits)
    survey.completed_visits = completed
    survey.completion_percentage = (
        round_half_up(100 * completed / len(visits)) if visits else 0
    )

    all_closed = bool(visits) and all(v.status in TERMINAL_STATUSES for v in visits)
    if survey.status == Survey.Status.ACTIVE and all_closed and completed:
        survey.status = Survey.Status.COMPLETED
        logger.info("Survey %s completed (%d/%d visits)", survey_id, completed, len(visits))

    return await survey_repository.save(survey)


async def withdraw_survey(
    survey_id: str,
    *,
    evaluator: ProtocolComplianceEvaluator,
    survey_repository: SurveyRepository,
    reason: str | None = None,
    audit: AuditSink | None = None,
    actor: str | None = None,
) -> SurveyWithdrawal:
    """Withdraw a patient from the study and cancel the survey's open visits.

    Each visit is evaluated first, so a visit whose window already ended is
    recorded as missed rather than cancelled. Visits are cancelled before the
    survey status changes; a failed run can be repeated.

    Raises:
        SurveyNotFoundError: If the survey does not exist.
        SurveyNotActiveError: If the survey is already completed or withdrawn.
    """

    survey = await survey_repository.get(survey_id)
    if survey is None:
        raise SurveyNotFoundError(survey_id)
    if survey.status != Survey.Status.ACTIVE:
        raise SurveyNotActiveError(survey_id, survey.status)

    visit_reason = f"Survey withdrawn: {reason}" if reason else "Survey withdrawn"
    cancelled: list[str] = []
    for visit in await evaluator.visit_repository.list_for_survey(survey_id):
        await evaluator.evaluate(visit)
        if visit.status not in OPEN_STATUSES:
            continue
        transition_visit(visit, VisitStatusCode.CANCELLED, reason=visit_reason)
        await evaluator.visit_repository.save(visit)
        cancelled.append(visit.visit_id)

    survey.status = Survey.Status.WITHDRAWN
    await survey_repository.save(survey)
    survey = await refresh_survey_progress(
        survey_id,
        visit_repository=evaluator.visit_repository,
        survey_repository=survey_repository,
    )
    logger.info("Survey %s withdrawn; %d visits cancelled", survey_id, len(cancelled))
    await emit_audit(
        audit,
        action="survey_withdrawn",
        target_type="survey",
        target_id=survey_id,
        details={"reason": reason, "cancelled_visits": cancelled},
        actor=actor,
    )
    return SurveyWithdrawal(survey=survey, cancelled_visits=cancelled)


async def compare_examination_across_visits(
    survey_id: str,
    examination_id: str,
    *,
    visit_repository: VisitRepository,
    survey_repository: SurveyRepository,
    registry: ExaminationStoreRegistry,
    eyeside: str | None = None,
) -> list[ExaminationComparisonEntry]:
    """Stored results of one examination for every visit of a survey that has it.

    Args:
        survey_id: Survey whose visits are compared.
        examination_id: Examination type to read.
        visit_repository: Visit store.
        survey_repository: Survey store.
        registry: Examination stores keyed by examination id.
        eyeside: Restrict the result to ``"right"`` or ``"left"``.

    Returns:
        One entry per visit configuring the examination, in visit order.
        Sides without stored data are ``None``.

    Raises:
        SurveyNotFoundError: If the survey does not exist.
        UnknownExaminationError: If no store serves ``examination_id``.
    """

    if await survey_repository.get(survey_id) is None:
        raise SurveyNotFoundError(survey_id)
    store = registry.get(examination_id)
    if store is None:
        raise UnknownExaminationError(survey_id, examination_id, owner="survey")

    visits = [
        v
        for v in await visit_repository.list_for_survey(survey_id)
        if examination_id in (v.examination_order or [])
    ]
    stored = await store.compare_across_visits([v.visit_id for v in visits])
    sides = (eyeside,) if eyeside else EYESIDES

    entries = []
    for visit in visits:
        data = stored.get(visit.visit_id, {})
        entries.append(
            ExaminationComparisonEntry(
                visit_id=visit.visit_id,
                visit_number=visit.visit_number,
                visit_name=visit.visit_name,
                scheduled_date=visit.scheduled_date,
                actual_date=visit.actual_date,
                **{side: data.get(side) for side in sides},
            )
        )
    return entries
