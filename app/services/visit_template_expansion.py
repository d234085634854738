from __future__ import annotations

"""Expansion of a study's visit template into concrete survey visits.

The template is validated as a whole before any visit is built, entries are
expanded in ascending visit number order, and the resulting visit set is
persisted all-or-nothing.
"""

from collections import Counter
from datetime import date, datetime, timedelta
from typing import Sequence

from app.core.logging import logger
from app.models.clinical_study import VisitTemplateEntry
from app.models.survey import Survey
from app.models.visit import Visit
from app.repositories.study_repository import SurveyRepository
from app.repositories.visit_repository import VisitRepository
from app.services.activity_log_service import AuditSink, emit_audit
from app.services.errors import (
    DuplicateVisitNumberError,
    InvalidTemplateError,
    VisitsAlreadyGeneratedError,
)
from app.services.visit_window import check_offsets, compute_window, normalize_baseline


def validate_template(entries: Sequence[VisitTemplateEntry]) -> None:
    """Check the template invariants of a study.

    Args:
        entries: All template entries of one study.

    Raises:
        DuplicateVisitNumberError: If a visit number is used twice.
        InvalidTemplateError: If an entry has a negative day offset, an empty
            examination order, no required or optional examination, an
            examination missing from its order, or an examination that is
            both required and optional.
    """

    if not entries:
        raise InvalidTemplateError("Visit template has no entries")

    counts = Counter(entry.visit_number for entry in entries)
    duplicates = sorted(number for number, count in counts.items() if count > 1)
    if duplicates:
        raise DuplicateVisitNumberError(duplicates[0])

    for entry in sorted(entries, key=lambda e: e.visit_number):
        check_offsets(entry)
        order = list(entry.examination_order or [])
        required = set(entry.required_examinations or [])
        optional = set(entry.optional_examinations or [])

        if not order:
            raise InvalidTemplateError(
                f"Visit {entry.visit_number} ({entry.visit_name}) has an empty examination order",
                visit_number=entry.visit_number,
            )
        if not required and not optional:
            raise InvalidTemplateError(
                f"Visit {entry.visit_number} ({entry.visit_name}) has no required or optional examinations",
                visit_number=entry.visit_number,
            )
        both = required & optional
        if both:
            raise InvalidTemplateError(
                f"Visit {entry.visit_number} lists {sorted(both)} as both required and optional",
                visit_number=entry.visit_number,
            )
        missing = (required | optional) - set(order)
        if missing:
            raise InvalidTemplateError(
                f"Visit {entry.visit_number} examination order is missing {sorted(missing)}",
                visit_number=entry.visit_number,
            )
        if len(set(order)) != len(order):
            raise InvalidTemplateError(
                f"Visit {entry.visit_number} examination order contains duplicates",
                visit_number=entry.visit_number,
            )


def expected_completion_date(
    baseline: date | datetime, entries: Sequence[VisitTemplateEntry]
) -> date:
    """Return the latest date any visit of the template may still be conducted."""

    latest = max(
        entry.scheduled_days_from_baseline + entry.window_days_after for entry in entries
    )
    return normalize_baseline(baseline) + timedelta(days=latest)


def build_visit_id(survey_id: str, visit_number: int) -> str:
    return f"{survey_id}-V{visit_number:03d}"


def expand_template(
    entries: Sequence[VisitTemplateEntry], survey: Survey
) -> list[Visit]:
    """Build (but do not persist) the visits of a survey.

    Args:
        entries: Validated template entries.
        survey: Survey providing ids and the baseline date.

    Returns:
        New ``Visit`` instances in ascending visit number order.
    """

    visits: list[Visit] = []
    for entry in sorted(entries, key=lambda e: e.visit_number):
        window = compute_window(survey.baseline_date, entry)
        visits.append(
            Visit(
                visit_id=build_visit_id(survey.survey_id, entry.visit_number),
                survey_id=survey.survey_id,
                patient_id=survey.patient_id,
                clinical_study_id=survey.clinical_study_id,
                organization_id=survey.organization_id,
                visit_number=entry.visit_number,
                visit_name=entry.visit_name,
                visit_type=entry.visit_type,
                scheduled_date=window.scheduled_date,
                window_start_date=window.window_start_date,
                window_end_date=window.window_end_date,
                actual_date=None,
                status="scheduled",
                status_reason=None,
                examination_order=list(entry.examination_order),
                required_examinations=list(entry.required_examinations or []),
                optional_examinations=list(entry.optional_examinations or []),
                completed_examinations=[],
                skipped_examinations=[],
                completion_percentage=0,
                protocol_deviations=[],
                conducted_by=None,
            )
        )
    return visits


async def generate_visits_for_survey(
    survey: Survey,
    entries: Sequence[VisitTemplateEntry],
    *,
    visit_repository: VisitRepository,
    survey_repository: SurveyRepository,
    audit: AuditSink | None = None,
    actor: str | None = None,
) -> list[Visit]:
    """Validate, expand and persist the visits of one survey.

    The visit set is written through :meth:`VisitRepository.add_all`, which
    is all-or-nothing. The survey's ``expected_completion_date`` and
    ``total_visits`` are updated afterwards.

    Raises:
        VisitsAlreadyGeneratedError: If the survey already has visits.
        InvalidTemplateError: On template defects (nothing is persisted).
    """

    validate_template(entries)

    existing = await visit_repository.list_for_survey(survey.survey_id)
    if existing:
        raise VisitsAlreadyGeneratedError(survey.survey_id)

    visits = expand_template(entries, survey)
    await visit_repository.add_all(visits)
    logger.info(
        "Generated %d visits for survey %s (baseline %s)",
        len(visits),
        survey.survey_id,
        survey.baseline_date.isoformat(),
    )

    survey.expected_completion_date = expected_completion_date(
        survey.baseline_date, entries
    )
    survey.total_visits = len(visits)
    await survey_repository.save(survey)

    await emit_audit(
        audit,
        action="visits_generated",
        target_type="survey",
        target_id=survey.survey_id,
        details={
            "visit_ids": [v.visit_id for v in visits],
            "expected_completion_date": survey.expected_completion_date.isoformat(),
        },
        actor=actor,
    )
    return visits
