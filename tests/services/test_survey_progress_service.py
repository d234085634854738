import pytest
from datetime import date

from app.services.errors import (
    SurveyNotActiveError,
    SurveyNotFoundError,
    UnknownExaminationError,
)
from app.services.survey_progress_service import (
    compare_examination_across_visits,
    examination_configuration,
    next_visit_due,
    refresh_survey_progress,
    visit_statistics,
    withdraw_survey,
)
from tests.utils.factories import make_entry, make_survey, make_visit
from tests.utils.fakes import (
    FakeSurveyRepository,
    FakeVisitRepository,
    RecordingAuditSink,
    build_fake_services,
    utc,
)


def _visits():
    first = make_visit(make_entry(1, days=7), status="completed", completion_percentage=100)
    first.completed_examinations = ["A", "B", "C"]
    second = make_visit(make_entry(2, days=30), status="missed")
    second.protocol_deviations = ["dev-1"]
    third = make_visit(make_entry(3, days=60), completion_percentage=33)
    third.skipped_examinations = ["C"]
    return [first, second, third]


def test_visit_statistics_counts_statuses_and_examinations():
    stats = visit_statistics(_visits())

    assert stats.total_visits == 3
    assert stats.by_status["completed"] == 1
    assert stats.by_status["missed"] == 1
    assert stats.by_status["scheduled"] == 1
    assert stats.by_status["cancelled"] == 0
    assert stats.average_completion == 44
    assert stats.total_examinations == 9
    assert stats.completed_examinations == 3
    assert stats.skipped_examinations == 1
    assert stats.examination_completion_rate == 33
    assert stats.deviation_count == 1


def test_visit_statistics_of_no_visits():
    stats = visit_statistics([])

    assert stats.total_visits == 0
    assert stats.average_completion == 0
    assert stats.examination_completion_rate == 0


def test_next_visit_due_skips_terminal_and_past_windows():
    visits = _visits()

    upcoming = next_visit_due(visits, date(2024, 2, 1))

    assert upcoming.visit_number == 3
    assert next_visit_due(visits, date(2024, 6, 1)) is None


def test_examination_configuration_lists_remaining():
    visit = make_visit()
    visit.completed_examinations = ["A"]
    visit.skipped_examinations = ["C"]

    config = examination_configuration(visit)

    assert config.required_examinations == ["A", "B"]
    assert config.remaining_examinations == ["B"]


@pytest.mark.asyncio
async def test_refresh_survey_progress_completes_closed_survey():
    visits = _visits()
    visits[2].status = "cancelled"
    visit_repo = FakeVisitRepository(visits)
    survey_repo = FakeSurveyRepository([make_survey()])

    survey = await refresh_survey_progress(
        "SURVEY-1", visit_repository=visit_repo, survey_repository=survey_repo
    )

    assert survey.total_visits == 3
    assert survey.completed_visits == 1
    assert survey.completion_percentage == 33
    assert survey.status == "completed"


@pytest.mark.asyncio
async def test_refresh_survey_progress_keeps_open_survey_active():
    visit_repo = FakeVisitRepository(_visits())
    survey_repo = FakeSurveyRepository([make_survey()])

    survey = await refresh_survey_progress(
        "SURVEY-1", visit_repository=visit_repo, survey_repository=survey_repo
    )

    assert survey.status == "active"
    assert survey_repo.surveys["SURVEY-1"].completed_visits == 1


@pytest.mark.asyncio
async def test_refresh_unknown_survey():
    with pytest.raises(SurveyNotFoundError):
        await refresh_survey_progress(
            "missing",
            visit_repository=FakeVisitRepository(),
            survey_repository=FakeSurveyRepository(),
        )


def _withdrawal_services(now):
    audit = RecordingAuditSink()
    first = make_visit(make_entry(1, days=7), status="completed", completion_percentage=67)
    first.completed_examinations = ["A", "B"]
    services, stores = build_fake_services(
        now=now,
        visits=[first, make_visit(make_entry(2, days=30)), make_visit(make_entry(3, days=60))],
        surveys=[make_survey()],
        audit=audit,
    )
    return services, stores, audit


@pytest.mark.asyncio
async def test_withdraw_survey_cancels_open_visits_only():
    services, _, audit = _withdrawal_services(utc(2024, 2, 15))
    visits = services.visit_repository.visits

    withdrawal = await withdraw_survey(
        "SURVEY-1",
        evaluator=services.evaluator,
        survey_repository=services.survey_repository,
        reason="moved away",
        audit=audit,
        actor="coordinator",
    )

    assert withdrawal.cancelled_visits == ["SURVEY-1-V003"]
    assert visits["SURVEY-1-V001"].status == "completed"
    # V002's window ended on 2024-02-11
    assert visits["SURVEY-1-V002"].status == "missed"
    assert visits["SURVEY-1-V003"].status == "cancelled"
    assert visits["SURVEY-1-V003"].status_reason == "Survey withdrawn: moved away"
    assert withdrawal.survey.status == "withdrawn"
    assert (withdrawal.survey.completed_visits, withdrawal.survey.total_visits) == (1, 3)
    assert audit.events[-1]["action"] == "survey_withdrawn"
    assert audit.events[-1]["details"]["cancelled_visits"] == ["SURVEY-1-V003"]


@pytest.mark.asyncio
async def test_withdrawn_survey_cannot_be_withdrawn_again():
    services, _, _ = _withdrawal_services(utc(2024, 1, 20))
    kwargs = {"evaluator": services.evaluator, "survey_repository": services.survey_repository}
    await withdraw_survey("SURVEY-1", **kwargs)

    with pytest.raises(SurveyNotActiveError):
        await withdraw_survey("SURVEY-1", **kwargs)
    with pytest.raises(SurveyNotFoundError):
        await withdraw_survey("missing", **kwargs)

    assert services.survey_repository.surveys["SURVEY-1"].status == "withdrawn"


@pytest.mark.asyncio
async def test_compare_examination_across_visits_in_visit_order():
    services, stores, _ = _withdrawal_services(utc(2024, 2, 9))
    later = make_visit(make_entry(4, days=90, required=("B",), optional=()))
    await services.visit_repository.add_all([later])
    await stores["A"].save_both_eyes("SURVEY-1-V002", right={"acuity": "20/40"})
    await stores["A"].save_both_eyes(
        "SURVEY-1-V001", right={"acuity": "20/20"}, left={"acuity": "20/25"}
    )
    kwargs = {
        "visit_repository": services.visit_repository,
        "survey_repository": services.survey_repository,
        "registry": services.registry,
    }

    entries = await compare_examination_across_visits("SURVEY-1", "A", **kwargs)
    left_only = await compare_examination_across_visits("SURVEY-1", "A", eyeside="left", **kwargs)

    assert [e.visit_id for e in entries] == ["SURVEY-1-V001", "SURVEY-1-V002", "SURVEY-1-V003"]
    assert entries[0].right == {"acuity": "20/20"}
    assert entries[1].left is None
    assert entries[2].right is None
    assert [e.left for e in left_only] == [{"acuity": "20/25"}, None, None]
    assert all(e.right is None for e in left_only)


@pytest.mark.asyncio
async def test_compare_unknown_examination():
    services, _, _ = _withdrawal_services(utc(2024, 2, 9))

    with pytest.raises(UnknownExaminationError):
        await compare_examination_across_visits(
            "SURVEY-1",
            "Z",
            visit_repository=services.visit_repository,
            survey_repository=services.survey_repository,
            registry=services.registry,
        )
