import pytest
from datetime import date

from app.core.clock import fixed_clock
from app.models.protocol_deviation import DeviationKind, DeviationSeverity
from app.services.errors import InvalidStatusTransitionError, VisitNotFoundError
from app.services.protocol_compliance import (
    ProtocolComplianceEvaluator,
    TimingStatus,
    VisitStatusCode,
    derive_deviations,
    timing_status,
    transition_visit,
)
from tests.utils.factories import make_visit
from tests.utils.fakes import (
    FakeDeviationLog,
    FakeVisitRepository,
    RecordingAuditSink,
    utc,
)


def _evaluator(visits, now, audit=None):
    repo = FakeVisitRepository(visits)
    log = FakeDeviationLog()
    evaluator = ProtocolComplianceEvaluator(
        repo, log, audit=audit, clock=fixed_clock(now)
    )
    return evaluator, repo, log


@pytest.mark.asyncio
async def test_scheduled_visit_past_window_is_marked_missed_once():
    audit = RecordingAuditSink()
    visit = make_visit()
    evaluator, repo, log = _evaluator([visit], utc(2024, 1, 20), audit)

    evaluation = await evaluator.evaluate_by_id(visit.visit_id)

    assert evaluation.status_changed
    assert evaluation.visit.status == "missed"
    assert evaluation.timing is TimingStatus.MISSED
    assert len(evaluation.new_deviations) == 1
    deviation = evaluation.new_deviations[0]
    assert deviation.kind == DeviationKind.MISSED_WINDOW
    assert deviation.severity == DeviationSeverity.MAJOR
    assert repo.visits[visit.visit_id].status == "missed"
    assert repo.visits[visit.visit_id].protocol_deviations == [deviation.deviation_id]
    assert audit.actions() == ["protocol_deviation_recorded"]

    again = await evaluator.evaluate_by_id(visit.visit_id)

    assert not again.status_changed
    assert again.new_deviations == []
    assert len(log.deviations) == 1
    assert repo.visits[visit.visit_id].protocol_deviations == [deviation.deviation_id]


@pytest.mark.asyncio
async def test_visit_inside_window_is_left_alone():
    visit = make_visit()
    evaluator, repo, log = _evaluator([visit], utc(2024, 1, 19))

    evaluation = await evaluator.evaluate_by_id(visit.visit_id)

    assert evaluation.visit.status == "scheduled"
    assert evaluation.timing is TimingStatus.PENDING
    assert log.deviations == []
    assert repo.saves == 0


@pytest.mark.asyncio
async def test_visit_id_list_is_healed_from_the_log():
    visit = make_visit()
    evaluator, repo, log = _evaluator([visit], utc(2024, 1, 25))
    first = await evaluator.evaluate(make_visit(), save=False)
    recorded_id = first.new_deviations[0].deviation_id

    # The stored visit never got the deviation id (save skipped)
    evaluation = await evaluator.evaluate_by_id(visit.visit_id)

    assert evaluation.new_deviations == []
    assert repo.visits[visit.visit_id].protocol_deviations == [recorded_id]
    assert len(log.deviations) == 1


def test_out_of_window_conducted_visit_is_a_minor_deviation():
    visit = make_visit(status="completed", actual_date=date(2024, 1, 12))
    visit.completed_examinations = ["A", "B"]

    kinds = {(d.kind, d.severity) for d in derive_deviations(visit)}

    assert kinds == {(DeviationKind.OUT_OF_WINDOW_CONDUCTED, DeviationSeverity.MINOR)}
    assert timing_status(visit, date(2024, 1, 12)) is TimingStatus.OUT_OF_WINDOW


def test_completed_visit_missing_required_is_critical():
    visit = make_visit(status="completed", actual_date=date(2024, 1, 17))
    visit.completed_examinations = ["A"]

    deviations = derive_deviations(visit)

    assert [d.kind for d in deviations] == [DeviationKind.INCOMPLETE_REQUIRED_EXAMINATION]
    assert deviations[0].severity == DeviationSeverity.CRITICAL
    assert "B" in deviations[0].description


@pytest.mark.parametrize(
    "actual,expected",
    [
        (date(2024, 1, 17), TimingStatus.ON_TIME),
        (date(2024, 1, 15), TimingStatus.WITHIN_WINDOW),
        (date(2024, 1, 19), TimingStatus.WITHIN_WINDOW),
        (date(2024, 1, 20), TimingStatus.OUT_OF_WINDOW),
    ],
)
def test_timing_status_of_conducted_visits(actual, expected):
    visit = make_visit(status="in_progress", actual_date=actual)

    assert timing_status(visit, date(2024, 1, 21)) is expected


def test_completion_is_gated_on_required_examinations():
    visit = make_visit(status="in_progress", completion_percentage=100)
    visit.completed_examinations = ["A", "C"]

    with pytest.raises(InvalidStatusTransitionError):
        transition_visit(visit, VisitStatusCode.COMPLETED)

    assert visit.status == "in_progress"

    visit.completed_examinations = ["A", "B"]
    transition_visit(visit, VisitStatusCode.COMPLETED)
    assert visit.status == "completed"


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        ("scheduled", "in_progress", True),
        ("scheduled", "completed", False),
        ("in_progress", "cancelled", True),
        ("rescheduled", "in_progress", True),
        ("rescheduled", "missed", True),
        ("completed", "cancelled", False),
        ("completed", "rescheduled", False),
        ("missed", "in_progress", False),
        ("cancelled", "scheduled", False),
    ],
)
def test_state_machine_transitions(current, target, allowed):
    visit = make_visit(status=current)

    if allowed:
        transition_visit(visit, VisitStatusCode(target))
        assert visit.status == target
    else:
        with pytest.raises(InvalidStatusTransitionError):
            transition_visit(visit, VisitStatusCode(target))
        assert visit.status == current


@pytest.mark.asyncio
async def test_start_visit_sets_actual_date_and_conductor():
    visit = make_visit()
    evaluator, _, _ = _evaluator([visit], utc(2024, 1, 16))

    changed = await evaluator.start_visit(visit, conducted_by="dr.smith")

    assert changed
    assert visit.status == "in_progress"
    assert visit.actual_date == date(2024, 1, 16)
    assert visit.conducted_by == "dr.smith"
    assert not await evaluator.start_visit(visit)


@pytest.mark.asyncio
async def test_start_after_window_marks_missed_and_refuses():
    visit = make_visit()
    evaluator, repo, log = _evaluator([visit], utc(2024, 1, 21))

    with pytest.raises(InvalidStatusTransitionError):
        await evaluator.start_visit(visit)

    assert repo.visits[visit.visit_id].status == "missed"
    assert len(log.deviations) == 1


@pytest.mark.asyncio
async def test_cancel_is_audited_and_terminal():
    audit = RecordingAuditSink()
    visit = make_visit()
    evaluator, repo, _ = _evaluator([visit], utc(2024, 1, 16), audit)

    cancelled = await evaluator.cancel_visit(visit.visit_id, reason="Patient withdrew", actor="admin")

    assert cancelled.status == "cancelled"
    assert cancelled.status_reason == "Patient withdrew"
    assert audit.events[-1]["action"] == "visit_cancelled"
    assert audit.events[-1]["actor"] == "admin"
    with pytest.raises(InvalidStatusTransitionError):
        await evaluator.reschedule_visit(visit.visit_id, date(2024, 1, 18))


@pytest.mark.asyncio
async def test_reschedule_within_window_moves_scheduled_date():
    visit = make_visit()
    evaluator, repo, _ = _evaluator([visit], utc(2024, 1, 12))

    updated, compliant = await evaluator.reschedule_visit(visit.visit_id, date(2024, 1, 18))

    assert compliant
    assert updated.status == "rescheduled"
    assert repo.visits[visit.visit_id].scheduled_date == date(2024, 1, 18)


@pytest.mark.asyncio
async def test_reschedule_outside_window_is_reported_not_applied():
    visit = make_visit()
    evaluator, repo, _ = _evaluator([visit], utc(2024, 1, 12))

    updated, compliant = await evaluator.reschedule_visit(visit.visit_id, date(2024, 1, 25))

    assert not compliant
    assert updated.scheduled_date == date(2024, 1, 17)
    assert repo.visits[visit.visit_id].status == "rescheduled"


@pytest.mark.asyncio
async def test_rescheduled_visit_is_still_missed_after_window():
    visit = make_visit(status="rescheduled")
    evaluator, _, log = _evaluator([visit], utc(2024, 1, 20))

    evaluation = await evaluator.evaluate_by_id(visit.visit_id)

    assert evaluation.visit.status == "missed"
    assert [d.kind for d in log.deviations] == ["missed_window"]


@pytest.mark.asyncio
async def test_audit_failure_does_not_block_evaluation():
    visit = make_visit()
    evaluator, repo, log = _evaluator([visit], utc(2024, 1, 20), RecordingAuditSink(fail=True))

    evaluation = await evaluator.evaluate_by_id(visit.visit_id)

    assert evaluation.visit.status == "missed"
    assert len(log.deviations) == 1
    assert repo.visits[visit.visit_id].status == "missed"


@pytest.mark.asyncio
async def test_unknown_visit_raises_not_found():
    evaluator, _, _ = _evaluator([], utc(2024, 1, 20))

    with pytest.raises(VisitNotFoundError):
        await evaluator.evaluate_by_id("nope")


@pytest.mark.asyncio
async def test_cancel_after_window_records_missed_instead():
    visit = make_visit()
    evaluator, repo, log = _evaluator([visit], utc(2024, 1, 20))

    with pytest.raises(InvalidStatusTransitionError):
        await evaluator.cancel_visit(visit.visit_id, reason="Patient moved")

    assert repo.visits[visit.visit_id].status == "missed"
    assert [(d.kind, d.severity) for d in log.deviations] == [
        (DeviationKind.MISSED_WINDOW, DeviationSeverity.MAJOR)
    ]


@pytest.mark.asyncio
async def test_reschedule_after_window_records_missed_instead():
    visit = make_visit()
    evaluator, repo, log = _evaluator([visit], utc(2024, 1, 20))

    with pytest.raises(InvalidStatusTransitionError):
        await evaluator.reschedule_visit(visit.visit_id, date(2024, 1, 18))

    stored = repo.visits[visit.visit_id]
    assert stored.status == "missed"
    assert stored.scheduled_date == date(2024, 1, 17)
    assert len(log.deviations) == 1


@pytest.mark.asyncio
async def test_in_progress_visit_past_window_cannot_continue():
    visit = make_visit(status="in_progress")
    evaluator, repo, log = _evaluator([visit], utc(2024, 1, 20))

    with pytest.raises(InvalidStatusTransitionError):
        await evaluator.start_visit(visit)

    assert repo.visits[visit.visit_id].status == "missed"
    assert [d.kind for d in log.deviations] == ["missed_window"]
