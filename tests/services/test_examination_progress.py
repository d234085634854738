import pytest

from app.services.errors import (
    CannotSkipRequiredExaminationError,
    UnknownExaminationError,
)
from app.services.examination_progress import (
    ExaminationProgressTracker,
    StepState,
    bilateral_unless,
    is_examination_recorded,
    round_half_up,
)
from tests.utils.factories import make_entry, make_visit
from tests.utils.fakes import build_fake_registry

BOTH = {"right": {"score": 1}, "left": {"score": 2}}


def _tracker(exam_ids=("A", "B", "C"), single_eye=()):
    registry, stores = build_fake_registry(exam_ids)
    return ExaminationProgressTracker(registry, bilateral_unless(single_eye)), stores


def test_two_of_three_examinations_round_to_67_percent():
    tracker, _ = _tracker()
    visit = make_visit()

    progress = tracker.recompute(visit, {"A", "B"})

    assert progress.completion_percentage == 67
    assert progress.completed_examinations == ["A", "B"]
    assert progress.remaining_required == []
    assert progress.required_complete


def test_remaining_required_lists_missing_required_only():
    tracker, _ = _tracker()

    progress = tracker.recompute(make_visit(), {"A", "C"})

    assert progress.remaining_required == ["B"]
    assert not progress.required_complete


def test_skipped_optional_counts_toward_percentage_not_completed():
    tracker, _ = _tracker()
    visit = make_visit()
    visit.completed_examinations = ["A", "B"]

    progress = tracker.skip_examination(visit, "C")

    assert progress.completion_percentage == 100
    assert progress.completed_examinations == ["A", "B"]
    assert visit.skipped_examinations == ["C"]
    assert visit.completion_percentage == 100


def test_skipping_required_examination_is_rejected():
    tracker, _ = _tracker()
    visit = make_visit()

    with pytest.raises(CannotSkipRequiredExaminationError):
        tracker.skip_examination(visit, "A")

    assert visit.skipped_examinations == []


def test_skipping_unconfigured_examination_is_rejected():
    tracker, _ = _tracker()

    with pytest.raises(UnknownExaminationError):
        tracker.skip_examination(make_visit(), "Z")


def test_denominator_is_the_full_examination_order():
    tracker, _ = _tracker(("A", "B", "C", "D"))
    # D is only a step of the form, neither required nor optional
    visit = make_visit(make_entry(required=("A",), optional=("B",), order=("A", "B", "D")))

    progress = tracker.recompute(visit, {"A", "B", "D"})

    assert progress.completion_percentage == 67
    assert progress.completed_examinations == ["A", "B", "D"]


@pytest.mark.parametrize(
    "eye_data,single_eye,expected",
    [
        (BOTH, False, True),
        ({"right": {"score": 1}}, False, False),
        ({"right": {"score": 1}, "left": {}}, False, False),
        ({"left": {"score": 1}}, True, True),
        ({}, True, False),
        (None, False, False),
    ],
)
def test_bilaterality_rule_decides_recorded(eye_data, single_eye, expected):
    rule = bilateral_unless(["Q"] if single_eye else [])

    assert is_examination_recorded("Q", eye_data, rule) is expected


@pytest.mark.parametrize("value,expected", [(66.5, 67), (0.5, 1), (33.3, 33), (100.0, 100)])
def test_round_half_up(value, expected):
    assert round_half_up(value) == expected


@pytest.mark.asyncio
async def test_recorded_examinations_read_from_stores():
    tracker, stores = _tracker(single_eye=("C",))
    visit = make_visit()
    await stores["A"].save_both_eyes(visit.visit_id, **BOTH)
    await stores["B"].save_both_eyes(visit.visit_id, right={"score": 3})
    await stores["C"].save_both_eyes(visit.visit_id, left={"answer": "yes"})

    recorded = await tracker.recorded_examinations(visit)

    assert recorded == {"A", "C"}


def test_step_statuses_classify_each_step():
    tracker, _ = _tracker()

    summary = tracker.step_statuses(
        ["A", "B", "C"],
        {"A": BOTH, "B": {"left": {"score": 1}}},
        skipped=[],
        required=["A", "B"],
    )

    assert [s.state for s in summary.steps] == [
        StepState.COMPLETED,
        StepState.PARTIAL,
        StepState.NOT_STARTED,
    ]
    assert summary.steps[1].left_eye and not summary.steps[1].right_eye
    assert (summary.completed, summary.partial, summary.not_started) == (1, 1, 1)
    assert not summary.ready_for_submission


def test_ready_for_submission_ignores_optional_steps():
    tracker, _ = _tracker()

    summary = tracker.step_statuses(
        ["A", "B", "C"],
        {"A": BOTH, "B": BOTH},
        skipped=["C"],
        required=["A", "B"],
    )

    assert summary.steps[2].state is StepState.SKIPPED
    assert summary.ready_for_submission
