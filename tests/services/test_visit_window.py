import pytest
from datetime import date, datetime, timedelta, timezone

from app.services.errors import InvalidTemplateError
from app.services.visit_window import compute_window
from tests.utils.factories import make_entry


def test_example_window_from_baseline():
    window = compute_window(date(2024, 1, 10), make_entry(days=7, before=2, after=2))

    assert window.scheduled_date == date(2024, 1, 17)
    assert window.window_start_date == date(2024, 1, 15)
    assert window.window_end_date == date(2024, 1, 19)
    assert window.contains(date(2024, 1, 19))
    assert not window.contains(date(2024, 1, 20))


@pytest.mark.parametrize(
    "days,before,after",
    [(0, 0, 0), (1, 0, 3), (14, 7, 0), (90, 10, 10), (365, 30, 45)],
)
def test_window_bounds_shift_by_configured_offsets(days, before, after):
    baseline = date(2024, 2, 28)
    window = compute_window(baseline, make_entry(days=days, before=before, after=after))

    assert window.window_start_date <= window.scheduled_date <= window.window_end_date
    assert window.scheduled_date - baseline == timedelta(days=days)
    assert window.scheduled_date - window.window_start_date == timedelta(days=before)
    assert window.window_end_date - window.scheduled_date == timedelta(days=after)


def test_datetime_baseline_is_normalized_to_its_day():
    late_evening = datetime(2024, 1, 10, 23, 59, tzinfo=timezone.utc)

    window = compute_window(late_evening, make_entry(days=7))

    assert window.scheduled_date == date(2024, 1, 17)


@pytest.mark.parametrize(
    "overrides",
    [{"days": -1}, {"before": -2}, {"after": -1}],
)
def test_negative_offsets_are_rejected(overrides):
    entry = make_entry(3, **overrides)

    with pytest.raises(InvalidTemplateError) as exc:
        compute_window(date(2024, 1, 10), entry)

    assert exc.value.visit_number == 3
