from __future__ import annotations

"""Protocol window arithmetic for template entries.

All arithmetic happens on whole calendar days relative to a normalized
baseline ``date`` so time zones and times of day never shift a window.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta

from app.models.clinical_study import VisitTemplateEntry
from app.services.errors import InvalidTemplateError


@dataclass(frozen=True)
class VisitWindow:
    scheduled_date: date
    window_start_date: date
    window_end_date: date

    def contains(self, day: date) -> bool:
        return self.window_start_date <= day <= self.window_end_date


def normalize_baseline(baseline: date | datetime) -> date:
    """Return the calendar day of ``baseline``."""

    if isinstance(baseline, datetime):
        return baseline.date()
    return baseline


def check_offsets(entry: VisitTemplateEntry) -> None:
    """Raise ``InvalidTemplateError`` unless every day offset is non-negative."""

    for field_name in (
        "scheduled_days_from_baseline",
        "window_days_before",
        "window_days_after",
    ):
        value = getattr(entry, field_name)
        if value is None or value < 0:
            raise InvalidTemplateError(
                f"Visit {entry.visit_number}: {field_name} must be a non-negative "
                f"number of days, got {value!r}",
                visit_number=entry.visit_number,
            )


def compute_window(baseline: date | datetime, entry: VisitTemplateEntry) -> VisitWindow:
    """Compute the scheduled date and permitted window of one template entry.

    Args:
        baseline: Patient baseline date; datetimes are truncated to the day.
        entry: Template entry providing the day offsets.

    Returns:
        The :class:`VisitWindow` for the entry.

    Raises:
        InvalidTemplateError: If any offset is negative.
    """

    check_offsets(entry)
    scheduled = normalize_baseline(baseline) + timedelta(
        days=entry.scheduled_days_from_baseline
    )
    return VisitWindow(
        scheduled_date=scheduled,
        window_start_date=scheduled - timedelta(days=entry.window_days_before),
        window_end_date=scheduled + timedelta(days=entry.window_days_after),
    )
