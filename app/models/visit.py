from __future__ import annotations

from datetime import date

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base, TimestampMixin


class Visit(TimestampMixin, Base):
    """A concrete, dated patient visit expanded from a template entry.

    Visits are never deleted; they move through the status state machine in
    :mod:`app.services.protocol_compliance` and remain as historical records
    once the survey ends. Examination sets are stored as JSON lists and are
    always reassigned (never mutated in place) so changes are tracked.
    """

    __tablename__ = "visits"
    __table_args__ = (
        UniqueConstraint("survey_id", "visit_number", name="uq_survey_visit_number"),
        CheckConstraint(
            "window_start_date <= scheduled_date AND scheduled_date <= window_end_date",
            name="ck_visit_window_contains_schedule",
        ),
        CheckConstraint(
            "completion_percentage BETWEEN 0 AND 100",
            name="ck_visit_completion_range",
        ),
    )

    visit_id: Mapped[str] = mapped_column(String(96), primary_key=True)
    survey_id: Mapped[str] = mapped_column(
        ForeignKey("surveys.survey_id"), index=True, nullable=False
    )
    patient_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    clinical_study_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    organization_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    visit_number: Mapped[int] = mapped_column(Integer, nullable=False)
    visit_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    visit_type: Mapped[str | None] = mapped_column(String(64), nullable=True)

    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    window_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    window_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    actual_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, index=True, default="scheduled"
    )
    # Free-text reason for administrative transitions (cancel, reschedule)
    status_reason: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    examination_order: Mapped[list[str]] = mapped_column(JSON, default=list)
    required_examinations: Mapped[list[str]] = mapped_column(JSON, default=list)
    optional_examinations: Mapped[list[str]] = mapped_column(JSON, default=list)
    completed_examinations: Mapped[list[str]] = mapped_column(JSON, default=list)
    skipped_examinations: Mapped[list[str]] = mapped_column(JSON, default=list)

    completion_percentage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    protocol_deviations: Mapped[list[str]] = mapped_column(JSON, default=list)
    conducted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
