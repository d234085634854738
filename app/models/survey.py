from __future__ import annotations

from datetime import date
from enum import StrEnum

from sqlalchemy import Date, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base, TimestampMixin


class Survey(TimestampMixin, Base):
    """One patient's enrollment in a clinical study.

    Aggregates (``completed_visits``, ``completion_percentage``) are derived
    by re-reading the survey's visits; they are never maintained under a lock.
    """

    __tablename__ = "surveys"

    class Status(StrEnum):
        ACTIVE = "active"
        COMPLETED = "completed"
        WITHDRAWN = "withdrawn"

    survey_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    clinical_study_id: Mapped[str] = mapped_column(
        ForeignKey("clinical_studies.clinical_study_id"), index=True, nullable=False
    )
    organization_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    baseline_date: Mapped[date] = mapped_column(Date, nullable=False)
    expected_completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=Status.ACTIVE, server_default=Status.ACTIVE
    )
    total_visits: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    completed_visits: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    completion_percentage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
