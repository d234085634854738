from __future__ import annotations

from enum import StrEnum

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models import Base, TimestampMixin


class ClinicalStudy(TimestampMixin, Base):
    """Clinical study owning the abstract visit protocol.

    The visit template is immutable once the study is ``active``.
    """

    __tablename__ = "clinical_studies"

    class Status(StrEnum):
        DRAFT = "draft"
        ACTIVE = "active"
        COMPLETED = "completed"

    clinical_study_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=Status.DRAFT, server_default=Status.DRAFT
    )

    visit_template: Mapped[list[VisitTemplateEntry]] = relationship(
        "VisitTemplateEntry",
        back_populates="clinical_study",
        order_by="VisitTemplateEntry.visit_number",
    )


class VisitTemplateEntry(TimestampMixin, Base):
    """One abstract visit of a study protocol.

    ``scheduled_days_from_baseline`` places the visit relative to the
    patient's baseline date; ``window_days_before``/``window_days_after``
    define the permitted scheduling window around that date.
    ``examination_order`` defines the step sequence of the visit form and
    must contain every required and optional examination.
    """

    __tablename__ = "visit_template_entries"
    __table_args__ = (
        UniqueConstraint(
            "clinical_study_id", "visit_number", name="uq_template_visit_number"
        ),
        CheckConstraint(
            "scheduled_days_from_baseline >= 0", name="ck_template_days_non_negative"
        ),
        CheckConstraint(
            "window_days_before >= 0 AND window_days_after >= 0",
            name="ck_template_window_non_negative",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    clinical_study_id: Mapped[str] = mapped_column(
        ForeignKey("clinical_studies.clinical_study_id"), index=True, nullable=False
    )

    visit_number: Mapped[int] = mapped_column(Integer, nullable=False)
    visit_name: Mapped[str] = mapped_column(String(128), nullable=False)
    visit_type: Mapped[str] = mapped_column(String(64), nullable=False)

    scheduled_days_from_baseline: Mapped[int] = mapped_column(Integer, nullable=False)
    window_days_before: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    window_days_after: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    required_examinations: Mapped[list[str]] = mapped_column(JSON, default=list)
    optional_examinations: Mapped[list[str]] = mapped_column(JSON, default=list)
    examination_order: Mapped[list[str]] = mapped_column(JSON, default=list)

    clinical_study: Mapped[ClinicalStudy] = relationship(
        ClinicalStudy, back_populates="visit_template"
    )
