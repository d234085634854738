from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base, TimestampMixin


class ExaminationRecord(TimestampMixin, Base):
    """Finalized data of one examination for one eye of one visit.

    ``(visit_id, examination_id, eyeside)`` is the idempotency key of a
    submission write: a retried submission finds the existing row instead of
    inserting a second one.
    """

    __tablename__ = "examination_records"
    __table_args__ = (
        UniqueConstraint(
            "visit_id", "examination_id", "eyeside", name="uq_examination_record_key"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    visit_id: Mapped[str] = mapped_column(
        ForeignKey("visits.visit_id"), index=True, nullable=False
    )
    examination_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    # "right" or "left"
    eyeside: Mapped[str] = mapped_column(String(8), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
