from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base


class DeviationSeverity(StrEnum):
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


class DeviationKind(StrEnum):
    MISSED_WINDOW = "missed_window"
    OUT_OF_WINDOW_CONDUCTED = "out_of_window_conducted"
    INCOMPLETE_REQUIRED_EXAMINATION = "incomplete_required_examination"


class ProtocolDeviation(Base):
    """Recorded departure from the visit-timing or completeness protocol.

    Rows are append-only: they are never updated or deleted. The unique
    constraint on ``(visit_id, kind)`` keeps re-evaluation idempotent.
    """

    __tablename__ = "protocol_deviations"
    __table_args__ = (
        UniqueConstraint("visit_id", "kind", name="uq_deviation_visit_kind"),
    )

    deviation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    visit_id: Mapped[str] = mapped_column(
        ForeignKey("visits.visit_id"), index=True, nullable=False
    )
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    kind: Mapped[str] = mapped_column(String(48), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
