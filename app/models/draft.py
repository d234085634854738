from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base, TimestampMixin


class VisitDraft(TimestampMixin, Base):
    """In-progress, multi-step examination form state of a visit.

    At most one live draft exists per visit (``visit_id`` is the key).
    ``form_data`` maps examination id to ``{"right": ..., "left": ...}``.
    ``version`` increases on every write and backs the optimistic
    concurrency check of autosaves.
    """

    __tablename__ = "visit_drafts"
    __table_args__ = (
        CheckConstraint(
            "current_step >= 0 AND current_step < total_steps",
            name="ck_draft_current_step_range",
        ),
    )

    visit_id: Mapped[str] = mapped_column(
        ForeignKey("visits.visit_id"), primary_key=True
    )
    form_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_steps: Mapped[list[str]] = mapped_column(JSON, default=list)
    examination_order: Mapped[list[str]] = mapped_column(JSON, default=list)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_saved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    auto_saved: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
