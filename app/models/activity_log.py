from __future__ import annotations

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base, TimestampMixin


class ActivityLog(TimestampMixin, Base):
    """Generic audit log entry for important domain actions.

    Used for visit generation, status transitions, protocol deviations and
    examination submissions.

    Args:
        actor: Optional identifier of the user that performed the action.
            ``NULL`` is allowed for system-initiated actions (e.g. the
            missed-visit sweep).
        action: Machine-friendly action label (e.g. ``"visits_generated"``,
            ``"visit_cancelled"``, ``"protocol_deviation_recorded"``).
        target_type: Logical target type of the action (e.g. ``"survey"``,
            ``"visit"``).
        target_id: Optional identifier of the target entity.
        details: Optional JSON payload with structured context such as
            ``{"saved_examinations": ["vas", "dr1"]}``.
        batch_id: Optional correlation identifier used to group multiple log
            entries that belong to a single high-level operation.
    """

    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    actor: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    target_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    target_id: Mapped[str | None] = mapped_column(String(96), nullable=True, index=True)

    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
