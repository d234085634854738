from __future__ import annotations

"""Service helpers for creating activity log entries.

These helpers centralize how audit trail information is persisted so that
the visit core and routers call a single function instead of constructing
``ActivityLog`` rows directly. The core treats audit delivery as
fire-and-forget: :func:`emit_audit` logs and swallows sink failures so a
missed audit write never rolls back a visit operation.
"""

from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import logger
from app.models.activity_log import ActivityLog


async def log_activity(
    db: AsyncSession,
    *,
    actor: str | None,
    action: str,
    target_type: str,
    target_id: str | None = None,
    details: dict[str, Any] | None = None,
    batch_id: str | None = None,
    commit: bool = True,
) -> ActivityLog:
    """Create and persist a single ``ActivityLog`` entry.

    Args:
        db: Async SQLAlchemy session.
        actor: Optional identifier of who performed the action.
        action: Machine-readable action label (e.g. ``"visit_submitted"``).
        target_type: Logical target type (e.g. ``"survey"``, ``"visit"``).
        target_id: Optional identifier of the affected entity.
        details: Optional JSON-serializable dict with extra context.
        batch_id: Optional correlation id for grouping related entries.
        commit: Whether to commit the session after inserting the log.

    Returns:
        The persisted ``ActivityLog`` instance.
    """

    entry = ActivityLog(
        actor=actor,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details or None,
        batch_id=batch_id,
    )
    db.add(entry)

    if commit:
        try:
            await db.commit()
        except Exception:
            await db.rollback()
            logger.warning("Failed to commit activity log entry", exc_info=True)
            raise

    return entry


class AuditSink(ABC):
    """Receiver of deviation records and examination submission events."""

    @abstractmethod
    async def record(
        self,
        *,
        action: str,
        target_type: str,
        target_id: str | None,
        details: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> None:
        """Deliver one audit event."""


class ActivityLogAuditSink(AuditSink):
    """Audit sink writing each event as an ``ActivityLog`` row."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        *,
        action: str,
        target_type: str,
        target_id: str | None,
        details: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> None:
        async with self._session_factory() as db:
            await log_activity(
                db,
                actor=actor,
                action=action,
                target_type=target_type,
                target_id=target_id,
                details=details,
            )


async def emit_audit(
    sink: AuditSink | None,
    *,
    action: str,
    target_type: str,
    target_id: str | None,
    details: dict[str, Any] | None = None,
    actor: str | None = None,
) -> None:
    """Deliver an audit event without letting a failure escape."""

    if sink is None:
        return
    try:
        await sink.record(
            action=action,
            target_type=target_type,
            target_id=target_id,
            details=details,
            actor=actor,
        )
    except Exception:
        logger.warning(
            "Audit event %s for %s %s was not recorded",
            action,
            target_type,
            target_id,
            exc_info=True,
        )
