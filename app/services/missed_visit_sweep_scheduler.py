from __future__ import annotations

import asyncio

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.core.logging import logger
from app.services.draft_synchronizer import DraftSynchronizer
from app.services.protocol_compliance import ProtocolComplianceEvaluator
from core.settings import get_settings

_settings = get_settings()
_scheduler: AsyncIOScheduler | None = None
_job_lock = asyncio.Lock()
_purge_lock = asyncio.Lock()


async def sweep_missed_visits(evaluator: ProtocolComplianceEvaluator) -> int:
    """Evaluate every open visit whose window has ended.

    Uses the same evaluator as lazy evaluation on read, so deviations stay
    unique per visit and kind whichever path records them first.

    Returns:
        Number of visits reclassified as missed.
    """

    visits = await evaluator.visit_repository.list_open_past_window(evaluator.today())
    missed = 0
    for visit in visits:
        evaluation = await evaluator.evaluate(visit)
        if evaluation.status_changed:
            missed += 1
    return missed


async def _run_missed_visit_sweep_job(evaluator: ProtocolComplianceEvaluator) -> None:
    """Run the sweep once and log the result.

    The job is guarded by a lock to prevent overlapping runs if a previous
    execution has not completed yet.
    """

    if _job_lock.locked():
        logger.warning(
            "Missed visit sweep skipped: previous run still in progress."
        )
        return

    async with _job_lock:
        logger.info("Missed visit sweep started.")
        try:
            count = await sweep_missed_visits(evaluator)
        except Exception:
            logger.warning("Missed visit sweep failed to complete.", exc_info=True)
            raise
        logger.info("Missed visit sweep completed. Marked %d visits as missed.", count)


async def _run_expired_draft_purge_job(synchronizer: DraftSynchronizer) -> None:
    """Delete expired drafts once; guarded like the sweep against overlap."""

    if _purge_lock.locked():
        logger.warning("Expired draft purge skipped: previous run still in progress.")
        return

    async with _purge_lock:
        try:
            count = await synchronizer.purge_expired_drafts()
        except Exception:
            logger.warning("Expired draft purge failed to complete.", exc_info=True)
            raise
        logger.info("Expired draft purge completed. Removed %d drafts.", count)


def start_missed_visit_sweep_scheduler(
    evaluator: ProtocolComplianceEvaluator,
    synchronizer: DraftSynchronizer | None = None,
) -> None:
    """Start the daily missed visit sweep if enabled.

    Args:
        evaluator: Evaluator shared with the request path.
        synchronizer: When given, expired drafts are purged on the same
            schedule.
    """

    global _scheduler
    if _scheduler is not None:
        return

    if not _settings.missed_visit_sweep_enabled:
        logger.info("Missed visit sweep disabled by settings.")
        return

    trigger = CronTrigger.from_crontab(
        _settings.missed_visit_sweep_cron,
        timezone=_settings.missed_visit_sweep_timezone,
    )
    _scheduler = AsyncIOScheduler(timezone=_settings.missed_visit_sweep_timezone)
    _scheduler.add_job(
        _run_missed_visit_sweep_job,
        trigger=trigger,
        args=[evaluator],
        id="missed_visit_sweep_daily",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    if synchronizer is not None:
        _scheduler.add_job(
            _run_expired_draft_purge_job,
            trigger=trigger,
            args=[synchronizer],
            id="expired_draft_purge_daily",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
    _scheduler.start()
    logger.info(
        "Missed visit sweep started (cron=%s, timezone=%s).",
        _settings.missed_visit_sweep_cron,
        _settings.missed_visit_sweep_timezone,
    )


def shutdown_missed_visit_sweep_scheduler() -> None:
    global _scheduler
    if _scheduler is None:
        return

    _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("Missed visit sweep stopped.")
