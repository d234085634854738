import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from app.core.clock import fixed_clock
from app.services import missed_visit_sweep_scheduler as sweep_module
from app.services.missed_visit_sweep_scheduler import sweep_missed_visits
from app.services.protocol_compliance import ProtocolComplianceEvaluator
from tests.utils.factories import make_entry, make_visit
from tests.utils.fakes import FakeDeviationLog, FakeVisitRepository, build_fake_services, utc


def _evaluator(visits, now):
    repo = FakeVisitRepository(visits)
    log = FakeDeviationLog()
    return ProtocolComplianceEvaluator(repo, log, clock=fixed_clock(now)), repo, log


@pytest.mark.asyncio
async def test_sweep_marks_only_open_visits_past_window():
    visits = [
        make_visit(make_entry(1, days=7)),
        make_visit(make_entry(2, days=30)),
        make_visit(make_entry(3, days=3), status="completed"),
    ]
    evaluator, repo, log = _evaluator(visits, utc(2024, 1, 25))

    count = await sweep_missed_visits(evaluator)

    assert count == 1
    assert repo.visits["SURVEY-1-V001"].status == "missed"
    assert repo.visits["SURVEY-1-V002"].status == "scheduled"
    assert repo.visits["SURVEY-1-V003"].status == "completed"
    assert len(log.deviations) == 1


@pytest.mark.asyncio
async def test_sweep_and_lazy_evaluation_share_deviation_rule():
    visit = make_visit()
    evaluator, _, log = _evaluator([visit], utc(2024, 1, 25))

    await evaluator.evaluate_by_id(visit.visit_id)
    count = await sweep_missed_visits(evaluator)

    assert count == 0
    assert len(log.deviations) == 1


@pytest.mark.asyncio
async def test_sweep_job_skips_when_previous_run_active():
    evaluator, _, _ = _evaluator([], utc(2024, 1, 25))

    with patch.object(sweep_module, "sweep_missed_visits", AsyncMock(return_value=0)) as mock_sweep:
        async with sweep_module._job_lock:
            await sweep_module._run_missed_visit_sweep_job(evaluator)
        mock_sweep.assert_not_called()

        await sweep_module._run_missed_visit_sweep_job(evaluator)
        mock_sweep.assert_awaited_once_with(evaluator)


def test_scheduler_respects_disabled_setting(monkeypatch):
    monkeypatch.setattr(sweep_module._settings, "missed_visit_sweep_enabled", False)

    sweep_module.start_missed_visit_sweep_scheduler(_evaluator([], utc(2024, 1, 25))[0])

    assert sweep_module._scheduler is None


@pytest.mark.asyncio
async def test_purge_job_removes_expired_drafts():
    moment = [utc(2024, 1, 16)]
    services, _ = build_fake_services(
        now=moment[0], visits=[make_visit()], clock=lambda: moment[0]
    )
    await services.synchronizer.initialize_draft("SURVEY-1-V001")

    await sweep_module._run_expired_draft_purge_job(services.synchronizer)
    assert list(services.draft_repository.drafts) == ["SURVEY-1-V001"]

    moment[0] = utc(2024, 2, 20)
    await sweep_module._run_expired_draft_purge_job(services.synchronizer)
    assert services.draft_repository.drafts == {}


@pytest.mark.asyncio
async def test_purge_job_skips_when_previous_run_active():
    synchronizer = MagicMock()
    synchronizer.purge_expired_drafts = AsyncMock(return_value=0)

    async with sweep_module._purge_lock:
        await sweep_module._run_expired_draft_purge_job(synchronizer)

    synchronizer.purge_expired_drafts.assert_not_called()


def test_scheduler_registers_purge_with_synchronizer(monkeypatch):
    monkeypatch.setattr(sweep_module._settings, "missed_visit_sweep_enabled", True)
    monkeypatch.setattr(sweep_module, "_scheduler", None)
    scheduler = MagicMock()

    with patch.object(sweep_module, "AsyncIOScheduler", return_value=scheduler):
        sweep_module.start_missed_visit_sweep_scheduler(
            _evaluator([], utc(2024, 1, 25))[0], MagicMock()
        )

    job_ids = [c.kwargs["id"] for c in scheduler.add_job.call_args_list]
    assert job_ids == ["missed_visit_sweep_daily", "expired_draft_purge_daily"]
    scheduler.start.assert_called_once()
    sweep_module.shutdown_missed_visit_sweep_scheduler()
    assert sweep_module._scheduler is None
