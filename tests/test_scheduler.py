"""scheduler モジュールのテスト."""

import asyncio
from datetime import time, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from catalog_sync.config import ScheduleConfig
from catalog_sync.scheduler import DELTA_JOB_ID, FULL_JOB_ID, SyncScheduler, parse_time_of_day


def _scheduler(run_side_effect=None, **config):
    orchestrator = MagicMock()
    orchestrator.run = AsyncMock(side_effect=run_side_effect)
    return SyncScheduler(orchestrator, ScheduleConfig(**config)), orchestrator


class TestParseTimeOfDay:
    def test_hh_mm(self):
        assert parse_time_of_day("03:30") == time(3, 30)

    def test_hour_only(self):
        assert parse_time_of_day("7") == time(7, 0)

    @pytest.mark.parametrize("value", ["25:00", "aa:bb", "12:61"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_time_of_day(value)


class TestBuildScheduler:
    """build_scheduler が登録するジョブのテスト."""

    def test_full_job_is_daily_cron(self):
        sync_scheduler, _ = _scheduler(full_time="03:15")

        job = sync_scheduler.build_scheduler().get_job(FULL_JOB_ID)

        assert isinstance(job.trigger, CronTrigger)
        fields = {f.name: str(f) for f in job.trigger.fields}
        assert (fields["hour"], fields["minute"]) == ("3", "15")
        assert job.next_run_time is not None
        assert job.max_instances == 1
        assert job.coalesce is True

    def test_delta_job_is_interval(self):
        sync_scheduler, _ = _scheduler(delta_interval_minutes=45)

        job = sync_scheduler.build_scheduler().get_job(DELTA_JOB_ID)

        assert isinstance(job.trigger, IntervalTrigger)
        assert job.trigger.interval == timedelta(minutes=45)
        assert job.max_instances == 1
        assert job.coalesce is True

    def test_only_two_jobs(self):
        sync_scheduler, _ = _scheduler()
        jobs = sync_scheduler.build_scheduler().get_jobs()
        assert sorted(job.id for job in jobs) == [DELTA_JOB_ID, FULL_JOB_ID]


class TestSyncScheduler:
    """SyncScheduler のジョブ本体のテスト."""

    @pytest.mark.asyncio
    async def test_run_once_uses_wipe_on_start(self):
        sync_scheduler, orchestrator = _scheduler(wipe_on_start=True)

        assert await sync_scheduler.run_once() is True

        orchestrator.run.assert_awaited_once_with("full", wipe=True)

    @pytest.mark.asyncio
    async def test_wipe_on_start_only_first_full(self):
        sync_scheduler, orchestrator = _scheduler(wipe_on_start=True)

        await sync_scheduler.run_full()
        await sync_scheduler.run_full()

        assert [c.kwargs["wipe"] for c in orchestrator.run.await_args_list] == [True, False]

    @pytest.mark.asyncio
    async def test_delta_job(self):
        sync_scheduler, orchestrator = _scheduler()

        await sync_scheduler.run_delta()

        orchestrator.run.assert_awaited_once_with("delta", wipe=False)

    @pytest.mark.asyncio
    async def test_failed_cycle_is_contained(self):
        """失敗したサイクルは False を返し、次のサイクルは通常どおり実行されること."""
        sync_scheduler, orchestrator = _scheduler(run_side_effect=[RuntimeError("feed down"), None])

        assert await sync_scheduler.run_full() is False
        assert await sync_scheduler.run_delta() is True
        assert orchestrator.run.await_count == 2

    @pytest.mark.asyncio
    async def test_cycles_do_not_overlap(self):
        active = 0
        peak = 0

        async def slow_run(task, wipe=False):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        sync_scheduler, _ = _scheduler(run_side_effect=slow_run)

        await asyncio.gather(sync_scheduler.run_full(), sync_scheduler.run_delta())

        assert peak == 1

    @pytest.mark.asyncio
    async def test_run_forever_starts_and_shuts_down(self):
        sync_scheduler, _ = _scheduler()
        mock_apscheduler = MagicMock()

        with patch.object(sync_scheduler, "build_scheduler", return_value=mock_apscheduler):
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(sync_scheduler.run_forever(), timeout=0.05)

        mock_apscheduler.start.assert_called_once_with()
        mock_apscheduler.shutdown.assert_called_once_with(wait=False)
