"""定期実行モジュール（APScheduler）.

起動直後にフル同期を 1 回実行し、以降は
  - 毎日 IMPORT_FULL_TIME（ローカル時刻）にフル同期
  - IMPORT_INTERVAL_MINUTES ごとに差分同期（価格 → 在庫）
を行う。1 サイクルの失敗はログに残して次のサイクルへ進む。
フル同期と差分同期は同時に走らない。
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from catalog_sync.config import ScheduleConfig
from catalog_sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

FULL_JOB_ID = "full_sync"
DELTA_JOB_ID = "delta_sync"


def parse_time_of_day(value: str) -> time:
    """"HH:MM" を time に変換する."""
    hours, _, minutes = value.strip().partition(":")
    try:
        return time(hour=int(hours), minute=int(minutes or 0))
    except ValueError as e:
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)") from e


class SyncScheduler:
    def __init__(self, orchestrator: SyncOrchestrator, config: ScheduleConfig) -> None:
        self.orchestrator = orchestrator
        self.config = config
        self.full_at = parse_time_of_day(config.full_time)
        self._first_full = True
        self._lock = asyncio.Lock()

    async def run_cycle(self, task: str, wipe: bool = False) -> bool:
        """1 サイクル実行する。失敗してもログに残して False を返す."""
        async with self._lock:
            logger.info("[SCHEDULE] 開始: task=%s, wipe=%s", task, wipe)
            try:
                await self.orchestrator.run(task, wipe=wipe)
            except Exception:
                logger.exception("[SCHEDULE] 失敗: task=%s", task)
                return False
            logger.info("[SCHEDULE] 完了: task=%s", task)
            return True

    async def run_full(self) -> bool:
        """フル同期ジョブ。wipe_on_start は起動後の最初の 1 回だけ有効."""
        wipe = self._first_full and self.config.wipe_on_start
        self._first_full = False
        return await self.run_cycle("full", wipe=wipe)

    async def run_delta(self) -> bool:
        return await self.run_cycle("delta")

    async def run_once(self) -> bool:
        return await self.run_cycle("full", wipe=self.config.wipe_on_start)

    def build_scheduler(self) -> AsyncIOScheduler:
        """フル同期（cron）と差分同期（interval）のジョブを登録したスケジューラを作る."""
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.run_full,
            trigger=CronTrigger(hour=self.full_at.hour, minute=self.full_at.minute),
            id=FULL_JOB_ID,
            name="Full catalog sync",
            next_run_time=datetime.now(),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self.run_delta,
            trigger=IntervalTrigger(minutes=self.config.delta_interval_minutes),
            id=DELTA_JOB_ID,
            name="Price and stock delta sync",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        return scheduler

    async def run_forever(self) -> None:
        """スケジューラを起動し、プロセスが止められるまで待つ."""
        scheduler = self.build_scheduler()
        scheduler.start()
        logger.info(
            "[SCHEDULE] フル同期: 毎日 %s、差分同期: %d 分ごと",
            self.full_at.strftime("%H:%M"), self.config.delta_interval_minutes,
        )
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.shutdown(wait=False)
