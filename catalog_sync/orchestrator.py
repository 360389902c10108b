"""同期の実行制御モジュール.

状態遷移:
  idle → loading → parsing → normalizing → reconciling → done
  （どの状態からでも failed へ）

タスク:
  full  — カテゴリ + 商品（wipe 可）
  price — 既存商品の価格のみ
  stock — 既存商品の在庫のみ
  delta — price → stock の順に実行
dry-run は normalizing で止め、件数だけ返す（DB には接続しない）。
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path

from catalog_sync.catalog_api import load_api_snapshot
from catalog_sync.config import FEED_KINDS, AppConfig, SupabaseConfig
from catalog_sync.db import CatalogStore, create_store
from catalog_sync.feed import build_feed_source, download_feed, load_feed_text
from catalog_sync.models import RunReport
from catalog_sync.normalizer import normalize_catalog, normalize_price_updates, normalize_stock_updates
from catalog_sync.parser import parse_full_catalog, parse_price_updates, parse_stock_updates, parse_xml
from catalog_sync.reconciler import BatchReconciler
from catalog_sync.retry import RetryRunner
from catalog_sync.throttle import ThrottleController

logger = logging.getLogger(__name__)

TASKS = ("full", "price", "stock", "delta")

StoreFactory = Callable[[SupabaseConfig], Awaitable[CatalogStore]]


class RunState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PARSING = "parsing"
    NORMALIZING = "normalizing"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"


def expand_task(task: str) -> list[str]:
    """タスク名を実行するフィード種別の並びに展開する."""
    if task not in TASKS:
        raise ValueError(f"Unknown task: {task}")
    return ["price", "stock"] if task == "delta" else [task]


class SyncOrchestrator:
    def __init__(self, config: AppConfig, store_factory: StoreFactory = create_store) -> None:
        self.config = config
        self.store_factory = store_factory
        self._store: CatalogStore | None = None
        self.last_report: RunReport | None = None

    async def _get_store(self) -> CatalogStore:
        if self._store is None:
            self._store = await self.store_factory(self.config.supabase)
        return self._store

    @staticmethod
    def _transition(report: RunReport, state: RunState) -> None:
        logger.info("[%s] %s → %s", report.task, report.state, state.value)
        report.state = state.value

    async def run(self, task: str, wipe: bool = False, dry_run: bool = False) -> list[RunReport]:
        """タスクを実行する.

        Raises:
            ValueError: 不明なタスク、または full 以外で wipe を指定した場合
        """
        kinds = expand_task(task)
        if wipe and task != "full":
            raise ValueError("wipe is only valid for the full task")
        return [await self.run_kind(kind, wipe=wipe, dry_run=dry_run) for kind in kinds]

    async def run_kind(self, kind: str, wipe: bool = False, dry_run: bool = False) -> RunReport:
        report = RunReport(task=kind, dry_run=dry_run)
        self.last_report = report
        supplier = self.config.supplier
        # スロットル状態は 1 回の同期ごとに作り直す
        throttle = ThrottleController(self.config.upsert)
        retry = RetryRunner(self.config.upsert.retry)

        try:
            self._transition(report, RunState.LOADING)
            text = await load_feed_text(build_feed_source(supplier, kind), retry, supplier.should_save)
            snapshot = None
            if kind == "full":
                snapshot = await load_api_snapshot(self.config.supplier_api, retry)

            self._transition(report, RunState.PARSING)
            tree = parse_xml(text)

            if kind == "full":
                raw = parse_full_catalog(tree)
                self._transition(report, RunState.NORMALIZING)
                catalog = normalize_catalog(raw, supplier, snapshot)
                report.categories = len(catalog.categories)
                report.products = len(catalog.products)
                report.skipped = catalog.skipped_products
                logger.info("FULL: categories=%d, products=%d", report.categories, report.products)
            else:
                if kind == "price":
                    raw_offers = parse_price_updates(tree)
                    self._transition(report, RunState.NORMALIZING)
                    updates = normalize_price_updates(raw_offers, supplier)
                else:
                    raw_offers = parse_stock_updates(tree)
                    self._transition(report, RunState.NORMALIZING)
                    updates = normalize_stock_updates(raw_offers, supplier)
                report.products = len(updates)
                logger.info("%s: offers=%d", kind.upper(), report.products)

            if dry_run:
                self._transition(report, RunState.DONE)
                return report

            self._transition(report, RunState.RECONCILING)
            reconciler = BatchReconciler(await self._get_store(), self.config.upsert, throttle)
            if kind == "full":
                await reconciler.reconcile_catalog(catalog, wipe=wipe)
                report.updated = report.products
            else:
                report.updated, report.skipped = await reconciler.reconcile_deltas(kind, updates)

            self._transition(report, RunState.DONE)
            logger.info("%s: 完了 (updated=%d, skipped=%d)", kind.upper(), report.updated, report.skipped)
            return report
        except Exception as e:
            report.error = str(e)
            logger.error("%s: %s で失敗: %s", kind.upper(), report.state, e)
            self._transition(report, RunState.FAILED)
            raise

    async def fetch_feeds(self) -> list[Path]:
        """全フィードをダウンロードして保存だけ行う."""
        retry = RetryRunner(self.config.upsert.retry)
        saved: list[Path] = []
        for kind in FEED_KINDS:
            path = await download_feed(build_feed_source(self.config.supplier, kind), retry)
            if path is not None:
                saved.append(path)
        return saved
