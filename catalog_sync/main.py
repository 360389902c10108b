"""仕入先カタログ同期 — メインエントリーポイント.

処理フロー:
  1. フィード取得（URL またはローカルファイル）
  2. XML パース
  3. カテゴリ・商品・差分の正規化
  4. Supabase へバッチ upsert（スロットル・リトライ・バッチ分割付き）

使い方:
  catalog-sync full [--wipe] [--dry-run]
  catalog-sync price | stock | delta [--dry-run]
  catalog-sync fetch
  catalog-sync schedule [--once]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime

from catalog_sync.config import LOG_DIR, AppConfig, load_config
from catalog_sync.orchestrator import TASKS, SyncOrchestrator
from catalog_sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """ロギングの初期設定."""
    LOG_DIR.mkdir(exist_ok=True)
    log_file = LOG_DIR / f"catalog_sync_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )
    # HTTP クライアントのリクエストログは多すぎる
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="catalog-sync", description="Supplier catalog synchronization")
    parser.add_argument("command", choices=[*TASKS, "fetch", "schedule"])
    parser.add_argument("--wipe", action="store_true", help="Delete products and categories before a full import")
    parser.add_argument("--dry-run", action="store_true", help="Parse and normalize only; do not touch the store")
    parser.add_argument("--once", action="store_true", help="schedule: run a single full import and exit")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


async def dispatch(args: argparse.Namespace, config: AppConfig) -> int:
    orchestrator = SyncOrchestrator(config)

    if args.command == "fetch":
        saved = await orchestrator.fetch_feeds()
        logger.info("保存したフィード: %d 件", len(saved))
        return 0

    if args.command == "schedule":
        scheduler = SyncScheduler(orchestrator, config.schedule)
        if args.once:
            return 0 if await scheduler.run_once() else 1
        await scheduler.run_forever()
        return 0

    wipe = args.wipe or (args.command == "full" and config.schedule.wipe)
    reports = await orchestrator.run(args.command, wipe=wipe, dry_run=args.dry_run)
    for report in reports:
        logger.info(
            "%s: state=%s, categories=%d, products=%d, updated=%d, skipped=%d%s",
            report.task, report.state, report.categories, report.products,
            report.updated, report.skipped, " (dry-run)" if report.dry_run else "",
        )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    config = load_config()

    logger.info("=== カタログ同期 開始: %s ===", args.command)
    start_time = time.time()
    try:
        code = asyncio.run(dispatch(args, config))
    except Exception as e:
        logger.exception("=== カタログ同期 失敗: %s ===", e)
        return 1
    logger.info("=== カタログ同期 完了 (%.1f 秒) ===", time.time() - start_time)
    return code


if __name__ == "__main__":
    sys.exit(main())
