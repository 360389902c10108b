"""バッチ書き込みモジュール.

処理フロー:
  1. 行を固定サイズのバッチに分割
  2. スロットルの並列数ごとにグループ化し、グループ内は同時に upsert
  3. リトライでも失敗したバッチは半分に分割して再試行（1 行になるまで）
  4. グループ終了ごとにレート制限の有無をスロットルへ反映し、待機
差分（価格・在庫）は既存の external_id のみ更新し、新規行は作らない。
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from catalog_sync.config import CATEGORIES_TABLE, PRODUCTS_TABLE, UpsertConfig
from catalog_sync.db import CatalogStore
from catalog_sync.errors import BatchPartialFailure, RemoteTransient, RowFailure
from catalog_sync.models import Catalog, PriceUpdate, StockUpdate
from catalog_sync.retry import RetryRunner
from catalog_sync.throttle import ThrottleController

logger = logging.getLogger(__name__)


def chunk(rows: Sequence, size: int) -> list[list]:
    size = max(1, size)
    return [list(rows[i:i + size]) for i in range(0, len(rows), size)]


class BatchReconciler:
    """1 回の同期分の書き込みを担当する。スロットル状態はインスタンスごと."""

    def __init__(
        self,
        store: CatalogStore,
        config: UpsertConfig,
        throttle: ThrottleController | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.throttle = throttle or ThrottleController(config)
        self.retry = RetryRunner(config.retry, on_rate_limit=self.throttle.record_rate_limit)

    async def _upsert_with_split(self, table: str, batch: list[dict], label: str) -> list[RowFailure]:
        """バッチを書き込む。失敗したら二分割して各半分を再試行する.

        Returns:
            1 行まで分割しても失敗した行
        """
        failures: list[RowFailure] = []
        stack: list[tuple[list[dict], str]] = [(batch, label)]
        while stack:
            rows, current = stack.pop()
            if not rows:
                continue
            try:
                await self.retry.with_retry(lambda rows=rows: self.store.upsert(table, rows), current)
            except RemoteTransient as e:
                if len(rows) <= 1:
                    logger.error("%s: 行を書き込めません external_id=%s: %s",
                                 current, rows[0].get("external_id"), e.__cause__ or e)
                    failures.append(RowFailure(table=table, row=rows[0], error=e.__cause__ or e))
                    continue
                mid = (len(rows) + 1) // 2
                logger.warning("%s: バッチ失敗、%d 件と %d 件に分割", current, mid, len(rows) - mid)
                # 前半を先に処理する
                stack.append((rows[mid:], f"{current}b"))
                stack.append((rows[:mid], f"{current}a"))
        return failures

    async def upsert_all(self, table: str, rows: Sequence[dict], batch_size: int) -> int:
        """全行をバッチ upsert する.

        Returns:
            書き込んだ行数

        Raises:
            BatchPartialFailure: 分割しても書き込めない行があった場合
                （そのグループの他バッチは完了させ、以降のグループは開始しない）
        """
        batches = chunk(rows, batch_size)
        processed = 0
        i = 0
        while i < len(batches):
            group = batches[i:i + self.throttle.concurrency]
            hits_before = self.throttle.rate_limit_hits

            results = await asyncio.gather(*(
                self._upsert_with_split(table, batch, f"{table} batch {i + j + 1}/{len(batches)}")
                for j, batch in enumerate(group)
            ))
            failures = [f for group_failures in results for f in group_failures]

            processed += sum(len(b) for b in group)
            logger.info("%s: %d/%d", table, processed, len(rows))

            self.throttle.adjust(self.throttle.rate_limit_hits > hits_before)
            if failures:
                raise BatchPartialFailure(table, failures)

            i += len(group)
            if i < len(batches):
                await self.throttle.pause()

        return processed

    async def clear_table(self, table: str) -> None:
        await self.retry.with_retry(lambda: self.store.clear(table), f"{table} wipe")
        logger.info("%s: 全件削除", table)

    async def fetch_existing_names(self, external_ids: Sequence[str]) -> dict[str, str]:
        """既存商品の external_id → name を chunk ごとに取得する."""
        unique_ids = list(dict.fromkeys(str(i) for i in external_ids if i))
        chunks = chunk(unique_ids, self.config.lookup_chunk_size)
        names: dict[str, str] = {}
        for n, ids in enumerate(chunks, start=1):
            names.update(await self.retry.with_retry(
                lambda ids=ids: self.store.fetch_names(ids),
                f"products lookup {n}/{len(chunks)}",
            ))
        return names

    async def filter_known(self, updates: Sequence[PriceUpdate | StockUpdate]) -> tuple[list[dict], int]:
        """既存商品に一致する差分だけを残す.

        upsert で新規行が作られないよう、既存の name を付けて返す。

        Returns:
            (書き込むレコード, スキップ件数)
        """
        names = await self.fetch_existing_names([u.external_id for u in updates])
        records: list[dict] = []
        for update in updates:
            name = names.get(update.external_id)
            if not name:
                continue
            record = update.to_record()
            record["name"] = name
            records.append(record)
        return records, len(updates) - len(records)

    async def reconcile_catalog(self, catalog: Catalog, wipe: bool = False) -> None:
        """フルカタログを書き込む。カテゴリを先に全件書き込んでから商品."""
        if wipe:
            logger.info("wipe 有効: 商品とカテゴリを削除します")
            await self.clear_table(PRODUCTS_TABLE)
            await self.clear_table(CATEGORIES_TABLE)

        await self.upsert_all(
            CATEGORIES_TABLE,
            [c.to_record() for c in catalog.categories],
            self.config.category_batch_size,
        )
        await self.upsert_all(
            PRODUCTS_TABLE,
            [p.to_record() for p in catalog.products],
            self.config.product_batch_size,
        )

    async def reconcile_deltas(self, kind: str, updates: Sequence[PriceUpdate | StockUpdate]) -> tuple[int, int]:
        """価格・在庫差分を既存商品にのみ書き込む.

        Returns:
            (更新件数, 未登録でスキップした件数)
        """
        records, skipped = await self.filter_known(updates)
        if skipped:
            logger.warning("%s: 未登録の商品をスキップ: %d 件", kind.upper(), skipped)
        if not records:
            logger.info("%s: 更新対象なし", kind.upper())
            return 0, skipped
        await self.upsert_all(PRODUCTS_TABLE, records, self.config.delta_batch_size)
        return len(records), skipped
