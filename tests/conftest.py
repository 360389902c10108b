"""テスト共通のフィクスチャとフェイク."""

from __future__ import annotations

from pathlib import Path

import pytest

from catalog_sync.config import RetryConfig, SupplierConfig, UpsertConfig

FIXTURES_DIR = Path(__file__).parent / "fixtures"


class RateLimitedError(Exception):
    """PostgREST / ゲートウェイの 429 を模した例外."""

    def __init__(self, message: str = "Too Many Requests") -> None:
        super().__init__(message)
        self.status = 429


class RowRejectedError(Exception):
    """制約違反などで行が拒否されたことを模した例外."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.code = "23502"
        self.message = message


class FakeStore:
    """CatalogStore と同じインターフェースのインメモリ実装.

    Args:
        products: 既存の商品 {external_id: row}
        bad_ids: これを含むバッチは常に失敗する
        rate_limit_failures: 最初の N 回の upsert を 429 で失敗させる
    """

    def __init__(
        self,
        products: dict[str, dict] | None = None,
        bad_ids: set[str] | None = None,
        rate_limit_failures: int = 0,
    ) -> None:
        self.tables: dict[str, dict[str, dict]] = {
            "categories": {},
            "products": {k: dict(v) for k, v in (products or {}).items()},
        }
        self.bad_ids = bad_ids or set()
        self.rate_limit_failures = rate_limit_failures
        self.upsert_calls: list[tuple[str, list[str]]] = []
        self.cleared: list[str] = []
        self.lookups: list[list[str]] = []

    async def upsert(self, table: str, rows: list[dict], on_conflict: str = "external_id") -> None:
        ids = [r[on_conflict] for r in rows]
        self.upsert_calls.append((table, ids))
        if self.rate_limit_failures > 0:
            self.rate_limit_failures -= 1
            raise RateLimitedError()
        bad = self.bad_ids.intersection(ids)
        if bad:
            raise RowRejectedError(f'null value in column "name" violates not-null constraint ({sorted(bad)})')
        for row in rows:
            self.tables[table].setdefault(row[on_conflict], {}).update(row)

    async def clear(self, table: str) -> None:
        self.cleared.append(table)
        self.tables[table] = {}

    async def fetch_names(self, external_ids: list[str]) -> dict[str, str]:
        self.lookups.append(list(external_ids))
        products = self.tables["products"]
        return {i: products[i]["name"] for i in external_ids if i in products and products[i].get("name")}


@pytest.fixture
def fast_retry_config() -> RetryConfig:
    return RetryConfig(
        retry_limit=1,
        retry_delay_ms=0,
        max_retry_delay_ms=0,
        rate_limit_retry_ms=0,
        rate_limit_max_delay_ms=0,
        retry_jitter_ms=0,
    )


@pytest.fixture
def fast_upsert_config(fast_retry_config) -> UpsertConfig:
    return UpsertConfig(
        category_batch_size=2,
        product_batch_size=2,
        delta_batch_size=2,
        batch_delay_ms=0,
        batch_delay_min_ms=0,
        batch_delay_max_ms=1000,
        batch_jitter_ms=0,
        batch_concurrency=2,
        batch_min_concurrency=1,
        batch_max_concurrency=4,
        batch_ramp_groups=3,
        retry=fast_retry_config,
    )


@pytest.fixture
def supplier_config() -> SupplierConfig:
    return SupplierConfig(
        paths={
            "full": str(FIXTURES_DIR / "full_catalog.xml"),
            "price": str(FIXTURES_DIR / "price_updates.xml"),
            "stock": str(FIXTURES_DIR / "stock_updates.xml"),
        },
        base_price_type="Retail",
        price_multiplier=1.2,
    )


@pytest.fixture
def make_store():
    """FakeStore を作るファクトリ."""
    return FakeStore
