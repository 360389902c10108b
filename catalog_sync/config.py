"""設定モジュール — 環境変数・定数定義."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

_TRUTHY = {"1", "true", "yes", "y", "on"}

# --- ログ ---
LOG_DIR = _PROJECT_ROOT / "logs"

# --- フィード ---
FEED_KINDS = ("full", "price", "stock")
DOWNLOAD_TIMEOUT = 60  # 秒

# --- Supabase ---
CATEGORIES_TABLE = "categories"
PRODUCTS_TABLE = "products"
CONFLICT_KEY = "external_id"
LOOKUP_CHUNK_SIZE = 500


def parse_positive_int(value: str | None, fallback: int) -> int:
    """正の整数として解釈する。失敗時は fallback."""
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def parse_non_negative_int(value: str | None, fallback: int) -> int:
    """0 以上の整数として解釈する。失敗時は fallback."""
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed >= 0 else fallback


def parse_float(value: str | None, fallback: float) -> float:
    """有限の小数として解釈する（小数点はカンマも可）。失敗時は fallback."""
    try:
        parsed = float(str(value).strip().replace(",", "."))
    except (TypeError, ValueError):
        return fallback
    return parsed if math.isfinite(parsed) else fallback


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def _env(name: str, *aliases: str, default: str = "") -> str:
    """最初に設定されている環境変数の値を返す."""
    for key in (name, *aliases):
        value = os.environ.get(key)
        if value:
            return value.strip()
    return default


@dataclass(frozen=True)
class SupabaseConfig:
    url: str = ""
    service_key: str = ""
    schema: str = "public"
    request_timeout: int = 30  # 秒


@dataclass(frozen=True)
class SupplierConfig:
    """仕入先フィードと正規化の設定."""

    urls: dict[str, str] = field(default_factory=dict)
    paths: dict[str, str] = field(default_factory=dict)
    should_save: bool = False
    base_price_type: str = ""
    stock_store: str = ""
    price_multiplier: float = 1.0


@dataclass(frozen=True)
class SupplierApiConfig:
    """仕入先 REST API（カテゴリ補助ソース）の設定."""

    base_url: str = ""
    api_base_url: str = ""
    login: str = ""
    password: str = ""
    page_size: int = 20
    page_delay_ms: int = 50

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.login and self.password)


@dataclass(frozen=True)
class RetryConfig:
    retry_limit: int = 5
    retry_delay_ms: int = 800
    max_retry_delay_ms: int = 8000
    rate_limit_retry_ms: int = 2000
    rate_limit_max_delay_ms: int = 30000
    retry_jitter_ms: int = 250


@dataclass(frozen=True)
class UpsertConfig:
    """バッチ書き込みとスロットリングの設定."""

    category_batch_size: int = 200
    product_batch_size: int = 500
    delta_batch_size: int = 500
    batch_delay_ms: int = 200
    batch_delay_min_ms: int = 50
    batch_delay_max_ms: int = 5000
    batch_jitter_ms: int = 100
    batch_concurrency: int = 2
    batch_min_concurrency: int = 1
    batch_max_concurrency: int = 4
    batch_ramp_groups: int = 3
    lookup_chunk_size: int = LOOKUP_CHUNK_SIZE
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass(frozen=True)
class ScheduleConfig:
    full_time: str = "03:00"  # HH:MM（ローカル時刻）
    delta_interval_minutes: int = 30
    wipe: bool = False
    wipe_on_start: bool = False


@dataclass(frozen=True)
class AppConfig:
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    supplier: SupplierConfig = field(default_factory=SupplierConfig)
    supplier_api: SupplierApiConfig = field(default_factory=SupplierApiConfig)
    upsert: UpsertConfig = field(default_factory=UpsertConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)


def load_config() -> AppConfig:
    """環境変数から設定を組み立てる.

    数値として解釈できない値はデフォルトに戻す。
    Supabase の接続情報は書き込み時にのみ必須（dry-run では不要）。
    """
    retry_defaults = RetryConfig()
    retry = RetryConfig(
        retry_limit=parse_positive_int(_env("UPSERT_RETRIES"), retry_defaults.retry_limit),
        retry_delay_ms=parse_positive_int(_env("UPSERT_RETRY_MS"), retry_defaults.retry_delay_ms),
        max_retry_delay_ms=parse_positive_int(
            _env("UPSERT_MAX_RETRY_MS"), retry_defaults.max_retry_delay_ms
        ),
        rate_limit_retry_ms=parse_positive_int(
            _env("UPSERT_RATE_LIMIT_RETRY_MS"), retry_defaults.rate_limit_retry_ms
        ),
        rate_limit_max_delay_ms=parse_positive_int(
            _env("UPSERT_RATE_LIMIT_MAX_MS"), retry_defaults.rate_limit_max_delay_ms
        ),
        retry_jitter_ms=parse_non_negative_int(
            _env("UPSERT_RETRY_JITTER_MS"), retry_defaults.retry_jitter_ms
        ),
    )

    up = UpsertConfig()
    category_batch_size = parse_positive_int(_env("UPSERT_BATCH_SIZE"), up.category_batch_size)
    upsert = UpsertConfig(
        category_batch_size=category_batch_size,
        product_batch_size=parse_positive_int(_env("UPSERT_PRODUCT_BATCH_SIZE"), up.product_batch_size),
        delta_batch_size=parse_positive_int(_env("UPSERT_DELTA_BATCH_SIZE"), up.delta_batch_size),
        batch_delay_ms=parse_non_negative_int(_env("UPSERT_BATCH_DELAY_MS"), up.batch_delay_ms),
        batch_delay_min_ms=parse_non_negative_int(_env("UPSERT_BATCH_DELAY_MIN_MS"), up.batch_delay_min_ms),
        batch_delay_max_ms=parse_non_negative_int(_env("UPSERT_BATCH_DELAY_MAX_MS"), up.batch_delay_max_ms),
        batch_jitter_ms=parse_non_negative_int(_env("UPSERT_BATCH_JITTER_MS"), up.batch_jitter_ms),
        batch_concurrency=parse_positive_int(_env("UPSERT_CONCURRENCY"), up.batch_concurrency),
        batch_min_concurrency=parse_positive_int(_env("UPSERT_MIN_CONCURRENCY"), up.batch_min_concurrency),
        batch_max_concurrency=parse_positive_int(_env("UPSERT_MAX_CONCURRENCY"), up.batch_max_concurrency),
        batch_ramp_groups=parse_positive_int(_env("UPSERT_RAMP_GROUPS"), up.batch_ramp_groups),
        retry=retry,
    )

    urls = {
        "full": _env("SUPPLIER_FULL_URL", "SUPPLIER_YML_URL"),
        "price": _env("SUPPLIER_PRICE_URL"),
        "stock": _env("SUPPLIER_STOCK_URL"),
    }
    paths = {
        "full": _env("SUPPLIER_FULL_PATH", "SUPPLIER_YML_PATH"),
        "price": _env("SUPPLIER_PRICE_PATH"),
        "stock": _env("SUPPLIER_STOCK_PATH"),
    }
    supplier = SupplierConfig(
        urls=urls,
        paths=paths,
        should_save=is_truthy(_env("SUPPLIER_SAVE_FEEDS")),
        base_price_type=_env("SUPPLIER_BASE_PRICE_TYPE"),
        stock_store=_env("SUPPLIER_STOCK_STORE"),
        price_multiplier=parse_float(_env("SUPPLIER_PRICE_MULTIPLIER"), 1.0),
    )

    api_base = _env("SUPPLIER_API_BASE_URL").rstrip("/")
    supplier_api = SupplierApiConfig(
        base_url=api_base,
        api_base_url=_env("SUPPLIER_API_REST_URL", default=f"{api_base}/api/rest/v1" if api_base else ""),
        login=_env("SUPPLIER_API_LOGIN"),
        password=_env("SUPPLIER_API_PASSWORD"),
        # API 側の上限が 20 件
        page_size=max(1, min(parse_positive_int(_env("SUPPLIER_API_PAGE_SIZE"), 20), 20)),
        page_delay_ms=parse_non_negative_int(_env("SUPPLIER_API_PAGE_DELAY_MS"), 50),
    )

    supabase = SupabaseConfig(
        url=_env("SUPABASE_URL"),
        service_key=_env("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SECRET_KEY"),
        schema=_env("SUPABASE_SCHEMA", default="public"),
        request_timeout=parse_positive_int(_env("SUPABASE_REQUEST_TIMEOUT"), 30),
    )

    schedule = ScheduleConfig(
        full_time=_env("IMPORT_FULL_TIME", default="03:00"),
        delta_interval_minutes=parse_positive_int(_env("IMPORT_INTERVAL_MINUTES"), 30),
        wipe=is_truthy(_env("IMPORT_WIPE")),
        wipe_on_start=is_truthy(_env("IMPORT_WIPE_ON_START")),
    )

    return AppConfig(
        supabase=supabase,
        supplier=supplier,
        supplier_api=supplier_api,
        upsert=upsert,
        schedule=schedule,
    )
