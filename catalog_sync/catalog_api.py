"""仕入先 REST API からカテゴリ情報を取得するモジュール.

フィードのカテゴリより細かい分類が API 側にあるため、
ログイン情報が設定されている場合のみ以下を取得する:
  1. ログインページで csrftoken クッキーを取得し、API にログイン
  2. カテゴリ一覧
  3. 商品一覧（ページング、1 ページ最大 20 件）
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

import requests

from catalog_sync.config import DOWNLOAD_TIMEOUT, SupplierApiConfig
from catalog_sync.errors import FeedUnavailable
from catalog_sync.models import Category
from catalog_sync.normalizer import build_category_depth, dedupe_by_external_id
from catalog_sync.retry import RetryRunner

logger = logging.getLogger(__name__)


@dataclass
class ApiSnapshot:
    categories: list[Category]
    categories_by_code: dict[str, list[str]]  # vendorCode -> カテゴリ id
    depth_by_id: dict[str, int] = field(default_factory=dict)


def normalize_api_categories(items: list[dict]) -> list[Category]:
    categories: list[Category] = []
    for item in items:
        external_id = str(item.get("id") or "").strip()
        name = str(item.get("name") or "").strip()
        if not external_id or not name:
            continue
        parent_id = item.get("parent_id")
        categories.append(Category(
            external_id=external_id,
            parent_external_id=str(parent_id) if parent_id else None,
            name=name,
        ))
    return dedupe_by_external_id(categories)


def index_products_by_code(products: list[dict]) -> dict[str, list[str]]:
    index: dict[str, list[str]] = {}
    for product in products:
        code = str(product.get("code") or "").strip()
        if not code:
            continue
        index[code] = [str(c) for c in product.get("categories") or [] if c]
    return index


class SupplierApiClient:
    """requests.Session でログイン状態（クッキー）を保持する API クライアント."""

    def __init__(self, config: SupplierApiConfig, retry: RetryRunner) -> None:
        self.config = config
        self.retry = retry
        self.session = requests.Session()

    def _headers(self) -> dict[str, str]:
        return {
            "Referer": f"{self.config.base_url}/catalog/",
            "X-CSRFToken": self.session.cookies.get("csrftoken", ""),
            "Content-Type": "application/json",
        }

    def _get(self, url: str) -> None:
        resp = self.session.get(url, timeout=DOWNLOAD_TIMEOUT)
        resp.raise_for_status()

    def _post_json(self, url: str, payload: dict, headers: dict[str, str]):
        resp = self.session.post(url, json=payload, headers=headers, timeout=DOWNLOAD_TIMEOUT)
        resp.raise_for_status()
        return resp.json()

    async def _request(self, url: str, payload: dict, label: str, headers: dict[str, str] | None = None):
        return await self.retry.with_retry(
            lambda: asyncio.to_thread(self._post_json, url, payload, headers or self._headers()),
            label,
        )

    async def login(self) -> None:
        login_page = f"{self.config.base_url}/login/"
        await self.retry.with_retry(lambda: asyncio.to_thread(self._get, login_page), "login page")
        token = self.session.cookies.get("csrftoken")
        if not token:
            raise FeedUnavailable("supplier API: csrftoken cookie was not issued by the login page")
        await self._request(
            f"{self.config.api_base_url}/login/",
            {"username": self.config.login, "password": self.config.password},
            "login",
            headers={"Referer": login_page, "X-CSRFToken": token, "Content-Type": "application/json"},
        )

    async def fetch_categories(self) -> list[dict]:
        data = await self._request(
            f"{self.config.api_base_url}/catalog/categories/",
            {"search_text": None, "categories": []},
            "categories",
        )
        return data if isinstance(data, list) else []

    async def fetch_products(self) -> list[dict]:
        products: list[dict] = []
        page = 1
        total_pages = 1
        while page <= total_pages:
            payload = await self._request(
                f"{self.config.api_base_url}/catalog/products/",
                {"page": page, "page_size": self.config.page_size},
                f"products page {page}",
            )
            payload = payload if isinstance(payload, dict) else {}
            results = payload.get("results")
            products.extend(results if isinstance(results, list) else [])

            try:
                count_pages = int((payload.get("pagination") or {}).get("count_pages"))
            except (TypeError, ValueError):
                count_pages = 0
            if count_pages > 0:
                total_pages = count_pages

            if page >= total_pages:
                break
            page += 1
            if self.config.page_delay_ms > 0:
                await asyncio.sleep(self.config.page_delay_ms / 1000)
        return products

    def close(self) -> None:
        self.session.close()


async def load_api_snapshot(config: SupplierApiConfig, retry: RetryRunner) -> ApiSnapshot | None:
    """API からカテゴリと商品のカテゴリ割り当てを取得する.

    Returns:
        ログイン情報が未設定なら None（フィードのカテゴリを使う）。
    """
    if not config.enabled:
        logger.info("仕入先 API のログイン情報が未設定のため、フィードのカテゴリを使用")
        return None

    client = SupplierApiClient(config, retry)
    try:
        logger.info("仕入先 API にログイン中...")
        await client.login()
        categories = normalize_api_categories(await client.fetch_categories())
        logger.info("API カテゴリ: %d 件", len(categories))
        categories_by_code = index_products_by_code(await client.fetch_products())
        logger.info("API 商品: %d 件", len(categories_by_code))
    finally:
        client.close()

    return ApiSnapshot(
        categories=categories,
        categories_by_code=categories_by_code,
        depth_by_id=build_category_depth(categories),
    )
