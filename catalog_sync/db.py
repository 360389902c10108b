"""Supabase データベース操作モジュール.

categories / products テーブルへの upsert（衝突キー external_id）、
全件削除、external_id での既存行取得を行う。
スキーマ指定は .schema() で行う。
"""

from __future__ import annotations

import logging

from supabase import AsyncClient, AsyncClientOptions, acreate_client

from catalog_sync.config import CONFLICT_KEY, PRODUCTS_TABLE, SupabaseConfig

logger = logging.getLogger(__name__)


class CatalogStore:
    """AsyncClient の薄いラッパー。失敗時は postgrest / httpx の例外をそのまま送出する."""

    def __init__(self, client: AsyncClient, schema: str = "public") -> None:
        self._client = client
        self.schema = schema

    def _table(self, name: str):
        """設定スキーマのテーブルを参照する."""
        return self._client.schema(self.schema).table(name)

    async def upsert(self, table: str, rows: list[dict], on_conflict: str = CONFLICT_KEY) -> None:
        if not rows:
            return
        await self._table(table).upsert(rows, on_conflict=on_conflict).execute()

    async def clear(self, table: str) -> None:
        """テーブルを全件削除する（PostgREST はフィルタ無しの delete を拒否する）."""
        await self._table(table).delete().gte("created_at", "1970-01-01").execute()

    async def fetch_names(self, external_ids: list[str]) -> dict[str, str]:
        """external_id → name の対応を取得する.

        Returns:
            {external_id: name}。存在しない id は含まれない。
        """
        if not external_ids:
            return {}
        resp = (
            await self._table(PRODUCTS_TABLE)
            .select("external_id, name")
            .in_("external_id", external_ids)
            .execute()
        )
        names: dict[str, str] = {}
        for row in resp.data or []:
            if row.get("external_id") and row.get("name"):
                names[str(row["external_id"])] = str(row["name"])
        return names


async def create_store(config: SupabaseConfig) -> CatalogStore:
    """設定から CatalogStore を作る.

    Raises:
        ValueError: SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY が未設定の場合
    """
    if not config.url or not config.service_key:
        raise ValueError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY")
    client = await acreate_client(
        config.url,
        config.service_key,
        options=AsyncClientOptions(
            persist_session=False,
            postgrest_client_timeout=config.request_timeout,
        ),
    )
    logger.info("Supabase に接続: %s (schema=%s)", config.url, config.schema)
    return CatalogStore(client, schema=config.schema)
