"""データモデル定義."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


# --- フィードから抽出した生データ ---


@dataclass
class PriceEntry:
    """価格タグ 1 件 (例: <price type="Retail">100</price>)."""

    label: str
    value: str


@dataclass
class QuantityEntry:
    """倉庫別の在庫数 (例: <quantity store="Main">5</quantity>)."""

    label: str
    value: str


@dataclass
class RawCategory:
    id: str
    parent_id: str
    name: str


@dataclass
class RawOffer:
    """フィードの offer 1 件。値はすべて文字列のまま."""

    id: str = ""
    name: str = ""
    vendor_code: str = ""
    category_id: str = ""
    picture: str = ""
    available: str = ""  # "false" のときのみ在庫 0 扱い
    prices: list[PriceEntry] = field(default_factory=list)
    quantities: list[QuantityEntry] = field(default_factory=list)
    outlets: list[str] = field(default_factory=list)  # instock 値
    stock_field: str = ""  # stock / quantity / instock / count のいずれか


@dataclass
class RawCatalog:
    categories: list[RawCategory]
    offers: list[RawOffer]


# --- 正規化済みレコード ---


@dataclass
class Category:
    external_id: str
    parent_external_id: str | None
    name: str
    depth: int = 1  # 導出値。DB には書かない

    def to_record(self) -> dict:
        return {
            "external_id": self.external_id,
            "parent_external_id": self.parent_external_id,
            "name": self.name,
        }


@dataclass
class Product:
    external_id: str
    sku: str
    name: str
    category_external_id: str | None
    base_price: Decimal | None
    stock: int
    picture_url: str | None

    def to_record(self) -> dict:
        return {
            "external_id": self.external_id,
            "category_external_id": self.category_external_id,
            "sku": self.sku,
            "name": self.name,
            # numeric(12,2) 列。JSON には float で渡す
            "base_price": float(self.base_price) if self.base_price is not None else None,
            "stock": self.stock,
            "picture_url": self.picture_url,
        }


@dataclass
class PriceUpdate:
    external_id: str
    base_price: Decimal

    def to_record(self) -> dict:
        return {"external_id": self.external_id, "base_price": float(self.base_price)}


@dataclass
class StockUpdate:
    external_id: str
    stock: int

    def to_record(self) -> dict:
        return {"external_id": self.external_id, "stock": self.stock}


@dataclass
class Catalog:
    """正規化済みのフルカタログ."""

    categories: list[Category]
    products: list[Product]
    skipped_categories: int = 0
    skipped_products: int = 0


@dataclass
class RunReport:
    """1 タスク分の実行結果."""

    task: str
    state: str = "idle"
    categories: int = 0
    products: int = 0
    updated: int = 0
    skipped: int = 0
    dry_run: bool = False
    error: str | None = None
