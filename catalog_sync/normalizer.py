"""正規化モジュール — 生データを Category / Product / 差分レコードに変換する.

処理内容:
  - カテゴリ: id・名前の無いノードを捨て、external_id で重複排除（後勝ち）
  - カテゴリ深さ: 親をたどって計算（循環は深さ 1 として打ち切る）
  - 基本価格: 優先ラベルの価格タグ → 無ければ先頭。倍率を掛けて小数 2 桁
  - 在庫: 倉庫別 quantity → outlet → 汎用項目 → デフォルト値
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, TypeVar

from catalog_sync.config import SupplierConfig
from catalog_sync.errors import RowInvalid
from catalog_sync.models import (
    Catalog,
    Category,
    PriceEntry,
    PriceUpdate,
    Product,
    RawCatalog,
    RawCategory,
    RawOffer,
    StockUpdate,
)

if TYPE_CHECKING:
    from catalog_sync.catalog_api import ApiSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 先頭の数値部分のみ読む（"100 руб." → 100）
_NUMBER_PATTERN = re.compile(r"^[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?")
_CENTS = Decimal("0.01")
_WHITESPACE = re.compile(r"\s+")


def normalize_label(value: str | None) -> str:
    """ラベル比較用の正規化: _ → 空白、空白の連続を 1 つに、小文字化."""
    return _WHITESPACE.sub(" ", str(value or "").replace("_", " ")).strip().lower()


def parse_number(value: str | None) -> Decimal | None:
    """数値テキストを Decimal にする。小数点はカンマも可。解釈できなければ None."""
    if value is None:
        return None
    match = _NUMBER_PATTERN.match(str(value).strip().replace(",", "."))
    if not match:
        return None
    try:
        number = Decimal(match.group(0))
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def _to_stock(total: Decimal) -> int:
    return max(0, int(total.quantize(Decimal(1), rounding=ROUND_HALF_UP)))


def dedupe_by_external_id(rows: Iterable[T]) -> list[T]:
    """external_id で重複排除する.

    同じ id は後に出た行で上書きし、並び順は最初に出た位置を保つ。
    """
    by_id: dict[str, T] = {}
    for row in rows:
        external_id = getattr(row, "external_id", None)
        if external_id:
            by_id[external_id] = row
    return list(by_id.values())


# --- カテゴリ ---


def normalize_categories(raw_categories: Iterable[RawCategory]) -> list[Category]:
    categories: list[Category] = []
    skipped = 0
    for node in raw_categories:
        external_id = (node.id or "").strip()
        name = (node.name or "").strip()
        if not external_id or not name:
            skipped += 1
            continue
        categories.append(Category(
            external_id=external_id,
            parent_external_id=(node.parent_id or "").strip() or None,
            name=name,
        ))
    if skipped:
        logger.warning("id または名前の無いカテゴリをスキップ: %d 件", skipped)
    return dedupe_by_external_id(categories)


def build_category_depth(categories: Iterable[Category]) -> dict[str, int]:
    """各カテゴリの深さを計算する.

    親が無い / セット内に存在しない → 1、それ以外は親の深さ + 1。
    計算中のカテゴリに再び到達した（循環）場合はそこを深さ 1 とみなす。

    Returns:
        {external_id: depth}
    """
    by_id = {c.external_id: c for c in categories}
    depth_by_id: dict[str, int] = {}

    for start in by_id:
        path: list[str] = []
        on_path: set[str] = set()
        current = start
        while True:
            if current in depth_by_id:
                base = depth_by_id[current]
                break
            if current in on_path:
                base = 1
                break
            path.append(current)
            on_path.add(current)
            parent_id = by_id[current].parent_external_id
            if not parent_id or parent_id not in by_id:
                base = 0
                break
            current = parent_id

        for category_id in reversed(path):
            base += 1
            depth_by_id[category_id] = base

    return depth_by_id


def pick_deepest_category(category_ids: Iterable[str | None], depth_by_id: dict[str, int]) -> str | None:
    """最も深いカテゴリ id を返す。同じ深さなら先に出たもの."""
    best_id: str | None = None
    best_depth = -1
    for category_id in category_ids:
        if not category_id:
            continue
        category_id = str(category_id)
        depth = depth_by_id.get(category_id, 1)
        if depth > best_depth:
            best_id, best_depth = category_id, depth
    return best_id


def attach_depths(categories: list[Category]) -> dict[str, int]:
    depth_by_id = build_category_depth(categories)
    for category in categories:
        category.depth = depth_by_id[category.external_id]
    return depth_by_id


# --- 価格・在庫 ---


def select_base_price(
    entries: list[PriceEntry], preferred_label: str | None, multiplier: float = 1.0
) -> Decimal | None:
    """価格タグから基本価格を選ぶ.

    Returns:
        倍率適用・小数 2 桁丸め済みの価格。価格が無い / 数値でなければ None。
    """
    if not entries:
        return None

    preferred = normalize_label(preferred_label)
    chosen = None
    if preferred:
        chosen = next((e for e in entries if normalize_label(e.label) == preferred), None)
    if chosen is None:
        chosen = entries[0]

    value = parse_number(chosen.value)
    if value is None:
        return None
    return (value * Decimal(str(multiplier))).quantize(_CENTS, rounding=ROUND_HALF_UP)


def is_available(offer: RawOffer) -> bool:
    return offer.available.strip().lower() != "false"


def aggregate_stock(offer: RawOffer, preferred_store: str | None = None, default: int | None = 1) -> int | None:
    """offer の在庫数を集計する.

    優先順位:
      1. available="false" → 0
      2. quantity（優先倉庫に一致するものの合計。一致が無ければ全件の合計）
      3. outlet の instock 合計
      4. stock / quantity / instock / count の単一項目
      5. default（フルカタログでは 1: 在庫不明でも販売中の商品を隠さない）
    """
    if not is_available(offer):
        return 0

    parsed_quantities = []
    for q in offer.quantities:
        value = parse_number(q.value)
        if value is not None:
            parsed_quantities.append((normalize_label(q.label), value))
    if parsed_quantities:
        preferred = normalize_label(preferred_store)
        matched = [value for label, value in parsed_quantities if preferred and label == preferred]
        if matched:
            return _to_stock(sum(matched, Decimal(0)))
        return _to_stock(sum((value for _, value in parsed_quantities), Decimal(0)))

    outlet_values = [value for value in map(parse_number, offer.outlets) if value is not None]
    if outlet_values:
        return _to_stock(sum(outlet_values, Decimal(0)))

    fallback = parse_number(offer.stock_field)
    if fallback is not None:
        return _to_stock(fallback)

    return default


# --- offer ---


def normalize_offer(offer: RawOffer, config: SupplierConfig) -> Product:
    """offer を Product に変換する.

    Raises:
        RowInvalid: 商品名が無い場合
    """
    name = offer.name.strip()
    if not name:
        raise RowInvalid("offer without name", offer.id or None)

    external_id = offer.id.strip() or name
    return Product(
        external_id=external_id,
        sku=offer.vendor_code.strip() or external_id,
        name=name,
        category_external_id=offer.category_id.strip() or None,
        base_price=select_base_price(offer.prices, config.base_price_type, config.price_multiplier),
        stock=aggregate_stock(offer, config.stock_store, default=1),
        picture_url=offer.picture.strip() or None,
    )


def normalize_offers(offers: Iterable[RawOffer], config: SupplierConfig) -> tuple[list[Product], int]:
    products: list[Product] = []
    skipped = 0
    for offer in offers:
        try:
            products.append(normalize_offer(offer, config))
        except RowInvalid as e:
            skipped += 1
            logger.debug("offer をスキップ: id=%s, reason=%s", e.external_id, e.reason)
    if skipped:
        logger.warning("商品名の無い offer をスキップ: %d 件", skipped)
    return dedupe_by_external_id(products), skipped


def normalize_catalog(raw: RawCatalog, config: SupplierConfig, snapshot: ApiSnapshot | None = None) -> Catalog:
    """フルカタログを正規化する.

    snapshot（仕入先 API）がある場合はカテゴリを API のものに置き換え、
    vendorCode が一致する商品には API 側カテゴリのうち最も深いものを割り当てる。
    """
    raw_category_count = len(raw.categories)
    if snapshot is not None:
        categories = dedupe_by_external_id(snapshot.categories)
        depth_by_id = snapshot.depth_by_id or build_category_depth(categories)
        for category in categories:
            category.depth = depth_by_id.get(category.external_id, 1)
    else:
        categories = normalize_categories(raw.categories)
        depth_by_id = attach_depths(categories)

    products, skipped_products = normalize_offers(raw.offers, config)

    if snapshot is not None:
        remapped = 0
        code_by_id = {o.id.strip() or o.name.strip(): o.vendor_code.strip() for o in raw.offers}
        for product in products:
            api_categories = snapshot.categories_by_code.get(code_by_id.get(product.external_id, ""))
            if not api_categories:
                continue
            deepest = pick_deepest_category(api_categories, depth_by_id)
            if deepest:
                product.category_external_id = deepest
                remapped += 1
        logger.info("API カテゴリを適用: %d 件", remapped)

    return Catalog(
        categories=categories,
        products=products,
        skipped_categories=0 if snapshot is not None else raw_category_count - len(categories),
        skipped_products=skipped_products,
    )


def normalize_price_updates(offers: Iterable[RawOffer], config: SupplierConfig) -> list[PriceUpdate]:
    """価格差分を正規化する。id または価格の無いものはスキップ."""
    updates: list[PriceUpdate] = []
    skipped = 0
    for offer in offers:
        external_id = offer.id.strip()
        price = select_base_price(offer.prices, config.base_price_type, config.price_multiplier)
        if not external_id or price is None:
            skipped += 1
            continue
        updates.append(PriceUpdate(external_id=external_id, base_price=price))
    if skipped:
        logger.warning("価格差分: id または価格の無い offer をスキップ: %d 件", skipped)
    return dedupe_by_external_id(updates)


def normalize_stock_updates(offers: Iterable[RawOffer], config: SupplierConfig) -> list[StockUpdate]:
    """在庫差分を正規化する。id または在庫数の無いものはスキップ."""
    updates: list[StockUpdate] = []
    skipped = 0
    for offer in offers:
        external_id = offer.id.strip()
        stock = aggregate_stock(offer, config.stock_store, default=None)
        if not external_id or stock is None:
            skipped += 1
            continue
        updates.append(StockUpdate(external_id=external_id, stock=stock))
    if skipped:
        logger.warning("在庫差分: id または在庫数の無い offer をスキップ: %d 件", skipped)
    return dedupe_by_external_id(updates)
