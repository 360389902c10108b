"""XML フィードのパースモジュール.

XML を汎用ツリー（BeautifulSoup / lxml-xml）に変換し、
フルカタログ・価格差分・在庫差分の生データを取り出す。
offer の項目は属性を優先し、無ければ直下の子要素のテキストを読む。
"""

from __future__ import annotations

import logging
import re

from bs4 import BeautifulSoup, Tag

from catalog_sync.errors import InvalidCatalogFormat
from catalog_sync.models import PriceEntry, QuantityEntry, RawCatalog, RawCategory, RawOffer

logger = logging.getLogger(__name__)

# デコード済みテキストなので宣言のエンコーディングは不要
_XML_DECLARATION = re.compile(r"^\ufeff?\s*<\?xml[^>]*\?>")

_STOCK_FIELDS = ("stock", "quantity", "instock", "count")


def parse_xml(text: str) -> BeautifulSoup:
    """XML テキストを汎用ツリーに変換する（スキーマ検証なし）."""
    return BeautifulSoup(_XML_DECLARATION.sub("", text, count=1), "xml")


def _child(tag: Tag | None, name: str) -> Tag | None:
    if tag is None:
        return None
    return tag.find(name, recursive=False)


def _children(tag: Tag | None, name: str) -> list[Tag]:
    if tag is None:
        return []
    return tag.find_all(name, recursive=False)


def _text(tag: Tag | None) -> str:
    return tag.get_text(strip=True) if tag is not None else ""


def _field(tag: Tag, name: str) -> str:
    """属性 → 直下の子要素の順に値を読む."""
    value = tag.get(name)
    if value is not None:
        return str(value).strip()
    return _text(_child(tag, name))


def _extract_offer(tag: Tag) -> RawOffer:
    price_tags = _children(_child(tag, "prices"), "price") or _children(tag, "price")
    prices = [PriceEntry(label=p.get("type", ""), value=_text(p)) for p in price_tags]

    quantities = [
        QuantityEntry(label=q.get("store", ""), value=_text(q))
        for q in _children(tag, "quantity")
    ]

    outlet_tags = _children(_child(tag, "outlets"), "outlet") or _children(tag, "outlet")
    outlets = [
        str(o.get("instock")) if o.get("instock") is not None else _text(o)
        for o in outlet_tags
    ]

    stock_field = ""
    for name in _STOCK_FIELDS:
        stock_field = _field(tag, name)
        if stock_field:
            break

    return RawOffer(
        id=_field(tag, "id"),
        name=_field(tag, "name"),
        vendor_code=_field(tag, "vendorCode"),
        category_id=_field(tag, "categoryId"),
        picture=_field(tag, "picture"),
        available=_field(tag, "available"),
        prices=prices,
        quantities=quantities,
        outlets=outlets,
        stock_field=stock_field,
    )


def _extract_category(tag: Tag) -> RawCategory:
    return RawCategory(id=_field(tag, "id"), parent_id=_field(tag, "parentId"), name=_text(tag))


def _delta_offers(tree: BeautifulSoup, root_name: str) -> list[RawOffer]:
    root = _child(tree, root_name)
    if root is None:
        raise InvalidCatalogFormat(f"{root_name}: root element is missing")
    container = _child(root, "offers")
    if container is None:
        container = root
    return [_extract_offer(o) for o in _children(container, "offer")]


def parse_full_catalog(tree: BeautifulSoup) -> RawCatalog:
    """yml_catalog/shop からカテゴリと offer を取り出す.

    Raises:
        InvalidCatalogFormat: shop が無い、または offers が空の場合
    """
    shop = _child(_child(tree, "yml_catalog"), "shop")
    if shop is None:
        raise InvalidCatalogFormat("full catalog: yml_catalog/shop is missing")

    offer_tags = _children(_child(shop, "offers"), "offer")
    if not offer_tags:
        raise InvalidCatalogFormat("full catalog: offers are missing or empty")

    categories = [_extract_category(c) for c in _children(_child(shop, "categories"), "category")]
    offers = [_extract_offer(o) for o in offer_tags]
    logger.info("フルカタログ: categories=%d, offers=%d", len(categories), len(offers))
    return RawCatalog(categories=categories, offers=offers)


def parse_price_updates(tree: BeautifulSoup) -> list[RawOffer]:
    """price_updates から価格差分の offer を取り出す."""
    offers = _delta_offers(tree, "price_updates")
    logger.info("価格差分: offers=%d", len(offers))
    return offers


def parse_stock_updates(tree: BeautifulSoup) -> list[RawOffer]:
    """stock_updates から在庫差分の offer を取り出す."""
    offers = _delta_offers(tree, "stock_updates")
    logger.info("在庫差分: offers=%d", len(offers))
    return offers
