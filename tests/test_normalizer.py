"""normalizer モジュールのユニットテスト."""

from decimal import Decimal
from pathlib import Path

import pytest

from catalog_sync.catalog_api import ApiSnapshot
from catalog_sync.config import SupplierConfig
from catalog_sync.errors import RowInvalid
from catalog_sync.models import Category, PriceEntry, QuantityEntry, RawCategory, RawOffer
from catalog_sync.normalizer import (
    aggregate_stock,
    build_category_depth,
    dedupe_by_external_id,
    normalize_catalog,
    normalize_categories,
    normalize_label,
    normalize_offer,
    normalize_price_updates,
    normalize_stock_updates,
    parse_number,
    pick_deepest_category,
    select_base_price,
)
from catalog_sync.parser import parse_full_catalog, parse_price_updates, parse_stock_updates, parse_xml

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def _load_tree(name: str):
    return parse_xml((FIXTURES_DIR / name).read_text(encoding="utf-8"))


def _cat(external_id, parent=None, name=None):
    return Category(external_id=external_id, parent_external_id=parent, name=name or f"cat {external_id}")


class TestNormalizeLabel:
    """normalize_label のテスト."""

    def test_variants(self):
        assert normalize_label("Retail_Price") == "retail price"
        assert normalize_label("  retail   PRICE ") == "retail price"
        assert normalize_label("retail__price") == "retail price"

    def test_none(self):
        assert normalize_label(None) == ""


class TestParseNumber:
    """parse_number のテスト."""

    def test_comma_separator(self):
        assert parse_number("120,50") == Decimal("120.50")

    def test_leading_number_with_suffix(self):
        assert parse_number("100 руб.") == Decimal("100")

    @pytest.mark.parametrize("value", ["", "n/a", None, "руб 100", "inf", "NaN"])
    def test_not_numeric(self, value):
        assert parse_number(value) is None


class TestNormalizeCategories:
    """normalize_categories のテスト."""

    def test_drops_missing_id_or_name(self):
        raw = [
            RawCategory(id="1", parent_id="", name="A"),
            RawCategory(id="", parent_id="", name="No id"),
            RawCategory(id="3", parent_id="1", name="  "),
        ]
        assert [c.external_id for c in normalize_categories(raw)] == ["1"]

    def test_last_occurrence_wins(self):
        raw = [
            RawCategory(id="1", parent_id="", name="Old"),
            RawCategory(id="2", parent_id="1", name="B"),
            RawCategory(id="1", parent_id="", name="New"),
        ]
        categories = normalize_categories(raw)

        assert [(c.external_id, c.name) for c in categories] == [("1", "New"), ("2", "B")]

    def test_empty_parent_is_none(self):
        assert normalize_categories([RawCategory(id="1", parent_id="", name="A")])[0].parent_external_id is None


class TestBuildCategoryDepth:
    """build_category_depth のテスト."""

    def test_chain(self):
        depths = build_category_depth([_cat("3", "2"), _cat("1"), _cat("2", "1")])
        assert depths == {"1": 1, "2": 2, "3": 3}

    def test_missing_parent_is_root(self):
        assert build_category_depth([_cat("5", "404")]) == {"5": 1}

    def test_child_is_parent_plus_one(self):
        categories = [_cat("1"), _cat("2", "1"), _cat("3", "1"), _cat("4", "3"), _cat("9", "missing")]
        depths = build_category_depth(categories)
        by_id = {c.external_id: c for c in categories}
        for category in categories:
            parent = category.parent_external_id
            if parent in by_id:
                assert depths[category.external_id] == depths[parent] + 1
            else:
                assert depths[category.external_id] == 1

    def test_cycle_terminates(self):
        """循環があっても有限の深さで終了すること."""
        depths = build_category_depth([_cat("a", "c"), _cat("b", "a"), _cat("c", "b")])

        assert set(depths) == {"a", "b", "c"}
        assert depths == {"a": 4, "b": 2, "c": 3}

    def test_self_loop(self):
        assert build_category_depth([_cat("x", "x")]) == {"x": 2}

    def test_deep_chain_does_not_recurse(self):
        categories = [_cat(str(i), str(i - 1) if i else None) for i in reversed(range(5000))]
        assert build_category_depth(categories)["4999"] == 5000


class TestPickDeepestCategory:
    """pick_deepest_category のテスト."""

    def test_deepest(self):
        depths = {"1": 1, "2": 2, "3": 3}
        assert pick_deepest_category(["1", "3", "2"], depths) == "3"

    def test_tie_keeps_first_seen(self):
        depths = {"a": 2, "b": 2}
        assert pick_deepest_category(["b", "a"], depths) == "b"

    def test_unknown_ids_count_as_depth_one(self):
        assert pick_deepest_category(["x", "y"], {}) == "x"

    def test_empty(self):
        assert pick_deepest_category([None, ""], {"1": 1}) is None


class TestSelectBasePrice:
    """select_base_price のテスト."""

    ENTRIES = [PriceEntry(label="Wholesale", value="80"), PriceEntry(label="retail_price", value="120,50")]

    def test_preferred_label(self):
        assert select_base_price(self.ENTRIES, "Retail Price", 1.0) == Decimal("120.50")

    @pytest.mark.parametrize("label", ["retail price", "RETAIL_PRICE", "  Retail   price ", "retail_Price"])
    def test_label_variants_are_stable(self, label):
        assert select_base_price(self.ENTRIES, label, 1.29) == select_base_price(self.ENTRIES, "Retail Price", 1.29)

    def test_no_match_uses_first(self):
        assert select_base_price(self.ENTRIES, "Dealer", 1.0) == Decimal("80.00")

    def test_no_preferred_uses_first(self):
        assert select_base_price(self.ENTRIES, "", 1.0) == Decimal("80.00")

    def test_multiplier_and_rounding(self):
        assert select_base_price([PriceEntry(label="", value="100")], None, 1.2) == Decimal("120.00")
        assert select_base_price([PriceEntry(label="", value="10.005")], None, 1.0) == Decimal("10.01")
        assert select_base_price([PriceEntry(label="", value="99,99")], None, 1.29) == Decimal("128.99")

    def test_no_entries(self):
        assert select_base_price([], "Retail", 1.0) is None

    def test_non_numeric(self):
        assert select_base_price([PriceEntry(label="Retail", value="on request")], "Retail", 1.0) is None


class TestAggregateStock:
    """aggregate_stock のテスト."""

    def test_unavailable_is_zero(self):
        """available=false なら他の値に関係なく 0."""
        offer = RawOffer(
            available="false",
            quantities=[QuantityEntry(label="Main", value="10")],
            outlets=["7"],
            stock_field="3",
        )
        assert aggregate_stock(offer, "Main") == 0
        assert aggregate_stock(offer, None, default=None) == 0

    def test_preferred_store(self):
        offer = RawOffer(quantities=[
            QuantityEntry(label="Main_Warehouse", value="4"),
            QuantityEntry(label="Reserve", value="10"),
            QuantityEntry(label="main  warehouse", value="1,6"),
        ])
        assert aggregate_stock(offer, "MAIN WAREHOUSE") == 6

    def test_no_store_match_sums_all(self):
        offer = RawOffer(quantities=[QuantityEntry(label="A", value="4"), QuantityEntry(label="B", value="10")])
        assert aggregate_stock(offer, "Remote") == 14

    def test_no_preferred_store_sums_all(self):
        offer = RawOffer(quantities=[QuantityEntry(label="A", value="4"), QuantityEntry(label="", value="1")])
        assert aggregate_stock(offer, "") == 5

    def test_unparseable_quantities_fall_back_to_outlets(self):
        offer = RawOffer(quantities=[QuantityEntry(label="A", value="many")], outlets=["2", "x", "3"])
        assert aggregate_stock(offer) == 5

    def test_generic_field(self):
        assert aggregate_stock(RawOffer(outlets=["?"], stock_field="8")) == 8

    def test_negative_is_floored(self):
        assert aggregate_stock(RawOffer(outlets=["-3", "1"])) == 0

    def test_rounding(self):
        assert aggregate_stock(RawOffer(outlets=["2.5"])) == 3
        assert aggregate_stock(RawOffer(outlets=["2.4"])) == 2

    def test_default_when_nothing_parses(self):
        """在庫情報が無い販売中の商品は在庫 1 とする（隠さないための既定値）."""
        assert aggregate_stock(RawOffer(available="true")) == 1
        assert aggregate_stock(RawOffer(stock_field="unknown")) == 1

    def test_default_none_for_deltas(self):
        assert aggregate_stock(RawOffer(), default=None) is None


class TestDedupeByExternalId:
    """dedupe_by_external_id のテスト."""

    def test_last_wins_first_position(self):
        rows = [_cat("1", name="a"), _cat("2"), _cat("1", name="b")]
        result = dedupe_by_external_id(rows)
        assert [(c.external_id, c.name) for c in result] == [("1", "b"), ("2", "cat 2")]

    def test_idempotent(self):
        rows = [_cat("1"), _cat("2"), _cat("1", name="x"), _cat("3"), _cat("2", name="y")]
        once = dedupe_by_external_id(rows)
        assert dedupe_by_external_id(once) == once


class TestNormalizeOffer:
    """normalize_offer のテスト."""

    def test_sku_defaults_to_external_id(self):
        product = normalize_offer(RawOffer(id="100", name="Widget"), SupplierConfig())
        assert product.sku == "100"

    def test_vendor_code_is_sku(self):
        product = normalize_offer(RawOffer(id="100", name="Widget", vendor_code="W-1"), SupplierConfig())
        assert product.sku == "W-1"

    def test_id_falls_back_to_name(self):
        product = normalize_offer(RawOffer(name="Widget"), SupplierConfig())
        assert product.external_id == "Widget"

    def test_missing_name(self):
        with pytest.raises(RowInvalid):
            normalize_offer(RawOffer(id="100"), SupplierConfig())


class TestNormalizeCatalog:
    """normalize_catalog のテスト."""

    def test_end_to_end_scenario(self, supplier_config):
        catalog = normalize_catalog(parse_full_catalog(_load_tree("full_catalog.xml")), supplier_config)

        assert {c.external_id: c.depth for c in catalog.categories} == {"1": 1, "2": 2}
        product = catalog.products[0]
        assert product.to_record() == {
            "external_id": "100",
            "category_external_id": "2",
            "sku": "100",
            "name": "Widget",
            "base_price": 120.0,
            "stock": 5,
            "picture_url": "https://cdn.example.com/100.jpg",
        }
        assert product.base_price == Decimal("120.00")

    def test_mixed_catalog(self):
        config = SupplierConfig(base_price_type="retail price", stock_store="main_warehouse")
        catalog = normalize_catalog(parse_full_catalog(_load_tree("catalog_mixed.xml")), config)

        assert [(c.external_id, c.name, c.depth) for c in catalog.categories] == [
            ("10", "Lighting", 1),
            ("11", "Lamps and sconces", 2),
            ("12", "Desk lamps", 3),
        ]
        assert catalog.skipped_products == 1
        products = {p.external_id: p for p in catalog.products}
        assert list(products) == ["500", "501", "503"]

        # 後勝ち: 2 つ目の 500 が残る
        assert products["500"].name == "Desk lamp v2"
        assert products["500"].sku == "DL-500"
        assert products["500"].base_price == Decimal("130.00")
        assert products["500"].stock == 2

        assert products["501"].stock == 0
        assert products["501"].base_price == Decimal("300.00")

        assert products["503"].base_price is None
        assert products["503"].stock == 1
        assert products["503"].category_external_id is None

    def test_api_snapshot_assigns_deepest_category(self):
        raw = parse_full_catalog(_load_tree("catalog_mixed.xml"))
        api_categories = [_cat("c1"), _cat("c2", "c1"), _cat("c3", "c2")]
        snapshot = ApiSnapshot(
            categories=api_categories,
            categories_by_code={"DL-500": ["c1", "c3", "c2"]},
            depth_by_id=build_category_depth(api_categories),
        )

        catalog = normalize_catalog(raw, SupplierConfig(), snapshot)

        assert [c.external_id for c in catalog.categories] == ["c1", "c2", "c3"]
        products = {p.external_id: p for p in catalog.products}
        assert products["500"].category_external_id == "c3"
        assert products["501"].category_external_id == "11"

    def test_api_snapshot_depths_are_used(self):
        """API から取得済みの深さでカテゴリを選ぶこと."""
        raw = parse_full_catalog(_load_tree("catalog_mixed.xml"))
        snapshot = ApiSnapshot(
            categories=[_cat("c1"), _cat("c2"), _cat("c3")],
            categories_by_code={"DL-500": ["c1", "c3", "c2"]},
            depth_by_id={"c1": 1, "c2": 4, "c3": 2},
        )

        catalog = normalize_catalog(raw, SupplierConfig(), snapshot)

        assert [(c.external_id, c.depth) for c in catalog.categories] == [("c1", 1), ("c2", 4), ("c3", 2)]
        products = {p.external_id: p for p in catalog.products}
        assert products["500"].category_external_id == "c2"


class TestNormalizeDeltas:
    """normalize_price_updates / normalize_stock_updates のテスト."""

    def test_price_updates(self, supplier_config):
        updates = normalize_price_updates(parse_price_updates(_load_tree("price_updates.xml")), supplier_config)

        assert [(u.external_id, u.base_price) for u in updates] == [
            ("100", Decimal("180.60")),
            ("999", Decimal("12.00")),
        ]

    def test_stock_updates(self, supplier_config):
        updates = normalize_stock_updates(parse_stock_updates(_load_tree("stock_updates.xml")), supplier_config)

        assert [(u.external_id, u.stock) for u in updates] == [("200", 0), ("100", 5)]

    def test_stock_update_preferred_store(self):
        offers = [RawOffer(id="1", quantities=[QuantityEntry(label="Main", value="3"),
                                               QuantityEntry(label="Reserve", value="2")])]
        updates = normalize_stock_updates(offers, SupplierConfig(stock_store="main"))
        assert updates[0].stock == 3

    def test_delta_rows_have_no_name_or_category(self, supplier_config):
        updates = normalize_stock_updates(parse_stock_updates(_load_tree("stock_updates.xml")), supplier_config)
        assert set(updates[0].to_record()) == {"external_id", "stock"}
