"""Tests for the tier-1 retailer rules and the dispatcher."""

from datetime import date
from decimal import Decimal

import pytest

from packages.common.schemas.inventory import Category, Retailer, UnitOfMeasure
from packages.parsers.retailer_dispatcher import RetailerDispatcher
from packages.parsers.retailers import (
    AmazonParser,
    AmazonRow,
    BaseRetailerParser,
    CostcoParser,
    CostcoRow,
    GenericParser,
    GenericRow,
    ParserNotApplicableError,
)

AMAZON_HEADER = ["Order Date", "Order ID", "Title", "Category", "ASIN/ISBN", "Item Total", "Quantity"]
COSTCO_HEADER = ["Date", "Item Number", "Description", "Quantity", "Price"]


@pytest.fixture
def amazon_row():
    return AmazonRow(
        order_date="01/15/2025",
        order_id="111-2222222-3333333",
        title="Horizon - Organic Whole Milk, 64 fl oz",
        category="Grocery & Gourmet Food",
        asin="B00MILK001",
        item_total="$5.99",
        quantity="2",
    )


class TestAmazonParser:

    def test_detect_format(self):
        parser = AmazonParser()
        assert parser.detect_format(AMAZON_HEADER)
        assert not parser.detect_format(COSTCO_HEADER)

    def test_complete_match(self, amazon_row):
        match = AmazonParser().parse(amazon_row)

        assert match.complete
        item = match.normalized
        assert item.brand == "Horizon"
        assert item.canonical_name == "Organic Whole Milk"
        assert item.category == Category.PANTRY
        assert item.package_size == Decimal("64")
        assert item.package_unit == UnitOfMeasure.FLUID_OUNCES
        assert item.quantity == Decimal("2")
        assert item.confidence == 0.9

        assert match.facts.price == Decimal("5.99")
        assert match.facts.purchase_date == date(2025, 1, 15)
        assert match.facts.sku == "B00MILK001"

    def test_multi_pack_reports_total_size(self):
        row = AmazonRow(order_date="2025-01-15", order_id="1",
                        title="LaCroix - Sparkling Water, 12 x 12 fl oz", item_total="$5.49")

        item = AmazonParser().parse(row).normalized

        assert item.canonical_name == "Sparkling Water"
        assert item.unit_of_measure == UnitOfMeasure.PACK
        assert item.package_size == Decimal("144")

    def test_missing_size_is_partial(self):
        row = AmazonRow(order_date="01/15/2025", order_id="1",
                        title="Kirkland Signature Trail Mix", item_total="$12.49")

        match = AmazonParser().parse(row)

        assert not match.complete
        assert "package_size" in match.missing
        assert match.facts.price == Decimal("12.49")

    def test_missing_price_is_partial(self, amazon_row):
        row = AmazonRow(order_date=amazon_row.order_date, order_id="1", title=amazon_row.title)
        match = AmazonParser().parse(row)
        assert match.missing == ["price"]

    def test_to_row_from_record(self):
        record = dict(zip(AMAZON_HEADER, ["01/15/2025", "1", "Title text", "Grocery", "B0X", "$1.00", ""]))
        row = AmazonParser().to_row(record)

        assert row.title == "Title text"
        assert row.asin == "B0X"
        assert row.raw_text == "Title text"

    def test_to_row_rejects_text(self):
        with pytest.raises(ParserNotApplicableError):
            AmazonParser().to_row("Horizon Milk 64 fl oz")


class TestCostcoParser:

    def test_complete_match(self):
        row = CostcoRow(date="03/01/2025", item_number="1234567",
                        description="KIRKLAND SIGNATURE ORGANIC EGGS 24 CT", quantity="1", price="9.99")

        match = CostcoParser().parse(row)

        assert match.complete
        item = match.normalized
        assert item.brand == "KIRKLAND"
        assert item.canonical_name == "KIRKLAND SIGNATURE ORGANIC EGGS"
        assert item.package_size == Decimal("24")
        assert item.package_unit == UnitOfMeasure.EACH
        assert match.facts.sku == "1234567"
        assert match.facts.purchase_date == date(2025, 3, 1)

    def test_detect_format(self):
        assert CostcoParser().detect_format(COSTCO_HEADER)
        assert not CostcoParser().detect_format(AMAZON_HEADER)


class TestGenericParser:

    def test_free_text_line(self):
        match = GenericParser().parse(GenericRow(text="2 x Horizon Organic Milk 64 fl oz $5.99"))

        assert match.complete
        item = match.normalized
        assert item.canonical_name == "Horizon Organic Milk"
        assert item.brand is None
        assert item.quantity == Decimal("2")
        assert match.facts.price == Decimal("5.99")
        assert match.facts.purchase_date is None

    def test_no_price_is_partial(self):
        match = GenericParser().parse(GenericRow(text="Horizon Organic Milk 64 fl oz"))
        assert not match.complete
        assert match.missing == ["price"]

    def test_vague_text_is_partial(self):
        match = GenericParser().parse(GenericRow(text="Bananas"))
        assert not match.complete
        assert "package_size" in match.missing

    def test_unknown_csv_columns(self):
        row = GenericParser().to_row({"Item": "Olive Oil 500 ml", "Amount": "8.49", "Date": "2025-02-01"})
        match = GenericParser().parse(row)

        assert match.complete
        assert match.facts.purchase_date == date(2025, 2, 1)


class TestParsingHelpers:

    @pytest.mark.parametrize("raw, expected", [
        ("$1,234.56", Decimal("1234.56")),
        ("5.99", Decimal("5.99")),
        ("", None),
        ("n/a", None),
    ])
    def test_parse_price(self, raw, expected):
        assert BaseRetailerParser.parse_price(raw) == expected

    @pytest.mark.parametrize("raw, expected", [
        ("2", Decimal("2")),
        ("", None),
        ("0", None),
        ("abc", None),
        ("NaN", None),
        ("sNaN", None),
        ("Infinity", None),
        ("-Infinity", None),
    ])
    def test_parse_quantity(self, raw, expected):
        assert BaseRetailerParser.parse_quantity(raw) == expected

    @pytest.mark.parametrize("raw", ["2025-01-15", "01/15/2025", "01/15/25", "Jan 15, 2025", "2025-01-15T10:30:00Z"])
    def test_parse_date(self, raw):
        assert BaseRetailerParser.parse_date(raw) == date(2025, 1, 15)

    def test_parse_date_unknown_format(self):
        assert BaseRetailerParser.parse_date("sometime") is None


class TestRetailerDispatcher:

    def test_preferred_parser_when_header_matches(self):
        dispatcher = RetailerDispatcher()
        assert isinstance(dispatcher.parser_for(Retailer.AMAZON, AMAZON_HEADER), AmazonParser)

    def test_detects_format_when_retailer_is_wrong(self):
        dispatcher = RetailerDispatcher()
        assert isinstance(dispatcher.parser_for(Retailer.AMAZON, COSTCO_HEADER), CostcoParser)

    def test_unknown_header_falls_back_to_generic(self):
        dispatcher = RetailerDispatcher()
        assert isinstance(dispatcher.parser_for(Retailer.OTHER, ["foo", "bar"]), GenericParser)

    def test_text_lines_become_generic_rows(self):
        row = RetailerDispatcher().to_row("Bananas", Retailer.AMAZON)
        assert row == GenericRow(text="Bananas")

    def test_record_becomes_retailer_row(self):
        record = dict(zip(AMAZON_HEADER, ["01/15/2025", "1", "Milk 64 fl oz", "", "B0X", "$1.00", ""]))
        row = RetailerDispatcher().to_row(record, Retailer.AMAZON, AMAZON_HEADER)
        assert isinstance(row, AmazonRow)

    def test_parse_row_uses_configured_confidence(self, amazon_row):
        match = RetailerDispatcher(rule_confidence=0.85).parse_row(amazon_row)
        assert match.normalized.confidence == 0.85
