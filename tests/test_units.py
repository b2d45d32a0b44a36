"""Tests for package size and unit parsing."""

from decimal import Decimal

import pytest

from packages.common.schemas.inventory import UnitOfMeasure
from packages.parsers.units import (
    canonicalize_input,
    canonicalize_item_name,
    map_unit_string,
    parse_package_size,
    strip_size_text,
)


class TestParsePackageSize:

    @pytest.mark.parametrize("text, size, unit", [
        ("Horizon Organic Whole Milk 64 fl oz", Decimal("64"), UnitOfMeasure.FLUID_OUNCES),
        ("Greek Yogurt 32oz", Decimal("32"), UnitOfMeasure.OUNCES),
        ("Bananas 2.5 lb", Decimal("2.5"), UnitOfMeasure.POUNDS),
        ("Olive Oil 500 ml", Decimal("500"), UnitOfMeasure.MILLILITERS),
        ("Organic Eggs 24 CT", Decimal("24"), UnitOfMeasure.EACH),
        ("Spring Water 1 gallon", Decimal("1"), UnitOfMeasure.GALLONS),
    ])
    def test_decimal_sizes(self, text, size, unit):
        result = parse_package_size(text)
        assert result.size == size
        assert result.unit == unit
        assert result.pack_count == 1

    def test_multi_pack(self):
        result = parse_package_size("Sparkling Water 12 x 12 fl oz")
        assert result.size == Decimal("12")
        assert result.unit == UnitOfMeasure.FLUID_OUNCES
        assert result.pack_count == 12
        assert result.method == "multi-pack"

    def test_pack_of(self):
        result = parse_package_size("Cola 6 pack 12 fl oz")
        assert result.size == Decimal("12")
        assert result.pack_count == 6

    def test_mixed_number(self):
        result = parse_package_size("Flour 2 1/4 lb")
        assert result.size == Decimal("2.25")
        assert result.unit == UnitOfMeasure.POUNDS
        assert result.method == "fraction"

    def test_fraction(self):
        result = parse_package_size("Whole Milk 1/2 gal")
        assert result.size == Decimal("0.5")
        assert result.unit == UnitOfMeasure.GALLONS

    def test_quarts_become_fluid_ounces(self):
        result = parse_package_size("Half & Half 1 qt")
        assert result.size == Decimal("32")
        assert result.unit == UnitOfMeasure.FLUID_OUNCES

    def test_promo_text_ignored(self):
        result = parse_package_size("NEW! 20% off Greek Yogurt 32 oz")
        assert result.size == Decimal("32")
        assert result.unit == UnitOfMeasure.OUNCES

    @pytest.mark.parametrize("text", ["Bananas", "", "Kirkland Signature Trail Mix"])
    def test_no_size(self, text):
        assert parse_package_size(text) is None


class TestUnitMapping:

    @pytest.mark.parametrize("raw, expected", [
        ("Fl Oz", UnitOfMeasure.FLUID_OUNCES),
        ("fl.oz", UnitOfMeasure.FLUID_OUNCES),
        ("LBS", UnitOfMeasure.POUNDS),
        ("liters", UnitOfMeasure.LITERS),
        ("ct", UnitOfMeasure.EACH),
        ("furlongs", UnitOfMeasure.OTHER),
    ])
    def test_map_unit_string(self, raw, expected):
        assert map_unit_string(raw) == expected


class TestCanonicalization:

    def test_canonicalize_input(self):
        assert canonicalize_input("  NEW!  Organic   Milk  SALE ") == "organic milk"

    def test_canonicalize_item_name(self):
        assert canonicalize_item_name("Horizon® Organic  Milk!") == "horizon organic milk"

    def test_strip_size_text(self):
        text = "Organic Eggs 24 ct"
        assert strip_size_text(text, parse_package_size(text)) == "Organic Eggs"

    def test_strip_size_text_without_size(self):
        assert strip_size_text("  Bananas ", None) == "Bananas"
