"""
Generic Receipt Line Parser - fallback for unknown retailers

Handles:
- Free text lines: "2 x Horizon Organic Milk 64 fl oz $5.99"
- Rows of an unrecognized CSV with a description-like column

A complete match needs a product name, a package size/unit and a price.
Brand is not guessed from free text; the model tier does that.
"""

from decimal import Decimal
from typing import Mapping, Optional, Sequence, Union
import re

import structlog

from packages.common.schemas.inventory import (
    Category,
    NormalizedItem,
    UnitOfMeasure,
)
from packages.parsers.retailers.base_parser import (
    BaseRetailerParser,
    GenericRow,
    RowFacts,
    RuleMatch,
)
from packages.parsers.units import parse_package_size, strip_size_text

logger = structlog.get_logger()


class GenericParser(BaseRetailerParser):
    """
    Generic fallback parser.

    Always matches (detect_format returns True), so it must be last in the
    dispatcher.
    """

    # "2 x ", "2x ", "2 @ " at the start of a line
    LEADING_QUANTITY = re.compile(r'^\s*(\d+)\s*[x×@]\s+', re.IGNORECASE)
    # "$5.99" or "5.99" at the end of a line
    TRAILING_PRICE = re.compile(r'\s*\$?\s*(\d[\d,]*\.\d{2})\s*$')

    DESCRIPTION_COLUMNS = ('description', 'item', 'item name', 'name', 'title', 'product')
    PRICE_COLUMNS = ('price', 'item total', 'total', 'amount')
    DATE_COLUMNS = ('date', 'order date', 'purchase date')
    QUANTITY_COLUMNS = ('quantity', 'qty')

    def detect_format(self, header: Sequence[str]) -> bool:
        return True

    def to_row(self, record: Union[Mapping[str, str], str]) -> GenericRow:
        if isinstance(record, str):
            return GenericRow(text=record.strip())
        return GenericRow(
            text=self.get_column(record, *self.DESCRIPTION_COLUMNS),
            price=self.get_column(record, *self.PRICE_COLUMNS),
            date=self.get_column(record, *self.DATE_COLUMNS),
            quantity=self.get_column(record, *self.QUANTITY_COLUMNS),
        )

    def parse(self, row: GenericRow, rule_confidence: float = 0.9) -> RuleMatch:
        text = row.text
        quantity_str: Optional[str] = row.quantity or None
        price_str: Optional[str] = row.price or None

        match = self.LEADING_QUANTITY.match(text)
        if match:
            quantity_str = quantity_str or match.group(1)
            text = text[match.end():]

        match = self.TRAILING_PRICE.search(text)
        if match:
            price_str = price_str or match.group(1)
            text = text[:match.start()]

        facts = RowFacts(
            raw_text=row.text,
            purchase_date=self.parse_date(row.date),
            price=self.parse_price(price_str),
            quantity=self.parse_quantity(quantity_str),
        )

        missing = []
        if facts.price is None:
            missing.append('price')

        size = parse_package_size(text)
        if size is None:
            missing.append('package_size')

        canonical_name = strip_size_text(text, size)
        if not canonical_name or not re.search(r'[a-zA-Z]', canonical_name):
            missing.append('canonical_name')

        if missing:
            logger.debug("generic_rule_partial", text=row.text[:80], missing=missing)
            return RuleMatch(facts=facts, missing=missing)

        package_size = size.size
        unit_of_measure = UnitOfMeasure.EACH
        if size.pack_count > 1:
            unit_of_measure = UnitOfMeasure.PACK
            package_size = size.size * size.pack_count

        normalized = NormalizedItem(
            canonical_name=canonical_name,
            brand=None,
            category=Category.OTHER,
            quantity=facts.quantity or Decimal('1'),
            unit_of_measure=unit_of_measure,
            package_size=package_size,
            package_unit=size.unit,
            confidence=rule_confidence,
        )
        return RuleMatch(facts=facts, normalized=normalized)
