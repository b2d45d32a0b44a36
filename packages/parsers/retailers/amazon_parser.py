"""
Amazon Order-History CSV Parser

Export Format (one row per ordered item):
- Order Date: MM/DD/YYYY or YYYY-MM-DD
- Order ID: 123-1234567-1234567
- Title: usually "Brand - Product Description, Size"
- Category: Amazon category (e.g. "Grocery & Gourmet Food")
- ASIN/ISBN: 10-character product id, used as the retailer SKU
- Item Total: "$5.99"
- Quantity: optional, defaults to 1

Example:
  "Horizon - Organic Whole Milk, 64 fl oz" → brand "Horizon",
  name "Organic Whole Milk", 64 fl oz
"""

from decimal import Decimal
from typing import Mapping, Sequence, Union
import re

import structlog

from packages.common.schemas.inventory import (
    Category,
    NormalizedItem,
    Retailer,
    UnitOfMeasure,
)
from packages.parsers.retailers.base_parser import (
    AmazonRow,
    BaseRetailerParser,
    ParserNotApplicableError,
    RowFacts,
    RuleMatch,
)
from packages.parsers.units import parse_package_size, strip_size_text

logger = structlog.get_logger()


class AmazonParser(BaseRetailerParser):
    """
    Parser for Amazon order-history exports.

    Handles:
    - Brand split on " - ", name up to the first ","
    - Category keyword mapping
    - Package size from the title
    """

    retailer = Retailer.AMAZON
    row_type = AmazonRow

    HEADER_MARKERS = {'order date', 'order id', 'title'}

    # Amazon category keyword → Category (first match wins)
    CATEGORY_KEYWORDS = [
        (('grocery', 'food', 'gourmet'), Category.PANTRY),
        (('health', 'beauty', 'personal care'), Category.PERSONAL_CARE),
        (('beverage', 'drink'), Category.BEVERAGES),
        (('baby',), Category.BABY),
        (('pet',), Category.PET_SUPPLIES),
        (('household', 'cleaning', 'laundry'), Category.HOUSEHOLD),
        (('snack',), Category.SNACKS),
    ]

    # Spaced dash only, so "2-Pack" and "Gluten-Free" stay intact
    BRAND_SPLIT = re.compile(r'\s+[-–]\s+')

    def detect_format(self, header: Sequence[str]) -> bool:
        columns = {h.strip().lower() for h in header}
        return self.HEADER_MARKERS.issubset(columns)

    def to_row(self, record: Union[Mapping[str, str], str]) -> AmazonRow:
        if isinstance(record, str):
            raise ParserNotApplicableError("Amazon rows must be CSV records")
        title = self.get_column(record, 'Title')
        order_date = self.get_column(record, 'Order Date')
        if not title:
            raise ParserNotApplicableError("Amazon row has no Title")
        return AmazonRow(
            order_date=order_date,
            order_id=self.get_column(record, 'Order ID'),
            title=title,
            category=self.get_column(record, 'Category'),
            asin=self.get_column(record, 'ASIN/ISBN', 'ASIN'),
            item_total=self.get_column(record, 'Item Total'),
            quantity=self.get_column(record, 'Quantity'),
        )

    def map_category(self, amazon_category: str) -> Category:
        category_lower = (amazon_category or '').lower()
        for keywords, category in self.CATEGORY_KEYWORDS:
            if any(keyword in category_lower for keyword in keywords):
                return category
        return Category.OTHER

    def parse(self, row: AmazonRow, rule_confidence: float = 0.9) -> RuleMatch:
        facts = RowFacts(
            raw_text=row.title,
            purchase_date=self.parse_date(row.order_date),
            price=self.parse_price(row.item_total),
            quantity=self.parse_quantity(row.quantity),
            sku=row.asin or None,
        )

        missing = []
        if facts.purchase_date is None:
            missing.append('purchase_date')
        if facts.price is None:
            missing.append('price')

        size = parse_package_size(row.title)
        if size is None:
            missing.append('package_size')

        # Common Amazon format: "Brand Name - Product Description, Size"
        brand = None
        remainder = row.title
        brand_split = self.BRAND_SPLIT.split(row.title, maxsplit=1)
        if len(brand_split) == 2 and brand_split[0].strip():
            brand = brand_split[0].strip()
            remainder = brand_split[1]
        name_part = remainder.split(',', 1)[0]
        canonical_name = strip_size_text(name_part, size)

        if not canonical_name:
            missing.append('canonical_name')

        if missing:
            logger.debug("amazon_rule_partial", title=row.title[:80], missing=missing)
            return RuleMatch(facts=facts, missing=missing)

        package_size = size.size
        unit_of_measure = UnitOfMeasure.EACH
        if size.pack_count > 1:
            unit_of_measure = UnitOfMeasure.PACK
            package_size = size.size * size.pack_count

        normalized = NormalizedItem(
            canonical_name=canonical_name,
            brand=brand,
            category=self.map_category(row.category),
            quantity=facts.quantity or Decimal('1'),
            unit_of_measure=unit_of_measure,
            package_size=package_size,
            package_unit=size.unit,
            confidence=rule_confidence,
        )
        return RuleMatch(facts=facts, normalized=normalized)
