"""
Costco Order CSV Parser

Export Format:
- Date: MM/DD/YYYY
- Item Number: 6-7 digit Costco item code (retailer SKU)
- Description: "KIRKLAND SIGNATURE ORGANIC EGGS 24 CT"
- Quantity
- Price: line total

Costco descriptions are already fairly clean; the first word is taken as the
brand when there is more than one word. Costco exports carry no category.
"""

from decimal import Decimal
from typing import Mapping, Sequence, Union

import structlog

from packages.common.schemas.inventory import (
    Category,
    NormalizedItem,
    Retailer,
    UnitOfMeasure,
)
from packages.parsers.retailers.base_parser import (
    BaseRetailerParser,
    CostcoRow,
    ParserNotApplicableError,
    RowFacts,
    RuleMatch,
)
from packages.parsers.units import parse_package_size, strip_size_text

logger = structlog.get_logger()


class CostcoParser(BaseRetailerParser):
    """Parser for Costco order exports."""

    retailer = Retailer.COSTCO
    row_type = CostcoRow

    HEADER_MARKERS = {'date', 'item number', 'description'}

    def detect_format(self, header: Sequence[str]) -> bool:
        columns = {h.strip().lower() for h in header}
        return self.HEADER_MARKERS.issubset(columns)

    def to_row(self, record: Union[Mapping[str, str], str]) -> CostcoRow:
        if isinstance(record, str):
            raise ParserNotApplicableError("Costco rows must be CSV records")
        description = self.get_column(record, 'Description')
        if not description:
            raise ParserNotApplicableError("Costco row has no Description")
        return CostcoRow(
            date=self.get_column(record, 'Date'),
            item_number=self.get_column(record, 'Item Number', 'Item #'),
            description=description,
            quantity=self.get_column(record, 'Quantity', 'Qty'),
            price=self.get_column(record, 'Price', 'Amount'),
        )

    def parse(self, row: CostcoRow, rule_confidence: float = 0.9) -> RuleMatch:
        facts = RowFacts(
            raw_text=row.description,
            purchase_date=self.parse_date(row.date),
            price=self.parse_price(row.price),
            quantity=self.parse_quantity(row.quantity),
            sku=row.item_number or None,
        )

        missing = []
        if facts.purchase_date is None:
            missing.append('purchase_date')
        if facts.price is None:
            missing.append('price')

        size = parse_package_size(row.description)
        if size is None:
            missing.append('package_size')

        canonical_name = strip_size_text(row.description, size)
        if not canonical_name:
            missing.append('canonical_name')

        if missing:
            logger.debug("costco_rule_partial", description=row.description[:80], missing=missing)
            return RuleMatch(facts=facts, missing=missing)

        # First word is often the brand
        words = row.description.split()
        brand = words[0] if len(words) > 1 else None

        package_size = size.size
        unit_of_measure = UnitOfMeasure.EACH
        if size.pack_count > 1:
            unit_of_measure = UnitOfMeasure.PACK
            package_size = size.size * size.pack_count

        normalized = NormalizedItem(
            canonical_name=canonical_name,
            brand=brand,
            category=Category.OTHER,
            quantity=facts.quantity or Decimal('1'),
            unit_of_measure=unit_of_measure,
            package_size=package_size,
            package_unit=size.unit,
            confidence=rule_confidence,
        )
        return RuleMatch(facts=facts, normalized=normalized)
