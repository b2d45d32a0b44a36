"""
Base Parser - Abstract base class for retailer-specific line parsers

Each retailer export format gets its own row type and parser:
- AmazonRow  ← Amazon order-history CSV
- CostcoRow  ← Costco order CSV
- GenericRow ← free receipt text ("2 x Horizon Organic Milk 64 fl oz $5.99")

All parsers implement:
1. detect_format() - Does this CSV header belong to this retailer?
2. to_row() - Adapt a raw record (CSV mapping or text line) into the typed row
3. parse() - Apply the deterministic rule and return a RuleMatch

A RuleMatch is either complete (every field of a normalization extracted, used
as a tier-1 result at fixed confidence) or partial (normalized is None). Row
facts such as price and date are kept in both cases.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import List, Mapping, Optional, Sequence, Union
import re

import structlog

from packages.common.schemas.inventory import NormalizedItem, Retailer

logger = structlog.get_logger()

DATE_FORMATS = (
    '%Y-%m-%d',
    '%m/%d/%Y',
    '%m/%d/%y',
    '%Y/%m/%d',
    '%b %d, %Y',
    '%B %d, %Y',
    '%d-%b-%Y',
)


@dataclass(frozen=True)
class AmazonRow:
    """One row of an Amazon order-history export"""
    order_date: str
    order_id: str
    title: str
    category: str = ''
    asin: str = ''
    item_total: str = ''
    quantity: str = ''

    @property
    def raw_text(self) -> str:
        return self.title


@dataclass(frozen=True)
class CostcoRow:
    """One row of a Costco order export"""
    date: str
    item_number: str
    description: str
    quantity: str = ''
    price: str = ''

    @property
    def raw_text(self) -> str:
        return self.description


@dataclass(frozen=True)
class GenericRow:
    """A free-text receipt line (optionally with columns from an unknown CSV)"""
    text: str
    price: str = ''
    date: str = ''
    quantity: str = ''

    @property
    def raw_text(self) -> str:
        return self.text


RetailerRow = Union[AmazonRow, CostcoRow, GenericRow]


@dataclass
class RowFacts:
    """Values read straight off the row, independent of normalization"""
    raw_text: str
    purchase_date: Optional[date] = None
    price: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    sku: Optional[str] = None


@dataclass
class RuleMatch:
    """Result of a deterministic rule on one row"""
    facts: RowFacts
    normalized: Optional[NormalizedItem] = None
    missing: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.normalized is not None


class ParserNotApplicableError(Exception):
    """Raised when a parser is handed a row of another retailer's format"""
    pass


class BaseRetailerParser(ABC):
    """
    Abstract base class for retailer parsers.

    Utility methods provided:
    - parse_price(): "$1,234.56" → Decimal
    - parse_quantity(): "2" → Decimal, None when blank
    - parse_date(): common export date formats → date
    """

    retailer: Retailer = Retailer.OTHER
    row_type: type = GenericRow

    @abstractmethod
    def detect_format(self, header: Sequence[str]) -> bool:
        """
        Check if a CSV header belongs to this retailer's export.

        Args:
            header: Column names of the CSV

        Returns:
            True if this parser can handle the rows
        """
        pass

    @abstractmethod
    def to_row(self, record: Union[Mapping[str, str], str]) -> RetailerRow:
        """
        Adapt a raw record into this parser's typed row.

        Raises:
            ParserNotApplicableError: If the record lacks this format's columns
        """
        pass

    @abstractmethod
    def parse(self, row: RetailerRow, rule_confidence: float = 0.9) -> RuleMatch:
        """
        Apply the deterministic rule.

        Args:
            row: Typed row produced by to_row()
            rule_confidence: Confidence assigned to a complete match

        Returns:
            RuleMatch (complete or partial)
        """
        pass

    # Utility methods for common parsing tasks

    @staticmethod
    def parse_price(price_str: Optional[str]) -> Optional[Decimal]:
        """Parse a money string, None if unparseable"""
        if not price_str:
            return None
        match = re.search(r'-?\d[\d,]*(?:\.\d+)?', price_str)
        if not match:
            return None
        try:
            value = Decimal(match.group(0).replace(',', ''))
        except InvalidOperation:
            logger.warning("price_parse_failed", price_str=price_str)
            return None
        return value if value.is_finite() else None

    @staticmethod
    def parse_quantity(quantity_str: Optional[str]) -> Optional[Decimal]:
        """Parse a quantity, None when blank or not a positive number"""
        if not quantity_str:
            return None
        try:
            value = Decimal(quantity_str.strip())
        except InvalidOperation:
            return None
        if not value.is_finite() or value <= 0:
            return None
        return value

    @staticmethod
    def parse_date(date_str: Optional[str]) -> Optional[date]:
        """Parse an export date string, None if no known format matches"""
        if not date_str:
            return None
        cleaned = date_str.strip()
        # ISO timestamps ("2025-01-15T10:30:00Z")
        if 'T' in cleaned and re.match(r'\d{4}-\d{2}-\d{2}T', cleaned):
            cleaned = cleaned.split('T', 1)[0]
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(cleaned, fmt).date()
            except ValueError:
                continue
        logger.debug("date_parse_failed", date_str=date_str)
        return None

    @staticmethod
    def get_column(record: Mapping[str, str], *names: str) -> str:
        """Case/whitespace-insensitive column lookup"""
        normalized = {str(k).strip().lower(): v for k, v in record.items() if k is not None}
        for name in names:
            value = normalized.get(name.lower())
            if value is not None:
                return str(value).strip()
        return ''
