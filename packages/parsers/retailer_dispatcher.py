"""
Retailer Dispatcher - Routes upload rows to the right retailer parser

Flow:
1. Use the parser registered for the upload's retailer, if its format
   matches the CSV header (or the record is already a typed row)
2. Otherwise try each parser's detect_format() on the header
3. Fall back to GenericParser (always matches)

The dispatcher never raises for a bad row: a row that no specific parser
accepts is handed to the generic parser, and whatever the rule cannot extract
is left to the cache and model tiers.
"""

from typing import List, Mapping, Optional, Sequence, Union

import structlog

from packages.common.schemas.inventory import Retailer
from packages.parsers.retailers import (
    AmazonParser,
    AmazonRow,
    BaseRetailerParser,
    CostcoParser,
    CostcoRow,
    GenericParser,
    GenericRow,
    ParserNotApplicableError,
    RetailerRow,
    RuleMatch,
)

logger = structlog.get_logger()


class RetailerDispatcher:
    """
    Routes rows to retailer parsers.

    Order matters - parsers are tried in registration order.
    Generic parser always goes last (fallback).
    """

    def __init__(self, rule_confidence: float = 0.9):
        self.rule_confidence = rule_confidence
        self.generic = GenericParser()
        self.parsers: List[BaseRetailerParser] = [
            AmazonParser(),
            CostcoParser(),
            # GenericParser MUST be last - it always matches
            self.generic,
        ]
        self._by_retailer = {p.retailer: p for p in self.parsers if p is not self.generic}

    def parser_for(self, retailer: Retailer, header: Optional[Sequence[str]] = None) -> BaseRetailerParser:
        """Pick the parser for an upload"""
        preferred = self._by_retailer.get(retailer)
        if header is None:
            return preferred or self.generic
        if preferred and preferred.detect_format(header):
            return preferred
        for parser in self.parsers:
            if parser.detect_format(header):
                if preferred and parser is not preferred:
                    logger.info("retailer_format_mismatch",
                                retailer=retailer.value,
                                detected=parser.__class__.__name__)
                return parser
        return self.generic

    def to_row(
        self,
        record: Union[Mapping[str, str], str],
        retailer: Retailer,
        header: Optional[Sequence[str]] = None,
    ) -> RetailerRow:
        """Adapt a raw record into a typed row"""
        parser = self.parser_for(retailer, header)
        if isinstance(record, str) and parser is not self.generic:
            parser = self.generic
        try:
            return parser.to_row(record)
        except ParserNotApplicableError as e:
            logger.debug("row_not_applicable", parser=parser.__class__.__name__, error=str(e))
            return self.generic.to_row(record)

    def parse_row(self, row: RetailerRow) -> RuleMatch:
        """Apply the rule matching the row's type"""
        if isinstance(row, AmazonRow):
            parser = self._by_retailer[Retailer.AMAZON]
        elif isinstance(row, CostcoRow):
            parser = self._by_retailer[Retailer.COSTCO]
        elif isinstance(row, GenericRow):
            parser = self.generic
        else:
            raise TypeError(f"Unsupported row type: {type(row).__name__}")

        result = parser.parse(row, rule_confidence=self.rule_confidence)
        logger.debug("rule_applied",
                     parser=parser.__class__.__name__,
                     complete=result.complete,
                     missing=result.missing)
        return result
