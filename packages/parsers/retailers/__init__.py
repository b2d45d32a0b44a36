"""
Retailer-specific line parsers (tier 1 of the parsing cascade)

Each parser handles one retailer's export format. All parsers inherit from
BaseRetailerParser and implement detect_format(), to_row() and parse().
"""

from packages.parsers.retailers.base_parser import (
    AmazonRow,
    BaseRetailerParser,
    CostcoRow,
    GenericRow,
    ParserNotApplicableError,
    RetailerRow,
    RowFacts,
    RuleMatch,
)
from packages.parsers.retailers.amazon_parser import AmazonParser
from packages.parsers.retailers.costco_parser import CostcoParser
from packages.parsers.retailers.generic_parser import GenericParser

__all__ = [
    'AmazonRow',
    'BaseRetailerParser',
    'CostcoRow',
    'GenericRow',
    'ParserNotApplicableError',
    'RetailerRow',
    'RowFacts',
    'RuleMatch',
    'AmazonParser',
    'CostcoParser',
    'GenericParser',
]
