"""
Merge Resolver - keeps one inventory item per physical product

Rules, first match wins:
1. SKU: candidate retailer SKU appears in an item's "retailer:sku" mappings
   → MergeInto(auto, match_confidence=1.0)
2. Name + brand: case-insensitive exact canonical name AND brand, candidate
   brand present → MergeInto(auto)
3. Name only: same canonical name, brand absent or different
   → Ambiguous (candidate flagged for review, confidence capped at 0.7)
4. Otherwise → CreateNew

Examples (existing item "Milk" / "Horizon"):
- candidate "milk" / "Horizon"  → MergeInto
- candidate "milk" / "Kirkland" → Ambiguous
- candidate "Eggs" / "Horizon"  → CreateNew

Deterministic and total: every candidate gets exactly one outcome.
"""
from typing import Iterable, Optional

import structlog

from packages.common.schemas.inventory import (
    Ambiguous,
    CreateNew,
    Item,
    MergeInto,
    MergeOutcome,
    ParsedCandidate,
)

logger = structlog.get_logger()


def _fold(value: Optional[str]) -> str:
    return " ".join((value or "").split()).casefold()


def sku_key(vendor: str, sku: str) -> str:
    """Mapping string stored on items: "retailer:sku" """
    return f"{vendor.lower()}:{sku.strip()}"


class MergeResolver:
    """
    Decide attach / create / ambiguous for one candidate.

    Items are a read-only view; the resolver never mutates them.
    """

    def __init__(self, ambiguous_confidence_cap: float = 0.7):
        self.ambiguous_confidence_cap = ambiguous_confidence_cap

    def resolve(self, candidate: ParsedCandidate, existing_items: Iterable[Item]) -> MergeOutcome:
        """
        Args:
            candidate: Parsed line
            existing_items: Household's current items

        Returns:
            MergeInto | CreateNew | Ambiguous
        """
        items = list(existing_items)

        # Rule 1: retailer SKU mapping
        if candidate.retailer_sku:
            key = sku_key(candidate.vendor.value, candidate.retailer_sku).lower()
            for item in items:
                if key in (s.lower() for s in item.retailer_skus):
                    logger.debug("merge_sku_match", item_id=item.id, sku=key)
                    return MergeInto(item_id=item.id, auto=True, match_confidence=1.0, matched_on="sku")

        name = _fold(candidate.canonical_name)
        brand = _fold(candidate.brand)
        name_matches = [item for item in items if _fold(item.canonical_name) == name]

        # Rule 2: exact name + brand
        if brand:
            for item in name_matches:
                if _fold(item.brand) == brand:
                    logger.debug("merge_name_brand_match", item_id=item.id)
                    return MergeInto(item_id=item.id, auto=True, match_confidence=1.0, matched_on="name_brand")

        # Rule 3: name only
        if name_matches:
            item = name_matches[0]
            reason = f"Similar item found: {item.canonical_name}"
            if item.brand:
                reason += f" ({item.brand})"
            logger.info("merge_ambiguous",
                        item_id=item.id,
                        candidate_brand=candidate.brand,
                        item_brand=item.brand)
            return Ambiguous(item_id=item.id, reason=reason)

        return CreateNew()

    def apply(self, candidate: ParsedCandidate, existing_items: Iterable[Item]) -> ParsedCandidate:
        """
        Return a new candidate carrying its merge outcome.

        Ambiguous outcomes also force review and cap confidence.
        """
        outcome = self.resolve(candidate, existing_items)

        update = {"merge": outcome}
        if isinstance(outcome, Ambiguous):
            update["needs_review"] = True
            update["confidence"] = min(candidate.confidence, self.ambiguous_confidence_cap)

        return candidate.model_copy(update=update)
