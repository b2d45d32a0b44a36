"""
Parsing Cascade - raw purchase line → ParsedCandidate

Three tiers, strictly sequential, first usable result wins:

1. Rule (deterministic, free): retailer row parser. Only a COMPLETE match
   counts; a partial one (e.g. no package size) falls through. Complete
   matches are written through to the cache.
2. Cache (free): NormalizationCache lookup by (raw_text, retailer).
3. Model (paid, governed): pre-flight budget check, then structured
   generation. Results with confidence ≥ 0.9 are cached.

A tier-3 line never fails the batch:
- Budget denied → confidence 0.1 candidate carrying the denial reason
- Malformed output / transport error / quota / no API key → confidence 0.1 fallback

Row facts a partial rule did extract (price, date, quantity, SKU) are carried
into the tier-2/tier-3 candidate.

Example flow:
- "Horizon - Organic Whole Milk, 64 fl oz" (Amazon CSV) → rule → conf 0.9
- "Kirkland Sig Trail Mix" (no size) → cache miss → model → conf 0.93 → cached
- Same line next upload → cache hit → conf 0.93, no model call
"""
from datetime import date
from decimal import Decimal
from typing import Callable, Optional, Union

import structlog
from pydantic import ValidationError

from packages.common.config import Settings
from packages.common.errors import SoftParseFailure, StructuredGenerationError
from packages.common.normalization_cache import NormalizationCache
from packages.common.schemas.inventory import (
    BudgetDenialReason,
    Category,
    NormalizedItem,
    ParsedCandidate,
    ResolutionMethod,
    Retailer,
    UnitOfMeasure,
)
from packages.domain.budget.governor import BudgetGovernor, BudgetScope
from packages.domain.normalization.prompts import (
    NORMALIZATION_SCHEMA,
    build_normalization_prompt,
    estimate_input_tokens,
)
from packages.domain.normalization.structured_generator import StructuredGenerator
from packages.parsers.retailer_dispatcher import RetailerDispatcher
from packages.parsers.retailers import GenericRow, RetailerRow, RowFacts

logger = structlog.get_logger()


class ParsingCascade:
    """
    Rule → cache → model resolution of one purchase line.

    All collaborators are injected; the cascade holds no global state.
    """

    def __init__(
        self,
        dispatcher: RetailerDispatcher,
        cache: NormalizationCache,
        governor: BudgetGovernor,
        generator: StructuredGenerator,
        settings: Settings,
        today: Callable[[], date] = date.today,
    ):
        self.dispatcher = dispatcher
        self.cache = cache
        self.governor = governor
        self.generator = generator
        self.today = today

        self.cache_write_threshold = settings.cache_write_threshold
        self.review_threshold = settings.review_confidence_threshold
        self.fallback_confidence = settings.fallback_confidence
        self.max_output_tokens = settings.model_max_output_tokens

    async def resolve(
        self,
        raw_text: str,
        retailer: Union[Retailer, str],
        scope: BudgetScope,
        row: Optional[RetailerRow] = None,
        purchased_on: Optional[date] = None,
    ) -> ParsedCandidate:
        """
        Resolve one line into a ParsedCandidate.

        Args:
            raw_text: Raw line text (cache key input)
            retailer: Retailer of the upload
            scope: Household/user paying for any model call
            row: Typed retailer row (CSV uploads); free text when omitted
            purchased_on: Upload-level purchase date when the row has none

        Returns:
            ParsedCandidate (never raises for a bad line)
        """
        retailer = Retailer.normalize(retailer)
        retailer_key = retailer.value
        if row is None:
            row = GenericRow(text=raw_text)

        # Tier 1: deterministic rule
        try:
            match = self.dispatcher.parse_row(row)
        except Exception as e:
            logger.warning("tier_rule_failed",
                           retailer=retailer_key,
                           error_type=type(e).__name__,
                           error=str(e),
                           raw_text=(raw_text or "")[:80])
            return self.fallback_candidate(raw_text or "", retailer, purchased_on)
        facts = match.facts

        if not raw_text or not raw_text.strip():
            logger.warning("empty_line", retailer=retailer_key)
            return self._fallback(raw_text or "", retailer, facts, purchased_on)

        if match.complete:
            logger.debug("tier_rule_hit", retailer=retailer_key, raw_text=raw_text[:80])
            if not self.cache.contains_in_memory(raw_text, retailer_key):
                await self.cache.set(raw_text, retailer_key, match.normalized)
            return self._candidate(raw_text, retailer, match.normalized, facts,
                                   ResolutionMethod.RULE, purchased_on)

        # Tier 2: cache
        entry = await self.cache.get(raw_text, retailer_key)
        if entry is not None:
            logger.debug("tier_cache_hit", retailer=retailer_key, hit_count=entry.hit_count)
            return self._candidate(raw_text, retailer, entry.normalized, facts,
                                   ResolutionMethod.CACHE, purchased_on)

        # Tier 3: governed model call
        return await self._resolve_with_model(raw_text, retailer, scope, facts, purchased_on)

    async def _resolve_with_model(
        self,
        raw_text: str,
        retailer: Retailer,
        scope: BudgetScope,
        facts: RowFacts,
        purchased_on: Optional[date],
    ) -> ParsedCandidate:
        prompt = build_normalization_prompt(raw_text, retailer.value)
        estimated_input = estimate_input_tokens(prompt)
        estimated_cost = self.governor.estimate_cost(estimated_input, self.max_output_tokens)

        decision = await self.governor.check_budget(scope, estimated_cost)
        if not decision.allowed:
            logger.info("tier_model_skipped_budget",
                        reason=decision.reason.value if decision.reason else None,
                        household_id=scope.household_id,
                        user_id=scope.user_id)
            return self._fallback(raw_text, retailer, facts, purchased_on,
                                  budget_denial=decision.reason)

        try:
            result = await self.generator.generate(prompt, NORMALIZATION_SCHEMA, self.max_output_tokens)
        except SoftParseFailure as e:
            spent_in = getattr(e, "input_tokens", 0)
            spent_out = getattr(e, "output_tokens", 0)
            if spent_in or spent_out:
                await self.governor.record_usage(
                    scope, spent_in, spent_out, self.governor.estimate_cost(spent_in, spent_out)
                )
            logger.warning("tier_model_failed",
                           error_type=type(e).__name__,
                           error=str(e),
                           raw_text=raw_text[:80])
            return self._fallback(raw_text, retailer, facts, purchased_on)
        except Exception as e:
            logger.error("tier_model_unexpected_error",
                         error=str(e),
                         raw_text=raw_text[:80],
                         exc_info=True)
            return self._fallback(raw_text, retailer, facts, purchased_on)

        # Tokens were spent whether or not the output validates
        actual_cost = self.governor.estimate_cost(result.input_tokens, result.output_tokens)
        await self.governor.record_usage(scope, result.input_tokens, result.output_tokens, actual_cost)

        try:
            normalized = self._to_normalized(result.data)
        except StructuredGenerationError as e:
            logger.warning("tier_model_invalid_output", error=str(e), raw_text=raw_text[:80])
            return self._fallback(raw_text, retailer, facts, purchased_on)

        logger.info("tier_model_resolved",
                    retailer=retailer.value,
                    canonical_name=normalized.canonical_name,
                    confidence=normalized.confidence,
                    cost_usd=float(actual_cost))

        if normalized.confidence >= self.cache_write_threshold:
            await self.cache.set(raw_text, retailer.value, normalized)

        return self._candidate(raw_text, retailer, normalized, facts,
                               ResolutionMethod.MODEL, purchased_on)

    @staticmethod
    def _to_normalized(data: dict) -> NormalizedItem:
        """Validate model output against the NormalizedItem shape"""
        payload = dict(data)
        if not payload.get("brand"):
            payload["brand"] = None
        try:
            return NormalizedItem.model_validate(payload)
        except ValidationError as e:
            raise StructuredGenerationError(f"Model output failed validation: {e}") from e

    def _purchase_date(self, facts: RowFacts, purchased_on: Optional[date]) -> date:
        return facts.purchase_date or purchased_on or self.today()

    def _candidate(
        self,
        raw_text: str,
        retailer: Retailer,
        normalized: NormalizedItem,
        facts: RowFacts,
        method: ResolutionMethod,
        purchased_on: Optional[date],
    ) -> ParsedCandidate:
        return ParsedCandidate(
            raw_text=raw_text,
            canonical_name=normalized.canonical_name,
            brand=normalized.brand,
            category=normalized.category,
            quantity=facts.quantity or normalized.quantity,
            unit_of_measure=normalized.unit_of_measure,
            package_size=normalized.package_size,
            package_unit=normalized.package_unit,
            price=facts.price,
            purchase_date=self._purchase_date(facts, purchased_on),
            vendor=retailer,
            retailer_sku=facts.sku,
            confidence=normalized.confidence,
            resolution_method=method,
            needs_review=normalized.confidence < self.review_threshold,
        )

    def fallback_candidate(
        self,
        raw_text: str,
        retailer: Union[Retailer, str],
        purchased_on: Optional[date] = None,
    ) -> ParsedCandidate:
        """Fallback for a line whose row could not be read at all"""
        return self._fallback(raw_text, Retailer.normalize(retailer), RowFacts(raw_text=raw_text), purchased_on)

    def _fallback(
        self,
        raw_text: str,
        retailer: Retailer,
        facts: RowFacts,
        purchased_on: Optional[date],
        budget_denial: Optional[BudgetDenialReason] = None,
    ) -> ParsedCandidate:
        """Low-confidence placeholder, always flagged for review"""
        return ParsedCandidate(
            raw_text=raw_text,
            canonical_name=raw_text.strip() or "Unknown item",
            brand=None,
            category=Category.OTHER,
            quantity=facts.quantity or Decimal("1"),
            unit_of_measure=UnitOfMeasure.EACH,
            package_size=Decimal("1"),
            package_unit=UnitOfMeasure.EACH,
            price=facts.price,
            purchase_date=self._purchase_date(facts, purchased_on),
            vendor=retailer,
            retailer_sku=facts.sku,
            confidence=self.fallback_confidence,
            resolution_method=ResolutionMethod.MODEL,
            needs_review=True,
            is_fallback=True,
            budget_denial=budget_denial,
        )
