"""Tests for the rule → cache → model parsing cascade."""

from datetime import date
from decimal import Decimal

import pytest

from packages.common.errors import QuotaExceededError, StructuredGenerationError
from packages.common.schemas.inventory import (
    BudgetDenialReason,
    LineOutcome,
    ResolutionMethod,
    Retailer,
)
from packages.domain.budget.governor import user_monthly_id
from packages.domain.normalization.cascade import ParsingCascade
from packages.parsers.retailer_dispatcher import RetailerDispatcher
from packages.parsers.retailers import AmazonRow

from conftest import TODAY, TRAIL_MIX, FakeGenerator

RULE_LINE = "2 x Horizon Organic Milk 64 fl oz $5.99"
VAGUE_LINE = "Kirkland Sig Trail Mix"


def build_cascade(cache, governor, generator, settings):
    return ParsingCascade(
        RetailerDispatcher(rule_confidence=settings.rule_confidence),
        cache,
        governor,
        generator,
        settings,
        today=lambda: TODAY,
    )


@pytest.fixture
def cascade(cache, governor, generator, settings):
    return build_cascade(cache, governor, generator, settings)


class TestRuleTier:

    async def test_complete_rule_skips_model(self, cascade, generator, cache, scope):
        candidate = await cascade.resolve(RULE_LINE, "other", scope)

        assert candidate.resolution_method == ResolutionMethod.RULE
        assert candidate.confidence == 0.9
        assert candidate.canonical_name == "Horizon Organic Milk"
        assert candidate.quantity == Decimal("2")
        assert candidate.price == Decimal("5.99")
        assert candidate.line_outcome == LineOutcome.ACCEPTED
        assert generator.calls == 0

    async def test_rule_result_written_to_cache(self, cascade, cache, scope):
        await cascade.resolve(RULE_LINE, "other", scope)

        entry = await cache.get(RULE_LINE, "other")

        assert entry is not None
        assert entry.normalized.canonical_name == "Horizon Organic Milk"
        await cache.background.drain()

    async def test_purchase_date_defaults(self, cascade, scope):
        dated = await cascade.resolve(RULE_LINE, "other", scope, purchased_on=date(2025, 1, 2))
        undated = await cascade.resolve(RULE_LINE, "other", scope)

        assert dated.purchase_date == date(2025, 1, 2)
        assert undated.purchase_date == TODAY

    async def test_retailer_string_normalized(self, cascade, scope):
        candidate = await cascade.resolve(RULE_LINE, "  Costco ", scope)
        assert candidate.vendor == Retailer.COSTCO


class TestCacheTier:

    async def test_model_result_served_from_cache_next_time(self, cascade, generator, scope):
        first = await cascade.resolve(VAGUE_LINE, "costco", scope)
        second = await cascade.resolve(VAGUE_LINE, "costco", scope)

        assert first.resolution_method == ResolutionMethod.MODEL
        assert second.resolution_method == ResolutionMethod.CACHE
        assert second.confidence == 0.93
        assert second.canonical_name == "Trail Mix"
        assert generator.calls == 1

    async def test_cache_is_per_retailer(self, cascade, generator, scope):
        await cascade.resolve(VAGUE_LINE, "costco", scope)
        await cascade.resolve(VAGUE_LINE, "amazon", scope)

        assert generator.calls == 2


class TestModelTier:

    async def test_success_records_usage(self, cascade, governor, scope):
        candidate = await cascade.resolve(VAGUE_LINE, "costco", scope)

        assert candidate.brand == "Kirkland Signature"
        assert candidate.needs_review is False
        assert await governor.get_user_monthly_spend(scope) == governor.estimate_cost(400, 60)

    async def test_low_confidence_not_cached(self, cache, governor, settings, scope):
        generator = FakeGenerator(data={**TRAIL_MIX, "confidence": 0.75})
        cascade = build_cascade(cache, governor, generator, settings)

        first = await cascade.resolve(VAGUE_LINE, "costco", scope)
        await cascade.resolve(VAGUE_LINE, "costco", scope)

        assert first.needs_review is True
        assert first.line_outcome == LineOutcome.NEEDS_REVIEW
        assert generator.calls == 2

    async def test_partial_rule_facts_carried_into_model_candidate(self, cascade, scope):
        row = AmazonRow(order_date="01/15/2025", order_id="1", title="Kirkland Signature Trail Mix",
                        item_total="$12.49", asin="B0TRAIL001")

        candidate = await cascade.resolve(row.raw_text, "amazon", scope, row=row)

        assert candidate.resolution_method == ResolutionMethod.MODEL
        assert candidate.price == Decimal("12.49")
        assert candidate.purchase_date == date(2025, 1, 15)
        assert candidate.retailer_sku == "B0TRAIL001"

    async def test_budget_denied_falls_back(self, cascade, generator, usage_store, scope):
        await usage_store.put(user_monthly_id(scope, "2025-03"), {"llm_cost_usd": "0.20"})

        candidate = await cascade.resolve(VAGUE_LINE, "costco", scope)

        assert candidate.is_fallback
        assert candidate.confidence == 0.1
        assert candidate.needs_review
        assert candidate.budget_denial == BudgetDenialReason.USER_MONTHLY_EXCEEDED
        assert candidate.line_outcome == LineOutcome.LOW_CONFIDENCE_FALLBACK
        assert generator.calls == 0

    async def test_quota_error_falls_back(self, cache, governor, settings, scope):
        generator = FakeGenerator(error=QuotaExceededError("429"))
        cascade = build_cascade(cache, governor, generator, settings)

        candidate = await cascade.resolve(VAGUE_LINE, "costco", scope)

        assert candidate.is_fallback
        assert candidate.budget_denial is None
        assert await governor.get_user_monthly_spend(scope) == Decimal("0")

    async def test_malformed_output_still_records_spent_tokens(self, cache, governor, settings, scope):
        generator = FakeGenerator(error=StructuredGenerationError("no tool block", input_tokens=500, output_tokens=10))
        cascade = build_cascade(cache, governor, generator, settings)

        candidate = await cascade.resolve(VAGUE_LINE, "costco", scope)

        assert candidate.is_fallback
        assert await governor.get_user_monthly_spend(scope) == governor.estimate_cost(500, 10)

    async def test_invalid_fields_fall_back(self, cache, governor, settings, scope):
        bad = {key: value for key, value in TRAIL_MIX.items() if key != "package_size"}
        generator = FakeGenerator(data=bad)
        cascade = build_cascade(cache, governor, generator, settings)

        candidate = await cascade.resolve(VAGUE_LINE, "costco", scope)

        assert candidate.is_fallback
        assert await cache.get(VAGUE_LINE, "costco") is None

    async def test_unexpected_error_falls_back(self, cache, governor, settings, scope):
        generator = FakeGenerator(error=RuntimeError("boom"))
        cascade = build_cascade(cache, governor, generator, settings)

        candidate = await cascade.resolve(VAGUE_LINE, "costco", scope)

        assert candidate.is_fallback
        assert candidate.canonical_name == VAGUE_LINE

    async def test_empty_line_falls_back_without_model(self, cascade, generator, scope):
        candidate = await cascade.resolve("   ", "costco", scope)

        assert candidate.is_fallback
        assert generator.calls == 0
