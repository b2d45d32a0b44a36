"""Tests for the LLM budget governor."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from packages.common.schemas.inventory import BudgetDenialReason
from packages.domain.budget.governor import (
    BudgetGovernor,
    BudgetScope,
    system_daily_id,
    user_monthly_id,
)

from conftest import FailingStore, make_settings


async def seed_spend(store, record_id, amount):
    await store.put(record_id, {"llm_cost_usd": str(amount)})


class TestEstimateCost:

    def test_token_pricing(self, governor):
        # $0.001 per 1k input, $0.005 per 1k output
        assert governor.estimate_cost(1000, 1000) == Decimal("0.006")
        assert governor.estimate_cost(0, 0) == Decimal("0")


class TestCheckBudget:

    async def test_allowed_when_under_both_caps(self, governor, scope):
        decision = await governor.check_budget(scope, Decimal("0.01"))

        assert decision.allowed
        assert decision.reason is None
        assert decision.user_monthly_cap == Decimal("0.20")
        assert decision.system_daily_cap == Decimal("50.00")

    async def test_user_cap_reported_even_when_system_also_exceeded(self, governor, usage_store, scope):
        await seed_spend(usage_store, user_monthly_id(scope, "2025-03"), "0.19")
        await seed_spend(usage_store, system_daily_id("2025-03-15"), "75.00")

        decision = await governor.check_budget(scope, Decimal("0.02"))

        assert not decision.allowed
        assert decision.reason == BudgetDenialReason.USER_MONTHLY_EXCEEDED
        assert decision.suggestion == "Try again next month"
        assert decision.user_monthly_spend == Decimal("0.19")

    async def test_system_cap(self, governor, usage_store, scope):
        await seed_spend(usage_store, system_daily_id("2025-03-15"), "49.999")

        decision = await governor.check_budget(scope, Decimal("0.01"))

        assert not decision.allowed
        assert decision.reason == BudgetDenialReason.SYSTEM_DAILY_EXCEEDED
        assert decision.suggestion == "Try again later"

    async def test_reaching_cap_exactly_is_allowed(self, governor, usage_store, scope):
        await seed_spend(usage_store, user_monthly_id(scope, "2025-03"), "0.15")

        decision = await governor.check_budget(scope, Decimal("0.05"))

        assert decision.allowed

    async def test_other_users_spend_is_separate(self, governor, usage_store, scope):
        await seed_spend(usage_store, user_monthly_id(scope, "2025-03"), "0.20")

        other = BudgetScope(household_id="house-1", user_id="user-2")
        decision = await governor.check_budget(other, Decimal("0.01"))

        assert decision.allowed

    async def test_fails_open_when_store_unreachable(self, scope):
        governor = BudgetGovernor(FailingStore(), make_settings())

        decision = await governor.check_budget(scope, Decimal("0.01"))

        assert decision.allowed
        assert decision.degraded

    @pytest.mark.parametrize("cost", ["n/a", "NaN", "Infinity", ["0.05"], {"usd": 1}])
    async def test_fails_open_on_corrupt_record(self, governor, usage_store, scope, cost):
        await usage_store.put(user_monthly_id(scope, "2025-03"), {"llm_cost_usd": cost})

        decision = await governor.check_budget(scope, Decimal("0.001"))

        assert decision.allowed
        assert decision.degraded
        assert decision.reason is None

    async def test_corrupt_system_record_fails_open(self, governor, usage_store, scope):
        await usage_store.put(system_daily_id("2025-03-15"), {"llm_cost_usd": "n/a"})

        decision = await governor.check_budget(scope, Decimal("0.001"))

        assert decision.allowed
        assert decision.degraded


class TestRecordUsage:

    async def test_increments_user_and_system_records(self, governor, usage_store, scope):
        await governor.record_usage(scope, 400, 60, Decimal("0.0007"))
        await governor.record_usage(scope, 500, 40, Decimal("0.0007"))

        user_doc = await usage_store.get(user_monthly_id(scope, "2025-03"))
        system_doc = await usage_store.get(system_daily_id("2025-03-15"))

        assert user_doc["llm_calls"] == 2
        assert user_doc["llm_tokens_in"] == 900
        assert user_doc["llm_tokens_out"] == 100
        assert Decimal(user_doc["llm_cost_usd"]) == Decimal("0.0014")
        assert system_doc["llm_calls"] == 2
        assert system_doc["period_type"] == "daily"

        assert await governor.get_user_monthly_spend(scope) == Decimal("0.0014")
        assert await governor.get_system_daily_spend() == Decimal("0.0014")

    async def test_spend_feeds_next_check(self, governor, scope):
        await governor.record_usage(scope, 0, 0, Decimal("0.20"))

        decision = await governor.check_budget(scope, Decimal("0.001"))

        assert not decision.allowed
        assert decision.reason == BudgetDenialReason.USER_MONTHLY_EXCEEDED

    async def test_store_failure_is_swallowed(self, scope):
        governor = BudgetGovernor(FailingStore(), make_settings())
        await governor.record_usage(scope, 100, 10, Decimal("0.001"))

    async def test_new_month_starts_from_zero(self, governor, clock, scope):
        await governor.record_usage(scope, 100, 10, Decimal("0.15"))

        clock.now = datetime(2025, 4, 2, 8, 0, tzinfo=timezone.utc)

        assert await governor.get_user_monthly_spend(scope) == Decimal("0")
        decision = await governor.check_budget(scope, Decimal("0.10"))
        assert decision.allowed

    async def test_history_newest_first(self, governor, clock, scope):
        await governor.record_usage(scope, 100, 10, Decimal("0.05"))
        clock.now = datetime(2025, 4, 2, 8, 0, tzinfo=timezone.utc)
        await governor.record_usage(scope, 100, 10, Decimal("0.02"))

        history = await governor.get_user_history(scope, months=3)

        assert [record.period for record in history] == ["2025-04", "2025-03"]
        assert history[1].llm_cost_usd == Decimal("0.05")

    async def test_naive_clock_treated_as_utc(self, usage_store, scope):
        governor = BudgetGovernor(usage_store, make_settings(), clock=lambda: datetime(2025, 1, 31, 23, 0))
        await governor.record_usage(scope, 1, 1, Decimal("0.01"))

        assert await usage_store.get(user_monthly_id(scope, "2025-01")) is not None
