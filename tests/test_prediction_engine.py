"""Tests for run-out prediction."""

from datetime import date, timedelta

import pytest

from packages.common.inventory_repository import InMemoryInventoryRepository
from packages.common.schemas.inventory import Item, PredictionConfidence, Transaction
from packages.domain.prediction.prediction_engine import (
    PredictionEngine,
    apply_exponential_smoothing,
    calculate_confidence,
    calculate_intervals,
    calculate_std_dev,
    outlier_scores,
    remove_outliers,
    round_half_up,
)

from conftest import TODAY


class TestSmoothing:

    def test_single_point_identity(self):
        assert apply_exponential_smoothing([11]) == 11

    def test_constant_series(self):
        assert apply_exponential_smoothing([7, 7, 7]) == pytest.approx(7)

    def test_weights_recent_interval(self):
        # 0.3 * 20 + 0.7 * 10
        assert apply_exponential_smoothing([10, 20]) == pytest.approx(13.0)

    def test_empty_series_rejected(self):
        with pytest.raises(ValueError):
            apply_exponential_smoothing([])


class TestOutlierRemoval:

    def test_removes_single_spike(self):
        assert remove_outliers([7, 7, 30, 7], 2.0) == ([7, 7, 7], 1)

    def test_spike_score(self):
        scores = outlier_scores([7, 7, 30, 7])
        assert scores[2] == pytest.approx(2.309, abs=0.001)
        assert max(scores[0], scores[1], scores[3]) < 1

    def test_evenly_spread_values_kept(self):
        assert remove_outliers([5, 6, 7, 8], 2.0) == ([5, 6, 7, 8], 0)

    def test_needs_three_intervals(self):
        assert remove_outliers([7, 30], 2.0) == ([7, 30], 0)

    def test_identical_values_kept(self):
        assert remove_outliers([7, 7, 7], 2.0) == ([7, 7, 7], 0)

    def test_never_returns_empty(self):
        assert remove_outliers([1, 100, 10000], 0.01) == ([1, 100, 10000], 0)


class TestStatistics:

    def test_intervals_drop_non_positive(self):
        d = date(2025, 1, 1)
        assert calculate_intervals([d, d, d + timedelta(days=7), d + timedelta(days=10)]) == [7, 3]

    def test_population_std_dev(self):
        assert calculate_std_dev([2, 4, 4, 4, 5, 5, 7, 9]) == pytest.approx(2.0)
        assert calculate_std_dev([5]) == 0.0

    @pytest.mark.parametrize("value, expected", [(7.5, 8), (7.49, 7), (2.5, 3), (7.0, 7)])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected


class TestConfidence:

    @pytest.mark.parametrize("args, expected", [
        ((5, True, 10, 0), PredictionConfidence.HIGH),
        ((2, False, 80, 0), PredictionConfidence.LOW),
        ((2, True, 60, 0), PredictionConfidence.MEDIUM),
        ((3, True, 10, 1), PredictionConfidence.MEDIUM),
        ((3, False, 10, 0), PredictionConfidence.MEDIUM),
        ((3, True, 25, 0), PredictionConfidence.MEDIUM),
        ((1, True, 0, 0), PredictionConfidence.LOW),
    ])
    def test_classification(self, args, expected):
        assert calculate_confidence(*args) == expected


async def add_item(repository, item_id, household_id="house-1", purchase_dates=()):
    await repository.create_item(Item(id=item_id, household_id=household_id, canonical_name=f"Item {item_id}"))
    for purchased in purchase_dates:
        await repository.create_transaction(Transaction(
            id="", household_id=household_id, item_id=item_id, purchase_date=purchased,
        ))


WEEKLY = [date(2025, 2, 22), date(2025, 3, 1), date(2025, 3, 8)]
WITH_SPIKE = [date(2025, 1, 1), date(2025, 1, 8), date(2025, 1, 15), date(2025, 2, 14), date(2025, 2, 21)]


class FlakyRepository(InMemoryInventoryRepository):
    """Transactions of one item and items of one household cannot be read."""

    async def get_by_item(self, item_id):
        if item_id == "broken":
            raise ConnectionError("transactions unavailable")
        return await super().get_by_item(item_id)

    async def get_by_household(self, household_id):
        if household_id == "house-down":
            raise ConnectionError("items unavailable")
        return await super().get_by_household(household_id)


@pytest.fixture
def engine(repository, settings):
    return PredictionEngine(repository, repository, settings, today=lambda: TODAY)


class TestPredictionEngine:

    async def test_weekly_purchases(self, engine, repository):
        await add_item(repository, "milk", purchase_dates=WEEKLY)

        result = await engine.predict("milk")

        assert result.predicted_run_out_date == date(2025, 3, 15)
        assert result.smoothed_interval == pytest.approx(7)
        assert result.days_until_run_out == 0
        assert result.confidence == PredictionConfidence.HIGH
        assert result.metadata.purchase_count == 3
        assert result.metadata.recent_purchase is True
        assert result.metadata.consistency == 0
        assert result.metadata.outliers_removed == 0

    async def test_outlier_lowers_confidence(self, engine, repository):
        await add_item(repository, "coffee", purchase_dates=WITH_SPIKE)

        result = await engine.predict("coffee")

        assert result.metadata.intervals == [7, 7, 30, 7]
        assert result.metadata.cleaned_intervals == [7, 7, 7]
        assert result.metadata.outliers_removed == 1
        assert result.predicted_run_out_date == date(2025, 2, 28)
        assert result.days_until_run_out == -15
        assert result.confidence == PredictionConfidence.MEDIUM

    async def test_history_order_does_not_matter(self, engine, repository):
        await add_item(repository, "milk", purchase_dates=list(reversed(WEEKLY)))
        result = await engine.predict("milk")
        assert result.predicted_run_out_date == date(2025, 3, 15)

    async def test_single_purchase_has_no_prediction(self, engine, repository):
        await add_item(repository, "new", purchase_dates=[date(2025, 3, 1)])
        assert await engine.predict("new") is None

    async def test_same_day_purchases_have_no_prediction(self, engine, repository):
        await add_item(repository, "twice", purchase_dates=[date(2025, 3, 1), date(2025, 3, 1)])
        assert await engine.predict("twice") is None

    async def test_stale_irregular_history_is_low(self, engine, repository):
        await add_item(repository, "rare", purchase_dates=[date(2024, 6, 1), date(2024, 6, 5), date(2024, 9, 1)])

        result = await engine.predict("rare")

        assert result.metadata.recent_purchase is False
        assert result.confidence == PredictionConfidence.LOW

    async def test_update_writes_item(self, engine, repository):
        await add_item(repository, "milk", purchase_dates=WEEKLY)

        await engine.update_item_prediction("milk")

        item = repository.items["milk"]
        assert item.predicted_run_out_date == date(2025, 3, 15)
        assert item.prediction_confidence == PredictionConfidence.HIGH
        assert item.avg_frequency_days == pytest.approx(7)
        assert item.avg_consumption_rate == pytest.approx(1 / 7)

    async def test_recalculation_is_idempotent(self, engine, repository):
        await add_item(repository, "milk", purchase_dates=WEEKLY)

        first = await engine.update_item_prediction("milk")
        second = await engine.update_item_prediction("milk")

        assert first == second


class TestBatchRecalculation:

    async def test_item_failure_is_isolated(self, settings):
        repository = FlakyRepository(today=lambda: TODAY)
        engine = PredictionEngine(repository, repository, settings, today=lambda: TODAY)
        await add_item(repository, "milk", purchase_dates=WEEKLY)
        await add_item(repository, "new", purchase_dates=[date(2025, 3, 1)])
        await add_item(repository, "broken", purchase_dates=WEEKLY)

        stats = await engine.batch_recalculate("house-1")

        assert stats.total_items == 3
        assert stats.predictions_updated == 1
        assert stats.high_confidence == 1
        assert stats.no_prediction == 1
        assert stats.errors == 1
        assert repository.items["milk"].predicted_run_out_date == date(2025, 3, 15)

    async def test_recalculate_all_isolates_households(self, settings):
        repository = FlakyRepository(today=lambda: TODAY)
        engine = PredictionEngine(repository, repository, settings, today=lambda: TODAY)
        await add_item(repository, "milk", household_id="house-1", purchase_dates=WEEKLY)
        await add_item(repository, "coffee", household_id="house-2", purchase_dates=WITH_SPIKE)
        await add_item(repository, "bread", household_id="house-down", purchase_dates=WEEKLY)

        metrics = await engine.recalculate_all()

        assert metrics.total_households == 3
        assert metrics.households_processed == 2
        assert metrics.households_failed == 1
        assert metrics.total_predictions_updated == 2
        assert metrics.high_confidence_predictions == 1
        assert metrics.medium_confidence_predictions == 1
        assert metrics.items_running_out_soon == 2
        assert metrics.duration_ms >= 0

    async def test_items_running_out_soon(self, engine, repository):
        await add_item(repository, "milk", purchase_dates=WEEKLY)
        await add_item(repository, "rare", purchase_dates=[date(2025, 3, 1), date(2025, 4, 30)])
        await engine.batch_recalculate("house-1")

        due = await engine.items_running_out_soon("house-1")

        assert [item.id for item in due] == ["milk"]
