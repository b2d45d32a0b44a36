"""
Prediction Engine - when will an item run out?

Per item, from its purchase history:
1. Intervals between consecutive purchases, whole days, non-positive dropped
2. Outlier removal (≥3 intervals only): an interval is dropped when its
   distance from the mean of the OTHER intervals exceeds `threshold`
   population standard deviations of the full set. Never empties the set.
3. Exponential smoothing, α = 0.3: S0 = x0, St = α·xt + (1-α)·St-1
4. Run-out date = last purchase + smoothed interval (rounded half up)
5. Confidence:
   HIGH   ≥3 purchases, last purchase ≤30 days ago, CV < 20%, no outliers
   MEDIUM ≥2 purchases and (recent or CV < 50%)
   LOW    otherwise

Example: purchases 7 days apart with one 30-day gap
- intervals [7, 7, 30, 7] → 30 removed → [7, 7, 7] → smoothed 7.0
- one outlier removed → at best MEDIUM

Fewer than 2 purchases → no prediction (not an error).
"""
import math
import time
from dataclasses import asdict, dataclass
from datetime import date
from typing import Callable, List, Optional, Sequence, Tuple

import structlog

from packages.common.config import Settings
from packages.common.inventory_repository import ItemReader, ItemWriter, TransactionReader
from packages.common.schemas.inventory import (
    Item,
    PredictionConfidence,
    PredictionMetadata,
    PredictionResult,
    Transaction,
)

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Pure statistics
# ---------------------------------------------------------------------------

def calculate_intervals(purchase_dates: Sequence[date]) -> List[int]:
    """Days between consecutive purchases (sorted input), positives only"""
    intervals = []
    for previous, current in zip(purchase_dates, purchase_dates[1:]):
        days = (current - previous).days
        if days > 0:
            intervals.append(days)
    return intervals


def calculate_mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def calculate_std_dev(values: Sequence[float]) -> float:
    """Population standard deviation; 0 for fewer than 2 values"""
    if len(values) < 2:
        return 0.0
    mean = calculate_mean(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance)


def outlier_scores(intervals: Sequence[float]) -> List[float]:
    """
    Leave-one-out deviation score per interval.

    |x - mean(others)| / std(all). Equivalent to the plain z-score scaled by
    n / (n - 1), so a single extreme value in a short series is not masked
    by its own pull on the mean.
    """
    n = len(intervals)
    std = calculate_std_dev(intervals)
    if n < 2 or std == 0:
        return [0.0] * n

    total = sum(intervals)
    scores = []
    for value in intervals:
        others_mean = (total - value) / (n - 1)
        scores.append(abs(value - others_mean) / std)
    return scores


def remove_outliers(intervals: Sequence[int], threshold: float = 2.0) -> Tuple[List[int], int]:
    """
    Drop outlier intervals.

    Returns:
        (cleaned intervals, number removed)
    """
    intervals = list(intervals)
    if len(intervals) < 3:
        return intervals, 0

    scores = outlier_scores(intervals)
    cleaned = [value for value, score in zip(intervals, scores) if score <= threshold]

    if not cleaned:
        return intervals, 0

    return cleaned, len(intervals) - len(cleaned)


def apply_exponential_smoothing(intervals: Sequence[float], alpha: float = 0.3) -> float:
    if not intervals:
        raise ValueError("Cannot smooth an empty interval series")

    smoothed = float(intervals[0])
    for value in intervals[1:]:
        smoothed = alpha * value + (1 - alpha) * smoothed
    return smoothed


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_confidence(
    purchase_count: int,
    recent_purchase: bool,
    consistency: float,
    outliers_removed: int,
) -> PredictionConfidence:
    """
    Args:
        purchase_count: Number of purchases behind the prediction
        recent_purchase: Last purchase within the recent window
        consistency: Coefficient of variation, percent
        outliers_removed: Intervals dropped as outliers
    """
    if purchase_count >= 3 and recent_purchase and consistency < 20 and outliers_removed == 0:
        return PredictionConfidence.HIGH

    if purchase_count >= 2 and (recent_purchase or consistency < 50):
        return PredictionConfidence.MEDIUM

    return PredictionConfidence.LOW


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@dataclass
class BatchRecalculationStats:
    """Outcome of recalculating one household"""
    total_items: int = 0
    predictions_updated: int = 0
    high_confidence: int = 0
    medium_confidence: int = 0
    low_confidence: int = 0
    no_prediction: int = 0
    errors: int = 0

    def count(self, confidence: PredictionConfidence):
        if confidence == PredictionConfidence.HIGH:
            self.high_confidence += 1
        elif confidence == PredictionConfidence.MEDIUM:
            self.medium_confidence += 1
        else:
            self.low_confidence += 1


@dataclass
class RecalculationMetrics:
    """Outcome of the system-wide daily run"""
    total_households: int = 0
    households_processed: int = 0
    households_failed: int = 0
    total_items: int = 0
    total_predictions_updated: int = 0
    high_confidence_predictions: int = 0
    medium_confidence_predictions: int = 0
    low_confidence_predictions: int = 0
    no_predictions: int = 0
    total_errors: int = 0
    items_running_out_soon: int = 0
    duration_ms: int = 0

    def add(self, stats: BatchRecalculationStats):
        self.total_items += stats.total_items
        self.total_predictions_updated += stats.predictions_updated
        self.high_confidence_predictions += stats.high_confidence
        self.medium_confidence_predictions += stats.medium_confidence
        self.low_confidence_predictions += stats.low_confidence
        self.no_predictions += stats.no_prediction
        self.total_errors += stats.errors


class _ItemStore(ItemReader, ItemWriter):
    """Type of the item store the engine needs (read and write)"""


class PredictionEngine:
    """
    Run-out predictions from transaction history.

    Reads transactions, writes prediction fields back onto items. Idempotent:
    recomputing overwrites the previous prediction.
    """

    def __init__(
        self,
        transactions: TransactionReader,
        items: _ItemStore,
        settings: Settings,
        today: Callable[[], date] = date.today,
    ):
        self.transactions = transactions
        self.items = items
        self.today = today

        self.alpha = settings.smoothing_alpha
        self.outlier_threshold = settings.outlier_z_threshold
        self.recent_days = settings.recent_purchase_days
        self.running_out_soon_days = settings.running_out_soon_days

    async def predict(self, item_id: str) -> Optional[PredictionResult]:
        """
        Predict the run-out date of one item.

        Returns:
            PredictionResult, or None with fewer than 2 purchases or no
            positive intervals
        """
        history = await self.transactions.get_by_item(item_id)
        return self.predict_from_history(item_id, history)

    def predict_from_history(self, item_id: str, history: Sequence[Transaction]) -> Optional[PredictionResult]:
        if len(history) < 2:
            logger.debug("prediction_insufficient_history", item_id=item_id, purchases=len(history))
            return None

        ordered = sorted(history, key=lambda t: t.purchase_date)
        purchase_dates = [t.purchase_date for t in ordered]

        intervals = calculate_intervals(purchase_dates)
        if not intervals:
            logger.debug("prediction_no_valid_intervals", item_id=item_id)
            return None

        cleaned, outliers_removed = remove_outliers(intervals, self.outlier_threshold)
        smoothed = apply_exponential_smoothing(cleaned, self.alpha)

        last_purchase = purchase_dates[-1]
        predicted = date.fromordinal(last_purchase.toordinal() + round_half_up(smoothed))

        today = self.today()
        recent_purchase = (today - last_purchase).days <= self.recent_days

        mean = calculate_mean(cleaned)
        consistency = (calculate_std_dev(cleaned) / mean) * 100 if mean > 0 else 0.0

        confidence = calculate_confidence(len(ordered), recent_purchase, consistency, outliers_removed)

        return PredictionResult(
            item_id=item_id,
            predicted_run_out_date=predicted,
            confidence=confidence,
            smoothed_interval=smoothed,
            days_until_run_out=(predicted - today).days,
            metadata=PredictionMetadata(
                purchase_count=len(ordered),
                recent_purchase=recent_purchase,
                consistency=consistency,
                outliers_removed=outliers_removed,
                last_purchase_date=last_purchase,
                intervals=intervals,
                cleaned_intervals=cleaned,
            ),
        )

    async def update_item_prediction(self, item_id: str) -> Optional[PredictionResult]:
        """Predict and write the result onto the item"""
        prediction = await self.predict(item_id)
        if prediction is None:
            return None

        await self.items.update_prediction(
            item_id,
            predicted_run_out_date=prediction.predicted_run_out_date,
            prediction_confidence=prediction.confidence,
            avg_frequency_days=prediction.smoothed_interval,
            avg_consumption_rate=1 / prediction.smoothed_interval,
        )

        logger.debug("prediction_updated",
                     item_id=item_id,
                     run_out=prediction.predicted_run_out_date.isoformat(),
                     confidence=prediction.confidence.value)
        return prediction

    async def batch_recalculate(self, household_id: str) -> BatchRecalculationStats:
        """
        Recalculate every item of a household.

        A failing item is counted and logged; the rest continue.
        """
        stats = BatchRecalculationStats()
        items: List[Item] = await self.items.get_by_household(household_id)
        stats.total_items = len(items)

        for item in items:
            try:
                prediction = await self.update_item_prediction(item.id)
            except Exception as e:
                stats.errors += 1
                logger.error("prediction_item_failed",
                             household_id=household_id,
                             item_id=item.id,
                             error=str(e),
                             exc_info=True)
                continue

            if prediction is None:
                stats.no_prediction += 1
                continue

            stats.predictions_updated += 1
            stats.count(prediction.confidence)

        logger.info("household_predictions_recalculated", household_id=household_id, **asdict(stats))
        return stats

    async def items_running_out_soon(self, household_id: str, days: Optional[int] = None) -> List[Item]:
        return await self.items.get_running_out_soon(household_id, days or self.running_out_soon_days)

    async def recalculate_all(self) -> RecalculationMetrics:
        """
        Daily job body: every household, isolated failures.
        """
        started = time.monotonic()
        metrics = RecalculationMetrics()

        household_ids = await self.items.get_distinct_household_ids()
        metrics.total_households = len(household_ids)
        logger.info("prediction_recalculation_started", households=len(household_ids))

        for household_id in household_ids:
            try:
                stats = await self.batch_recalculate(household_id)
            except Exception as e:
                metrics.households_failed += 1
                metrics.total_errors += 1
                logger.error("household_recalculation_failed",
                             household_id=household_id,
                             error=str(e),
                             exc_info=True)
                continue

            metrics.households_processed += 1
            metrics.add(stats)

        for household_id in household_ids:
            try:
                due = await self.items_running_out_soon(household_id)
            except Exception as e:
                logger.warning("running_out_soon_count_failed", household_id=household_id, error=str(e))
                continue
            metrics.items_running_out_soon += len(due)

        metrics.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("prediction_recalculation_completed", **asdict(metrics))
        return metrics
