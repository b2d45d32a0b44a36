"""
Prediction Module - run-out dates from purchase history

Exponential smoothing over purchase intervals, with outlier removal and a
HIGH/MEDIUM/LOW confidence classification.
"""

from packages.domain.prediction.prediction_engine import (
    BatchRecalculationStats,
    PredictionEngine,
    RecalculationMetrics,
    apply_exponential_smoothing,
    calculate_confidence,
    remove_outliers,
)

__all__ = [
    'BatchRecalculationStats',
    'PredictionEngine',
    'RecalculationMetrics',
    'apply_exponential_smoothing',
    'calculate_confidence',
    'remove_outliers',
]
