"""
Forecast categories

Maps win probability to the forecast bucket used in pipeline reporting.
"""

from enum import Enum


class ForecastCategory(str, Enum):
    PIPELINE = "pipeline"
    BEST_CASE = "best_case"
    COMMIT = "commit"
    CLOSED = "closed"
    OMITTED = "omitted"


# (lower bound, category), checked top down
FORECAST_THRESHOLDS = (
    (100, ForecastCategory.CLOSED),
    (75, ForecastCategory.COMMIT),
    (50, ForecastCategory.BEST_CASE),
)


def categorize(probability: int) -> ForecastCategory:
    """Forecast category for a probability in [0, 100]."""
    if probability < 0 or probability > 100:
        raise ValueError(f"Probability must be between 0 and 100, got {probability}")
    for threshold, category in FORECAST_THRESHOLDS:
        if probability >= threshold:
            return category
    return ForecastCategory.PIPELINE
