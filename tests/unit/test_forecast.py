"""
Tests for probability to forecast category mapping.
"""

import pytest

from src.core.opportunities.forecast import ForecastCategory, categorize


class TestCategorize:
    """Threshold boundaries of the forecast categories."""

    @pytest.mark.parametrize("probability,expected", [
        (0, ForecastCategory.PIPELINE),
        (49, ForecastCategory.PIPELINE),
        (50, ForecastCategory.BEST_CASE),
        (74, ForecastCategory.BEST_CASE),
        (75, ForecastCategory.COMMIT),
        (99, ForecastCategory.COMMIT),
        (100, ForecastCategory.CLOSED),
    ])
    def test_boundaries(self, probability, expected):
        assert categorize(probability) == expected

    def test_omitted_is_never_derived(self):
        """Omitted is only set explicitly (closing lost)."""
        derived = {categorize(p) for p in range(0, 101)}
        assert ForecastCategory.OMITTED not in derived

    @pytest.mark.parametrize("probability", [-1, 101])
    def test_out_of_range_rejected(self, probability):
        with pytest.raises(ValueError):
            categorize(probability)

    def test_values_are_wire_strings(self):
        assert ForecastCategory.BEST_CASE.value == "best_case"
        assert categorize(80).value == "commit"
