"""
Unit tests for unit usage and prediction.
"""

import pytest

from credit_ledger.core.units import UnitUsage, predict_units


class TestUnitUsage:
    """Test UnitUsage dataclass."""

    def test_total_units_calculation(self):
        """Verify total_units is computed correctly."""
        usage = UnitUsage(prompt_units=100, completion_units=50)
        assert usage.total_units == 150

    def test_zero_units(self):
        usage = UnitUsage(prompt_units=0, completion_units=0)
        assert usage.total_units == 0

    def test_negative_units_rejected(self):
        with pytest.raises(ValueError, match="prompt_units cannot be negative"):
            UnitUsage(prompt_units=-1, completion_units=0)
        with pytest.raises(ValueError, match="completion_units cannot be negative"):
            UnitUsage(prompt_units=0, completion_units=-1)


class TestPredictUnits:
    """Test pre-flight unit prediction."""

    def test_four_characters_per_unit(self):
        predicted = predict_units([{"role": "user", "content": "a" * 400}])
        assert predicted.prompt_units == 100
        assert predicted.completion_units == 50

    def test_messages_are_joined(self):
        # "abcd efgh" is 9 characters
        predicted = predict_units([
            {"role": "system", "content": "abcd"},
            {"role": "user", "content": "efgh"},
        ])
        assert predicted.prompt_units == 3
        assert predicted.completion_units == 2

    def test_completion_capped_by_default_max(self):
        predicted = predict_units([{"role": "user", "content": "a" * 40000}])
        assert predicted.prompt_units == 10000
        assert predicted.completion_units == 1000

    def test_completion_capped_by_requested_max(self):
        predicted = predict_units([{"role": "user", "content": "a" * 4000}], max_units=100)
        assert predicted.completion_units == 100

    def test_empty_content(self):
        predicted = predict_units([{"role": "user", "content": ""}, {"role": "user"}])
        # Only the joining space remains
        assert predicted.prompt_units == 1
        assert predicted.completion_units == 1
