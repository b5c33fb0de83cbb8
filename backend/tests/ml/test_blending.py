"""
Unit tests for BlendingEngine and its scoring helpers.
"""

from datetime import datetime, timedelta
from itertools import product

import pytest

from breachradar.ml.blending import (
    BlendingEngine,
    days_to_breach,
    ml_confidence,
    risk_category,
    round_half_up,
)
from breachradar.ml.schemas import RiskCategory, SourceLabel


NOW = datetime(2025, 3, 1, 12, 0, 0)


@pytest.fixture
def engine():
    return BlendingEngine(clock=lambda: NOW)


class TestRounding:
    """Tests for half-up rounding."""

    @pytest.mark.parametrize("value,expected", [(82.5, 83), (71.5, 72), (2.5, 3), (2.4999, 2), (0.5, 1), (0.0, 0)])
    def test_round_half_up(self, value, expected):
        """Test halves always round towards the higher integer."""
        assert round_half_up(value) == expected


class TestRiskCategory:
    """Tests for category thresholds."""

    @pytest.mark.parametrize(
        "score,expected",
        [
            (100, RiskCategory.CRITICAL),
            (85, RiskCategory.CRITICAL),
            (84, RiskCategory.HIGH),
            (70, RiskCategory.HIGH),
            (69, RiskCategory.MEDIUM),
            (40, RiskCategory.MEDIUM),
            (39, RiskCategory.LOW),
            (0, RiskCategory.LOW),
        ],
    )
    def test_thresholds_are_inclusive_lower_bounds(self, score, expected):
        """Test 85, 70 and 40 are the lower bounds of their bands."""
        assert risk_category(score) == expected


class TestDaysToBreach:
    """Tests for the breach date projection."""

    def test_high_scores(self):
        """Test scores of 70 and above project (100 - score) * 3 days."""
        assert days_to_breach(70) == 90
        assert days_to_breach(72) == 84

    def test_floor_of_one_day(self):
        """Test a maximal score still projects at least one day."""
        assert days_to_breach(100) == 1

    def test_medium_scores(self):
        """Test scores in [40, 70) project 30 + (100 - score) * 2 days."""
        assert days_to_breach(40) == 150
        assert days_to_breach(69) == 92

    def test_low_scores_have_no_projection(self):
        """Test scores below 40 have no projected breach."""
        assert days_to_breach(39) is None
        assert days_to_breach(0) is None


class TestMLConfidence:
    """Tests for model confidence."""

    def test_grows_with_accuracy_and_feedback(self):
        """Test base + 0.4 * accuracy + 2 per feedback row."""
        assert ml_confidence(40, 80.0, 3) == 78

    def test_feedback_bonus_is_capped(self):
        """Test the feedback bonus stops at 20."""
        assert ml_confidence(30, 50.0, 100) == 70

    def test_missing_accuracy_defaults_to_fifty(self):
        """Test a model without training accuracy is treated as 50%."""
        assert ml_confidence(40, None, 0) == 60

    def test_capped_at_ninety_five(self):
        """Test confidence never exceeds 95."""
        assert ml_confidence(40, 100.0, 50) == 95


class TestBlend:
    """Tests for BlendingEngine.blend."""

    def test_statistical_only(self, engine):
        """Test with no ML score the statistical score passes through unchanged."""
        result = engine.blend(63, 90)

        assert result.combined_score == 63
        assert result.combined_confidence == 90
        assert result.source_label == SourceLabel.STATISTICAL
        assert result.risk_category == RiskCategory.MEDIUM
        assert result.predicted_days_to_breach == 104
        assert result.predicted_breach_date == NOW + timedelta(days=104)

    def test_worked_example(self, engine):
        """Test stat 80/95 with ML 60/70 blends to 72 with confidence 83."""
        result = engine.blend(80, 95, 60, 70)

        assert result.combined_score == 72
        assert result.combined_confidence == 83
        assert result.source_label == SourceLabel.ML_ENHANCED
        assert result.risk_category == RiskCategory.HIGH
        assert result.predicted_days_to_breach == 84
        assert result.predicted_breach_date == NOW + timedelta(days=84)

    def test_matches_weighted_formula(self, engine):
        """Test combined = round-half-up of the confidence-weighted mean."""
        for stat_score, stat_conf, ml_score, ml_conf in product((0, 33, 71, 100), (1, 50, 95), (5, 64, 100), (12, 70)):
            total = stat_conf + ml_conf
            expected = round_half_up(stat_score * (stat_conf / total) + ml_score * (ml_conf / total))

            result = engine.blend(stat_score, stat_conf, ml_score, ml_conf)

            assert result.combined_score == expected
            assert result.combined_confidence == round_half_up(total / 2)

    def test_monotonic_in_both_scores(self, engine):
        """Test raising either score never lowers the combined score."""
        for stat_conf, ml_conf in ((95, 70), (50, 50), (10, 90)):
            previous = -1
            for score in range(0, 101, 5):
                combined = engine.blend(score, stat_conf, 50, ml_conf).combined_score
                assert combined >= previous
                previous = combined

            previous = -1
            for score in range(0, 101, 5):
                combined = engine.blend(50, stat_conf, score, ml_conf).combined_score
                assert combined >= previous
                previous = combined

    def test_zero_confidences_weight_equally(self, engine):
        """Test zero total confidence falls back to an even split."""
        result = engine.blend(80, 0, 40, 0)

        assert result.combined_score == 60
        assert result.combined_confidence == 0

    def test_low_score_has_no_breach_date(self, engine):
        """Test LOW predictions carry no projection."""
        result = engine.blend(10, 85, 20, 60)

        assert result.risk_category == RiskCategory.LOW
        assert result.predicted_days_to_breach is None
        assert result.predicted_breach_date is None

    def test_reblend_stored_defaults_statistical_confidence(self, engine):
        """Test stored rows without statistical confidence are treated as 50."""
        result = engine.reblend_stored(80, None, 60, 50)

        assert result.combined_score == 70
        assert result.combined_confidence == 50
        assert result.source_label == SourceLabel.ML_ENHANCED

    def test_reblend_stored_without_ml(self, engine):
        """Test stored statistical-only rows keep their score."""
        result = engine.reblend_stored(45, 80, None, None)

        assert result.combined_score == 45
        assert result.source_label == SourceLabel.STATISTICAL
