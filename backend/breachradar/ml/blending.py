"""
Confidence-weighted blending of statistical and ML breach scores.

Scores and confidences are on a 0-100 scale. Rounding is half-up so that
x.5 always rounds towards the higher integer (82.5 -> 83).
"""

import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from breachradar.ml.schemas import BlendResult, RiskCategory, SourceLabel


MAX_ML_CONFIDENCE = 95
DEFAULT_TRAINING_ACCURACY = 50.0
DEFAULT_STORED_STATISTICAL_CONFIDENCE = 50


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def risk_category(score: int) -> RiskCategory:
    """Map a combined score to its risk band (lower bounds inclusive)."""
    if score >= 85:
        return RiskCategory.CRITICAL
    if score >= 70:
        return RiskCategory.HIGH
    if score >= 40:
        return RiskCategory.MEDIUM
    return RiskCategory.LOW


def days_to_breach(score: int) -> Optional[int]:
    """Projected days until breach, or None below the MEDIUM band."""
    if score >= 70:
        return max(1, round_half_up((100 - score) * 3))
    if score >= 40:
        return round_half_up(30 + (100 - score) * 2)
    return None


def ml_confidence(base: int, training_accuracy: Optional[float], feedback_count: int) -> int:
    """
    Confidence in a model score.

    Grows with training accuracy and, up to +20, with reviewer feedback.
    Capped at 95 so a model never fully outweighs the statistical score.
    """
    accuracy = DEFAULT_TRAINING_ACCURACY if training_accuracy is None else training_accuracy
    feedback_bonus = min((feedback_count or 0) * 2, 20)
    return min(round_half_up(base + accuracy * 0.4 + feedback_bonus), MAX_ML_CONFIDENCE)


class BlendingEngine:
    """Blends score pairs and projects a breach date."""

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self._clock = clock

    def blend(
        self,
        stat_score: int,
        stat_confidence: int,
        ml_score: Optional[int] = None,
        ml_confidence_value: Optional[int] = None,
    ) -> BlendResult:
        """
        Combine a statistical score with an optional ML score.

        Args:
            stat_score: Rule-based score (0-100)
            stat_confidence: Confidence in the rule-based score
            ml_score: Model score, or None when no usable model
            ml_confidence_value: Confidence in the model score

        Returns:
            BlendResult with combined score, confidence, category and projection
        """
        if ml_score is None or ml_confidence_value is None:
            combined_score = int(stat_score)
            combined_confidence = int(stat_confidence)
            source_label = SourceLabel.STATISTICAL
        else:
            total = stat_confidence + ml_confidence_value
            if total > 0:
                stat_weight = stat_confidence / total
                ml_weight = ml_confidence_value / total
            else:
                stat_weight = ml_weight = 0.5
            combined_score = round_half_up(stat_score * stat_weight + ml_score * ml_weight)
            combined_confidence = round_half_up(total / 2)
            source_label = SourceLabel.ML_ENHANCED

        days = days_to_breach(combined_score)
        breach_date = self._clock() + timedelta(days=days) if days is not None else None

        return BlendResult(
            combined_score=combined_score,
            combined_confidence=combined_confidence,
            source_label=source_label,
            risk_category=risk_category(combined_score),
            predicted_days_to_breach=days,
            predicted_breach_date=breach_date,
        )

    def reblend_stored(
        self,
        statistical_score: Optional[int],
        statistical_confidence: Optional[int],
        ml_score: Optional[int],
        ml_confidence_value: Optional[int],
    ) -> BlendResult:
        """Blend values read back from a stored prediction, filling missing defaults."""
        return self.blend(
            statistical_score or 0,
            statistical_confidence or DEFAULT_STORED_STATISTICAL_CONFIDENCE,
            ml_score,
            ml_confidence_value,
        )
