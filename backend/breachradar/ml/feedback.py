"""
Reviewer feedback on stored predictions.

Feedback is the labelled data the training orchestrator learns from. A
submission is fingerprinted over its fields so that resubmitting identical
feedback for the same prediction returns the existing row instead of
creating a duplicate or double-counting the model's counters.
"""

import hashlib
import json
from typing import Optional, Union

from sqlalchemy.exc import IntegrityError

from breachradar.db.models import MLFeedback
from breachradar.db.repositories import FeedbackRepository, ModelRepository, PredictionRepository
from breachradar.db.session import SessionScope, get_db_context
from breachradar.log_config import logger
from breachradar.ml.schemas import FeedbackType, RiskCategory
from breachradar.utils.errors import InvalidFeedbackError


def feedback_fingerprint(
    prediction_id: int,
    feedback_type: str,
    corrected_score: Optional[int],
    corrected_category: Optional[str],
    notes: Optional[str],
    submitted_by_id: Optional[str],
    submitted_by_name: Optional[str],
) -> str:
    """Stable sha256 over the submitted fields."""
    payload = json.dumps(
        [
            prediction_id,
            feedback_type,
            corrected_score,
            corrected_category,
            notes,
            submitted_by_id,
            submitted_by_name,
        ],
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class FeedbackStore:
    """Validates and records reviewer feedback."""

    def __init__(self, session_scope: SessionScope = get_db_context):
        self.session_scope = session_scope

    def submit_feedback(
        self,
        prediction_id: int,
        organisation_id: str,
        feedback_type: Union[FeedbackType, str],
        corrected_score: Optional[int] = None,
        corrected_category: Optional[Union[RiskCategory, str]] = None,
        notes: Optional[str] = None,
        submitted_by_id: Optional[str] = None,
        submitted_by_name: Optional[str] = None,
    ) -> MLFeedback:
        """
        Record feedback on a prediction.

        Args:
            prediction_id: Prediction being reviewed
            organisation_id: Organisation that owns the prediction
            feedback_type: CORRECT, INCORRECT or PARTIALLY_CORRECT
            corrected_score: Reviewer's score (0-100) for non-CORRECT feedback
            corrected_category: Reviewer's risk category
            notes: Free-text reviewer notes
            submitted_by_id: Reviewer identifier
            submitted_by_name: Reviewer display name

        Returns:
            The new MLFeedback row, or the existing one for an identical resubmission

        Raises:
            InvalidFeedbackError: Unknown type or category, or score out of range
            RecordNotFoundError: Prediction not found in the organisation
        """
        kind = self._validate_type(feedback_type)
        category = self._validate_category(corrected_category)
        if corrected_score is not None and not 0 <= corrected_score <= 100:
            raise InvalidFeedbackError(
                "Corrected score must be between 0 and 100",
                details={"corrected_score": corrected_score},
            )

        fingerprint = feedback_fingerprint(
            prediction_id,
            kind.value,
            corrected_score,
            category,
            notes,
            submitted_by_id,
            submitted_by_name,
        )

        with self.session_scope() as db:
            prediction = PredictionRepository(db).get_for_organisation(prediction_id, organisation_id)
            repo = FeedbackRepository(db)

            existing = repo.get_by_fingerprint(prediction_id, fingerprint)
            if existing is not None:
                logger.info(f"Duplicate feedback for prediction {prediction_id}; returning feedback {existing.id}")
                return existing

            try:
                with db.begin_nested():
                    feedback = repo.create(
                        organisation_id=organisation_id,
                        prediction_id=prediction_id,
                        feedback_type=kind.value,
                        corrected_score=corrected_score,
                        corrected_category=category,
                        feedback_notes=notes,
                        submitted_by_id=submitted_by_id,
                        submitted_by_name=submitted_by_name,
                        fingerprint=fingerprint,
                    )
            except IntegrityError:
                existing = repo.get_by_fingerprint(prediction_id, fingerprint)
                if existing is None:
                    raise
                logger.info(f"Feedback for prediction {prediction_id} recorded concurrently; returning {existing.id}")
                return existing

            if prediction.model_id is not None:
                ModelRepository(db).increment_counters(
                    prediction.model_id,
                    correct_predictions=1 if kind == FeedbackType.CORRECT else 0,
                    feedback_count=1,
                )

            logger.info(
                f"Recorded {kind.value} feedback {feedback.id} on prediction {prediction_id} "
                f"for organisation {organisation_id}"
            )
            return feedback

    @staticmethod
    def _validate_type(feedback_type: Union[FeedbackType, str]) -> FeedbackType:
        try:
            return FeedbackType(feedback_type)
        except ValueError:
            raise InvalidFeedbackError(
                f"Invalid feedback type: {feedback_type}",
                details={"allowed": [t.value for t in FeedbackType]},
            )

    @staticmethod
    def _validate_category(category: Optional[Union[RiskCategory, str]]) -> Optional[str]:
        if category is None:
            return None
        try:
            return RiskCategory(category).value
        except ValueError:
            raise InvalidFeedbackError(
                f"Invalid corrected category: {category}",
                details={"allowed": [c.value for c in RiskCategory]},
            )
