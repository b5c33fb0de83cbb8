"""
Model metrics for an organisation's breach model.

Reports how the model is performing against reviewer feedback, whether
enough feedback has accumulated to make retraining worthwhile, and the
recent training history.
"""

from typing import List, Optional

from breachradar.config import settings
from breachradar.db.repositories import FeedbackRepository, TrainingRunRepository
from breachradar.db.session import SessionScope, get_db_context
from breachradar.ml.registry import ModelRegistry
from breachradar.ml.schemas import (
    FeedbackStats,
    FeedbackType,
    ModelMetrics,
    ModelSummary,
    PredictionType,
    TrainingRunSummary,
)


class ModelMonitor:
    """Read-only metrics over models, feedback and training runs."""

    def __init__(self, registry: Optional[ModelRegistry] = None, session_scope: SessionScope = get_db_context):
        self.session_scope = session_scope
        self.registry = registry or ModelRegistry(session_scope)

    def get_model_metrics(
        self,
        organisation_id: str,
        prediction_type: PredictionType = PredictionType.BREACH_PROBABILITY,
    ) -> ModelMetrics:
        """
        Metrics for the organisation's active model.

        Accuracy is the share of CORRECT among CORRECT and INCORRECT feedback.
        Without such feedback it falls back to the training accuracy.
        """
        with self.session_scope() as db:
            model = self.registry.get_or_create_model(db, organisation_id, prediction_type)

            feedback = FeedbackRepository(db)
            correct = feedback.count_for_model(model.id, FeedbackType.CORRECT.value)
            incorrect = feedback.count_for_model(model.id, FeedbackType.INCORRECT.value)
            partial = feedback.count_for_model(model.id, FeedbackType.PARTIALLY_CORRECT.value)
            total = correct + incorrect + partial

            if correct + incorrect > 0:
                accuracy = correct / (correct + incorrect)
            elif model.training_accuracy is not None:
                accuracy = model.training_accuracy / 100
            else:
                accuracy = None

            runs = TrainingRunRepository(db).recent_for_model(model.id, limit=settings.ml_recent_runs_limit)

            return ModelMetrics(
                model=ModelSummary(
                    accuracy=accuracy,
                    total_predictions=model.total_predictions or 0,
                    correct_predictions=model.correct_predictions or 0,
                    training_accuracy=model.training_accuracy,
                    status=model.status,
                ),
                feedback_stats=FeedbackStats(total=total, correct=correct, incorrect=incorrect),
                training_ready=total >= settings.ml_training_ready_threshold,
                recent_training_runs=[TrainingRunSummary.model_validate(run) for run in runs],
            )

    def list_training_runs(self, organisation_id: str, limit: int = 20) -> List[TrainingRunSummary]:
        """Most recent training runs across the organisation's models."""
        with self.session_scope() as db:
            runs = TrainingRunRepository(db).recent_for_organisation(organisation_id, limit=limit)
            return [TrainingRunSummary.model_validate(run) for run in runs]
