"""
Repository pattern for data access.

Provides clean interfaces for database operations, abstracting SQLAlchemy details.
Each repository handles a single aggregate (model, prediction, feedback, training run).
"""

from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func, update
from sqlalchemy.orm import Session
from loguru import logger

from breachradar.db.models import MLFeedback, MLModel, MLPrediction, MLTrainingRun
from breachradar.utils.errors import RecordNotFoundError


class ModelRepository:
    """Repository for MLModel operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, model_id: int) -> Optional[MLModel]:
        """Get model by ID."""
        return self.db.query(MLModel).filter(MLModel.id == model_id).first()

    def get_active(self, organisation_id: str, prediction_type: str) -> Optional[MLModel]:
        """Get the active model for an organisation and prediction type."""
        return (
            self.db.query(MLModel)
            .filter(
                MLModel.organisation_id == organisation_id,
                MLModel.prediction_type == prediction_type,
                MLModel.is_active == True,
            )
            .order_by(MLModel.model_version.desc())
            .first()
        )

    def create(self, organisation_id: str, prediction_type: str, **kwargs) -> MLModel:
        """Create a new model."""
        model = MLModel(organisation_id=organisation_id, prediction_type=prediction_type, **kwargs)
        self.db.add(model)
        self.db.flush()
        return model

    def update(self, model_id: int, **kwargs) -> MLModel:
        """Update a model."""
        model = self.get_by_id(model_id)
        if not model:
            raise RecordNotFoundError(f"Model {model_id} not found")

        for key, value in kwargs.items():
            if hasattr(model, key):
                setattr(model, key, value)

        model.updated_at = datetime.utcnow()
        self.db.flush()
        return model

    def increment_counters(
        self,
        model_id: int,
        total_predictions: int = 0,
        correct_predictions: int = 0,
        feedback_count: int = 0,
    ) -> None:
        """Atomically bump aggregate counters in the database."""
        self.db.execute(
            update(MLModel)
            .where(MLModel.id == model_id)
            .values(
                total_predictions=MLModel.total_predictions + total_predictions,
                correct_predictions=MLModel.correct_predictions + correct_predictions,
                feedback_count=MLModel.feedback_count + feedback_count,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.flush()


class PredictionRepository:
    """Repository for MLPrediction operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, prediction_id: int) -> Optional[MLPrediction]:
        """Get prediction by ID."""
        return self.db.query(MLPrediction).filter(MLPrediction.id == prediction_id).first()

    def get_for_organisation(self, prediction_id: int, organisation_id: str) -> MLPrediction:
        """Get a prediction owned by an organisation, raising if absent."""
        prediction = (
            self.db.query(MLPrediction)
            .filter(
                MLPrediction.id == prediction_id,
                MLPrediction.organisation_id == organisation_id,
            )
            .first()
        )
        if not prediction:
            raise RecordNotFoundError(
                f"Prediction {prediction_id} not found",
                details={"prediction_id": prediction_id, "organisation_id": organisation_id},
            )
        return prediction

    def create(self, **kwargs) -> MLPrediction:
        """Create a new prediction record."""
        prediction = MLPrediction(**kwargs)
        self.db.add(prediction)
        self.db.flush()
        return prediction

    def list_for_organisation(
        self,
        organisation_id: str,
        property_id: Optional[str] = None,
        risk_category: Optional[str] = None,
        limit: int = 50,
    ) -> List[MLPrediction]:
        """List an organisation's predictions, newest first."""
        query = self.db.query(MLPrediction).filter(MLPrediction.organisation_id == organisation_id)

        if property_id:
            query = query.filter(MLPrediction.property_id == property_id)

        if risk_category:
            query = query.filter(MLPrediction.predicted_risk_category == risk_category)

        return query.order_by(MLPrediction.created_at.desc(), MLPrediction.id.desc()).limit(limit).all()

    def count_for_model(self, model_id: int) -> int:
        """Count predictions made with a model."""
        return (
            self.db.query(func.count(MLPrediction.id))
            .filter(MLPrediction.model_id == model_id)
            .scalar()
            or 0
        )


class FeedbackRepository:
    """Repository for MLFeedback operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_fingerprint(self, prediction_id: int, fingerprint: str) -> Optional[MLFeedback]:
        """Find feedback already submitted with identical fields."""
        return (
            self.db.query(MLFeedback)
            .filter(
                MLFeedback.prediction_id == prediction_id,
                MLFeedback.fingerprint == fingerprint,
            )
            .first()
        )

    def create(self, **kwargs) -> MLFeedback:
        """Create a new feedback record."""
        feedback = MLFeedback(**kwargs)
        self.db.add(feedback)
        self.db.flush()
        return feedback

    def list_unused(
        self,
        organisation_id: str,
        prediction_type: str,
        limit: int = 1000,
    ) -> List[Tuple[MLFeedback, MLPrediction]]:
        """Feedback not yet consumed by training, joined to its prediction."""
        return (
            self.db.query(MLFeedback, MLPrediction)
            .join(MLPrediction, MLFeedback.prediction_id == MLPrediction.id)
            .filter(
                MLPrediction.organisation_id == organisation_id,
                MLPrediction.prediction_type == prediction_type,
                MLFeedback.used_for_training == False,
            )
            .order_by(MLFeedback.created_at, MLFeedback.id)
            .limit(limit)
            .all()
        )

    def mark_used(self, feedback_ids: Sequence[int], training_run_id: int) -> int:
        """Flag feedback rows as consumed by a training run."""
        if not feedback_ids:
            return 0
        result = self.db.execute(
            update(MLFeedback)
            .where(MLFeedback.id.in_(list(feedback_ids)))
            .where(MLFeedback.used_for_training == False)
            .values(used_for_training=True, training_batch_id=training_run_id)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        logger.debug(f"Marked {result.rowcount} feedback rows used by training run {training_run_id}")
        return result.rowcount

    def count_for_model(self, model_id: int, feedback_type: str) -> int:
        """Count feedback of one type on a model's predictions."""
        return (
            self.db.query(func.count(MLFeedback.id))
            .join(MLPrediction, MLFeedback.prediction_id == MLPrediction.id)
            .filter(
                MLPrediction.model_id == model_id,
                MLFeedback.feedback_type == feedback_type,
            )
            .scalar()
            or 0
        )


class TrainingRunRepository:
    """Repository for MLTrainingRun operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, run_id: int) -> Optional[MLTrainingRun]:
        """Get training run by ID."""
        return self.db.query(MLTrainingRun).filter(MLTrainingRun.id == run_id).first()

    def create(self, **kwargs) -> MLTrainingRun:
        """Open a new training run."""
        run = MLTrainingRun(**kwargs)
        self.db.add(run)
        self.db.flush()
        return run

    def update(self, run_id: int, **kwargs) -> MLTrainingRun:
        """Update a training run."""
        run = self.get_by_id(run_id)
        if not run:
            raise RecordNotFoundError(f"Training run {run_id} not found")

        for key, value in kwargs.items():
            if hasattr(run, key):
                setattr(run, key, value)

        self.db.flush()
        return run

    def recent_for_model(self, model_id: int, limit: int = 10) -> List[MLTrainingRun]:
        """Most recent runs for a model."""
        return (
            self.db.query(MLTrainingRun)
            .filter(MLTrainingRun.model_id == model_id)
            .order_by(MLTrainingRun.started_at.desc(), MLTrainingRun.id.desc())
            .limit(limit)
            .all()
        )

    def recent_for_organisation(self, organisation_id: str, limit: int = 20) -> List[MLTrainingRun]:
        """Most recent runs across an organisation's models."""
        return (
            self.db.query(MLTrainingRun)
            .join(MLModel, MLTrainingRun.model_id == MLModel.id)
            .filter(MLModel.organisation_id == organisation_id)
            .order_by(MLTrainingRun.started_at.desc(), MLTrainingRun.id.desc())
            .limit(limit)
            .all()
        )
