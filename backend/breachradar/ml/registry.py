"""
Model registry for per-organisation breach models.

Each (organisation, prediction type) pair has exactly one active model row.
It is created lazily on first use in TRAINING status without weights and is
updated in place by retraining rather than re-created.
"""

from typing import Any, Dict, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from breachradar.config import settings
from breachradar.db.models import MLModel
from breachradar.db.repositories import ModelRepository
from breachradar.db.session import SessionScope, get_db_context
from breachradar.log_config import logger
from breachradar.ml.backends import ModelSnapshot
from breachradar.ml.schemas import (
    DEFAULT_FEATURE_WEIGHTS,
    DEFAULT_MODEL_CONFIG,
    DEFAULT_TRAINING_CONFIG,
    ModelConfig,
    ModelConfigView,
    ModelSettingsUpdate,
    ModelStatus,
    PredictionType,
    TrainingConfig,
    WeightsFormat,
)
from breachradar.utils.errors import ValidationError


_KNOWN_FORMATS = {f.value for f in WeightsFormat}


class ModelRegistry:
    """Creates, reads and configures the active model per organisation."""

    def __init__(self, session_scope: SessionScope = get_db_context):
        self.session_scope = session_scope

    def get_or_create_model(
        self,
        db: Session,
        organisation_id: str,
        prediction_type: PredictionType = PredictionType.BREACH_PROBABILITY,
    ) -> MLModel:
        """
        Return the active model, creating it on first use.

        Runs inside the caller's session. A concurrent creator losing the race
        on the unique active-model index re-reads the winner's row.
        """
        repo = ModelRepository(db)
        model = repo.get_active(organisation_id, prediction_type.value)
        if model is not None:
            return model

        try:
            with db.begin_nested():
                model = repo.create(
                    organisation_id,
                    prediction_type.value,
                    model_name=settings.ml_model_name,
                    model_version=1,
                    status=ModelStatus.TRAINING.value,
                    is_active=True,
                    model_config=DEFAULT_MODEL_CONFIG.model_dump(),
                    feature_weights=dict(DEFAULT_FEATURE_WEIGHTS),
                    learning_rate=DEFAULT_TRAINING_CONFIG.learning_rate,
                    epochs=DEFAULT_TRAINING_CONFIG.epochs,
                    batch_size=DEFAULT_TRAINING_CONFIG.batch_size,
                )
        except IntegrityError:
            logger.info(
                f"Model for {organisation_id}/{prediction_type.value} created concurrently, re-reading"
            )
            model = repo.get_active(organisation_id, prediction_type.value)
            if model is None:
                raise
            return model

        logger.info(
            f"Created {prediction_type.value} model {model.id} for organisation {organisation_id}"
        )
        return model

    def get_snapshot(
        self,
        organisation_id: str,
        prediction_type: PredictionType = PredictionType.BREACH_PROBABILITY,
    ) -> ModelSnapshot:
        """Immutable snapshot of the active model, creating it if needed."""
        with self.session_scope() as db:
            model = self.get_or_create_model(db, organisation_id, prediction_type)
            return ModelSnapshot.from_record(model)

    def update_model_settings(
        self,
        organisation_id: str,
        update: Union[ModelSettingsUpdate, Dict[str, Any]],
        prediction_type: PredictionType = PredictionType.BREACH_PROBABILITY,
    ) -> ModelConfigView:
        """
        Change a model's training hyperparameters or feature weights.

        Only fields present in the update are written. Feature weights must
        name features the model declares.
        """
        if not isinstance(update, ModelSettingsUpdate):
            update = ModelSettingsUpdate.model_validate(update)
        changes = update.model_dump(exclude_none=True)

        with self.session_scope() as db:
            model = self.get_or_create_model(db, organisation_id, prediction_type)

            if "feature_weights" in changes:
                declared = set(ModelConfig.model_validate(model.model_config).input_features)
                unknown = sorted(set(changes["feature_weights"]) - declared)
                if unknown:
                    raise ValidationError(
                        "Feature weights reference unknown features",
                        details={"unknown": unknown},
                    )

            if changes:
                model = ModelRepository(db).update(model.id, **changes)
                logger.info(f"Updated settings for model {model.id}: {sorted(changes)}")
            return self._config_view(model)

    def get_model_config(
        self,
        organisation_id: str,
        prediction_type: PredictionType = PredictionType.BREACH_PROBABILITY,
    ) -> ModelConfigView:
        """Architecture, training settings and feature weights for a model."""
        with self.session_scope() as db:
            model = self.get_or_create_model(db, organisation_id, prediction_type)
            return self._config_view(model)

    @staticmethod
    def training_config_for(model: MLModel, overrides: Optional[Dict[str, Any]] = None) -> TrainingConfig:
        """Merge defaults, the model's stored hyperparameters and per-run overrides."""
        merged = DEFAULT_TRAINING_CONFIG.model_dump()
        for key in ("learning_rate", "epochs", "batch_size"):
            value = getattr(model, key)
            if value is not None:
                merged[key] = value
        if overrides:
            merged.update({k: v for k, v in overrides.items() if v is not None})
        return TrainingConfig.model_validate(merged)

    @staticmethod
    def _config_view(model: MLModel) -> ModelConfigView:
        return ModelConfigView(
            model_id=model.id,
            model_name=model.model_name,
            model_version=model.model_version,
            status=model.status,
            architecture=ModelConfig.model_validate(model.model_config),
            training=TrainingConfig(
                learning_rate=model.learning_rate,
                epochs=model.epochs,
                batch_size=model.batch_size,
            ),
            feature_weights=model.feature_weights or {},
            weights_format=model.weights_format if model.weights_format in _KNOWN_FORMATS else None,
            last_trained_at=model.last_trained_at,
        )
