"""
Prediction service - blended breach predictions for properties.

Every prediction starts from the statistical score. When the organisation's
model is ACTIVE with usable weights, the backend chain adds an ML score and
the two are blended by confidence. Any ML failure degrades to the
statistical score; inference never raises because a backend broke.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from breachradar.config import settings
from breachradar.db.models import MLPrediction
from breachradar.db.repositories import ModelRepository, PredictionRepository
from breachradar.db.session import SessionScope, get_db_context
from breachradar.log_config import logger
from breachradar.ml.backends import BackendChain, MLResult, ModelSnapshot
from breachradar.ml.blending import BlendingEngine
from breachradar.ml.features import FeatureExtractor, to_feature_vector
from breachradar.ml.registry import ModelRegistry
from breachradar.ml.schemas import (
    ModelStatus,
    PredictionResult,
    PredictionSummary,
    PredictionType,
    RiskCategory,
)
from breachradar.scoring.protocols import PortfolioDirectory, StatisticalScorer
from breachradar.utils.cache import ModelCache
from breachradar.utils.errors import ConfigurationError, ValidationError


class PredictionService:
    """Produces, stores and lists breach predictions for an organisation's properties."""

    def __init__(
        self,
        scorer: StatisticalScorer,
        directory: Optional[PortfolioDirectory] = None,
        registry: Optional[ModelRegistry] = None,
        chain: Optional[BackendChain] = None,
        blending: Optional[BlendingEngine] = None,
        session_scope: SessionScope = get_db_context,
    ):
        self.directory = directory
        self.features = FeatureExtractor(scorer, directory)
        self.session_scope = session_scope
        self.registry = registry or ModelRegistry(session_scope)
        self.chain = chain or BackendChain()
        self.blending = blending or BlendingEngine()

    @property
    def cache(self) -> ModelCache:
        """Loaded-backend cache; the training orchestrator invalidates it after a swap."""
        return self.chain.cache

    def predict_breach(
        self,
        entity_id: str,
        organisation_id: str,
        is_test: bool = False,
    ) -> PredictionResult:
        """
        Predict breach risk for one property and persist the prediction.

        Args:
            entity_id: Property identifier
            organisation_id: Owning organisation
            is_test: Mark the stored prediction as a test prediction

        Returns:
            PredictionResult with statistical, ML and combined values
        """
        snapshot = self.registry.get_snapshot(organisation_id)

        statistical = self.features.compute_statistical_prediction(entity_id, organisation_id)
        features = self.features.extract_features(entity_id, organisation_id, risk=statistical.risk)

        ml_result = self._score_with_model(snapshot, features, entity_id)

        blend = self.blending.blend(
            statistical.score,
            statistical.confidence,
            ml_result.score if ml_result else None,
            ml_result.confidence if ml_result else None,
        )

        now = datetime.utcnow()
        with self.session_scope() as db:
            prediction = PredictionRepository(db).create(
                organisation_id=organisation_id,
                model_id=snapshot.model_id,
                property_id=entity_id,
                prediction_type=PredictionType.BREACH_PROBABILITY.value,
                statistical_score=statistical.score,
                statistical_confidence=statistical.confidence,
                ml_score=ml_result.score if ml_result else None,
                ml_confidence=ml_result.confidence if ml_result else None,
                combined_score=blend.combined_score,
                combined_confidence=blend.combined_confidence,
                source_label=blend.source_label.value,
                predicted_breach_date=blend.predicted_breach_date,
                predicted_days_to_breach=blend.predicted_days_to_breach,
                predicted_risk_category=blend.risk_category.value,
                input_features=features,
                is_test=is_test,
                expires_at=now + timedelta(hours=settings.ml_prediction_ttl_hours),
                created_at=now,
            )
            ModelRepository(db).increment_counters(snapshot.model_id, total_predictions=1)
            prediction_id = prediction.id

        logger.debug(
            f"Predicted property {entity_id}: combined={blend.combined_score} "
            f"({blend.source_label.value}, {blend.risk_category.value})"
        )

        return PredictionResult(
            prediction_id=prediction_id,
            property_id=entity_id,
            statistical_score=statistical.score,
            statistical_confidence=statistical.confidence,
            ml_score=ml_result.score if ml_result else None,
            ml_confidence=ml_result.confidence if ml_result else None,
            backend=ml_result.backend if ml_result else None,
            predicted_breach_date=blend.predicted_breach_date,
            predicted_days_to_breach=blend.predicted_days_to_breach,
            predicted_risk_category=blend.risk_category,
            input_features=features,
            combined_score=blend.combined_score,
            combined_confidence=blend.combined_confidence,
            source_label=blend.source_label,
            is_test=is_test,
        )

    def _score_with_model(self, snapshot: ModelSnapshot, features: dict, entity_id: str) -> Optional[MLResult]:
        if snapshot.status != ModelStatus.ACTIVE.value or snapshot.weights is None:
            return None

        try:
            vector = to_feature_vector(features, snapshot.config.input_features)
        except ConfigurationError as e:
            logger.error(
                f"Feature mismatch for property {entity_id} (model {snapshot.model_id}): {e.message}"
            )
            return None

        return self.chain.predict(snapshot, vector, entity_id)

    def predict_bulk(self, entity_ids: Iterable[str], organisation_id: str) -> List[PredictionResult]:
        """Predict a batch of properties. Ids beyond the bulk limit are ignored."""
        ids = list(entity_ids)
        if len(ids) > settings.ml_bulk_prediction_limit:
            logger.info(
                f"Bulk prediction for {organisation_id} truncated from {len(ids)} "
                f"to {settings.ml_bulk_prediction_limit} properties"
            )
            ids = ids[: settings.ml_bulk_prediction_limit]

        return [self.predict_breach(entity_id, organisation_id) for entity_id in ids]

    def generate_test_predictions(
        self,
        organisation_id: str,
        limit: Optional[int] = None,
    ) -> List[PredictionResult]:
        """Predict a sample of the organisation's properties, flagged as test predictions."""
        if self.directory is None:
            raise ConfigurationError("Test predictions need a portfolio directory")

        if limit is None:
            limit = settings.ml_test_prediction_default
        limit = max(0, min(limit, settings.ml_test_prediction_max))
        entity_ids = self.directory.list_entity_ids(organisation_id, limit)[:limit]
        logger.info(f"Generating {len(entity_ids)} test predictions for organisation {organisation_id}")

        return [self.predict_breach(entity_id, organisation_id, is_test=True) for entity_id in entity_ids]

    def list_predictions(
        self,
        organisation_id: str,
        entity_id: Optional[str] = None,
        risk_category: Optional[RiskCategory] = None,
        limit: int = 50,
    ) -> List[PredictionSummary]:
        """Stored predictions, newest first, re-blended from their stored scores."""
        limit = max(0, min(limit, settings.ml_list_predictions_max))
        category = risk_category.value if isinstance(risk_category, RiskCategory) else risk_category

        with self.session_scope() as db:
            predictions = PredictionRepository(db).list_for_organisation(
                organisation_id,
                property_id=entity_id,
                risk_category=category,
                limit=limit,
            )
            return [self._summarise(prediction) for prediction in predictions]

    def _summarise(self, prediction: MLPrediction) -> PredictionSummary:
        blend = self.blending.reblend_stored(
            prediction.statistical_score,
            prediction.statistical_confidence,
            prediction.ml_score,
            prediction.ml_confidence,
        )
        return PredictionSummary(
            id=prediction.id,
            property_id=prediction.property_id,
            risk_score=blend.combined_score,
            risk_category=blend.risk_category,
            breach_probability=blend.combined_score / 100,
            predicted_breach_date=prediction.predicted_breach_date,
            confidence_level=blend.combined_confidence,
            source_label=blend.source_label,
            statistical_score=prediction.statistical_score,
            statistical_confidence=prediction.statistical_confidence,
            ml_score=prediction.ml_score,
            ml_confidence=prediction.ml_confidence,
            is_test=prediction.is_test,
            created_at=prediction.created_at,
        )

    def record_outcome(
        self,
        prediction_id: int,
        organisation_id: str,
        actual_outcome: str,
        actual_breach_date: Optional[datetime] = None,
    ) -> MLPrediction:
        """
        Attach the observed outcome to a prediction.

        The prediction counts as accurate when the observed risk category
        matches the predicted one.
        """
        try:
            outcome = RiskCategory(actual_outcome)
        except ValueError:
            raise ValidationError(
                f"Unknown outcome category: {actual_outcome}",
                details={"allowed": [c.value for c in RiskCategory]},
            )

        with self.session_scope() as db:
            prediction = PredictionRepository(db).get_for_organisation(prediction_id, organisation_id)
            prediction.actual_outcome = outcome.value
            prediction.actual_breach_date = actual_breach_date
            prediction.was_accurate = outcome.value == prediction.predicted_risk_category
            db.flush()

            logger.info(
                f"Recorded outcome {outcome.value} for prediction {prediction_id} "
                f"(predicted {prediction.predicted_risk_category}, accurate={prediction.was_accurate})"
            )
            return prediction
