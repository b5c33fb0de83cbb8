"""
Feature extraction for breach prediction models.

Turns a property's statistical risk breakdown and recent history into the
fixed-order, roughly [0, 1] normalised feature vector the models consume.
"""

from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from breachradar.log_config import logger
from breachradar.scoring.protocols import (
    EntityHistory,
    PortfolioDirectory,
    RiskBreakdown,
    StatisticalScorer,
)
from breachradar.utils.errors import FeatureMismatchError


DEFAULT_DAYS_SINCE_LAST_CERT = 365
DEFAULT_ASSET_AGE = 20
OPEN_ACTIONS_CAP = 10
HISTORICAL_BREACHES_CAP = 10


@dataclass
class StatisticalPrediction:
    """Rule-based score with its heuristic confidence."""
    score: int
    confidence: int
    risk: RiskBreakdown


def statistical_confidence(risk: RiskBreakdown) -> int:
    """
    Heuristic confidence in a statistical score.

    Certificate expiry evidence is the strongest signal, then open defects.
    A score driven only by missing coverage streams is the least certain.
    """
    factors = risk.factor_breakdown
    if factors.expiring_certificates > 0 or factors.overdue_certificates > 0:
        return 95
    if factors.open_defects > 0:
        return 90
    if factors.missing_streams:
        return 80
    return 85


class FeatureExtractor:
    """Extracts normalised model features for a property."""

    def __init__(
        self,
        scorer: StatisticalScorer,
        directory: Optional[PortfolioDirectory] = None,
        today: Callable[[], date] = date.today,
    ):
        self.scorer = scorer
        self.directory = directory
        self._today = today

    def compute_statistical_prediction(self, entity_id: str, organisation_id: str) -> StatisticalPrediction:
        """Fetch the statistical breakdown and derive score and confidence."""
        risk = self.scorer.compute_statistical_score(entity_id, organisation_id)
        return StatisticalPrediction(
            score=int(risk.overall_score),
            confidence=statistical_confidence(risk),
            risk=risk,
        )

    def extract_features(
        self,
        entity_id: str,
        organisation_id: str,
        risk: Optional[RiskBreakdown] = None,
    ) -> Dict[str, float]:
        """
        Build the feature mapping for a property.

        Args:
            entity_id: Property identifier
            organisation_id: Owning organisation, used when the breakdown must be fetched
            risk: Pre-computed statistical breakdown to reuse

        Returns:
            Mapping of feature name to value in DEFAULT_INPUT_FEATURES order
        """
        if risk is None:
            risk = self.scorer.compute_statistical_score(entity_id, organisation_id)

        history = self._load_history(entity_id)
        factors = risk.factor_breakdown

        days_since_last_cert = DEFAULT_DAYS_SINCE_LAST_CERT
        if history.last_certificate_issued is not None:
            days_since_last_cert = max(0, (self._today() - history.last_certificate_issued).days)

        asset_age = factors.asset_age or DEFAULT_ASSET_AGE

        return {
            "expiryRiskScore": risk.expiry_risk_score / 100,
            "defectRiskScore": risk.defect_risk_score / 100,
            "assetProfileRiskScore": risk.asset_profile_risk_score / 100,
            "coverageGapRiskScore": risk.coverage_gap_risk_score / 100,
            "externalFactorRiskScore": risk.external_factor_risk_score / 100,
            "daysSinceLastCert": min(days_since_last_cert / 365, 1.0),
            "openActionsCount": min(history.open_actions / OPEN_ACTIONS_CAP, 1.0),
            "historicalBreachCount": min(history.historical_breaches / HISTORICAL_BREACHES_CAP, 1.0),
            "propertyAge": asset_age / 100,
            "isHRB": 1.0 if factors.is_hrb else 0.0,
            "hasVulnerableOccupants": 1.0 if factors.has_vulnerable_occupants else 0.0,
        }

    def _load_history(self, entity_id: str) -> EntityHistory:
        if self.directory is None:
            return EntityHistory()
        history = self.directory.get_entity_history(entity_id)
        if history is None:
            logger.debug(f"No history for property {entity_id}, using feature defaults")
            return EntityHistory()
        return history


def to_feature_vector(features: Mapping[str, float], feature_names: Sequence[str]) -> List[float]:
    """
    Order features into a model input vector.

    The extracted names must equal the model's declared feature list, in the
    same order. Anything else is a configuration error.
    """
    extracted = list(features.keys())
    if extracted != list(feature_names):
        missing = [name for name in feature_names if name not in features]
        unexpected = [name for name in extracted if name not in feature_names]
        raise FeatureMismatchError(
            "Extracted features do not match the model's feature list",
            details={
                "expected": list(feature_names),
                "missing": missing,
                "unexpected": unexpected,
            },
        )
    return [float(features[name]) for name in feature_names]


def vector_from_snapshot(snapshot: Mapping[str, float], feature_names: Sequence[str]) -> List[float]:
    """
    Rebuild a model input vector from a stored feature snapshot.

    Stored JSON may not preserve key order, so only the set of names is
    checked before reordering.
    """
    if set(snapshot.keys()) != set(feature_names):
        missing = [name for name in feature_names if name not in snapshot]
        raise FeatureMismatchError(
            "Stored feature snapshot does not match the model's feature list",
            details={"missing": missing, "expected": list(feature_names)},
        )
    return [float(snapshot[name]) for name in feature_names]
