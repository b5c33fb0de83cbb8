"""
Pydantic schemas for breach model configuration, training and predictions.

Also holds the enumerations persisted as strings on the ORM models and the
default model, training and feature-weight configuration.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PredictionType(str, Enum):
    BREACH_PROBABILITY = "BREACH_PROBABILITY"
    DAYS_TO_BREACH = "DAYS_TO_BREACH"
    RISK_CATEGORY = "RISK_CATEGORY"


class ModelStatus(str, Enum):
    TRAINING = "TRAINING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    FAILED = "FAILED"


class FeedbackType(str, Enum):
    CORRECT = "CORRECT"
    INCORRECT = "INCORRECT"
    PARTIALLY_CORRECT = "PARTIALLY_CORRECT"


class RiskCategory(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class SourceLabel(str, Enum):
    STATISTICAL = "Statistical"
    ML_ENHANCED = "ML-Enhanced"


class WeightsFormat(str, Enum):
    """Tag persisted next to serialized weights naming the producing backend."""
    TORCH_TENSORS_V1 = "torch_tensors_v1"
    DENSE_LAYERS_V1 = "dense_layers_v1"


DEFAULT_INPUT_FEATURES: List[str] = [
    "expiryRiskScore",
    "defectRiskScore",
    "assetProfileRiskScore",
    "coverageGapRiskScore",
    "externalFactorRiskScore",
    "daysSinceLastCert",
    "openActionsCount",
    "historicalBreachCount",
    "propertyAge",
    "isHRB",
    "hasVulnerableOccupants",
]


class ModelConfig(BaseModel):
    """Architecture of a breach model: feature order and dense layer sizes."""

    input_features: List[str] = Field(default_factory=lambda: list(DEFAULT_INPUT_FEATURES))
    hidden_layers: List[int] = Field(default_factory=lambda: [16, 8])
    output_size: int = 1
    activation: str = "sigmoid"

    @property
    def layer_sizes(self) -> List[int]:
        """Full layer sizes including input and output."""
        return [len(self.input_features), *self.hidden_layers, self.output_size]


class TrainingConfig(BaseModel):
    """Hyperparameters for one training run."""

    learning_rate: float = Field(default=0.01, gt=0)
    epochs: int = Field(default=100, ge=1)
    batch_size: int = Field(default=32, ge=1)
    validation_split: float = Field(default=0.2, ge=0, lt=1)


DEFAULT_MODEL_CONFIG = ModelConfig()
DEFAULT_TRAINING_CONFIG = TrainingConfig()

DEFAULT_FEATURE_WEIGHTS: Dict[str, float] = {
    "expiryRiskScore": 0.25,
    "defectRiskScore": 0.20,
    "assetProfileRiskScore": 0.15,
    "coverageGapRiskScore": 0.15,
    "externalFactorRiskScore": 0.10,
    "daysSinceLastCert": 0.05,
    "openActionsCount": 0.05,
    "historicalBreachCount": 0.05,
}


class TrainingExample(BaseModel):
    """One feature vector with its target score on the 0-100 scale."""

    features: List[float]
    target: float


class EpochRecord(BaseModel):
    epoch: int
    loss: float
    accuracy: float
    val_loss: Optional[float] = None
    val_accuracy: Optional[float] = None


class TrainingResult(BaseModel):
    """Result returned by a backend's train call. Accuracies are percentages."""

    final_loss: float
    final_accuracy: float
    epoch_history: List[EpochRecord] = Field(default_factory=list)
    validation_loss: Optional[float] = None
    validation_accuracy: Optional[float] = None
    training_samples: int = 0
    validation_samples: int = 0


class TrainingOutcome(BaseModel):
    """Result of a completed training run."""

    model_config = ConfigDict(protected_namespaces=())

    success: bool
    model_id: int
    run_id: int
    accuracy: float
    epoch_history: List[EpochRecord] = Field(default_factory=list)
    backend: Optional[str] = None


class BlendResult(BaseModel):
    combined_score: int
    combined_confidence: int
    source_label: SourceLabel
    risk_category: RiskCategory
    predicted_days_to_breach: Optional[int] = None
    predicted_breach_date: Optional[datetime] = None


class PredictionResult(BaseModel):
    """Blended breach prediction for one property."""

    prediction_id: Optional[int] = None
    property_id: str
    prediction_type: PredictionType = PredictionType.BREACH_PROBABILITY
    statistical_score: int
    statistical_confidence: int
    ml_score: Optional[int] = None
    ml_confidence: Optional[int] = None
    backend: Optional[str] = None
    predicted_breach_date: Optional[datetime] = None
    predicted_days_to_breach: Optional[int] = None
    predicted_risk_category: RiskCategory
    input_features: Dict[str, float]
    combined_score: int
    combined_confidence: int
    source_label: SourceLabel
    is_test: bool = False


class PredictionSummary(BaseModel):
    """Stored prediction re-blended for listings."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    property_id: Optional[str] = None
    risk_score: int
    risk_category: RiskCategory
    breach_probability: float
    predicted_breach_date: Optional[datetime] = None
    confidence_level: int
    source_label: SourceLabel
    statistical_score: Optional[int] = None
    statistical_confidence: Optional[int] = None
    ml_score: Optional[int] = None
    ml_confidence: Optional[int] = None
    is_test: bool = False
    created_at: datetime


class TrainingRunSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    id: int
    model_id: int
    status: ModelStatus
    backend: Optional[str] = None
    learning_rate: float
    epochs: int
    batch_size: int
    current_epoch: int = 0
    training_progress: int = 0
    training_samples: Optional[int] = None
    validation_samples: Optional[int] = None
    final_accuracy: Optional[float] = None
    final_loss: Optional[float] = None
    epoch_history: Optional[List[EpochRecord]] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class ModelSummary(BaseModel):
    accuracy: Optional[float] = None  # fraction, 0-1
    total_predictions: int = 0
    correct_predictions: int = 0
    training_accuracy: Optional[float] = None
    status: ModelStatus


class FeedbackStats(BaseModel):
    total: int = 0
    correct: int = 0
    incorrect: int = 0


class ModelMetrics(BaseModel):
    model: Optional[ModelSummary] = None
    feedback_stats: FeedbackStats = Field(default_factory=FeedbackStats)
    training_ready: bool = False
    recent_training_runs: List[TrainingRunSummary] = Field(default_factory=list)


class ModelSettingsUpdate(BaseModel):
    """Partial update of a model's training settings."""

    learning_rate: Optional[float] = Field(default=None, gt=0)
    epochs: Optional[int] = Field(default=None, ge=1)
    batch_size: Optional[int] = Field(default=None, ge=1)
    feature_weights: Optional[Dict[str, float]] = None


class ModelConfigView(BaseModel):
    """Configuration exposed for an organisation's model."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: int
    model_name: str
    model_version: int
    status: ModelStatus
    architecture: ModelConfig
    training: TrainingConfig
    feature_weights: Dict[str, float]
    weights_format: Optional[WeightsFormat] = None
    last_trained_at: Optional[datetime] = None


class SerializedWeights(BaseModel):
    """Backend weights with the format tag they must be read back with."""

    format: WeightsFormat
    payload: Any
