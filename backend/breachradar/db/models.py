"""
SQLAlchemy 2.0 database models for Breach Radar.

Tables backing the breach prediction engine: the per-organisation model
registry, the prediction audit log, reviewer feedback, and training runs.
Organisation, property and certificate identifiers belong to the wider
compliance platform and are stored as opaque strings.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class MLModel(Base):
    """Learned breach model for one organisation and prediction type.

    A single row is created per (organisation, prediction type) and updated in
    place by each successful retrain. Serialized weights are tagged with the
    format of the backend that produced them.
    """

    __tablename__ = "ml_models"
    __table_args__ = (
        Index(
            "uq_ml_models_active_org_type",
            "organisation_id",
            "prediction_type",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("ix_ml_models_org_type_active", "organisation_id", "prediction_type", "is_active"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    organisation_id = Column(String, nullable=False, index=True)
    model_name = Column(String, nullable=False)
    model_version = Column(Integer, nullable=False, default=1)
    prediction_type = Column(String, nullable=False, default="BREACH_PROBABILITY")  # BREACH_PROBABILITY, DAYS_TO_BREACH, RISK_CATEGORY
    status = Column(String, nullable=False, default="TRAINING")  # TRAINING, ACTIVE, INACTIVE, FAILED
    is_active = Column(Boolean, nullable=False, default=True)

    model_config = Column(JSON, nullable=False)  # input_features, hidden_layers, output_size, activation
    model_weights = Column(JSON, nullable=True)
    weights_format = Column(String, nullable=True)  # torch_tensors_v1 | dense_layers_v1
    weights_revision = Column(Integer, nullable=False, default=0)
    feature_weights = Column(JSON, nullable=True)

    learning_rate = Column(Float, nullable=False, default=0.01)
    epochs = Column(Integer, nullable=False, default=100)
    batch_size = Column(Integer, nullable=False, default=32)

    training_accuracy = Column(Float, nullable=True)  # percent, 0-100
    training_loss = Column(Float, nullable=True)
    validation_accuracy = Column(Float, nullable=True)
    validation_loss = Column(Float, nullable=True)
    training_progress = Column(Integer, nullable=False, default=0)
    training_samples = Column(Integer, nullable=False, default=0)

    total_predictions = Column(Integer, nullable=False, default=0)
    correct_predictions = Column(Integer, nullable=False, default=0)
    feedback_count = Column(Integer, nullable=False, default=0)

    last_trained_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return (
            f"<MLModel(id={self.id}, organisation_id={self.organisation_id}, "
            f"type={self.prediction_type}, status={self.status})>"
        )


class MLPrediction(Base):
    """Audit record of one breach prediction.

    Captures the statistical and ML inputs, the blended output and the exact
    feature snapshot. Only the observed-outcome columns are written after
    creation.
    """

    __tablename__ = "ml_predictions"
    __table_args__ = (
        Index("ix_ml_predictions_org_created", "organisation_id", "created_at"),
        Index("ix_ml_predictions_property", "property_id"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    organisation_id = Column(String, nullable=False, index=True)
    model_id = Column(Integer, ForeignKey("ml_models.id"), nullable=True, index=True)
    property_id = Column(String, nullable=True)
    certificate_id = Column(String, nullable=True)
    prediction_type = Column(String, nullable=False, default="BREACH_PROBABILITY")

    statistical_score = Column(Integer, nullable=True)
    statistical_confidence = Column(Integer, nullable=True)
    ml_score = Column(Integer, nullable=True)
    ml_confidence = Column(Integer, nullable=True)
    combined_score = Column(Integer, nullable=True)
    combined_confidence = Column(Integer, nullable=True)
    source_label = Column(String, nullable=False, default="Statistical")  # Statistical | ML-Enhanced

    predicted_breach_date = Column(DateTime, nullable=True)
    predicted_days_to_breach = Column(Integer, nullable=True)
    predicted_risk_category = Column(String, nullable=True)  # CRITICAL, HIGH, MEDIUM, LOW

    input_features = Column(JSON, nullable=True)
    is_test = Column(Boolean, nullable=False, default=False)

    actual_outcome = Column(String, nullable=True)
    actual_breach_date = Column(DateTime, nullable=True)
    was_accurate = Column(Boolean, nullable=True)

    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    model = relationship("MLModel", backref="predictions")

    def __repr__(self) -> str:
        return (
            f"<MLPrediction(id={self.id}, property_id={self.property_id}, "
            f"score={self.combined_score}, category={self.predicted_risk_category})>"
        )


class MLFeedback(Base):
    """Reviewer feedback on a prediction, consumed once by a training run."""

    __tablename__ = "ml_feedback"
    __table_args__ = (
        UniqueConstraint("prediction_id", "fingerprint", name="uq_ml_feedback_prediction_fingerprint"),
        Index("ix_ml_feedback_org_unused", "organisation_id", "used_for_training"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    organisation_id = Column(String, nullable=False, index=True)
    prediction_id = Column(Integer, ForeignKey("ml_predictions.id"), nullable=False, index=True)
    feedback_type = Column(String, nullable=False)  # CORRECT, INCORRECT, PARTIALLY_CORRECT
    corrected_score = Column(Integer, nullable=True)
    corrected_category = Column(String, nullable=True)
    feedback_notes = Column(Text, nullable=True)
    submitted_by_id = Column(String, nullable=True)
    submitted_by_name = Column(String, nullable=True)
    fingerprint = Column(String(64), nullable=False)  # sha256 of the submitted fields

    used_for_training = Column(Boolean, nullable=False, default=False)
    training_batch_id = Column(Integer, ForeignKey("ml_training_runs.id"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    prediction = relationship("MLPrediction", backref="feedback")

    def __repr__(self) -> str:
        return (
            f"<MLFeedback(id={self.id}, prediction_id={self.prediction_id}, "
            f"type={self.feedback_type}, used={self.used_for_training})>"
        )


class MLTrainingRun(Base):
    """One retraining attempt with live progress and final metrics."""

    __tablename__ = "ml_training_runs"
    __table_args__ = (
        Index("ix_ml_training_runs_model_started", "model_id", "started_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    organisation_id = Column(String, nullable=False, index=True)
    model_id = Column(Integer, ForeignKey("ml_models.id"), nullable=False)
    status = Column(String, nullable=False, default="TRAINING")  # TRAINING -> ACTIVE | FAILED
    backend = Column(String, nullable=True)  # backend that produced the weights

    learning_rate = Column(Float, nullable=False)
    epochs = Column(Integer, nullable=False)
    batch_size = Column(Integer, nullable=False)
    validation_split = Column(Float, nullable=False, default=0.2)

    current_epoch = Column(Integer, nullable=False, default=0)
    training_progress = Column(Integer, nullable=False, default=0)  # percent
    training_samples = Column(Integer, nullable=True)
    validation_samples = Column(Integer, nullable=True)

    final_accuracy = Column(Float, nullable=True)
    final_loss = Column(Float, nullable=True)
    epoch_history = Column(JSON, nullable=True)  # [{epoch, loss, accuracy, val_loss?, val_accuracy?}]

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    model = relationship("MLModel", backref="training_runs")

    def __repr__(self) -> str:
        return f"<MLTrainingRun(id={self.id}, model_id={self.model_id}, status={self.status})>"
