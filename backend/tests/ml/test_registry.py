"""
Tests for ModelRegistry against an in-memory database.
"""

import pytest
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import IntegrityError

from breachradar.db.models import MLModel
from breachradar.db.repositories import ModelRepository
from breachradar.ml.registry import ModelRegistry
from breachradar.ml.schemas import (
    DEFAULT_INPUT_FEATURES,
    ModelSettingsUpdate,
    ModelStatus,
    PredictionType,
)
from breachradar.utils.errors import ValidationError

from fakes import ORG_ID


@pytest.fixture
def registry(session_scope):
    return ModelRegistry(session_scope)


class TestGetOrCreateModel:
    """Tests for lazy model creation."""

    def test_creates_model_on_first_use(self, registry, session_scope):
        """Test a new organisation gets a TRAINING model with default config."""
        with session_scope() as db:
            model = registry.get_or_create_model(db, ORG_ID)

            assert model.status == ModelStatus.TRAINING.value
            assert model.is_active is True
            assert model.model_weights is None
            assert model.weights_revision == 0
            assert model.model_config["input_features"] == DEFAULT_INPUT_FEATURES
            assert model.learning_rate == 0.01
            assert model.epochs == 100
            assert model.batch_size == 32

    def test_returns_existing_model(self, registry, session_scope):
        """Test the same model row is reused on later calls."""
        with session_scope() as db:
            first_id = registry.get_or_create_model(db, ORG_ID).id
        with session_scope() as db:
            second_id = registry.get_or_create_model(db, ORG_ID).id

        assert first_id == second_id
        with session_scope() as db:
            assert db.query(MLModel).count() == 1

    def test_models_are_per_organisation_and_type(self, registry, session_scope):
        """Test organisations and prediction types get separate models."""
        with session_scope() as db:
            a = registry.get_or_create_model(db, "org-a")
            b = registry.get_or_create_model(db, "org-b")
            c = registry.get_or_create_model(db, "org-a", PredictionType.DAYS_TO_BREACH)

            assert len({a.id, b.id, c.id}) == 3

    def test_second_active_model_is_rejected(self, session_scope):
        """Test the database allows one active model per organisation and type."""
        with pytest.raises(IntegrityError):
            with session_scope() as db:
                repo = ModelRepository(db)
                repo.create(ORG_ID, "BREACH_PROBABILITY", model_name="a", model_config={}, is_active=True)
                repo.create(ORG_ID, "BREACH_PROBABILITY", model_name="b", model_config={}, is_active=True)

    def test_get_snapshot(self, registry):
        """Test snapshots of a fresh model carry no weights."""
        snapshot = registry.get_snapshot(ORG_ID)

        assert snapshot.status == ModelStatus.TRAINING.value
        assert snapshot.weights is None
        assert snapshot.revision == 0


class TestModelSettings:
    """Tests for model settings and configuration views."""

    def test_update_training_settings(self, registry):
        """Test only provided fields change."""
        view = registry.update_model_settings(ORG_ID, ModelSettingsUpdate(epochs=50, learning_rate=0.005))

        assert view.training.epochs == 50
        assert view.training.learning_rate == 0.005
        assert view.training.batch_size == 32

    def test_update_accepts_dict(self, registry):
        """Test a plain dict is validated into an update."""
        view = registry.update_model_settings(ORG_ID, {"batch_size": 8})

        assert view.training.batch_size == 8

    def test_invalid_values_are_rejected(self, registry):
        """Test non-positive hyperparameters fail validation."""
        with pytest.raises(SchemaValidationError):
            registry.update_model_settings(ORG_ID, {"epochs": 0})

    def test_feature_weights_must_name_declared_features(self, registry):
        """Test weights for unknown features are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            registry.update_model_settings(ORG_ID, {"feature_weights": {"expiryRiskScore": 0.5, "roofColour": 0.1}})

        assert exc_info.value.details["unknown"] == ["roofColour"]

    def test_feature_weights_update(self, registry):
        """Test feature weights are replaced and reported."""
        view = registry.update_model_settings(ORG_ID, {"feature_weights": {"expiryRiskScore": 0.5}})

        assert view.feature_weights == {"expiryRiskScore": 0.5}

    def test_get_model_config(self, registry):
        """Test the config view reports architecture and defaults."""
        view = registry.get_model_config(ORG_ID)

        assert view.model_name == "Breach Predictor v1"
        assert view.architecture.hidden_layers == [16, 8]
        assert view.weights_format is None
        assert view.feature_weights["expiryRiskScore"] == 0.25

    def test_training_config_merges_overrides(self, registry, session_scope):
        """Test defaults, stored hyperparameters and overrides are layered."""
        registry.update_model_settings(ORG_ID, {"epochs": 40})
        with session_scope() as db:
            model = registry.get_or_create_model(db, ORG_ID)
            config = ModelRegistry.training_config_for(model, {"batch_size": 4, "learning_rate": None})

        assert config.epochs == 40
        assert config.batch_size == 4
        assert config.learning_rate == 0.01
        assert config.validation_split == 0.2
