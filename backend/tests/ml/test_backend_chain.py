"""
Unit tests for the backend fallback chain and model snapshots.

Tests:
- Strategy selection by weights format tag
- Fallback on exceptions, load failures and timeouts
- Loaded-backend caching by weights revision
- Reading tagged weights from model rows
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

from breachradar.ml.backends import (
    BackendChain,
    ModelSnapshot,
    default_backend_strategies,
    read_weights,
)
from breachradar.ml.schemas import ModelConfig, SerializedWeights, WeightsFormat
from breachradar.utils.cache import ModelCache

from fakes import FakeBackend, fake_strategy


FEATURES = [0.5] * 11


def snapshot(weights_format=WeightsFormat.TORCH_TENSORS_V1, revision=1, training_accuracy=80.0, feedback_count=3):
    return ModelSnapshot(
        model_id=7,
        revision=revision,
        status="ACTIVE",
        config=ModelConfig(),
        weights=SerializedWeights(format=weights_format, payload={"stub": True}) if weights_format else None,
        training_accuracy=training_accuracy,
        feedback_count=feedback_count,
    )


class SlowBackend(FakeBackend):
    """Backend whose predict blocks until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.release = threading.Event()

    def predict(self, features):
        self.release.wait(timeout=2)
        return super().predict(features)


class TestDefaultStrategies:
    """Tests for the default strategy order."""

    def test_tensor_then_dense(self):
        """Test the tensor backend is tried first under a timeout."""
        strategies = default_backend_strategies()

        assert [s.name for s in strategies] == ["tensor", "dense"]
        assert [s.base_confidence for s in strategies] == [40, 30]
        assert strategies[0].timeout_seconds is not None
        assert strategies[0].accepts(WeightsFormat.TORCH_TENSORS_V1)
        assert not strategies[0].accepts(WeightsFormat.DENSE_LAYERS_V1)
        assert strategies[1].accepts(WeightsFormat.DENSE_LAYERS_V1)

    def test_unusable_tensor_weights_do_not_reach_dense(self):
        """Test a tensor model the tensor backend can't serve yields no ML result."""
        chain = BackendChain(strategies=default_backend_strategies(), cache=ModelCache())
        try:
            result = chain.predict(snapshot(WeightsFormat.TORCH_TENSORS_V1), FEATURES, "prop-1")
        finally:
            chain.shutdown()

        assert result is None


class TestBackendChain:
    """Tests for BackendChain.predict."""

    def test_tensor_weights_use_tensor_backend(self, chain, tensor_backend, dense_backend):
        """Test a tensor-tagged model is scored by the tensor backend."""
        result = chain.predict(snapshot(), FEATURES, "prop-1")

        assert result.backend == "tensor"
        assert result.score == 60
        assert result.confidence == 78
        assert dense_backend.predict_calls == 0

    def test_dense_weights_skip_tensor_backend(self, chain, tensor_backend, dense_backend):
        """Test a dense-tagged model goes straight to the dense backend."""
        result = chain.predict(snapshot(WeightsFormat.DENSE_LAYERS_V1), FEATURES, "prop-1")

        assert result.backend == "dense"
        assert result.score == 40
        assert result.confidence == 68
        assert tensor_backend.predict_calls == 0

    def test_no_weights_returns_none(self, chain):
        """Test a model without weights is not scored."""
        assert chain.predict(snapshot(weights_format=None), FEATURES, "prop-1") is None

    def test_primary_failure_falls_back(self):
        """Test an exception in the primary backend uses the fallback's score."""
        primary = FakeBackend("tensor", WeightsFormat.TORCH_TENSORS_V1, fail_predict=True)
        fallback = FakeBackend("dense", WeightsFormat.TORCH_TENSORS_V1, score=44.4)
        chain = BackendChain(
            strategies=[fake_strategy(primary, 40), fake_strategy(fallback, 30)],
            cache=ModelCache(),
            executor=MagicMock(),
        )

        result = chain.predict(snapshot(), FEATURES, "prop-1")

        assert result.backend == "dense"
        assert result.score == 44
        assert result.confidence == 68

    def test_all_backends_failing_returns_none(self):
        """Test no exception escapes when every backend fails."""
        primary = FakeBackend("tensor", WeightsFormat.TORCH_TENSORS_V1, fail_predict=True)
        fallback = FakeBackend("dense", WeightsFormat.TORCH_TENSORS_V1, fail_predict=True)
        chain = BackendChain(
            strategies=[fake_strategy(primary), fake_strategy(fallback)],
            cache=ModelCache(),
            executor=MagicMock(),
        )

        assert chain.predict(snapshot(), FEATURES, "prop-1") is None

    def test_failed_backend_is_evicted_from_cache(self):
        """Test a backend that raised is not served from the cache again."""
        primary = FakeBackend("tensor", WeightsFormat.TORCH_TENSORS_V1, fail_predict=True)
        cache = ModelCache()
        chain = BackendChain(strategies=[fake_strategy(primary)], cache=cache, executor=MagicMock())

        chain.predict(snapshot(), FEATURES, "prop-1")

        assert cache.get(7, 1, "tensor") is None

    def test_load_failure_moves_on(self):
        """Test weights a backend cannot load fall through to the next strategy."""
        primary = FakeBackend("tensor", WeightsFormat.TORCH_TENSORS_V1, fail_load=True)
        fallback = FakeBackend("dense", WeightsFormat.TORCH_TENSORS_V1, score=55)
        chain = BackendChain(
            strategies=[fake_strategy(primary), fake_strategy(fallback, 30)],
            cache=ModelCache(),
            executor=MagicMock(),
        )

        result = chain.predict(snapshot(), FEATURES, "prop-1")

        assert result.backend == "dense"
        assert primary.predict_calls == 0

    def test_timeout_is_treated_as_failure(self):
        """Test a primary backend exceeding its timeout falls back."""
        primary = SlowBackend("tensor", WeightsFormat.TORCH_TENSORS_V1, score=99)
        fallback = FakeBackend("dense", WeightsFormat.TORCH_TENSORS_V1, score=41)
        executor = ThreadPoolExecutor(max_workers=1)
        chain = BackendChain(
            strategies=[fake_strategy(primary, 40, timeout_seconds=0.05), fake_strategy(fallback, 30)],
            cache=ModelCache(),
            executor=executor,
        )

        try:
            result = chain.predict(snapshot(), FEATURES, "prop-1")
        finally:
            primary.release.set()
            executor.shutdown(wait=True)

        assert result.backend == "dense"
        assert result.score == 41

    def test_loaded_backend_is_cached(self):
        """Test the backend is built and loaded once per weights revision."""
        backend = FakeBackend("tensor", WeightsFormat.TORCH_TENSORS_V1, score=60)
        factory = MagicMock(return_value=backend)
        strategy = fake_strategy(backend)
        strategy = type(strategy)(
            name=strategy.name,
            factory=factory,
            weights_formats=strategy.weights_formats,
            base_confidence=strategy.base_confidence,
        )
        chain = BackendChain(strategies=[strategy], cache=ModelCache(), executor=MagicMock())

        chain.predict(snapshot(revision=1), FEATURES, "prop-1")
        chain.predict(snapshot(revision=1), FEATURES, "prop-2")
        assert factory.call_count == 1

        chain.predict(snapshot(revision=2), FEATURES, "prop-3")
        assert factory.call_count == 2

    def test_prediction_is_deterministic(self, chain):
        """Test identical snapshots and features give identical results."""
        first = chain.predict(snapshot(), FEATURES, "prop-1")
        second = chain.predict(snapshot(), FEATURES, "prop-1")

        assert first == second


class TestReadWeights:
    """Tests for reading tagged weights off model rows."""

    def make_model(self, weights, weights_format):
        model = MagicMock()
        model.id = 3
        model.model_weights = weights
        model.weights_format = weights_format
        return model

    def test_tagged_weights(self):
        """Test tagged weights are wrapped with their format."""
        weights = read_weights(self.make_model({"layers": []}, "dense_layers_v1"))

        assert weights.format == WeightsFormat.DENSE_LAYERS_V1
        assert weights.payload == {"layers": []}

    def test_untagged_weights_are_ignored(self):
        """Test legacy weights without a tag mean no usable model."""
        assert read_weights(self.make_model({"layers": []}, None)) is None

    def test_unknown_tag_is_ignored(self):
        """Test an unrecognised tag means no usable model."""
        assert read_weights(self.make_model([{"data": [], "shape": []}], "tfjs_v0")) is None

    def test_missing_weights(self):
        """Test a model without weights has none to read."""
        assert read_weights(self.make_model(None, "torch_tensors_v1")) is None

    def test_snapshot_from_record(self):
        """Test snapshots copy the fields inference needs."""
        model = self.make_model([{"data": [1.0], "shape": [1]}], "torch_tensors_v1")
        model.weights_revision = 4
        model.status = "ACTIVE"
        model.model_config = ModelConfig().model_dump()
        model.training_accuracy = 72.0
        model.feedback_count = 5
        model.organisation_id = "org-1"

        snap = ModelSnapshot.from_record(model)

        assert snap.model_id == 3
        assert snap.revision == 4
        assert snap.weights.format == WeightsFormat.TORCH_TENSORS_V1
        assert snap.config.input_features == ModelConfig().input_features
        assert snap.feedback_count == 5
