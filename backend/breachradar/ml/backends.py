"""
Backend strategies and the inference fallback chain.

Backends are tried in order (tensor first, then dense). The first one that
loads the model's weights and returns a score wins. Failures, timeouts and
unreadable weights move on to the next strategy. If every strategy fails the
chain returns None and the caller serves the statistical score alone.
"""

import threading
from concurrent.futures import Executor, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

from breachradar.config import settings
from breachradar.db.models import MLModel
from breachradar.log_config import logger
from breachradar.ml.blending import ml_confidence, round_half_up
from breachradar.ml.models.dense import DenseBreachNetwork
from breachradar.ml.models.neural import TensorBreachModel
from breachradar.ml.schemas import (
    ModelConfig,
    SerializedWeights,
    TrainingConfig,
    TrainingExample,
    TrainingResult,
    WeightsFormat,
)
from breachradar.utils.cache import ModelCache
from breachradar.utils.errors import BackendTimeoutError


class ModelBackend(Protocol):
    """Interface shared by every inference/training backend."""

    def load_weights(self, serialized: SerializedWeights) -> bool:
        ...

    def predict(self, features: Sequence[float]) -> float:
        ...

    def train(
        self,
        examples: Sequence[TrainingExample],
        config: TrainingConfig,
        on_progress: Optional[Callable[[int, float, float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        progress_interval: int = 10,
    ) -> TrainingResult:
        ...

    def export_weights(self) -> SerializedWeights:
        ...


@dataclass(frozen=True)
class BackendStrategy:
    """A named backend with the weight formats it reads and its confidence base."""
    name: str
    factory: Callable[[ModelConfig], Any]
    weights_formats: Tuple[WeightsFormat, ...]
    base_confidence: int
    timeout_seconds: Optional[float] = None

    def accepts(self, weights_format: WeightsFormat) -> bool:
        return weights_format in self.weights_formats


def default_backend_strategies() -> List[BackendStrategy]:
    """
    Tensor backend under a timeout, then the dense fallback.

    Each strategy reads only its own weights format, so a model holding
    tensor weights never reaches the dense backend: if tensor inference
    fails the chain returns None and the prediction is Statistical. The
    dense backend scores models whose weights were trained by it.
    """
    return [
        BackendStrategy(
            name=TensorBreachModel.name,
            factory=lambda config: TensorBreachModel(config),
            weights_formats=(WeightsFormat.TORCH_TENSORS_V1,),
            base_confidence=40,
            timeout_seconds=settings.ml_inference_timeout_seconds,
        ),
        BackendStrategy(
            name=DenseBreachNetwork.name,
            factory=lambda config: DenseBreachNetwork(config),
            weights_formats=(WeightsFormat.DENSE_LAYERS_V1,),
            base_confidence=30,
        ),
    ]


@dataclass(frozen=True)
class ModelSnapshot:
    """Immutable view of a model row taken for one inference call."""
    model_id: int
    revision: int
    status: str
    config: ModelConfig
    weights: Optional[SerializedWeights]
    training_accuracy: Optional[float] = None
    feedback_count: int = 0
    organisation_id: Optional[str] = None

    @classmethod
    def from_record(cls, model: MLModel) -> "ModelSnapshot":
        return cls(
            model_id=model.id,
            revision=model.weights_revision or 0,
            status=model.status,
            config=ModelConfig.model_validate(model.model_config or {}),
            weights=read_weights(model),
            training_accuracy=model.training_accuracy,
            feedback_count=model.feedback_count or 0,
            organisation_id=model.organisation_id,
        )


def read_weights(model: MLModel) -> Optional[SerializedWeights]:
    """
    Return the model's weights with their format tag.

    Weights without a tag, or with an unknown one, are treated as absent.
    """
    if model.model_weights is None:
        return None
    if model.weights_format is None:
        logger.warning(f"Model {model.id} has untagged weights; ignoring them")
        return None
    try:
        weights_format = WeightsFormat(model.weights_format)
    except ValueError:
        logger.warning(f"Model {model.id} has unknown weights format {model.weights_format!r}; ignoring them")
        return None
    return SerializedWeights(format=weights_format, payload=model.model_weights)


@dataclass
class MLResult:
    score: int
    confidence: int
    backend: str


@dataclass
class BackendChain:
    """Ordered fallback over backend strategies with cached, timed inference."""
    strategies: List[BackendStrategy] = field(default_factory=default_backend_strategies)
    cache: ModelCache = field(default_factory=ModelCache)
    executor: Optional[Executor] = None

    def __post_init__(self):
        if self.executor is None:
            self.executor = ThreadPoolExecutor(
                max_workers=settings.ml_inference_workers,
                thread_name_prefix="breach-inference",
            )

    def predict(self, snapshot: ModelSnapshot, features: Sequence[float], entity_id: str) -> Optional[MLResult]:
        """
        Score a feature vector with the first backend that succeeds.

        Args:
            snapshot: Model the weights come from
            features: Ordered feature vector
            entity_id: Property being scored, for log context

        Returns:
            MLResult, or None when no backend could produce a score
        """
        if snapshot.weights is None:
            return None

        for strategy in self.strategies:
            if not strategy.accepts(snapshot.weights.format):
                logger.debug(
                    f"Skipping {strategy.name} backend for model {snapshot.model_id}: "
                    f"cannot read {snapshot.weights.format.value} weights"
                )
                continue

            try:
                backend = self._load(strategy, snapshot)
                if backend is None:
                    continue
                raw_score = self._run(strategy, backend, features)
            except Exception as e:
                self.cache.discard(snapshot.model_id, strategy.name)
                logger.error(
                    f"{strategy.name} backend failed for property {entity_id} "
                    f"(model {snapshot.model_id}): {e}"
                )
                continue

            return MLResult(
                score=round_half_up(raw_score),
                confidence=ml_confidence(
                    strategy.base_confidence,
                    snapshot.training_accuracy,
                    snapshot.feedback_count,
                ),
                backend=strategy.name,
            )

        logger.warning(
            f"No ML backend could score property {entity_id} with model {snapshot.model_id}; "
            f"falling back to statistical score"
        )
        return None

    def _load(self, strategy: BackendStrategy, snapshot: ModelSnapshot) -> Optional[Any]:
        backend = self.cache.get(snapshot.model_id, snapshot.revision, strategy.name)
        if backend is not None:
            return backend

        backend = strategy.factory(snapshot.config)
        if not backend.load_weights(snapshot.weights):
            logger.warning(
                f"{strategy.name} backend could not load weights for model {snapshot.model_id}"
            )
            return None

        self.cache.set(snapshot.model_id, snapshot.revision, strategy.name, backend)
        return backend

    def _run(self, strategy: BackendStrategy, backend: Any, features: Sequence[float]) -> float:
        if strategy.timeout_seconds is None:
            return backend.predict(features)

        future = self.executor.submit(backend.predict, features)
        try:
            return future.result(timeout=strategy.timeout_seconds)
        except FuturesTimeoutError:
            future.cancel()
            raise BackendTimeoutError(
                f"{strategy.name} inference exceeded {strategy.timeout_seconds}s",
                details={"backend": strategy.name, "timeout": strategy.timeout_seconds},
            )

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)
