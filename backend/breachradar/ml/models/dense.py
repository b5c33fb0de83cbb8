"""
Dense feed-forward breach network with hand-written forward and backward passes.

Fallback backend for environments where the tensor backend cannot run. Layer
weights are NumPy arrays of shape (fan_in, fan_out); each layer carries a
single scalar bias shared by all of its units. Training is per-example SGD
over a freshly shuffled copy of the training set every epoch, so the
configured batch size does not apply here.
"""

import threading
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from breachradar.log_config import logger
from breachradar.ml.schemas import (
    EpochRecord,
    ModelConfig,
    SerializedWeights,
    TrainingConfig,
    TrainingExample,
    TrainingResult,
    WeightsFormat,
)
from breachradar.utils.errors import ModelNotLoadedError, TrainingCancelledError, WeightFormatError


ProgressCallback = Callable[[int, float, float], None]

ACCURACY_TOLERANCE = 15.0
SIGMOID_CLAMP = 500.0
BIAS_LEARNING_SCALE = 0.1


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(x, -SIGMOID_CLAMP, SIGMOID_CLAMP)))


def _sigmoid_derivative(x: np.ndarray) -> np.ndarray:
    s = _sigmoid(x)
    return s * (1.0 - s)


def _relu(x: np.ndarray) -> np.ndarray:
    return np.maximum(x, 0.0)


def _relu_derivative(x: np.ndarray) -> np.ndarray:
    return (x > 0).astype(np.float64)


class DenseBreachNetwork:
    """
    Small ReLU network with one sigmoid output unit.

    Lifecycle: weights are absent until load_weights() succeeds or train()
    initialises them. predict() on an unloaded network raises
    ModelNotLoadedError.
    """

    name = "dense"
    weights_format = WeightsFormat.DENSE_LAYERS_V1

    def __init__(self, config: Optional[ModelConfig] = None, seed: Optional[int] = None):
        self.config = config or ModelConfig()
        self.layer_sizes: List[int] = self.config.layer_sizes
        self._rng = np.random.default_rng(seed)
        self.weights: Optional[List[np.ndarray]] = None
        self.biases: Optional[np.ndarray] = None

    @property
    def is_loaded(self) -> bool:
        return self.weights is not None

    def initialize_weights(self) -> None:
        """Uniform init scaled by sqrt(2 / fan_in), small positive biases."""
        weights = []
        for fan_in, fan_out in zip(self.layer_sizes[:-1], self.layer_sizes[1:]):
            scale = np.sqrt(2.0 / fan_in)
            weights.append((self._rng.random((fan_in, fan_out)) * 2 - 1) * scale)
        self.weights = weights
        self.biases = self._rng.random(len(weights)) * 0.1

    def load_weights(self, serialized: SerializedWeights) -> bool:
        """
        Load dense-format weights.

        Returns False, leaving the network unchanged, when the weights are in
        another backend's format or their shapes don't match the layer sizes.
        """
        try:
            weights, biases = self._parse(serialized)
        except WeightFormatError as e:
            logger.warning(f"Dense backend rejected weights: {e.message}")
            return False

        self.weights = weights
        self.biases = biases
        return True

    def _parse(self, serialized: SerializedWeights) -> Tuple[List[np.ndarray], np.ndarray]:
        if serialized.format != self.weights_format:
            raise WeightFormatError(f"Unsupported weights format {serialized.format.value}")

        payload = serialized.payload
        if not isinstance(payload, dict) or not isinstance(payload.get("layers"), list):
            raise WeightFormatError("Dense weights payload must contain a 'layers' list")

        layers = payload["layers"]
        expected_shapes = list(zip(self.layer_sizes[:-1], self.layer_sizes[1:]))
        if len(layers) != len(expected_shapes):
            raise WeightFormatError(
                f"Expected {len(expected_shapes)} weight layers, got {len(layers)}"
            )

        weights = []
        for idx, (layer, shape) in enumerate(zip(layers, expected_shapes)):
            try:
                array = np.asarray(layer, dtype=np.float64)
            except (TypeError, ValueError) as e:
                raise WeightFormatError(f"Layer {idx} is not numeric: {e}")
            if array.shape != shape:
                raise WeightFormatError(f"Layer {idx} has shape {array.shape}, expected {shape}")
            if not np.all(np.isfinite(array)):
                raise WeightFormatError(f"Layer {idx} contains non-finite values")
            weights.append(array.copy())

        raw_biases = payload.get("biases")
        if raw_biases is None:
            biases = np.zeros(len(weights))
        else:
            biases = np.asarray(raw_biases, dtype=np.float64)
            if biases.shape != (len(weights),):
                raise WeightFormatError(
                    f"Expected {len(weights)} biases, got shape {biases.shape}"
                )
        return weights, biases

    def export_weights(self) -> SerializedWeights:
        if not self.is_loaded:
            raise ModelNotLoadedError("Dense network has no weights to export")
        return SerializedWeights(
            format=self.weights_format,
            payload={
                "layers": [w.tolist() for w in self.weights],
                "biases": self.biases.tolist(),
            },
        )

    def _forward(self, features: np.ndarray) -> Tuple[List[np.ndarray], List[np.ndarray]]:
        """Forward pass keeping post-activations and pre-activations per layer."""
        activations = [features]
        pre_activations = [features]
        current = features
        last = len(self.weights) - 1

        for idx, layer in enumerate(self.weights):
            z = current @ layer + self.biases[idx]
            current = _sigmoid(z) if idx == last else _relu(z)
            pre_activations.append(z)
            activations.append(current)

        return activations, pre_activations

    def predict(self, features: Sequence[float]) -> float:
        """Score in [0, 100] for one feature vector."""
        if not self.is_loaded:
            raise ModelNotLoadedError("Dense network has no weights loaded")
        vector = self._as_vector(features)
        activations, _ = self._forward(vector)
        return float(activations[-1][0] * 100)

    def evaluate(self, examples: Sequence[TrainingExample]) -> Tuple[float, float]:
        """Mean squared error (0-1 scale) and within-tolerance accuracy (%)."""
        if not self.is_loaded:
            raise ModelNotLoadedError("Dense network has no weights loaded")
        if not examples:
            return 0.0, 0.0
        total_loss = 0.0
        correct = 0
        for example in examples:
            prediction = self.predict(example.features)
            total_loss += ((example.target - prediction) / 100) ** 2
            if abs(prediction - example.target) < ACCURACY_TOLERANCE:
                correct += 1
        return total_loss / len(examples), correct / len(examples) * 100

    def train(
        self,
        examples: Sequence[TrainingExample],
        config: TrainingConfig,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        progress_interval: int = 10,
    ) -> TrainingResult:
        """
        Train with per-example stochastic gradient descent.

        Args:
            examples: Feature vectors with 0-100 targets
            config: Learning rate and epochs (batch_size and validation_split are not used)
            on_progress: Called as (epoch, loss, accuracy) every progress_interval epochs
            cancel_event: Checked before each epoch

        Returns:
            TrainingResult with metrics from the final epoch
        """
        if not examples:
            raise ValueError("Cannot train on an empty dataset")
        if not self.is_loaded:
            self.initialize_weights()

        inputs = [self._as_vector(example.features) for example in examples]
        targets = [float(example.target) for example in examples]
        learning_rate = config.learning_rate
        history: List[EpochRecord] = []

        for epoch in range(1, config.epochs + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise TrainingCancelledError(f"Training cancelled before epoch {epoch}")

            total_loss = 0.0
            correct = 0

            for idx in self._rng.permutation(len(inputs)):
                activations, pre_activations = self._forward(inputs[idx])
                prediction = activations[-1][0]
                target = targets[idx] / 100
                output_error = target - prediction

                total_loss += output_error * output_error
                if abs(prediction * 100 - targets[idx]) < ACCURACY_TOLERANCE:
                    correct += 1

                self._backpropagate(activations, pre_activations, output_error, learning_rate)

            loss = total_loss / len(inputs)
            accuracy = correct / len(inputs) * 100
            history.append(EpochRecord(epoch=epoch, loss=loss, accuracy=accuracy))

            if on_progress is not None and (epoch % progress_interval == 0 or epoch == config.epochs):
                on_progress(epoch, loss, accuracy)

        final = history[-1]
        return TrainingResult(
            final_loss=final.loss,
            final_accuracy=final.accuracy,
            epoch_history=history,
            training_samples=len(inputs),
        )

    def _backpropagate(
        self,
        activations: List[np.ndarray],
        pre_activations: List[np.ndarray],
        output_error: float,
        learning_rate: float,
    ) -> None:
        n_layers = len(self.weights)
        deltas: List[Optional[np.ndarray]] = [None] * n_layers

        deltas[-1] = output_error * _sigmoid_derivative(pre_activations[-1])
        for idx in range(n_layers - 2, -1, -1):
            error_sum = self.weights[idx + 1] @ deltas[idx + 1]
            deltas[idx] = error_sum * _relu_derivative(pre_activations[idx + 1])

        # Deltas use the pre-update weights; apply updates afterwards.
        for idx in range(n_layers):
            self.weights[idx] += learning_rate * np.outer(activations[idx], deltas[idx])
            self.biases[idx] += learning_rate * float(np.sum(deltas[idx])) * BIAS_LEARNING_SCALE

    def _as_vector(self, features: Sequence[float]) -> np.ndarray:
        vector = np.asarray(features, dtype=np.float64)
        if vector.shape != (self.layer_sizes[0],):
            raise ValueError(
                f"Expected {self.layer_sizes[0]} features, got shape {vector.shape}"
            )
        return vector
