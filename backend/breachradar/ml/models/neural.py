"""
PyTorch breach model.

Primary inference and training backend: a two-hidden-layer MLP with dropout
and a single sigmoid output, trained with Adam on mini-batches against
binary cross-entropy. Weights serialize as one (flat data, shape) record per
parameter tensor in state_dict order.
"""

import threading
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F
from sklearn.model_selection import train_test_split

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

TENSOR_HIDDEN_LAYERS: Tuple[int, int] = (64, 32)
TENSOR_DROPOUT: Tuple[float, float] = (0.2, 0.1)
ACCURACY_TOLERANCE = 15.0
MIN_VALIDATION_EXAMPLES = 5


class BreachNetwork(nn.Module):
    """
    Input -> Linear/ReLU/Dropout x2 -> Linear -> Sigmoid.

    Hidden weights use He-normal initialisation, biases start at zero.
    """

    def __init__(
        self,
        input_dim: int,
        hidden_dims: Sequence[int] = TENSOR_HIDDEN_LAYERS,
        dropout_rates: Sequence[float] = TENSOR_DROPOUT,
    ):
        super().__init__()

        layers = []
        prev_dim = input_dim
        for hidden_dim, dropout in zip(hidden_dims, dropout_rates):
            layers.extend([
                nn.Linear(prev_dim, hidden_dim),
                nn.ReLU(),
                nn.Dropout(dropout),
            ])
            prev_dim = hidden_dim
        layers.extend([nn.Linear(prev_dim, 1), nn.Sigmoid()])
        self.layers = nn.Sequential(*layers)

        for module in self.layers:
            if isinstance(module, nn.Linear):
                nn.init.kaiming_normal_(module.weight, nonlinearity="relu")
                nn.init.zeros_(module.bias)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.layers(x).squeeze(-1)


class TensorBreachModel:
    """
    Wrapper for training and inference with BreachNetwork.

    Provides:
    - Mini-batch Adam training with an optional validation split
    - Deterministic eval-mode prediction on the 0-100 scale
    - Tagged weight export/import
    """

    name = "tensor"
    weights_format = WeightsFormat.TORCH_TENSORS_V1

    def __init__(self, config: Optional[ModelConfig] = None, seed: Optional[int] = None):
        self.config = config or ModelConfig()
        self.seed = seed
        self.input_dim = len(self.config.input_features)
        self.device = torch.device("cuda" if torch.cuda.is_available() else "cpu")

        # Seeded initialisation leaves the process-wide RNG untouched
        self._generator = torch.Generator()
        if seed is not None:
            self._generator.manual_seed(seed)
        else:
            self._generator.seed()
        with torch.random.fork_rng(devices=[], enabled=seed is not None):
            if seed is not None:
                torch.manual_seed(seed)
            self.model = BreachNetwork(self.input_dim).to(self.device)
        self.training_history: List[EpochRecord] = []
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def load_weights(self, serialized: SerializedWeights) -> bool:
        """
        Load tensor-format weights into the network.

        Returns False, leaving the network unchanged, when the weights are in
        another backend's format or don't match this architecture.
        """
        try:
            state = self._parse(serialized)
            self.model.load_state_dict(state, strict=True)
        except (WeightFormatError, RuntimeError) as e:
            message = e.message if isinstance(e, WeightFormatError) else str(e)
            logger.warning(f"Tensor backend rejected weights: {message}")
            return False

        self.model.eval()
        self._loaded = True
        return True

    def _parse(self, serialized: SerializedWeights) -> dict:
        if serialized.format != self.weights_format:
            raise WeightFormatError(f"Unsupported weights format {serialized.format.value}")

        records = serialized.payload
        current = self.model.state_dict()
        if not isinstance(records, list) or len(records) != len(current):
            raise WeightFormatError(
                f"Expected {len(current)} tensor records, got "
                f"{len(records) if isinstance(records, list) else type(records).__name__}"
            )

        state = {}
        for (key, reference), record in zip(current.items(), records):
            if not isinstance(record, dict) or "data" not in record or "shape" not in record:
                raise WeightFormatError(f"Tensor record for {key} must have 'data' and 'shape'")
            shape = tuple(record["shape"])
            if shape != tuple(reference.shape):
                raise WeightFormatError(
                    f"Tensor {key} has shape {shape}, expected {tuple(reference.shape)}"
                )
            data = np.asarray(record["data"], dtype=np.float32)
            if data.size != int(np.prod(shape)):
                raise WeightFormatError(f"Tensor {key} has {data.size} values for shape {shape}")
            state[key] = torch.from_numpy(data.reshape(shape)).to(self.device)
        return state

    def export_weights(self) -> SerializedWeights:
        if not self._loaded:
            raise ModelNotLoadedError("Tensor model has no trained weights to export")
        records = [
            {"data": tensor.detach().cpu().flatten().tolist(), "shape": list(tensor.shape)}
            for tensor in self.model.state_dict().values()
        ]
        return SerializedWeights(format=self.weights_format, payload=records)

    def predict(self, features: Sequence[float]) -> float:
        """Score in [0, 100] for one feature vector."""
        if not self._loaded:
            raise ModelNotLoadedError("Tensor model has no weights loaded")

        self.model.eval()
        X_t = self._to_tensor([features])
        with torch.no_grad():
            output = self.model(X_t)
        return float(output[0].item() * 100)

    def evaluate(self, examples: Sequence[TrainingExample]) -> Tuple[float, float]:
        """Binary cross-entropy and within-tolerance accuracy (%) on examples."""
        if not examples:
            return 0.0, 0.0
        X_t = self._to_tensor([e.features for e in examples])
        y_t = torch.tensor([e.target / 100 for e in examples], dtype=torch.float32, device=self.device)
        return self._evaluate(X_t, y_t)

    def _evaluate(self, X: torch.Tensor, y: torch.Tensor) -> Tuple[float, float]:
        self.model.eval()
        with torch.no_grad():
            pred = self.model(X)
            loss = F.binary_cross_entropy(pred, y).item()
            correct = (torch.abs(pred - y) * 100 < ACCURACY_TOLERANCE).float().mean().item()
        return loss, correct * 100

    def train(
        self,
        examples: Sequence[TrainingExample],
        config: TrainingConfig,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        progress_interval: int = 10,
    ) -> TrainingResult:
        """
        Train the network with Adam over shuffled mini-batches.

        Args:
            examples: Feature vectors with 0-100 targets
            config: Learning rate, epochs, batch size and validation split
            on_progress: Called as (epoch, loss, accuracy) every progress_interval epochs
            cancel_event: Checked before each epoch

        Returns:
            TrainingResult with final-epoch metrics and the epoch history
        """
        if not examples:
            raise ValueError("Cannot train on an empty dataset")

        X = np.asarray([e.features for e in examples], dtype=np.float32)
        y = np.asarray([e.target / 100 for e in examples], dtype=np.float32)
        if X.shape[1] != self.input_dim:
            raise ValueError(f"Expected {self.input_dim} features, got {X.shape[1]}")

        X_val = y_val = None
        if config.validation_split > 0 and len(X) >= MIN_VALIDATION_EXAMPLES:
            X, X_val, y, y_val = train_test_split(
                X, y, test_size=config.validation_split, random_state=self.seed
            )

        X_train_t = torch.from_numpy(X).to(self.device)
        y_train_t = torch.from_numpy(y).to(self.device)
        X_val_t = torch.from_numpy(X_val).to(self.device) if X_val is not None else None
        y_val_t = torch.from_numpy(y_val).to(self.device) if y_val is not None else None

        dataset = torch.utils.data.TensorDataset(X_train_t, y_train_t)
        dataloader = torch.utils.data.DataLoader(
            dataset, batch_size=config.batch_size, shuffle=True, generator=self._generator
        )
        optimizer = torch.optim.Adam(self.model.parameters(), lr=config.learning_rate)

        self.training_history = []
        n_train = len(dataset)

        for epoch in range(1, config.epochs + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise TrainingCancelledError(f"Training cancelled before epoch {epoch}")

            self.model.train()
            epoch_loss = 0.0
            epoch_correct = 0.0

            for batch_X, batch_y in dataloader:
                optimizer.zero_grad()
                pred = self.model(batch_X)
                loss = F.binary_cross_entropy(pred, batch_y)
                loss.backward()
                optimizer.step()

                epoch_loss += loss.item() * len(batch_y)
                epoch_correct += (torch.abs(pred.detach() - batch_y) * 100 < ACCURACY_TOLERANCE).sum().item()

            record = EpochRecord(
                epoch=epoch,
                loss=epoch_loss / n_train,
                accuracy=epoch_correct / n_train * 100,
            )
            if X_val_t is not None:
                record.val_loss, record.val_accuracy = self._evaluate(X_val_t, y_val_t)
            self.training_history.append(record)

            if epoch % progress_interval == 0 or epoch == config.epochs:
                logger.debug(
                    f"Epoch {epoch}/{config.epochs}: loss={record.loss:.4f}, "
                    f"acc={record.accuracy:.1f}%"
                    + (f", val_loss={record.val_loss:.4f}" if record.val_loss is not None else "")
                )
                if on_progress is not None:
                    on_progress(epoch, record.loss, record.accuracy)

        self.model.eval()
        self._loaded = True

        final = self.training_history[-1]
        return TrainingResult(
            final_loss=final.loss,
            final_accuracy=final.accuracy,
            epoch_history=list(self.training_history),
            validation_loss=final.val_loss,
            validation_accuracy=final.val_accuracy,
            training_samples=n_train,
            validation_samples=len(X_val) if X_val is not None else 0,
        )

    def _to_tensor(self, rows: Sequence[Sequence[float]]) -> torch.Tensor:
        X = np.asarray(rows, dtype=np.float32)
        if X.ndim != 2 or X.shape[1] != self.input_dim:
            raise ValueError(f"Expected {self.input_dim} features, got shape {X.shape}")
        return torch.from_numpy(X).to(self.device)
