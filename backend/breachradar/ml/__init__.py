"""
ML package for hybrid breach prediction.

Blends rule-based statistical risk scores with per-organisation neural
models that retrain continuously from reviewer feedback.
"""

from breachradar.ml.feedback import FeedbackStore
from breachradar.ml.monitoring import ModelMonitor
from breachradar.ml.registry import ModelRegistry
from breachradar.ml.serving import PredictionService
from breachradar.ml.training import TrainingOrchestrator

__version__ = "1.0.0"

__all__ = [
    "FeedbackStore",
    "ModelMonitor",
    "ModelRegistry",
    "PredictionService",
    "TrainingOrchestrator",
]
