"""Breach network backends: PyTorch primary and NumPy fallback."""
from .dense import DenseBreachNetwork
from .neural import BreachNetwork, TensorBreachModel

__all__ = ["BreachNetwork", "DenseBreachNetwork", "TensorBreachModel"]
