"""
Custom exceptions for Breach Radar.

Provides domain-specific exceptions with clear error messages and
support for structured error handling.
"""

from typing import Optional, Dict, Any


class BreachRadarError(Exception):
    """Base exception for all Breach Radar errors."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# Database Errors
# ============================================================================

class DatabaseError(BreachRadarError):
    """Database operation failed."""
    pass


class RecordNotFoundError(DatabaseError):
    """Database record not found."""
    pass


class DuplicateRecordError(DatabaseError):
    """Attempted to create a duplicate record."""
    pass


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(BreachRadarError):
    """Data validation failed."""
    pass


class InvalidFeedbackError(ValidationError):
    """Feedback type or corrected values are invalid."""
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(BreachRadarError):
    """Application configuration error."""
    pass


class FeatureMismatchError(ConfigurationError):
    """Extracted features do not match the model's declared feature list."""
    pass


# ============================================================================
# Model Backend Errors
# ============================================================================

class ModelError(BreachRadarError):
    """Model backend failed."""
    pass


class ModelNotLoadedError(ModelError):
    """Prediction requested from a backend with no weights loaded."""
    pass


class WeightFormatError(ModelError):
    """Serialized weights are malformed or in a format the backend cannot read."""
    pass


class BackendTimeoutError(ModelError):
    """Backend inference did not finish within its timeout."""
    pass


# ============================================================================
# Training Errors
# ============================================================================

class TrainingError(BreachRadarError):
    """Model training failed."""
    pass


class TrainingInProgressError(TrainingError):
    """A training run is already active for this model."""
    pass


class TrainingCancelledError(TrainingError):
    """Training was cancelled between epochs."""
    pass


class InsufficientTrainingDataError(TrainingError):
    """No usable training examples could be assembled."""
    pass
