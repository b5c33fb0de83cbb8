"""
Configuration management for Breach Radar using Pydantic Settings.

Loads configuration from environment variables with type validation and sane defaults.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable support."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )
    
    # Application
    app_env: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")
    
    # Database
    database_url: str = Field(default="sqlite:///./breachradar.db", description="SQLAlchemy database URL")
    
    # Logging
    log_level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(default="console", description="Log format: json or console")
    log_file: str = Field(default="", description="Log file path (empty disables file logging)")
    
    # Model registry
    ml_model_name: str = Field(default="Breach Predictor v1", description="Name given to newly created models")
    
    # Training
    ml_feedback_batch_limit: int = Field(default=1000, description="Max unconsumed feedback rows pulled per training run")
    ml_min_training_examples: int = Field(default=10, description="Below this many feedback examples, bootstrap from portfolio entities")
    ml_bootstrap_entity_limit: int = Field(default=100, description="Max entities sampled when bootstrapping a training set")
    ml_training_ready_threshold: int = Field(default=10, description="Feedback count at which a model is reported as ready to train")
    ml_progress_interval: int = Field(default=10, description="Epochs between training progress checkpoints")
    ml_training_workers: int = Field(default=2, description="Background training worker threads")
    
    # Inference
    ml_inference_timeout_seconds: float = Field(default=5.0, description="Timeout for primary backend inference")
    ml_inference_workers: int = Field(default=4, description="Worker threads for timed backend inference")
    ml_prediction_ttl_hours: int = Field(default=24, description="Hours before a stored prediction expires")
    ml_bulk_prediction_limit: int = Field(default=50, description="Max entities per bulk prediction request")
    ml_test_prediction_default: int = Field(default=30, description="Default number of test predictions")
    ml_test_prediction_max: int = Field(default=50, description="Max number of test predictions")
    ml_recent_runs_limit: int = Field(default=10, description="Training runs included in model metrics")
    ml_list_predictions_max: int = Field(default=100, description="Max predictions returned by a listing")
    
    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Normalise log format, falling back to console output."""
        v = v.lower()
        return v if v in ("json", "console") else "console"
    
    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"
    
    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"


# Global settings instance
settings = Settings()
