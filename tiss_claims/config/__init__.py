"""
Configuration module for the TISS claims engine.

This module provides:
- Pydantic configuration models
- YAML configuration loading
- Configuration validation
"""

from tiss_claims.config.models import (
    TissConfig,
    DatabaseConfig,
    StorageConfig,
    EventsConfig,
    IngestionConfig,
    RiskConfig,
    ValueRange,
    ApiConfig,
    GlosaConfig,
)
from tiss_claims.config.loader import load_config
from tiss_claims.config.validation import validate_config, ConfigurationError

__all__ = [
    "TissConfig",
    "DatabaseConfig",
    "StorageConfig",
    "EventsConfig",
    "IngestionConfig",
    "RiskConfig",
    "ValueRange",
    "ApiConfig",
    "GlosaConfig",
    "load_config",
    "validate_config",
    "ConfigurationError",
]
