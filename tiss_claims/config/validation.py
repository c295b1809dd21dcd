"""
Configuration validation for the TISS claims engine.

Provides cross-field validation beyond Pydantic model validation.
"""

from pathlib import Path

import structlog

from tiss_claims.config.models import TissConfig

logger = structlog.get_logger()


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""

    pass


def validate_config(config: TissConfig) -> list[str]:
    """
    Validate engine configuration.

    Args:
        config: TissConfig to validate

    Returns:
        List of warning messages (non-fatal issues)

    Raises:
        ConfigurationError: If configuration has fatal issues
    """
    warnings: list[str] = []
    errors: list[str] = []

    risk = config.risk
    if not risk.medium_threshold < risk.high_threshold < risk.critical_threshold:
        errors.append(
            "Risk thresholds must be strictly increasing: "
            f"medium={risk.medium_threshold}, high={risk.high_threshold}, "
            f"critical={risk.critical_threshold}"
        )

    ingestion = config.ingestion
    if ingestion.max_retries > 0 and not ingestion.backoff_seconds:
        errors.append("ingestion.backoff_seconds must not be empty when retries are enabled")
    if ingestion.max_retries == 0:
        warnings.append(
            "ingestion.max_retries is 0: any transient failure marks the return ERROR."
        )

    if config.storage.backend == "memory":
        warnings.append(
            "Storage backend is 'memory': interchange snapshots are lost on restart."
        )
    elif config.storage.backend == "local":
        root = Path(config.storage.root_dir)
        if root.exists() and not root.is_dir():
            errors.append(f"Storage root is not a directory: {root}")

    if config.events.backend == "memory":
        warnings.append("Events backend is 'memory': notifications are never delivered.")

    if config.api.super_role not in config.api.submit_roles:
        warnings.append(
            f"Super role '{config.api.super_role}' cannot submit batches "
            "(not listed in api.submit_roles)."
        )

    for warning in warnings:
        logger.warning("config_validation_warning", message=warning)

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)

    return warnings


def validate_database_connection(config: TissConfig) -> bool:
    """
    Test database connection using configuration.

    Raises:
        ConfigurationError: If connection fails
    """
    from sqlalchemy import create_engine, text

    try:
        engine = create_engine(config.database.connection_string)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        raise ConfigurationError(f"Database connection failed: {e}") from e
