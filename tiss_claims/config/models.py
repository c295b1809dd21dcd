"""
Pydantic configuration models for the TISS claims engine.

These models define the structure and validation for engine configuration.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class DatabaseConfig(BaseModel):
    """Database connection settings."""

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    database: str = Field(default="tiss_claims", description="Database name")
    username: str = Field(default="tiss", description="Database username")
    password: str = Field(default="", description="Database password")
    url: str | None = Field(
        default=None,
        description=(
            "Full SQLAlchemy URL. Overrides host/port/database when set "
            "(e.g. sqlite:///tiss.db for local runs)."
        ),
    )
    pool_size: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Connection pool size",
    )

    @property
    def connection_string(self) -> str:
        """Build the SQLAlchemy connection string."""
        if self.url:
            return self.url
        return (
            f"postgresql+psycopg://{self.username}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class StorageConfig(BaseModel):
    """Blob storage for interchange files and operator returns."""

    backend: str = Field(
        default="local",
        description="Storage backend: local or memory",
    )
    root_dir: str = Field(
        default="data/blobs",
        description="Root directory for the local backend",
    )
    base_url: str = Field(
        default="file://",
        description="URL prefix returned for stored objects (local backend)",
    )

    @field_validator("backend")
    @classmethod
    def known_backend(cls, v: str) -> str:
        if v.lower() not in {"local", "memory"}:
            raise ValueError(f"Unknown storage backend: {v}")
        return v.lower()


class EventsConfig(BaseModel):
    """Domain event publishing for the notification dispatcher."""

    backend: str = Field(
        default="log",
        description="Publisher backend: log, outbox or memory",
    )
    outbox_dir: str = Field(
        default="data/events",
        description="Directory of per-topic NDJSON files for the outbox backend",
    )
    log_level: str = Field(
        default="info",
        description="Level used by the log backend",
    )
    topic_prefix: str = Field(
        default="tiss",
        description="Prefix for event topics (e.g. tiss.batch)",
    )
    fail_open: bool = Field(
        default=True,
        description="Log and continue when publishing fails instead of raising",
    )

    @field_validator("backend")
    @classmethod
    def known_backend(cls, v: str) -> str:
        if v.lower() not in {"log", "outbox", "memory"}:
            raise ValueError(f"Unknown events backend: {v}")
        return v.lower()


class IngestionConfig(BaseModel):
    """Return ingestion worker policy."""

    max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Automatic retry ceiling before a return is marked ERROR",
    )
    backoff_seconds: list[int] = Field(
        default=[30, 120, 600],
        description=(
            "Delay before each retry attempt. The last value is reused when "
            "there are more retries than entries."
        ),
    )
    stale_timeout_minutes: int = Field(
        default=15,
        ge=1,
        description="PROCESSING returns older than this may be reclaimed",
    )
    high_denial_threshold: float = Field(
        default=0.40,
        ge=0,
        le=1,
        description="Batch denial ratio that triggers a batch.high_denial event",
    )
    worker_id: str = Field(
        default="worker-0",
        description="Identifier recorded when a worker claims a return",
    )
    drain_batch_size: int = Field(
        default=20,
        ge=1,
        description="Returns claimed per process-returns run",
    )

    @field_validator("backoff_seconds")
    @classmethod
    def non_negative_backoff(cls, v: list[int]) -> list[int]:
        if any(s < 0 for s in v):
            raise ValueError("backoff_seconds values must be >= 0")
        return v


class ValueRange(BaseModel):
    """Typical billed value range for a procedure, in minor units."""

    min_value: int = Field(..., ge=0)
    max_value: int = Field(..., ge=0)

    @field_validator("max_value")
    @classmethod
    def max_after_min(cls, v: int, info) -> int:
        if "min_value" in info.data and v < info.data["min_value"]:
            raise ValueError("max_value must be >= min_value")
        return v


class RiskConfig(BaseModel):
    """Glosa risk predictor calibration."""

    critical_threshold: float = Field(default=0.90, ge=0, le=1)
    high_threshold: float = Field(default=0.70, ge=0, le=1)
    medium_threshold: float = Field(default=0.40, ge=0, le=1)

    default_base_rate: float = Field(
        default=0.05,
        ge=0,
        le=1,
        description="Denial rate used when no history exists for the pair",
    )
    base_rates: dict[str, float] = Field(
        default={
            "UNIMED": 0.06,
            "BRADESCO": 0.09,
            "SULAMERICA": 0.08,
            "AMIL": 0.07,
        },
        description=(
            "Historical denial rates keyed by OPERATOR or OPERATOR:procedure_code. "
            "The more specific key wins."
        ),
    )
    value_ranges: dict[str, ValueRange] = Field(
        default={
            "10101012": ValueRange(min_value=5000, max_value=50000),
        },
        description=(
            "Typical value range keyed by procedure_code or "
            "OPERATOR:procedure_code, in minor units"
        ),
    )
    value_outlier_factor: float = Field(
        default=2.0,
        ge=1.0,
        description="Values beyond max*factor or below min/factor are implausible",
    )
    history_min_samples: int = Field(
        default=10,
        ge=1,
        description="Terminal guides needed before clinic history overrides defaults",
    )

    # Category weights applied to issue probabilities before combination
    weight_rule: float = Field(default=1.0, ge=0, le=1)
    weight_completeness: float = Field(default=0.9, ge=0, le=1)
    weight_value: float = Field(default=0.8, ge=0, le=1)

    @field_validator("base_rates")
    @classmethod
    def rates_are_probabilities(cls, v: dict[str, float]) -> dict[str, float]:
        for key, rate in v.items():
            if not 0 <= rate <= 1:
                raise ValueError(f"Base rate for {key} must be within [0, 1], got {rate}")
        return {k.upper(): r for k, r in v.items()}


class ApiConfig(BaseModel):
    """HTTP API authorization settings."""

    super_role: str = Field(
        default="SUPER_ADMIN",
        description="Role allowed to access every clinic",
    )
    submit_roles: list[str] = Field(
        default=["CLINIC_ADMIN", "SUPER_ADMIN"],
        description="Roles allowed to generate files and submit batches",
    )
    process_on_upload: bool = Field(
        default=True,
        description="Process an uploaded return in the background after responding",
    )


class GlosaConfig(BaseModel):
    """Glosa appeal policy."""

    appeal_window_business_days: int = Field(
        default=30,
        ge=0,
        description="Business days after return processing to appeal a glosa",
    )
    calendar_subdivision: str | None = Field(
        default=None,
        description="Brazilian state code for state holidays (e.g. SP)",
    )


class TissConfig(BaseSettings):
    """
    Root engine configuration.

    Values can be loaded from YAML files and overridden via environment variables.
    """

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    glosa: GlosaConfig = Field(default_factory=GlosaConfig)

    tiss_version: str = Field(
        default="4.02.00",
        description="Interchange layout version written to generated files",
    )
    data_path: Path = Field(
        default=Path("data"),
        description="Working directory for local artifacts",
    )

    model_config = {
        "env_prefix": "TISS_",
        "env_nested_delimiter": "__",
    }
