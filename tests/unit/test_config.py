"""
Unit tests for configuration loading and validation.
"""

import pytest
import yaml

from tiss_claims.config import load_config
from tiss_claims.config.models import IngestionConfig, RiskConfig, StorageConfig, TissConfig
from tiss_claims.config.validation import ConfigurationError, validate_config


def _write(tmp_path, data) -> str:
    path = tmp_path / "tiss.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestLoadConfig:
    """Tests for YAML loading."""

    def test_defaults(self):
        config = TissConfig()

        assert config.tiss_version == "4.02.00"
        assert config.ingestion.max_retries == 3
        assert config.ingestion.backoff_seconds == [30, 120, 600]
        assert config.glosa.appeal_window_business_days == 30
        assert config.database.connection_string.startswith("postgresql+psycopg://")

    def test_yaml_values(self, tmp_path):
        path = _write(tmp_path, {
            "ingestion": {"max_retries": 5, "worker_id": "w-7"},
            "risk": {"base_rates": {"unimed": 0.2}},
        })

        config = load_config(path)

        assert config.ingestion.max_retries == 5
        assert config.ingestion.worker_id == "w-7"
        assert config.risk.base_rates == {"UNIMED": 0.2}

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_TISS_DB", "db.internal")
        path = _write(tmp_path, {
            "database": {"host": "${TEST_TISS_DB}", "database": "${TEST_TISS_MISSING:-claims}"},
        })

        config = load_config(path)

        assert config.database.host == "db.internal"
        assert config.database.database == "claims"

    def test_overrides_merge_deeply(self, tmp_path):
        path = _write(tmp_path, {"ingestion": {"max_retries": 5, "worker_id": "w-7"}})

        config = load_config(path, override_values={"ingestion": {"max_retries": 1}})

        assert config.ingestion.max_retries == 1
        assert config.ingestion.worker_id == "w-7"

    def test_database_url_wins(self, tmp_path):
        config = load_config(_write(tmp_path, {"database": {"url": "sqlite:///tiss.db"}}))

        assert config.database.connection_string == "sqlite:///tiss.db"

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_empty_file_is_defaults(self, tmp_path):
        path = tmp_path / "tiss.yaml"
        path.write_text("")

        assert load_config(path).tiss_version == "4.02.00"

    def test_config_file_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TISS_CONFIG", _write(tmp_path, {"ingestion": {"worker_id": "w-env"}}))

        assert load_config().ingestion.worker_id == "w-env"

    def test_missing_environment_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TISS_CONFIG", str(tmp_path / "absent.yaml"))

        with pytest.raises(FileNotFoundError):
            load_config()

    def test_unset_variable_without_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_TISS_UNSET", raising=False)
        path = _write(tmp_path, {"database": {"host": "${TEST_TISS_UNSET}", "password": "${TEST_TISS_UNSET_PW:-}"}})

        with pytest.raises(ConfigurationError, match="TEST_TISS_UNSET"):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "tiss.yaml"
        path.write_text("- database\n- storage\n")

        with pytest.raises(ConfigurationError):
            load_config(path)


class TestModelValidation:
    """Tests for field validators."""

    def test_unknown_storage_backend(self):
        with pytest.raises(ValueError):
            StorageConfig(backend="s3")

    def test_negative_backoff(self):
        with pytest.raises(ValueError):
            IngestionConfig(backoff_seconds=[30, -1])

    def test_base_rate_out_of_range(self):
        with pytest.raises(ValueError):
            RiskConfig(base_rates={"UNIMED": 1.5})


class TestValidateConfig:
    """Tests for cross-field validation."""

    def test_memory_backends_warn(self, test_config):
        warnings = validate_config(test_config)

        assert any("memory" in w for w in warnings)

    def test_thresholds_must_increase(self):
        config = TissConfig(risk=RiskConfig(medium_threshold=0.8, high_threshold=0.7))

        with pytest.raises(ConfigurationError):
            validate_config(config)

    def test_retries_need_backoff(self):
        config = TissConfig(ingestion=IngestionConfig(max_retries=2, backoff_seconds=[]))

        with pytest.raises(ConfigurationError):
            validate_config(config)

    def test_zero_retries_warns(self):
        config = TissConfig(ingestion=IngestionConfig(max_retries=0))

        assert any("max_retries" in w for w in validate_config(config))

    def test_storage_root_must_be_directory(self, tmp_path):
        blocker = tmp_path / "blobs"
        blocker.write_text("not a directory")
        config = TissConfig(storage=StorageConfig(backend="local", root_dir=str(blocker)))

        with pytest.raises(ConfigurationError):
            validate_config(config)
