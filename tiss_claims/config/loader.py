"""
YAML configuration loader for the TISS claims engine.

The file is found through ``TISS_CONFIG`` or a short list of default
locations; without one the engine runs on model defaults plus ``TISS_*``
environment overrides. ``${VAR}`` and ``${VAR:-default}`` references are
expanded before validation, and a reference to an unset variable with no
default fails the load instead of leaving an empty host or password.
"""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml

from tiss_claims.config.models import TissConfig
from tiss_claims.config.validation import ConfigurationError

CONFIG_ENV_VAR = "TISS_CONFIG"

DEFAULT_PATHS = (
    Path("config/tiss.yaml"),
    Path("tiss.yaml"),
    Path.home() / ".tiss" / "tiss.yaml",
)

ENV_REFERENCE = re.compile(r"\$\{(?P<name>[^}:]+)(?::-(?P<default>[^}]*))?\}")


def expand_env(value: Any, missing: Optional[set[str]] = None) -> Any:
    """
    Expand environment references in strings, dicts and lists.

    Names without a value or default are added to ``missing`` and left
    empty; callers decide whether that is fatal.
    """
    if isinstance(value, dict):
        return {k: expand_env(v, missing) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(item, missing) for item in value]
    if not isinstance(value, str):
        return value

    def replace(match: re.Match) -> str:
        name, default = match.group("name"), match.group("default")
        if name in os.environ:
            return os.environ[name]
        if default is None and missing is not None:
            missing.add(name)
        return default or ""

    return ENV_REFERENCE.sub(replace, value)


def load_yaml(path: Path) -> dict[str, Any]:
    """
    Read a configuration file and expand its environment references.

    Raises:
        FileNotFoundError: the file does not exist
        ConfigurationError: the top level is not a mapping, or a referenced
            variable is unset and has no default
        yaml.YAMLError: the YAML is invalid
    """
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must hold a mapping of sections, not {type(raw).__name__}")

    missing: set[str] = set()
    expanded = expand_env(raw, missing)
    if missing:
        raise ConfigurationError(
            f"{path} references unset environment variables: {', '.join(sorted(missing))}"
        )
    return expanded


def find_config_file() -> Optional[Path]:
    """``TISS_CONFIG`` when set (it must exist), else the first default path found."""
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        return Path(explicit)
    return next((path for path in DEFAULT_PATHS if path.exists()), None)


def load_config(
    config_path: str | Path | None = None,
    override_values: dict[str, Any] | None = None,
) -> TissConfig:
    """
    Load engine configuration.

    Args:
        config_path: Configuration file; when None, ``find_config_file``
            picks one or the defaults are used
        override_values: Nested values applied on top of the file

    Raises:
        FileNotFoundError: an explicit or ``TISS_CONFIG`` file is missing
        ConfigurationError: the file cannot be expanded
        ValidationError: a value fails model validation
    """
    path = Path(config_path) if config_path is not None else find_config_file()
    values = load_yaml(path) if path is not None else {}
    if override_values:
        values = _merge(values, override_values)
    return TissConfig(**values)


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        merged[key] = _merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged
