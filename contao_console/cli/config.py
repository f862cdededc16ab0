"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./contao-console.yaml (working directory)
3. ~/.contao-console/config.yaml (user home)

Environment variables override YAML: CONTAO_CONSOLE_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
Without any config file the defaults below apply.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, field_validator

from contao_console.utils.paths import get_config_path

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")
_ENV_PREFIX = "CONTAO_CONSOLE_"
_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class StorageConfig(BaseModel):
    """Where the site config document lives."""

    data_dir: str | None = None

    def config_path(self) -> Path:
        """Path of config.json under data_dir, or the platform default."""
        if self.data_dir:
            return get_config_path(Path(self.data_dir).expanduser())
        return get_config_path()


class PollingConfig(BaseModel):
    """Remote task polling."""

    interval_seconds: float = 2.0
    timeout_seconds: float = 600.0

    @field_validator("interval_seconds", "timeout_seconds")
    @classmethod
    def positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class HttpConfig(BaseModel):
    """Requests to the remote managers."""

    timeout_seconds: float = 10.0


class LoggingConfig(BaseModel):
    level: str = "warning"

    @field_validator("level")
    @classmethod
    def known_level(cls, v: str) -> str:
        if v.lower() not in _LOG_LEVELS:
            raise ValueError(f"level must be one of {', '.join(_LOG_LEVELS)}")
        return v.lower()


class ConsoleConfig(BaseModel):
    """Top-level configuration for the console."""

    storage: StorageConfig = StorageConfig()
    polling: PollingConfig = PollingConfig()
    http: HttpConfig = HttpConfig()
    logging: LoggingConfig = LoggingConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    candidates = [
        Path.cwd() / "contao-console.yaml",
        Path.cwd() / "contao-console.yml",
        Path.home() / ".contao-console" / "config.yaml",
        Path.home() / ".contao-console" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _coerce(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply CONTAO_CONSOLE_<SECTION>_<KEY> env var overrides to config data.

    For example, ``CONTAO_CONSOLE_POLLING_TIMEOUT_SECONDS`` maps to section
    ``polling``, field ``timeout_seconds``.
    """
    known_sections = sorted(ConsoleConfig.model_fields.keys(), key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        suffix = key[len(_ENV_PREFIX):].lower()
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix) and len(suffix) > len(section_prefix):
                section_data = data.setdefault(section, {})
                if isinstance(section_data, dict):
                    section_data[suffix[len(section_prefix):]] = _coerce(value)
                break
    return data


def load_config(config_path: str | None = None) -> ConsoleConfig:
    """Load console configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.contao-console/).

    Returns:
        Validated ConsoleConfig; defaults (plus env overrides) if no file exists.

    Raises:
        FileNotFoundError: If config_path is given but does not exist.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return ConsoleConfig(**data)
