"""Configuration loading: file (TOML or YAML), then environment overrides."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Mapping

import yaml

from .config_schema import EngineConfigModel, validate_config
from .errors import ConfigError, ConfigFileNotFound

logger = logging.getLogger(__name__)

CONFIG_ENV = "CROSSMATRIX_CONFIG"
DEFAULT_CONFIG_NAMES = ("config.toml", "config.yaml", "config.yml")

# env var -> config key
ENV_VARS: dict[str, str] = {
    "MATRICES_QUOTE": "quote",
    "MATRICES_BASES": "bases",
    "MATRIX_BRIDGES": "bridges",
    "MATRIX_DB_URL": "db_url",
    "MATRIX_TICK_INTERVAL": "tick_interval",
    "MATRIX_TICK_DEADLINE": "tick_deadline",
    "BINANCE_BASE_URL": "binance_base_url",
    "PRICE_RETRY_ATTEMPTS": "retry_attempts",
    "PRICE_RETRY_BACKOFF": "retry_backoff",
    "HTTP_CONCURRENCY": "http_concurrency",
    "EXCHANGE_INFO_TTL": "exchange_info_ttl",
    "LOG_LEVEL": "log_level",
    "LOG_JSON": "log_json",
}


def find_config_file(cwd: Path | None = None) -> Path | None:
    """Return the config path from ``CROSSMATRIX_CONFIG`` or the first default name present."""
    explicit = os.getenv(CONFIG_ENV)
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise ConfigFileNotFound(f"{CONFIG_ENV} points to missing file {path}")
        return path
    base = Path(cwd) if cwd is not None else Path.cwd()
    for name in DEFAULT_CONFIG_NAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return None


def _read_config_file(path: Path) -> dict[str, Any]:
    suffix = path.suffix.lower()
    try:
        if suffix == ".toml":
            with path.open("rb") as fh:
                data = tomllib.load(fh)
        elif suffix in {".yaml", ".yml"}:
            with path.open("r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        else:
            raise ConfigError(f"unsupported config format: {path.name}")
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"could not parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    # Allow the settings to live under a [crossmatrix] table.
    section = data.get("crossmatrix")
    return dict(section) if isinstance(section, dict) else data


def apply_env_overrides(
    data: Mapping[str, Any], env: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Overlay non-empty environment variables from :data:`ENV_VARS` onto ``data``."""
    env = os.environ if env is None else env
    merged = dict(data)
    for env_name, key in ENV_VARS.items():
        raw = env.get(env_name)
        if raw is None or not str(raw).strip():
            continue
        value: Any = raw.strip()
        if key == "log_json":
            value = value.lower() in {"1", "true", "yes", "on"}
        merged[key] = value
    return merged


def load_config(
    path: str | os.PathLike | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> EngineConfigModel:
    """Load, override and validate the engine configuration.

    A missing default file yields the defaults; an explicit ``path`` that does
    not exist raises :class:`ConfigFileNotFound`.
    """
    if path is not None:
        cfg_path: Path | None = Path(path).expanduser()
        if not cfg_path.is_file():
            raise ConfigFileNotFound(f"config file not found: {cfg_path}")
    else:
        cfg_path = find_config_file()

    data: dict[str, Any] = {}
    if cfg_path is not None:
        data = _read_config_file(cfg_path)
        logger.info("Loaded config from %s", cfg_path)
    return validate_config(apply_env_overrides(data, env))
