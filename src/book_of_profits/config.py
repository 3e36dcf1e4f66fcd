"""Application configuration.

Loads ``config.yaml`` from the per-user application directory, supports
environment variable expansion, and resolves where the data file lives.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import BaseModel, Field

APP_NAME = "book-of-profits"
DATA_FILE_NAME = ".bop-data"
CONFIG_FILE_NAME = "config.yaml"


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    validation can catch it later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# Pydantic v2 model
# ---------------------------------------------------------------------------


class AppConfig(BaseModel):
    """Tunables for the network layer and the balance view."""

    data_file: Optional[str] = None  # Defaults to <app dir>/.bop-data
    request_timeout: float = Field(default=15.0, gt=0)
    max_retries: int = Field(default=2, ge=0)
    retry_backoff: float = Field(default=1.0, ge=0)
    max_concurrency: int = Field(default=20, ge=1)
    price_api_url: str = "https://api.dexscreener.com"
    min_display_value: float = Field(default=0.01, ge=0)  # Dust threshold (USD)
    rpc_overrides: dict[str, str] = Field(default_factory=dict)  # chain id -> URL
    log_level: str = "WARNING"


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def get_app_dir() -> Path:
    """Return the per-user application directory (no auto-create)."""
    return Path(typer.get_app_dir(APP_NAME))


def default_config_path() -> Path:
    return get_app_dir() / CONFIG_FILE_NAME


def default_store_path(config: Optional[AppConfig] = None) -> Path:
    """Where the data file lives.

    ``BOP_DATA_FILE`` wins over the config's ``data_file``, which wins over
    ``<app dir>/.bop-data``.
    """
    env_path = os.environ.get("BOP_DATA_FILE")
    if env_path:
        return Path(env_path).expanduser()
    if config is not None and config.data_file:
        return Path(config.data_file).expanduser()
    return get_app_dir() / DATA_FILE_NAME


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate the configuration from a YAML file.

    A missing file yields the defaults.  Environment variable placeholders
    (``${VAR}``) are expanded before validation.
    """
    if path is None:
        path = default_config_path()
    if not path.exists():
        return AppConfig()
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return AppConfig.model_validate(expanded)


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    """Serialize an :class:`AppConfig` to a YAML file."""
    if path is None:
        path = default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
