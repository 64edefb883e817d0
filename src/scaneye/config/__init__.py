"""Configuration loader for ScanEye.

Loads process settings from a YAML file with built-in defaults. Supports
environment variable overrides using the SCANEYE_ prefix with
double-underscore nesting (e.g., SCANEYE_SCANNER__TIMEOUT_SECONDS=120).

These are the settings a process needs before it can open its database.
The user-editable runtime record (intervals, manual subnet, last results)
lives in :mod:`scaneye.db.config_store`.
"""

from __future__ import annotations

import os
import pathlib
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Config sub-models
# ---------------------------------------------------------------------------

class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 5050


class StorageConfig(BaseModel):
    data_dir: str = "./data"
    db_file: str = "scaneye.db"

    @property
    def db_path(self) -> pathlib.Path:
        return pathlib.Path(self.data_dir) / self.db_file


class ScannerConfig(BaseModel):
    nmap_arguments: str = "-sn -T4 --min-parallelism 50"
    timeout_seconds: int = 300


class SpeedTestConfig(BaseModel):
    secure: bool = True
    timeout_seconds: int = 60


class EventsConfig(BaseModel):
    subscriber_queue_size: int = 100
    ping_interval_seconds: float = 30


class LoggingConfig(BaseModel):
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    speedtest: SpeedTestConfig = Field(default_factory=SpeedTestConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Deep merge helper
# ---------------------------------------------------------------------------

def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into *base*, returning a new dict."""
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_PREFIX = "SCANEYE_"


def _collect_env_overrides() -> dict[str, Any]:
    """Collect SCANEYE_* env vars and build a nested dict.

    Double-underscore separates nesting levels.
    Example: SCANEYE_SERVER__PORT=8080
    becomes  {"server": {"port": 8080}}
    """
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        parts = key[len(_ENV_PREFIX) :].lower().split("__")
        current = overrides
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        final_value: Any = value
        try:
            final_value = int(value)
        except ValueError:
            try:
                final_value = float(value)
            except ValueError:
                if value.lower() in ("true", "false"):
                    final_value = value.lower() == "true"
        current[parts[-1]] = final_value
    return overrides


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_BUILTIN_DEFAULTS_PATH = pathlib.Path(__file__).resolve().parents[3] / "config" / "defaults.yaml"


def load_settings(
    config_path: pathlib.Path | None = None,
) -> Settings:
    """Load settings with layered precedence: defaults < file < env vars.

    Parameters
    ----------
    config_path:
        Path to a YAML config file. If ``None`` the bundled defaults file is
        used; if the file does not exist, model defaults apply.
    """
    base: dict[str, Any] = {}

    path = config_path if config_path is not None else _BUILTIN_DEFAULTS_PATH
    if path.exists():
        with open(path) as fh:
            file_data = yaml.safe_load(fh)
        if isinstance(file_data, dict):
            base = _deep_merge(base, file_data)

    env_overrides = _collect_env_overrides()
    if env_overrides:
        base = _deep_merge(base, env_overrides)

    return Settings(**base)
