"""App configuration loading helpers."""

from __future__ import annotations

import os
from pathlib import Path

import tomllib

from pydantic import BaseModel, Field, ValidationError

CONFIG_FILE = Path.home() / ".config" / "crdb-extra" / "config.toml"
API_KEY_ENV = "COCKROACH_API_KEY"


class CloudConfig(BaseModel):
    """Cockroach Cloud REST API settings."""

    api_key: str | None = None
    host: str = "https://cockroachlabs.cloud"
    timeout: float = 30.0


class BrokerConfig(BaseModel):
    """Settings for the ephemeral SQL principal."""

    principal_name: str = "crdb-extra-principal"
    principal_ttl_seconds: int = Field(default=240, gt=0)
    admin_role: str = "admin"


class PoolConfig(BaseModel):
    """Per-(cluster, database) connection pool sizing."""

    max_size: int = Field(default=5, gt=0)
    min_size: int = Field(default=0, ge=0)
    connect_timeout: float = 10.0


class JobWatchConfig(BaseModel):
    """Polling cadence used while waiting on job status transitions."""

    poll_attempts: int = Field(default=20, gt=0)
    poll_interval_seconds: float = Field(default=2.0, ge=0)


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    cloud: CloudConfig = Field(default_factory=CloudConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    jobs: JobWatchConfig = Field(default_factory=JobWatchConfig)
    default_database: str = "defaultdb"
    log_level: str = "INFO"

    def with_api_key(self, api_key: str) -> AppConfig:
        """Return a copy with the cloud API key replaced."""

        cloud = self.cloud.model_copy(update={"api_key": api_key})
        return self.model_copy(update={"cloud": cloud})


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file(path or CONFIG_FILE)
    except FileNotFoundError:
        config = AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        config = AppConfig()
    else:
        try:
            config = AppConfig(**data)
        except ValidationError:
            config = AppConfig()

    env_key = os.environ.get(API_KEY_ENV)
    if env_key and not config.cloud.api_key:
        config = config.with_api_key(env_key)
    return config


def _read_config_file(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    for section in ("cloud", "broker", "pool", "jobs"):
        value = raw.get(section)
        if isinstance(value, dict):
            data[section] = value
    database = raw.get("default_database")
    if isinstance(database, str):
        data["default_database"] = database
    level = raw.get("log_level")
    if isinstance(level, str):
        data["log_level"] = level.upper()
    return data


__all__ = [
    "API_KEY_ENV",
    "AppConfig",
    "BrokerConfig",
    "CONFIG_FILE",
    "CloudConfig",
    "JobWatchConfig",
    "PoolConfig",
    "load_config",
]
