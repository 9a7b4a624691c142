"""Tests for AppConfig loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from crdbextra import config as config_module
from crdbextra.config import API_KEY_ENV, AppConfig, load_config


@pytest.fixture(autouse=True)
def _no_env_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(API_KEY_ENV, raising=False)


def test_defaults_match_documented_values() -> None:
    config = AppConfig()

    assert config.broker.principal_ttl_seconds == 240
    assert config.broker.admin_role == "admin"
    assert config.pool.max_size == 5
    assert config.jobs.poll_attempts == 20
    assert config.jobs.poll_interval_seconds == 2.0
    assert config.default_database == "defaultdb"
    assert config.cloud.api_key is None


def test_load_config_returns_defaults_when_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.toml")

    result = load_config()

    assert result == AppConfig()


def test_load_config_reads_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        """
default_database = "movr"
log_level = "debug"

[cloud]
api_key = "from-file"
host = "https://cloud.example.com"

[broker]
principal_name = "ops-bot"
principal_ttl_seconds = 120

[pool]
max_size = 3

[jobs]
poll_attempts = 5
poll_interval_seconds = 0.5
"""
    )
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert result.default_database == "movr"
    assert result.log_level == "DEBUG"
    assert result.cloud.api_key == "from-file"
    assert result.cloud.host == "https://cloud.example.com"
    assert result.broker.principal_name == "ops-bot"
    assert result.broker.principal_ttl_seconds == 120
    assert result.pool.max_size == 3
    assert result.jobs.poll_attempts == 5
    assert result.jobs.poll_interval_seconds == 0.5


def test_load_config_handles_toml_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("default_database = [unterminated")
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    assert load_config() == AppConfig()


def test_load_config_falls_back_on_invalid_values(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("[pool]\nmax_size = 0\n")

    assert load_config(config_path) == AppConfig()


def test_environment_supplies_missing_api_key(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(API_KEY_ENV, "from-env")

    result = load_config(tmp_path / "absent.toml")

    assert result.cloud.api_key == "from-env"


def test_file_api_key_wins_over_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text('[cloud]\napi_key = "from-file"\n')
    monkeypatch.setenv(API_KEY_ENV, "from-env")

    assert load_config(config_path).cloud.api_key == "from-file"


def test_with_api_key_returns_updated_copy() -> None:
    config = AppConfig()

    updated = config.with_api_key("abc")

    assert updated.cloud.api_key == "abc"
    assert config.cloud.api_key is None
