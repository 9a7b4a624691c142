"""Tests for the command line entry point."""

from __future__ import annotations

import asyncio

import pytest

from crdbextra import app
from crdbextra.config import AppConfig
from crdbextra.errors import ConfigurationError, InvalidResourceIdError, StatementParseError


@pytest.fixture(autouse=True)
def _default_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "load_config", lambda path=None: AppConfig())


def _fake_import(result: str | None = None, error: Exception | None = None):  # type: ignore[no-untyped-def]
    calls: list[str] = []

    async def _import(config: AppConfig, resource_id: str) -> str | None:
        calls.append(resource_id)
        if error is not None:
            raise error
        return result

    _import.calls = calls  # type: ignore[attr-defined]
    return _import


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        app.build_parser().parse_args([])


def test_import_prints_state(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    fake = _fake_import('{"id": "cursor|c1|orders"}')
    monkeypatch.setattr(app, "import_resource", fake)

    code = app.main(["import", "cursor|c1|orders"])

    assert code == 0
    assert fake.calls == ["cursor|c1|orders"]
    assert capsys.readouterr().out.strip() == '{"id": "cursor|c1|orders"}'


def test_missing_resource_exits_nonzero(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr(app, "import_resource", _fake_import(None))

    code = app.main(["import", "cursor|c1|orders"])

    assert code == 1
    assert "resource cursor|c1|orders not found" in capsys.readouterr().err


@pytest.mark.parametrize(
    "error",
    [
        InvalidResourceIdError("Expected a cursor id"),
        ConfigurationError("Please set the Cockroach Cloud api key"),
        StatementParseError("backup schedule 'nightly' does not fit the declared shape", "BACKUP INTO 's3://x'"),
    ],
)
def test_errors_are_reported(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str], error: Exception
) -> None:
    monkeypatch.setattr(app, "import_resource", _fake_import(error=error))

    code = app.main(["--log-level", "debug", "import", "bogus"])

    assert code == 1
    assert capsys.readouterr().err.startswith("error: ")


def test_import_without_api_key_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        asyncio.run(app.import_resource(AppConfig(), "cursor|c1|orders"))
