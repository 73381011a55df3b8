"""CLI tests."""

import json

import pytest
from typer.testing import CliRunner

from seller_metrics_server import __version__, cli

runner = CliRunner()


@pytest.fixture
def logging_calls(monkeypatch) -> list[dict]:
    calls: list[dict] = []
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: calls.append(kwargs))
    return calls


def test_version() -> None:
    result = runner.invoke(cli.app, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_sync_prints_outcome_for_one_user(monkeypatch, logging_calls) -> None:
    calls = []

    async def fake_run_sync(user_id):
        calls.append(user_id)
        return {"user_id": user_id, "status": "success"}

    monkeypatch.setattr(cli, "_run_sync", fake_run_sync)

    result = runner.invoke(cli.app, ["sync", "--user", "user-1"])

    assert result.exit_code == 0
    assert calls == ["user-1"]
    assert json.loads(result.output) == {"user_id": "user-1", "status": "success"}
    # logs go to stderr so stdout stays JSON
    assert len(logging_calls) == 1
    assert logging_calls[0]["stream"] is not None


def test_refresh_tokens(monkeypatch, logging_calls) -> None:
    async def fake_run_refresh():
        return {"refreshed": 2, "reauth_required": 1}

    monkeypatch.setattr(cli, "_run_refresh", fake_run_refresh)

    result = runner.invoke(cli.app, ["refresh-tokens"])

    assert result.exit_code == 0
    assert json.loads(result.output)["refreshed"] == 2
    assert len(logging_calls) == 1
