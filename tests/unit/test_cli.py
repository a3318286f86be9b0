"""Tests for the click command line."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from lisa import __version__
from lisa.__main__ import cli
from lisa.config import LisaConfig

pytestmark = pytest.mark.unit


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_no_command_prints_help(runner: CliRunner) -> None:
    result = runner.invoke(cli, [])
    assert result.exit_code == 0
    assert "Usage" in result.output


def test_init_writes_default_config(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["init"])
        assert result.exit_code == 0, result.output

        path = LisaConfig.default_path(Path.cwd())
        assert path.exists()
        assert LisaConfig.load(path) == LisaConfig()


def test_init_refuses_to_overwrite(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        runner.invoke(cli, ["init"])
        result = runner.invoke(cli, ["init"])
        assert result.exit_code != 0
        assert "already exists" in result.output

        assert runner.invoke(cli, ["init", "--force"]).exit_code == 0


def test_providers_lists_builtins(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("shutil.which", lambda name: None)
    result = runner.invoke(cli, ["providers"])
    assert result.exit_code == 0, result.output
    assert "claude" in result.output
    assert "aider" in result.output


def test_providers_marks_installed(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "shutil.which", lambda name: "/usr/local/bin/claude" if name == "claude" else None
    )
    result = runner.invoke(cli, ["providers"])
    assert result.exit_code == 0, result.output
    assert "yes" in result.output
    assert "no" in result.output


def test_run_rejects_bad_config(runner: CliRunner) -> None:
    with runner.isolated_filesystem():
        Path("bad.toml").write_text("provider = [")
        result = runner.invoke(cli, ["run", "--config", "bad.toml", "--dry-run"])
        assert result.exit_code != 0
