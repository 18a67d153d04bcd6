"""CLI smoke tests against a throwaway SQLite database."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from marketetl.cli import app
from marketetl.config import reset_config

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("ARCHIVE_SCRATCH_DIR", str(tmp_path / "scratch"))
    reset_config()
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0, result.output
    return tmp_path


def test_ingest_then_query(cli_env: Path, sep_csv: Path):
    result = runner.invoke(app, ["has-data", "AAPL", "2024-01-02"])
    assert result.exit_code == 1

    result = runner.invoke(app, ["ingest", str(sep_csv)])
    assert result.exit_code == 0, result.output
    assert "SUCCESS" in result.output

    result = runner.invoke(app, ["has-data", "aapl", "2024-01-02"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["status", "--last", "1"])
    assert result.exit_code == 0, result.output
    assert "1/1 ok" in result.output


def test_transform_command(cli_env: Path):
    result = runner.invoke(app, ["transform", "--asset", "stock"])

    assert result.exit_code == 0, result.output
    assert "SUCCESS" in result.output


def test_unknown_asset(cli_env: Path):
    result = runner.invoke(app, ["transform", "--asset", "crypto"])

    assert result.exit_code == 1


def test_bad_date(cli_env: Path):
    result = runner.invoke(app, ["has-data", "AAPL", "someday"])

    assert result.exit_code == 1
    assert "Unrecognized date" in result.output


def test_missing_ingest_file(cli_env: Path):
    result = runner.invoke(app, ["ingest", str(cli_env / "nope.csv")])

    assert result.exit_code == 1


def test_cleanup(cli_env: Path):
    scratch = cli_env / "scratch"
    scratch.mkdir()
    (scratch / "download.zip").write_text("x")

    result = runner.invoke(app, ["cleanup"])

    assert result.exit_code == 0, result.output
    assert "Removed 0 entries" in result.output
    assert (scratch / "download.zip").exists()
