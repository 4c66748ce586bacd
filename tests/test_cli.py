"""Tests for the command-line interface."""

import json

import pytest
from click.testing import CliRunner

from forum_migration.cli.context import MigrationContext
from forum_migration.cli.main import cli
from forum_migration.entities import EntityKind

from conftest import FakeSource, FakeTarget, board_rows


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        f"""
source:
  url: sqlite:///{tmp_path / "phpbb.db"}
  batch_size: 2
target:
  url: https://forum.example.com
  api_key: test-key
state:
  db_path: {tmp_path / "state.db"}
paths:
  report_dir: {tmp_path / "reports"}
logging:
  disable_progress: true
"""
    )
    return path


@pytest.fixture
def fake_target(monkeypatch) -> FakeTarget:
    target = FakeTarget()
    monkeypatch.setattr(
        "forum_migration.cli.context.PhpBB3Adapter", lambda config: FakeSource(board_rows())
    )
    monkeypatch.setattr(MigrationContext, "create_target_client", lambda self: target)
    return target


@pytest.fixture
def invoke(tmp_path, config_file):
    runner = CliRunner()

    def _invoke(*args, input=None):
        return runner.invoke(
            cli,
            ["--config", str(config_file), "--log-file", str(tmp_path / "cli.log"), *args],
            input=input,
        )

    return _invoke


def test_requires_config(tmp_path):
    result = CliRunner().invoke(
        cli, ["--log-file", str(tmp_path / "cli.log"), "state", "show"], env={}
    )

    assert result.exit_code == 2
    assert "Configuration file required" in result.output


def test_config_validate(invoke):
    result = invoke("config", "validate")

    assert result.exit_code == 0, result.output
    assert "Configuration is valid" in result.output


def test_config_show_masks_api_key(invoke):
    result = invoke("config", "show")

    assert result.exit_code == 0, result.output
    assert "test-key" not in result.output
    assert "********" in result.output


def test_migrate_run(invoke, fake_target, tmp_path):
    result = invoke("migrate", "run")

    assert result.exit_code == 0, result.output
    assert "Import completed" in result.output
    assert len(fake_target.created_of(EntityKind.USER)) == 3
    assert fake_target.closed
    assert len(list((tmp_path / "reports").glob("import_report_*.json"))) == 1

    status = invoke("migrate", "status")
    assert status.exit_code == 0, status.output
    assert "Import Runs" in status.output


def test_migrate_run_dry_run_only(invoke, fake_target):
    result = invoke("migrate", "run", "--dry-run", "--only", "user", "--no-report")

    assert result.exit_code == 0, result.output
    assert fake_target.created == []


def test_migrate_run_rejects_unknown_kind(invoke, fake_target):
    result = invoke("migrate", "run", "--only", "topic")

    assert result.exit_code != 0


def test_state_commands(invoke, fake_target, tmp_path):
    invoke("migrate", "run", "--no-report")

    show = invoke("state", "show")
    assert show.exit_code == 0, show.output
    assert "user" in show.output

    output = tmp_path / "mappings.json"
    export = invoke("state", "export", str(output))
    assert export.exit_code == 0, export.output
    assert json.loads(output.read_text())["stats"]["user"] == 3

    declined = invoke("state", "reset-cursors", input="n\n")
    assert declined.exit_code == 0
    assert "Operation cancelled" in declined.output

    reset = invoke("state", "reset-cursors", "--kind", "user", "--yes")
    assert reset.exit_code == 0, reset.output
    assert "Removed 1 saved cursors" in reset.output
