import json
import sys
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from relayci.cli import EXIT_CONFIG, EXIT_FAILED, cli

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="runs POSIX shell steps")

PASSING = textwrap.dedent(
    """
    jobs:
      build:
        steps:
          - run: echo building > built.txt
      test:
        needs: build
        strategy:
          matrix:
            shard: [1, 2]
        steps:
          - run: test -f built.txt
    """
)

FAILING = textwrap.dedent(
    """
    jobs:
      build:
        steps:
          - run: exit 4
      test:
        needs: build
        steps:
          - run: echo never
    """
)

CYCLE = textwrap.dedent(
    """
    jobs:
      a:
        needs: b
        steps:
          - run: "true"
      b:
        needs: a
        steps:
          - run: "true"
    """
)


def _write(name: str, text: str) -> None:
    Path(name).write_text(text, encoding="utf-8")


def test_run_succeeds():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write(".relayci.yml", PASSING)
        result = runner.invoke(cli, ["run", "--workers", "2"])
        assert result.exit_code == 0, result.output
        assert "JOB SUCCEEDED: build" in result.output
        assert "3 succeeded, 0 failed, 0 skipped" in result.output


def test_run_failure_exits_one_and_writes_summary():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write(".relayci.yml", FAILING)
        result = runner.invoke(cli, ["run", "--summary-json", "summary.json"])
        assert result.exit_code == EXIT_FAILED
        assert "test: SKIPPED <- build" in result.output

        data = json.loads(Path("summary.json").read_text(encoding="utf-8"))
        assert data["ok"] is False
        assert data["instances"][0]["steps"][0]["exit_code"] == 4
        assert data["instances"][1]["skipped_because"] == ["build"]


def test_cycle_is_a_configuration_error():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write(".relayci.yml", CYCLE)
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == EXIT_CONFIG
        assert "Invalid workflow" in result.output


def test_missing_workflow():
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == EXIT_CONFIG
        assert "No workflow file found" in result.output

        result = runner.invoke(cli, ["run", "--workflow", "nope.yml"])
        assert result.exit_code == EXIT_CONFIG


def test_multiple_workflows_need_a_choice():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write(".relayci.yml", PASSING)
        _write("other_workflow.py", "JOBS = []\n")
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == EXIT_CONFIG
        assert "Multiple workflow files found" in result.output

        result = runner.invoke(cli, ["plan", "--workflow", ".relayci.yml"])
        assert result.exit_code == 0


def test_invalid_document_is_reported():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write(".relayci.yml", "jobs:\n  a:\n    steps: []\n")
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == EXIT_CONFIG
        assert "Failed to load workflow" in result.output


def test_plan_prints_stages():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write(".relayci.yml", PASSING)
        result = runner.invoke(cli, ["plan"])
        assert result.exit_code == 0, result.output
        assert "=== Stage 1 ===\n  build" in result.output
        assert "=== Stage 2 ===" in result.output
        assert "test (1)" in result.output
        assert "test (2)" in result.output
        assert not Path("built.txt").exists()


def test_invalid_environment_configuration(monkeypatch):
    monkeypatch.setenv("RELAYCI_SKIPPED_NEEDS", "sometimes")
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write(".relayci.yml", PASSING)
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == EXIT_CONFIG
        assert "Invalid configuration" in result.output
