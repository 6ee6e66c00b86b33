from __future__ import annotations

import textwrap

import pytest
from click.testing import CliRunner

from replayci.cli import cli


def _write(path, text):
    path.write_text(textwrap.dedent(text))
    return str(path)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def pipeline(tmp_path):
    return _write(
        tmp_path / "pipeline.yml",
        """
        name: ci
        on: [push]
        jobs:
          compile:
            steps:
              - run: echo compiled
          scan:
            needs: compile
            steps:
              - run: echo scanned
          test:
            needs: [compile, scan]
            steps:
              - run: echo tested
        """,
    )


def test_run_success(runner, pipeline):
    result = runner.invoke(cli, ["run", pipeline, "--concurrency", "2", "--no-archive"])
    assert result.exit_code == 0, result.output
    assert "RESULTS (SUCCEEDED)" in result.output
    assert "compile: SUCCESS" in result.output


def test_run_failure_exits_1(runner, tmp_path):
    path = _write(
        tmp_path / "fail.yml",
        """
        jobs:
          build:
            steps:
              - run: exit 3
          deploy:
            needs: build
            steps:
              - run: echo never
        """,
    )
    result = runner.invoke(cli, ["run", path, "--no-archive"])
    assert result.exit_code == 1
    assert "deploy: SKIPPED" in result.output


@pytest.mark.parametrize(
    "body",
    [
        "jobs:\n  a:\n    needs: b\n    steps:\n      - run: 'true'\n  b:\n    needs: a\n    steps:\n      - run: 'true'\n",
        "jobs:\n  a:\n    needs: ghost\n    steps:\n      - run: 'true'\n",
        "jobs:\n  a:\n    if: success(\n    steps:\n      - run: 'true'\n",
        "jobs:\n  a:\n    steps: []\n",
    ],
    ids=["cycle", "unknown-dependency", "malformed-condition", "invalid-document"],
)
def test_definition_errors_exit_2(runner, tmp_path, body):
    path = tmp_path / "bad.yml"
    path.write_text(body)
    result = runner.invoke(cli, ["run", str(path), "--no-archive"])
    assert result.exit_code == 2, result.output
    assert "ERROR: Invalid workflow" in result.output


def test_untriggered_event_exits_0(runner, pipeline):
    result = runner.invoke(cli, ["run", pipeline, "--event", "release", "--no-archive"])
    assert result.exit_code == 0
    assert "No jobs triggered" in result.output


def test_secrets_never_printed(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("REPLAYCI_SECRET_API_KEY", "s3cr3t-key")
    secrets = tmp_path / "secrets.env"
    secrets.write_text("TOKEN=hunter2\n")
    path = _write(
        tmp_path / "leak.yml",
        """
        jobs:
          leak:
            steps:
              - run: echo ${{ secrets.TOKEN }} ${{ secrets.API_KEY }} && exit 1
        """,
    )
    result = runner.invoke(cli, ["--debug", "run", path, "--secrets-file", str(secrets), "--no-archive"])
    assert result.exit_code == 1
    assert "*** ***" in result.output
    assert "hunter2" not in result.output
    assert "s3cr3t-key" not in result.output


def test_variables(runner, tmp_path):
    path = _write(
        tmp_path / "vars.yml",
        """
        jobs:
          check:
            steps:
              - run: test "${{ vars.REGION }}" = eu
        """,
    )
    assert runner.invoke(cli, ["run", path, "--var", "REGION=eu", "--no-archive"]).exit_code == 0
    assert runner.invoke(cli, ["run", path, "--var", "REGION=us", "--no-archive"]).exit_code == 1

    bad = runner.invoke(cli, ["run", path, "--var", "REGION", "--no-archive"])
    assert bad.exit_code == 1
    assert "KEY=VALUE" in bad.output


def test_run_is_archived_and_listed(runner, pipeline):
    assert runner.invoke(cli, ["run", pipeline]).exit_code == 0
    result = runner.invoke(cli, ["history", "--limit", "5"])
    assert result.exit_code == 0, result.output
    assert "succeeded" in result.output
    assert "ci (push)" in result.output


def test_history_empty(runner):
    result = runner.invoke(cli, ["history"])
    assert result.exit_code == 0
    assert "No archived runs." in result.output


def test_plan(runner, pipeline):
    result = runner.invoke(cli, ["plan", pipeline])
    assert result.exit_code == 0
    assert "=== Stage 1: compile ===" in result.output
    assert "=== Stage 3: test ===" in result.output


def test_plan_rejects_cycle(runner, tmp_path):
    path = tmp_path / "cycle.yml"
    path.write_text("jobs:\n  a:\n    needs: a\n    steps:\n      - run: 'true'\n")
    result = runner.invoke(cli, ["plan", str(path)])
    assert result.exit_code == 2
    assert "cycle" in result.output
