import json
import os
import textwrap

import pytest
from click.testing import CliRunner

from flowci.cli import EXIT_FAILED, EXIT_USAGE, cli

PIPELINE = """
    parameters:
      release_branch:
        type: boolean
        default: false
    jobs:
      test:
        docker: [{image: x}]
        steps:
          - run: mkdir -p out && echo ok > out/result.txt
          - store_artifacts: {path: out/result.txt}
      ship:
        machine: true
        steps: [{run: echo shipping}]
    workflows:
      ci:
        when:
          not: << pipeline.parameters.release_branch >>
        jobs:
          - test
          - ship:
              requires: [test]
              filters: {branches: {only: main}}
      release:
        when: << pipeline.parameters.release_branch >>
        jobs: [ship]
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("FLOWCI_"):
            monkeypatch.delenv(name)
    (tmp_path / "flowci_pipeline.yml").write_text(textwrap.dedent(PIPELINE))
    return tmp_path


def test_validate(runner, project):
    result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 0, result.output
    assert "OK (2 job(s), 2 workflow(s), 1 parameter(s))" in result.output


def test_validate_exclusive_workflows(runner, project):
    result = runner.invoke(cli, ["validate", "--exclusive", "ci,release"])
    assert result.exit_code == 0, result.output
    assert "Exactly one of" in result.output


def test_validate_reports_location(runner, project):
    (project / "broken.yml").write_text("jobs: {}\nworkflows:\n  ci:\n    jobs: [ghost]\n")
    result = runner.invoke(cli, ["validate", "--pipeline", "broken.yml"])
    assert result.exit_code == EXIT_USAGE
    assert "Invalid pipeline" in result.output
    assert "workflows.ci.jobs.ghost" in result.output


def test_missing_pipeline_file(runner, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(cli, ["validate"])
    assert result.exit_code == EXIT_USAGE
    assert "No pipeline file found" in result.output


def test_plan(runner, project):
    result = runner.invoke(cli, ["plan", "--branch", "feature/x"])
    assert result.exit_code == 0, result.output
    assert "release (skipped: workflow not eligible)" in result.output
    assert "ci/test (will run)" in result.output
    assert "ci/ship (skipped: branch filter)" in result.output


def test_plan_with_parameter(runner, project):
    result = runner.invoke(cli, ["plan", "--branch", "main", "--param", "release_branch=true"])
    assert result.exit_code == 0, result.output
    assert "release/ship (will run)" in result.output
    assert "ci (skipped: workflow not eligible)" in result.output


def test_run_writes_report_and_artifacts(runner, project):
    storage = project / "storage"
    result = runner.invoke(
        cli,
        ["run", "--branch", "main", "--commit", "abc", "--storage-dir", str(storage), "--report", "report.json"],
    )
    assert result.exit_code == 0, result.output
    assert "PIPELINE: SUCCESS" in result.output

    report = json.loads((project / "report.json").read_text())
    assert report["status"] == "success"
    assert report["order"] == ["ci/test", "ci/ship"]

    listed = runner.invoke(cli, ["artifacts", "list", report["invocation_id"], "--storage-dir", str(storage)])
    assert listed.exit_code == 0, listed.output
    assert "ci/test/result.txt" in listed.output

    fetched = runner.invoke(
        cli,
        ["artifacts", "get", report["invocation_id"], "ci/test", "result.txt", "--storage-dir", str(storage)],
    )
    assert fetched.exit_code == 0
    assert fetched.output == "ok\n"


def test_run_failure_exit_code(runner, project):
    (project / "fail.yml").write_text(
        "jobs:\n  j:\n    docker: [{image: x}]\n    steps: [{run: exit 1}]\n"
        "workflows:\n  ci:\n    jobs: [j]\n"
    )
    result = runner.invoke(
        cli, ["run", "--pipeline", "fail.yml", "--branch", "main", "--commit", "", "--storage-dir", "s"]
    )
    assert result.exit_code == EXIT_FAILED
    assert "PIPELINE: FAILED" in result.output


def test_run_rejects_unknown_parameter(runner, project):
    result = runner.invoke(
        cli, ["run", "--branch", "main", "--commit", "", "--param", "nope=1", "--storage-dir", "s"]
    )
    assert result.exit_code == EXIT_USAGE
    assert "Invalid trigger" in result.output


def test_param_needs_equals(runner, project):
    result = runner.invoke(cli, ["plan", "--branch", "main", "--param", "release_branch"])
    assert result.exit_code == 2
    assert "NAME=VALUE" in result.output
