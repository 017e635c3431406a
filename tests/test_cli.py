"""CLI commands: --version, validate, run."""

import pytest
from typer.testing import CliRunner

from taskweave.cli.main import app
from taskweave.version import __version__

runner = CliRunner()

LINEAR_YAML = """\
id: wf-linear
name: Linear
steps:
  - id: start
    name: Start
    stepType: trigger
  - id: review
    name: Review {{input.ticket}}
    stepType: manual
"""

BROKEN_YAML = """\
id: wf-broken
name: Broken
steps:
  - id: hook
    name: Hook
    stepType: webhook
"""


@pytest.fixture
def linear_file(tmp_path):
    path = tmp_path / "linear.yaml"
    path.write_text(LINEAR_YAML)
    return path


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"taskweave v{__version__}" in result.output


def test_validate_ok(linear_file):
    result = runner.invoke(app, ["validate", str(linear_file)])
    assert result.exit_code == 0, result.output
    assert "✓" in result.output
    assert "Linear" in result.output


def test_validate_reports_errors(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text(BROKEN_YAML)
    result = runner.invoke(app, ["validate", str(path)])
    assert result.exit_code == 1
    assert "✗" in result.output
    assert "has no URL" in result.output


def test_validate_missing_file(tmp_path):
    result = runner.invoke(app, ["validate", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_validate_not_a_workflow(tmp_path):
    path = tmp_path / "junk.yaml"
    path.write_text("name: 3\nsteps: nope\n")
    result = runner.invoke(app, ["validate", str(path)])
    assert result.exit_code == 1


def test_run_prints_tasks(linear_file):
    result = runner.invoke(app, ["run", str(linear_file), "--input", '{"ticket": 7}'])
    assert result.exit_code == 0, result.output
    assert "running" in result.output
    assert "review" in result.output


def test_run_rejects_bad_input(linear_file):
    result = runner.invoke(app, ["run", str(linear_file), "--input", "{not json"])
    assert result.exit_code != 0


def test_run_unknown_workflow(linear_file):
    result = runner.invoke(app, ["run", str(linear_file), "--workflow", "ghost"])
    assert result.exit_code == 1
    assert "WorkflowNotFound" in result.output
