"""Fixtures for CLI interface tests."""

from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from caplife.cli import cli


@pytest.fixture
def cli_in_project(tmp_path: Path, cli_runner: CliRunner) -> Generator[tuple[CliRunner, Path], None, None]:
    """Initialize a caplife project in tmp_path and return (runner, project_root)."""
    original_cwd = os.getcwd()
    os.chdir(str(tmp_path))
    result = cli_runner.invoke(cli, ["init", "--prefix", "test"])
    assert result.exit_code == 0
    yield cli_runner, tmp_path
    os.chdir(original_cwd)


@pytest.fixture
def cli_with_templates(cli_in_project: tuple[CliRunner, Path]) -> tuple[CliRunner, Path]:
    """Project with cap-web holding tpl-web and tpl-super (a near-superset of tpl-web)."""
    runner, root = cli_in_project
    for args in (
        ["capability-create", "Web delivery", "--id", "cap-web", "--maturity", "L2"],
        ["register", "cap-web", "web", "--id", "tpl-web", "-p", "env=string", "-s", "build", "-s", "test", "-s", "deploy", "-t", "web", "-t", "deploy"],
        [
            "register", "cap-web", "web canary", "--id", "tpl-super", "-p", "env=string",
            "-s", "build", "-s", "test", "-s", "scan", "-s", "deploy", "-t", "web", "-t", "deploy", "-t", "canary",
        ],
    ):
        result = runner.invoke(cli, args)
        assert result.exit_code == 0, result.output
    return runner, root


def _extract_id(create_output: str) -> str:
    """Extract the record ID from 'Created capability: test-cap-abc123' / 'Plan test-mig-...:' output."""
    first = create_output.splitlines()[0]
    if first.startswith("Plan "):
        return first.split(":")[0].removeprefix("Plan ").strip()
    return first.split(":", 1)[1].strip().split()[0]
