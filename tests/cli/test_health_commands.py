"""CLI health commands: health-check, health-schedule, health-cancel, health-history."""

from __future__ import annotations

import json
from pathlib import Path

from click.testing import CliRunner

from caplife.cli import cli


def _deploy(runner: CliRunner, template_id: str = "tpl-web") -> None:
    result = runner.invoke(cli, ["deploy", template_id])
    assert result.exit_code == 0, result.output


class TestHealthCheck:
    def test_deployed_template_is_healthy(self, cli_with_templates: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_with_templates
        _deploy(runner)
        r = runner.invoke(cli, ["health-check", "tpl-web"])
        assert r.exit_code == 0
        assert "tpl-web v1: healthy" in r.output
        assert "[ok  ] accessibility" in r.output
        shown = json.loads(runner.invoke(cli, ["show", "tpl-web", "--json"]).output)
        assert shown["last_known_good"] == 1

    def test_undeployed_template_is_degraded(self, cli_with_templates: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_with_templates
        data = json.loads(runner.invoke(cli, ["health-check", "tpl-web", "--json"]).output)
        assert data["status"] == "degraded"
        assert data["scheduled"] is False
        access = next(c for c in data["checks"] if c["name"] == "accessibility")
        assert access["status"] == "warn"

    def test_unknown_template(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        r = runner.invoke(cli, ["health-check", "ghost"])
        assert r.exit_code == 1
        assert "Not found" in r.output


class TestSchedule:
    def test_schedule_requires_deployment(self, cli_with_templates: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_with_templates
        r = runner.invoke(cli, ["health-schedule", "tpl-web", "--json"])
        assert r.exit_code == 1
        assert "deployment confirmation" in json.loads(r.output)["error"]

    def test_schedule_and_cancel(self, cli_with_templates: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_with_templates
        _deploy(runner)
        r = runner.invoke(cli, ["health-schedule", "tpl-web", "--interval", "15"])
        assert r.exit_code == 0, r.output
        assert "Monitoring tpl-web every 15 min" in r.output

        cancelled = runner.invoke(cli, ["health-cancel", "tpl-web"])
        assert cancelled.exit_code == 0
        assert "Cancelled monitoring of tpl-web" in cancelled.output

    def test_schedule_default_interval(self, cli_with_templates: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_with_templates
        _deploy(runner)
        data = json.loads(runner.invoke(cli, ["health-schedule", "tpl-web", "--json"]).output)
        assert data["state"] == "scheduled"
        assert data["interval_minutes"] > 0

    def test_bad_interval(self, cli_with_templates: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_with_templates
        _deploy(runner)
        r = runner.invoke(cli, ["health-schedule", "tpl-web", "--interval", "0", "--json"])
        assert r.exit_code == 1
        assert json.loads(r.output)["code"] == "VALIDATION_ERROR"

    def test_cancel_unmonitored(self, cli_with_templates: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_with_templates
        r = runner.invoke(cli, ["health-cancel", "tpl-web", "--json"])
        assert r.exit_code == 1
        assert json.loads(r.output)["code"] == "NOT_FOUND"


class TestHistory:
    def test_history_lists_newest_first_with_trend(self, cli_with_templates: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_with_templates
        runner.invoke(cli, ["health-check", "tpl-web"])
        _deploy(runner)
        runner.invoke(cli, ["health-check", "tpl-web"])

        data = json.loads(runner.invoke(cli, ["health-history", "tpl-web", "--json"]).output)
        assert data["template_id"] == "tpl-web"
        assert [r["status"] for r in data["results"]] == ["healthy", "degraded"]
        assert data["trend"] == "improving"

        text = runner.invoke(cli, ["health-history", "tpl-web", "--limit", "1"])
        assert text.output.count("(on-demand)") == 1
        assert "Trend:" in text.output
