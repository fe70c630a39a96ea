"""CLI commands for health monitoring and the API server: health-*, serve."""

from __future__ import annotations

import click

from caplife.cli_common import emit, fail, get_engine
from caplife.db_health import HealthCheckResult
from caplife.errors import LifecycleError

_CHECK_ICONS = {"pass": "ok  ", "warn": "warn", "fail": "FAIL"}


def _echo_result(result: HealthCheckResult) -> None:
    click.echo(f"{result.template_id} v{result.version}: {result.status}")
    for c in result.checks:
        click.echo(f"  [{_CHECK_ICONS.get(c.status, c.status)}] {c.name} ({c.latency_ms:.1f}ms) {c.message}")
    for rec in result.recommendations:
        click.echo(f"  - {rec}")
    if result.next_scheduled:
        click.echo(f"  Next scheduled check: {result.next_scheduled}")


@click.command("health-check")
@click.argument("template_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def health_check(template_id: str, as_json: bool) -> None:
    """Run an on-demand health check."""
    with get_engine() as engine:
        try:
            result = engine.health.check(template_id)
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(result.to_dict())
            return
        _echo_result(result)


@click.command("health-schedule")
@click.argument("template_id")
@click.option("--interval", "interval_minutes", default=None, type=int, help="Minutes between checks (default: from config)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def health_schedule(ctx: click.Context, template_id: str, interval_minutes: int | None, as_json: bool) -> None:
    """Start (or reset) periodic monitoring of a deployed template."""
    with get_engine() as engine:
        try:
            schedule = engine.health.schedule(template_id, interval_minutes, actor=ctx.obj["actor"])
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(schedule.to_dict())
            return
        click.echo(f"Monitoring {template_id} every {schedule.interval_minutes} min")
        click.echo(f"  First check due: {schedule.next_due_at}")


@click.command("health-cancel")
@click.argument("template_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def health_cancel(ctx: click.Context, template_id: str, as_json: bool) -> None:
    """Stop monitoring a template."""
    with get_engine() as engine:
        try:
            schedule = engine.health.cancel(template_id, actor=ctx.obj["actor"])
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(schedule.to_dict())
            return
        if schedule.state == "cancelled":
            click.echo(f"Cancelled monitoring of {template_id}")
        else:
            click.echo(f"Cancel requested for {template_id} (after the running check)")


@click.command("health-history")
@click.argument("template_id")
@click.option("--limit", default=10, type=int, help="Number of results (default: 10)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def health_history(template_id: str, limit: int, as_json: bool) -> None:
    """Show recent health results and the trend."""
    with get_engine() as engine:
        try:
            results = engine.health.history(template_id, limit=limit)
            trend = engine.health.trend(template_id)
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit({"template_id": template_id, "trend": trend, "results": [r.to_dict() for r in results]})
            return
        for r in results:
            kind = "scheduled" if r.scheduled else "on-demand"
            click.echo(f"{r.timestamp} v{r.version} {r.status} ({kind})")
        click.echo(f"\nTrend: {trend}")


@click.command("serve")
@click.option("--port", default=8377, type=int, help="Port (default: 8377)")
def serve(port: int) -> None:
    """Run the HTTP API for the current project."""
    from caplife.api import main as api_main

    api_main(port=port)


COMMANDS = [health_check, health_schedule, health_cancel, health_history, serve]
