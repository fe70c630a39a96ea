"""CLI commands for migration, deprecation, rollback and the clock: migrate-*, deprecate, rollback, tick."""

from __future__ import annotations

import click

from caplife.cli_common import emit, fail, get_engine
from caplife.db_plans import MigrationPlan
from caplife.errors import LifecycleError
from caplife.validation import sanitize_reason

_PHASE_MARKERS = {"pending": "[    ]", "running": "[RUN] ", "completed": "[DONE]", "failed": "[FAIL]"}


def _echo_plan(plan: MigrationPlan) -> None:
    target = plan.target_id or f"{plan.source_id} (next version)"
    click.echo(f"Plan {plan.id}: {plan.source_id} -> {target} [{plan.status}]")
    click.echo(f"  Strategy: {plan.strategy} (~{plan.estimated_duration})")
    for phase in plan.phases:
        marker = _PHASE_MARKERS.get(phase.status, "[?]   ")
        rollback = " (rollback point)" if phase.rollback_point else ""
        click.echo(f"  {marker} {phase.id}{rollback}")
        if phase.error:
            click.echo(f"         {phase.error}")
    if plan.error:
        click.echo(f"  Error: {plan.error}")


@click.command("migrate-plan")
@click.argument("source_id")
@click.option("--target", "target_id", default=None, help="Target template (default: next version of the source)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def migrate_plan(ctx: click.Context, source_id: str, target_id: str | None, as_json: bool) -> None:
    """Create a migration plan."""
    with get_engine() as engine:
        try:
            plan = engine.migrations.create_plan(source_id, target_id, actor=ctx.obj["actor"])
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(plan.to_dict())
            return
        _echo_plan(plan)


@click.command("migrate-show")
@click.argument("plan_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def migrate_show(plan_id: str, as_json: bool) -> None:
    """Show a migration plan and its phases."""
    with get_engine() as engine:
        try:
            plan = engine.migrations.get_plan(plan_id)
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(plan.to_dict())
            return
        _echo_plan(plan)


@click.command("migrate-run")
@click.argument("plan_id")
@click.option("--phase", "phase_id", default=None, help="Run only this phase (default: all remaining)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def migrate_run(ctx: click.Context, plan_id: str, phase_id: str | None, as_json: bool) -> None:
    """Execute one phase, or every remaining phase, of a migration plan."""
    with get_engine() as engine:
        try:
            if phase_id is not None:
                plan = engine.migrations.execute_phase(plan_id, phase_id, actor=ctx.obj["actor"])
            else:
                plan = engine.migrations.run_all(plan_id, actor=ctx.obj["actor"])
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(plan.to_dict())
            return
        _echo_plan(plan)


@click.command("migrate-retarget")
@click.argument("plan_id")
@click.argument("target_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def migrate_retarget(ctx: click.Context, plan_id: str, target_id: str, as_json: bool) -> None:
    """Point a frozen migration plan at a new target."""
    with get_engine() as engine:
        try:
            plan = engine.migrations.retarget_plan(plan_id, target_id, actor=ctx.obj["actor"])
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(plan.to_dict())
            return
        _echo_plan(plan)


@click.command("migrate-abort")
@click.argument("plan_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def migrate_abort(ctx: click.Context, plan_id: str, as_json: bool) -> None:
    """Abort a migration plan (waits for a running phase to finish)."""
    with get_engine() as engine:
        try:
            plan = engine.migrations.abort_plan(plan_id, actor=ctx.obj["actor"])
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(plan.to_dict())
            return
        if plan.status == "aborted":
            click.echo(f"Aborted: {plan.id}")
        else:
            click.echo(f"Abort requested: {plan.id} (stops after the running phase)")


@click.command("deprecate")
@click.argument("template_id")
@click.option("--reason", "-r", required=True, help="Why the template is being deprecated")
@click.option("--months", "timeline_months", required=True, type=int, help="Months until end-of-life")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def deprecate(ctx: click.Context, template_id: str, reason: str, timeline_months: int, as_json: bool) -> None:
    """Schedule a template for deprecation and retirement."""
    reason, err = sanitize_reason(reason)
    if err:
        fail(err, as_json=as_json)
    with get_engine() as engine:
        try:
            plan = engine.deprecations.create_plan(template_id, reason, timeline_months, actor=ctx.obj["actor"])
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(plan.to_dict())
            return
        click.echo(f"Deprecation {plan.id}: {template_id} ({plan.support_level} support)")
        click.echo(f"  End of life: {plan.end_of_life}")
        for n in plan.notifications:
            click.echo(f"  {n.scheduled_at[:10]} {n.kind} -> {n.recipient_class}")
        if plan.replacements:
            click.echo(f"  Replacements: {', '.join(plan.replacements)}")


@click.command("rollback")
@click.argument("template_id")
@click.option("--reason", "-r", required=True, help="Why the template is being rolled back")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def rollback(ctx: click.Context, template_id: str, reason: str, as_json: bool) -> None:
    """Revert a template to its last-known-good version."""
    reason, err = sanitize_reason(reason)
    if err:
        fail(err, as_json=as_json)
    with get_engine() as engine:
        try:
            result = engine.rollbacks.rollback(template_id, reason, actor=ctx.obj["actor"])
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(result.to_dict())
            return
        click.echo(f"Rolled back: {template_id} v{result.from_version} -> v{result.target_version}")
        for d in result.notified:
            status = "ok" if d.delivered else f"failed ({d.error})"
            click.echo(f"  Notified {d.recipient}: {status}")


@click.command("tick")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def tick(as_json: bool) -> None:
    """Advance the health and deprecation clocks once."""
    with get_engine() as engine:
        try:
            result = engine.tick()
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(
                {
                    "health": [r.to_dict() for r in result.health],
                    "deprecation": {
                        "sent": result.deprecation.sent,
                        "failed": result.deprecation.failed,
                        "retired": result.deprecation.retired,
                    },
                }
            )
            return
        click.echo(f"Health checks: {len(result.health)}")
        click.echo(f"Notices sent: {len(result.deprecation.sent)} ({len(result.deprecation.failed)} failed)")
        click.echo(f"Retired: {', '.join(result.deprecation.retired) or '-'}")


COMMANDS = [migrate_plan, migrate_show, migrate_run, migrate_retarget, migrate_abort, deprecate, rollback, tick]
