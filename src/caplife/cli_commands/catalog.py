"""CLI commands for the catalog: capabilities, templates, conflicts, resolutions, deployments."""

from __future__ import annotations

import json as json_mod
from pathlib import Path

import click

from caplife.cli_common import emit, fail, get_engine
from caplife.conflicts import STRATEGY_KINDS, strategy_from_dict
from caplife.errors import LifecycleError
from caplife.gitops import DeploymentConfirmation, PipelineValidation


@click.command("capability-create")
@click.argument("name")
@click.option("--description", "-d", default="", help="Description")
@click.option("--maturity", "-m", default="L1", help="Maturity level L1-L5 (default: L1)")
@click.option("--tag", "-t", multiple=True, help="Tags (repeatable)")
@click.option("--id", "capability_id", default=None, help="Explicit capability ID")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def capability_create(
    ctx: click.Context,
    name: str,
    description: str,
    maturity: str,
    tag: tuple[str, ...],
    capability_id: str | None,
    as_json: bool,
) -> None:
    """Create a capability."""
    with get_engine() as engine:
        try:
            cap = engine.db.create_capability(
                name,
                description=description,
                maturity=maturity,
                tags=tag,
                capability_id=capability_id,
                actor=ctx.obj["actor"],
            )
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(cap.to_dict())
            return
        click.echo(f"Created capability: {cap.id}")
        click.echo(f"  Name: {cap.name}")
        click.echo(f"  Maturity: {cap.maturity.name}")


@click.command("capabilities")
@click.option("--maturity", "-m", default=None, help="Filter by maturity level")
@click.option("--tag", "-t", default=None, help="Filter by tag")
@click.option("--search", "-s", "query", default=None, help="Search name, description and tags")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def capabilities(maturity: str | None, tag: str | None, query: str | None, as_json: bool) -> None:
    """List capabilities."""
    with get_engine() as engine:
        try:
            if query is not None:
                caps = engine.db.search_capabilities(query)
            else:
                caps = engine.db.list_capabilities(maturity=maturity, tag=tag)
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit([c.to_dict() for c in caps])
            return
        for cap in caps:
            tags = f" [{', '.join(cap.tags)}]" if cap.tags else ""
            click.echo(f'{cap.maturity.name} {cap.id} "{cap.name}" ({len(cap.templates)} templates){tags}')
        click.echo(f"\n{len(caps)} capabilities")


@click.command("register")
@click.argument("capability_id")
@click.argument("name")
@click.option("--param", "-p", multiple=True, help="Parameter as name=type (repeatable)")
@click.option("--step", "-s", multiple=True, help="Workflow step, in order (repeatable)")
@click.option("--tag", "-t", multiple=True, help="Tags (repeatable)")
@click.option("--id", "template_id", default=None, help="Existing template ID to register a new version of")
@click.option("--version", "version", default=None, type=int, help="Version number (default: next)")
@click.option(
    "--pipeline",
    "pipeline_file",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file with the CI/CD validation result",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def register(
    ctx: click.Context,
    capability_id: str,
    name: str,
    param: tuple[str, ...],
    step: tuple[str, ...],
    tag: tuple[str, ...],
    template_id: str | None,
    version: int | None,
    pipeline_file: Path | None,
    as_json: bool,
) -> None:
    """Register a template, or a new version of an existing one."""
    schema: dict[str, str] = {}
    for p in param:
        if "=" not in p:
            fail(f"Invalid parameter format: {p} (expected name=type)", as_json=as_json)
        k, v = p.split("=", 1)
        schema[k.strip()] = v.strip()

    pipeline = None
    if pipeline_file is not None:
        try:
            data = json_mod.loads(pipeline_file.read_text())
        except json_mod.JSONDecodeError as e:
            fail(f"Invalid pipeline file {pipeline_file}: {e}", as_json=as_json)
        if not isinstance(data, dict):
            fail(f"Invalid pipeline file {pipeline_file}: expected a JSON object", as_json=as_json)
        try:
            pipeline = PipelineValidation.from_dict(data)
        except (LifecycleError, TypeError, ValueError) as e:
            fail(e, as_json=as_json)

    with get_engine() as engine:
        try:
            result = engine.register(
                capability_id,
                name,
                schema,
                step,
                template_id=template_id,
                version=version,
                tags=tag,
                pipeline=pipeline,
                actor=ctx.obj["actor"],
            )
        except LifecycleError as e:
            fail(e, as_json=as_json)

        if as_json:
            emit(
                {
                    "template": result.template.to_dict(),
                    "conflicts": [c.to_dict() for c in result.conflicts],
                    "proposals": [p.to_dict() for p in result.proposals],
                }
            )
            return
        t = result.template
        click.echo(f"Registered: {t.id} v{t.version}")
        click.echo(f"  Name: {t.name}")
        click.echo(f"  Steps: {' -> '.join(t.steps)}")
        for conflict, proposal in zip(result.conflicts, result.proposals, strict=True):
            click.echo(f"  Conflict: {conflict.other_id} {conflict.category} ({conflict.score:.2f}) -> {proposal.kind}")


@click.command("show")
@click.argument("template_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show(template_id: str, as_json: bool) -> None:
    """Show template details."""
    with get_engine() as engine:
        try:
            t = engine.db.get_template(template_id)
            versions = engine.db.list_template_versions(template_id)
        except LifecycleError as e:
            fail(e, as_json=as_json)

        if as_json:
            data = dict(t.to_dict())
            data["versions"] = versions
            emit(data)
            return

        click.echo(f"ID:          {t.id}")
        click.echo(f"Name:        {t.name}")
        click.echo(f"Capability:  {t.capability_id}")
        click.echo(f"Status:      {t.status}")
        click.echo(f"Version:     {t.version} (known-good: {t.last_known_good if t.last_known_good is not None else '-'})")
        click.echo(f"Versions:    {', '.join(str(v) for v in versions)}")
        if t.tags:
            click.echo(f"Tags:        {', '.join(t.tags)}")
        click.echo("Parameters:")
        for pname, ptype in sorted(t.parameter_schema.items()):
            click.echo(f"  {pname}: {ptype}")
        click.echo("Steps:")
        for i, s in enumerate(t.steps, 1):
            click.echo(f"  {i}. {s}")


@click.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--capability", "capability_id", default=None, help="Filter by capability")
@click.option("--tag", "-t", default=None, help="Filter by tag")
@click.option("--maturity", "-m", default=None, help="Filter by capability maturity")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_templates(
    status: str | None,
    capability_id: str | None,
    tag: str | None,
    maturity: str | None,
    as_json: bool,
) -> None:
    """List templates with optional filters."""
    with get_engine() as engine:
        try:
            templates = engine.db.list_templates(status=status, tag=tag, capability_id=capability_id, maturity=maturity)
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit([t.to_dict() for t in templates])
            return
        for t in templates:
            click.echo(f'{t.id} v{t.version} [{t.status}] "{t.name}" ({t.capability_id})')
        click.echo(f"\n{len(templates)} templates")


@click.command("conflicts")
@click.argument("template_id")
@click.option("--refresh", is_flag=True, help="Re-run detection instead of showing the recorded set")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def conflicts(template_id: str, refresh: bool, as_json: bool) -> None:
    """Show conflicts detected for a template."""
    with get_engine() as engine:
        try:
            if refresh:
                found = [c.to_dict() for c in engine.resolver.detect_conflicts(template_id)]
            else:
                engine.db.get_template(template_id)
                found = engine.db.get_conflicts(template_id)
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(found)
            return
        for c in found:
            click.echo(f"{c['other_id']} {c['category']} ({c['score']:.2f})")
        click.echo(f"\n{len(found)} conflicts")


@click.command("resolve")
@click.argument("template_id")
@click.argument("other_id")
@click.option(
    "--kind",
    required=True,
    type=click.Choice(sorted(STRATEGY_KINDS)),
    help="Resolution strategy",
)
@click.option("--keep", "keep_id", default=None, help="Template to keep (deprecate-one only)")
@click.option("--rationale", default="", help="Why this resolution was chosen")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def resolve(
    ctx: click.Context,
    template_id: str,
    other_id: str,
    kind: str,
    keep_id: str | None,
    rationale: str,
    as_json: bool,
) -> None:
    """Execute a resolution strategy for a pair of conflicting templates."""
    with get_engine() as engine:
        try:
            strategy = strategy_from_dict(
                {"kind": kind, "template_id": template_id, "other_id": other_id, "keep_id": keep_id, "rationale": rationale}
            )
            record = engine.resolver.execute_resolution(template_id, strategy, actor=ctx.obj["actor"])
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit(record)
            return
        click.echo(f"Resolved {template_id} / {other_id}: {record['kind']}")
        for key, value in sorted(record["outcome"].items()):
            click.echo(f"  {key}: {value}")


@click.command("deploy")
@click.argument("template_id")
@click.option("--version", "version", default=None, type=int, help="Deployed version (default: current)")
@click.option("--environment", default="production", help="Target environment")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def deploy(ctx: click.Context, template_id: str, version: int | None, environment: str, as_json: bool) -> None:
    """Record a deployment confirmation from the GitOps manager."""
    with get_engine() as engine:
        try:
            if version is None:
                version = engine.db.get_template(template_id).version
            engine.confirm_deployment(DeploymentConfirmation(template_id, version, environment), actor=ctx.obj["actor"])
        except LifecycleError as e:
            fail(e, as_json=as_json)
        if as_json:
            emit({"template_id": template_id, "version": version, "environment": environment, "status": "deployed"})
            return
        click.echo(f"Deployed: {template_id} v{version} ({environment})")


COMMANDS = [capability_create, capabilities, register, show, list_templates, conflicts, resolve, deploy]
