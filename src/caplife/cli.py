"""CLI for the caplife lifecycle engine.

Convention-based: discovers .caplife/ by walking up from cwd.

Usage:
    caplife init                                          # Initialize .caplife/ in cwd
    caplife capability-create "Deploy web" --maturity L2  # Create a capability
    caplife capabilities                                  # List capabilities
    caplife register <cap-id> "web" --param env=string --step build --step deploy
    caplife show <template-id>                            # Template details
    caplife list --status=active                          # List templates
    caplife conflicts <template-id>                       # Detected conflicts
    caplife resolve <template-id> <other-id> --kind compose
    caplife migrate-plan <source-id> [--target <id>]      # Create migration plan
    caplife migrate-run <plan-id> [--phase announce]      # Execute phase(s)
    caplife migrate-abort <plan-id>                       # Request abort
    caplife deprecate <template-id> --reason ... --months 6
    caplife deploy <template-id> --version 2              # Record deployment confirmation
    caplife health-check <template-id>                    # On-demand health check
    caplife health-schedule <template-id> --interval 30   # Start monitoring
    caplife health-cancel <template-id>                   # Stop monitoring
    caplife rollback <template-id> --reason ...           # Revert to last-known-good
    caplife tick                                          # Advance health + deprecation clocks
    caplife serve                                         # Run the HTTP API
"""

from __future__ import annotations

from pathlib import Path

import click

from caplife import __version__
from caplife.cli_commands import catalog, health, lifecycle
from caplife.core import CAPLIFE_DIR_NAME, DB_FILENAME, CatalogDB, read_config, write_config

# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="caplife")
@click.option("--actor", default="cli", help="Actor identity for audit trail (default: cli)")
@click.pass_context
def cli(ctx: click.Context, actor: str) -> None:
    """caplife: capability/template lifecycle engine."""
    ctx.ensure_object(dict)
    ctx.obj["actor"] = actor


@cli.command()
@click.option("--prefix", default=None, help="ID prefix for records (default: directory name)")
def init(prefix: str | None) -> None:
    """Initialize .caplife/ in the current directory."""
    cwd = Path.cwd()
    caplife_dir = cwd / CAPLIFE_DIR_NAME

    if caplife_dir.exists():
        click.echo(f"{CAPLIFE_DIR_NAME}/ already exists in {cwd}")
        # Still ensure DB is initialized
        config = read_config(caplife_dir)
        db = CatalogDB(caplife_dir / DB_FILENAME, prefix=config.get("prefix", "caplife"))
        db.initialize()
        db.close()
        return

    prefix = prefix or cwd.name
    caplife_dir.mkdir()

    config = {"prefix": prefix, "version": 1}
    write_config(caplife_dir, config)

    db = CatalogDB(caplife_dir / DB_FILENAME, prefix=prefix)
    db.initialize()
    db.close()

    click.echo(f"Initialized {CAPLIFE_DIR_NAME}/ in {cwd}")
    click.echo(f"  Prefix: {prefix}")
    click.echo(f"  Database: {caplife_dir / DB_FILENAME}")
    click.echo("\nNext: caplife capability-create <name>")


for _module in (catalog, lifecycle, health):
    for _command in _module.COMMANDS:
        cli.add_command(_command)


if __name__ == "__main__":
    cli()
