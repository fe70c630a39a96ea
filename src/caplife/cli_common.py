"""Shared CLI helpers.

Provides ``get_engine()`` and ``fail()`` so that ``cli.py`` and the
``cli_commands/*.py`` modules can reach them without circular imports.
"""

from __future__ import annotations

import json as json_mod
import sys
from typing import NoReturn

import click

from caplife.core import CAPLIFE_DIR_NAME, find_caplife_root
from caplife.engine import LifecycleEngine
from caplife.errors import LifecycleError, NotFoundError


def get_engine() -> LifecycleEngine:
    """Discover .caplife/ and return an engine over an initialized CatalogDB."""
    try:
        caplife_dir = find_caplife_root()
    except FileNotFoundError:
        click.echo(f"No {CAPLIFE_DIR_NAME}/ found. Run 'caplife init' first.", err=True)
        sys.exit(1)
    try:
        return LifecycleEngine.from_project(caplife_dir.parent)
    except LifecycleError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def fail(error: Exception | str, *, as_json: bool) -> NoReturn:
    """Report *error* on stderr (or as a JSON object on stdout) and exit 1."""
    if isinstance(error, NotFoundError):
        message = f"Not found: {error}"
    else:
        message = f"Error: {error}" if isinstance(error, Exception) else str(error)
    if as_json:
        payload: dict[str, str] = {"error": str(error)}
        if isinstance(error, LifecycleError):
            payload["code"] = error.code
        click.echo(json_mod.dumps(payload))
    else:
        click.echo(message, err=True)
    sys.exit(1)


def emit(data: object) -> None:
    click.echo(json_mod.dumps(data, indent=2, default=str))
