"""Shared pytest fixtures for caplife tests."""

from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from click.testing import CliRunner

from caplife.core import CAPLIFE_DIR_NAME, DB_FILENAME, CatalogDB, write_config
from caplife.engine import LifecycleEngine
from tests._db_factory import make_db
from tests._helpers import RecordingNotifier

WEB_SCHEMA = {"env": "string", "replicas": "integer"}


@dataclass
class PopulatedCatalog:
    engine: LifecycleEngine
    notifier: RecordingNotifier
    ids: dict[str, str] = field(default_factory=dict)

    @property
    def db(self) -> CatalogDB:
        return self.engine.db


@pytest.fixture
def db(tmp_path: Path) -> Generator[CatalogDB, None, None]:
    """Fresh CatalogDB for each test."""
    d = make_db(tmp_path)
    yield d
    d.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def engine(db: CatalogDB, notifier: RecordingNotifier) -> LifecycleEngine:
    return LifecycleEngine(db, notifier=notifier)


def populate(engine: LifecycleEngine, notifier: RecordingNotifier) -> PopulatedCatalog:
    """Fill *engine* with a representative template set.

    Creates:
    - capability "cap-web" (L2) with four templates:
      tpl-web     [build, test, deploy]
      tpl-dup     identical to tpl-web (duplicate, 1.0)
      tpl-overlap [build, package, release] (overlapping, 0.8)
      tpl-super   [build, test, scan, deploy] + canary tag (supersedes tpl-web, ~0.82)
    - capability "cap-batch" (L1) with tpl-batch, unrelated to everything else
    """
    db = engine.db
    db.create_capability("Web delivery", maturity="L2", tags=["web"], capability_id="cap-web")
    db.create_capability("Batch jobs", maturity="L1", tags=["batch"], capability_id="cap-batch")
    engine.register("cap-web", "web", WEB_SCHEMA, ["build", "test", "deploy"], template_id="tpl-web", tags=["web", "deploy"])
    engine.register("cap-web", "web copy", WEB_SCHEMA, ["build", "test", "deploy"], template_id="tpl-dup", tags=["web", "deploy"])
    engine.register(
        "cap-web", "web package", WEB_SCHEMA, ["build", "package", "release"], template_id="tpl-overlap", tags=["web", "deploy"]
    )
    engine.register(
        "cap-web",
        "web canary",
        WEB_SCHEMA,
        ["build", "test", "scan", "deploy"],
        template_id="tpl-super",
        tags=["web", "deploy", "canary"],
    )
    engine.register("cap-batch", "batch", {"queue": "string"}, ["fetch", "process"], template_id="tpl-batch", tags=["batch"])
    return PopulatedCatalog(
        engine=engine,
        notifier=notifier,
        ids={
            "web": "tpl-web",
            "dup": "tpl-dup",
            "overlap": "tpl-overlap",
            "super": "tpl-super",
            "batch": "tpl-batch",
        },
    )


@pytest.fixture
def populated(engine: LifecycleEngine, notifier: RecordingNotifier) -> PopulatedCatalog:
    return populate(engine, notifier)


@pytest.fixture
def caplife_project(tmp_path: Path) -> Path:
    """A tmp directory set up as a caplife project (.caplife/ with config + db).

    Returns the project root (parent of .caplife/).
    """
    caplife_dir = tmp_path / CAPLIFE_DIR_NAME
    caplife_dir.mkdir()
    write_config(caplife_dir, {"prefix": "proj", "version": 1, "cas_backoff_seconds": 0})

    d = CatalogDB(caplife_dir / DB_FILENAME, prefix="proj")
    d.initialize()
    d.close()
    return tmp_path


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
