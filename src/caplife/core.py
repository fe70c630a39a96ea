"""Core catalog store for the lifecycle engine.

Single source of truth for capability and template records. Every other
component (conflict resolver, migration planner, deprecation scheduler,
health monitor, rollback executor) reads through this module and writes
templates only through ``compare_and_swap`` / ``update_template``.

Direct SQLite with WAL mode. Each worker opens its own ``CatalogDB`` on the
same file; writers are serialized per record by the ``revision`` column
(optimistic concurrency) rather than by a lock.

Convention-based discovery: each project has a `.caplife/` directory
containing `caplife.db` (SQLite) and `config.json` (prefix, thresholds).
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from dataclasses import replace as _dc_replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from caplife.db_base import _now_iso
from caplife.db_conflicts import ConflictsMixin
from caplife.db_events import EventsMixin
from caplife.db_health import HealthMixin
from caplife.db_plans import PlansMixin
from caplife.errors import (
    ConcurrentModificationError,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)
from caplife.lifecycle import Maturity, check_maturity_progression, check_transition

if TYPE_CHECKING:
    from caplife.gitops import PipelineValidation
    from caplife.types.core import CapabilityDict, ProjectConfig, TemplateDict, TemplateVersionDict

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Convention-based discovery
# ---------------------------------------------------------------------------

CAPLIFE_DIR_NAME = ".caplife"
DB_FILENAME = "caplife.db"
CONFIG_FILENAME = "config.json"

_DEFAULT_CONFIG: dict[str, Any] = {
    "prefix": "caplife",
    "version": 1,
    "resolution_threshold": 0.7,
    "duplicate_threshold": 0.9,
    "probe_timeout_seconds": 10.0,
    "failure_debounce": 3,
    "cas_max_attempts": 5,
    "cas_backoff_seconds": 0.01,
    "default_interval_minutes": 60,
}


def find_caplife_root(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for .caplife/ directory.

    Returns the .caplife/ directory path (not the project root).
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = parent / CAPLIFE_DIR_NAME
        if candidate.is_dir():
            return candidate
    msg = f"No {CAPLIFE_DIR_NAME}/ directory found in {current} or any parent"
    raise FileNotFoundError(msg)


def read_config(caplife_dir: Path) -> ProjectConfig:
    """Read .caplife/config.json merged over defaults. Returns defaults if missing or corrupt."""
    defaults: ProjectConfig = dict(_DEFAULT_CONFIG)  # type: ignore[assignment]
    config_path = caplife_dir / CONFIG_FILENAME
    if not config_path.exists():
        return defaults
    try:
        loaded = json.loads(config_path.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s, using defaults: %s", config_path, exc)
        return defaults
    if not isinstance(loaded, dict):
        logger.warning("Ignoring %s: expected a JSON object", config_path)
        return defaults
    return {**defaults, **loaded}  # type: ignore[typeddict-item]


def write_config(caplife_dir: Path, config: Mapping[str, Any]) -> None:
    """Write .caplife/config.json."""
    config_path = caplife_dir / CONFIG_FILENAME
    config_path.write_text(json.dumps(dict(config), indent=2) + "\n")


@dataclass(frozen=True)
class Settings:
    """Tunables for the lifecycle components, resolved from config.json."""

    resolution_threshold: float = 0.7
    duplicate_threshold: float = 0.9
    probe_timeout_seconds: float = 10.0
    failure_debounce: int = 3
    cas_max_attempts: int = 5
    cas_backoff_seconds: float = 0.01
    default_interval_minutes: int = 60
    accessibility_url: str | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> Settings:
        try:
            return cls(
                resolution_threshold=float(config.get("resolution_threshold", 0.7)),
                duplicate_threshold=float(config.get("duplicate_threshold", 0.9)),
                probe_timeout_seconds=float(config.get("probe_timeout_seconds", 10.0)),
                failure_debounce=int(config.get("failure_debounce", 3)),
                cas_max_attempts=int(config.get("cas_max_attempts", 5)),
                cas_backoff_seconds=float(config.get("cas_backoff_seconds", 0.01)),
                default_interval_minutes=int(config.get("default_interval_minutes", 60)),
                accessibility_url=config.get("accessibility_url") or None,
            )
        except (TypeError, ValueError) as exc:
            msg = f"Invalid configuration value: {exc}"
            raise ValidationError(msg) from exc


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS capabilities (
    id           TEXT PRIMARY KEY,
    name         TEXT NOT NULL,
    description  TEXT DEFAULT '',
    maturity     INTEGER NOT NULL DEFAULT 1,
    tags         TEXT NOT NULL DEFAULT '[]',
    revision     INTEGER NOT NULL DEFAULT 1,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL,
    CHECK (maturity BETWEEN 1 AND 5)
);

CREATE TABLE IF NOT EXISTS templates (
    id               TEXT PRIMARY KEY,
    capability_id    TEXT NOT NULL REFERENCES capabilities(id),
    name             TEXT NOT NULL,
    version          INTEGER NOT NULL,
    parameter_schema TEXT NOT NULL DEFAULT '{}',
    steps            TEXT NOT NULL DEFAULT '[]',
    tags             TEXT NOT NULL DEFAULT '[]',
    status           TEXT NOT NULL DEFAULT 'active',
    last_known_good  INTEGER,
    metadata         TEXT NOT NULL DEFAULT '{}',
    revision         INTEGER NOT NULL DEFAULT 1,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    CHECK (status IN ('active', 'deprecated', 'migrating', 'retired'))
);

CREATE INDEX IF NOT EXISTS idx_templates_capability ON templates(capability_id, created_at);
CREATE INDEX IF NOT EXISTS idx_templates_status ON templates(status);

CREATE TABLE IF NOT EXISTS template_versions (
    template_id      TEXT NOT NULL REFERENCES templates(id),
    version          INTEGER NOT NULL,
    parameter_schema TEXT NOT NULL,
    steps            TEXT NOT NULL,
    registered_at    TEXT NOT NULL,
    PRIMARY KEY (template_id, version)
);

CREATE TABLE IF NOT EXISTS deployments (
    template_id   TEXT NOT NULL REFERENCES templates(id),
    version       INTEGER NOT NULL,
    confirmed_at  TEXT NOT NULL,
    PRIMARY KEY (template_id, version)
);

CREATE TABLE IF NOT EXISTS events (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id  TEXT NOT NULL,
    event_type TEXT NOT NULL,
    actor      TEXT DEFAULT '',
    old_value  TEXT,
    new_value  TEXT,
    comment    TEXT DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_entity ON events(entity_id, created_at DESC);

CREATE TABLE IF NOT EXISTS conflicts (
    template_id  TEXT NOT NULL,
    other_id     TEXT NOT NULL,
    score        REAL NOT NULL,
    category     TEXT NOT NULL,
    detected_at  TEXT NOT NULL,
    PRIMARY KEY (template_id, other_id),
    CHECK (category IN ('duplicate', 'overlapping', 'superseding')),
    CHECK (score BETWEEN 0 AND 1)
);

CREATE TABLE IF NOT EXISTS resolutions (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    kind         TEXT NOT NULL,
    template_id  TEXT NOT NULL,
    other_id     TEXT NOT NULL,
    keep_id      TEXT,
    rationale    TEXT DEFAULT '',
    outcome      TEXT DEFAULT '{}',
    executed_at  TEXT NOT NULL,
    UNIQUE (kind, template_id, other_id),
    CHECK (kind IN ('deprecate-one', 'compose', 'migrate', 'namespace-split'))
);

CREATE TABLE IF NOT EXISTS migration_plans (
    id               TEXT PRIMARY KEY,
    source_id        TEXT NOT NULL,
    target_id        TEXT,
    target_version   INTEGER,
    strategy         TEXT NOT NULL,
    status           TEXT NOT NULL DEFAULT 'pending',
    current_phase    INTEGER NOT NULL DEFAULT 0,
    phases           TEXT NOT NULL,
    pre_migration    TEXT NOT NULL,
    details          TEXT NOT NULL DEFAULT '{}',
    abort_requested  INTEGER NOT NULL DEFAULT 0,
    error            TEXT,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_migration_plans_source ON migration_plans(source_id);
CREATE INDEX IF NOT EXISTS idx_migration_plans_target ON migration_plans(target_id);

CREATE TABLE IF NOT EXISTS deprecation_plans (
    id               TEXT PRIMARY KEY,
    template_id      TEXT NOT NULL,
    reason           TEXT NOT NULL,
    timeline_months  INTEGER NOT NULL,
    status           TEXT NOT NULL DEFAULT 'scheduled',
    support_level    TEXT NOT NULL,
    replacements     TEXT NOT NULL DEFAULT '[]',
    notifications    TEXT NOT NULL DEFAULT '[]',
    created_at       TEXT NOT NULL,
    end_of_life      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_deprecation_plans_template ON deprecation_plans(template_id);

CREATE TABLE IF NOT EXISTS health_results (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    template_id      TEXT NOT NULL,
    version          INTEGER NOT NULL,
    status           TEXT NOT NULL,
    checks           TEXT NOT NULL,
    scheduled        INTEGER NOT NULL DEFAULT 0,
    recommendations  TEXT NOT NULL DEFAULT '[]',
    next_scheduled   TEXT,
    created_at       TEXT NOT NULL,
    CHECK (status IN ('healthy', 'degraded', 'failed'))
);

CREATE INDEX IF NOT EXISTS idx_health_results_template ON health_results(template_id, created_at DESC);

CREATE TABLE IF NOT EXISTS health_schedules (
    template_id           TEXT PRIMARY KEY,
    interval_minutes      INTEGER NOT NULL,
    state                 TEXT NOT NULL DEFAULT 'scheduled',
    next_due_at           TEXT NOT NULL,
    consecutive_failures  INTEGER NOT NULL DEFAULT 0,
    cancel_requested      INTEGER NOT NULL DEFAULT 0,
    claimed_at            TEXT,
    updated_at            TEXT NOT NULL,
    CHECK (state IN ('scheduled', 'checking', 'healthy', 'degraded', 'failed', 'cancelled'))
);

CREATE TABLE IF NOT EXISTS rollbacks (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    template_id     TEXT NOT NULL,
    from_version    INTEGER NOT NULL,
    target_version  INTEGER NOT NULL,
    success         INTEGER NOT NULL,
    reason          TEXT NOT NULL,
    notified        TEXT NOT NULL DEFAULT '[]',
    created_at      TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS rollbacks_immutable BEFORE UPDATE ON rollbacks BEGIN
    SELECT RAISE(ABORT, 'rollback records are immutable');
END;
"""

CURRENT_SCHEMA_VERSION = 1

VALID_PARAM_TYPES: frozenset[str] = frozenset({"string", "integer", "number", "boolean", "array", "object"})

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------
# Records are frozen: callers get a private copy built from the row and must
# go through compare_and_swap to change anything.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Capability:
    id: str
    name: str
    description: str = ""
    maturity: Maturity = Maturity.L1
    tags: tuple[str, ...] = ()
    templates: tuple[str, ...] = ()
    revision: int = 1
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> CapabilityDict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "maturity": self.maturity.name,
            "tags": list(self.tags),
            "templates": list(self.templates),
            "revision": self.revision,
            "created_at": self.created_at,  # type: ignore[typeddict-item]
            "updated_at": self.updated_at,  # type: ignore[typeddict-item]
        }


@dataclass(frozen=True)
class Template:
    id: str
    capability_id: str
    name: str
    version: int = 1
    parameter_schema: dict[str, str] = field(default_factory=dict)
    steps: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    status: str = "active"
    last_known_good: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Store-managed (not part of the record content)
    revision: int = 1
    created_at: str = ""
    updated_at: str = ""

    def snapshot(self) -> dict[str, Any]:
        """Record content without store bookkeeping (revision, timestamps)."""
        return {
            "id": self.id,
            "capability_id": self.capability_id,
            "name": self.name,
            "version": self.version,
            "parameter_schema": dict(self.parameter_schema),
            "steps": list(self.steps),
            "tags": list(self.tags),
            "status": self.status,
            "last_known_good": self.last_known_good,
            "metadata": json.loads(json.dumps(self.metadata)),
        }

    def to_dict(self) -> TemplateDict:
        result: dict[str, Any] = self.snapshot()
        result["revision"] = self.revision
        result["created_at"] = self.created_at
        result["updated_at"] = self.updated_at
        return result  # type: ignore[return-value]

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> Template:
        return cls(
            id=data["id"],
            capability_id=data["capability_id"],
            name=data["name"],
            version=int(data["version"]),
            parameter_schema=dict(data.get("parameter_schema") or {}),
            steps=tuple(data.get("steps") or ()),
            tags=tuple(data.get("tags") or ()),
            status=data.get("status", "active"),
            last_known_good=data.get("last_known_good"),
            metadata=dict(data.get("metadata") or {}),
        )


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _validate_name(value: object, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        msg = f"{what} cannot be empty"
        raise ValidationError(msg)
    return value.strip()


def _validate_tags(tags: Iterable[str] | None) -> tuple[str, ...]:
    if tags is None:
        return ()
    if isinstance(tags, str):
        msg = "tags must be a list of strings"
        raise ValidationError(msg)
    cleaned: set[str] = set()
    for tag in tags:
        if not isinstance(tag, str) or not tag.strip():
            msg = f"Invalid tag: {tag!r}"
            raise ValidationError(msg)
        cleaned.add(tag.strip().lower())
    return tuple(sorted(cleaned))


def _validate_schema(schema: object) -> dict[str, str]:
    if not isinstance(schema, Mapping):
        msg = "parameter_schema must be a mapping of parameter name to type"
        raise ValidationError(msg)
    result: dict[str, str] = {}
    for name, type_name in schema.items():
        if not isinstance(name, str) or not name.strip():
            msg = "Parameter name cannot be empty"
            raise ValidationError(msg)
        if type_name not in VALID_PARAM_TYPES:
            allowed = ", ".join(sorted(VALID_PARAM_TYPES))
            msg = f"Parameter '{name}' has invalid type {type_name!r}. Valid types: {allowed}"
            raise ValidationError(msg)
        result[name] = type_name
    return result


def _validate_steps(steps: object) -> tuple[str, ...]:
    if isinstance(steps, str) or not isinstance(steps, Iterable):
        msg = "steps must be a list of step identifiers"
        raise ValidationError(msg)
    result = tuple(steps)
    if not result:
        msg = "A template needs at least one step"
        raise ValidationError(msg)
    for step in result:
        if not isinstance(step, str) or not step.strip():
            msg = f"Invalid step identifier: {step!r}"
            raise ValidationError(msg)
    if len(set(result)) != len(result):
        msg = "Step identifiers must be unique within a template"
        raise ValidationError(msg)
    return result


# ---------------------------------------------------------------------------
# CatalogDB: the store
# ---------------------------------------------------------------------------


class CatalogDB(EventsMixin, ConflictsMixin, PlansMixin, HealthMixin):
    """Direct SQLite catalog. One instance per worker; no shared connection."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        prefix: str = "caplife",
        settings: Settings | None = None,
        check_same_thread: bool = True,
    ) -> None:
        self.db_path = Path(db_path)
        self.prefix = prefix
        self.settings = settings or Settings()
        self._conn: sqlite3.Connection | None = None
        self._check_same_thread = check_same_thread

    @classmethod
    def from_project(cls, project_path: Path | None = None) -> CatalogDB:
        """Create a CatalogDB by discovering .caplife/ from project_path (or cwd)."""
        caplife_dir = find_caplife_root(project_path)
        config = read_config(caplife_dir)
        db = cls(
            caplife_dir / DB_FILENAME,
            prefix=config.get("prefix", "caplife"),
            settings=Settings.from_config(config),
        )
        db.initialize()
        return db

    def __enter__(self) -> CatalogDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                isolation_level="DEFERRED",
                check_same_thread=self._check_same_thread,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def initialize(self) -> None:
        """Create tables for a fresh database and stamp the schema version."""
        current_version = self.get_schema_version()
        if current_version == 0:
            self.conn.executescript(SCHEMA_SQL)
            self.conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
        elif current_version > CURRENT_SCHEMA_VERSION:
            msg = f"Database schema v{current_version} is newer than this caplife (v{CURRENT_SCHEMA_VERSION})"
            raise RuntimeError(msg)
        self.conn.commit()

    def get_schema_version(self) -> int:
        result: int = self.conn.execute("PRAGMA user_version").fetchone()[0]
        return result

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def reconnect(self, *, check_same_thread: bool) -> None:
        """Reopen the connection, e.g. with ``check_same_thread=False`` for the API server."""
        self.close()
        self._check_same_thread = check_same_thread

    def clone(self) -> CatalogDB:
        """Same database file and settings, own connection (opened lazily by the caller's thread)."""
        return CatalogDB(self.db_path, prefix=self.prefix, settings=self.settings)

    def _generate_unique_id(self, table: str, infix: str = "") -> str:
        """Generate a unique ID using EXISTS checks against the PK index.

        *table* is always a hardcoded literal at the call site (never user input).
        """
        sep = f"-{infix}-" if infix else "-"
        for _ in range(10):
            candidate = f"{self.prefix}{sep}{uuid.uuid4().hex[:10]}"
            if self.conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (candidate,)).fetchone() is None:
                return candidate
        return f"{self.prefix}{sep}{uuid.uuid4().hex[:16]}"

    # -- Capabilities --------------------------------------------------------

    def create_capability(
        self,
        name: str,
        *,
        description: str = "",
        maturity: Maturity | int | str = Maturity.L1,
        tags: Iterable[str] | None = None,
        capability_id: str | None = None,
        actor: str = "",
    ) -> Capability:
        name = _validate_name(name, "Capability name")
        level = Maturity.parse(maturity)
        clean_tags = _validate_tags(tags)
        if capability_id is not None:
            capability_id = _validate_name(capability_id, "Capability id")
            if self.conn.execute("SELECT 1 FROM capabilities WHERE id = ?", (capability_id,)).fetchone():
                msg = f"Capability already exists: {capability_id}"
                raise ValidationError(msg)
        else:
            capability_id = self._generate_unique_id("capabilities", "cap")
        now = _now_iso()
        try:
            self.conn.execute(
                "INSERT INTO capabilities (id, name, description, maturity, tags, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (capability_id, name, description, int(level), json.dumps(list(clean_tags)), now, now),
            )
            self._record_event(capability_id, "capability_created", actor=actor, new_value=name)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        logger.info("Created capability %s (%s)", capability_id, name, extra={"operation": "create_capability"})
        return self.get_capability(capability_id)

    def get_capability(self, capability_id: str) -> Capability:
        row = self.conn.execute("SELECT * FROM capabilities WHERE id = ?", (capability_id,)).fetchone()
        if row is None:
            raise NotFoundError("Capability", capability_id)
        return self._build_capability(row)

    def _build_capability(self, row: sqlite3.Row) -> Capability:
        template_ids = [
            r["id"]
            for r in self.conn.execute(
                "SELECT id FROM templates WHERE capability_id = ? ORDER BY created_at, rowid",
                (row["id"],),
            ).fetchall()
        ]
        return Capability(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            maturity=Maturity(row["maturity"]),
            tags=tuple(json.loads(row["tags"])),
            templates=tuple(template_ids),
            revision=row["revision"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def list_capabilities(
        self,
        *,
        maturity: Maturity | int | str | None = None,
        tag: str | None = None,
    ) -> list[Capability]:
        conditions: list[str] = []
        params: list[Any] = []
        if maturity is not None:
            conditions.append("maturity = ?")
            params.append(int(Maturity.parse(maturity)))
        if tag is not None:
            conditions.append("EXISTS (SELECT 1 FROM json_each(capabilities.tags) WHERE value = ?)")
            params.append(tag.strip().lower())
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self.conn.execute(f"SELECT * FROM capabilities{where} ORDER BY id", params).fetchall()
        return [self._build_capability(r) for r in rows]

    def search_capabilities(self, query: str) -> list[Capability]:
        """Case-insensitive match against name, description, and tags."""
        needle = query.strip().lower()
        if not needle:
            return []
        return [
            cap
            for cap in self.list_capabilities()
            if needle in cap.name.lower() or needle in cap.description.lower() or any(needle in t for t in cap.tags)
        ]

    def compare_and_swap_capability(
        self,
        capability_id: str,
        expected_revision: int,
        new_capability: Capability,
        *,
        actor: str = "",
    ) -> Capability:
        if new_capability.id != capability_id:
            msg = f"Capability id mismatch: {new_capability.id} != {capability_id}"
            raise ValidationError(msg)
        now = _now_iso()
        try:
            cursor = self.conn.execute(
                "UPDATE capabilities SET name = ?, description = ?, maturity = ?, tags = ?, "
                "revision = revision + 1, updated_at = ? WHERE id = ? AND revision = ?",
                (
                    new_capability.name,
                    new_capability.description,
                    int(new_capability.maturity),
                    json.dumps(list(new_capability.tags)),
                    now,
                    capability_id,
                    expected_revision,
                ),
            )
            if cursor.rowcount == 0:
                self.conn.rollback()
                current = self.get_capability(capability_id)  # raises NotFoundError
                raise VersionConflictError(capability_id, expected_revision, current.revision)
            self._record_event(capability_id, "capability_updated", actor=actor)
            self.conn.commit()
        except VersionConflictError:
            raise
        except Exception:
            self.conn.rollback()
            raise
        return self.get_capability(capability_id)

    def update_maturity(self, capability_id: str, maturity: Maturity | int | str, *, actor: str = "") -> Capability:
        new_level = Maturity.parse(maturity)
        for attempt in range(self.settings.cas_max_attempts):
            current = self.get_capability(capability_id)
            check_maturity_progression(current.maturity, new_level)
            if current.maturity == new_level:
                return current
            try:
                updated = self.compare_and_swap_capability(
                    capability_id, current.revision, _dc_replace(current, maturity=new_level), actor=actor
                )
            except VersionConflictError:
                self._backoff(attempt)
                continue
            self._record_event(capability_id, "maturity_changed", actor=actor, old_value=current.maturity.name, new_value=new_level.name)
            self.conn.commit()
            return updated
        raise ConcurrentModificationError(capability_id, self.settings.cas_max_attempts)

    # -- Templates -----------------------------------------------------------

    def register_template(
        self,
        capability_id: str,
        name: str,
        parameter_schema: Mapping[str, str],
        steps: Iterable[str],
        *,
        template_id: str | None = None,
        version: int | None = None,
        tags: Iterable[str] | None = None,
        pipeline: PipelineValidation | None = None,
        actor: str = "",
    ) -> Template:
        """Registration API: validate, then insert a template or a new version of one.

        Everything is validated before any write. A new version of an existing
        id becomes its active version; earlier versions stay available to the
        rollback executor through ``template_versions``.
        """
        name = _validate_name(name, "Template name")
        schema = _validate_schema(parameter_schema)
        step_tuple = _validate_steps(steps)
        clean_tags = _validate_tags(tags)
        if version is not None and (isinstance(version, bool) or not isinstance(version, int) or version < 1):
            msg = f"Version must be a positive integer, got {version!r}"
            raise ValidationError(msg)
        try:
            self.get_capability(capability_id)
        except NotFoundError:
            msg = f"Unknown capability: {capability_id}"
            raise ValidationError(msg) from None
        if pipeline is not None:
            blocking = pipeline.blocking_failures()
            if blocking:
                msg = f"Registration blocked by failed pipeline gates: {', '.join(blocking)}"
                raise ValidationError(msg)

        if template_id is not None:
            template_id = _validate_name(template_id, "Template id")
            row = self.conn.execute("SELECT * FROM templates WHERE id = ?", (template_id,)).fetchone()
            if row is not None:
                return self._register_new_version(
                    self._build_template(row), capability_id, name, schema, step_tuple, clean_tags, version, actor
                )
        else:
            template_id = self._generate_unique_id("templates")

        version = version or 1
        now = _now_iso()
        try:
            self.conn.execute(
                "INSERT INTO templates (id, capability_id, name, version, parameter_schema, steps, tags, "
                "status, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)",
                (
                    template_id,
                    capability_id,
                    name,
                    version,
                    json.dumps(schema),
                    json.dumps(list(step_tuple)),
                    json.dumps(list(clean_tags)),
                    now,
                    now,
                ),
            )
            self._insert_version(template_id, version, schema, step_tuple, now)
            self._record_event(template_id, "registered", actor=actor, new_value=str(version))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        logger.info("Registered template %s v%d", template_id, version, extra={"template_id": template_id, "operation": "register"})
        return self.get_template(template_id)

    def _register_new_version(
        self,
        current: Template,
        capability_id: str,
        name: str,
        schema: dict[str, str],
        steps: tuple[str, ...],
        tags: tuple[str, ...],
        version: int | None,
        actor: str,
    ) -> Template:
        if current.capability_id != capability_id:
            msg = f"Template {current.id} belongs to capability {current.capability_id}, not {capability_id}"
            raise ValidationError(msg)

        def _activate(t: Template) -> Template:
            if t.status == "retired":
                msg = f"Template {t.id} is retired; register a new template instead"
                raise ValidationError(msg)
            latest = self.latest_version(t.id)
            if version is None:
                next_version = latest + 1
            elif version <= latest:
                msg = f"Version {version} of {t.id} is not newer than registered version {latest}"
                raise ValidationError(msg)
            else:
                next_version = version
            return _dc_replace(t, name=name, version=next_version, parameter_schema=schema, steps=steps, tags=tags)

        updated = self.update_template(current.id, _activate, actor=actor, event_type="version_registered", register_version=True)
        logger.info("Registered template %s v%d", current.id, updated.version, extra={"template_id": current.id, "operation": "register"})
        return updated

    def _insert_version(self, template_id: str, version: int, schema: dict[str, str], steps: tuple[str, ...], now: str) -> None:
        self.conn.execute(
            "INSERT INTO template_versions (template_id, version, parameter_schema, steps, registered_at) VALUES (?, ?, ?, ?, ?)",
            (template_id, version, json.dumps(schema), json.dumps(list(steps)), now),
        )

    def get_template(self, template_id: str) -> Template:
        row = self.conn.execute("SELECT * FROM templates WHERE id = ?", (template_id,)).fetchone()
        if row is None:
            raise NotFoundError("Template", template_id)
        return self._build_template(row)

    def _build_template(self, row: sqlite3.Row) -> Template:
        return Template(
            id=row["id"],
            capability_id=row["capability_id"],
            name=row["name"],
            version=row["version"],
            parameter_schema=json.loads(row["parameter_schema"]),
            steps=tuple(json.loads(row["steps"])),
            tags=tuple(json.loads(row["tags"])),
            status=row["status"],
            last_known_good=row["last_known_good"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            revision=row["revision"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def list_templates(
        self,
        *,
        status: str | None = None,
        tag: str | None = None,
        capability_id: str | None = None,
        maturity: Maturity | int | str | None = None,
    ) -> list[Template]:
        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            conditions.append("t.status = ?")
            params.append(status)
        if tag is not None:
            conditions.append("EXISTS (SELECT 1 FROM json_each(t.tags) WHERE value = ?)")
            params.append(tag.strip().lower())
        if capability_id is not None:
            conditions.append("t.capability_id = ?")
            params.append(capability_id)
        if maturity is not None:
            conditions.append("c.maturity = ?")
            params.append(int(Maturity.parse(maturity)))
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self.conn.execute(
            f"SELECT t.* FROM templates t JOIN capabilities c ON c.id = t.capability_id{where} ORDER BY t.id",
            params,
        ).fetchall()
        return [self._build_template(r) for r in rows]

    def get_template_version(self, template_id: str, version: int) -> TemplateVersionDict:
        row = self.conn.execute(
            "SELECT * FROM template_versions WHERE template_id = ? AND version = ?",
            (template_id, version),
        ).fetchone()
        if row is None:
            raise NotFoundError("Template version", f"{template_id}@{version}")
        return {
            "template_id": row["template_id"],
            "version": row["version"],
            "parameter_schema": json.loads(row["parameter_schema"]),
            "steps": json.loads(row["steps"]),
            "registered_at": row["registered_at"],
        }

    def list_template_versions(self, template_id: str) -> list[int]:
        self.get_template(template_id)
        rows = self.conn.execute(
            "SELECT version FROM template_versions WHERE template_id = ? ORDER BY version",
            (template_id,),
        ).fetchall()
        return [r["version"] for r in rows]

    def latest_version(self, template_id: str) -> int:
        row = self.conn.execute("SELECT MAX(version) AS v FROM template_versions WHERE template_id = ?", (template_id,)).fetchone()
        if row is None or row["v"] is None:
            raise NotFoundError("Template", template_id)
        latest: int = row["v"]
        return latest

    # -- Compare-and-swap ----------------------------------------------------

    def compare_and_swap(
        self,
        template_id: str,
        expected_revision: int,
        new_template: Template,
        *,
        actor: str = "",
        event_type: str = "updated",
        register_version: bool = False,
    ) -> Template:
        """Replace a template record iff its revision still equals *expected_revision*.

        Raises ``NotFoundError`` for unknown ids, ``VersionConflictError`` when
        another writer got there first (re-read and retry), and
        ``TransitionNotAllowedError`` for illegal status changes, including any
        change away from ``retired``.

        With *register_version* the new record's version row is inserted in
        the same transaction as the swap, so a lost race leaves no version
        behind.
        """
        current = self.get_template(template_id)
        if new_template.id != template_id:
            msg = f"Template id mismatch: {new_template.id} != {template_id}"
            raise ValidationError(msg)
        if new_template.capability_id != current.capability_id:
            msg = f"Template {template_id} cannot move between capabilities"
            raise ValidationError(msg)
        if current.revision != expected_revision:
            raise VersionConflictError(template_id, expected_revision, current.revision)
        check_transition(template_id, current.status, new_template.status)
        if new_template.version != current.version and not register_version:
            self.get_template_version(template_id, new_template.version)  # raises NotFoundError

        now = _now_iso()
        try:
            if register_version:
                self._insert_version(template_id, new_template.version, new_template.parameter_schema, new_template.steps, now)
            cursor = self.conn.execute(
                "UPDATE templates SET name = ?, version = ?, parameter_schema = ?, steps = ?, tags = ?, status = ?, "
                "last_known_good = ?, metadata = ?, revision = revision + 1, updated_at = ? "
                "WHERE id = ? AND revision = ?",
                (
                    new_template.name,
                    new_template.version,
                    json.dumps(new_template.parameter_schema),
                    json.dumps(list(new_template.steps)),
                    json.dumps(list(new_template.tags)),
                    new_template.status,
                    new_template.last_known_good,
                    json.dumps(new_template.metadata),
                    now,
                    template_id,
                    expected_revision,
                ),
            )
            if cursor.rowcount == 0:
                # Lost the race between our read and the UPDATE
                self.conn.rollback()
                actual = self.get_template(template_id).revision
                raise VersionConflictError(template_id, expected_revision, actual)
            if new_template.status != current.status:
                self._record_event(template_id, "status_changed", actor=actor, old_value=current.status, new_value=new_template.status)
            if new_template.version != current.version:
                self._record_event(template_id, "version_changed", actor=actor, old_value=str(current.version), new_value=str(new_template.version))
            self._record_event(template_id, event_type, actor=actor)
            self.conn.commit()
        except VersionConflictError:
            raise
        except sqlite3.IntegrityError as exc:
            self.conn.rollback()
            if not register_version:
                raise
            # Another writer registered this version number first
            actual = self.get_template(template_id).revision
            raise VersionConflictError(template_id, expected_revision, actual) from exc
        except Exception:
            self.conn.rollback()
            raise
        return self.get_template(template_id)

    def update_template(
        self,
        template_id: str,
        mutate: Callable[[Template], Template | None],
        *,
        actor: str = "",
        event_type: str = "updated",
        register_version: bool = False,
    ) -> Template:
        """Read-modify-CAS with bounded retry and exponential backoff.

        *mutate* receives a fresh record on every attempt and returns the new
        record, or ``None`` when nothing needs to change (the current record is
        returned untouched). After ``cas_max_attempts`` conflicts,
        ``ConcurrentModificationError`` is raised.
        """
        attempts = self.settings.cas_max_attempts
        for attempt in range(attempts):
            current = self.get_template(template_id)
            new_record = mutate(current)
            if new_record is None:
                return current
            try:
                return self.compare_and_swap(
                    template_id, current.revision, new_record, actor=actor, event_type=event_type, register_version=register_version
                )
            except VersionConflictError as exc:
                logger.debug("CAS conflict on %s (attempt %d/%d): %s", template_id, attempt + 1, attempts, exc)
                if attempt + 1 < attempts:
                    self._backoff(attempt)
        logger.warning("Giving up on %s after %d CAS conflicts", template_id, attempts, extra={"template_id": template_id})
        raise ConcurrentModificationError(template_id, attempts)

    def _backoff(self, attempt: int) -> None:
        delay = self.settings.cas_backoff_seconds * (2**attempt)
        if delay > 0:
            time.sleep(delay)

    # -- Deployments (GitOps confirmations) ----------------------------------

    def record_deployment(self, template_id: str, version: int, *, actor: str = "") -> None:
        """Record that *version* of *template_id* is live. Idempotent."""
        self.get_template_version(template_id, version)
        try:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO deployments (template_id, version, confirmed_at) VALUES (?, ?, ?)",
                (template_id, version, _now_iso()),
            )
            if cursor.rowcount:
                self._record_event(template_id, "deployed", actor=actor, new_value=str(version))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def is_deployed(self, template_id: str, version: int) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM deployments WHERE template_id = ? AND version = ?",
            (template_id, version),
        ).fetchone()
        return row is not None
