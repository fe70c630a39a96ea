"""LifecycleEngine: one object wiring every component to a single CatalogDB.

The CLI, the HTTP API and the clock driver all go through this facade so
that each worker process holds exactly one connection and one set of
components.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from caplife.conflicts import ConflictResolver, ResolutionStrategy, TemplateConflict
from caplife.core import CatalogDB, Template
from caplife.deprecation import DeprecationScheduler, TickReport
from caplife.health import HealthMonitor, Probe
from caplife.migration import MigrationPlanner, PhaseHook
from caplife.notify import LogNotifier, Notifier
from caplife.rollback import RollbackExecutor

if TYPE_CHECKING:
    from caplife.db_health import HealthCheckResult
    from caplife.gitops import DeploymentConfirmation, PipelineValidation

logger = logging.getLogger(__name__)


@dataclass
class RegistrationResult:
    template: Template
    conflicts: list[TemplateConflict]
    proposals: list[ResolutionStrategy]


@dataclass
class EngineTick:
    health: list[HealthCheckResult]
    deprecation: TickReport


class LifecycleEngine:
    def __init__(
        self,
        db: CatalogDB,
        *,
        notifier: Notifier | None = None,
        probes: Sequence[Probe] | None = None,
        hook: PhaseHook | None = None,
    ) -> None:
        self.db = db
        self.notifier: Notifier = notifier or LogNotifier()
        self.migrations = MigrationPlanner(db, notifier=self.notifier, hook=hook)
        self.resolver = ConflictResolver(db, self.migrations)
        self.deprecations = DeprecationScheduler(db, notifier=self.notifier)
        self.rollbacks = RollbackExecutor(db, notifier=self.notifier)
        self.health = HealthMonitor(db, self.rollbacks, probes=probes)

    @classmethod
    def from_project(
        cls,
        project_path: Path | None = None,
        *,
        notifier: Notifier | None = None,
        probes: Sequence[Probe] | None = None,
        hook: PhaseHook | None = None,
    ) -> LifecycleEngine:
        return cls(CatalogDB.from_project(project_path), notifier=notifier, probes=probes, hook=hook)

    def worker(self) -> LifecycleEngine:
        """An engine over the same catalog on its own connection, for use from another thread."""
        return LifecycleEngine(
            self.db.clone(),
            notifier=self.notifier,
            probes=self.health.probes,
            hook=self.migrations.hook,
        )

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> LifecycleEngine:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -- Registration --------------------------------------------------------

    def register(
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
    ) -> RegistrationResult:
        """Register a template (or a new version of one) and report its conflicts."""
        template = self.db.register_template(
            capability_id,
            name,
            parameter_schema,
            steps,
            template_id=template_id,
            version=version,
            tags=tags,
            pipeline=pipeline,
            actor=actor,
        )
        conflicts = self.resolver.detect_conflicts(template)
        return RegistrationResult(template, conflicts, self.resolver.propose_resolutions(conflicts))

    def confirm_deployment(self, confirmation: DeploymentConfirmation, *, actor: str = "") -> None:
        self.db.record_deployment(confirmation.template_id, confirmation.version, actor=actor)

    # -- Clock ---------------------------------------------------------------

    def tick(self, now: datetime | None = None) -> EngineTick:
        """Advance every time-driven component to *now*."""
        health = self.health.tick(now)
        deprecation = self.deprecations.tick(now)
        return EngineTick(health=health, deprecation=deprecation)
