"""Migration planner: phased moves from a source template to a target.

Phases run strictly in order: announce -> dual-run -> cutover -> sunset ->
retire. ``dual-run`` and ``cutover`` are rollback points: if either fails the
source template is restored to the snapshot taken when the first phase
started and the plan is marked ``failed``. A failure anywhere else leaves the
plan ``partial`` and the same phase may be retried.

Plan progress (``current_phase``) is committed after every phase, so a plan
can be resumed by any worker after a crash. Template changes go through
``CatalogDB.update_template`` like every other writer.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING, NoReturn, Protocol

from caplife import similarity
from caplife.db_base import _now_iso
from caplife.db_plans import MigrationPlan, Phase
from caplife.errors import (
    LifecycleError,
    NotFoundError,
    PhaseFailedError,
    PreconditionFailedError,
    RollbackTriggeredError,
    ValidationError,
)
from caplife.lifecycle import Maturity
from caplife.notify import LogNotifier, Notice, Notifier

if TYPE_CHECKING:
    from caplife.core import CatalogDB, Template

logger = logging.getLogger(__name__)

# id, description, entry criteria, exit criteria, rollback point
PHASE_BLUEPRINT: tuple[tuple[str, str, tuple[str, ...], tuple[str, ...], bool], ...] = (
    ("announce", "Notify consumers that the source template is being replaced", ("source_active",), ("consumers_notified",), False),
    ("dual-run", "Run source and target side by side", ("target_available",), ("source_migrating", "target_active"), True),
    ("cutover", "Route consumers from the source to the target", ("target_active",), ("routing_recorded",), True),
    ("sunset", "Deprecate the source template", ("routing_recorded",), ("source_deprecated",), False),
    ("retire", "Retire the source template", ("source_deprecated",), ("source_retired",), False),
)

TERMINAL_PLAN_STATUSES: frozenset[str] = frozenset({"completed", "failed", "aborted"})

_STRATEGY_WEEKS = {"direct": 2, "phased": 10, "parallel": 6, "gradual": 12}


class PhaseHook(Protocol):
    """Extension point run after a phase's built-in action. Raising fails the phase."""

    def run(self, plan: MigrationPlan, phase: Phase) -> None: ...


class NullPhaseHook:
    def run(self, plan: MigrationPlan, phase: Phase) -> None:
        return None


class _ExitCriteriaNotMet(LifecycleError):
    def __init__(self, unmet: list[str]) -> None:
        self.unmet = unmet
        super().__init__(f"exit criteria not met: {', '.join(unmet)}")


def choose_strategy(source: Template, target: Template | None) -> str:
    if target is None:
        return "gradual"
    s = similarity.score(source, target)
    if s > 0.8:
        return "direct"
    if s > 0.5:
        return "phased"
    return "parallel"


def estimate_duration(strategy: str) -> str:
    weeks = _STRATEGY_WEEKS.get(strategy, 4)
    if weeks <= 4:
        return f"{weeks} weeks"
    return f"{math.ceil(weeks / 4)} months"


def migration_dependencies(source_maturity: Maturity, target: Template | None) -> list[str]:
    deps = [
        "Stakeholder approval",
        "Infrastructure capacity",
        "Backup and recovery procedures",
        "Monitoring and alerting setup",
    ]
    if target is not None:
        deps += [f"Target template {target.id} available", "Migration scripts tested", "Compatibility validation completed"]
    if source_maturity >= Maturity.L3:
        deps += ["Operational runbooks updated", "SLA impact assessment completed"]
    if source_maturity >= Maturity.L4:
        deps += ["Compliance review completed", "Security assessment approved"]
    return deps


def validation_steps(target: Template | None) -> list[str]:
    steps = [
        "Validate all services are operational",
        "Check performance metrics are within acceptable ranges",
        "Verify data integrity and consistency",
        "Test critical user workflows",
    ]
    if target is not None:
        steps += [f"Confirm new template {target.id} is functioning correctly", "Validate feature parity with original template"]
    return steps


def new_phases() -> list[Phase]:
    return [
        Phase(id=pid, description=desc, entry_criteria=entry, exit_criteria=exit_, rollback_point=rb)
        for pid, desc, entry, exit_, rb in PHASE_BLUEPRINT
    ]


class MigrationPlanner:
    """Creates and executes migration plans against a ``CatalogDB``."""

    def __init__(
        self,
        db: CatalogDB,
        *,
        notifier: Notifier | None = None,
        hook: PhaseHook | None = None,
    ) -> None:
        self.db = db
        self.notifier: Notifier = notifier or LogNotifier()
        self.hook: PhaseHook = hook or NullPhaseHook()
        self._criteria: dict[str, Callable[[MigrationPlan], bool]] = {
            "source_active": lambda p: self._source(p).status == "active",
            "consumers_notified": self._consumers_notified,
            "target_available": self._target_available,
            "target_active": self._target_active,
            "source_migrating": lambda p: self._source(p).status == "migrating",
            "routing_recorded": lambda p: self._source(p).metadata.get("routed_to") == self._target_ref(p),
            "source_deprecated": lambda p: self._source_reached(p, "deprecated"),
            "source_retired": lambda p: self._source_reached(p, "retired"),
        }

    # -- Planning ------------------------------------------------------------

    def create_plan(self, source_id: str, target_id: str | None = None, *, actor: str = "") -> MigrationPlan:
        """Plan a migration. Without *target_id* the target is the next registered version of the source."""
        source = self.db.get_template(source_id)
        if source.status == "retired":
            msg = f"Cannot migrate retired template {source_id}"
            raise PreconditionFailedError(msg)
        target: Template | None = None
        if target_id is not None:
            if target_id == source_id:
                msg = "Source and target must be different templates; omit the target to migrate to a newer version"
                raise ValidationError(msg)
            target = self.db.get_template(target_id)
            if target.status != "active":
                msg = f"Target template {target_id} is {target.status}, not active"
                raise PreconditionFailedError(msg)
        maturity = self.db.get_capability(source.capability_id).maturity
        strategy = choose_strategy(source, target)
        plan = MigrationPlan(
            id="",
            source_id=source_id,
            target_id=target_id,
            target_version=target.version if target is not None else None,
            strategy=strategy,
            phases=new_phases(),
            pre_migration=source.snapshot(),
            from_version=source.version,
            dependencies=migration_dependencies(maturity, target),
            validation_steps=validation_steps(target),
            estimated_duration=estimate_duration(strategy),
        )
        plan = self.db.insert_migration_plan(plan, actor=actor)
        logger.info(
            "Planned migration %s: %s -> %s (%s)",
            plan.id,
            source_id,
            target_id or "next version",
            strategy,
            extra={"template_id": source_id, "operation": "create_plan"},
        )
        return plan

    def get_plan(self, plan_id: str) -> MigrationPlan:
        return self.db.get_migration_plan(plan_id)

    def retarget_plan(self, plan_id: str, new_target_id: str, *, actor: str = "") -> MigrationPlan:
        """Point a frozen (or not yet finished) plan at a different, active target."""
        plan = self.db.get_migration_plan(plan_id)
        if plan.status in TERMINAL_PLAN_STATUSES:
            msg = f"Plan {plan_id} is {plan.status} and cannot be retargeted"
            raise PreconditionFailedError(msg)
        if new_target_id == plan.source_id:
            msg = "A plan cannot target its own source template"
            raise ValidationError(msg)
        target = self.db.get_template(new_target_id)
        if target.status != "active":
            msg = f"Target template {new_target_id} is {target.status}, not active"
            raise PreconditionFailedError(msg)
        plan.target_id = new_target_id
        plan.target_version = target.version
        plan.error = None
        if plan.status == "frozen":
            started = any(p.status != "pending" for p in plan.phases)
            plan.status = "in_progress" if started else "pending"
        self.db.save_migration_plan(plan)
        self.db.record_event(plan_id, "migration_retargeted", actor=actor, new_value=new_target_id)
        return plan

    # -- Execution -----------------------------------------------------------

    def execute_phase(self, plan_id: str, phase_id: str, *, actor: str = "") -> MigrationPlan:
        """Run one phase of a plan.

        Re-running a completed phase is a no-op. Ordering and criteria
        violations raise ``PreconditionFailedError`` before anything changes.
        """
        plan = self.db.get_migration_plan(plan_id)
        idx = plan.phase_index(phase_id)
        phase = plan.phases[idx]
        if phase.status == "completed":
            return plan
        if plan.abort_requested and plan.status not in TERMINAL_PLAN_STATUSES:
            self._finish_abort(plan, actor=actor)
        if plan.status in TERMINAL_PLAN_STATUSES:
            msg = f"Plan {plan_id} is {plan.status}"
            raise PreconditionFailedError(msg)
        if plan.status == "frozen":
            msg = f"Plan {plan_id} is frozen: {plan.error}. Retarget it before continuing"
            raise PreconditionFailedError(msg)

        for earlier in plan.phases[:idx]:
            if earlier.status != "completed":
                msg = f"Phase '{phase_id}' cannot run before '{earlier.id}' has completed"
                raise PreconditionFailedError(msg)
        if idx > 0:
            unmet = self._unmet(plan, plan.phases[idx - 1].exit_criteria)
            if unmet:
                msg = f"Exit criteria of '{plan.phases[idx - 1].id}' no longer hold: {', '.join(unmet)}"
                raise PreconditionFailedError(msg)
        if self._target_gone(plan):
            self._freeze(plan)
            msg = f"Plan {plan_id} is frozen: {plan.error}. Retarget it before continuing"
            raise PreconditionFailedError(msg)
        unmet = self._unmet(plan, phase.entry_criteria)
        if unmet:
            msg = f"Entry criteria of '{phase_id}' not met: {', '.join(unmet)}"
            raise PreconditionFailedError(msg)

        if plan.current_phase == 0:
            # The restore point is the source as it stands when the migration starts
            plan.pre_migration = self._source(plan).snapshot()
        if phase_id == "dual-run" and plan.target_id is None:
            plan.target_version = self.db.latest_version(plan.source_id)
        phase.status = "running"
        phase.started_at = _now_iso()
        phase.error = None
        plan.status = "in_progress"
        self.db.save_migration_plan(plan)

        start = time.monotonic()
        try:
            self._run_action(plan, phase, actor)
            self.hook.run(plan, phase)
            unmet = self._unmet(plan, phase.exit_criteria)
            if unmet:
                raise _ExitCriteriaNotMet(unmet)
        except Exception as exc:
            self._fail_phase(plan, phase, exc, actor)
        duration_ms = round((time.monotonic() - start) * 1000, 2)

        phase.status = "completed"
        phase.completed_at = _now_iso()
        plan.current_phase = idx + 1
        plan.error = None
        plan.status = "completed" if plan.current_phase == len(plan.phases) else "in_progress"
        self.db.save_migration_plan(plan)
        logger.info(
            "Plan %s: phase '%s' completed",
            plan_id,
            phase_id,
            extra={"template_id": plan.source_id, "operation": "execute_phase", "duration_ms": duration_ms},
        )

        # Cooperative abort: a request that arrived while the phase ran takes effect now
        stored = self.db.get_migration_plan(plan_id)
        if stored.abort_requested and plan.status != "completed":
            plan.abort_requested = True
            self._finish_abort(plan, actor=actor)
        return plan

    def run_all(self, plan_id: str, *, actor: str = "") -> MigrationPlan:
        """Execute every remaining phase in order, resuming from ``current_phase``."""
        plan = self.db.get_migration_plan(plan_id)
        for phase in plan.phases[plan.current_phase :]:
            plan = self.execute_phase(plan_id, phase.id, actor=actor)
            if plan.status == "aborted":
                break
        return plan

    def abort_plan(self, plan_id: str, *, actor: str = "") -> MigrationPlan:
        """Request an abort. Takes effect immediately unless a phase is running."""
        plan = self.db.get_migration_plan(plan_id)
        if plan.status == "aborted":
            return plan
        if plan.status in ("completed", "failed"):
            msg = f"Plan {plan_id} is {plan.status} and cannot be aborted"
            raise PreconditionFailedError(msg)
        self.db.request_abort(plan_id, actor=actor)
        plan.abort_requested = True
        if any(p.status == "running" for p in plan.phases):
            logger.info("Abort of %s requested; waiting for the running phase", plan_id)
            return plan
        self._finish_abort(plan, actor=actor)
        return plan

    # -- Internals -----------------------------------------------------------

    def _run_action(self, plan: MigrationPlan, phase: Phase, actor: str) -> None:
        match phase.id:
            case "announce":
                self._announce(plan, actor)
            case "dual-run":
                self._set_source_status(plan, "migrating", actor)
            case "cutover":
                ref = self._target_ref(plan)

                def _route(t: Template) -> Template | None:
                    if t.metadata.get("routed_to") == ref:
                        return None
                    return replace(t, metadata={**t.metadata, "routed_to": ref})

                self.db.update_template(plan.source_id, _route, actor=actor, event_type="routed")
            case "sunset" if plan.target_id is None:
                self._retire_old_version(plan, "deprecated", actor)
            case "retire" if plan.target_id is None:
                self._retire_old_version(plan, "retired", actor)
            case "sunset":
                self._set_source_status(plan, "deprecated", actor)
                self.db.freeze_plans_targeting(plan.source_id, actor=actor)
            case "retire":
                self._set_source_status(plan, "retired", actor)
            case _:
                msg = f"Unknown phase: {phase.id}"
                raise ValidationError(msg)

    def _announce(self, plan: MigrationPlan, actor: str) -> None:
        source = self._source(plan)
        consumers = [tid for tid in self.db.get_capability(source.capability_id).templates if tid != source.id]
        for consumer in consumers:
            self.notifier.send(
                Notice(
                    recipient=consumer,
                    subject=f"Template {source.id} is migrating to {self._target_ref(plan)}",
                    template_id=source.id,
                    data={"plan_id": plan.id, "strategy": plan.strategy},
                )
            )
        self.db.record_event(plan.id, "consumers_notified", actor=actor, new_value=str(len(consumers)))

    def _set_source_status(self, plan: MigrationPlan, status: str, actor: str) -> None:
        def _mutate(t: Template) -> Template | None:
            if t.status == status:
                return None
            return replace(t, status=status)

        self.db.update_template(plan.source_id, _mutate, actor=actor, event_type=f"migration_{plan.id}")

    def _retire_old_version(self, plan: MigrationPlan, stage: str, actor: str) -> None:
        # Version upgrades keep the template id alive: only the old version is
        # sunset, and the record returns to active on the new version.
        old_version = plan.from_version
        key = f"{stage}_versions"

        def _mutate(t: Template) -> Template | None:
            versions = list(t.metadata.get(key, []))
            if old_version in versions and t.status == "active":
                return None
            if old_version not in versions:
                versions.append(old_version)
            status = "active" if t.status == "migrating" else t.status
            return replace(t, status=status, metadata={**t.metadata, key: versions})

        self.db.update_template(plan.source_id, _mutate, actor=actor, event_type=f"migration_{plan.id}")

    def _source_reached(self, plan: MigrationPlan, stage: str) -> bool:
        source = self._source(plan)
        if plan.target_id is None:
            return plan.from_version in source.metadata.get(f"{stage}_versions", [])
        return source.status == stage

    def _fail_phase(self, plan: MigrationPlan, phase: Phase, exc: Exception, actor: str) -> NoReturn:
        reason = str(exc) or type(exc).__name__
        phase.status = "failed"
        phase.error = reason
        if phase.rollback_point:
            restore_error: str | None = None
            try:
                self._restore_source(plan, actor)
            except LifecycleError as restore_exc:
                restore_error = str(restore_exc)
            plan.status = "failed"
            plan.error = reason if restore_error is None else f"{reason}; restore failed: {restore_error}"
            self.db.save_migration_plan(plan)
            logger.error(
                "Plan %s: rollback point '%s' failed, source restored",
                plan.id,
                phase.id,
                extra={"template_id": plan.source_id, "operation": "execute_phase", "error": plan.error},
            )
            raise RollbackTriggeredError(plan.id, phase.id, plan.error) from exc
        plan.status = "partial"
        plan.error = reason
        self.db.save_migration_plan(plan)
        logger.warning(
            "Plan %s: phase '%s' failed",
            plan.id,
            phase.id,
            extra={"template_id": plan.source_id, "operation": "execute_phase", "error": reason},
        )
        raise PhaseFailedError(plan.id, phase.id, reason) from exc

    def _restore_source(self, plan: MigrationPlan, actor: str) -> None:
        from caplife.core import Template

        snapshot = plan.pre_migration

        def _restore(t: Template) -> Template | None:
            if t.snapshot() == snapshot:
                return None
            return Template.from_snapshot(snapshot)

        self.db.update_template(plan.source_id, _restore, actor=actor, event_type="migration_restored")

    def _finish_abort(self, plan: MigrationPlan, *, actor: str) -> None:
        pre_status = plan.pre_migration.get("status", "active")

        def _mutate(t: Template) -> Template | None:
            if t.status != "migrating":
                return None
            return replace(t, status=pre_status)

        self.db.update_template(plan.source_id, _mutate, actor=actor, event_type="migration_aborted")
        plan.status = "aborted"
        plan.abort_requested = True
        self.db.save_migration_plan(plan)
        logger.info("Plan %s aborted", plan.id, extra={"template_id": plan.source_id, "operation": "abort_plan"})

    def _freeze(self, plan: MigrationPlan) -> None:
        plan.status = "frozen"
        plan.error = f"Target {plan.target_id} is no longer active; retarget the plan"
        self.db.save_migration_plan(plan)

    def _unmet(self, plan: MigrationPlan, criteria: tuple[str, ...]) -> list[str]:
        return [name for name in criteria if not self._criteria[name](plan)]

    def _source(self, plan: MigrationPlan) -> Template:
        return self.db.get_template(plan.source_id)

    def _target_ref(self, plan: MigrationPlan) -> str:
        if plan.target_id is not None:
            return plan.target_id
        return f"{plan.source_id}@{plan.target_version}"

    def _target_gone(self, plan: MigrationPlan) -> bool:
        if plan.target_id is None:
            return False
        try:
            target = self.db.get_template(plan.target_id)
        except NotFoundError:
            return True
        return target.status in ("deprecated", "retired")

    def _target_available(self, plan: MigrationPlan) -> bool:
        if plan.target_id is not None:
            return not self._target_gone(plan)
        return self.db.latest_version(plan.source_id) > plan.from_version

    def _target_active(self, plan: MigrationPlan) -> bool:
        if plan.target_id is not None:
            return self.db.get_template(plan.target_id).status == "active"
        if plan.target_version is None:
            return False
        return self._source(plan).version >= plan.target_version

    def _consumers_notified(self, plan: MigrationPlan) -> bool:
        return any(e["event_type"] == "consumers_notified" for e in self.db.get_events(plan.id, limit=200))
