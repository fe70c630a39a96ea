"""PlansMixin: migration and deprecation plan records.

Plans are owned by the migration planner and deprecation scheduler; this
mixin only persists them. Template changes made while executing a plan go
through ``CatalogDB.update_template``, never through these tables.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from caplife.db_base import DBMixinProtocol, _now_iso
from caplife.errors import NotFoundError

if TYPE_CHECKING:
    import sqlite3

    from caplife.types.lifecycle import DeprecationPlanDict, MigrationPlanDict, NotificationDict, PhaseDict

logger = logging.getLogger(__name__)

OPEN_MIGRATION_STATUSES: frozenset[str] = frozenset({"pending", "in_progress", "partial", "frozen"})


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class Phase:
    id: str
    description: str
    entry_criteria: tuple[str, ...] = ()
    exit_criteria: tuple[str, ...] = ()
    rollback_point: bool = False
    status: str = "pending"
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None

    def to_dict(self) -> PhaseDict:
        return {
            "id": self.id,
            "description": self.description,
            "entry_criteria": list(self.entry_criteria),
            "exit_criteria": list(self.exit_criteria),
            "rollback_point": self.rollback_point,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Phase:
        return cls(
            id=data["id"],
            description=data.get("description", ""),
            entry_criteria=tuple(data.get("entry_criteria", ())),
            exit_criteria=tuple(data.get("exit_criteria", ())),
            rollback_point=bool(data.get("rollback_point", False)),
            status=data.get("status", "pending"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
        )


@dataclass
class MigrationPlan:
    id: str
    source_id: str
    target_id: str | None
    strategy: str
    phases: list[Phase]
    pre_migration: dict[str, Any]
    from_version: int = 0
    target_version: int | None = None
    status: str = "pending"
    current_phase: int = 0
    dependencies: list[str] = field(default_factory=list)
    validation_steps: list[str] = field(default_factory=list)
    estimated_duration: str = ""
    abort_requested: bool = False
    error: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def phase_index(self, phase_id: str) -> int:
        for i, phase in enumerate(self.phases):
            if phase.id == phase_id:
                return i
        raise NotFoundError("Phase", f"{self.id}/{phase_id}")

    def to_dict(self) -> MigrationPlanDict:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "from_version": self.from_version,
            "target_version": self.target_version,
            "strategy": self.strategy,
            "status": self.status,
            "current_phase": self.current_phase,
            "phases": [p.to_dict() for p in self.phases],
            "dependencies": list(self.dependencies),
            "validation_steps": list(self.validation_steps),
            "estimated_duration": self.estimated_duration,
            "abort_requested": self.abort_requested,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Notification:
    kind: str
    recipient_class: str
    scheduled_at: str
    sent: bool = False
    sent_at: str | None = None
    error: str | None = None

    def to_dict(self) -> NotificationDict:
        return {
            "kind": self.kind,
            "recipient_class": self.recipient_class,
            "scheduled_at": self.scheduled_at,
            "sent": self.sent,
            "sent_at": self.sent_at,
            "error": self.error,
        }


@dataclass
class DeprecationPlan:
    id: str
    template_id: str
    reason: str
    timeline_months: int
    created_at: str
    end_of_life: str
    notifications: list[Notification]
    status: str = "scheduled"
    support_level: str = "none"
    replacements: list[str] = field(default_factory=list)

    def to_dict(self) -> DeprecationPlanDict:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "reason": self.reason,
            "timeline_months": self.timeline_months,
            "status": self.status,
            "support_level": self.support_level,
            "replacements": list(self.replacements),
            "created_at": self.created_at,
            "end_of_life": self.end_of_life,
            "notifications": [n.to_dict() for n in self.notifications],
        }


# ---------------------------------------------------------------------------
# Mixin
# ---------------------------------------------------------------------------


class PlansMixin(DBMixinProtocol):
    """Migration and deprecation plan persistence.

    Inherits ``DBMixinProtocol`` for type-safe access to shared attributes.
    Actual implementations provided by ``CatalogDB`` at composition time.
    """

    if TYPE_CHECKING:
        # From EventsMixin
        def _record_event(
            self,
            entity_id: str,
            event_type: str,
            *,
            actor: str = "",
            old_value: str | None = None,
            new_value: str | None = None,
            comment: str = "",
        ) -> None: ...

    # -- Migration plans -----------------------------------------------------

    def insert_migration_plan(self, plan: MigrationPlan, *, actor: str = "") -> MigrationPlan:
        now = _now_iso()
        plan.id = plan.id or self._generate_unique_id("migration_plans", "mig")
        plan.created_at = plan.created_at or now
        plan.updated_at = now
        details = {
            "dependencies": plan.dependencies,
            "validation_steps": plan.validation_steps,
            "estimated_duration": plan.estimated_duration,
            "from_version": plan.from_version,
        }
        try:
            self.conn.execute(
                "INSERT INTO migration_plans (id, source_id, target_id, target_version, strategy, status, current_phase, "
                "phases, pre_migration, details, abort_requested, error, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    plan.id,
                    plan.source_id,
                    plan.target_id,
                    plan.target_version,
                    plan.strategy,
                    plan.status,
                    plan.current_phase,
                    json.dumps([p.to_dict() for p in plan.phases]),
                    json.dumps(plan.pre_migration),
                    json.dumps(details),
                    int(plan.abort_requested),
                    plan.error,
                    plan.created_at,
                    plan.updated_at,
                ),
            )
            self._record_event(plan.id, "migration_planned", actor=actor, new_value=plan.source_id)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return plan

    def save_migration_plan(self, plan: MigrationPlan) -> MigrationPlan:
        """Persist phase progress, status and pointer.

        ``abort_requested`` is sticky: a request written by another worker is
        never cleared by a save from this one.
        """
        plan.updated_at = _now_iso()
        try:
            self.conn.execute(
                "UPDATE migration_plans SET target_id = ?, target_version = ?, status = ?, current_phase = ?, "
                "phases = ?, pre_migration = ?, abort_requested = MAX(abort_requested, ?), error = ?, updated_at = ? "
                "WHERE id = ?",
                (
                    plan.target_id,
                    plan.target_version,
                    plan.status,
                    plan.current_phase,
                    json.dumps([p.to_dict() for p in plan.phases]),
                    json.dumps(plan.pre_migration),
                    int(plan.abort_requested),
                    plan.error,
                    plan.updated_at,
                    plan.id,
                ),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return plan

    def get_migration_plan(self, plan_id: str) -> MigrationPlan:
        row = self.conn.execute("SELECT * FROM migration_plans WHERE id = ?", (plan_id,)).fetchone()
        if row is None:
            raise NotFoundError("Migration plan", plan_id)
        return self._build_migration_plan(row)

    def list_migration_plans(
        self,
        *,
        status: str | None = None,
        source_id: str | None = None,
        target_id: str | None = None,
    ) -> list[MigrationPlan]:
        conditions: list[str] = []
        params: list[Any] = []
        for column, value in (("status", status), ("source_id", source_id), ("target_id", target_id)):
            if value is not None:
                conditions.append(f"{column} = ?")
                params.append(value)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self.conn.execute(f"SELECT * FROM migration_plans{where} ORDER BY created_at, id", params).fetchall()
        return [self._build_migration_plan(r) for r in rows]

    def request_abort(self, plan_id: str, *, actor: str = "") -> None:
        self.get_migration_plan(plan_id)
        try:
            self.conn.execute(
                "UPDATE migration_plans SET abort_requested = 1, updated_at = ? WHERE id = ?",
                (_now_iso(), plan_id),
            )
            self._record_event(plan_id, "abort_requested", actor=actor)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def freeze_plans_targeting(self, template_id: str, *, actor: str = "") -> list[str]:
        """Freeze open migration plans whose target is *template_id*. Returns frozen plan ids."""
        placeholders = ",".join("?" * 3)
        rows = self.conn.execute(
            f"SELECT id FROM migration_plans WHERE target_id = ? AND status IN ({placeholders})",
            (template_id, "pending", "in_progress", "partial"),
        ).fetchall()
        plan_ids = [r["id"] for r in rows]
        if not plan_ids:
            return []
        now = _now_iso()
        try:
            for plan_id in plan_ids:
                self.conn.execute(
                    "UPDATE migration_plans SET status = 'frozen', error = ?, updated_at = ? WHERE id = ?",
                    (f"Target {template_id} is no longer active; retarget the plan", now, plan_id),
                )
                self._record_event(plan_id, "migration_frozen", actor=actor, new_value=template_id)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        logger.info("Froze %d migration plan(s) targeting %s", len(plan_ids), template_id, extra={"template_id": template_id})
        return plan_ids

    def _build_migration_plan(self, row: sqlite3.Row) -> MigrationPlan:
        details = json.loads(row["details"] or "{}")
        pre_migration = json.loads(row["pre_migration"])
        return MigrationPlan(
            id=row["id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            target_version=row["target_version"],
            strategy=row["strategy"],
            status=row["status"],
            current_phase=row["current_phase"],
            phases=[Phase.from_dict(p) for p in json.loads(row["phases"])],
            pre_migration=pre_migration,
            from_version=int(details.get("from_version", pre_migration["version"])),
            dependencies=list(details.get("dependencies", [])),
            validation_steps=list(details.get("validation_steps", [])),
            estimated_duration=details.get("estimated_duration", ""),
            abort_requested=bool(row["abort_requested"]),
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # -- Deprecation plans ---------------------------------------------------

    def insert_deprecation_plan(self, plan: DeprecationPlan, *, actor: str = "") -> DeprecationPlan:
        plan.id = plan.id or self._generate_unique_id("deprecation_plans", "dep")
        try:
            self.conn.execute(
                "INSERT INTO deprecation_plans (id, template_id, reason, timeline_months, status, support_level, "
                "replacements, notifications, created_at, end_of_life) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    plan.id,
                    plan.template_id,
                    plan.reason,
                    plan.timeline_months,
                    plan.status,
                    plan.support_level,
                    json.dumps(plan.replacements),
                    json.dumps([n.to_dict() for n in plan.notifications]),
                    plan.created_at,
                    plan.end_of_life,
                ),
            )
            self._record_event(plan.id, "deprecation_planned", actor=actor, new_value=plan.template_id, comment=plan.reason)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return plan

    def save_deprecation_plan(self, plan: DeprecationPlan) -> DeprecationPlan:
        try:
            self.conn.execute(
                "UPDATE deprecation_plans SET status = ?, notifications = ? WHERE id = ?",
                (plan.status, json.dumps([n.to_dict() for n in plan.notifications]), plan.id),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return plan

    def get_deprecation_plan(self, plan_id: str) -> DeprecationPlan:
        row = self.conn.execute("SELECT * FROM deprecation_plans WHERE id = ?", (plan_id,)).fetchone()
        if row is None:
            raise NotFoundError("Deprecation plan", plan_id)
        return self._build_deprecation_plan(row)

    def list_deprecation_plans(self, *, status: str | None = None, template_id: str | None = None) -> list[DeprecationPlan]:
        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status)
        if template_id is not None:
            conditions.append("template_id = ?")
            params.append(template_id)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self.conn.execute(f"SELECT * FROM deprecation_plans{where} ORDER BY created_at, id", params).fetchall()
        return [self._build_deprecation_plan(r) for r in rows]

    def _build_deprecation_plan(self, row: sqlite3.Row) -> DeprecationPlan:
        return DeprecationPlan(
            id=row["id"],
            template_id=row["template_id"],
            reason=row["reason"],
            timeline_months=row["timeline_months"],
            status=row["status"],
            support_level=row["support_level"],
            replacements=json.loads(row["replacements"]),
            notifications=[Notification(**n) for n in json.loads(row["notifications"])],
            created_at=row["created_at"],
            end_of_life=row["end_of_life"],
        )
