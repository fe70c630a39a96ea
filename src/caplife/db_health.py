"""HealthMixin: health results, monitoring schedules, and the rollback log.

The ``health_schedules`` row is the per-template monitoring state machine:
absent (unmonitored) -> scheduled -> checking -> healthy | degraded | failed
-> checking ... or cancelled. A tick claims a due row with a conditional
UPDATE so two workers never run the same scheduled check; a claim older
than its lease is released by the next tick.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from caplife.db_base import DBMixinProtocol, _now_iso
from caplife.errors import NotFoundError

if TYPE_CHECKING:
    import sqlite3

    from caplife.types.health import (
        CheckDict,
        DeliveryDict,
        HealthCheckResultDict,
        RollbackResultDict,
        ScheduleDict,
    )

logger = logging.getLogger(__name__)

SCHEDULE_STATES: frozenset[str] = frozenset({"scheduled", "checking", "healthy", "degraded", "failed", "cancelled"})


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: str  # pass | warn | fail
    latency_ms: float = 0.0
    message: str = ""

    def to_dict(self) -> CheckDict:
        return {"name": self.name, "status": self.status, "latency_ms": self.latency_ms, "message": self.message}


@dataclass
class HealthCheckResult:
    template_id: str
    version: int
    status: str
    checks: list[CheckResult]
    scheduled: bool = False
    timestamp: str = ""
    next_scheduled: str | None = None
    recommendations: list[str] = field(default_factory=list)
    id: int | None = None

    def to_dict(self) -> HealthCheckResultDict:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "version": self.version,
            "status": self.status,
            "checks": [c.to_dict() for c in self.checks],
            "scheduled": self.scheduled,
            "timestamp": self.timestamp,
            "next_scheduled": self.next_scheduled,
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class Schedule:
    template_id: str
    interval_minutes: int
    state: str
    next_due_at: str
    consecutive_failures: int = 0
    cancel_requested: bool = False
    updated_at: str = ""
    claimed_at: str | None = None

    def to_dict(self) -> ScheduleDict:
        return {
            "template_id": self.template_id,
            "interval_minutes": self.interval_minutes,
            "state": self.state,
            "next_due_at": self.next_due_at,
            "consecutive_failures": self.consecutive_failures,
            "cancel_requested": self.cancel_requested,
            "updated_at": self.updated_at,
            "claimed_at": self.claimed_at,
        }


@dataclass(frozen=True)
class Delivery:
    recipient: str
    delivered: bool
    error: str | None = None

    def to_dict(self) -> DeliveryDict:
        return {"recipient": self.recipient, "delivered": self.delivered, "error": self.error}


@dataclass(frozen=True)
class RollbackResult:
    id: int
    template_id: str
    from_version: int
    target_version: int
    success: bool
    reason: str
    notified: tuple[Delivery, ...] = ()
    created_at: str = ""

    def to_dict(self) -> RollbackResultDict:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "from_version": self.from_version,
            "target_version": self.target_version,
            "success": self.success,
            "reason": self.reason,
            "notified": [d.to_dict() for d in self.notified],
            "created_at": self.created_at,
        }


# ---------------------------------------------------------------------------
# Mixin
# ---------------------------------------------------------------------------


class HealthMixin(DBMixinProtocol):
    """Health result history, schedule rows, and rollback audit records.

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

    # -- Results -------------------------------------------------------------

    def insert_health_result(self, result: HealthCheckResult) -> HealthCheckResult:
        result.timestamp = result.timestamp or _now_iso()
        try:
            cursor = self.conn.execute(
                "INSERT INTO health_results (template_id, version, status, checks, scheduled, recommendations, "
                "next_scheduled, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    result.template_id,
                    result.version,
                    result.status,
                    json.dumps([c.to_dict() for c in result.checks]),
                    int(result.scheduled),
                    json.dumps(result.recommendations),
                    result.next_scheduled,
                    result.timestamp,
                ),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        result.id = cursor.lastrowid
        return result

    def get_health_results(self, template_id: str, *, limit: int = 10) -> list[HealthCheckResult]:
        """Health history for *template_id*, newest first."""
        rows = self.conn.execute(
            "SELECT * FROM health_results WHERE template_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (template_id, limit),
        ).fetchall()
        return [self._build_health_result(r) for r in rows]

    def latest_health_results(self) -> dict[str, HealthCheckResult]:
        """Most recent result per template."""
        rows = self.conn.execute(
            "SELECT h.* FROM health_results h WHERE h.id = "
            "(SELECT h2.id FROM health_results h2 WHERE h2.template_id = h.template_id "
            "ORDER BY h2.created_at DESC, h2.id DESC LIMIT 1)"
        ).fetchall()
        return {r["template_id"]: self._build_health_result(r) for r in rows}

    def _build_health_result(self, row: sqlite3.Row) -> HealthCheckResult:
        return HealthCheckResult(
            id=row["id"],
            template_id=row["template_id"],
            version=row["version"],
            status=row["status"],
            checks=[CheckResult(**c) for c in json.loads(row["checks"])],
            scheduled=bool(row["scheduled"]),
            timestamp=row["created_at"],
            next_scheduled=row["next_scheduled"],
            recommendations=json.loads(row["recommendations"]),
        )

    # -- Schedules -----------------------------------------------------------

    def upsert_schedule(self, template_id: str, interval_minutes: int, next_due_at: str, *, actor: str = "") -> Schedule:
        """Start (or restart) monitoring. Resets the failure counter."""
        now = _now_iso()
        try:
            self.conn.execute(
                "INSERT INTO health_schedules (template_id, interval_minutes, state, next_due_at, consecutive_failures, "
                "cancel_requested, updated_at) VALUES (?, ?, 'scheduled', ?, 0, 0, ?) "
                "ON CONFLICT(template_id) DO UPDATE SET interval_minutes = excluded.interval_minutes, "
                "state = 'scheduled', next_due_at = excluded.next_due_at, consecutive_failures = 0, "
                "cancel_requested = 0, claimed_at = NULL, updated_at = excluded.updated_at",
                (template_id, interval_minutes, next_due_at, now),
            )
            self._record_event(template_id, "health_scheduled", actor=actor, new_value=str(interval_minutes))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        schedule = self.get_schedule(template_id)
        assert schedule is not None
        return schedule

    def get_schedule(self, template_id: str) -> Schedule | None:
        row = self.conn.execute("SELECT * FROM health_schedules WHERE template_id = ?", (template_id,)).fetchone()
        if row is None:
            return None
        return self._build_schedule(row)

    def due_schedules(self, now_iso: str) -> list[Schedule]:
        rows = self.conn.execute(
            "SELECT * FROM health_schedules WHERE state NOT IN ('cancelled', 'checking') AND next_due_at <= ? "
            "ORDER BY next_due_at, template_id",
            (now_iso,),
        ).fetchall()
        return [self._build_schedule(r) for r in rows]

    def claim_schedule(self, template_id: str, now_iso: str) -> bool:
        """Move a due schedule into ``checking``. False if another worker claimed it or it was cancelled."""
        try:
            cursor = self.conn.execute(
                "UPDATE health_schedules SET state = 'checking', claimed_at = ?, updated_at = ? "
                "WHERE template_id = ? AND state NOT IN ('cancelled', 'checking') AND cancel_requested = 0 "
                "AND next_due_at <= ?",
                (now_iso, _now_iso(), template_id, now_iso),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return cursor.rowcount == 1

    def release_stale_claims(self, claimed_before: str) -> list[str]:
        """Return ``checking`` schedules claimed at or before *claimed_before* to the queue.

        A claim that old belongs to a worker that died mid-check. Returns the
        released template ids.
        """
        rows = self.conn.execute(
            "SELECT template_id FROM health_schedules WHERE state = 'checking' AND claimed_at <= ?",
            (claimed_before,),
        ).fetchall()
        template_ids = [r["template_id"] for r in rows]
        if not template_ids:
            return []
        try:
            self.conn.execute(
                "UPDATE health_schedules SET state = CASE WHEN cancel_requested = 1 THEN 'cancelled' ELSE 'scheduled' END, "
                "claimed_at = NULL, updated_at = ? WHERE state = 'checking' AND claimed_at <= ?",
                (_now_iso(), claimed_before),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        logger.warning("Released %d stale health check claim(s): %s", len(template_ids), ", ".join(template_ids))
        return template_ids

    def finish_schedule(self, template_id: str, state: str, next_due_at: str, consecutive_failures: int) -> Schedule:
        """Record the outcome of a scheduled check; honours a pending cancellation."""
        try:
            self.conn.execute(
                "UPDATE health_schedules SET state = CASE WHEN cancel_requested = 1 THEN 'cancelled' ELSE ? END, "
                "next_due_at = ?, consecutive_failures = ?, claimed_at = NULL, updated_at = ? WHERE template_id = ?",
                (state, next_due_at, consecutive_failures, _now_iso(), template_id),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        schedule = self.get_schedule(template_id)
        if schedule is None:
            raise NotFoundError("Health schedule", template_id)
        return schedule

    def request_cancel(self, template_id: str, *, actor: str = "") -> Schedule:
        """Cancel monitoring. An in-flight check finishes first, then the schedule becomes ``cancelled``."""
        try:
            cursor = self.conn.execute(
                "UPDATE health_schedules SET cancel_requested = 1, "
                "state = CASE WHEN state = 'checking' THEN 'checking' ELSE 'cancelled' END, updated_at = ? "
                "WHERE template_id = ?",
                (_now_iso(), template_id),
            )
            if cursor.rowcount == 0:
                self.conn.rollback()
                raise NotFoundError("Health schedule", template_id)
            self._record_event(template_id, "health_cancelled", actor=actor)
            self.conn.commit()
        except NotFoundError:
            raise
        except Exception:
            self.conn.rollback()
            raise
        schedule = self.get_schedule(template_id)
        assert schedule is not None
        return schedule

    def _build_schedule(self, row: sqlite3.Row) -> Schedule:
        return Schedule(
            template_id=row["template_id"],
            interval_minutes=row["interval_minutes"],
            state=row["state"],
            next_due_at=row["next_due_at"],
            consecutive_failures=row["consecutive_failures"],
            cancel_requested=bool(row["cancel_requested"]),
            updated_at=row["updated_at"],
            claimed_at=row["claimed_at"],
        )

    # -- Rollback log (insert-only) ------------------------------------------

    def insert_rollback(
        self,
        template_id: str,
        from_version: int,
        target_version: int,
        *,
        success: bool,
        reason: str,
        notified: tuple[Delivery, ...] = (),
        actor: str = "",
    ) -> RollbackResult:
        now = _now_iso()
        try:
            cursor = self.conn.execute(
                "INSERT INTO rollbacks (template_id, from_version, target_version, success, reason, notified, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    template_id,
                    from_version,
                    target_version,
                    int(success),
                    reason,
                    json.dumps([d.to_dict() for d in notified]),
                    now,
                ),
            )
            self._record_event(template_id, "rolled_back", actor=actor, old_value=str(from_version), new_value=str(target_version), comment=reason)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        row_id = cursor.lastrowid
        assert row_id is not None
        return RollbackResult(
            id=row_id,
            template_id=template_id,
            from_version=from_version,
            target_version=target_version,
            success=success,
            reason=reason,
            notified=notified,
            created_at=now,
        )

    def get_rollbacks(self, template_id: str) -> list[RollbackResult]:
        rows = self.conn.execute(
            "SELECT * FROM rollbacks WHERE template_id = ? ORDER BY id",
            (template_id,),
        ).fetchall()
        return [
            RollbackResult(
                id=r["id"],
                template_id=r["template_id"],
                from_version=r["from_version"],
                target_version=r["target_version"],
                success=bool(r["success"]),
                reason=r["reason"],
                notified=tuple(Delivery(**d) for d in json.loads(r["notified"])),
                created_at=r["created_at"],
            )
            for r in rows
        ]
