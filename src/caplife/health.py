"""Health monitor: probe batteries, scheduled checks, and debounced rollback.

A battery runs every probe concurrently in a thread pool; each probe gets
``probe_timeout_seconds`` and a probe that overruns is recorded as a failed
check, never raised. Probes only see a ``ProbeContext`` snapshot, so they
never touch the SQLite connection from a worker thread.

Scheduled checks drive the per-template debounce counter. When it reaches
``failure_debounce`` consecutive failures the rollback executor runs and the
counter starts again from zero. On-demand checks leave the counter alone.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol

import httpx

from caplife.core import VALID_PARAM_TYPES
from caplife.db_base import _iso, _now
from caplife.db_health import CheckResult, HealthCheckResult, Schedule
from caplife.errors import LifecycleError, PreconditionFailedError, ProbeTimeoutError, ValidationError

if TYPE_CHECKING:
    from caplife.core import CatalogDB, Template
    from caplife.rollback import RollbackExecutor
    from caplife.types.core import TemplateVersionDict
    from caplife.types.health import OverallHealthDict

logger = logging.getLogger(__name__)

# A scheduled check claimed longer ago than this many probe timeouts is presumed abandoned
CLAIM_LEASE_FACTOR = 3

_STATUS_SCORE = {"healthy": 2, "degraded": 1, "failed": 0}

_RECOMMENDATIONS = {
    "accessibility": "Check catalog connectivity and template registration",
    "parameter_schema": "Review template parameter definitions against the registered version",
    "step_reachability": "Verify template step configurations and action availability",
}


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProbeContext:
    """Everything a probe may look at, captured before the battery starts."""

    template: Template
    registered: TemplateVersionDict | None
    deployed: bool
    timeout: float


@dataclass(frozen=True)
class ProbeOutcome:
    status: str  # pass | warn | fail
    message: str = ""


class Probe(Protocol):
    name: str

    def check(self, ctx: ProbeContext) -> ProbeOutcome: ...


class AccessibilityProbe:
    """Local accessibility check: the template is in a servable state and deployed."""

    name = "accessibility"

    def check(self, ctx: ProbeContext) -> ProbeOutcome:
        t = ctx.template
        if t.status == "retired":
            return ProbeOutcome("fail", f"Template {t.id} is retired")
        if not ctx.deployed:
            return ProbeOutcome("warn", f"No deployment confirmation for v{t.version}")
        if t.status == "deprecated":
            return ProbeOutcome("warn", f"Template {t.id} is deprecated")
        return ProbeOutcome("pass", "Template is accessible")


class HttpAccessibilityProbe:
    """Accessibility over HTTP. *url* may contain ``{template_id}`` and ``{version}``."""

    name = "accessibility"

    def __init__(self, url: str) -> None:
        self.url = url

    def check(self, ctx: ProbeContext) -> ProbeOutcome:
        target = self.url.format(template_id=ctx.template.id, version=ctx.template.version)
        try:
            response = httpx.get(target, timeout=ctx.timeout, follow_redirects=True)
        except httpx.HTTPError as exc:
            return ProbeOutcome("fail", f"{target} unreachable: {exc}")
        if response.status_code >= 500:
            return ProbeOutcome("fail", f"{target} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            return ProbeOutcome("warn", f"{target} returned HTTP {response.status_code}")
        return ProbeOutcome("pass", f"{target} returned HTTP {response.status_code}")


class ParameterSchemaProbe:
    name = "parameter_schema"

    def check(self, ctx: ProbeContext) -> ProbeOutcome:
        if ctx.registered is None:
            return ProbeOutcome("fail", f"No registered record for v{ctx.template.version}")
        schema = ctx.template.parameter_schema
        bad = sorted(name for name, type_name in schema.items() if type_name not in VALID_PARAM_TYPES)
        if bad:
            return ProbeOutcome("fail", f"Unknown parameter types for: {', '.join(bad)}")
        if schema != ctx.registered["parameter_schema"]:
            return ProbeOutcome("fail", f"Parameter schema differs from registered v{ctx.template.version}")
        if not schema:
            return ProbeOutcome("warn", "Template declares no parameters")
        return ProbeOutcome("pass", f"{len(schema)} parameter(s) match the registered version")


class StepReachabilityProbe:
    name = "step_reachability"

    def check(self, ctx: ProbeContext) -> ProbeOutcome:
        if ctx.registered is None:
            return ProbeOutcome("fail", f"No registered record for v{ctx.template.version}")
        steps = list(ctx.template.steps)
        if not steps:
            return ProbeOutcome("fail", "Template has no steps")
        if steps != list(ctx.registered["steps"]):
            return ProbeOutcome("fail", f"Steps differ from registered v{ctx.template.version}")
        disabled = set(ctx.template.metadata.get("disabled_steps", []))
        unreachable = [s for s in steps if s in disabled]
        if unreachable:
            return ProbeOutcome("fail", f"Unreachable steps: {', '.join(unreachable)}")
        return ProbeOutcome("pass", f"All {len(steps)} step(s) reachable")


def default_probes(accessibility_url: str | None = None) -> list[Probe]:
    access: Probe = HttpAccessibilityProbe(accessibility_url) if accessibility_url else AccessibilityProbe()
    return [access, ParameterSchemaProbe(), StepReachabilityProbe()]


def aggregate(checks: Sequence[CheckResult]) -> str:
    if any(c.status == "fail" for c in checks):
        return "failed"
    if any(c.status == "warn" for c in checks):
        return "degraded"
    return "healthy"


def recommendations(checks: Sequence[CheckResult]) -> list[str]:
    recs: list[str] = []
    for c in checks:
        if c.status == "fail":
            recs.append(_RECOMMENDATIONS.get(c.name, f"Investigate failing check {c.name}"))
        elif c.status == "warn":
            recs.append(f"Monitor {c.name.replace('_', ' ')} for potential issues")
    return recs or ["Template is healthy - continue regular monitoring"]


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class HealthMonitor:
    def __init__(
        self,
        db: CatalogDB,
        rollback: RollbackExecutor,
        *,
        probes: Sequence[Probe] | None = None,
    ) -> None:
        self.db = db
        self.rollback = rollback
        self.settings = db.settings
        self.probes: list[Probe] = list(probes) if probes is not None else default_probes(self.settings.accessibility_url)

    # -- Battery -------------------------------------------------------------

    def run_battery(self, ctx: ProbeContext) -> list[CheckResult]:
        """Run every probe concurrently, each bounded by the probe timeout."""
        timeout = self.settings.probe_timeout_seconds
        pool = ThreadPoolExecutor(max_workers=max(1, len(self.probes)), thread_name_prefix="caplife-probe")
        try:
            futures = [(probe, pool.submit(_timed, probe, ctx)) for probe in self.probes]
            deadline = time.monotonic() + timeout
            checks: list[CheckResult] = []
            for probe, future in futures:
                try:
                    outcome, latency_ms = future.result(timeout=max(0.0, deadline - time.monotonic()))
                except FutureTimeoutError:
                    future.cancel()
                    checks.append(CheckResult(probe.name, "fail", round(timeout * 1000, 2), str(ProbeTimeoutError(probe.name, timeout))))
                    continue
                except Exception as exc:
                    checks.append(CheckResult(probe.name, "fail", 0.0, f"{type(exc).__name__}: {exc}"))
                    continue
                checks.append(CheckResult(probe.name, outcome.status, latency_ms, outcome.message))
        finally:
            # Overrunning probes are abandoned, not joined
            pool.shutdown(wait=False, cancel_futures=True)
        return checks

    def check(self, template_id: str, *, now: datetime | None = None) -> HealthCheckResult:
        """On-demand health check. Does not touch the scheduled-failure counter."""
        template = self.db.get_template(template_id)
        schedule = self.db.get_schedule(template_id)
        next_scheduled = schedule.next_due_at if schedule is not None and schedule.state != "cancelled" else None
        return self._check(template, scheduled=False, now=now or _now(), next_scheduled=next_scheduled)

    def _check(self, template: Template, *, scheduled: bool, now: datetime, next_scheduled: str | None) -> HealthCheckResult:
        try:
            registered = self.db.get_template_version(template.id, template.version)
        except LifecycleError:
            registered = None
        ctx = ProbeContext(
            template=template,
            registered=registered,
            deployed=self.db.is_deployed(template.id, template.version),
            timeout=self.settings.probe_timeout_seconds,
        )
        start = time.monotonic()
        checks = self.run_battery(ctx)
        status = aggregate(checks)
        result = self.db.insert_health_result(
            HealthCheckResult(
                template_id=template.id,
                version=template.version,
                status=status,
                checks=checks,
                scheduled=scheduled,
                timestamp=_iso(now),
                next_scheduled=next_scheduled,
                recommendations=recommendations(checks),
            )
        )
        if status != "failed":
            self._mark_known_good(template.id, template.version)
        log = logger.warning if status == "failed" else logger.info
        log(
            "Health %s for %s v%d",
            status,
            template.id,
            template.version,
            extra={
                "template_id": template.id,
                "operation": "health_check",
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
            },
        )
        return result

    def _mark_known_good(self, template_id: str, version: int) -> None:
        def _mutate(t: Template) -> Template | None:
            if t.last_known_good == version:
                return None
            return replace(t, last_known_good=version)

        self.db.update_template(template_id, _mutate, event_type="known_good")

    # -- Scheduling ----------------------------------------------------------

    def schedule(
        self,
        template_id: str,
        interval_minutes: int | None = None,
        *,
        now: datetime | None = None,
        actor: str = "",
    ) -> Schedule:
        """Start monitoring a deployed template. The first check is due one interval from *now*."""
        interval = interval_minutes if interval_minutes is not None else self.settings.default_interval_minutes
        if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
            msg = f"interval_minutes must be a positive integer, got {interval!r}"
            raise ValidationError(msg)
        template = self.db.get_template(template_id)
        if template.status == "retired":
            msg = f"Template {template_id} is retired and cannot be monitored"
            raise PreconditionFailedError(msg)
        if not self.db.is_deployed(template_id, template.version):
            msg = f"Template {template_id} v{template.version} has no deployment confirmation"
            raise PreconditionFailedError(msg)
        moment = now or _now()
        return self.db.upsert_schedule(template_id, interval, _iso(moment + timedelta(minutes=interval)), actor=actor)

    def cancel(self, template_id: str, *, actor: str = "") -> Schedule:
        return self.db.request_cancel(template_id, actor=actor)

    def tick(self, now: datetime | None = None) -> list[HealthCheckResult]:
        """Run every due scheduled check; roll back after repeated failures."""
        moment = now or _now()
        now_iso = _iso(moment)
        self.db.release_stale_claims(_iso(moment - self.claim_lease))
        results: list[HealthCheckResult] = []
        for schedule in self.db.due_schedules(now_iso):
            if not self.db.claim_schedule(schedule.template_id, now_iso):
                continue
            try:
                result = self._run_claimed(schedule, moment)
            except Exception:
                # Hand the claim back untouched so the next tick retries the check
                self.db.finish_schedule(
                    schedule.template_id, schedule.state, schedule.next_due_at, schedule.consecutive_failures
                )
                raise
            if result is not None:
                results.append(result)
        return results

    @property
    def claim_lease(self) -> timedelta:
        """How long a ``checking`` claim may live before another tick takes it over."""
        return timedelta(seconds=self.settings.probe_timeout_seconds * CLAIM_LEASE_FACTOR)

    def _run_claimed(self, schedule: Schedule, moment: datetime) -> HealthCheckResult | None:
        next_due = _iso(moment + timedelta(minutes=schedule.interval_minutes))
        try:
            template = self.db.get_template(schedule.template_id)
            if template.status == "retired":
                self.db.finish_schedule(schedule.template_id, "cancelled", next_due, 0)
                return None
            result = self._check(template, scheduled=True, now=moment, next_scheduled=next_due)
        except LifecycleError as exc:
            logger.error(
                "Scheduled check for %s failed to run",
                schedule.template_id,
                extra={"template_id": schedule.template_id, "operation": "health_tick", "error": str(exc)},
            )
            self.db.finish_schedule(schedule.template_id, "failed", next_due, schedule.consecutive_failures)
            return None
        failures = schedule.consecutive_failures + 1 if result.status == "failed" else 0
        if failures >= self.settings.failure_debounce:
            self._auto_rollback(template.id, failures)
            failures = 0
        self.db.finish_schedule(template.id, result.status, next_due, failures)
        return result

    def _auto_rollback(self, template_id: str, failures: int) -> None:
        reason = f"{failures} consecutive failed health checks"
        try:
            self.rollback.rollback(template_id, reason, actor="health-monitor")
        except LifecycleError as exc:
            logger.error(
                "Automatic rollback of %s failed",
                template_id,
                extra={"template_id": template_id, "operation": "auto_rollback", "error": str(exc)},
            )

    # -- Queries -------------------------------------------------------------

    def history(self, template_id: str, *, limit: int = 10) -> list[HealthCheckResult]:
        self.db.get_template(template_id)
        return self.db.get_health_results(template_id, limit=limit)

    def trend(self, template_id: str, *, window: int = 6) -> str:
        """``improving``, ``stable`` or ``degrading`` over the last *window* results."""
        results = self.history(template_id, limit=window)
        if len(results) < 2:
            return "stable"
        scores = [_STATUS_SCORE[r.status] for r in reversed(results)]
        half = len(scores) // 2
        older = sum(scores[:half]) / half
        newer = sum(scores[half:]) / (len(scores) - half)
        if newer > older:
            return "improving"
        if newer < older:
            return "degrading"
        return "stable"

    def overall_status(self) -> OverallHealthDict:
        latest = self.db.latest_health_results()
        counts = {"healthy": 0, "degraded": 0, "failed": 0}
        unchecked = 0
        templates = [t for t in self.db.list_templates() if t.status != "retired"]
        for t in templates:
            result = latest.get(t.id)
            if result is None:
                unchecked += 1
            else:
                counts[result.status] += 1
        if counts["failed"]:
            overall = "critical"
        elif counts["degraded"]:
            overall = "degraded"
        else:
            overall = "healthy"
        return {
            "total": len(templates),
            "healthy": counts["healthy"],
            "degraded": counts["degraded"],
            "failed": counts["failed"],
            "unchecked": unchecked,
            "overall_status": overall,
        }


def _timed(probe: Probe, ctx: ProbeContext) -> tuple[ProbeOutcome, float]:
    start = time.monotonic()
    outcome = probe.check(ctx)
    return outcome, round((time.monotonic() - start) * 1000, 2)
