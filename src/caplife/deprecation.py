"""Deprecation scheduler: timed notices and retirement at end-of-life.

A month is 30 days. Notices go out at the start of the timeline
(announcement), halfway through (warning) and 7 days before end-of-life
(final-notice). ``tick(now)`` is the only mutator after creation; calling it
again with the same clock changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from caplife import similarity
from caplife.db_base import _iso, _now, _parse_iso
from caplife.db_plans import DeprecationPlan, Notification
from caplife.errors import LifecycleError, PreconditionFailedError, ValidationError
from caplife.notify import LogNotifier, Notice, Notifier

if TYPE_CHECKING:
    from caplife.core import CatalogDB, Template

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30
FINAL_NOTICE_DAYS = 7
REPLACEMENT_THRESHOLD = 0.5

# (kind, recipient class, position) where position is start / midpoint / final
_NOTICE_SCHEDULE: tuple[tuple[str, str, str], ...] = (
    ("announcement", "owners", "start"),
    ("announcement", "consumers", "start"),
    ("warning", "consumers", "midpoint"),
    ("final-notice", "consumers", "final"),
    ("final-notice", "platform", "final"),
)


def support_level(timeline_months: int) -> str:
    if timeline_months >= 12:
        return "full"
    if timeline_months >= 6:
        return "maintenance"
    if timeline_months >= 2:
        return "security-only"
    return "none"


def build_notifications(created: datetime, end_of_life: datetime) -> list[Notification]:
    """Notification schedule, clipped to ``[created, end_of_life]`` and sorted by date."""
    points = {
        "start": created,
        "midpoint": created + (end_of_life - created) / 2,
        "final": end_of_life - timedelta(days=FINAL_NOTICE_DAYS),
    }
    notifications = [
        Notification(kind=kind, recipient_class=recipient, scheduled_at=_iso(min(max(points[pos], created), end_of_life)))
        for kind, recipient, pos in _NOTICE_SCHEDULE
    ]
    # sort() is stable, so same-day notices keep schedule order
    notifications.sort(key=lambda n: _parse_iso(n.scheduled_at))
    return notifications


@dataclass
class TickReport:
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)


class DeprecationScheduler:
    def __init__(self, db: CatalogDB, *, notifier: Notifier | None = None) -> None:
        self.db = db
        self.notifier: Notifier = notifier or LogNotifier()

    def create_plan(
        self,
        template_id: str,
        reason: str,
        timeline_months: int,
        *,
        now: datetime | None = None,
        actor: str = "",
    ) -> DeprecationPlan:
        """Schedule *template_id* for retirement after *timeline_months* 30-day months.

        The template is marked ``deprecated`` straight away (if active) and
        migration plans that target it are frozen.
        """
        if isinstance(timeline_months, bool) or not isinstance(timeline_months, int) or timeline_months < 0:
            msg = f"timeline_months must be a non-negative integer, got {timeline_months!r}"
            raise ValidationError(msg)
        if not isinstance(reason, str) or not reason.strip():
            msg = "A deprecation reason is required"
            raise ValidationError(msg)
        template = self.db.get_template(template_id)
        if template.status == "retired":
            msg = f"Template {template_id} is already retired"
            raise PreconditionFailedError(msg)
        if self.db.list_deprecation_plans(status="scheduled", template_id=template_id):
            msg = f"Template {template_id} already has an open deprecation plan"
            raise PreconditionFailedError(msg)

        created = now or _now()
        end_of_life = created + timedelta(days=DAYS_PER_MONTH * timeline_months)
        plan = DeprecationPlan(
            id="",
            template_id=template_id,
            reason=reason.strip(),
            timeline_months=timeline_months,
            created_at=_iso(created),
            end_of_life=_iso(end_of_life),
            notifications=build_notifications(created, end_of_life),
            support_level=support_level(timeline_months),
            replacements=self.find_replacements(template),
        )
        plan = self.db.insert_deprecation_plan(plan, actor=actor)

        def _deprecate(t: Template) -> Template | None:
            if t.status != "active":
                return None
            return replace(t, status="deprecated")

        self.db.update_template(template_id, _deprecate, actor=actor, event_type="deprecated")
        self.db.freeze_plans_targeting(template_id, actor=actor)
        logger.info(
            "Deprecation %s scheduled for %s, end-of-life %s",
            plan.id,
            template_id,
            plan.end_of_life,
            extra={"template_id": template_id, "operation": "deprecate"},
        )
        return plan

    def get_plan(self, plan_id: str) -> DeprecationPlan:
        return self.db.get_deprecation_plan(plan_id)

    def find_replacements(self, template: Template) -> list[str]:
        """Active templates similar enough to replace *template*, at the same or a higher maturity."""
        maturity = self.db.get_capability(template.capability_id).maturity
        candidates: list[tuple[float, str]] = []
        for other in self.db.list_templates(status="active"):
            if other.id == template.id:
                continue
            if self.db.get_capability(other.capability_id).maturity < maturity:
                continue
            s = similarity.score(template, other)
            if s >= REPLACEMENT_THRESHOLD:
                candidates.append((-s, other.id))
        return [tid for _, tid in sorted(candidates)]

    def tick(self, now: datetime | None = None) -> TickReport:
        """Send due notices and retire templates whose end-of-life has passed."""
        moment = now or _now()
        report = TickReport()
        for plan in self.db.list_deprecation_plans(status="scheduled"):
            try:
                self._advance(plan, moment, report)
            except LifecycleError as exc:
                logger.error(
                    "Deprecation %s could not advance: %s",
                    plan.id,
                    exc,
                    extra={"template_id": plan.template_id, "operation": "deprecation_tick", "error": str(exc)},
                )
        return report

    def _advance(self, plan: DeprecationPlan, moment: datetime, report: TickReport) -> None:
        for notification in plan.notifications:
            if notification.sent or _parse_iso(notification.scheduled_at) > moment:
                continue
            self._deliver(plan, notification, moment)
            # Each delivered notice is stored as sent before anything else runs
            self.db.save_deprecation_plan(plan)
            (report.failed if notification.error else report.sent).append(f"{plan.id}:{notification.kind}:{notification.recipient_class}")

        if moment >= _parse_iso(plan.end_of_life):

            def _retire(t: Template) -> Template | None:
                if t.status == "retired":
                    return None
                return replace(t, status="retired")

            self.db.update_template(plan.template_id, _retire, event_type="retired")
            plan.status = "completed"
            self.db.save_deprecation_plan(plan)
            report.retired.append(plan.template_id)
            logger.info("Retired %s at end-of-life", plan.template_id, extra={"template_id": plan.template_id, "operation": "retire"})

    def _deliver(self, plan: DeprecationPlan, notification: Notification, moment: datetime) -> None:
        notice = Notice(
            recipient=notification.recipient_class,
            subject=f"[{notification.kind}] {plan.template_id} reaches end-of-life on {plan.end_of_life[:10]}",
            body=plan.reason,
            template_id=plan.template_id,
            data={"plan_id": plan.id, "support_level": plan.support_level, "replacements": plan.replacements},
        )
        try:
            self.notifier.send(notice)
        except Exception as exc:
            notification.error = str(exc) or type(exc).__name__
            logger.warning(
                "Deprecation notice %s to %s failed",
                notification.kind,
                notification.recipient_class,
                extra={"template_id": plan.template_id, "operation": "notify", "error": notification.error},
            )
        notification.sent = True
        notification.sent_at = _iso(moment)
