"""Rollback executor: reactivate a template's last-known-good version."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import TYPE_CHECKING

from caplife.db_health import Delivery, RollbackResult
from caplife.errors import LifecycleError, NoKnownGoodVersionError, PreconditionFailedError
from caplife.notify import LogNotifier, Notice, Notifier

if TYPE_CHECKING:
    from caplife.core import CatalogDB, Template

logger = logging.getLogger(__name__)


class RollbackExecutor:
    def __init__(self, db: CatalogDB, *, notifier: Notifier | None = None) -> None:
        self.db = db
        self.notifier: Notifier = notifier or LogNotifier()

    def rollback(self, template_id: str, reason: str, *, actor: str = "") -> RollbackResult:
        """Swap the last-known-good version back in and tell the rest of the capability.

        The swap goes through the store's compare-and-swap retry loop. Every
        attempt leaves an insert-only ``RollbackResult``, including failed
        swaps (which are then re-raised). Delivery failures are recorded per
        recipient and never raised.
        """
        template = self.db.get_template(template_id)
        if template.status == "retired":
            msg = f"Template {template_id} is retired; nothing to roll back"
            raise PreconditionFailedError(msg)
        target = template.last_known_good
        if target is None:
            raise NoKnownGoodVersionError(template_id)
        known_good = self.db.get_template_version(template_id, target)
        schema = dict(known_good["parameter_schema"])
        steps = tuple(known_good["steps"])

        def _swap(t: Template) -> Template | None:
            if t.version == target and t.parameter_schema == schema and t.steps == steps:
                return None
            return replace(t, version=target, parameter_schema=schema, steps=steps)

        start = time.monotonic()
        try:
            self.db.update_template(template_id, _swap, actor=actor, event_type="rollback")
        except LifecycleError as exc:
            self.db.insert_rollback(
                template_id, template.version, target, success=False, reason=f"{reason} ({exc})", actor=actor
            )
            logger.error(
                "Rollback of %s to v%d failed",
                template_id,
                target,
                extra={"template_id": template_id, "operation": "rollback", "error": str(exc)},
            )
            raise

        deliveries = self._notify_consumers(template, target, reason)
        result = self.db.insert_rollback(
            template_id,
            template.version,
            target,
            success=True,
            reason=reason,
            notified=deliveries,
            actor=actor,
        )
        logger.warning(
            "Rolled back %s from v%d to v%d: %s",
            template_id,
            template.version,
            target,
            reason,
            extra={
                "template_id": template_id,
                "operation": "rollback",
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
            },
        )
        return result

    def history(self, template_id: str) -> list[RollbackResult]:
        return self.db.get_rollbacks(template_id)

    def _notify_consumers(self, template: Template, target: int, reason: str) -> tuple[Delivery, ...]:
        consumers = [tid for tid in self.db.get_capability(template.capability_id).templates if tid != template.id]
        deliveries: list[Delivery] = []
        for consumer in consumers:
            notice = Notice(
                recipient=consumer,
                subject=f"Template {template.id} rolled back from v{template.version} to v{target}",
                body=reason,
                template_id=template.id,
                data={"from_version": template.version, "target_version": target},
            )
            try:
                self.notifier.send(notice)
            except Exception as exc:
                deliveries.append(Delivery(consumer, False, str(exc) or type(exc).__name__))
                logger.warning(
                    "Rollback notice to %s failed",
                    consumer,
                    extra={"template_id": template.id, "operation": "notify", "error": str(exc)},
                )
            else:
                deliveries.append(Delivery(consumer, True))
        return tuple(deliveries)
