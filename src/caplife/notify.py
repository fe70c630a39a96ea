"""Notification delivery seam.

Components never talk to a transport directly; they hand a ``Notice`` to a
``Notifier``. A notifier raises on delivery failure and callers decide
whether that is recorded (deprecation, rollback) or propagated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notice:
    recipient: str
    subject: str
    body: str = ""
    template_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    def send(self, notice: Notice) -> None:
        """Deliver *notice*. Raise any exception to report a delivery failure."""
        ...


class LogNotifier:
    """Default notifier: writes each notice to the caplife log."""

    def send(self, notice: Notice) -> None:
        logger.info(
            "notify %s: %s",
            notice.recipient,
            notice.subject,
            extra={"template_id": notice.template_id, "operation": "notify"},
        )
