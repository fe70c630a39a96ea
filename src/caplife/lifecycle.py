"""Template status state machine and capability maturity levels.

The transition table is configuration data: it is frozen at import time and
consulted by the catalog store before every status change. ``retired`` has no
outgoing transitions.
"""

from __future__ import annotations

import enum
import logging
from typing import Literal

from caplife.errors import TransitionNotAllowedError, ValidationError

logger = logging.getLogger(__name__)

TemplateStatus = Literal["active", "deprecated", "migrating", "retired"]

VALID_STATUSES: frozenset[str] = frozenset({"active", "deprecated", "migrating", "retired"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"retired"})

# from -> allowed targets. Same-status writes are always allowed (metadata/version swaps).
_TRANSITIONS: dict[str, frozenset[str]] = {
    "active": frozenset({"migrating", "deprecated", "retired"}),
    "migrating": frozenset({"active", "deprecated", "retired"}),
    "deprecated": frozenset({"active", "retired"}),
    "retired": frozenset(),
}


def is_transition_allowed(from_status: str, to_status: str) -> bool:
    if from_status == to_status:
        return from_status in VALID_STATUSES
    return to_status in _TRANSITIONS.get(from_status, frozenset())


def check_transition(template_id: str, from_status: str, to_status: str) -> None:
    """Raise ``TransitionNotAllowedError`` unless ``from_status -> to_status`` is legal."""
    if to_status not in VALID_STATUSES:
        msg = f"Invalid status '{to_status}'. Valid: {', '.join(sorted(VALID_STATUSES))}"
        raise ValidationError(msg)
    if not is_transition_allowed(from_status, to_status):
        logger.debug("Rejected transition %s: %s -> %s", template_id, from_status, to_status)
        raise TransitionNotAllowedError(template_id, from_status, to_status)


def valid_transitions(from_status: str) -> list[str]:
    return sorted(_TRANSITIONS.get(from_status, frozenset()))


class Maturity(enum.IntEnum):
    """Ordered production-readiness levels of a capability."""

    L1 = 1  # generation
    L2 = 2  # deployment
    L3 = 3  # operations
    L4 = 4  # governance
    L5 = 5  # intent-driven

    @classmethod
    def parse(cls, value: object) -> Maturity:
        """Accept ``Maturity``, ``3``, ``"3"``, ``"L3"`` or ``"l3"``."""
        if isinstance(value, Maturity):
            return value
        if isinstance(value, bool):
            msg = f"Invalid maturity level: {value!r}"
            raise ValidationError(msg)
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                msg = f"Invalid maturity level: {value!r} (expected 1-5)"
                raise ValidationError(msg) from None
        if isinstance(value, str):
            text = value.strip().upper()
            if text in cls.__members__:
                return cls[text]
            if text.isdigit():
                return cls.parse(int(text))
        msg = f"Invalid maturity level: {value!r} (expected L1-L5)"
        raise ValidationError(msg)


# A capability may move up by at most two steps at a time (skipping one level).
_MAX_MATURITY_STEP = 2


def check_maturity_progression(current: Maturity, new: Maturity) -> None:
    """Raise ``ValidationError`` on a downgrade or on skipping more than one level."""
    if new < current:
        msg = f"Cannot downgrade maturity from {current.name} to {new.name}"
        raise ValidationError(msg)
    if new - current > _MAX_MATURITY_STEP:
        msg = f"Cannot skip more than one maturity level. Current: {current.name}, Target: {new.name}"
        raise ValidationError(msg)
