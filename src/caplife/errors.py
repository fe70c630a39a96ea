"""Typed error taxonomy for the lifecycle engine.

Every exception carries the identifiers needed to diagnose it. Lookup and
validation failures subclass the builtin ``KeyError`` / ``ValueError`` so
callers that only know the builtins can still catch them.
"""

from __future__ import annotations


class LifecycleError(Exception):
    """Base class for all caplife errors."""

    code = "LIFECYCLE_ERROR"


class NotFoundError(LifecycleError, KeyError):
    """Raised when a capability, template, plan, or version id is unknown."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")

    def __str__(self) -> str:
        # KeyError.__str__ wraps the message in quotes
        return str(self.args[0])


class ValidationError(LifecycleError, ValueError):
    """Raised when a record is malformed and is rejected before entering the catalog."""

    code = "VALIDATION_ERROR"


class VersionConflictError(LifecycleError):
    """Raised by compare-and-swap when the expected revision is stale."""

    code = "VERSION_CONFLICT"

    def __init__(self, record_id: str, expected: int, actual: int) -> None:
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Revision conflict on {record_id}: expected {expected}, found {actual}. Re-read and retry.")


class ConcurrentModificationError(LifecycleError):
    """Raised when compare-and-swap retries are exhausted."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, record_id: str, attempts: int) -> None:
        self.record_id = record_id
        self.attempts = attempts
        super().__init__(f"Gave up updating {record_id} after {attempts} conflicting attempts")


class TransitionNotAllowedError(LifecycleError, ValueError):
    """Raised when a template status change is not in the transition table."""

    code = "TRANSITION_NOT_ALLOWED"

    def __init__(self, template_id: str, from_status: str, to_status: str) -> None:
        self.template_id = template_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Template {template_id}: transition '{from_status}' -> '{to_status}' is not allowed")


class PreconditionFailedError(LifecycleError, ValueError):
    """Raised when phase or notification ordering would be violated. Never retried."""

    code = "PRECONDITION_FAILED"


class PhaseFailedError(LifecycleError):
    """Raised when a non-rollback-point migration phase fails. The phase may be retried."""

    code = "PHASE_FAILED"

    def __init__(self, plan_id: str, phase_id: str, reason: str) -> None:
        self.plan_id = plan_id
        self.phase_id = phase_id
        self.reason = reason
        super().__init__(f"Plan {plan_id}: phase '{phase_id}' failed: {reason}")


class RollbackTriggeredError(LifecycleError):
    """Raised when a rollback-point phase fails and the source template was restored."""

    code = "ROLLBACK_TRIGGERED"

    def __init__(self, plan_id: str, phase_id: str, reason: str) -> None:
        self.plan_id = plan_id
        self.phase_id = phase_id
        self.reason = reason
        super().__init__(f"Plan {plan_id}: rollback-point phase '{phase_id}' failed ({reason}); source template restored")


class ProbeTimeoutError(LifecycleError):
    """A health probe exceeded its time budget. Recorded as a failed check, never propagated."""

    code = "PROBE_TIMEOUT"

    def __init__(self, probe: str, timeout: float) -> None:
        self.probe = probe
        self.timeout = timeout
        super().__init__(f"ProbeTimeout: {probe} did not finish within {timeout:g}s")


class NoKnownGoodVersionError(LifecycleError):
    """Raised when a rollback is requested for a template that never passed a health check."""

    code = "NO_KNOWN_GOOD_VERSION"

    def __init__(self, template_id: str) -> None:
        self.template_id = template_id
        super().__init__(f"Template {template_id} has no known-good version; manual intervention required")
