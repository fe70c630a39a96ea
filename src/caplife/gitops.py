"""Inputs supplied by the GitOps manager.

caplife never runs pipelines or touches repositories. The GitOps manager
hands us the outcome of a CI/CD validation run (checked at registration)
and deployment confirmations (required before health monitoring starts).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from caplife.errors import ValidationError

GateStatus = Literal["passed", "failed", "warning"]
_GATE_STATUSES: frozenset[str] = frozenset({"passed", "failed", "warning"})


@dataclass(frozen=True)
class SecurityScan:
    status: GateStatus = "passed"
    high_risk: int = 0
    medium_risk: int = 0
    low_risk: int = 0


@dataclass(frozen=True)
class QualityGate:
    status: GateStatus = "passed"
    coverage: float = 0.0


@dataclass(frozen=True)
class PipelineValidation:
    """Result of the CI/CD validation run for a template change."""

    pipeline_id: str
    status: GateStatus = "passed"
    security: SecurityScan = field(default_factory=SecurityScan)
    quality: QualityGate = field(default_factory=QualityGate)
    failed_checks: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def blocking_failures(self) -> list[str]:
        """Names of failed gates. Any entry blocks registration; warnings do not."""
        failures: list[str] = []
        if self.security.status == "failed" or self.security.high_risk > 0:
            failures.append("security")
        if self.quality.status == "failed":
            failures.append("quality")
        failures.extend(f"check:{name}" for name in self.failed_checks)
        if self.status == "failed" and not failures:
            failures.append("pipeline")
        return failures

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineValidation:
        """Build from the JSON shape used by the API and CLI (``--pipeline`` file)."""
        security = data.get("security") or {}
        quality = data.get("quality") or {}
        for status in (data.get("status", "passed"), security.get("status", "passed"), quality.get("status", "passed")):
            if status not in _GATE_STATUSES:
                msg = f"Invalid gate status {status!r}. Valid: {', '.join(sorted(_GATE_STATUSES))}"
                raise ValidationError(msg)
        return cls(
            pipeline_id=str(data.get("pipeline_id", "")),
            status=data.get("status", "passed"),
            security=SecurityScan(
                status=security.get("status", "passed"),
                high_risk=int(security.get("high_risk", 0)),
                medium_risk=int(security.get("medium_risk", 0)),
                low_risk=int(security.get("low_risk", 0)),
            ),
            quality=QualityGate(
                status=quality.get("status", "passed"),
                coverage=float(quality.get("coverage", 0.0)),
            ),
            failed_checks=tuple(data.get("failed_checks", ())),
            warnings=tuple(data.get("warnings", ())),
        )


@dataclass(frozen=True)
class DeploymentConfirmation:
    """The GitOps manager's statement that a template version is live."""

    template_id: str
    version: int
    environment: str = "production"
