# IMPORT CONSTRAINT: types/ modules must only import from typing, stdlib, and each other.
# NEVER import from core.py, db_base.py, or any mixin: this prevents circular imports.
"""Typed return-value contracts for caplife core and API layers."""

from __future__ import annotations

from caplife.types.core import (
    CapabilityDict,
    ISOTimestamp,
    ProjectConfig,
    TemplateDict,
    TemplateVersionDict,
)
from caplife.types.events import EventRecord
from caplife.types.health import (
    CheckDict,
    DeliveryDict,
    HealthCheckResultDict,
    OverallHealthDict,
    RollbackResultDict,
    ScheduleDict,
)
from caplife.types.lifecycle import (
    ConflictDict,
    DeprecationPlanDict,
    MigrationPlanDict,
    NotificationDict,
    PhaseDict,
    ResolutionDict,
    ResolutionRecordDict,
)

__all__ = [
    "CapabilityDict",
    "CheckDict",
    "ConflictDict",
    "DeliveryDict",
    "DeprecationPlanDict",
    "EventRecord",
    "HealthCheckResultDict",
    "ISOTimestamp",
    "MigrationPlanDict",
    "NotificationDict",
    "OverallHealthDict",
    "PhaseDict",
    "ProjectConfig",
    "ResolutionDict",
    "ResolutionRecordDict",
    "RollbackResultDict",
    "ScheduleDict",
    "TemplateDict",
    "TemplateVersionDict",
]
