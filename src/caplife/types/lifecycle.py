"""TypedDicts for conflict, migration, and deprecation records."""

from __future__ import annotations

from typing import Any, TypedDict

from caplife.types.core import ISOTimestamp


class ConflictDict(TypedDict):
    template_id: str
    other_id: str
    score: float
    category: str
    detected_at: ISOTimestamp


class ResolutionDict(TypedDict):
    """A proposed resolution strategy."""

    kind: str
    template_id: str
    other_id: str
    keep_id: str | None
    rationale: str


class ResolutionRecordDict(ResolutionDict):
    """Row from the resolutions table: an executed strategy and what it changed."""

    id: int
    outcome: dict[str, Any]
    executed_at: ISOTimestamp


class PhaseDict(TypedDict):
    id: str
    description: str
    entry_criteria: list[str]
    exit_criteria: list[str]
    rollback_point: bool
    status: str
    started_at: ISOTimestamp | None
    completed_at: ISOTimestamp | None
    error: str | None


class MigrationPlanDict(TypedDict):
    id: str
    source_id: str
    target_id: str | None
    from_version: int
    target_version: int | None
    strategy: str
    status: str
    current_phase: int
    phases: list[PhaseDict]
    dependencies: list[str]
    validation_steps: list[str]
    estimated_duration: str
    abort_requested: bool
    error: str | None
    created_at: ISOTimestamp
    updated_at: ISOTimestamp


class NotificationDict(TypedDict):
    kind: str
    recipient_class: str
    scheduled_at: ISOTimestamp
    sent: bool
    sent_at: ISOTimestamp | None
    error: str | None


class DeprecationPlanDict(TypedDict):
    id: str
    template_id: str
    reason: str
    timeline_months: int
    status: str
    support_level: str
    replacements: list[str]
    created_at: ISOTimestamp
    end_of_life: ISOTimestamp
    notifications: list[NotificationDict]
