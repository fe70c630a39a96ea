"""TypedDicts for health monitoring and rollback records."""

from __future__ import annotations

from typing import TypedDict

from caplife.types.core import ISOTimestamp


class CheckDict(TypedDict):
    name: str
    status: str
    latency_ms: float
    message: str


class HealthCheckResultDict(TypedDict):
    id: int | None
    template_id: str
    version: int
    status: str
    checks: list[CheckDict]
    scheduled: bool
    timestamp: ISOTimestamp
    next_scheduled: ISOTimestamp | None
    recommendations: list[str]


class ScheduleDict(TypedDict):
    """Row from health_schedules: the per-template monitoring state machine."""

    template_id: str
    interval_minutes: int
    state: str
    next_due_at: ISOTimestamp
    consecutive_failures: int
    cancel_requested: bool
    updated_at: ISOTimestamp
    claimed_at: ISOTimestamp | None


class DeliveryDict(TypedDict):
    recipient: str
    delivered: bool
    error: str | None


class RollbackResultDict(TypedDict):
    id: int
    template_id: str
    from_version: int
    target_version: int
    success: bool
    reason: str
    notified: list[DeliveryDict]
    created_at: ISOTimestamp


class OverallHealthDict(TypedDict):
    total: int
    healthy: int
    degraded: int
    failed: int
    unchecked: int
    overall_status: str
