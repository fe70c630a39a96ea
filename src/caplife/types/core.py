"""Foundational TypedDicts for dataclass to_dict() returns."""

from __future__ import annotations

from typing import Any, NewType, TypedDict

ISOTimestamp = NewType("ISOTimestamp", str)


class ProjectConfig(TypedDict, total=False):
    """Shape of .caplife/config.json."""

    prefix: str
    version: int
    resolution_threshold: float
    duplicate_threshold: float
    probe_timeout_seconds: float
    failure_debounce: int
    cas_max_attempts: int
    cas_backoff_seconds: float
    default_interval_minutes: int
    accessibility_url: str
    log_level: str


class CapabilityDict(TypedDict):
    id: str
    name: str
    description: str
    maturity: str
    tags: list[str]
    templates: list[str]
    revision: int
    created_at: ISOTimestamp
    updated_at: ISOTimestamp


class TemplateDict(TypedDict):
    id: str
    capability_id: str
    name: str
    version: int
    parameter_schema: dict[str, str]
    steps: list[str]
    tags: list[str]
    status: str
    last_known_good: int | None
    metadata: dict[str, Any]
    revision: int
    created_at: ISOTimestamp
    updated_at: ISOTimestamp


class TemplateVersionDict(TypedDict):
    """One registered version of a template lineage (``template_versions`` row)."""

    template_id: str
    version: int
    parameter_schema: dict[str, str]
    steps: list[str]
    registered_at: ISOTimestamp
