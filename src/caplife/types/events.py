"""TypedDicts for db_events.py return types."""

from __future__ import annotations

from typing import TypedDict

from caplife.types.core import ISOTimestamp


class EventRecord(TypedDict):
    """Row from the events table (SELECT * FROM events)."""

    id: int
    entity_id: str
    event_type: str
    actor: str
    old_value: str | None
    new_value: str | None
    comment: str
    created_at: ISOTimestamp
