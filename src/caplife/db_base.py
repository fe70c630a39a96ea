"""Shared utilities, types, and Protocol for DB mixins."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from caplife.core import Capability, Template


def _now() -> datetime:
    return datetime.now(UTC)


def _now_iso() -> str:
    return _now().isoformat()


def _iso(moment: datetime) -> str:
    """Serialize *moment* as a UTC ISO timestamp. Naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat()


def _parse_iso(ts: str) -> datetime:
    """Parse an ISO timestamp written by ``_iso``; always returns a UTC-aware datetime."""
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class DBMixinProtocol(Protocol):
    """Shared attributes and methods that DB mixins access via self.

    Mixins inherit this Protocol so mypy can type-check self.conn,
    self.get_template(), etc. without ``type: ignore`` on every call.
    Actual implementations are provided by CatalogDB at composition time.
    """

    db_path: Path
    prefix: str
    _conn: sqlite3.Connection | None

    @property
    def conn(self) -> sqlite3.Connection: ...

    def get_template(self, template_id: str) -> Template: ...

    def get_capability(self, capability_id: str) -> Capability: ...

    def _generate_unique_id(self, table: str, infix: str = "") -> str: ...
