"""EventsMixin: audit trail for catalog mutations.

All methods access ``self.conn`` via Python's MRO when composed into
``CatalogDB``. Events are written inside the caller's transaction; the
caller commits.
"""

from __future__ import annotations

from typing import cast

from caplife.db_base import DBMixinProtocol, _now_iso
from caplife.types.events import EventRecord


class EventsMixin(DBMixinProtocol):
    """Event recording and queries.

    Inherits ``DBMixinProtocol`` for type-safe access to shared attributes.
    Actual implementations provided by ``CatalogDB`` at composition time.
    """

    def _record_event(
        self,
        entity_id: str,
        event_type: str,
        *,
        actor: str = "",
        old_value: str | None = None,
        new_value: str | None = None,
        comment: str = "",
    ) -> None:
        self.conn.execute(
            "INSERT INTO events (entity_id, event_type, actor, old_value, new_value, comment, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (entity_id, event_type, actor, old_value, new_value, comment, _now_iso()),
        )

    def get_recent_events(self, limit: int = 20) -> list[EventRecord]:
        rows = self.conn.execute(
            "SELECT * FROM events ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return cast(list[EventRecord], [dict(r) for r in rows])

    def get_events(self, entity_id: str, *, limit: int = 50) -> list[EventRecord]:
        """Get events for a capability, template, or plan id, newest first."""
        rows = self.conn.execute(
            "SELECT * FROM events WHERE entity_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (entity_id, limit),
        ).fetchall()
        return cast(list[EventRecord], [dict(r) for r in rows])

    def record_event(
        self,
        entity_id: str,
        event_type: str,
        *,
        actor: str = "",
        old_value: str | None = None,
        new_value: str | None = None,
        comment: str = "",
    ) -> None:
        """Record a standalone audit event in its own transaction."""
        try:
            self._record_event(entity_id, event_type, actor=actor, old_value=old_value, new_value=new_value, comment=comment)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
