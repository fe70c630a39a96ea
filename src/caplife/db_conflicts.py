"""ConflictsMixin: persistence for detected conflicts and executed resolutions.

All methods access ``self.conn`` via Python's MRO when composed into
``CatalogDB``.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from caplife.db_base import DBMixinProtocol, _now_iso
from caplife.types.lifecycle import ConflictDict, ResolutionRecordDict


class ConflictsMixin(DBMixinProtocol):
    """Conflict snapshots and the resolution ledger.

    Inherits ``DBMixinProtocol`` for type-safe access to shared attributes.
    Actual implementations provided by ``CatalogDB`` at composition time.
    """

    if TYPE_CHECKING:
        # From EventsMixin
        def _record_event(
            self,
            entity_id: str,
            event_type: str,
            *,
            actor: str = "",
            old_value: str | None = None,
            new_value: str | None = None,
            comment: str = "",
        ) -> None: ...

    # -- Conflicts -----------------------------------------------------------

    def save_conflicts(self, template_id: str, conflicts: list[ConflictDict]) -> None:
        """Replace the stored conflict set for *template_id* with *conflicts*."""
        try:
            self.conn.execute("DELETE FROM conflicts WHERE template_id = ?", (template_id,))
            self.conn.executemany(
                "INSERT INTO conflicts (template_id, other_id, score, category, detected_at) VALUES (?, ?, ?, ?, ?)",
                [(c["template_id"], c["other_id"], c["score"], c["category"], c["detected_at"]) for c in conflicts],
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def get_conflicts(self, template_id: str) -> list[ConflictDict]:
        """Last recorded conflicts for *template_id*, highest score first."""
        rows = self.conn.execute(
            "SELECT * FROM conflicts WHERE template_id = ? ORDER BY score DESC, other_id ASC",
            (template_id,),
        ).fetchall()
        return [
            {
                "template_id": r["template_id"],
                "other_id": r["other_id"],
                "score": r["score"],
                "category": r["category"],
                "detected_at": r["detected_at"],
            }
            for r in rows
        ]

    # -- Resolutions ---------------------------------------------------------

    def get_resolution(self, kind: str, template_id: str, other_id: str) -> ResolutionRecordDict | None:
        row = self.conn.execute(
            "SELECT * FROM resolutions WHERE kind = ? AND template_id = ? AND other_id = ?",
            (kind, template_id, other_id),
        ).fetchone()
        if row is None:
            return None
        return self._build_resolution(row)

    def record_resolution(
        self,
        kind: str,
        template_id: str,
        other_id: str,
        *,
        keep_id: str | None = None,
        rationale: str = "",
        outcome: dict[str, Any] | None = None,
        actor: str = "",
    ) -> ResolutionRecordDict:
        """Insert a resolution record. Returns the existing record if one is already present."""
        try:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO resolutions (kind, template_id, other_id, keep_id, rationale, outcome, executed_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (kind, template_id, other_id, keep_id, rationale, json.dumps(outcome or {}), _now_iso()),
            )
            if cursor.rowcount:
                self._record_event(template_id, "resolution_executed", actor=actor, new_value=f"{kind}:{other_id}")
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        record = self.get_resolution(kind, template_id, other_id)
        assert record is not None
        return record

    def list_resolutions(self, template_id: str | None = None) -> list[ResolutionRecordDict]:
        if template_id is None:
            rows = self.conn.execute("SELECT * FROM resolutions ORDER BY id").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM resolutions WHERE template_id = ? OR other_id = ? ORDER BY id",
                (template_id, template_id),
            ).fetchall()
        return [self._build_resolution(r) for r in rows]

    def _build_resolution(self, row: Any) -> ResolutionRecordDict:
        return {
            "id": row["id"],
            "kind": row["kind"],
            "template_id": row["template_id"],
            "other_id": row["other_id"],
            "keep_id": row["keep_id"],
            "rationale": row["rationale"] or "",
            "outcome": json.loads(row["outcome"] or "{}"),
            "executed_at": row["executed_at"],
        }
