"""Conflict resolver: detect overlapping templates and apply resolutions.

Resolution strategies form a closed set (deprecate-one, compose, migrate,
namespace-split). Each is a frozen dataclass; ``execute_resolution``
dispatches with an exhaustive ``match``. Executing the same strategy twice
returns the first execution record and changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, ClassVar, assert_never

from caplife import similarity
from caplife.db_base import _now_iso
from caplife.db_plans import OPEN_MIGRATION_STATUSES
from caplife.errors import NotFoundError, ValidationError

if TYPE_CHECKING:
    from caplife.core import CatalogDB, Template
    from caplife.migration import MigrationPlanner
    from caplife.types.lifecycle import ConflictDict, ResolutionDict, ResolutionRecordDict

logger = logging.getLogger(__name__)

CONFLICT_CATEGORIES: frozenset[str] = frozenset({"duplicate", "overlapping", "superseding"})


@dataclass(frozen=True)
class TemplateConflict:
    template_id: str
    other_id: str
    score: float
    category: str
    detected_at: str = ""

    def to_dict(self) -> ConflictDict:
        return {
            "template_id": self.template_id,
            "other_id": self.other_id,
            "score": self.score,
            "category": self.category,
            "detected_at": self.detected_at,
        }


# ---------------------------------------------------------------------------
# Resolution strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeprecateOne:
    template_id: str
    other_id: str
    keep_id: str
    rationale: str = ""
    kind: ClassVar[str] = "deprecate-one"

    def to_dict(self) -> ResolutionDict:
        return _strategy_dict(self, self.keep_id)


@dataclass(frozen=True)
class Compose:
    template_id: str
    other_id: str
    rationale: str = ""
    kind: ClassVar[str] = "compose"

    def to_dict(self) -> ResolutionDict:
        return _strategy_dict(self, None)


@dataclass(frozen=True)
class Migrate:
    template_id: str
    other_id: str
    rationale: str = ""
    kind: ClassVar[str] = "migrate"

    def to_dict(self) -> ResolutionDict:
        return _strategy_dict(self, None)


@dataclass(frozen=True)
class NamespaceSplit:
    template_id: str
    other_id: str
    rationale: str = ""
    kind: ClassVar[str] = "namespace-split"

    def to_dict(self) -> ResolutionDict:
        return _strategy_dict(self, None)


ResolutionStrategy = DeprecateOne | Compose | Migrate | NamespaceSplit

STRATEGY_KINDS: frozenset[str] = frozenset({"deprecate-one", "compose", "migrate", "namespace-split"})


def _strategy_dict(strategy: ResolutionStrategy, keep_id: str | None) -> ResolutionDict:
    return {
        "kind": strategy.kind,
        "template_id": strategy.template_id,
        "other_id": strategy.other_id,
        "keep_id": keep_id,
        "rationale": strategy.rationale,
    }


def strategy_from_dict(data: dict[str, Any]) -> ResolutionStrategy:
    """Parse the API/CLI shape ``{"kind", "template_id", "other_id", "keep_id"?, "rationale"?}``."""
    kind = data.get("kind")
    template_id = data.get("template_id")
    other_id = data.get("other_id")
    if not isinstance(template_id, str) or not template_id or not isinstance(other_id, str) or not other_id:
        msg = "template_id and other_id are required"
        raise ValidationError(msg)
    if template_id == other_id:
        msg = "A template cannot be resolved against itself"
        raise ValidationError(msg)
    rationale = str(data.get("rationale") or "")
    match kind:
        case "deprecate-one":
            keep_id = data.get("keep_id")
            if keep_id not in (template_id, other_id):
                msg = "deprecate-one needs keep_id set to one of the two templates"
                raise ValidationError(msg)
            return DeprecateOne(template_id, other_id, keep_id, rationale)
        case "compose":
            return Compose(template_id, other_id, rationale)
        case "migrate":
            return Migrate(template_id, other_id, rationale)
        case "namespace-split":
            return NamespaceSplit(template_id, other_id, rationale)
        case _:
            msg = f"Unknown resolution kind {kind!r}. Valid: {', '.join(sorted(STRATEGY_KINDS))}"
            raise ValidationError(msg)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ConflictResolver:
    def __init__(self, db: CatalogDB, migration: MigrationPlanner) -> None:
        self.db = db
        self.migration = migration
        self.threshold = db.settings.resolution_threshold
        self.duplicate_threshold = db.settings.duplicate_threshold

    def categorize(self, template: Template, other: Template, score: float) -> str:
        if score >= self.duplicate_threshold:
            return "duplicate"
        if similarity.is_strict_subsequence(other.steps, template.steps):
            return "superseding"
        return "overlapping"

    def detect_conflicts(self, template: Template | str, *, record: bool = True) -> list[TemplateConflict]:
        """Active templates at or above the resolution threshold, most similar first.

        *template* may be a stored template id or an unsaved ``Template``.
        Results for stored templates replace the previously recorded set.
        """
        if isinstance(template, str):
            template = self.db.get_template(template)
        detected_at = _now_iso()
        conflicts: list[TemplateConflict] = []
        for other in self.db.list_templates(status="active"):
            if other.id == template.id:
                continue
            s = round(similarity.score(template, other), 6)
            if s < self.threshold:
                continue
            conflicts.append(TemplateConflict(template.id, other.id, s, self.categorize(template, other, s), detected_at))
        conflicts.sort(key=lambda c: (-c.score, c.other_id))
        if record and self._is_stored(template.id):
            self.db.save_conflicts(template.id, [c.to_dict() for c in conflicts])
        if conflicts:
            logger.info(
                "%d conflict(s) for %s",
                len(conflicts),
                template.id,
                extra={"template_id": template.id, "operation": "detect_conflicts"},
            )
        return conflicts

    def propose(self, conflict: TemplateConflict) -> ResolutionStrategy:
        match conflict.category:
            case "duplicate":
                keep = self._preferred(conflict.template_id, conflict.other_id)
                return DeprecateOne(
                    conflict.template_id,
                    conflict.other_id,
                    keep,
                    f"Duplicate templates (similarity {conflict.score:.2f}); keep the more mature {keep}",
                )
            case "overlapping":
                return Compose(conflict.template_id, conflict.other_id, f"Overlapping templates (similarity {conflict.score:.2f})")
            case "superseding":
                return Migrate(
                    conflict.template_id, conflict.other_id, f"{conflict.template_id} extends the steps of {conflict.other_id}"
                )
            case _:
                msg = f"Unknown conflict category: {conflict.category}"
                raise ValidationError(msg)

    def propose_resolutions(self, conflicts: list[TemplateConflict]) -> list[ResolutionStrategy]:
        return [self.propose(c) for c in conflicts]

    def execute_resolution(self, template_id: str, strategy: ResolutionStrategy, *, actor: str = "") -> ResolutionRecordDict:
        if strategy.template_id != template_id:
            msg = f"Strategy is for {strategy.template_id}, not {template_id}"
            raise ValidationError(msg)
        existing = self.db.get_resolution(strategy.kind, strategy.template_id, strategy.other_id)
        if existing is not None:
            logger.debug("Resolution %s for %s already executed", strategy.kind, template_id)
            return existing
        subject = self.db.get_template(strategy.template_id)
        other = self.db.get_template(strategy.other_id)

        keep_id: str | None = None
        match strategy:
            case DeprecateOne(keep_id=keep_id):
                outcome = self._deprecate_one(subject, other, keep_id, actor)
            case Compose():
                outcome = self._compose(subject, other, actor)
            case Migrate():
                outcome = self._migrate(subject, other, actor)
            case NamespaceSplit():
                outcome = self._namespace_split(subject, actor)
            case _:
                assert_never(strategy)

        record = self.db.record_resolution(
            strategy.kind,
            strategy.template_id,
            strategy.other_id,
            keep_id=keep_id,
            rationale=strategy.rationale,
            outcome=outcome,
            actor=actor,
        )
        logger.info(
            "Executed %s for %s / %s",
            strategy.kind,
            strategy.template_id,
            strategy.other_id,
            extra={"template_id": template_id, "operation": "execute_resolution"},
        )
        return record

    # -- Strategy actions ----------------------------------------------------

    def _deprecate_one(self, subject: Template, other: Template, keep_id: str, actor: str) -> dict[str, Any]:
        if keep_id not in (subject.id, other.id):
            msg = f"keep_id {keep_id} is not part of this conflict"
            raise ValidationError(msg)
        loser = other.id if keep_id == subject.id else subject.id

        def _mutate(t: Template) -> Template | None:
            if t.status in ("deprecated", "retired"):
                return None
            return replace(t, status="deprecated")

        self.db.update_template(loser, _mutate, actor=actor, event_type="resolution_deprecated")
        self.db.freeze_plans_targeting(loser, actor=actor)
        return {"kept": keep_id, "deprecated": loser}

    def _compose(self, subject: Template, other: Template, actor: str) -> dict[str, Any]:
        for a, b in ((subject.id, other.id), (other.id, subject.id)):
            partner = b

            def _mutate(t: Template) -> Template | None:
                composes = list(t.metadata.get("composes_with", []))
                if partner in composes:
                    return None
                return replace(t, metadata={**t.metadata, "composes_with": sorted([*composes, partner])})

            self.db.update_template(a, _mutate, actor=actor, event_type="resolution_composed")
        return {"composed": sorted([subject.id, other.id])}

    def _migrate(self, subject: Template, other: Template, actor: str) -> dict[str, Any]:
        older, newer = sorted((subject, other), key=lambda t: (t.created_at, t.id))
        for plan in self.db.list_migration_plans(source_id=older.id, target_id=newer.id):
            if plan.status in OPEN_MIGRATION_STATUSES:
                return {"plan_id": plan.id, "source_id": older.id, "target_id": newer.id}
        plan = self.migration.create_plan(older.id, newer.id, actor=actor)
        return {"plan_id": plan.id, "source_id": older.id, "target_id": newer.id}

    def _namespace_split(self, subject: Template, actor: str) -> dict[str, Any]:
        namespace = self.db.get_capability(subject.capability_id).name

        def _mutate(t: Template) -> Template | None:
            if t.metadata.get("namespace") == namespace:
                return None
            return replace(t, name=f"{namespace}/{t.name}", metadata={**t.metadata, "namespace": namespace})

        updated = self.db.update_template(subject.id, _mutate, actor=actor, event_type="resolution_namespaced")
        return {"namespace": namespace, "name": updated.name}

    # -- Helpers -------------------------------------------------------------

    def _preferred(self, a_id: str, b_id: str) -> str:
        a_maturity = self.db.get_capability(self.db.get_template(a_id).capability_id).maturity
        b_maturity = self.db.get_capability(self.db.get_template(b_id).capability_id).maturity
        if a_maturity != b_maturity:
            return a_id if a_maturity > b_maturity else b_id
        return min(a_id, b_id)

    def _is_stored(self, template_id: str) -> bool:
        try:
            self.db.get_template(template_id)
        except NotFoundError:
            return False
        return True
