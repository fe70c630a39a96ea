"""Conflict detection, categorization, proposals and resolution execution."""

from __future__ import annotations

import pytest

from caplife.conflicts import (
    Compose,
    DeprecateOne,
    Migrate,
    NamespaceSplit,
    TemplateConflict,
    strategy_from_dict,
)
from caplife.core import Template
from caplife.errors import ValidationError
from tests.conftest import WEB_SCHEMA, PopulatedCatalog

SUPER_SCORE = pytest.approx(0.4 * 2 / 3 + 0.3 + 0.3 * 6 / 7, abs=1e-6)


class TestDetection:
    def test_sorted_by_score_then_id(self, populated: PopulatedCatalog) -> None:
        conflicts = populated.engine.resolver.detect_conflicts("tpl-web")
        assert [c.other_id for c in conflicts] == ["tpl-dup", "tpl-super", "tpl-overlap"]
        assert [c.score for c in conflicts] == [1.0, SUPER_SCORE, pytest.approx(0.8)]

    def test_categories_from_subject_perspective(self, populated: PopulatedCatalog) -> None:
        by_other = {c.other_id: c.category for c in populated.engine.resolver.detect_conflicts("tpl-web")}
        assert by_other == {"tpl-dup": "duplicate", "tpl-super": "overlapping", "tpl-overlap": "overlapping"}

    def test_superseding_when_other_steps_are_contained(self, populated: PopulatedCatalog) -> None:
        conflicts = populated.engine.resolver.detect_conflicts("tpl-super")
        assert [(c.other_id, c.category) for c in conflicts] == [
            ("tpl-dup", "superseding"),
            ("tpl-web", "superseding"),
        ]

    def test_ties_broken_by_other_id(self, populated: PopulatedCatalog) -> None:
        conflicts = populated.engine.resolver.detect_conflicts("tpl-super")
        assert conflicts[0].score == conflicts[1].score
        assert conflicts[0].other_id < conflicts[1].other_id

    def test_below_threshold_excluded(self, populated: PopulatedCatalog) -> None:
        assert populated.engine.resolver.detect_conflicts("tpl-batch") == []

    def test_only_active_templates_considered(self, populated: PopulatedCatalog) -> None:
        populated.engine.deprecations.create_plan("tpl-dup", "superseded", 6)
        others = [c.other_id for c in populated.engine.resolver.detect_conflicts("tpl-web")]
        assert "tpl-dup" not in others

    def test_detection_is_recorded(self, populated: PopulatedCatalog) -> None:
        populated.engine.resolver.detect_conflicts("tpl-web")
        stored = populated.db.get_conflicts("tpl-web")
        assert [c["other_id"] for c in stored] == ["tpl-dup", "tpl-super", "tpl-overlap"]

    def test_unsaved_template_not_recorded(self, populated: PopulatedCatalog) -> None:
        draft = Template(
            id="draft",
            capability_id="cap-web",
            name="draft",
            parameter_schema=dict(WEB_SCHEMA),
            steps=("build", "test", "deploy"),
            tags=("web", "deploy"),
        )
        conflicts = populated.engine.resolver.detect_conflicts(draft)
        assert conflicts[0].category == "duplicate"
        assert populated.db.get_conflicts("draft") == []

    def test_registration_reports_conflicts(self, populated: PopulatedCatalog) -> None:
        result = populated.engine.register(
            "cap-web", "web again", WEB_SCHEMA, ["build", "test", "deploy"], template_id="tpl-again", tags=["web", "deploy"]
        )
        assert result.conflicts[0].category == "duplicate"
        assert len(result.proposals) == len(result.conflicts)


class TestProposals:
    def test_duplicate_proposes_deprecate_one(self, populated: PopulatedCatalog) -> None:
        resolver = populated.engine.resolver
        proposal = resolver.propose(TemplateConflict("tpl-web", "tpl-dup", 1.0, "duplicate"))
        assert isinstance(proposal, DeprecateOne)
        # same maturity: lowest id wins
        assert proposal.keep_id == "tpl-dup"

    def test_duplicate_prefers_higher_maturity(self, populated: PopulatedCatalog) -> None:
        db = populated.db
        db.register_template("cap-batch", "web batch", WEB_SCHEMA, ["build", "test", "deploy"], template_id="tpl-a-low")
        proposal = populated.engine.resolver.propose(TemplateConflict("tpl-a-low", "tpl-web", 0.95, "duplicate"))
        assert isinstance(proposal, DeprecateOne)
        assert proposal.keep_id == "tpl-web"

    def test_overlapping_proposes_compose(self, populated: PopulatedCatalog) -> None:
        proposal = populated.engine.resolver.propose(TemplateConflict("tpl-web", "tpl-overlap", 0.8, "overlapping"))
        assert isinstance(proposal, Compose)

    def test_superseding_proposes_migrate(self, populated: PopulatedCatalog) -> None:
        proposal = populated.engine.resolver.propose(TemplateConflict("tpl-super", "tpl-web", 0.82, "superseding"))
        assert isinstance(proposal, Migrate)

    def test_unknown_category(self, populated: PopulatedCatalog) -> None:
        with pytest.raises(ValidationError):
            populated.engine.resolver.propose(TemplateConflict("tpl-web", "tpl-dup", 1.0, "weird"))


class TestExecution:
    def test_deprecate_one(self, populated: PopulatedCatalog) -> None:
        record = populated.engine.resolver.execute_resolution("tpl-web", DeprecateOne("tpl-web", "tpl-dup", "tpl-web"))
        assert record["outcome"] == {"kept": "tpl-web", "deprecated": "tpl-dup"}
        assert populated.db.get_template("tpl-dup").status == "deprecated"
        assert populated.db.get_template("tpl-web").status == "active"

    def test_compose_links_both(self, populated: PopulatedCatalog) -> None:
        populated.engine.resolver.execute_resolution("tpl-web", Compose("tpl-web", "tpl-overlap"))
        assert populated.db.get_template("tpl-web").metadata["composes_with"] == ["tpl-overlap"]
        assert populated.db.get_template("tpl-overlap").metadata["composes_with"] == ["tpl-web"]

    def test_migrate_plans_older_to_newer(self, populated: PopulatedCatalog) -> None:
        record = populated.engine.resolver.execute_resolution("tpl-super", Migrate("tpl-super", "tpl-web"))
        plan = populated.db.get_migration_plan(record["outcome"]["plan_id"])
        assert (plan.source_id, plan.target_id) == ("tpl-web", "tpl-super")

    def test_namespace_split_renames(self, populated: PopulatedCatalog) -> None:
        populated.engine.resolver.execute_resolution("tpl-overlap", NamespaceSplit("tpl-overlap", "tpl-web"))
        t = populated.db.get_template("tpl-overlap")
        assert t.name == "Web delivery/web package"
        assert t.metadata["namespace"] == "Web delivery"

    def test_repeat_returns_first_record_without_changes(self, populated: PopulatedCatalog) -> None:
        resolver = populated.engine.resolver
        first = resolver.execute_resolution("tpl-web", Compose("tpl-web", "tpl-overlap"))
        revision = populated.db.get_template("tpl-web").revision
        second = resolver.execute_resolution("tpl-web", Compose("tpl-web", "tpl-overlap", rationale="again"))
        assert second == first
        assert populated.db.get_template("tpl-web").revision == revision
        assert len(populated.db.list_resolutions("tpl-web")) == 1

    def test_repeat_migrate_creates_one_plan(self, populated: PopulatedCatalog) -> None:
        resolver = populated.engine.resolver
        resolver.execute_resolution("tpl-super", Migrate("tpl-super", "tpl-web"))
        resolver.execute_resolution("tpl-super", Migrate("tpl-super", "tpl-web"))
        assert len(populated.db.list_migration_plans(source_id="tpl-web")) == 1

    def test_strategy_for_another_template_rejected(self, populated: PopulatedCatalog) -> None:
        with pytest.raises(ValidationError, match="Strategy is for"):
            populated.engine.resolver.execute_resolution("tpl-web", Compose("tpl-dup", "tpl-web"))

    def test_deprecated_loser_freezes_plans_targeting_it(self, populated: PopulatedCatalog) -> None:
        plan = populated.engine.migrations.create_plan("tpl-web", "tpl-dup")
        populated.engine.resolver.execute_resolution("tpl-web", DeprecateOne("tpl-web", "tpl-dup", "tpl-web"))
        assert populated.db.get_migration_plan(plan.id).status == "frozen"


class TestStrategyParsing:
    def test_parses_each_kind(self) -> None:
        base = {"template_id": "a", "other_id": "b"}
        assert isinstance(strategy_from_dict({**base, "kind": "compose"}), Compose)
        assert isinstance(strategy_from_dict({**base, "kind": "migrate"}), Migrate)
        assert isinstance(strategy_from_dict({**base, "kind": "namespace-split"}), NamespaceSplit)
        parsed = strategy_from_dict({**base, "kind": "deprecate-one", "keep_id": "b"})
        assert parsed == DeprecateOne("a", "b", "b")

    def test_to_dict_round_trip(self) -> None:
        strategy = DeprecateOne("a", "b", "a", "keep the original")
        assert strategy_from_dict(dict(strategy.to_dict())) == strategy

    @pytest.mark.parametrize(
        ("data", "match"),
        [
            ({"kind": "compose", "template_id": "a"}, "required"),
            ({"kind": "compose", "template_id": "a", "other_id": "a"}, "itself"),
            ({"kind": "deprecate-one", "template_id": "a", "other_id": "b", "keep_id": "c"}, "keep_id"),
            ({"kind": "merge", "template_id": "a", "other_id": "b"}, "Unknown resolution kind"),
        ],
    )
    def test_rejects_bad_input(self, data: dict[str, str], match: str) -> None:
        with pytest.raises(ValidationError, match=match):
            strategy_from_dict(data)
