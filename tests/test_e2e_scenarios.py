"""End-to-end lifecycle scenarios driven through a single LifecycleEngine."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from caplife.conflicts import DeprecateOne
from caplife.core import CatalogDB
from caplife.db_base import _parse_iso
from caplife.engine import LifecycleEngine
from caplife.errors import RollbackTriggeredError
from caplife.gitops import DeploymentConfirmation
from caplife.health import default_probes
from tests._helpers import FailingHook, RecordingNotifier, VersionGateProbe
from tests.conftest import WEB_SCHEMA

T0 = datetime(2026, 5, 4, 8, 0, tzinfo=UTC)


class TestDuplicateRegistration:
    def test_duplicate_is_detected_and_resolved(self, engine: LifecycleEngine) -> None:
        engine.db.create_capability("Web delivery", maturity="L2", capability_id="cap-web")
        first = engine.register("cap-web", "web", WEB_SCHEMA, ["build", "test", "deploy"], template_id="tpl-a", tags=["web"])
        assert first.conflicts == []

        second = engine.register("cap-web", "web again", WEB_SCHEMA, ["build", "test", "deploy"], template_id="tpl-b", tags=["web"])
        [conflict] = second.conflicts
        assert (conflict.template_id, conflict.other_id, conflict.category) == ("tpl-b", "tpl-a", "duplicate")
        assert conflict.score == pytest.approx(1.0)
        [proposal] = second.proposals
        assert isinstance(proposal, DeprecateOne)

        record = engine.resolver.execute_resolution("tpl-b", proposal)
        kept = record["outcome"]["kept"]
        dropped = record["outcome"]["deprecated"]
        assert {kept, dropped} == {"tpl-a", "tpl-b"}
        assert engine.db.get_template(kept).status == "active"
        assert engine.db.get_template(dropped).status == "deprecated"

    def test_cache_templates_sharing_most_steps(self, engine: LifecycleEngine) -> None:
        engine.db.create_capability("Caching", maturity="L2", capability_id="cap-cache")
        schema = {"size_mb": "number", "eviction": "string"}
        steps = ["provision", "configure", "auth", "tls", "persist", "replicate", "monitor", "backup", "alert", "verify"]
        engine.register("cap-cache", "redis cache", schema, steps, template_id="T1", tags=["cache", "redis"])
        t2_steps = [*steps[:9], "smoke-test"]

        second = engine.register("cap-cache", "redis cache v2", schema, t2_steps, template_id="T2", tags=["cache", "redis"])
        assert [(c.other_id, c.category) for c in second.conflicts] == [("T1", "duplicate")]
        assert second.conflicts[0].score == pytest.approx(0.97)
        [again] = engine.resolver.detect_conflicts("T2")
        assert (again.other_id, again.category, again.score) == ("T1", "duplicate", second.conflicts[0].score)


class TestCutoverFailure:
    def test_failed_cutover_restores_source(self, db: CatalogDB, notifier: RecordingNotifier) -> None:
        hook = FailingHook("cutover")
        engine = LifecycleEngine(db, notifier=notifier, hook=hook)
        db.create_capability("Web delivery", capability_id="cap-web")
        engine.register("cap-web", "old", WEB_SCHEMA, ["build", "deploy"], template_id="tpl-old")
        engine.register("cap-web", "new", WEB_SCHEMA, ["build", "test", "deploy"], template_id="tpl-new")
        before = db.get_template("tpl-old").snapshot()

        plan = engine.migrations.create_plan("tpl-old", "tpl-new")
        engine.migrations.execute_phase(plan.id, "announce")
        engine.migrations.execute_phase(plan.id, "dual-run")
        assert db.get_template("tpl-old").status == "migrating"

        with pytest.raises(RollbackTriggeredError):
            engine.migrations.execute_phase(plan.id, "cutover")

        assert db.get_template("tpl-old").snapshot() == before
        stored = engine.migrations.get_plan(plan.id)
        assert stored.status == "failed"
        assert [p.status for p in stored.phases] == ["completed", "completed", "failed", "pending", "pending"]
        assert hook.calls == ["announce", "dual-run", "cutover"]


class TestAutomaticRollback:
    def test_three_failed_checks_restore_known_good(self, db: CatalogDB, notifier: RecordingNotifier) -> None:
        engine = LifecycleEngine(db, notifier=notifier, probes=[VersionGateProbe({2}), *default_probes()])
        db.create_capability("Web delivery", capability_id="cap-web")
        engine.register("cap-web", "web", WEB_SCHEMA, ["build", "deploy"], template_id="tpl-web")
        engine.register("cap-web", "api", WEB_SCHEMA, ["build", "publish"], template_id="tpl-api")

        engine.confirm_deployment(DeploymentConfirmation("tpl-web", 1))
        assert engine.health.check("tpl-web", now=T0).status == "healthy"
        assert db.get_template("tpl-web").last_known_good == 1

        engine.register("cap-web", "web", WEB_SCHEMA, ["build", "scan", "deploy"], template_id="tpl-web")
        engine.confirm_deployment(DeploymentConfirmation("tpl-web", 2))
        engine.health.schedule("tpl-web", 10, now=T0)

        for n in (1, 2, 3):
            tick = engine.tick(T0 + timedelta(minutes=10 * n))
            assert [r.status for r in tick.health] == ["failed"]

        web = db.get_template("tpl-web")
        assert web.version == 1
        assert web.steps == ("build", "deploy")
        [record] = engine.rollbacks.history("tpl-web")
        assert (record.from_version, record.target_version) == (2, 1)
        assert [d.recipient for d in record.notified] == ["tpl-api"]
        assert "tpl-api" in notifier.recipients()


class TestDeprecationTimeline:
    def test_six_month_deprecation(self, db: CatalogDB, notifier: RecordingNotifier) -> None:
        engine = LifecycleEngine(db, notifier=notifier)
        db.create_capability("Batch", capability_id="cap-batch")
        engine.register("cap-batch", "nightly", {"queue": "string"}, ["fetch", "process"], template_id="tpl-nightly")

        plan = engine.deprecations.create_plan("tpl-nightly", "replaced by streaming", 6, now=T0)
        assert plan.support_level == "maintenance"
        eol = _parse_iso(plan.end_of_life)
        assert eol == T0 + timedelta(days=180)
        dates = [_parse_iso(n.scheduled_at) for n in plan.notifications]
        assert dates == sorted(dates)
        assert all(d <= eol for d in dates)

        report = engine.tick(T0 + timedelta(days=180)).deprecation
        assert len(report.sent) == 5
        assert report.retired == ["tpl-nightly"]
        assert db.get_template("tpl-nightly").status == "retired"
        assert all(n.sent for n in engine.deprecations.get_plan(plan.id).notifications)
