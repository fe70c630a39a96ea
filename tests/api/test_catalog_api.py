"""Catalog endpoints: capabilities, templates, conflicts, resolutions, deployments."""

from __future__ import annotations

from httpx import AsyncClient

from tests.api.conftest import error_code
from tests.conftest import WEB_SCHEMA, PopulatedCatalog


class TestCapabilities:
    async def test_create(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/capabilities", json={"name": "Streaming", "maturity": "L3", "tags": ["stream"], "actor": "alice"}
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["id"].startswith("test-cap-")
        assert data["templates"] == []

    async def test_list_and_filter(self, client: AsyncClient) -> None:
        all_caps = (await client.get("/api/capabilities")).json()
        assert {c["id"] for c in all_caps} == {"cap-web", "cap-batch"}
        tagged = (await client.get("/api/capabilities", params={"tag": "batch"})).json()
        assert [c["id"] for c in tagged] == ["cap-batch"]

    async def test_search(self, client: AsyncClient) -> None:
        found = (await client.get("/api/capabilities", params={"q": "delivery"})).json()
        assert [c["id"] for c in found] == ["cap-web"]
        assert found[0]["templates"] == ["tpl-web", "tpl-dup", "tpl-overlap", "tpl-super"]

    async def test_detail_and_missing(self, client: AsyncClient) -> None:
        assert (await client.get("/api/capabilities/cap-batch")).json()["templates"] == ["tpl-batch"]
        resp = await client.get("/api/capabilities/cap-nope")
        assert resp.status_code == 404
        assert error_code(resp.json()) == "NOT_FOUND"

    async def test_bad_maturity(self, client: AsyncClient) -> None:
        resp = await client.post("/api/capabilities", json={"name": "X", "maturity": "L7"})
        assert resp.status_code == 400
        assert error_code(resp.json()) == "VALIDATION_ERROR"


class TestTemplates:
    async def test_register_reports_duplicate(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/templates",
            json={
                "capability_id": "cap-web",
                "name": "web again",
                "parameter_schema": WEB_SCHEMA,
                "steps": ["build", "test", "deploy"],
                "tags": ["web", "deploy"],
                "template_id": "tpl-again",
            },
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["template"]["id"] == "tpl-again"
        assert data["conflicts"][0]["category"] == "duplicate"
        assert data["proposals"][0]["kind"] == "deprecate-one"

    async def test_register_new_version(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/templates",
            json={"capability_id": "cap-batch", "name": "batch", "parameter_schema": {"queue": "string"}, "steps": ["fetch"], "template_id": "tpl-batch"},
        )
        assert resp.status_code == 201
        assert resp.json()["template"]["version"] == 2
        detail = (await client.get("/api/templates/tpl-batch")).json()
        assert detail["versions"] == [1, 2]
        assert any(e["event_type"] == "registered" for e in detail["events"])

    async def test_register_blocked_by_pipeline(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/templates",
            json={
                "capability_id": "cap-batch",
                "name": "risky",
                "steps": ["fetch"],
                "pipeline": {"pipeline_id": "ci-1", "security": {"status": "passed", "high_risk": 2}},
            },
        )
        assert resp.status_code == 400
        assert "security" in resp.json()["error"]["message"]

    async def test_register_pipeline_must_be_object(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/templates", json={"capability_id": "cap-batch", "name": "x", "steps": ["fetch"], "pipeline": "green"}
        )
        assert resp.status_code == 400

    async def test_register_stale_version(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/templates",
            json={"capability_id": "cap-batch", "name": "batch", "steps": ["fetch"], "template_id": "tpl-batch", "version": 1},
        )
        assert resp.status_code == 400
        assert error_code(resp.json()) == "VALIDATION_ERROR"

    async def test_register_unknown_capability(self, client: AsyncClient) -> None:
        resp = await client.post("/api/templates", json={"capability_id": "cap-nope", "name": "x", "steps": ["a"]})
        assert resp.status_code == 400
        assert "Unknown capability" in resp.json()["error"]["message"]

    async def test_list_filters(self, client: AsyncClient) -> None:
        batch = (await client.get("/api/templates", params={"capability_id": "cap-batch"})).json()
        assert [t["id"] for t in batch] == ["tpl-batch"]
        l2 = (await client.get("/api/templates", params={"maturity": "L2"})).json()
        assert len(l2) == 4

    async def test_detail_missing(self, client: AsyncClient) -> None:
        assert (await client.get("/api/templates/ghost")).status_code == 404


class TestConflictsAndResolutions:
    async def test_recorded_conflicts(self, client: AsyncClient) -> None:
        data = (await client.get("/api/templates/tpl-super/conflicts")).json()
        assert data["template_id"] == "tpl-super"
        assert {c["other_id"]: c["category"] for c in data["conflicts"]}["tpl-web"] == "superseding"

    async def test_refresh(self, client: AsyncClient) -> None:
        data = (await client.get("/api/templates/tpl-web/conflicts", params={"refresh": "1"})).json()
        assert [c["other_id"] for c in data["conflicts"]] == ["tpl-dup", "tpl-super", "tpl-overlap"]

    async def test_execute_and_repeat(self, client: AsyncClient, api_catalog: PopulatedCatalog) -> None:
        body = {"kind": "deprecate-one", "other_id": "tpl-web", "keep_id": "tpl-web", "actor": "alice"}
        first = await client.post("/api/templates/tpl-dup/resolutions", json=body)
        assert first.status_code == 200
        assert first.json()["outcome"] == {"kept": "tpl-web", "deprecated": "tpl-dup"}
        assert api_catalog.db.get_template("tpl-dup").status == "deprecated"

        again = await client.post("/api/templates/tpl-dup/resolutions", json=body)
        assert again.json() == first.json()
        listed = (await client.get("/api/templates/tpl-dup/resolutions")).json()
        assert len(listed) == 1

    async def test_unknown_kind(self, client: AsyncClient) -> None:
        resp = await client.post("/api/templates/tpl-dup/resolutions", json={"kind": "merge", "other_id": "tpl-web"})
        assert resp.status_code == 400
        assert "Unknown resolution kind" in resp.json()["error"]["message"]


class TestDeployments:
    async def test_confirm_current_version(self, client: AsyncClient, api_catalog: PopulatedCatalog) -> None:
        resp = await client.post("/api/templates/tpl-web/deployments", json={})
        assert resp.status_code == 201
        assert resp.json() == {"template_id": "tpl-web", "version": 1, "environment": "production", "status": "deployed"}
        assert api_catalog.db.is_deployed("tpl-web", 1)

    async def test_unknown_version(self, client: AsyncClient) -> None:
        resp = await client.post("/api/templates/tpl-web/deployments", json={"version": 9})
        assert resp.status_code == 404

    async def test_version_must_be_integer(self, client: AsyncClient) -> None:
        resp = await client.post("/api/templates/tpl-web/deployments", json={"version": "1"})
        assert resp.status_code == 400
