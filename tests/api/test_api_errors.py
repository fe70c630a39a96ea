"""Request validation shared by every mutating endpoint."""

from __future__ import annotations

import pytest
from httpx import AsyncClient

from tests.api.conftest import error_code


class TestBodyValidation:
    @pytest.mark.parametrize(
        "path",
        ["/api/capabilities", "/api/templates", "/api/migrations", "/api/deprecations", "/api/templates/tpl-web/rollback"],
    )
    async def test_invalid_json(self, client: AsyncClient, path: str) -> None:
        resp = await client.post(path, content=b"{not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Invalid JSON body"

    async def test_non_object_body(self, client: AsyncClient) -> None:
        resp = await client.post("/api/capabilities", json=["Streaming"])
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Request body must be a JSON object"


class TestActorValidation:
    @pytest.mark.parametrize("actor", ["", "   ", "bad\nactor", 42, "x" * 129])
    async def test_rejected(self, client: AsyncClient, actor: object) -> None:
        resp = await client.post("/api/capabilities", json={"name": "Streaming", "actor": actor})
        assert resp.status_code == 400
        assert error_code(resp.json()) == "VALIDATION_ERROR"

    async def test_actor_recorded_trimmed(self, client: AsyncClient) -> None:
        await client.post("/api/templates/tpl-web/deployments", json={"actor": "  gitops-bot  "})
        detail = (await client.get("/api/templates/tpl-web")).json()
        deployed = next(e for e in detail["events"] if e["event_type"] == "deployed")
        assert deployed["actor"] == "gitops-bot"


class TestErrorShape:
    async def test_not_found_shape(self, client: AsyncClient) -> None:
        body = (await client.get("/api/templates/ghost")).json()
        assert set(body["error"]) == {"message", "code", "details"}
        assert body["error"]["code"] == "NOT_FOUND"
