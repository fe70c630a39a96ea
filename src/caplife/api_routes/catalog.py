"""Catalog route handlers: capabilities, templates, conflicts, resolutions, deployments."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fastapi import APIRouter

from fastapi.responses import JSONResponse
from starlette.requests import Request

from caplife.api_routes.common import (
    _error_response,
    _lifecycle_error_response,
    _optional_int,
    _parse_json_body,
    _validate_actor,
)
from caplife.conflicts import strategy_from_dict
from caplife.engine import LifecycleEngine
from caplife.errors import LifecycleError
from caplife.gitops import DeploymentConfirmation, PipelineValidation

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------


def create_router() -> APIRouter:
    """Build the APIRouter for catalog endpoints.

    NOTE: All handlers are async despite doing synchronous SQLite I/O.
    This serializes DB access on the event loop thread.
    """
    from fastapi import APIRouter, Depends

    from caplife.api import _get_engine

    router = APIRouter()

    # -- Capabilities --------------------------------------------------------

    @router.post("/capabilities", status_code=201)
    async def api_create_capability(request: Request, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        """Create a capability."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        try:
            cap = engine.db.create_capability(
                body.get("name", ""),
                description=str(body.get("description", "")),
                maturity=body.get("maturity", 1),
                tags=body.get("tags"),
                capability_id=body.get("id"),
                actor=actor,
            )
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(cap.to_dict(), status_code=201)

    @router.get("/capabilities")
    async def api_capabilities(request: Request, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        """List capabilities, filtered by ``maturity`` / ``tag`` or searched with ``q``."""
        params = request.query_params
        try:
            if "q" in params:
                caps = engine.db.search_capabilities(params["q"])
            else:
                caps = engine.db.list_capabilities(maturity=params.get("maturity"), tag=params.get("tag"))
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse([c.to_dict() for c in caps])

    @router.get("/capabilities/{capability_id}")
    async def api_capability_detail(capability_id: str, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        try:
            cap = engine.db.get_capability(capability_id)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(cap.to_dict())

    # -- Templates -----------------------------------------------------------

    @router.post("/templates", status_code=201)
    async def api_register_template(request: Request, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        """Register a template (or a new version) and report its conflicts."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        version = _optional_int(body, "version")
        if isinstance(version, JSONResponse):
            return version
        pipeline = None
        raw_pipeline = body.get("pipeline")
        if raw_pipeline is not None:
            if not isinstance(raw_pipeline, dict):
                return _error_response("pipeline must be a JSON object", "VALIDATION_ERROR", 400)
            try:
                pipeline = PipelineValidation.from_dict(raw_pipeline)
            except LifecycleError as e:
                return _lifecycle_error_response(e)
            except (TypeError, ValueError) as e:
                return _error_response(f"Invalid pipeline: {e}", "VALIDATION_ERROR", 400)
        try:
            result = engine.register(
                body.get("capability_id", ""),
                body.get("name", ""),
                body.get("parameter_schema", {}),
                body.get("steps", []),
                template_id=body.get("template_id"),
                version=version,
                tags=body.get("tags"),
                pipeline=pipeline,
                actor=actor,
            )
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(
            {
                "template": result.template.to_dict(),
                "conflicts": [c.to_dict() for c in result.conflicts],
                "proposals": [p.to_dict() for p in result.proposals],
            },
            status_code=201,
        )

    @router.get("/templates")
    async def api_templates(request: Request, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        params = request.query_params
        try:
            templates = engine.db.list_templates(
                status=params.get("status"),
                tag=params.get("tag"),
                capability_id=params.get("capability_id"),
                maturity=params.get("maturity"),
            )
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse([t.to_dict() for t in templates])

    @router.get("/templates/{template_id}")
    async def api_template_detail(template_id: str, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        """Template record with its registered versions and recent events."""
        try:
            template = engine.db.get_template(template_id)
            versions = engine.db.list_template_versions(template_id)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        data = dict(template.to_dict())
        data["versions"] = versions
        data["events"] = engine.db.get_events(template_id, limit=20)
        return JSONResponse(data)

    # -- Conflicts and resolutions -------------------------------------------

    @router.get("/templates/{template_id}/conflicts")
    async def api_template_conflicts(request: Request, template_id: str, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        """Recorded conflicts, or a fresh detection with ``?refresh=1``."""
        refresh = request.query_params.get("refresh", "").lower() in ("1", "true", "yes")
        try:
            if refresh:
                conflicts = [c.to_dict() for c in engine.resolver.detect_conflicts(template_id)]
            else:
                engine.db.get_template(template_id)
                conflicts = engine.db.get_conflicts(template_id)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse({"template_id": template_id, "conflicts": conflicts})

    @router.post("/templates/{template_id}/resolutions")
    async def api_execute_resolution(
        template_id: str, request: Request, engine: LifecycleEngine = Depends(_get_engine)
    ) -> JSONResponse:
        """Execute a resolution strategy. Repeating a request returns the original record."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.pop("actor", "api"))
        if err:
            return err
        body.setdefault("template_id", template_id)
        try:
            strategy = strategy_from_dict(body)
            record = engine.resolver.execute_resolution(template_id, strategy, actor=actor)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(record)

    @router.get("/templates/{template_id}/resolutions")
    async def api_list_resolutions(template_id: str, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        try:
            engine.db.get_template(template_id)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(engine.db.list_resolutions(template_id))

    # -- Deployments ---------------------------------------------------------

    @router.post("/templates/{template_id}/deployments", status_code=201)
    async def api_confirm_deployment(
        template_id: str, request: Request, engine: LifecycleEngine = Depends(_get_engine)
    ) -> JSONResponse:
        """Deployment confirmation from the GitOps manager."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        version = _optional_int(body, "version")
        if isinstance(version, JSONResponse):
            return version
        environment = str(body.get("environment", "production"))
        try:
            if version is None:
                version = engine.db.get_template(template_id).version
            engine.confirm_deployment(DeploymentConfirmation(template_id, version, environment), actor=actor)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(
            {"template_id": template_id, "version": version, "environment": environment, "status": "deployed"},
            status_code=201,
        )

    return router
