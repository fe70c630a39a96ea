"""Lifecycle route handlers: migrations, deprecations, rollbacks and the clock."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fastapi import APIRouter

from fastapi.responses import JSONResponse
from starlette.requests import Request

from caplife.api_routes.common import (
    _error_response,
    _lifecycle_error_response,
    _parse_json_body,
    _run_on_worker,
    _validate_actor,
)
from caplife.engine import LifecycleEngine
from caplife.errors import LifecycleError
from caplife.validation import sanitize_reason

logger = logging.getLogger(__name__)


def create_router() -> APIRouter:
    """Build the APIRouter for migration, deprecation and rollback endpoints."""
    from fastapi import APIRouter, Depends

    from caplife.api import _get_engine

    router = APIRouter()

    # -- Migrations ----------------------------------------------------------

    @router.post("/migrations", status_code=201)
    async def api_create_migration(request: Request, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        """Plan a migration. Omit ``target_id`` to migrate to the source's next version."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        source_id = body.get("source_id")
        if not isinstance(source_id, str) or not source_id:
            return _error_response("source_id is required", "VALIDATION_ERROR", 400)
        try:
            plan = engine.migrations.create_plan(source_id, body.get("target_id"), actor=actor)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(plan.to_dict(), status_code=201)

    @router.get("/migrations")
    async def api_migrations(request: Request, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        params = request.query_params
        plans = engine.db.list_migration_plans(
            status=params.get("status"),
            source_id=params.get("source_id"),
            target_id=params.get("target_id"),
        )
        return JSONResponse([p.to_dict() for p in plans])

    @router.get("/migrations/{plan_id}")
    async def api_migration_detail(plan_id: str, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        try:
            plan = engine.migrations.get_plan(plan_id)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(plan.to_dict())

    @router.post("/migrations/{plan_id}/phases/{phase_id}")
    async def api_execute_phase(
        plan_id: str, phase_id: str, request: Request, engine: LifecycleEngine = Depends(_get_engine)
    ) -> JSONResponse:
        """Execute one phase. Failures come back as 422 with the plan state in ``details``."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        try:
            plan = engine.migrations.execute_phase(plan_id, phase_id, actor=actor)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(plan.to_dict())

    @router.post("/migrations/{plan_id}/abort")
    async def api_abort_migration(plan_id: str, request: Request, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        try:
            plan = engine.migrations.abort_plan(plan_id, actor=actor)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(plan.to_dict(), status_code=200 if plan.status == "aborted" else 202)

    @router.post("/migrations/{plan_id}/retarget")
    async def api_retarget_migration(
        plan_id: str, request: Request, engine: LifecycleEngine = Depends(_get_engine)
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        target_id = body.get("target_id")
        if not isinstance(target_id, str) or not target_id:
            return _error_response("target_id is required", "VALIDATION_ERROR", 400)
        try:
            plan = engine.migrations.retarget_plan(plan_id, target_id, actor=actor)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(plan.to_dict())

    # -- Deprecations --------------------------------------------------------

    @router.post("/deprecations", status_code=201)
    async def api_create_deprecation(request: Request, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        template_id = body.get("template_id")
        if not isinstance(template_id, str) or not template_id:
            return _error_response("template_id is required", "VALIDATION_ERROR", 400)
        reason, reason_err = sanitize_reason(body.get("reason"))
        if reason_err:
            return _error_response(reason_err, "VALIDATION_ERROR", 400)
        try:
            plan = engine.deprecations.create_plan(template_id, reason, body.get("timeline_months"), actor=actor)  # type: ignore[arg-type]
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(plan.to_dict(), status_code=201)

    @router.get("/deprecations/{plan_id}")
    async def api_deprecation_detail(plan_id: str, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        try:
            plan = engine.deprecations.get_plan(plan_id)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(plan.to_dict())

    # -- Rollback ------------------------------------------------------------

    @router.post("/templates/{template_id}/rollback")
    async def api_rollback(template_id: str, request: Request, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        """Revert to the last-known-good version and notify the capability's other templates."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        reason, reason_err = sanitize_reason(body.get("reason", "manual rollback"))
        if reason_err:
            return _error_response(reason_err, "VALIDATION_ERROR", 400)
        try:
            result = engine.rollbacks.rollback(template_id, reason, actor=actor)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(result.to_dict())

    @router.get("/templates/{template_id}/rollbacks")
    async def api_rollback_history(template_id: str, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        try:
            engine.db.get_template(template_id)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse([r.to_dict() for r in engine.rollbacks.history(template_id)])

    # -- Clock ---------------------------------------------------------------

    @router.post("/tick")
    async def api_tick(engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        """Advance the health and deprecation clocks once."""
        try:
            result = await _run_on_worker(engine, LifecycleEngine.tick)
        except sqlite3.Error:
            logger.exception("Database error during tick")
            return _error_response("Database error during tick", "TICK_ERROR", 500)
        return JSONResponse(
            {
                "health": [r.to_dict() for r in result.health],
                "deprecation": {
                    "sent": result.deprecation.sent,
                    "failed": result.deprecation.failed,
                    "retired": result.deprecation.retired,
                },
            }
        )

    return router
