"""Health route handlers: on-demand checks, schedules and history."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fastapi import APIRouter

from fastapi.responses import JSONResponse
from starlette.requests import Request

from caplife.api_routes.common import (
    _error_response,
    _get_int_param,
    _lifecycle_error_response,
    _parse_json_body,
    _run_on_worker,
    _validate_actor,
)
from caplife.engine import LifecycleEngine
from caplife.errors import LifecycleError

logger = logging.getLogger(__name__)


def create_router() -> APIRouter:
    """Build the APIRouter for health endpoints."""
    from fastapi import APIRouter, Depends

    from caplife.api import _get_engine

    router = APIRouter()

    @router.post("/templates/{template_id}/health")
    async def api_health_check(template_id: str, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        """Run an on-demand check. Never counts toward automatic rollback."""
        try:
            result = await _run_on_worker(engine, lambda w: w.health.check(template_id))
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(result.to_dict())

    @router.get("/templates/{template_id}/health")
    async def api_health_history(template_id: str, request: Request, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        limit = _get_int_param(request.query_params, "limit", 10, min_value=1)
        if not isinstance(limit, int):
            return limit
        try:
            results = engine.health.history(template_id, limit=limit)
            trend = engine.health.trend(template_id)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        schedule = engine.db.get_schedule(template_id)
        return JSONResponse(
            {
                "template_id": template_id,
                "trend": trend,
                "schedule": schedule.to_dict() if schedule is not None else None,
                "results": [r.to_dict() for r in results],
            }
        )

    @router.post("/templates/{template_id}/health/schedule", status_code=201)
    async def api_schedule_health(
        template_id: str, request: Request, engine: LifecycleEngine = Depends(_get_engine)
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        actor, err = _validate_actor(body.get("actor", "api"))
        if err:
            return err
        interval = body.get("interval_minutes")
        if interval is not None and (isinstance(interval, bool) or not isinstance(interval, int)):
            return _error_response("interval_minutes must be an integer", "VALIDATION_ERROR", 400)
        try:
            schedule = engine.health.schedule(template_id, interval, actor=actor)
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(schedule.to_dict(), status_code=201)

    @router.delete("/templates/{template_id}/health/schedule")
    async def api_cancel_health(template_id: str, engine: LifecycleEngine = Depends(_get_engine)) -> JSONResponse:
        """Cancel monitoring. A check already running finishes first (202)."""
        try:
            schedule = engine.health.cancel(template_id, actor="api")
        except LifecycleError as e:
            return _lifecycle_error_response(e)
        return JSONResponse(schedule.to_dict(), status_code=200 if schedule.state == "cancelled" else 202)

    return router
