"""Shared helpers for API route modules."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from fastapi.responses import JSONResponse
    from starlette.requests import Request

    from caplife.engine import LifecycleEngine

from caplife.errors import (
    ConcurrentModificationError,
    LifecycleError,
    NoKnownGoodVersionError,
    NotFoundError,
    PhaseFailedError,
    PreconditionFailedError,
    RollbackTriggeredError,
    TransitionNotAllowedError,
    ValidationError,
    VersionConflictError,
)
from caplife.validation import sanitize_actor as _sanitize_actor

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Checked in order; the first matching class wins.
_STATUS_BY_ERROR: tuple[tuple[type[LifecycleError], int], ...] = (
    (NotFoundError, 404),
    (TransitionNotAllowedError, 409),
    (PreconditionFailedError, 409),
    (ValidationError, 400),
    (VersionConflictError, 409),
    (ConcurrentModificationError, 409),
    (NoKnownGoodVersionError, 409),
    (RollbackTriggeredError, 422),
    (PhaseFailedError, 422),
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error_response(
    message: str,
    code: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Return a structured error response and log the error."""
    from fastapi.responses import JSONResponse

    logger.warning("API error [%s] %s: %s", status_code, code, message)
    return JSONResponse(
        {"error": {"message": message, "code": code, "details": details or {}}},
        status_code=status_code,
    )


def _lifecycle_error_response(exc: LifecycleError) -> JSONResponse:
    """Map a ``LifecycleError`` to its HTTP status, carrying the error's ids as details."""
    status = 500
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            status = code
            break
    details = {
        k: v
        for k, v in vars(exc).items()
        if k in ("kind", "record_id", "expected", "actual", "attempts", "template_id", "plan_id", "phase_id", "from_status", "to_status")
    }
    return _error_response(str(exc), exc.code, status, details)


async def _parse_json_body(request: Request) -> dict[str, Any] | JSONResponse:
    """Parse and validate a JSON object body, returning 400 on failure."""
    import json

    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError, UnicodeDecodeError):
        return _error_response("Invalid JSON body", "VALIDATION_ERROR", 400)
    if not isinstance(body, dict):
        return _error_response("Request body must be a JSON object", "VALIDATION_ERROR", 400)
    return body


def _safe_int(value: str, name: str, *, min_value: int | None = None) -> int | JSONResponse:
    """Parse a query-param string to int, returning a 400 error response on failure."""
    try:
        result = int(value)
    except (ValueError, TypeError):
        return _error_response(
            f'Invalid value for {name}: "{value}". Must be an integer.',
            "VALIDATION_ERROR",
            400,
        )
    if min_value is not None and result < min_value:
        return _error_response(
            f"Invalid value for {name}: {result}. Must be >= {min_value}.",
            "VALIDATION_ERROR",
            400,
        )
    return result


def _get_int_param(params: Mapping[str, str], name: str, default: int, *, min_value: int | None = None) -> int | JSONResponse:
    raw = params.get(name)
    if raw is None:
        return default
    return _safe_int(raw, name, min_value=min_value)


def _optional_int(body: Mapping[str, Any], name: str) -> int | None | JSONResponse:
    """Read an optional integer field from a JSON body."""
    value = body.get(name)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        return _error_response(f"{name} must be an integer", "VALIDATION_ERROR", 400)
    return value


def _validate_actor(value: Any) -> tuple[str, JSONResponse | None]:
    """Validate an actor name from JSON body.

    Returns (cleaned_actor, None) on success or ("", JSONResponse) on error.
    """
    cleaned, err = _sanitize_actor(value)
    if err:
        return ("", _error_response(err, "VALIDATION_ERROR", 400))
    return (cleaned, None)


async def _run_on_worker(engine: LifecycleEngine, fn: Callable[[LifecycleEngine], _T]) -> _T:
    """Run blocking engine work in the threadpool on a connection owned by that thread."""
    from starlette.concurrency import run_in_threadpool

    def _call() -> _T:
        worker = engine.worker()
        try:
            return fn(worker)
        finally:
            worker.close()

    return await run_in_threadpool(_call)
