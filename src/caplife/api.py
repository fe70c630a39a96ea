"""HTTP API for caplife: the registration, query and command surface.

A module-level ``_engine`` is set at startup (or by test fixtures) and
injected into every handler via ``Depends(_get_engine)``.

Usage:
    caplife serve                 # http://localhost:8377/api/
    caplife serve --port 9000     # Custom port
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fastapi import FastAPI

from fastapi.responses import JSONResponse

from caplife.core import DB_FILENAME, CatalogDB, Settings, find_caplife_root, read_config
from caplife.engine import LifecycleEngine
from caplife.logging import setup_logging

DEFAULT_PORT = 8377

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level state: set by main() or test fixtures
# ---------------------------------------------------------------------------

_engine: LifecycleEngine | None = None


def _get_engine() -> LifecycleEngine:
    """Return the active engine."""
    from fastapi import HTTPException

    if _engine is None:
        raise HTTPException(status_code=500, detail="Engine not initialized")
    return _engine


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def _create_api_router() -> Any:
    """Build the APIRouter containing every catalog and lifecycle endpoint."""
    from fastapi import APIRouter

    from caplife.api_routes import catalog, health, lifecycle

    router = APIRouter()
    router.include_router(catalog.create_router())
    router.include_router(lifecycle.create_router())
    router.include_router(health.create_router())
    return router


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    from fastapi import FastAPI

    app = FastAPI(title="caplife", docs_url="/api/docs", redoc_url=None)
    app.include_router(_create_api_router(), prefix="/api")

    @app.get("/api/health")
    async def api_health() -> JSONResponse:
        if _engine is None:
            return JSONResponse({"status": "starting"}, status_code=503)
        return JSONResponse(
            {
                "status": "ok",
                "prefix": _engine.db.prefix,
                "schema_version": _engine.db.get_schema_version(),
                "catalog": _engine.health.overall_status(),
            }
        )

    return app


def main(port: int = DEFAULT_PORT) -> None:
    """Serve the project found by walking up from the cwd."""
    import uvicorn

    global _engine

    caplife_dir = find_caplife_root()
    config = read_config(caplife_dir)
    setup_logging(caplife_dir, level=config.get("log_level", "INFO"))
    db = CatalogDB(
        caplife_dir / DB_FILENAME,
        prefix=config.get("prefix", "caplife"),
        settings=Settings.from_config(config),
        check_same_thread=False,
    )
    db.initialize()
    _engine = LifecycleEngine(db)

    app = create_app()
    print(f"caplife API: http://localhost:{port}/api/")
    try:
        uvicorn.run(app, host="127.0.0.1", port=port, log_level="warning")
    finally:
        _engine.close()
        _engine = None
