"""Fixtures for HTTP API tests (FastAPI)."""

from __future__ import annotations

from collections.abc import AsyncIterator, Generator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

import caplife.api as api_module
from caplife.api import create_app
from caplife.engine import LifecycleEngine
from tests._db_factory import make_db
from tests._helpers import RecordingNotifier
from tests.conftest import PopulatedCatalog, populate


@pytest.fixture
def api_catalog(tmp_path: Path) -> Generator[PopulatedCatalog, None, None]:
    """Populated catalog on a connection usable from FastAPI's threadpool."""
    notifier = RecordingNotifier()
    engine = LifecycleEngine(make_db(tmp_path, check_same_thread=False), notifier=notifier)
    yield populate(engine, notifier)
    engine.close()


@pytest.fixture
async def client(api_catalog: PopulatedCatalog) -> AsyncIterator[AsyncClient]:
    """Test client backed by the populated catalog."""
    api_module._engine = api_catalog.engine
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    api_module._engine = None


@pytest.fixture
async def bare_client() -> AsyncIterator[AsyncClient]:
    """Test client with no engine installed."""
    api_module._engine = None
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def error_code(body: dict) -> str:
    return body["error"]["code"]
