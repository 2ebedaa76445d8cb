"""
DoorCast Backend — Test Configuration (conftest.py)
=====================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   Every test gets its own SQLite database, storage directory and
       service graph, so ordering and timestamps never leak between tests.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.
Who:   Used by all test files in the tests/ directory.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── db_engine / session_factory: aiosqlite database under tmp_path
    ├── blob_service: BlobService on a temporary storage root
    ├── store: EventStore over the two above
    ├── registry / broadcaster / pipeline: live fan-out graph
    ├── services: ServiceContainer wiring all of the above
    ├── app / test_client: FastAPI app + HTTPX AsyncClient
    └── sample_png_bytes / sample_image_bytes: payloads for uploads
"""

import base64
import os
import tempfile
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# ══════════════════════════════════════════════════════════════════════════
# Environment Setup
# ══════════════════════════════════════════════════════════════════════════

# Override settings BEFORE any app import: app.config reads them at import
_TEST_ROOT = tempfile.mkdtemp(prefix="doorcast_test_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT}/doorcast.db"
os.environ["STORAGE_ROOT"] = os.path.join(_TEST_ROOT, "storage")
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce noise during tests
os.environ["RATE_LIMIT_REQUESTS"] = "100000"
os.environ["BLOB_FSYNC"] = "false"
os.environ["STORE_RETRY_MIN_WAIT"] = "0.01"
os.environ["STORE_RETRY_MAX_WAIT"] = "0.05"

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from app.database import Base  # noqa: E402
from app.dependencies import ServiceContainer  # noqa: E402
from app.main import create_app  # noqa: E402
from app.services.blob_service import BlobService  # noqa: E402
from app.services.broadcaster import Broadcaster  # noqa: E402
from app.services.event_store import EventStore  # noqa: E402
from app.services.ingestion import IngestionPipeline  # noqa: E402
from app.services.query_service import QueryService  # noqa: E402
from app.services.registry import SubscriptionRegistry  # noqa: E402


# ══════════════════════════════════════════════════════════════════════════
# Storage Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    A fresh SQLite database with the events table created.

    Why: the store's ordering guarantees need a real database; mocks would
         only test the mocks.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/events.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def temp_storage(tmp_path):
    """A fresh storage root for blob files."""
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir()
    return str(storage_dir)


@pytest.fixture
def blob_service(temp_storage):
    return BlobService(temp_storage, fsync=False)


@pytest.fixture
def store(session_factory, blob_service):
    return EventStore(session_factory, blob_service)


# ══════════════════════════════════════════════════════════════════════════
# Live Fan-Out Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def registry():
    return SubscriptionRegistry(queue_size=4)


@pytest.fixture
def broadcaster(registry):
    return Broadcaster(registry, overflow_policy="drop_and_disconnect")


@pytest.fixture
def pipeline(store, broadcaster):
    return IngestionPipeline(store, broadcaster)


@pytest.fixture
def services(blob_service, store, registry, broadcaster, pipeline):
    return ServiceContainer(
        blobs=blob_service,
        store=store,
        registry=registry,
        broadcaster=broadcaster,
        pipeline=pipeline,
        queries=QueryService(store),
    )


# ══════════════════════════════════════════════════════════════════════════
# API Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def app(services):
    return create_app(services)


@pytest_asyncio.fixture
async def test_client(app) -> AsyncGenerator[AsyncClient, None]:
    """
    Provides an async HTTP test client for endpoint testing.

    What:    HTTPX AsyncClient configured to talk to a fresh FastAPI app.
    How:     Uses ASGITransport to route requests directly to the app.
             Lifespan does not run; the app's services are the fixtures above.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ══════════════════════════════════════════════════════════════════════════
# Payloads
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def sample_png_bytes():
    """A 1x1 PNG. Uploads are sniffed, so this has to be a real image."""
    return base64.b64decode(
        "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/PchI7wAAAABJRU5ErkJggg=="
    )


@pytest.fixture
def sample_image_bytes():
    """
    Minimal JPEG bytes.

    Minimal JPEG: Start of Image (FFD8) + JFIF marker + End of Image (FFD9)
    """
    return (
        b'\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00'
        b'\xff\xd9'
    )


@pytest.fixture
def png_upload(sample_png_bytes):
    """JSON body for POST /events carrying the sample PNG."""
    return {
        "kind": "image",
        "data": base64.b64encode(sample_png_bytes).decode("ascii"),
        "content_type": "image/png",
        "filename": "porch.png",
        "source_label": "front-door",
    }
