import pytest
from datetime import datetime, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock

from httpx import AsyncClient, ASGITransport

from src.core.database import Database
from src.core.storage import StoredObject
from src.main import create_app
from src.modules.coordinates.models import Coordinate
from src.modules.coordinates.repositories import CoordinateStore
from src.modules.coordinates.services import IngestionService
from src.modules.farms.repositories import FarmStore
from src.modules.imagery.repositories import ImageStore
from src.pipeline.queue import InMemoryJobQueue, RetryPolicy
from src.pipeline.worker import AcquisitionWorker

OWNER_ID = "user-1"
OTHER_USER_ID = "user-2"
FIXED_NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
TIFF_BYTES = b"II*\x00fake-tiff-payload"


@pytest.fixture
async def database() -> AsyncGenerator[Database, None]:
    db = Database("sqlite+aiosqlite://")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def session(database):
    async with database.session() as s:
        yield s


@pytest.fixture
def job_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue(RetryPolicy(max_attempts=5, backoff="exponential", delay_seconds=5))


@pytest.fixture
async def farm(session):
    return await FarmStore(session).create(
        name="North Field",
        center_lat=12.97,
        center_lng=77.59,
        owner_id=OWNER_ID
    )


@pytest.fixture
def ingestion(session, job_queue) -> IngestionService:
    return IngestionService(
        farm_store=FarmStore(session),
        coordinate_store=CoordinateStore(session),
        image_store=ImageStore(session),
        job_queue=job_queue
    )


@pytest.fixture
def auth():
    provider = AsyncMock()
    provider.get_token.return_value = "token-123"
    return provider


@pytest.fixture
def imagery():
    provider = AsyncMock()
    provider.fetch_image.return_value = TIFF_BYTES
    return provider


@pytest.fixture
def storage():
    blob_storage = AsyncMock()
    blob_storage.upload.side_effect = lambda data, key, content_type="image/tiff": StoredObject(
        key=key, location=f"memory://{key}"
    )
    return blob_storage


@pytest.fixture
def worker(database, auth, imagery, storage) -> AcquisitionWorker:
    return AcquisitionWorker(
        database=database,
        auth=auth,
        imagery=imagery,
        storage=storage,
        clock=lambda: FIXED_NOW
    )


@pytest.fixture
async def client(database, job_queue) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(database=database, job_queue=job_queue)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac


@pytest.fixture
def reload_coordinate(database):
    """Read a coordinate through a fresh session (no stale identity map)."""
    async def _reload(coordinate_id: str) -> Coordinate:
        async with database.session() as s:
            return await CoordinateStore(s).find_by_id(coordinate_id)
    return _reload


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW
