"""
FastAPI Dependencies

Provides dependency injection for:
- Database session (per-request, from the app's Database handle)
- Caller identity (X-User-Id header)
- Farm store and ingestion service (per-request with session)
"""

from typing import AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.modules.coordinates.repositories import CoordinateStore
from src.modules.coordinates.services import IngestionService
from src.modules.farms.repositories import FarmStore
from src.modules.imagery.repositories import ImageStore
from src.pipeline.queue import JobQueue


# =============================================================================
# Session & Identity
# =============================================================================

async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Yields an async session bound to the application's database."""
    async with request.app.state.database.session() as session:
        yield session


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """
    Caller identity supplied by the upstream auth gateway.

    Requests without it are rejected with 401.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.job_queue


# =============================================================================
# Stores & Services
# =============================================================================

def get_farm_store(session: AsyncSession = Depends(get_session)) -> FarmStore:
    return FarmStore(session)


def get_ingestion_service(
    session: AsyncSession = Depends(get_session),
    job_queue: JobQueue = Depends(get_job_queue),
) -> IngestionService:
    """Returns IngestionService with per-request stores."""
    return IngestionService(
        farm_store=FarmStore(session),
        coordinate_store=CoordinateStore(session),
        image_store=ImageStore(session),
        job_queue=job_queue,
        enforce_range=settings.ENFORCE_COORDINATE_RANGE
    )
