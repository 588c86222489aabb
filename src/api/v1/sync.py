"""
Offline Sync Endpoint

POST /api/v1/sync/events - Replay client-buffered coordinate events
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from src.api.dependencies import get_current_user_id, get_ingestion_service
from src.modules.coordinates.services import IngestionService

router = APIRouter()


class SyncEventsRequest(BaseModel):
    """Batch of events; each carries farmId, clientEventId, lat, lng, accuracy."""
    events: List[Any]


@router.post("/events")
async def sync_events(
    request: SyncEventsRequest,
    user_id: str = Depends(get_current_user_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> List[Dict[str, Any]]:
    """One result per event, in input order."""
    return await service.sync_events(request.events, user_id)
