"""
Coordinate Endpoints

POST /api/v1/farms/{farm_id}/coords        - Submit a coordinate (idempotent)
GET  /api/v1/coords/{coordinate_id}/status - Acquisition status with linked image
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.api.dependencies import get_current_user_id, get_ingestion_service
from src.modules.coordinates.services import IngestionService

router = APIRouter()


class CoordinateSubmitRequest(BaseModel):
    """
    Coordinate submission.

    Fields are loosely typed here; the ingestion service owns validation
    so the HTTP and batch paths reject the same inputs the same way.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    client_event_id: Any = None
    lat: Any = None
    lng: Any = None
    accuracy: Any = None


@router.post("/farms/{farm_id}/coords")
async def submit_coordinate(
    farm_id: str,
    request: CoordinateSubmitRequest,
    response: Response,
    user_id: str = Depends(get_current_user_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> Dict[str, Any]:
    """
    Submit a coordinate for imagery acquisition.

    Returns 201 with the new coordinate in ``queued``, or 200 with the
    existing coordinate when this clientEventId was already submitted.
    """
    coordinate, created = await service.submit_with_outcome(
        farm_id=farm_id,
        client_event_id=request.client_event_id,
        lat=request.lat,
        lng=request.lng,
        accuracy=request.accuracy,
        user_id=user_id
    )
    response.status_code = 201 if created else 200
    return coordinate.to_response_dict()


@router.get("/coords/{coordinate_id}/status")
async def get_coordinate_status(
    coordinate_id: str,
    user_id: str = Depends(get_current_user_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> Dict[str, Any]:
    coordinate, image = await service.get_status(coordinate_id, user_id)
    body = coordinate.to_response_dict()
    body["image"] = image.to_response_dict() if image else None
    return body
