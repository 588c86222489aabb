"""
Farm Endpoints

POST /api/v1/farms            - Register a farm for the caller
GET  /api/v1/farms            - List the caller's farms
GET  /api/v1/farms/{farm_id}  - Get one of the caller's farms
"""

from typing import Dict, Any, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.api.dependencies import get_current_user_id, get_farm_store
from src.core.exceptions import ForbiddenError, NotFoundError
from src.core.logging import get_logger
from src.modules.farms.repositories import FarmStore

logger = get_logger(__name__)
router = APIRouter()


class FarmCreateRequest(BaseModel):
    """Request body for registering a farm."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=200)
    center_lat: float = Field(..., ge=-90, le=90)
    center_lng: float = Field(..., ge=-180, le=180)


@router.post("", status_code=201)
async def create_farm(
    request: FarmCreateRequest,
    user_id: str = Depends(get_current_user_id),
    farms: FarmStore = Depends(get_farm_store),
) -> Dict[str, Any]:
    farm = await farms.create(
        name=request.name,
        center_lat=request.center_lat,
        center_lng=request.center_lng,
        owner_id=user_id
    )
    logger.info("farm_created", farm_id=farm.id, owner_id=user_id)
    return farm.to_response_dict()


@router.get("")
async def list_farms(
    user_id: str = Depends(get_current_user_id),
    farms: FarmStore = Depends(get_farm_store),
) -> List[Dict[str, Any]]:
    return [farm.to_response_dict() for farm in await farms.list_for_owner(user_id)]


@router.get("/{farm_id}")
async def get_farm(
    farm_id: str,
    user_id: str = Depends(get_current_user_id),
    farms: FarmStore = Depends(get_farm_store),
) -> Dict[str, Any]:
    farm = await farms.find_by_id(farm_id)
    if farm is None:
        raise NotFoundError("Farm", farm_id)
    if farm.owner_id != user_id:
        raise ForbiddenError("Farm", farm_id)
    return farm.to_response_dict()
