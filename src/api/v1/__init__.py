"""
API v1 Router Module - Farm Imagery Service

All v1 endpoints are prefixed with /api/v1/

- /api/v1/farms           - Farm registration
- /api/v1/farms/{id}/coords, /api/v1/coords/{id}/status - Coordinate submission and status
- /api/v1/sync/events     - Offline batch sync
- /api/v1/metrics         - Prometheus scrape target
"""

from fastapi import APIRouter

from src.api.v1.farms import router as farms_router
from src.api.v1.coordinates import router as coordinates_router
from src.api.v1.sync import router as sync_router
from src.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(farms_router, prefix="/farms", tags=["farms"])
api_v1_router.include_router(coordinates_router, tags=["coordinates"])
api_v1_router.include_router(sync_router, prefix="/sync", tags=["sync"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
