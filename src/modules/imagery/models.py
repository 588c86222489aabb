"""
Image Model and Acquisition Geometry

An Image is the metadata record for one satellite image stored in blob
storage. It is created by the acquisition worker after a successful
fetch + upload and never modified afterwards.
"""

import uuid
from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import DateTime
from pydantic import BaseModel
from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta, timezone

# Bounds are rounded so that e.g. 12.97 - 0.1 is stored as 12.87
BBOX_PRECISION = 6


class BoundingBox(BaseModel):
    """Rectangular region of interest in decimal degrees (EPSG:4326)."""
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @classmethod
    def around(cls, lat: float, lng: float, padding: float = 0.1) -> "BoundingBox":
        """Square of +/- ``padding`` degrees centered on the point."""
        return cls(
            min_lat=round(lat - padding, BBOX_PRECISION),
            max_lat=round(lat + padding, BBOX_PRECISION),
            min_lng=round(lng - padding, BBOX_PRECISION),
            max_lng=round(lng + padding, BBOX_PRECISION),
        )

    def as_lng_lat_list(self) -> List[float]:
        """[minLng, minLat, maxLng, maxLat], the order imagery APIs expect."""
        return [self.min_lng, self.min_lat, self.max_lng, self.max_lat]

    def to_record(self) -> Dict[str, float]:
        return {
            "minLat": self.min_lat,
            "maxLat": self.max_lat,
            "minLng": self.min_lng,
            "maxLng": self.max_lng,
        }


class TimeRange(BaseModel):
    """Acquisition time window for an imagery search."""
    start: datetime
    end: datetime

    @classmethod
    def last_days(cls, days: int, now: Optional[datetime] = None) -> "TimeRange":
        end = now or datetime.now(timezone.utc)
        return cls(start=end - timedelta(days=days), end=end)


class Image(SQLModel, table=True):
    """
    Fetched satellite image metadata.

    Stores:
    - Blob storage key
    - Bounding box the image was requested for
    - Upload metadata (uploadedAt, size, location)
    """
    __tablename__ = "images"

    # Primary Key
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    # Blob storage location handle
    key: str

    # Structure: {minLat, maxLat, minLng, maxLng}
    bbox: Dict[str, Any] = Field(default={}, sa_column=Column(JSON))

    # Structure: {uploadedAt, size, location}
    meta: Dict[str, Any] = Field(default={}, sa_column=Column(JSON))

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_type=DateTime(timezone=True)
    )

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        return {
            "id": self.id,
            "key": self.key,
            "bbox": self.bbox,
            "meta": self.meta,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
