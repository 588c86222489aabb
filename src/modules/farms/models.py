"""
Farm Model

A farm is owned by a single user. Coordinates reference a farm and may
only be submitted by its owner.
"""

import uuid
from sqlmodel import SQLModel, Field
from sqlalchemy import DateTime
from datetime import datetime, timezone


class Farm(SQLModel, table=True):
    __tablename__ = "farms"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    name: str
    center_lat: float
    center_lng: float
    owner_id: str = Field(index=True)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_type=DateTime(timezone=True)
    )

    def to_response_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "centerLat": self.center_lat,
            "centerLng": self.center_lng,
            "ownerId": self.owner_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
