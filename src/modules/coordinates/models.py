"""
Coordinate Model with Acquisition Status Tracking

A coordinate is a georeferenced point submitted for imagery acquisition.
It is created by the ingestion service in ``queued`` and afterwards only
mutated by the acquisition worker, following a linear state machine:

    queued -> fetching -> fetched -> processed

Any non-terminal state moves to ``failed`` once the worker gives up on
the coordinate. ``processed`` and ``failed`` are terminal.
"""

import uuid
from enum import Enum
from sqlmodel import SQLModel, Field
from sqlalchemy import DateTime, UniqueConstraint
from typing import Optional, Dict, Any, FrozenSet
from datetime import datetime, timezone


class CoordinateStatus(str, Enum):
    """Coordinate acquisition status states."""
    QUEUED = "queued"          # Persisted, fetch job enqueued
    FETCHING = "fetching"      # Worker picked up the job
    FETCHED = "fetched"        # Image uploaded and recorded
    PROCESSED = "processed"    # Post-processing done (terminal success)
    FAILED = "failed"          # Pipeline gave up (terminal failure)

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: "CoordinateStatus") -> bool:
        """
        Whether a status write from this state to ``target`` is allowed.

        Re-writing the current status is accepted so that a redelivered
        job can repeat a step without breaking the progression.
        """
        if target == self:
            return True
        return target in ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: Dict[CoordinateStatus, FrozenSet[CoordinateStatus]] = {
    CoordinateStatus.QUEUED: frozenset({CoordinateStatus.FETCHING, CoordinateStatus.FAILED}),
    CoordinateStatus.FETCHING: frozenset({CoordinateStatus.FETCHED, CoordinateStatus.FAILED}),
    CoordinateStatus.FETCHED: frozenset({CoordinateStatus.PROCESSED, CoordinateStatus.FAILED}),
    CoordinateStatus.PROCESSED: frozenset(),
    CoordinateStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({CoordinateStatus.PROCESSED, CoordinateStatus.FAILED})


class Coordinate(SQLModel, table=True):
    """
    Submitted coordinate and its acquisition lifecycle.

    (farm_id, client_event_id) is the idempotency key: a client may resend
    the same event any number of times and always gets the same row back.
    """
    __tablename__ = "coordinates"
    __table_args__ = (
        UniqueConstraint("farm_id", "client_event_id", name="uq_coordinates_farm_client_event"),
    )

    # Primary Key
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    # Idempotency key
    client_event_id: str = Field(index=True)
    farm_id: str = Field(foreign_key="farms.id", index=True)

    # Position (decimal degrees)
    lat: float
    lng: float
    accuracy: Optional[float] = None

    # Acquisition Status
    status: str = Field(default=CoordinateStatus.QUEUED.value, index=True)
    fetched_image_id: Optional[str] = Field(default=None, foreign_key="images.id")
    processed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    # Timestamps
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_type=DateTime(timezone=True)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_type=DateTime(timezone=True)
    )

    @property
    def status_enum(self) -> CoordinateStatus:
        return CoordinateStatus(self.status)

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        return {
            "id": self.id,
            "clientEventId": self.client_event_id,
            "farmId": self.farm_id,
            "lat": self.lat,
            "lng": self.lng,
            "accuracy": self.accuracy,
            "status": self.status,
            "fetchedImageId": self.fetched_image_id,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
