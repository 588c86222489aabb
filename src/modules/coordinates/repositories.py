"""
Coordinate Store

Persistence for coordinates. Every write commits on its own, so each
status transition is a single atomic update keyed by id.
"""

from datetime import datetime, timezone
from typing import Optional, Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update
from sqlmodel import select

from src.core.exceptions import NotFoundError, InvalidStatusTransitionError
from src.core.logging import get_logger
from src.modules.coordinates.models import Coordinate, CoordinateStatus

logger = get_logger(__name__)


class CoordinateStore:
    """Repository for coordinate rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_id(self, coordinate_id: str) -> Optional[Coordinate]:
        # Always reload: other sessions move the status forward concurrently
        result = await self.session.execute(
            select(Coordinate)
            .where(Coordinate.id == coordinate_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_farm_and_client_event_id(
        self,
        farm_id: str,
        client_event_id: str
    ) -> Optional[Coordinate]:
        """Look up a coordinate by its idempotency key."""
        result = await self.session.execute(
            select(Coordinate).where(
                Coordinate.farm_id == farm_id,
                Coordinate.client_event_id == client_event_id
            )
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        farm_id: str,
        client_event_id: str,
        lat: float,
        lng: float,
        accuracy: Optional[float] = None
    ) -> Coordinate:
        """Insert a new coordinate in ``queued`` and commit it."""
        coordinate = Coordinate(
            farm_id=farm_id,
            client_event_id=client_event_id,
            lat=lat,
            lng=lng,
            accuracy=accuracy,
            status=CoordinateStatus.QUEUED.value
        )
        self.session.add(coordinate)
        await self.session.commit()
        await self.session.refresh(coordinate)
        return coordinate

    async def update_status(
        self,
        coordinate_id: str,
        status: CoordinateStatus,
        **extra_fields: Any
    ) -> Coordinate:
        """
        Move a coordinate to ``status`` and set any extra columns.

        The write is a single conditional UPDATE guarded on the statuses
        that may lead to ``status``, so a writer holding a stale copy of the
        row can never move it backwards.

        Raises:
            NotFoundError: the row does not exist.
            InvalidStatusTransitionError: the write would regress the status.
        """
        sources = [s.value for s in CoordinateStatus if s.can_transition_to(status)]
        result = await self.session.execute(
            update(Coordinate)
            .where(Coordinate.id == coordinate_id, Coordinate.status.in_(sources))
            .values(status=status.value, updated_at=datetime.now(timezone.utc), **extra_fields)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current = await self.find_by_id(coordinate_id)
            if current is None:
                raise NotFoundError("Coordinate", coordinate_id)
            raise InvalidStatusTransitionError(coordinate_id, current.status, status.value)

        await self.session.commit()
        coordinate = await self.find_by_id(coordinate_id)

        logger.info(
            "coordinate_status_updated",
            coordinate_id=coordinate_id,
            status=status.value
        )
        return coordinate
